"""Representation of the workloads and resources managed in a cluster.

Workload specs are immutable descriptions owned by the caller. Each spec knows
how to render the minimal Kubernetes manifest for itself with `to_manifest`,
which is what the reconciler sends to the resource store.

Pods read back from the store are viewed through `PodStatus`, which only
exposes the fields the job runner needs to drive its state machine.
"""

import base64
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import StrEnum
import json
import logging
from pathlib import Path
from typing import Any, ClassVar

import aiofiles
import yaml
from mashumaro import DataClassDictMixin
from mashumaro.codecs.yaml import yaml_decode
from mashumaro.config import BaseConfig
from mashumaro.exceptions import InvalidFieldValue, MissingField

from .exceptions import InputException

__all__ = [
    "NamedResource",
    "EnvVar",
    "SecretEnv",
    "DeploySpec",
    "CronJobSpec",
    "PodSpec",
    "App",
    "ServicePort",
    "PodStatus",
    "PodPhase",
    "read_manifests",
]

_LOGGER = logging.getLogger(__name__)


NAMESPACE_KIND = "Namespace"
POD_KIND = "Pod"
DEPLOYMENT_KIND = "Deployment"
CRON_JOB_KIND = "CronJob"
CONFIG_MAP_KIND = "ConfigMap"
SECRET_KIND = "Secret"
SERVICE_KIND = "Service"
INGRESS_KIND = "Ingress"
HPA_KIND = "HorizontalPodAutoscaler"
LIMIT_RANGE_KIND = "LimitRange"
REPLICA_SET_KIND = "ReplicaSet"
NODE_KIND = "Node"

API_VERSIONS: dict[str, str] = {
    NAMESPACE_KIND: "v1",
    POD_KIND: "v1",
    CONFIG_MAP_KIND: "v1",
    SECRET_KIND: "v1",
    SERVICE_KIND: "v1",
    LIMIT_RANGE_KIND: "v1",
    NODE_KIND: "v1",
    DEPLOYMENT_KIND: "apps/v1",
    REPLICA_SET_KIND: "apps/v1",
    CRON_JOB_KIND: "batch/v1",
    HPA_KIND: "autoscaling/v1",
    INGRESS_KIND: "networking.k8s.io/v1",
}

# Kinds that are not scoped to a namespace
CLUSTER_KINDS = {NAMESPACE_KIND, NODE_KIND}

APP_LABEL = "run"
TEAM_LABEL = "kuberun.io/team"
APP_ANNOTATION = "kuberun.io/app"
LAST_USER_ANNOTATION = "kuberun.io/last-user"
CHANGE_CAUSE_ANNOTATION = "kubernetes.io/change-cause"
REVISION_ANNOTATION = "deployment.kubernetes.io/revision"
LIMIT_RANGE_NAME = "limits"
DEFAULT_SERVICE_TYPE = "LoadBalancer"
DEFAULT_CONTAINER_PORT = 5000


def _now() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: str | None) -> datetime | None:
    """Parse an RFC3339 timestamp as reported by the API server."""
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


@dataclass
class BaseManifest(DataClassDictMixin):
    """Base class for all manifest objects."""

    @classmethod
    def parse_yaml(cls, content: str) -> "BaseManifest":
        """Parse a serialized manifest."""
        try:
            return yaml_decode(content, cls)
        except (yaml.YAMLError, MissingField, InvalidFieldValue) as err:
            raise InputException(f"Invalid {cls.__name__}: {err}") from err

    class Config(BaseConfig):
        omit_none = True


@dataclass(frozen=True, order=True)
class NamedResource:
    """Identifier for a kubernetes resource."""

    kind: str
    namespace: str | None
    name: str

    @classmethod
    def from_doc(cls, doc: dict[str, Any]) -> "NamedResource":
        """Return the identity of a raw kubernetes object."""
        if not (kind := doc.get("kind")):
            raise InputException(f"Invalid object missing kind: {doc}")
        if not (metadata := doc.get("metadata")):
            raise InputException(f"Invalid object missing metadata: {doc}")
        if not (name := metadata.get("name")):
            raise InputException(f"Invalid object missing metadata.name: {doc}")
        namespace = None if kind in CLUSTER_KINDS else metadata.get("namespace")
        return cls(kind, namespace, name)

    @property
    def namespaced_name(self) -> str:
        if self.namespace:
            return f"{self.namespace}/{self.name}"
        return self.name

    def __str__(self) -> str:
        """Return the kind and namespaced name concatenated as an id."""
        return f"{self.kind}/{self.namespaced_name}"


def new_object(
    kind: str,
    name: str,
    namespace: str | None = None,
    labels: dict[str, str] | None = None,
    annotations: dict[str, str] | None = None,
) -> dict[str, Any]:
    """Return the skeleton of a kubernetes object."""
    metadata: dict[str, Any] = {"name": name}
    if namespace is not None and kind not in CLUSTER_KINDS:
        metadata["namespace"] = namespace
    if labels:
        metadata["labels"] = dict(labels)
    if annotations:
        metadata["annotations"] = dict(annotations)
    return {
        "apiVersion": API_VERSIONS.get(kind, "v1"),
        "kind": kind,
        "metadata": metadata,
    }


@dataclass
class EnvVar(BaseManifest):
    """A literal environment variable binding."""

    key: str
    value: str = ""

    @classmethod
    def from_str(cls, value: str) -> "EnvVar":
        """Parse a `KEY=VALUE` string."""
        key, sep, val = value.partition("=")
        if not key or not sep:
            raise InputException(f"Expected KEY=VALUE format from '{value}'")
        return cls(key=key, value=val)


@dataclass
class SecretEnv(BaseManifest):
    """Environment variables sourced from the keys of a secret."""

    secret_name: str
    keys: list[str] = field(default_factory=list)


@dataclass
class LimitRangeQuantity(BaseManifest):
    """A quantity of a compute resource, e.g. cpu=200m."""

    resource: str
    quantity: str


@dataclass
class Limits(BaseManifest):
    """Default container limits and requests for an app."""

    default: list[LimitRangeQuantity] = field(default_factory=list)
    default_request: list[LimitRangeQuantity] = field(default_factory=list)


@dataclass
class Autoscale(BaseManifest):
    """Horizontal autoscaling settings for an app."""

    cpu_target_utilization: int = 70
    min: int = 1
    max: int = 1


@dataclass
class ServicePort(BaseManifest):
    """A port exposed by the service of an app."""

    port: int
    target_port: int = DEFAULT_CONTAINER_PORT
    name: str | None = None
    protocol: str = "TCP"

    def to_manifest(self) -> dict[str, Any]:
        doc: dict[str, Any] = {
            "port": self.port,
            "protocol": self.protocol,
            "targetPort": self.target_port,
        }
        if self.name:
            doc["name"] = self.name
        return doc


@dataclass
class App(BaseManifest):
    """An application owning a namespace in the cluster."""

    name: str
    team: str = ""
    limits: Limits = field(default_factory=Limits)
    autoscale: Autoscale | None = None


@dataclass
class WorkloadSpec(BaseManifest):
    """Common description of a containerized workload."""

    kind: ClassVar[str] = ""

    namespace: str
    name: str
    image: str
    command: list[str] = field(default_factory=list)
    args: list[str] = field(default_factory=list)
    env: list[EnvVar] = field(default_factory=list)
    secret_env: SecretEnv | None = None
    labels: dict[str, str] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)
    limits: dict[str, str] = field(default_factory=dict)
    container_name: str | None = None

    @property
    def resource_id(self) -> NamedResource:
        return NamedResource(self.kind, self.namespace, self.name)

    @property
    def all_labels(self) -> dict[str, str]:
        return {APP_LABEL: self.name, **self.labels}

    def container(self) -> dict[str, Any]:
        """Return the container definition of the workload."""
        container: dict[str, Any] = {
            "name": self.container_name or self.name,
            "image": self.image,
        }
        if self.command:
            container["command"] = list(self.command)
        if self.args:
            container["args"] = list(self.args)
        env: list[dict[str, Any]] = [
            {"name": ev.key, "value": ev.value} for ev in self.env
        ]
        if self.secret_env:
            env.extend(
                {
                    "name": key,
                    "valueFrom": {
                        "secretKeyRef": {
                            "key": key,
                            "name": self.secret_env.secret_name,
                        }
                    },
                }
                for key in self.secret_env.keys
            )
        if env:
            container["env"] = env
        if self.limits:
            container["resources"] = {"limits": dict(self.limits)}
        return container

    def pod_template(self, restart_policy: str | None = None) -> dict[str, Any]:
        spec: dict[str, Any] = {"containers": [self.container()]}
        if restart_policy:
            spec["restartPolicy"] = restart_policy
        return {"metadata": {"labels": self.all_labels}, "spec": spec}

    def to_manifest(self) -> dict[str, Any]:
        raise NotImplementedError


@dataclass
class DeploySpec(WorkloadSpec):
    """A long running deployment."""

    kind: ClassVar[str] = DEPLOYMENT_KIND

    revision_history_limit: int = 10
    description: str | None = None
    ports: list[int] = field(default_factory=list)

    def container(self) -> dict[str, Any]:
        container = super().container()
        if self.ports:
            container["ports"] = [{"containerPort": port} for port in self.ports]
        return container

    def to_manifest(self, replicas: int = 1) -> dict[str, Any]:
        annotations = dict(self.annotations)
        if self.description:
            annotations[CHANGE_CAUSE_ANNOTATION] = self.description
        doc = new_object(
            DEPLOYMENT_KIND,
            self.name,
            self.namespace,
            labels=self.all_labels,
            annotations=annotations,
        )
        doc["spec"] = {
            "replicas": replicas,
            "revisionHistoryLimit": self.revision_history_limit,
            "selector": {"matchLabels": {APP_LABEL: self.name}},
            "template": self.pod_template(),
        }
        return doc


@dataclass
class CronJobSpec(WorkloadSpec):
    """A workload run on a schedule."""

    kind: ClassVar[str] = CRON_JOB_KIND

    schedule: str = "* * * * *"
    successful_jobs_history_limit: int = 3
    failed_jobs_history_limit: int = 1

    def to_manifest(self) -> dict[str, Any]:
        doc = new_object(
            CRON_JOB_KIND,
            self.name,
            self.namespace,
            labels=self.all_labels,
            annotations=self.annotations,
        )
        doc["spec"] = {
            "schedule": self.schedule,
            "successfulJobsHistoryLimit": self.successful_jobs_history_limit,
            "failedJobsHistoryLimit": self.failed_jobs_history_limit,
            "jobTemplate": {"spec": {"template": self.pod_template("Never")}},
        }
        return doc


@dataclass
class PodSpec(WorkloadSpec):
    """A transient pod that runs to completion."""

    kind: ClassVar[str] = POD_KIND

    def to_manifest(self) -> dict[str, Any]:
        doc = new_object(
            POD_KIND,
            self.name,
            self.namespace,
            labels=self.all_labels,
            annotations=self.annotations,
        )
        doc["spec"] = self.pod_template("Never")["spec"]
        return doc


def namespace_manifest(app: App, user: str) -> dict[str, Any]:
    """Return the Namespace owned by an app."""
    return new_object(
        NAMESPACE_KIND,
        app.name,
        labels={TEAM_LABEL: app.team},
        annotations={
            LAST_USER_ANNOTATION: user,
            APP_ANNOTATION: json.dumps(app.to_dict()),
        },
    )


def limit_range_manifest(app: App) -> dict[str, Any]:
    """Return the LimitRange holding the container defaults of an app."""
    item: dict[str, Any] = {"type": "Container"}
    if app.limits.default:
        item["default"] = {q.resource: q.quantity for q in app.limits.default}
    if app.limits.default_request:
        item["defaultRequest"] = {
            q.resource: q.quantity for q in app.limits.default_request
        }
    doc = new_object(LIMIT_RANGE_KIND, LIMIT_RANGE_NAME, app.name)
    doc["spec"] = {"limits": [item]}
    return doc


def autoscale_manifest(app: App) -> dict[str, Any]:
    """Return the HorizontalPodAutoscaler targeting the app deployment."""
    autoscale = app.autoscale or Autoscale()
    doc = new_object(HPA_KIND, app.name, app.name)
    doc["spec"] = {
        "scaleTargetRef": {
            "apiVersion": API_VERSIONS[DEPLOYMENT_KIND],
            "kind": DEPLOYMENT_KIND,
            "name": app.name,
        },
        "targetCPUUtilizationPercentage": autoscale.cpu_target_utilization,
        "minReplicas": autoscale.min,
        "maxReplicas": autoscale.max,
    }
    return doc


def config_map_manifest(
    namespace: str, name: str, data: dict[str, str]
) -> dict[str, Any]:
    doc = new_object(CONFIG_MAP_KIND, name, namespace)
    doc["data"] = dict(data)
    return doc


def secret_manifest(
    namespace: str, name: str, data: dict[str, bytes | str]
) -> dict[str, Any]:
    """Return an Opaque secret holding the raw `data` values.

    Values are base64 encoded as the secret `data` field requires, text is
    encoded as utf-8 first.
    """
    doc = new_object(SECRET_KIND, name, namespace)
    doc["type"] = "Opaque"
    doc["data"] = {
        key: base64.b64encode(
            value.encode() if isinstance(value, str) else value
        ).decode("ascii")
        for key, value in data.items()
    }
    return doc


def service_manifest(
    namespace: str,
    name: str,
    service_type: str = DEFAULT_SERVICE_TYPE,
    target_port: int = DEFAULT_CONTAINER_PORT,
) -> dict[str, Any]:
    doc = new_object(SERVICE_KIND, name, namespace, labels={APP_LABEL: name})
    doc["spec"] = {
        "type": service_type,
        "selector": {APP_LABEL: name},
        "ports": [ServicePort(80, target_port, name).to_manifest()],
    }
    return doc


def ingress_manifest(namespace: str, name: str, vhost: str) -> dict[str, Any]:
    doc = new_object(INGRESS_KIND, name, namespace)
    doc["spec"] = {
        "rules": [
            {
                "host": vhost,
                "http": {
                    "paths": [
                        {
                            "path": "/",
                            "pathType": "Prefix",
                            "backend": {
                                "service": {"name": name, "port": {"number": 80}}
                            },
                        }
                    ]
                },
            }
        ]
    }
    return doc


class PodPhase(StrEnum):
    """Lifecycle phase of a pod."""

    PENDING = "Pending"
    RUNNING = "Running"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    UNKNOWN = "Unknown"


@dataclass
class ContainerState(BaseManifest):
    """The current state of one container in a pod."""

    name: str
    state: str = ""
    reason: str | None = None
    exit_code: int | None = None
    restart_count: int = 0
    ready: bool = False

    @classmethod
    def parse_doc(cls, doc: dict[str, Any]) -> "ContainerState":
        state = doc.get("state") or {}
        result = cls(
            name=doc.get("name", ""),
            restart_count=doc.get("restartCount", 0),
            ready=doc.get("ready", False),
        )
        if (waiting := state.get("waiting")) is not None:
            result.state = "waiting"
            result.reason = waiting.get("reason")
        elif (terminated := state.get("terminated")) is not None:
            result.state = "terminated"
            result.reason = terminated.get("reason")
            result.exit_code = terminated.get("exitCode")
        elif state.get("running") is not None:
            result.state = "running"
            result.reason = PodPhase.RUNNING.value
        return result

    @property
    def terminated(self) -> bool:
        return self.state == "terminated"


@dataclass
class PodStatus(BaseManifest):
    """A view of the status of a pod as reported by the resource store."""

    name: str
    namespace: str | None
    phase: PodPhase = PodPhase.UNKNOWN
    start_time: datetime | None = None
    containers: list[ContainerState] = field(default_factory=list)

    @classmethod
    def parse_doc(cls, doc: dict[str, Any]) -> "PodStatus":
        """Parse the status of a raw pod object."""
        resource_id = NamedResource.from_doc(doc)
        status = doc.get("status") or {}
        try:
            phase = PodPhase(status.get("phase", PodPhase.UNKNOWN.value))
        except ValueError:
            _LOGGER.debug("Unrecognized phase for pod %s: %s", resource_id, status)
            phase = PodPhase.UNKNOWN
        return cls(
            name=resource_id.name,
            namespace=resource_id.namespace,
            phase=phase,
            start_time=parse_timestamp(status.get("startTime")),
            containers=[
                ContainerState.parse_doc(cs)
                for cs in status.get("containerStatuses") or []
            ],
        )

    @property
    def exit_code(self) -> int | None:
        """Exit code of the first terminated container, if any."""
        for container in self.containers:
            if container.terminated and container.exit_code is not None:
                return container.exit_code
        return None


@dataclass
class PodListItem(BaseManifest):
    """Summary of a pod for listing."""

    name: str
    state: str = ""
    age: float = 0.0
    restarts: int = 0
    ready: bool = False

    @classmethod
    def from_status(
        cls, status: PodStatus, now: datetime | None = None
    ) -> "PodListItem":
        item = cls(name=status.name)
        if status.start_time is not None:
            item.age = ((now or _now()) - status.start_time).total_seconds()
        for container in status.containers:
            item.state = container.reason or ""
            item.restarts = container.restart_count
            item.ready = container.ready
            if item.state:
                break
        return item


@dataclass
class ReplicaSetListItem(BaseManifest):
    """Summary of one revision of a deployment."""

    revision: str
    age: float
    current: bool
    description: str | None = None

    @classmethod
    def parse_doc(
        cls, doc: dict[str, Any], now: datetime | None = None
    ) -> "ReplicaSetListItem":
        metadata = doc.get("metadata") or {}
        annotations = metadata.get("annotations") or {}
        created = parse_timestamp(metadata.get("creationTimestamp"))
        age = ((now or _now()) - created).total_seconds() if created else 0.0
        return cls(
            revision=annotations.get(REVISION_ANNOTATION, ""),
            age=age,
            current=(doc.get("status") or {}).get("readyReplicas", 0) > 0,
            description=annotations.get(CHANGE_CAUSE_ANNOTATION),
        )


async def read_manifests(manifest_path: Path) -> list[dict[str, Any]]:
    """Return the kubernetes objects in a multi-document yaml file."""
    async with aiofiles.open(str(manifest_path)) as manifest_file:
        content = await manifest_file.read()
    try:
        docs = list(yaml.safe_load_all(content))
    except yaml.YAMLError as err:
        raise InputException(f"Unable to parse {manifest_path}: {err}") from err
    manifests = []
    for doc in docs:
        if doc is None:
            continue
        if not isinstance(doc, dict):
            raise InputException(
                f"Expected object in {manifest_path} but was {type(doc).__name__}"
            )
        NamedResource.from_doc(doc)
        manifests.append(doc)
    return manifests
