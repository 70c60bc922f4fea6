"""Client for driving the lifecycle of applications in a cluster.

The client composes the reconciler, the patch builder and the job runner on
top of a single resource store. It is the entry point used by the command
line tool:

```python
from kuberun.client import Client
from kuberun.config import ClientConfig
from kuberun.manifest import DeploySpec, EnvVar

client = Client(ClientConfig())
await client.create_or_update_deploy(
    DeploySpec(namespace="myapp", name="myapp", image="registry/myapp:v2")
)
await client.create_or_update_deploy_env_vars(
    "myapp", "myapp", [EnvVar("LOG_LEVEL", "debug")]
)
```
"""

from collections.abc import AsyncGenerator, Iterable
from datetime import datetime
import logging
from typing import Any, TextIO

from .config import ClientConfig
from .exceptions import ObjectNotFoundError
from .manifest import (
    CRON_JOB_KIND,
    DEFAULT_SERVICE_TYPE,
    DEPLOYMENT_KIND,
    INGRESS_KIND,
    LIMIT_RANGE_KIND,
    NAMESPACE_KIND,
    POD_KIND,
    REPLICA_SET_KIND,
    SERVICE_KIND,
    App,
    CronJobSpec,
    DeploySpec,
    EnvVar,
    NamedResource,
    PodListItem,
    PodSpec,
    PodStatus,
    ReplicaSetListItem,
    SecretEnv,
    ServicePort,
    WorkloadSpec,
    autoscale_manifest,
    config_map_manifest,
    ingress_manifest,
    limit_range_manifest,
    namespace_manifest,
    secret_manifest,
    service_manifest,
)
from .patch import (
    PatchIntent,
    PatchPayload,
    annotations_patch,
    build_patch,
    delete_env_vars,
    env_patch,
    env_vars,
    secret_env_vars,
)
from .reconcile import Reconciler
from .runner import JobRunner, RunSession
from .store import KubectlStore, LogOptions, ResourceStore
from .task import TaskService

__all__ = [
    "Client",
]

_LOGGER = logging.getLogger(__name__)


class Client:
    """Operations on the applications deployed in a cluster."""

    def __init__(
        self,
        config: ClientConfig | None = None,
        store: ResourceStore | None = None,
        task_service: TaskService | None = None,
    ) -> None:
        """Initialize Client, talking to the cluster with kubectl by default."""
        self._config = config or ClientConfig()
        self._store = store or KubectlStore(self._config.kubectl)
        self._reconciler = Reconciler(self._store)
        self._runner = JobRunner(self._store, self._config.runner, task_service)

    @property
    def store(self) -> ResourceStore:
        return self._store

    async def health_check(self) -> None:
        """Verify the cluster can be reached by listing its namespaces."""
        await self._reconciler.client(NAMESPACE_KIND).list_objects()

    async def apply_workload(self, spec: WorkloadSpec) -> dict[str, Any]:
        """Create or update a deployment, cronjob or pod."""
        return await self._reconciler.apply_workload(spec)

    async def apply_manifest(self, manifest: dict[str, Any]) -> dict[str, Any]:
        """Create or update an arbitrary object.

        A deployment that does not set a replica count keeps its current scale.
        """
        resource_id = NamedResource.from_doc(manifest)
        spec = manifest.get("spec") or {}
        if resource_id.kind == DEPLOYMENT_KIND and "replicas" not in spec:
            replicas = await self._reconciler.current_replicas(
                resource_id.namespace or "", resource_id.name
            )
            manifest = {**manifest, "spec": {**spec, "replicas": replicas}}
        return await self._reconciler.apply(manifest)

    async def apply_patch(
        self,
        kind: str,
        target: NamedResource | tuple[str, str],
        intent: PatchIntent,
        data: Any,
        now: datetime | None = None,
    ) -> dict[str, Any]:
        """Apply an incremental change to a resource that already exists.

        The target is either a `NamedResource` or a (namespace, name) pair.
        """
        if not isinstance(target, NamedResource):
            namespace, name = target
            target = NamedResource(kind, namespace, name)
        elif target.kind != kind:
            target = NamedResource(kind, target.namespace, target.name)
        return await self.patch(build_patch(target, intent, data, now=now))

    async def patch(self, payload: PatchPayload) -> dict[str, Any]:
        """Send a patch built with the `kuberun.patch` library."""
        _LOGGER.debug("Patching %s", payload.target)
        return await self._reconciler.client(payload.target.kind).patch(payload)

    async def run_to_completion(self, spec: PodSpec) -> RunSession:
        """Run a pod, returning its output stream and completion."""
        return await self._runner.run(spec)

    async def create_or_update_deploy(self, spec: DeploySpec) -> dict[str, Any]:
        return await self._reconciler.apply_deploy(spec)

    async def create_or_update_cronjob(self, spec: CronJobSpec) -> dict[str, Any]:
        return await self._reconciler.apply(spec.to_manifest())

    async def create_or_update_secret(
        self, namespace: str, name: str, data: dict[str, bytes | str]
    ) -> dict[str, Any]:
        """Create or update a secret from raw values."""
        return await self._reconciler.apply(secret_manifest(namespace, name, data))

    async def create_or_update_config_map(
        self, namespace: str, name: str, data: dict[str, str]
    ) -> dict[str, Any]:
        return await self._reconciler.apply(config_map_manifest(namespace, name, data))

    async def create_or_update_autoscale(self, app: App) -> dict[str, Any]:
        return await self._reconciler.apply(autoscale_manifest(app))

    async def create_namespace(self, app: App, user: str) -> dict[str, Any]:
        """Create the namespace owned by an app."""
        return await self._reconciler.client(NAMESPACE_KIND).create(
            namespace_manifest(app, user)
        )

    async def create_quota(self, app: App) -> dict[str, Any]:
        """Create the default container limits of an app."""
        return await self._reconciler.client(LIMIT_RANGE_KIND).create(
            limit_range_manifest(app)
        )

    async def delete_namespace(self, namespace: str) -> None:
        await self._reconciler.client(NAMESPACE_KIND).delete(None, namespace)

    async def _update_metadata(
        self, namespace: str, field_name: str, values: dict[str, str]
    ) -> dict[str, Any]:
        namespaces = self._reconciler.client(NAMESPACE_KIND)
        doc = await namespaces.get(None, namespace)
        doc["metadata"].setdefault(field_name, {}).update(values)
        return await namespaces.update(doc)

    async def set_namespace_annotations(
        self, namespace: str, annotations: dict[str, str]
    ) -> dict[str, Any]:
        """Add or overwrite annotations of a namespace, keeping the others."""
        return await self._update_metadata(namespace, "annotations", annotations)

    async def set_namespace_labels(
        self, namespace: str, labels: dict[str, str]
    ) -> dict[str, Any]:
        """Add or overwrite labels of a namespace, keeping the others."""
        return await self._update_metadata(namespace, "labels", labels)

    async def namespace_list_by_label(
        self, label: str, value: str | None = None
    ) -> list[str]:
        """Names of the namespaces with a label, optionally with a given value."""
        selector = f"{label}={value}" if value else label
        items = await self._reconciler.client(NAMESPACE_KIND).list_objects(
            label_selector=selector
        )
        return [item["metadata"]["name"] for item in items]

    async def create_or_update_deploy_env_vars(
        self, namespace: str, name: str, evs: Iterable[EnvVar]
    ) -> dict[str, Any]:
        return await self.patch(
            env_patch(DEPLOYMENT_KIND, namespace, name, env_vars(evs))
        )

    async def create_or_update_cronjob_env_vars(
        self, namespace: str, name: str, evs: Iterable[EnvVar]
    ) -> dict[str, Any]:
        return await self.patch(
            env_patch(CRON_JOB_KIND, namespace, name, env_vars(evs))
        )

    async def create_or_update_deploy_secret_env_vars(
        self, namespace: str, name: str, secret_env: SecretEnv
    ) -> dict[str, Any]:
        env = secret_env_vars(secret_env.secret_name, secret_env.keys)
        return await self.patch(env_patch(DEPLOYMENT_KIND, namespace, name, env))

    async def create_or_update_cronjob_secret_env_vars(
        self, namespace: str, name: str, secret_env: SecretEnv
    ) -> dict[str, Any]:
        env = secret_env_vars(secret_env.secret_name, secret_env.keys)
        return await self.patch(env_patch(CRON_JOB_KIND, namespace, name, env))

    async def delete_deploy_env_vars(
        self, namespace: str, name: str, names: Iterable[str]
    ) -> dict[str, Any]:
        return await self.patch(
            env_patch(DEPLOYMENT_KIND, namespace, name, delete_env_vars(names))
        )

    async def delete_cronjob_env_vars(
        self, namespace: str, name: str, names: Iterable[str]
    ) -> dict[str, Any]:
        return await self.patch(
            env_patch(CRON_JOB_KIND, namespace, name, delete_env_vars(names))
        )

    async def deploy_set_replicas(
        self, namespace: str, name: str, replicas: int
    ) -> dict[str, Any]:
        return await self.apply_patch(
            DEPLOYMENT_KIND, (namespace, name), PatchIntent.REPLICAS, replicas
        )

    async def deploy_rollback_to_revision(
        self, namespace: str, name: str, revision: str
    ) -> dict[str, Any]:
        return await self.apply_patch(
            DEPLOYMENT_KIND, (namespace, name), PatchIntent.ROLLBACK, revision
        )

    async def set_service_annotations(
        self, namespace: str, name: str, annotations: dict[str, str]
    ) -> dict[str, Any]:
        """Replace all annotations of a service."""
        return await self.patch(
            annotations_patch(SERVICE_KIND, namespace, name, annotations)
        )

    async def update_service_ports(
        self, namespace: str, name: str, ports: Iterable[ServicePort]
    ) -> dict[str, Any]:
        """Replace the ports of a service."""
        services = self._reconciler.client(SERVICE_KIND)
        doc = await services.get(namespace, name)
        doc.setdefault("spec", {})["ports"] = [port.to_manifest() for port in ports]
        return await services.update(doc)

    async def pod_logs(
        self, namespace: str, pod_name: str, options: LogOptions | None = None
    ) -> AsyncGenerator[bytes, None]:
        """Stream the logs of a pod."""
        async for chunk in self._store.open_logs(
            namespace, pod_name, options or LogOptions()
        ):
            yield chunk

    async def pod_list(
        self, namespace: str, label_selector: str | None = None
    ) -> list[PodListItem]:
        items = await self._reconciler.client(POD_KIND).list_objects(
            namespace, label_selector
        )
        return [PodListItem.from_status(PodStatus.parse_doc(item)) for item in items]

    async def delete_pod(self, namespace: str, pod_name: str) -> None:
        await self._reconciler.client(POD_KIND).delete(namespace, pod_name)

    async def replica_set_list_by_label(
        self, namespace: str, label: str, value: str
    ) -> list[ReplicaSetListItem]:
        """Summarize the revisions of a deployment."""
        items = await self._reconciler.client(REPLICA_SET_KIND).list_objects(
            namespace, f"{label}={value}"
        )
        return [ReplicaSetListItem.parse_doc(item) for item in items]

    async def _exists(self, kind: str, namespace: str, name: str) -> bool:
        try:
            await self._reconciler.client(kind).get(namespace, name)
        except ObjectNotFoundError:
            return False
        return True

    async def expose_deploy(
        self,
        namespace: str,
        name: str,
        vhost: str,
        out: TextIO,
        service_type: str = DEFAULT_SERVICE_TYPE,
    ) -> None:
        """Create the service, and the ingress when enabled, of a deployment.

        Objects that already exist are left untouched. Progress is written to
        `out` as each object is created.
        """
        if not await self._exists(SERVICE_KIND, namespace, name):
            print("Exposing service", file=out)
            await self._reconciler.client(SERVICE_KIND).create(
                service_manifest(namespace, name, service_type)
            )
        if not self._config.ingress:
            return
        if not await self._exists(INGRESS_KIND, namespace, name):
            print("Creating ingress", file=out)
            await self._reconciler.client(INGRESS_KIND).create(
                ingress_manifest(namespace, name, vhost)
            )

