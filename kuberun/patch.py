"""Library for building minimal patches for resources that are already running.

Each builder returns a `PatchPayload` addressed to a single named resource.
Payloads only contain the fields being changed, so fields set by other actors
(volumes, other containers, current status) are left untouched when the store
merges them:

```python
from kuberun import patch
from kuberun.manifest import EnvVar

payload = patch.deploy_env_patch(
    "myapp", "myapp", patch.env_vars([EnvVar("LOG_LEVEL", "debug")])
)
await store.patch(*payload.target_args, payload.data)
```

Environment patches also stamp the pod template with the current time. A
rollout is only triggered when the pod template changes, and the stamp makes
sure an env-only change is not treated as a no-op.
"""

from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import StrEnum
import json
import logging
from typing import Any

from .exceptions import PatchBuildError
from .manifest import (
    CHANGE_CAUSE_ANNOTATION,
    CRON_JOB_KIND,
    DEPLOYMENT_KIND,
    EnvVar,
    NamedResource,
    SecretEnv,
)
from .store import PatchType

__all__ = [
    "PatchIntent",
    "PatchPayload",
    "env_vars",
    "secret_env_vars",
    "delete_env_vars",
    "env_patch",
    "deploy_env_patch",
    "cronjob_env_patch",
    "replicas_patch",
    "rollback_patch",
    "annotations_patch",
    "build_patch",
]

_LOGGER = logging.getLogger(__name__)

ENV_CHANGE_CAUSE = "update env vars"
DATE_ANNOTATION = "date"
PATCH_DIRECTIVE = "$patch"


class PatchIntent(StrEnum):
    """The kinds of incremental mutation that can be applied to a resource."""

    ENV = "env"
    SECRET_ENV = "secret-env"
    DELETE_ENV = "delete-env"
    REPLICAS = "replicas"
    ROLLBACK = "rollback"
    ANNOTATIONS = "annotations"


@dataclass(frozen=True)
class PatchPayload:
    """A partial update for a single resource."""

    target: NamedResource
    """The resource the patch applies to."""

    body: dict[str, Any]
    """The fields to merge into the resource."""

    patch_type: PatchType = PatchType.STRATEGIC
    """How the store merges the body into the resource."""

    stamped_at: datetime | None = None
    """Time stamped on the pod template to force a rollout, if any."""

    data: str = field(init=False, repr=False, compare=False)
    """The serialized body."""

    def __post_init__(self) -> None:
        try:
            data = json.dumps(self.body)
        except (TypeError, ValueError) as err:
            raise PatchBuildError(
                f"Failed to encode patch for {self.target}: {err}"
            ) from err
        object.__setattr__(self, "data", data)

    @property
    def target_args(self) -> tuple[str, str | None, str]:
        """The kind, namespace and name of the target resource."""
        return (self.target.kind, self.target.namespace, self.target.name)


def env_vars(evs: Iterable[EnvVar]) -> list[dict[str, Any]]:
    """Encode literal environment variables."""
    env = []
    for ev in evs:
        if not ev.key:
            raise PatchBuildError(f"Environment variable is missing a name: {ev}")
        env.append({"name": ev.key, "value": ev.value or ""})
    return env


def secret_env_vars(secret_name: str, keys: Iterable[str]) -> list[dict[str, Any]]:
    """Encode environment variables that reference keys of a secret."""
    if not secret_name:
        raise PatchBuildError("Secret environment variables require a secret name")
    env = []
    for key in keys:
        if not key:
            raise PatchBuildError(f"Secret {secret_name} key is missing a name")
        env.append(
            {
                "name": key,
                "valueFrom": {"secretKeyRef": {"key": key, "name": secret_name}},
            }
        )
    return env


def delete_env_vars(names: Iterable[str]) -> list[dict[str, Any]]:
    """Encode environment variables to be removed by the merge."""
    env = []
    for name in names:
        if not name:
            raise PatchBuildError("Environment variable to delete is missing a name")
        env.append({"name": name, PATCH_DIRECTIVE: "delete"})
    return env


def _deploy_template(template: dict[str, Any]) -> dict[str, Any]:
    return {"spec": {"template": template}}


def _cronjob_template(template: dict[str, Any]) -> dict[str, Any]:
    return {"spec": {"jobTemplate": {"spec": {"template": template}}}}


# Location of the pod template for each kind that runs containers
_POD_TEMPLATES: dict[str, Callable[[dict[str, Any]], dict[str, Any]]] = {
    DEPLOYMENT_KIND: _deploy_template,
    CRON_JOB_KIND: _cronjob_template,
}


def env_patch(
    kind: str,
    namespace: str,
    name: str,
    env: list[dict[str, Any]],
    container: str | None = None,
    now: datetime | None = None,
) -> PatchPayload:
    """Build a patch setting or removing environment variables of a container.

    The container defaults to the one named after the resource.
    """
    if not (template_path := _POD_TEMPLATES.get(kind)):
        raise PatchBuildError(f"Environment variables cannot be patched on {kind}")
    stamped_at = now or datetime.now(timezone.utc)
    body = template_path(
        {
            "metadata": {"annotations": {DATE_ANNOTATION: stamped_at.isoformat()}},
            "spec": {"containers": [{"name": container or name, "env": env}]},
        }
    )
    body["metadata"] = {"annotations": {CHANGE_CAUSE_ANNOTATION: ENV_CHANGE_CAUSE}}
    return PatchPayload(
        target=NamedResource(kind, namespace, name),
        body=body,
        stamped_at=stamped_at,
    )


def deploy_env_patch(
    namespace: str,
    name: str,
    env: list[dict[str, Any]],
    container: str | None = None,
    now: datetime | None = None,
) -> PatchPayload:
    """Build an environment variable patch for a Deployment."""
    return env_patch(DEPLOYMENT_KIND, namespace, name, env, container, now)


def cronjob_env_patch(
    namespace: str,
    name: str,
    env: list[dict[str, Any]],
    container: str | None = None,
    now: datetime | None = None,
) -> PatchPayload:
    """Build an environment variable patch for a CronJob."""
    return env_patch(CRON_JOB_KIND, namespace, name, env, container, now)


def replicas_patch(namespace: str, name: str, replicas: int) -> PatchPayload:
    """Build a patch setting the desired replica count of a Deployment."""
    if isinstance(replicas, bool) or not isinstance(replicas, int) or replicas < 0:
        raise PatchBuildError(f"Invalid replica count for {name}: {replicas!r}")
    return PatchPayload(
        target=NamedResource(DEPLOYMENT_KIND, namespace, name),
        body={"spec": {"replicas": replicas}},
    )


def rollback_patch(namespace: str, name: str, revision: str) -> PatchPayload:
    """Build a patch rolling a Deployment back to a prior revision."""
    try:
        number = int(revision)
    except (TypeError, ValueError) as err:
        raise PatchBuildError(f"Invalid revision for {name}: {revision!r}") from err
    return PatchPayload(
        target=NamedResource(DEPLOYMENT_KIND, namespace, name),
        body={"spec": {"rollbackTo": {"revision": number}}},
    )


def annotations_patch(
    kind: str, namespace: str | None, name: str, annotations: dict[str, str]
) -> PatchPayload:
    """Build a patch replacing the full annotation map of a resource.

    Annotations that are not in `annotations` are removed.
    """
    for key, value in annotations.items():
        if not key or not isinstance(value, str):
            raise PatchBuildError(f"Invalid annotation for {name}: {key}={value!r}")
    return PatchPayload(
        target=NamedResource(kind, namespace, name),
        body={"metadata": {"annotations": {PATCH_DIRECTIVE: "replace", **annotations}}},
    )


def build_patch(
    target: NamedResource,
    intent: PatchIntent,
    data: Any,
    now: datetime | None = None,
) -> PatchPayload:
    """Build the patch for a mutation intent from its data.

    The expected data for each intent:
      ENV: list of `EnvVar`
      SECRET_ENV: a `SecretEnv`
      DELETE_ENV: list of variable names
      REPLICAS: the replica count
      ROLLBACK: the revision
      ANNOTATIONS: the complete annotation map
    """
    kind, namespace, name = target.kind, target.namespace or "", target.name
    _LOGGER.debug("Building %s patch for %s", intent, target)
    match intent:
        case PatchIntent.ENV:
            return env_patch(kind, namespace, name, env_vars(data), now=now)
        case PatchIntent.SECRET_ENV:
            if not isinstance(data, SecretEnv):
                raise PatchBuildError(f"Expected SecretEnv for {target}: {data!r}")
            env = secret_env_vars(data.secret_name, data.keys)
            return env_patch(kind, namespace, name, env, now=now)
        case PatchIntent.DELETE_ENV:
            return env_patch(kind, namespace, name, delete_env_vars(data), now=now)
        case PatchIntent.REPLICAS:
            _check_kind(target, DEPLOYMENT_KIND)
            return replicas_patch(namespace, name, data)
        case PatchIntent.ROLLBACK:
            _check_kind(target, DEPLOYMENT_KIND)
            return rollback_patch(namespace, name, data)
        case PatchIntent.ANNOTATIONS:
            return annotations_patch(kind, target.namespace, name, dict(data))
    raise PatchBuildError(f"Unsupported patch intent: {intent}")


def _check_kind(target: NamedResource, kind: str) -> None:
    if target.kind != kind:
        raise PatchBuildError(f"Patch only applies to {kind}, not {target}")
