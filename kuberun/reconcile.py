"""Converge resources in the store towards a desired manifest.

The reconciler applies a manifest by updating the existing object first and
only creating it when the update reports the object does not exist. Updating
first preserves fields owned by the control plane, e.g. the current scale of a
deployment, that a create or blind replace would lose.

```python
from kuberun.reconcile import Reconciler
from kuberun.manifest import DeploySpec

reconciler = Reconciler(store)
await reconciler.apply_workload(
    DeploySpec(namespace="myapp", name="myapp", image="registry/myapp:v2")
)
```

The same algorithm applies to every kind of object. Any failure other than a
missing object is propagated without attempting a create.
"""

from collections.abc import Generator
from contextlib import contextmanager
import logging
from typing import Any

from .exceptions import ObjectNotFoundError, ResourceStoreError
from .manifest import DEPLOYMENT_KIND, DeploySpec, NamedResource, WorkloadSpec
from .patch import PatchPayload
from .store import ResourceStore

__all__ = [
    "ResourceClient",
    "Reconciler",
    "operation_context",
]

_LOGGER = logging.getLogger(__name__)

MIN_REPLICAS = 1


@contextmanager
def operation_context(message: str) -> Generator[None, None, None]:
    """Prepend the failed operation to store errors, preserving their type."""
    try:
        yield
    except ResourceStoreError as err:
        raise type(err)(f"{message}: {err}") from err


class ResourceClient:
    """Operations on the objects of a single kind in the store."""

    def __init__(self, store: ResourceStore, kind: str) -> None:
        """Initialize ResourceClient."""
        self._store = store
        self.kind = kind

    def _failed(self, verb: str) -> str:
        return f"{verb} {self.kind.lower()} failed"

    async def get(self, namespace: str | None, name: str) -> dict[str, Any]:
        with operation_context(self._failed("get")):
            return await self._store.get(self.kind, namespace, name)

    async def create(self, manifest: dict[str, Any]) -> dict[str, Any]:
        self._check(manifest)
        with operation_context(self._failed("create")):
            return await self._store.create(manifest)

    async def update(self, manifest: dict[str, Any]) -> dict[str, Any]:
        self._check(manifest)
        with operation_context(self._failed("update")):
            return await self._store.update(manifest)

    async def patch(self, payload: PatchPayload) -> dict[str, Any]:
        if payload.target.kind != self.kind:
            raise ValueError(f"Patch for {payload.target} sent to {self.kind} client")
        with operation_context(self._failed("patch")):
            return await self._store.patch(
                *payload.target_args, payload.data, payload.patch_type
            )

    async def delete(self, namespace: str | None, name: str) -> None:
        with operation_context(self._failed("delete")):
            await self._store.delete(self.kind, namespace, name)

    async def list_objects(
        self, namespace: str | None = None, label_selector: str | None = None
    ) -> list[dict[str, Any]]:
        with operation_context(self._failed("list")):
            return await self._store.list_objects(self.kind, namespace, label_selector)

    def _check(self, manifest: dict[str, Any]) -> None:
        if manifest.get("kind") != self.kind:
            raise ValueError(
                f"Manifest of kind {manifest.get('kind')} sent to {self.kind} client"
            )


class Reconciler:
    """Applies manifests with update-or-create semantics."""

    def __init__(self, store: ResourceStore) -> None:
        """Initialize Reconciler."""
        self._store = store
        self._clients: dict[str, ResourceClient] = {}

    def client(self, kind: str) -> ResourceClient:
        """Return the client for a kind of object."""
        if (client := self._clients.get(kind)) is None:
            client = ResourceClient(self._store, kind)
            self._clients[kind] = client
        return client

    async def apply(self, manifest: dict[str, Any]) -> dict[str, Any]:
        """Update the object described by the manifest, creating it if absent."""
        resource_id = NamedResource.from_doc(manifest)
        client = self.client(resource_id.kind)
        try:
            result = await client.update(manifest)
        except ObjectNotFoundError:
            _LOGGER.debug("%s does not exist, creating", resource_id)
        else:
            _LOGGER.debug("Updated %s", resource_id)
            return result
        result = await client.create(manifest)
        _LOGGER.info("Created %s", resource_id)
        return result

    async def current_replicas(self, namespace: str, name: str) -> int:
        """Return the live replica count of a deployment.

        A deployment that does not exist, cannot be read, or reports no
        replicas counts as the minimum of one replica.
        """
        try:
            deploy = await self.client(DEPLOYMENT_KIND).get(namespace, name)
        except ResourceStoreError as err:
            _LOGGER.debug("Unable to read replicas of %s/%s: %s", namespace, name, err)
            return MIN_REPLICAS
        replicas = (deploy.get("status") or {}).get("replicas") or 0
        return max(replicas, MIN_REPLICAS)

    async def apply_deploy(self, spec: DeploySpec) -> dict[str, Any]:
        """Apply a deployment, keeping its current scale."""
        replicas = await self.current_replicas(spec.namespace, spec.name)
        return await self.apply(spec.to_manifest(replicas))

    async def apply_workload(self, spec: WorkloadSpec) -> dict[str, Any]:
        """Apply any workload spec."""
        if isinstance(spec, DeploySpec):
            return await self.apply_deploy(spec)
        return await self.apply(spec.to_manifest())
