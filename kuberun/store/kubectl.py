"""Resource store backed by the kubectl command line tool.

Every call runs a single `kubectl` subprocess with JSON output, so the store
keeps no state of its own and always reflects the control plane:

```python
from kuberun.config import KubectlConfig
from kuberun.store.kubectl import KubectlStore

store = KubectlStore(KubectlConfig(context="staging"))
deploy = await store.get("Deployment", "myapp", "myapp")
print(deploy["status"]["replicas"])
```
"""

from collections.abc import AsyncGenerator
import json
import logging
from typing import Any

from kuberun import command
from kuberun.command import Command, StreamCommand
from kuberun.config import KubectlConfig
from kuberun.exceptions import (
    AlreadyExistsError,
    ObjectNotFoundError,
    ResourceStoreError,
)
from kuberun.manifest import CLUSTER_KINDS, POD_KIND, NamedResource

from .store import LogOptions, PatchType, ResourceStore

__all__ = [
    "KubectlStore",
]

_LOGGER = logging.getLogger(__name__)

_NOT_FOUND = "(NotFound)"
_ALREADY_EXISTS = "(AlreadyExists)"


def _translate(
    err: ResourceStoreError, resource_id: NamedResource
) -> ResourceStoreError | None:
    """Map a kubectl failure onto the not found or already exists errors."""
    message = str(err)
    if _NOT_FOUND in message:
        return ObjectNotFoundError(f"{resource_id} not found: {message}")
    if _ALREADY_EXISTS in message:
        return AlreadyExistsError(f"{resource_id} already exists: {message}")
    return None


def _decode(out: str, resource_id: NamedResource) -> dict[str, Any]:
    try:
        doc = json.loads(out)
    except json.JSONDecodeError as err:
        raise ResourceStoreError(
            f"Unable to decode kubectl output for {resource_id}: {err}"
        ) from err
    if not isinstance(doc, dict):
        raise ResourceStoreError(f"Unexpected kubectl output for {resource_id}: {out}")
    return doc


class KubectlStore(ResourceStore):
    """A ResourceStore that issues kubectl commands."""

    def __init__(self, config: KubectlConfig | None = None) -> None:
        """Initialize KubectlStore."""
        self._config = config or KubectlConfig()

    def _cmd(self, *args: str) -> list[str]:
        cmd = [self._config.kubectl_bin]
        if self._config.kubeconfig:
            cmd.append(f"--kubeconfig={self._config.kubeconfig}")
        if self._config.context:
            cmd.append(f"--context={self._config.context}")
        cmd.extend(args)
        return cmd

    @staticmethod
    def _namespace_args(kind: str, namespace: str | None) -> list[str]:
        if kind in CLUSTER_KINDS or namespace is None:
            return []
        return ["--namespace", namespace]

    async def _run(
        self,
        args: list[str],
        resource_id: NamedResource,
        stdin: bytes | None = None,
    ) -> str:
        cmd = Command(self._cmd(*args), exc=ResourceStoreError)
        try:
            return await command.run(
                cmd, stdin=stdin, timeout=self._config.request_timeout
            )
        except ResourceStoreError as err:
            if (translated := _translate(err, resource_id)) is not None:
                raise translated from err
            raise

    async def get(self, kind: str, namespace: str | None, name: str) -> dict[str, Any]:
        """Return the current state of an object."""
        resource_id = NamedResource(kind, namespace, name)
        out = await self._run(
            [
                "get",
                kind.lower(),
                name,
                *self._namespace_args(kind, namespace),
                "-o",
                "json",
            ],
            resource_id,
        )
        return _decode(out, resource_id)

    async def create(self, manifest: dict[str, Any]) -> dict[str, Any]:
        """Create a new object, returning the stored object."""
        resource_id = NamedResource.from_doc(manifest)
        out = await self._run(
            ["create", "-f", "-", "-o", "json"],
            resource_id,
            stdin=json.dumps(manifest).encode(),
        )
        return _decode(out, resource_id)

    async def update(self, manifest: dict[str, Any]) -> dict[str, Any]:
        """Replace an existing object, returning the stored object."""
        resource_id = NamedResource.from_doc(manifest)
        out = await self._run(
            ["replace", "-f", "-", "-o", "json"],
            resource_id,
            stdin=json.dumps(manifest).encode(),
        )
        return _decode(out, resource_id)

    async def patch(
        self,
        kind: str,
        namespace: str | None,
        name: str,
        payload: str,
        patch_type: PatchType = PatchType.STRATEGIC,
    ) -> dict[str, Any]:
        """Merge a serialized patch into an existing object."""
        resource_id = NamedResource(kind, namespace, name)
        out = await self._run(
            [
                "patch",
                kind.lower(),
                name,
                *self._namespace_args(kind, namespace),
                "--type",
                str(patch_type),
                "-p",
                payload,
                "-o",
                "json",
            ],
            resource_id,
        )
        return _decode(out, resource_id)

    async def delete(self, kind: str, namespace: str | None, name: str) -> None:
        """Delete an object without waiting for finalizers."""
        resource_id = NamedResource(kind, namespace, name)
        await self._run(
            [
                "delete",
                kind.lower(),
                name,
                *self._namespace_args(kind, namespace),
                "--wait=false",
            ],
            resource_id,
        )

    async def list_objects(
        self,
        kind: str,
        namespace: str | None = None,
        label_selector: str | None = None,
    ) -> list[dict[str, Any]]:
        """List objects of a kind, optionally filtered by a label selector."""
        resource_id = NamedResource(kind, namespace, "")
        args = ["get", kind.lower()]
        if kind not in CLUSTER_KINDS:
            args.extend(
                ["--namespace", namespace] if namespace else ["--all-namespaces"]
            )
        if label_selector:
            args.extend(["-l", label_selector])
        args.extend(["-o", "json"])
        out = await self._run(args, resource_id)
        return list(_decode(out, resource_id).get("items") or [])

    async def open_logs(
        self, namespace: str, pod_name: str, options: LogOptions
    ) -> AsyncGenerator[bytes, None]:
        """Stream the logs of a pod with `kubectl logs`."""
        resource_id = NamedResource(POD_KIND, namespace, pod_name)
        args = ["logs", pod_name, "--namespace", namespace]
        if options.follow:
            args.append("--follow")
        if options.tail_lines is not None:
            args.append(f"--tail={options.tail_lines}")
        if options.previous:
            args.append("--previous")
        if options.container:
            args.append(f"--container={options.container}")
        cmd = StreamCommand(self._cmd(*args), exc=ResourceStoreError)
        try:
            async for chunk in cmd.stream():
                yield chunk
        except ResourceStoreError as err:
            if (translated := _translate(err, resource_id)) is not None:
                raise translated from err
            raise
