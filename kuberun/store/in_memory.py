"""Module for an in memory resource store.

The in memory store behaves like a minimal control plane: it enforces name
uniqueness, keeps control plane owned fields (`status`, `resourceVersion`)
across updates, applies strategic merge patches and serves pod logs. It also
plays the part of the controllers for the few behaviors the library depends
on, e.g. reporting the replica count of a deployment in its status.

Tests drive pods through their lifecycle with `set_pod_phase`,
`set_pod_terminated` and `write_log`.
"""

import asyncio
from collections import defaultdict
from collections.abc import AsyncGenerator
import copy
from dataclasses import dataclass, field
from datetime import datetime, timezone
import itertools
import json
import logging
from typing import Any, DefaultDict
import uuid

from kuberun.exceptions import (
    AlreadyExistsError,
    InputException,
    ObjectNotFoundError,
    ResourceStoreError,
)
from kuberun.manifest import (
    CLUSTER_KINDS,
    DEPLOYMENT_KIND,
    POD_KIND,
    NamedResource,
    PodPhase,
)

from .merge import json_merge, strategic_merge
from .store import LogOptions, PatchType, ResourceStore

_LOGGER = logging.getLogger(__name__)

DEFAULT_NAMESPACE = "default"
_TERMINAL_PHASES = {PodPhase.SUCCEEDED, PodPhase.FAILED}


@dataclass
class _PodLog:
    """Log buffer of a single pod."""

    data: bytearray = field(default_factory=bytearray)
    closed: bool = False
    updated: asyncio.Event = field(default_factory=asyncio.Event)

    def tail_offset(self, tail_lines: int | None) -> int:
        if tail_lines is None:
            return 0
        if tail_lines <= 0:
            return len(self.data)
        lines = bytes(self.data).splitlines(keepends=True)
        return len(self.data) - sum(len(line) for line in lines[-tail_lines:])


def _matches(labels: dict[str, str], label_selector: str | None) -> bool:
    """Return True if the labels satisfy an equality based label selector."""
    if not label_selector:
        return True
    for requirement in label_selector.split(","):
        requirement = requirement.strip()
        if not requirement:
            continue
        if "!=" in requirement:
            key, value = requirement.split("!=", 1)
            if labels.get(key.strip()) == value.strip():
                return False
        elif "=" in requirement:
            key, value = requirement.replace("==", "=").split("=", 1)
            if labels.get(key.strip()) != value.strip():
                return False
        elif requirement.startswith("!"):
            if requirement[1:] in labels:
                return False
        elif requirement not in labels:
            return False
    return True


class InMemoryStore(ResourceStore):
    """In-memory implementation of the ResourceStore interface."""

    def __init__(self) -> None:
        """Initialize the InMemoryStore."""
        self._objects: dict[NamedResource, dict[str, Any]] = {}
        self._logs: DefaultDict[NamedResource, _PodLog] = defaultdict(_PodLog)
        self._errors: DefaultDict[str, list[Exception]] = defaultdict(list)
        self._versions = itertools.count(1)
        self.calls: list[tuple[str, NamedResource]] = []
        """Record of every operation issued against the store."""

    def _key(self, kind: str, namespace: str | None, name: str) -> NamedResource:
        if kind in CLUSTER_KINDS:
            return NamedResource(kind, None, name)
        return NamedResource(kind, namespace or DEFAULT_NAMESPACE, name)

    def _key_from_doc(self, manifest: dict[str, Any]) -> NamedResource:
        try:
            resource_id = NamedResource.from_doc(manifest)
        except InputException as err:
            raise ResourceStoreError(f"Invalid object: {err}") from err
        return self._key(resource_id.kind, resource_id.namespace, resource_id.name)

    def _record(self, operation: str, resource_id: NamedResource) -> None:
        _LOGGER.debug("%s %s", operation, resource_id)
        self.calls.append((operation, resource_id))
        if errors := self._errors.get(operation):
            raise errors.pop(0)

    def _get(self, resource_id: NamedResource) -> dict[str, Any]:
        if (obj := self._objects.get(resource_id)) is None:
            raise ObjectNotFoundError(f"{resource_id} not found")
        return obj

    def _store(self, resource_id: NamedResource, obj: dict[str, Any]) -> dict[str, Any]:
        metadata = obj.setdefault("metadata", {})
        if resource_id.namespace is not None:
            metadata["namespace"] = resource_id.namespace
        metadata["resourceVersion"] = str(next(self._versions))
        if resource_id.kind == DEPLOYMENT_KIND:
            # Stand in for the deployment controller
            replicas = (obj.get("spec") or {}).get("replicas", 1)
            obj.setdefault("status", {})["replicas"] = replicas
        self._objects[resource_id] = obj
        return copy.deepcopy(obj)

    def inject_error(self, operation: str, err: Exception) -> None:
        """Fail the next call of an operation (e.g. `update`) with an error."""
        self._errors[operation].append(err)

    async def get(self, kind: str, namespace: str | None, name: str) -> dict[str, Any]:
        """Return the current state of an object."""
        resource_id = self._key(kind, namespace, name)
        self._record("get", resource_id)
        return copy.deepcopy(self._get(resource_id))

    async def create(self, manifest: dict[str, Any]) -> dict[str, Any]:
        """Create a new object, returning the stored object."""
        resource_id = self._key_from_doc(manifest)
        self._record("create", resource_id)
        if resource_id in self._objects:
            raise AlreadyExistsError(f"{resource_id} already exists")
        obj = copy.deepcopy(manifest)
        metadata = obj.setdefault("metadata", {})
        metadata["uid"] = str(uuid.uuid4())
        metadata["creationTimestamp"] = (
            datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")
        )
        if resource_id.kind == POD_KIND:
            obj.setdefault("status", {}).setdefault("phase", PodPhase.PENDING.value)
            self._logs.pop(resource_id, None)
        return self._store(resource_id, obj)

    async def update(self, manifest: dict[str, Any]) -> dict[str, Any]:
        """Replace an existing object, keeping fields owned by the control plane."""
        resource_id = self._key_from_doc(manifest)
        self._record("update", resource_id)
        existing = self._get(resource_id)
        obj = copy.deepcopy(manifest)
        metadata = obj.setdefault("metadata", {})
        for key in ("uid", "creationTimestamp"):
            if key in existing["metadata"]:
                metadata[key] = existing["metadata"][key]
        if "status" in existing:
            obj["status"] = copy.deepcopy(existing["status"])
        return self._store(resource_id, obj)

    async def patch(
        self,
        kind: str,
        namespace: str | None,
        name: str,
        payload: str,
        patch_type: PatchType = PatchType.STRATEGIC,
    ) -> dict[str, Any]:
        """Merge a serialized patch into an existing object."""
        resource_id = self._key(kind, namespace, name)
        self._record("patch", resource_id)
        existing = self._get(resource_id)
        try:
            body = json.loads(payload)
        except json.JSONDecodeError as err:
            raise ResourceStoreError(f"Invalid patch for {resource_id}: {err}") from err
        if not isinstance(body, dict):
            raise ResourceStoreError(f"Invalid patch for {resource_id}: {payload}")
        if patch_type == PatchType.STRATEGIC:
            obj = strategic_merge(existing, body)
        else:
            obj = json_merge(existing, body)
        obj["metadata"]["name"] = resource_id.name
        return self._store(resource_id, obj)

    async def delete(self, kind: str, namespace: str | None, name: str) -> None:
        """Delete an object."""
        resource_id = self._key(kind, namespace, name)
        self._record("delete", resource_id)
        self._get(resource_id)
        del self._objects[resource_id]
        if resource_id in self._logs:
            self._close_log(resource_id)

    async def list_objects(
        self,
        kind: str,
        namespace: str | None = None,
        label_selector: str | None = None,
    ) -> list[dict[str, Any]]:
        """List objects of a kind, optionally filtered by a label selector."""
        self._record("list", NamedResource(kind, namespace, ""))
        return [
            copy.deepcopy(obj)
            for resource_id, obj in sorted(self._objects.items())
            if resource_id.kind == kind
            and (namespace is None or resource_id.namespace == namespace)
            and _matches(obj["metadata"].get("labels") or {}, label_selector)
        ]

    async def open_logs(
        self, namespace: str, pod_name: str, options: LogOptions
    ) -> AsyncGenerator[bytes, None]:
        """Stream the logs written to a pod with `write_log`."""
        resource_id = self._key(POD_KIND, namespace, pod_name)
        self._record("logs", resource_id)
        self._get(resource_id)
        log = self._logs[resource_id]
        offset = log.tail_offset(options.tail_lines)
        while True:
            if offset < len(log.data):
                chunk = bytes(log.data[offset:])
                offset = len(log.data)
                yield chunk
                continue
            if not options.follow or log.closed:
                return
            log.updated.clear()
            await log.updated.wait()

    def write_log(self, namespace: str, pod_name: str, data: bytes | str) -> None:
        """Append output to the logs of a pod."""
        if isinstance(data, str):
            data = data.encode()
        log = self._logs[self._key(POD_KIND, namespace, pod_name)]
        log.data.extend(data)
        log.updated.set()

    def _close_log(self, resource_id: NamedResource) -> None:
        log = self._logs[resource_id]
        log.closed = True
        log.updated.set()

    def set_pod_phase(self, namespace: str, pod_name: str, phase: PodPhase) -> None:
        """Move a pod to a new phase, ending its log stream if terminal."""
        resource_id = self._key(POD_KIND, namespace, pod_name)
        pod = self._get(resource_id)
        pod.setdefault("status", {})["phase"] = phase.value
        pod["metadata"]["resourceVersion"] = str(next(self._versions))
        if phase == PodPhase.RUNNING:
            pod["status"].setdefault(
                "startTime", datetime.now(timezone.utc).isoformat()
            )
        if phase in _TERMINAL_PHASES:
            self._close_log(resource_id)

    def set_pod_terminated(
        self,
        namespace: str,
        pod_name: str,
        exit_code: int,
        phase: PodPhase | None = None,
    ) -> None:
        """Terminate the container of a pod with an exit code."""
        resource_id = self._key(POD_KIND, namespace, pod_name)
        pod = self._get(resource_id)
        containers = pod.get("spec", {}).get("containers") or [{"name": pod_name}]
        pod.setdefault("status", {})["containerStatuses"] = [
            {
                "name": containers[0]["name"],
                "ready": False,
                "restartCount": 0,
                "state": {
                    "terminated": {
                        "exitCode": exit_code,
                        "reason": "Completed" if exit_code == 0 else "Error",
                    }
                },
            }
        ]
        if phase is None:
            phase = PodPhase.SUCCEEDED if exit_code == 0 else PodPhase.FAILED
        self.set_pod_phase(namespace, pod_name, phase)
