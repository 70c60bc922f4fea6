"""Abstract interface to the resource store of a cluster control plane."""

from abc import ABC, abstractmethod
from collections.abc import AsyncGenerator
from dataclasses import dataclass
from enum import StrEnum
from typing import Any, TYPE_CHECKING


class PatchType(StrEnum):
    """Semantics used by the store to merge a patch into a resource."""

    STRATEGIC = "strategic"
    MERGE = "merge"


@dataclass
class LogOptions:
    """Options for reading the logs of a pod."""

    follow: bool = False
    """Keep streaming as the container produces output."""

    tail_lines: int | None = None
    """Number of lines of backlog to return, or all when None."""

    previous: bool = False
    """Return the logs of the previous terminated container."""

    container: str | None = None
    """Container to read from, required for pods with multiple containers."""


class ResourceStore(ABC):
    """The system of record holding declarative resource state.

    Objects are plain kubernetes documents (`dict`). Implementations raise
    `ObjectNotFoundError` when an object is missing, `AlreadyExistsError` when
    a create loses a uniqueness race, and `ResourceStoreError` for any other
    failure communicating with the store.
    """

    @abstractmethod
    async def get(self, kind: str, namespace: str | None, name: str) -> dict[str, Any]:
        """Return the current state of an object."""

    @abstractmethod
    async def create(self, manifest: dict[str, Any]) -> dict[str, Any]:
        """Create a new object, returning the stored object."""

    @abstractmethod
    async def update(self, manifest: dict[str, Any]) -> dict[str, Any]:
        """Replace an existing object, returning the stored object."""

    @abstractmethod
    async def patch(
        self,
        kind: str,
        namespace: str | None,
        name: str,
        payload: str,
        patch_type: PatchType = PatchType.STRATEGIC,
    ) -> dict[str, Any]:
        """Merge a serialized patch into an existing object."""

    @abstractmethod
    async def delete(self, kind: str, namespace: str | None, name: str) -> None:
        """Delete an object."""

    @abstractmethod
    async def list_objects(
        self,
        kind: str,
        namespace: str | None = None,
        label_selector: str | None = None,
    ) -> list[dict[str, Any]]:
        """List objects of a kind, optionally filtered by a label selector."""

    @abstractmethod
    async def open_logs(
        self, namespace: str, pod_name: str, options: LogOptions
    ) -> AsyncGenerator[bytes, None]:
        """Stream the logs of a pod as chunks of bytes.

        With `follow` set the stream stays open until the container exits.
        """
        if TYPE_CHECKING:
            yield b""
