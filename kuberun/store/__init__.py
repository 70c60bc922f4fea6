"""
The store module provides access to the resource store of a cluster control plane.

- Objects are plain kubernetes documents keyed by kind, namespace and name.
- No client side cache is kept, every call reads or writes authoritative state.
- Missing objects raise ObjectNotFoundError so callers can branch on absence.

This abstract interface allows for various implementations (kubectl, in-memory, etc.).
"""

from .store import ResourceStore, LogOptions, PatchType
from .in_memory import InMemoryStore
from .kubectl import KubectlStore

__all__ = [
    "ResourceStore",
    "LogOptions",
    "PatchType",
    "InMemoryStore",
    "KubectlStore",
]
