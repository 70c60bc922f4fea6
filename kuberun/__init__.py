"""
kuberun drives the lifecycle of applications in a kubernetes cluster.

- `reconcile` applies workloads with update-or-create semantics.
- `patch` builds minimal patches for objects that are already running.
- `runner` runs a pod to completion while streaming its output.
- `client` composes all of the above on top of a resource `store`.
"""

__all__ = [
    "client",
    "config",
    "exceptions",
    "manifest",
    "patch",
    "poll",
    "reconcile",
    "runner",
    "store",
    # Note this is exposed for CLI documentation, not to be used as a library
    "tool",
]
