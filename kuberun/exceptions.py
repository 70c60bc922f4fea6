"""Exceptions related to kuberun."""

__all__ = [
    "KubeRunException",
    "InputException",
    "PatchBuildError",
    "CommandException",
    "ResourceStoreError",
    "ObjectNotFoundError",
    "AlreadyExistsError",
    "PollTimeoutError",
    "ResourceFailedError",
    "PodRunFailedError",
    "PodStillRunningError",
]


class KubeRunException(Exception):
    """Generic base exception used for this library."""


class InputException(KubeRunException):
    """Raised when the input manifests or values are not formatted as expected."""


class PatchBuildError(InputException):
    """Raised when a patch payload cannot be constructed from the mutation data."""


class CommandException(KubeRunException):
    """Raised when there is a failure running a subcommand."""


class ResourceStoreError(CommandException):
    """Raised when there is a failure communicating with the resource store."""


class ObjectNotFoundError(ResourceStoreError):
    """Raised when an object is not found in the resource store."""


class AlreadyExistsError(ResourceStoreError):
    """Raised when creating an object that already exists in the resource store."""


class PollTimeoutError(KubeRunException):
    """Raised when a condition was not met within the allotted time."""

    def __init__(self, resource_name: str, timeout: float) -> None:
        super().__init__(
            f"Timed out after {timeout:g}s waiting for resource {resource_name}"
        )
        self.resource_name = resource_name
        self.timeout = timeout


class ResourceFailedError(KubeRunException):
    """Raised when a resource is in a terminal state it can never recover from."""

    def __init__(self, resource_name: str, message: str | None) -> None:
        super().__init__(
            f"Resource {resource_name} failed: {message or 'Unknown error'}"
        )
        self.resource_name = resource_name
        self.message = message


class PodRunFailedError(ResourceFailedError):
    """Raised when a pod reaches the Failed phase before it was running."""

    def __init__(self, resource_name: str) -> None:
        super().__init__(resource_name, "run failed to start")


class PodStillRunningError(KubeRunException):
    """Raised when a pod reports a terminal phase without a terminated container."""

    def __init__(self, resource_name: str) -> None:
        super().__init__(
            f"Pod {resource_name} reported a terminal phase but no container "
            "has terminated"
        )
        self.resource_name = resource_name
