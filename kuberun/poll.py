"""Poll a resource until it reaches a desired state.

The poller evaluates a predicate immediately and then once per check interval
until the predicate reports it is done, a hard failure is raised, or the
timeout elapses:

```python
from kuberun.poll import poll_until, PollResult

async def is_ready() -> PollResult:
    doc = await store.get("Pod", "default", "hello")
    if doc["status"]["phase"] == "Running":
        return PollResult.DONE
    return PollResult.NOT_YET

await poll_until(1.0, 300.0, is_ready)
```

A predicate signals a terminal state that can never recover by raising
`ResourceFailedError`. Any other exception, including a failed read of the
resource, aborts the poll and is propagated unchanged.
"""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
import logging

from .exceptions import PollTimeoutError, ResourceFailedError

__all__ = [
    "PollResult",
    "Condition",
    "poll_until",
    "phase_predicate",
]

_LOGGER = logging.getLogger(__name__)


class PollResult(Enum):
    """Outcome of a single evaluation of a poll predicate."""

    NOT_YET = "not_yet"
    DONE = "done"


Predicate = Callable[[], Awaitable[PollResult]]


async def poll_until(
    check_interval: float,
    timeout: float,
    predicate: Predicate,
    resource_name: str = "resource",
) -> None:
    """Evaluate the predicate until it is done or the timeout elapses.

    Raises:
        PollTimeoutError: The predicate was not done within the timeout.
        ResourceFailedError: The predicate detected a terminal failure.
    """
    loop = asyncio.get_running_loop()
    deadline = asyncio.timeout_at(loop.time() + timeout)
    attempt = 0
    try:
        async with deadline:
            while True:
                attempt += 1
                result = await predicate()
                _LOGGER.debug(
                    "Poll %s attempt %d result %s", resource_name, attempt, result
                )
                if result == PollResult.DONE:
                    return
                await asyncio.sleep(check_interval)
    except TimeoutError as err:
        if not deadline.expired():
            raise
        raise PollTimeoutError(resource_name, timeout) from err


@dataclass(frozen=True)
class Condition:
    """A set of phases that end a poll, and phases that fail it."""

    name: str
    done: frozenset[str]
    failed: frozenset[str] = field(default_factory=frozenset)
    error: Callable[[str], ResourceFailedError] | None = None
    """Builds the error raised when a failed phase is observed."""


def phase_predicate(
    fetch_phase: Callable[[], Awaitable[str]],
    condition: Condition,
    resource_name: str,
) -> Predicate:
    """Return a predicate that checks the phase of a resource against a condition."""

    async def check() -> PollResult:
        phase = await fetch_phase()
        if phase in condition.failed:
            if condition.error is not None:
                raise condition.error(resource_name)
            raise ResourceFailedError(
                resource_name,
                f"entered phase {phase} while waiting to be {condition.name}",
            )
        if phase in condition.done:
            _LOGGER.debug(
                "Resource %s is %s (%s)", resource_name, condition.name, phase
            )
            return PollResult.DONE
        return PollResult.NOT_YET

    return check
