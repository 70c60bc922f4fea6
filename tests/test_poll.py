"""Tests for the poll library."""

import asyncio
from collections.abc import Awaitable, Callable

import pytest

from kuberun.exceptions import (
    PodRunFailedError,
    PollTimeoutError,
    ResourceFailedError,
    ResourceStoreError,
)
from kuberun.poll import Condition, PollResult, phase_predicate, poll_until


class ScriptedPredicate:
    """A predicate returning a scripted sequence of results."""

    def __init__(self, *results: PollResult | Exception) -> None:
        self._results = list(results)
        self.calls = 0

    async def __call__(self) -> PollResult:
        self.calls += 1
        result = self._results.pop(0) if self._results else PollResult.NOT_YET
        if isinstance(result, Exception):
            raise result
        return result


async def test_done_immediately() -> None:
    """Test the predicate is evaluated before sleeping."""
    predicate = ScriptedPredicate(PollResult.DONE)
    loop = asyncio.get_running_loop()
    start = loop.time()
    await poll_until(10.0, 60.0, predicate)
    assert predicate.calls == 1
    assert loop.time() - start < 1.0


async def test_done_after_retries() -> None:
    """Test polling until the predicate is done."""
    predicate = ScriptedPredicate(
        PollResult.NOT_YET, PollResult.NOT_YET, PollResult.DONE
    )
    await poll_until(0.01, 5.0, predicate)
    assert predicate.calls == 3


async def test_timeout() -> None:
    """Test a predicate that is never done."""
    predicate = ScriptedPredicate()
    with pytest.raises(PollTimeoutError, match="waiting for resource ns/pod") as exc:
        await poll_until(0.01, 0.05, predicate, "ns/pod")
    assert exc.value.resource_name == "ns/pod"
    assert exc.value.timeout == 0.05
    assert predicate.calls >= 2


async def test_hard_failure() -> None:
    """Test a terminal failure stops polling without waiting for the timeout."""
    predicate = ScriptedPredicate(
        PollResult.NOT_YET, ResourceFailedError("ns/pod", "broken")
    )
    with pytest.raises(ResourceFailedError, match="broken"):
        await poll_until(0.01, 60.0, predicate, "ns/pod")
    assert predicate.calls == 2


async def test_timeout_distinct_from_failure() -> None:
    """Test a timeout is not reported as a hard failure."""
    with pytest.raises(PollTimeoutError) as exc:
        await poll_until(0.01, 0.02, ScriptedPredicate())
    assert not isinstance(exc.value, ResourceFailedError)


async def test_predicate_error_propagated() -> None:
    """Test errors reading the resource abort the poll unchanged."""
    err = ResourceStoreError("connection refused")
    with pytest.raises(ResourceStoreError, match="connection refused"):
        await poll_until(0.01, 60.0, ScriptedPredicate(err))


async def test_predicate_timeout_error_not_masked() -> None:
    """Test a TimeoutError raised by the predicate itself is not a poll timeout."""
    with pytest.raises(TimeoutError) as exc:
        await poll_until(0.01, 60.0, ScriptedPredicate(TimeoutError("read timed out")))
    assert not isinstance(exc.value, PollTimeoutError)


STARTED = Condition(
    name="started",
    done=frozenset({"Running", "Succeeded"}),
    failed=frozenset({"Failed"}),
    error=PodRunFailedError,
)


def phases(*values: str) -> Callable[[], Awaitable[str]]:
    remaining = list(values)

    async def fetch() -> str:
        return remaining.pop(0) if len(remaining) > 1 else remaining[0]

    return fetch


async def test_phase_predicate() -> None:
    """Test waiting for a phase of a resource."""
    fetch = phases("Pending", "Pending", "Running")
    await poll_until(0.01, 5.0, phase_predicate(fetch, STARTED, "ns/pod"), "ns/pod")


async def test_phase_predicate_failed() -> None:
    """Test a failed phase raises the error of the condition."""
    fetch = phases("Pending", "Failed")
    with pytest.raises(PodRunFailedError, match="run failed to start"):
        await poll_until(
            0.01, 5.0, phase_predicate(fetch, STARTED, "ns/pod"), "ns/pod"
        )


async def test_phase_predicate_default_error() -> None:
    """Test a failed phase without a specific error."""
    condition = Condition(
        name="ready", done=frozenset({"Ready"}), failed=frozenset({"Broken"})
    )
    predicate = phase_predicate(phases("Broken"), condition, "ns/obj")
    with pytest.raises(ResourceFailedError, match="entered phase Broken"):
        await predicate()


async def test_phase_predicate_not_yet() -> None:
    """Test a phase that is neither done nor failed."""
    predicate = phase_predicate(phases("Pending"), STARTED, "ns/pod")
    assert await predicate() == PollResult.NOT_YET
