"""Run a transient pod to completion while streaming its output.

A run creates the pod and then drives it through a small state machine in a
background task owned by the task service:

- STARTING: wait for the pod to be running. A pod that fails before it was
  ever running is a hard failure and its logs are never opened.
- STREAMING: copy the pod logs into the session output while, concurrently,
  waiting for the pod to reach a terminal phase.
- COMPLETED: the exit code of the first terminated container is delivered.

The caller only sees the `RunSession`: a readable output stream and a
completion future carrying a `RunResult`. Both always reach a terminal state,
the output is closed and the completion is resolved exactly once, whether the
run succeeded, failed, or was cancelled.

```python
from kuberun.manifest import PodSpec
from kuberun.runner import JobRunner

runner = JobRunner(store)
session = await runner.run(
    PodSpec(namespace="myapp", name="migrate", image="myapp:v2", command=["./migrate"])
)
async for line in session.output:
    print(line.decode(), end="")
exit_code = await session.wait()
```

The output holds at most `RunnerConfig.output_buffer_size` bytes. Past that
the log copy waits for the caller to read, so a caller that never reads only
sees the output buffered when the pod ended and the log drain timed out.

The pod is deleted in the background once an exit code has been delivered. A
failure to delete it is logged and never reported to the caller.
"""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import StrEnum
import logging

from .config import RunnerConfig
from .exceptions import PodRunFailedError, PodStillRunningError
from .manifest import POD_KIND, NamedResource, PodPhase, PodSpec, PodStatus
from .poll import Condition, phase_predicate, poll_until
from .reconcile import ResourceClient, operation_context
from .store import LogOptions, ResourceStore
from .task import TaskService, get_task_service

__all__ = [
    "RunState",
    "RunResult",
    "OutputStream",
    "RunSession",
    "JobRunner",
]

_LOGGER = logging.getLogger(__name__)

# Bytes of output buffered for the reader of an `OutputStream`
_BUFFER_LIMIT = 2**16


class RunState(StrEnum):
    """Lifecycle state of a run session."""

    SUBMITTED = "submitted"
    STARTING = "starting"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


POD_STARTED = Condition(
    name="started",
    done=frozenset({PodPhase.RUNNING, PodPhase.SUCCEEDED}),
    failed=frozenset({PodPhase.FAILED}),
    error=PodRunFailedError,
)

POD_ENDED = Condition(
    name="ended",
    done=frozenset({PodPhase.SUCCEEDED, PodPhase.FAILED}),
)


@dataclass(frozen=True)
class RunResult:
    """The outcome of a run session."""

    state: RunState
    exit_code: int | None = None
    """Exit code of the pod when the run completed."""

    error: BaseException | None = None
    """Why the run did not complete."""

    @property
    def success(self) -> bool:
        """True if the pod ran and an exit code was read, whatever its value."""
        return self.error is None and self.exit_code is not None


class OutputStream:
    """A byte stream of the output of a pod, readable while the pod runs.

    At most `limit` bytes are held for the reader, plus the chunk being
    written. Once the buffer is full `write` waits until the reader catches
    up. A line longer than `limit` is returned by `readline` in pieces.
    """

    def __init__(self, limit: int = _BUFFER_LIMIT) -> None:
        """Initialize OutputStream."""
        if limit <= 0:
            raise ValueError("Output buffer limit must be positive")
        self._limit = limit
        self._buffer = bytearray()
        self._closed = False
        self._readable = asyncio.Event()
        self._writable = asyncio.Event()
        self._writable.set()

    @property
    def closed(self) -> bool:
        """True once no more output will be written."""
        return self._closed

    async def write(self, data: bytes) -> None:
        """Append output, waiting while the buffer is full."""
        while not self._closed and len(self._buffer) >= self._limit:
            self._writable.clear()
            await self._writable.wait()
        if self._closed:
            raise ValueError("Write to closed output stream")
        self._buffer.extend(data)
        self._readable.set()

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._readable.set()
            self._writable.set()

    def _consume(self, n: int) -> bytes:
        data = bytes(self._buffer[:n])
        del self._buffer[:n]
        if len(self._buffer) < self._limit:
            self._writable.set()
        return data

    async def _wait_readable(self) -> None:
        self._readable.clear()
        await self._readable.wait()

    async def read(self, n: int = -1) -> bytes:
        """Read up to `n` bytes, or until the stream is closed if `n` is -1."""
        if n < 0:
            chunks = []
            while chunk := await self.read(self._limit):
                chunks.append(chunk)
            return b"".join(chunks)
        while n and not self._buffer and not self._closed:
            await self._wait_readable()
        return self._consume(n)

    async def readline(self) -> bytes:
        """Read one line, an empty result means the stream is closed."""
        while True:
            if (end := self._buffer.find(b"\n", 0, self._limit)) >= 0:
                return self._consume(end + 1)
            if self._closed or len(self._buffer) >= self._limit:
                return self._consume(self._limit)
            await self._wait_readable()

    def __aiter__(self) -> "OutputStream":
        return self

    async def __anext__(self) -> bytes:
        if not (line := await self.readline()):
            raise StopAsyncIteration
        return line


@dataclass
class RunSession:
    """Handles to a pod running to completion."""

    pod: NamedResource
    output: OutputStream
    completion: asyncio.Future[RunResult]
    state: RunState = RunState.SUBMITTED
    task: asyncio.Task[None] | None = field(default=None, repr=False)

    def resolve(self, result: RunResult) -> bool:
        """Close the output and deliver the result, if not already delivered."""
        self.output.close()
        if self.completion.done():
            return False
        self.state = result.state
        self.completion.set_result(result)
        return True

    async def wait(self) -> int:
        """Wait for the run to finish and return the exit code of the pod.

        Raises the error carried by the result if the run did not complete.
        """
        result = await asyncio.shield(self.completion)
        if result.error is not None:
            raise result.error
        if result.exit_code is None:
            raise PodStillRunningError(self.pod.namespaced_name)
        return result.exit_code

    def cancel(self) -> bool:
        """Stop following the pod, returns False if the run already finished."""
        if self.completion.done() or self.task is None:
            return False
        return self.task.cancel()


class JobRunner:
    """Runs pods to completion."""

    def __init__(
        self,
        store: ResourceStore,
        config: RunnerConfig | None = None,
        task_service: TaskService | None = None,
    ) -> None:
        """Initialize JobRunner."""
        self._store = store
        self._config = config or RunnerConfig()
        self._task_service = task_service or get_task_service()
        self._pods = ResourceClient(store, POD_KIND)

    async def run(self, spec: PodSpec) -> RunSession:
        """Create the pod and start following it.

        Failure to create the pod is raised immediately. Every later failure
        is delivered through the completion of the returned session.
        """
        pod = spec.resource_id
        _LOGGER.info("Creating pod %s", pod)
        await self._pods.create(spec.to_manifest())
        session = RunSession(
            pod=pod,
            output=OutputStream(self._config.output_buffer_size),
            completion=asyncio.get_running_loop().create_future(),
        )
        container = spec.container_name or spec.name
        session.task = self._task_service.create_task(
            self._run_session(session, container), name=f"run {pod}"
        )
        session.task.add_done_callback(lambda _: self._session_done(session))
        return session

    async def _run_session(self, session: RunSession, container: str) -> None:
        try:
            exit_code = await self._execute(session, container)
        except Exception as err:
            _LOGGER.warning("Run of %s failed: %s", session.pod, err)
            session.resolve(RunResult(RunState.FAILED, error=err))
        else:
            _LOGGER.info("Pod %s exited with code %d", session.pod, exit_code)
            session.resolve(RunResult(RunState.COMPLETED, exit_code=exit_code))
        finally:
            session.output.close()

    def _session_done(self, session: RunSession) -> None:
        # A task cancelled before it ever ran never reaches its own handlers
        if session.resolve(
            RunResult(RunState.CANCELLED, error=asyncio.CancelledError())
        ):
            _LOGGER.info("Run of %s was cancelled", session.pod)
        result = session.completion.result()
        if not self._config.cleanup or result.state == RunState.FAILED:
            return
        self._task_service.create_background_task(
            self._delete_pod(session.pod), name=f"cleanup {session.pod}"
        )

    async def _execute(self, session: RunSession, container: str) -> int:
        pod = session.pod
        session.state = RunState.STARTING
        await poll_until(
            self._config.start_check_interval,
            self._config.start_timeout,
            phase_predicate(self._fetch_phase(pod), POD_STARTED, pod.namespaced_name),
            pod.namespaced_name,
        )
        _LOGGER.debug("Pod %s started, streaming logs", pod)
        session.state = RunState.STREAMING
        await self._stream_until_ended(session, container)
        return await self._exit_code(pod)

    async def _stream_until_ended(self, session: RunSession, container: str) -> None:
        """Copy the logs into the output concurrently with the end-wait."""
        pod = session.pod
        copy_task = asyncio.create_task(
            self._copy_logs(session, container), name=f"logs {pod}"
        )
        end_task = asyncio.create_task(
            poll_until(
                self._config.end_check_interval,
                self._config.pod_run_timeout,
                phase_predicate(
                    self._fetch_phase(pod), POD_ENDED, pod.namespaced_name
                ),
                pod.namespaced_name,
            ),
            name=f"wait {pod}",
        )
        try:
            await asyncio.wait(
                {copy_task, end_task}, return_when=asyncio.FIRST_COMPLETED
            )
            if copy_task.done():
                # Raises if the log stream failed before the pod ended
                copy_task.result()
            await end_task
            if not copy_task.done():
                await asyncio.wait({copy_task}, timeout=self._config.log_drain_timeout)
            if copy_task.done():
                copy_task.result()
            else:
                _LOGGER.debug("Log stream of %s still open after pod ended", pod)
        finally:
            for task in (copy_task, end_task):
                task.cancel()
            # Retrieve the outcome of both tasks, only the first error is raised
            await asyncio.gather(copy_task, end_task, return_exceptions=True)

    async def _copy_logs(self, session: RunSession, container: str) -> None:
        pod = session.pod
        options = LogOptions(
            follow=True,
            tail_lines=self._config.log_tail_lines,
            container=container,
        )
        with operation_context("pod logs failed"):
            async for chunk in self._store.open_logs(
                pod.namespace or "", pod.name, options
            ):
                await session.output.write(chunk)
        _LOGGER.debug("Log stream of %s ended", pod)

    def _fetch_phase(self, pod: NamedResource) -> Callable[[], Awaitable[str]]:
        async def fetch() -> str:
            doc = await self._pods.get(pod.namespace, pod.name)
            return PodStatus.parse_doc(doc).phase

        return fetch

    async def _exit_code(self, pod: NamedResource) -> int:
        status = PodStatus.parse_doc(await self._pods.get(pod.namespace, pod.name))
        if (exit_code := status.exit_code) is None:
            raise PodStillRunningError(pod.namespaced_name)
        return exit_code

    async def _delete_pod(self, pod: NamedResource) -> None:
        await self._pods.delete(pod.namespace, pod.name)
        _LOGGER.debug("Deleted pod %s", pod)
