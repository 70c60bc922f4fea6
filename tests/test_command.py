"""Tests for command library."""

import pytest

from kuberun.command import Command, StreamCommand, run, run_piped
from kuberun.exceptions import CommandException, ResourceStoreError


async def test_command() -> None:
    """Test stdout parsing of a command."""
    result = await run(Command(["echo", "Hello"]))
    assert result == "Hello\n"


async def test_command_stdin() -> None:
    """Test a command reading its input from stdin."""
    result = await run(Command(["cat"]), stdin=b"kind: Pod\n")
    assert result == "kind: Pod\n"


async def test_run_piped_command() -> None:
    """Test running commands piped together."""
    result = await run_piped(
        [
            Command(["echo", "Hello"]),
            Command(["sed", "s/Hello/Goodbye/"]),
        ]
    )
    assert result == "Goodbye\n"


async def test_failed_command() -> None:
    """Test a failing command."""
    with pytest.raises(CommandException, match="return code 1"):
        await run(Command(["/bin/false"]))


async def test_failed_command_exception_type() -> None:
    """Test a failing command raises the configured exception."""
    with pytest.raises(ResourceStoreError, match="return code 1"):
        await run(Command(["/bin/false"], exc=ResourceStoreError))


async def test_allowed_return_code() -> None:
    """Test a non-zero return code that is allowed to indicate success."""
    result = await run(Command(["sh", "-c", "echo partial; exit 3"], retcodes=[3]))
    assert result == "partial\n"


async def test_command_timeout() -> None:
    """Test a command that does not finish in time."""
    with pytest.raises(CommandException, match="timed out"):
        await run(Command(["sleep", "1"]), timeout=0.1)


async def test_stream_command() -> None:
    """Test consuming the output of a command while it runs."""
    cmd = StreamCommand(["sh", "-c", "echo one; echo two"])
    chunks = [chunk async for chunk in cmd.stream()]
    assert b"".join(chunks) == b"one\ntwo\n"


async def test_stream_command_failure() -> None:
    """Test a streaming command that exits with an error."""
    cmd = StreamCommand(
        ["sh", "-c", "echo out; echo boom >&2; exit 2"], exc=ResourceStoreError
    )
    chunks = []
    with pytest.raises(ResourceStoreError, match="boom"):
        async for chunk in cmd.stream():
            chunks.append(chunk)
    assert b"".join(chunks) == b"out\n"


async def test_stream_command_stopped_early() -> None:
    """Test that a command is stopped when the consumer stops reading."""
    cmd = StreamCommand(["sh", "-c", "echo first; sleep 30"])
    stream = cmd.stream()
    assert await anext(stream) == b"first\n"
    await stream.aclose()
