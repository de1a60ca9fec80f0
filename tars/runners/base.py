"""Subprocess plumbing shared by agent runners."""

import asyncio
import inspect
import logging
import os
import signal
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any

from tars.errors import AbsoluteTimeout, IdleTimeout, SpawnFailure

logger = logging.getLogger(__name__)

READ_CHUNK = 8192
# Grace period between SIGTERM and SIGKILL when tearing down a finished agent
TEARDOWN_GRACE_S = 2.0
# How long to wait for a SIGKILLed process before giving up on reaping it
REAP_TIMEOUT_S = 5.0
# Unterminated stderr output is logged in pieces of at most this size
STDERR_LINE_LIMIT = 64 * 1024


async def maybe_await(value: Any) -> Any:
    """Await ``value`` if a callback handed back an awaitable."""
    if inspect.isawaitable(value):
        return await value
    return value


async def start_process(
    cmd: list[str],
    cwd: Path,
    env: dict[str, str] | None = None,
) -> asyncio.subprocess.Process:
    """Spawn ``cmd`` with piped stdout/stderr and no stdin.

    Raises SpawnFailure (chained to the OS error) if the process cannot be
    started at all.
    """
    full_env = os.environ.copy()
    if env:
        full_env.update(env)

    try:
        return await asyncio.create_subprocess_exec(
            *cmd,
            cwd=str(cwd),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=full_env,
        )
    except FileNotFoundError as e:
        raise SpawnFailure(f"Command not found: {cmd[0]} ({e})") from e
    except PermissionError as e:
        raise SpawnFailure(f"Permission denied: {e}") from e
    except NotADirectoryError as e:
        raise SpawnFailure(f"Invalid working directory: {cwd} ({e})") from e
    except OSError as e:
        raise SpawnFailure(f"Failed to start subprocess: {e}") from e


class LineSplitter:
    """Splits a byte stream into complete, decoded lines.

    Only the unterminated tail of the stream is held back; every complete
    line is released as soon as its newline arrives.
    """

    def __init__(self) -> None:
        self._pending = b""

    def feed(self, chunk: bytes) -> list[str]:
        data = self._pending + chunk
        *lines, self._pending = data.split(b"\n")
        return [line.decode("utf-8", errors="replace").rstrip("\r") for line in lines]

    @property
    def pending_bytes(self) -> int:
        return len(self._pending)

    def flush(self) -> str | None:
        if not self._pending:
            return None
        tail, self._pending = self._pending, b""
        return tail.decode("utf-8", errors="replace").rstrip("\r")


async def pump_lines(
    proc: asyncio.subprocess.Process,
    on_line: Callable[[str], Awaitable[bool]],
    idle_timeout_s: float,
    total_timeout_s: float,
    description: str = "agent",
) -> bool:
    """Feed each stdout line of ``proc`` to ``on_line`` until it is finished.

    ``on_line`` returns True once the stream is logically complete; reading
    stops right there, without waiting for EOF. Returns True in that case
    and False if stdout reached EOF first.

    Two timers guard the read: the idle timer restarts whenever a chunk
    arrives, the total timer never does. Whichever fires first kills the
    process and raises IdleTimeout or AbsoluteTimeout.
    """
    assert proc.stdout is not None
    loop = asyncio.get_running_loop()
    deadline = loop.time() + total_timeout_s
    splitter = LineSplitter()

    while True:
        remaining = deadline - loop.time()
        if remaining <= 0:
            await kill(proc)
            logger.warning("%s exceeded %ss total. Killed.", description, total_timeout_s)
            raise AbsoluteTimeout(f"{description} timed out after {total_timeout_s}s")
        try:
            chunk = await asyncio.wait_for(proc.stdout.read(READ_CHUNK), timeout=min(idle_timeout_s, remaining))
        except asyncio.TimeoutError:
            await kill(proc)
            if remaining <= idle_timeout_s:
                logger.warning("%s exceeded %ss total. Killed.", description, total_timeout_s)
                raise AbsoluteTimeout(f"{description} timed out after {total_timeout_s}s") from None
            logger.warning("%s produced no output for %ss. Killed.", description, idle_timeout_s)
            raise IdleTimeout(f"{description} idle for {idle_timeout_s}s") from None

        if not chunk:
            tail = splitter.flush()
            if tail is not None and await on_line(tail):
                return True
            return False

        for line in splitter.feed(chunk):
            if await on_line(line):
                return True


async def drain_stderr(proc: asyncio.subprocess.Process, description: str = "agent") -> None:
    """Log the agent's stderr line by line; it is diagnostic only.

    The pipe is read in chunks until EOF, so a child that writes a long
    unterminated blob never blocks on a full stderr pipe.
    """
    assert proc.stderr is not None
    splitter = LineSplitter()

    def log(text: str | None) -> None:
        if text and text.strip():
            logger.debug("[%s stderr] %s", description, text.strip())

    while True:
        chunk = await proc.stderr.read(READ_CHUNK)
        if not chunk:
            log(splitter.flush())
            return
        for line in splitter.feed(chunk):
            log(line)
        if splitter.pending_bytes > STDERR_LINE_LIMIT:
            log(splitter.flush())


async def _discard(stream: asyncio.StreamReader | None) -> None:
    if stream is None:
        return
    while await stream.read(READ_CHUNK):
        pass


async def _reap(proc: asyncio.subprocess.Process, timeout: float | None = None) -> int:
    # Keep stdout flowing while waiting so a full pipe cannot stall the exit
    discard = asyncio.ensure_future(_discard(proc.stdout))
    try:
        return await asyncio.wait_for(proc.wait(), timeout=timeout)
    finally:
        discard.cancel()


async def kill(proc: asyncio.subprocess.Process, timeout: float = REAP_TIMEOUT_S) -> int:
    """Forcefully kill the process and reap it.

    Waits at most ``timeout`` seconds; a process whose pipes are still held
    open after that is abandoned with a warning.
    """
    if proc.returncode is None:
        try:
            proc.kill()
        except ProcessLookupError:
            pass
    try:
        return await _reap(proc, timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning("Process %s not reaped %ss after SIGKILL; abandoning it", proc.pid, timeout)
        return proc.returncode if proc.returncode is not None else -signal.SIGKILL


async def terminate(proc: asyncio.subprocess.Process, grace_s: float = TEARDOWN_GRACE_S) -> int:
    """Ask the process to exit, escalating to SIGKILL after ``grace_s``.

    Anything the process still writes to stdout is discarded.
    """
    if proc.returncode is None:
        try:
            proc.terminate()
        except ProcessLookupError:
            pass
    try:
        return await _reap(proc, timeout=grace_s)
    except asyncio.TimeoutError:
        return await kill(proc)
