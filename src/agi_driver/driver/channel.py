"""Process channel with line-framed stdout and reliable termination.

agi-driver driver/channel v0.1.0

This module provides:
- Cross-platform subprocess isolation (new session/process group)
- Lazy, ordered stdout line stream (consumer controls backpressure)
- Unframed stderr chunk stream
- Fire-and-forget stdin writes that are dropped once the process is gone
- Idempotent close with graceful shutdown (SIGTERM -> timeout -> SIGKILL)

Key design points:
- POSIX: start_new_session=True to create new process group
- Windows: CREATE_NEW_PROCESS_GROUP for signal isolation
- Termination targets the process group, not just the main process
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import subprocess
import sys
from collections.abc import AsyncIterator, Mapping, Sequence
from pathlib import Path
from typing import Any

from ..errors import SpawnError
from .protocol import TruncatedLine

__all__ = [
    "ProcessChannel",
    "IS_WINDOWS",
]

logger = logging.getLogger(__name__)

# Platform detection
IS_WINDOWS = sys.platform == "win32"

# Default timeouts
DEFAULT_TERM_TIMEOUT = 2.0  # seconds to wait after SIGTERM
DEFAULT_KILL_TIMEOUT = 1.0  # seconds to wait after SIGKILL

# Lines may carry base64 screenshots and video frames
STREAM_LIMIT = 64 * 1024 * 1024


class ProcessChannel:
    """One spawned child process and its stdio pipes.

    Example:
        channel = await ProcessChannel.open("/usr/local/bin/agi-driver")
        channel.write('{"command": "pause"}')

        async for line in channel.lines():
            handle(line)

        await channel.close()
    """

    def __init__(
        self,
        process: asyncio.subprocess.Process,
        *,
        term_timeout: float = DEFAULT_TERM_TIMEOUT,
        kill_timeout: float = DEFAULT_KILL_TIMEOUT,
    ) -> None:
        self._process = process
        self.term_timeout = term_timeout
        self.kill_timeout = kill_timeout
        self._closed = False
        self._write_lock = asyncio.Lock()

    @classmethod
    async def open(
        cls,
        executable: str | Path,
        args: Sequence[str] = (),
        *,
        env: Mapping[str, str] | None = None,
        cwd: str | Path | None = None,
        term_timeout: float = DEFAULT_TERM_TIMEOUT,
        kill_timeout: float = DEFAULT_KILL_TIMEOUT,
    ) -> "ProcessChannel":
        """Spawn ``executable`` with piped stdio.

        Args:
            executable: Path to the program
            args: Extra command line arguments
            env: Variables layered over the parent environment
            cwd: Working directory (None = inherit)
            term_timeout: Seconds to wait after SIGTERM on close
            kill_timeout: Seconds to wait after SIGKILL on close

        Returns:
            An open channel

        Raises:
            SpawnError: If the process cannot be started
        """
        argv = [str(executable), *args]

        full_env = os.environ.copy()
        if env:
            full_env.update(env)

        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=cwd,
                env=full_env,
                limit=STREAM_LIMIT,
                **cls._build_subprocess_kwargs(),
            )
        except FileNotFoundError as e:
            raise SpawnError(
                f"Driver executable not found: {executable}", executable=str(executable)
            ) from e
        except PermissionError as e:
            raise SpawnError(
                f"Driver executable is not executable: {executable}",
                executable=str(executable),
            ) from e
        except OSError as e:
            raise SpawnError(
                f"Failed to spawn driver {executable}: {e}", executable=str(executable)
            ) from e

        logger.debug(f"Started subprocess pid={process.pid} argv={argv[0]} cwd={cwd}")

        return cls(process, term_timeout=term_timeout, kill_timeout=kill_timeout)

    @staticmethod
    def _build_subprocess_kwargs() -> dict[str, Any]:
        """Build platform-specific subprocess kwargs."""
        kwargs: dict[str, Any] = {}
        if IS_WINDOWS:
            kwargs["creationflags"] = subprocess.CREATE_NEW_PROCESS_GROUP
        else:
            kwargs["start_new_session"] = True
        return kwargs

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def returncode(self) -> int | None:
        """Exit code once the process has terminated, else None."""
        return self._process.returncode

    @property
    def closed(self) -> bool:
        return self._closed

    # -------------------------------------------------------------------------
    # Reading
    # -------------------------------------------------------------------------

    async def lines(self) -> AsyncIterator[str]:
        """Yield stdout lines in order, without line terminators.

        One line is read per pull, so a slow consumer applies backpressure
        to the process through the pipe. Ends at EOF or once the channel
        is closed.
        """
        stdout = self._process.stdout
        if stdout is None:
            return

        while not self._closed:
            try:
                raw = await stdout.readuntil(b"\n")
            except asyncio.IncompleteReadError as e:
                # EOF; the last line may lack a terminator
                raw = e.partial
                if not raw:
                    break
            except asyncio.LimitOverrunError as e:
                size = await _discard_line(stdout, e.consumed)
                if self._closed:
                    break
                logger.warning(
                    f"Dropping oversized stdout line pid={self.pid}: {size} bytes"
                )
                yield TruncatedLine(size)
                continue
            if self._closed:
                break
            yield raw.decode("utf-8", errors="replace").rstrip("\r\n")

    async def stderr(self) -> AsyncIterator[str]:
        """Yield decoded stderr chunks as they arrive (not line-framed)."""
        stream = self._process.stderr
        if stream is None:
            return

        while True:
            chunk = await stream.read(4096)
            if not chunk:
                break
            yield chunk.decode("utf-8", errors="replace")

    # -------------------------------------------------------------------------
    # Writing
    # -------------------------------------------------------------------------

    def write(self, line: str) -> bool:
        """Append a newline and forward ``line`` to the process stdin.

        Writes go through the single stdin transport buffer, so they reach
        the process in call order.

        Returns:
            False if the line was dropped because the process is gone
        """
        stdin = self._process.stdin
        if (
            self._closed
            or stdin is None
            or stdin.is_closing()
            or self._process.returncode is not None
        ):
            logger.debug(f"Dropping write to exited process pid={self.pid}")
            return False

        try:
            stdin.write((line + "\n").encode("utf-8"))
        except (BrokenPipeError, ConnectionResetError) as e:
            logger.debug(f"Write failed pid={self.pid}: {e}")
            return False
        return True

    async def send(self, line: str) -> bool:
        """Write ``line`` and wait until the stdin buffer is flushed."""
        async with self._write_lock:
            if not self.write(line):
                return False
            stdin = self._process.stdin
            assert stdin is not None
            try:
                await stdin.drain()
            except (BrokenPipeError, ConnectionResetError) as e:
                logger.debug(f"Drain failed pid={self.pid}: {e}")
                return False
            return True

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def wait(self) -> int:
        """Wait for the process to exit and return its exit code."""
        return await self._process.wait()

    async def kill(self) -> None:
        """Force kill the process group immediately."""
        if self._process.returncode is not None:
            return
        logger.debug(f"Force killing subprocess pid={self.pid}")
        if IS_WINDOWS:
            self._windows_kill()
        else:
            self._posix_signal(signal.SIGKILL)

    async def close(self) -> None:
        """Stop reading, close stdin and terminate the process.

        Idempotent. Cleanup is shielded from cancellation so the process is
        never left running.
        """
        if self._closed:
            return
        self._closed = True

        stdin = self._process.stdin
        if stdin is not None and not stdin.is_closing():
            stdin.close()

        task = asyncio.ensure_future(self._terminate_process())
        try:
            await asyncio.shield(task)
        except asyncio.CancelledError:
            try:
                await asyncio.shield(task)
            except asyncio.CancelledError:
                logger.debug(f"Double cancel during channel close pid={self.pid}")
            raise

    async def _terminate_process(self) -> None:
        """Terminate subprocess gracefully, then forcefully if needed.

        Termination strategy:
        1. Send SIGTERM (or CTRL_BREAK_EVENT on Windows)
        2. Wait up to term_timeout for graceful exit
        3. If still running, send SIGKILL (or kill() on Windows)
        4. Wait up to kill_timeout for forced exit
        """
        process = self._process
        pid = process.pid

        if process.returncode is not None:
            logger.debug(f"Subprocess already exited pid={pid} returncode={process.returncode}")
            return

        logger.debug(f"Terminating subprocess pid={pid}")

        try:
            if IS_WINDOWS:
                self._windows_terminate()
            else:
                self._posix_signal(signal.SIGTERM)

            try:
                await asyncio.wait_for(process.wait(), timeout=self.term_timeout)
                logger.debug(
                    f"Subprocess terminated gracefully pid={pid} "
                    f"returncode={process.returncode}"
                )
                return
            except asyncio.TimeoutError:
                pass

            await self.kill()

            try:
                await asyncio.wait_for(process.wait(), timeout=self.kill_timeout)
                logger.debug(f"Subprocess killed pid={pid} returncode={process.returncode}")
            except asyncio.TimeoutError:
                logger.warning(f"Subprocess did not exit after kill pid={pid}")

        except ProcessLookupError:
            logger.debug(f"Subprocess already exited pid={pid}")

    def _posix_signal(self, sig: signal.Signals) -> None:
        """Send ``sig`` to the process group, falling back to the process."""
        process = self._process
        try:
            pgid = os.getpgid(process.pid)
            os.killpg(pgid, sig)
            logger.debug(f"Sent {sig.name} to process group pgid={pgid}")
        except ProcessLookupError:
            pass
        except OSError as e:
            logger.debug(f"killpg failed, falling back to direct signal: {e}")
            try:
                process.send_signal(sig)
            except ProcessLookupError:
                pass

    def _windows_terminate(self) -> None:
        """Send CTRL_BREAK_EVENT on Windows."""
        try:
            os.kill(self._process.pid, signal.CTRL_BREAK_EVENT)
            logger.debug(f"Sent CTRL_BREAK_EVENT to pid={self._process.pid}")
        except (ProcessLookupError, OSError) as e:
            logger.debug(f"CTRL_BREAK_EVENT failed, falling back: {e}")
            self._process.terminate()

    def _windows_kill(self) -> None:
        try:
            self._process.kill()
        except ProcessLookupError:
            pass


async def _discard_line(stream: asyncio.StreamReader, consumed: int) -> int:
    """Skip the rest of an over-limit line, including its terminator.

    Returns the number of bytes dropped.
    """
    size = 0
    while True:
        await stream.readexactly(consumed)
        size += consumed
        try:
            size += len(await stream.readuntil(b"\n"))
            return size
        except asyncio.IncompleteReadError as e:
            return size + len(e.partial)
        except asyncio.LimitOverrunError as e:
            consumed = e.consumed
