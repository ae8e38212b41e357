"""Subprocess Executor.

Runs one shell command line per call in its own session so the whole
process group can be killed on timeout or output overflow.

Per ERR1: execution failures are expected behavior, not exceptions.
Every error path returns a ToolResult with success=False and an
error_type of TIMEOUT, NON_ZERO_EXIT, OUTPUT_LIMIT_EXCEEDED or
EXECUTION_EXCEPTION.
"""

import asyncio
import os
import signal
import time
from typing import Optional

import structlog

from kaliguard.core.models import DEFAULT_TOOL_TIMEOUT, MAX_TOOL_TIMEOUT, ToolResult, utc_now

log = structlog.get_logger(__name__)

DEFAULT_MAX_OUTPUT_BYTES = 10 * 1024 * 1024
READ_CHUNK_SIZE = 64 * 1024


class _OutputBuffer:
    """Collects stdout and stderr against one shared byte budget."""

    def __init__(self, limit: int) -> None:
        self.limit = limit
        self.total = 0
        self.overflowed = False
        self.stdout = bytearray()
        self.stderr = bytearray()


class SubprocessExecutor:
    """Timed, memory-bounded subprocess runner."""

    def __init__(
        self,
        default_timeout: int = DEFAULT_TOOL_TIMEOUT,
        max_timeout: int = MAX_TOOL_TIMEOUT,
        max_output_bytes: int = DEFAULT_MAX_OUTPUT_BYTES,
    ):
        self._default_timeout = default_timeout
        self._max_timeout = max_timeout
        self._max_output_bytes = max_output_bytes

    async def run(self, command_line: str, timeout: Optional[float] = None) -> ToolResult:
        """Execute command_line through the shell.

        Args:
            command_line: Fully built and escaped command line.
            timeout: Seconds before the process group is killed. Capped at
                the configured maximum.

        Returns:
            ToolResult describing the run. Never raises for expected
            failures; cancellation still propagates after the process is
            killed.
        """
        timeout = min(timeout or self._default_timeout, self._max_timeout)
        started_at = utc_now()
        start_time = time.perf_counter()

        def _result(
            success: bool,
            stdout: str,
            stderr: str,
            exit_code: int,
            error_type: Optional[str] = None,
        ) -> ToolResult:
            return ToolResult(
                success=success,
                stdout=stdout,
                stderr=stderr,
                exit_code=exit_code,
                duration_ms=int((time.perf_counter() - start_time) * 1000),
                error_type=error_type,
                started_at=started_at,
                finished_at=utc_now(),
            )

        try:
            proc = await asyncio.create_subprocess_shell(
                command_line,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except Exception as e:
            log.warning("subprocess_spawn_failed", command=command_line[:50], error=str(e))
            return _result(False, "", str(e), -1, "EXECUTION_EXCEPTION")

        buffer = _OutputBuffer(self._max_output_bytes)
        try:
            await asyncio.wait_for(self._collect(proc, buffer), timeout=timeout)
        except asyncio.TimeoutError:
            self._kill(proc)
            await proc.wait()
            log.warning("subprocess_timeout", command=command_line[:50], timeout=timeout)
            return _result(
                False,
                _decode(buffer.stdout),
                f"Execution timed out after {timeout:g}s",
                -1,
                "TIMEOUT",
            )
        except asyncio.CancelledError:
            self._kill(proc)
            raise
        except Exception as e:
            self._kill(proc)
            log.warning("subprocess_exception", command=command_line[:50], error=str(e))
            return _result(False, "", str(e), -1, "EXECUTION_EXCEPTION")

        stdout = _decode(buffer.stdout)
        stderr = _decode(buffer.stderr)
        exit_code = proc.returncode if proc.returncode is not None else -1

        if buffer.overflowed:
            log.warning(
                "subprocess_output_limit_exceeded",
                command=command_line[:50],
                limit=buffer.limit,
            )
            return _result(
                False,
                stdout,
                f"Output exceeded {buffer.limit} bytes",
                exit_code,
                "OUTPUT_LIMIT_EXCEEDED",
            )

        if exit_code != 0:
            log.warning("subprocess_non_zero_exit", command=command_line[:50], exit_code=exit_code)
            return _result(
                False,
                stdout,
                stderr or f"Command exited with code {exit_code}",
                exit_code,
                "NON_ZERO_EXIT",
            )

        log.debug("subprocess_completed", command=command_line[:50], exit_code=exit_code)
        return _result(True, stdout, stderr, exit_code)

    async def _collect(self, proc: asyncio.subprocess.Process, buffer: _OutputBuffer) -> None:
        await asyncio.gather(
            self._drain(proc, proc.stdout, buffer.stdout, buffer),
            self._drain(proc, proc.stderr, buffer.stderr, buffer),
        )
        await proc.wait()

    async def _drain(
        self,
        proc: asyncio.subprocess.Process,
        stream: Optional[asyncio.StreamReader],
        sink: bytearray,
        buffer: _OutputBuffer,
    ) -> None:
        if stream is None:
            return
        while True:
            chunk = await stream.read(READ_CHUNK_SIZE)
            if not chunk:
                return
            if buffer.overflowed:
                continue
            room = buffer.limit - buffer.total
            if len(chunk) > room:
                sink.extend(chunk[:room])
                buffer.total = buffer.limit
                buffer.overflowed = True
                self._kill(proc)
                continue
            sink.extend(chunk)
            buffer.total += len(chunk)

    @staticmethod
    def _kill(proc: asyncio.subprocess.Process) -> None:
        if proc.returncode is not None:
            return
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except ProcessLookupError:
            # Already reaped
            return


def _decode(data: bytes) -> str:
    return bytes(data).decode("utf-8", errors="replace")
