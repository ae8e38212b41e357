"""Audit Logger - Ordered, size-rotated JSON-lines audit trail.

Every entry is timestamped, summarized to telemetry, and handed to a single
worker task through an asyncio.Queue. The worker performs the rotation check
and the append for one entry at a time, so rotation and appends never
interleave across concurrent callers. log() resolves once the line has been
written (or the write has failed and been reported).

File layout under log_dir:
    audit.log      active file
    audit.log.1    most recent rotated generation
    ...
    audit.log.N    oldest kept generation (N = max_files)

Write and rotation failures are reported to structlog and telemetry and are
never raised into the caller: auditing must not take down the pipeline.
"""

from __future__ import annotations

import asyncio
import os
from pathlib import Path
from typing import Any, Optional, Union

import structlog

from kaliguard.core.exceptions import PersistenceError
from kaliguard.core.models import AuditLogEntry, AuditStatus, utc_now
from kaliguard.protocols.telemetry import TelemetrySink

log = structlog.get_logger(__name__)

AUDIT_LOG_NAME = "audit.log"
DEFAULT_MAX_FILE_SIZE = 10 * 1024 * 1024
DEFAULT_MAX_FILES = 5


class AuditLogger:
    """Append-only audit sink backed by a rotated JSON-lines file."""

    def __init__(
        self,
        log_dir: Union[str, Path],
        max_file_size: int = DEFAULT_MAX_FILE_SIZE,
        max_files: int = DEFAULT_MAX_FILES,
        telemetry: Optional[TelemetrySink] = None,
    ) -> None:
        self._log_dir = Path(log_dir).expanduser()
        self._log_file = self._log_dir / AUDIT_LOG_NAME
        self._max_file_size = max_file_size
        self._max_files = max_files
        self._telemetry = telemetry

        self._queue: Optional[asyncio.Queue] = None
        self._worker: Optional[asyncio.Task] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    @property
    def log_file(self) -> Path:
        """Path of the active audit file."""
        return self._log_file

    async def log(
        self,
        action: str,
        status: Union[AuditStatus, str],
        identity: Optional[str] = None,
        resource: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> AuditLogEntry:
        """Append an entry and wait until it is on disk."""
        entry = AuditLogEntry(
            timestamp=utc_now(),
            action=action,
            status=AuditStatus(status),
            identity=identity,
            resource=resource,
            metadata=dict(metadata or {}),
        )
        self._capture(
            "audit_event",
            {"action": action, "status": entry.status.value, "resource": resource},
        )

        queue = self._ensure_worker()
        done: asyncio.Future = asyncio.get_running_loop().create_future()
        await queue.put((entry.to_json(), done))
        await done
        return entry

    async def read_entries(self, limit: Optional[int] = None) -> list[AuditLogEntry]:
        """Read entries back from the active file, oldest first.

        Args:
            limit: Return only the most recent N entries.
        """
        lines = await asyncio.to_thread(self._read_lines)
        entries: list[AuditLogEntry] = []
        for line in lines:
            try:
                entries.append(AuditLogEntry.from_json(line))
            except (ValueError, KeyError, TypeError) as e:
                log.warning("audit_log_malformed_line", path=str(self._log_file), error=str(e))
        if limit is not None:
            entries = entries[-limit:] if limit > 0 else []
        return entries

    async def close(self) -> None:
        """Drain queued writes and stop the worker."""
        if self._worker is None or self._queue is None or self._worker.done():
            return
        await self._queue.put(None)
        await self._worker
        self._worker = None
        self._queue = None

    # ------------------------------------------------------------------
    # Worker
    # ------------------------------------------------------------------

    def _ensure_worker(self) -> asyncio.Queue:
        loop = asyncio.get_running_loop()
        if (
            self._queue is None
            or self._worker is None
            or self._worker.done()
            or self._loop is not loop
        ):
            self._loop = loop
            self._queue = asyncio.Queue()
            self._worker = loop.create_task(self._run(self._queue))
        return self._queue

    async def _run(self, queue: asyncio.Queue) -> None:
        while True:
            item = await queue.get()
            if item is None:
                return
            line, done = item
            try:
                await asyncio.to_thread(self._write, line)
            except Exception as e:
                log.error("audit_log_write_failed", path=str(self._log_file), error=str(e))
                self._capture("audit_log_write_failed", {"error": str(e)})
            finally:
                if not done.done():
                    done.set_result(None)

    def _write(self, line: str) -> None:
        try:
            self._rotate_if_needed()
        except PersistenceError as e:
            log.error("audit_log_rotation_failed", path=e.path, error=str(e.__cause__))
            self._capture("audit_log_rotation_failed", {"error": str(e.__cause__)})

        try:
            self._log_dir.mkdir(parents=True, exist_ok=True)
            with open(self._log_file, "a", encoding="utf-8") as f:
                f.write(line + "\n")
        except OSError as e:
            log.error("audit_log_write_failed", path=str(self._log_file), error=str(e))
            self._capture("audit_log_write_failed", {"error": str(e)})

    def _rotate_if_needed(self) -> None:
        try:
            size = self._log_file.stat().st_size
        except FileNotFoundError:
            return
        except OSError as e:
            raise PersistenceError(str(self._log_file), "rotate") from e
        if size <= self._max_file_size:
            return

        for i in range(self._max_files - 1, -1, -1):
            current = self._log_file if i == 0 else self._generation(i)
            try:
                os.replace(current, self._generation(i + 1))
            except FileNotFoundError:
                continue
            except OSError as e:
                raise PersistenceError(str(current), "rotate") from e
        log.info("audit_log_rotated", path=str(self._log_file), size=size)

    def _generation(self, index: int) -> Path:
        return self._log_file.with_name(f"{AUDIT_LOG_NAME}.{index}")

    def _read_lines(self) -> list[str]:
        try:
            with open(self._log_file, "r", encoding="utf-8") as f:
                return [line for line in f.read().splitlines() if line.strip()]
        except FileNotFoundError:
            return []

    def _capture(self, event: str, properties: dict[str, Any]) -> None:
        if self._telemetry is not None:
            self._telemetry.capture(event, properties)

