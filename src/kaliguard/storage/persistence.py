"""Debounced JSON file persistence.

Owners mutate their in-memory state and call schedule_flush(). The first
call inside a debounce window starts one pending flush task; later calls in
the same window coalesce into it. When the task fires it takes a fresh
snapshot, so the file always receives the state as of the write, not as of
the first mutation.

Writes are atomic (temp file + rename). Failures are logged, reported to
telemetry and never raised: the in-memory state stays authoritative.
"""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Any, Callable, Optional, Union

import structlog

from kaliguard.core.exceptions import PersistenceError
from kaliguard.protocols.telemetry import TelemetrySink

log = structlog.get_logger(__name__)


class DebouncedJsonFile:
    """A JSON document on disk with coalesced, atomic writes.

    Args:
        path: Target file. Parent directories are created on write.
        snapshot: Returns the JSON-serializable state to persist.
        debounce: Seconds to wait before a scheduled flush writes.
        telemetry: Optional sink for failure events.
    """

    def __init__(
        self,
        path: Union[str, Path],
        snapshot: Callable[[], Any],
        debounce: float = 1.0,
        telemetry: Optional[TelemetrySink] = None,
    ) -> None:
        self._path = Path(path).expanduser()
        self._snapshot = snapshot
        self._debounce = debounce
        self._telemetry = telemetry
        self._pending: Optional[asyncio.Task] = None
        self._inflight: Optional[asyncio.Task] = None
        self._write_lock = asyncio.Lock()

    @property
    def path(self) -> Path:
        return self._path

    @property
    def has_pending_flush(self) -> bool:
        return self._pending is not None and not self._pending.done()

    def read(self) -> Any:
        """Load the document.

        Returns:
            Parsed JSON, or None if the file does not exist or cannot be
            parsed (the failure is logged).
        """
        try:
            with open(self._path, "r", encoding="utf-8") as f:
                return json.load(f)
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as e:
            self._report(PersistenceError(str(self._path), "read"), e)
            return None

    def schedule_flush(self) -> None:
        """Request a write within the debounce window.

        Without a running event loop the write happens immediately.
        """
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self.write_now()
            return
        if self.has_pending_flush:
            return
        self._pending = loop.create_task(self._delayed_flush())

    async def flush(self) -> bool:
        """Cancel any pending flush and write the current snapshot now."""
        pending, self._pending = self._pending, None
        if pending is not None and not pending.done():
            pending.cancel()
        return await self._write_async()

    async def close(self) -> None:
        """Flush outstanding changes and wait for a write already under way."""
        if self.has_pending_flush:
            await self.flush()
        inflight = self._inflight
        if inflight is not None and not inflight.done():
            await inflight

    def write_now(self) -> bool:
        """Synchronously write the current snapshot."""
        return self._write(self._snapshot())

    async def _delayed_flush(self) -> None:
        await asyncio.sleep(self._debounce)
        self._pending = None
        self._inflight = asyncio.current_task()
        try:
            await self._write_async()
        finally:
            self._inflight = None

    async def _write_async(self) -> bool:
        async with self._write_lock:
            data = self._snapshot()
            return await asyncio.to_thread(self._write, data)

    def _write(self, data: Any) -> bool:
        temp_path = self._path.with_name(self._path.name + ".tmp")
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with open(temp_path, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2, default=str)
            temp_path.replace(self._path)
        except (OSError, TypeError, ValueError) as e:
            self._report(PersistenceError(str(self._path), "write"), e)
            return False
        log.debug("json_file_written", path=str(self._path))
        return True

    def _report(self, error: PersistenceError, cause: Exception) -> None:
        log.error(
            "persistence_failed",
            path=error.path,
            operation=error.operation,
            error=str(cause),
        )
        if self._telemetry is not None:
            self._telemetry.capture(
                "persistence_failed",
                {"path": error.path, "operation": error.operation, "error": str(cause)},
            )
