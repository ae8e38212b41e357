"""Execution History Store.

Bounded, newest-first record of executions. Entries are created in the
``running`` state and become immutable once they reach ``success`` or
``failed``. Capacity is enforced on every insert by evicting the oldest
entries.

Persistence goes through DebouncedJsonFile: mutations only touch memory and
schedule one coalesced write, so readers always see current state.

Replay re-executes a past entry's tool and arguments under a new identity
through the bound runner (normally ToolManager.execute) and records the
outcome on a NEW entry; the original is never touched.

Usage:
    store = HistoryStore("~/.kaliguard/data/command-history.json", audit=audit)
    store.load()
    entry_id = store.add(identity="alice", command="nmap", tool_name="nmap")
    store.update(entry_id, status="success", output="...")
"""

from __future__ import annotations

import time
import uuid
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, Sequence, Union

import structlog

from kaliguard.core.exceptions import HistoryEntryNotFoundError
from kaliguard.core.models import HistoryEntry, HistoryStatus, ToolResponse, utc_now
from kaliguard.protocols.audit import AuditSink
from kaliguard.protocols.telemetry import TelemetrySink
from kaliguard.storage.persistence import DebouncedJsonFile

log = structlog.get_logger(__name__)

DEFAULT_MAX_ENTRIES = 1000

# Fields fixed at creation
IMMUTABLE_FIELDS = frozenset({"id", "timestamp", "identity"})
MUTABLE_FIELDS = frozenset(
    {"command", "arguments", "status", "output", "error", "duration_ms", "tool_name", "metadata"}
)

# Signature of ToolManager.execute as used for replay
Runner = Callable[..., Awaitable[ToolResponse]]


class HistoryStore:
    """Bounded execution history with debounced JSON persistence."""

    def __init__(
        self,
        path: Union[str, Path],
        max_entries: int = DEFAULT_MAX_ENTRIES,
        flush_debounce: float = 1.0,
        audit: Optional[AuditSink] = None,
        telemetry: Optional[TelemetrySink] = None,
        runner: Optional[Runner] = None,
    ) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self._entries: list[HistoryEntry] = []
        self._max_entries = max_entries
        self._audit = audit
        self._runner = runner
        self._file = DebouncedJsonFile(
            path,
            snapshot=lambda: [entry.to_dict() for entry in self._entries],
            debounce=flush_debounce,
            telemetry=telemetry,
        )

    @property
    def max_entries(self) -> int:
        return self._max_entries

    @property
    def file(self) -> DebouncedJsonFile:
        return self._file

    def __len__(self) -> int:
        return len(self._entries)

    def bind_runner(self, runner: Runner) -> None:
        """Attach the execution entry point used by replay()."""
        self._runner = runner

    def load(self) -> int:
        """Replace in-memory state with the persisted entries.

        Returns:
            Number of entries loaded.
        """
        data = self._file.read()
        entries: list[HistoryEntry] = []
        for raw in data or []:
            try:
                entries.append(HistoryEntry.from_dict(raw))
            except (TypeError, ValueError) as e:
                log.warning("history_entry_skipped", error=str(e))
        self._entries = entries[: self._max_entries]
        log.info("history_loaded", path=str(self._file.path), count=len(self._entries))
        return len(self._entries)

    def add(
        self,
        identity: str,
        command: str,
        arguments: Optional[dict[str, Any]] = None,
        status: Union[HistoryStatus, str] = HistoryStatus.RUNNING,
        output: Optional[str] = None,
        error: Optional[str] = None,
        duration_ms: Optional[int] = None,
        tool_name: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> str:
        """Insert a new entry at the front and return its id."""
        entry = HistoryEntry(
            id=uuid.uuid4().hex,
            timestamp=utc_now(),
            identity=identity,
            command=command,
            arguments=dict(arguments or {}),
            status=HistoryStatus(status),
            output=output,
            error=error,
            duration_ms=duration_ms,
            tool_name=tool_name,
            metadata=dict(metadata or {}),
        )
        self._entries.insert(0, entry)
        if len(self._entries) > self._max_entries:
            del self._entries[self._max_entries :]
        self._file.schedule_flush()
        return entry.id

    def update(self, entry_id: str, **fields: Any) -> bool:
        """Apply field changes to a running entry.

        Returns:
            False if the entry is unknown (e.g. evicted) or already terminal.

        Raises:
            ValueError: If fields names an immutable or unknown field.
        """
        immutable = IMMUTABLE_FIELDS.intersection(fields)
        if immutable:
            raise ValueError(f"Cannot update immutable fields: {sorted(immutable)}")
        unknown = set(fields) - MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown history fields: {sorted(unknown)}")

        entry = self.get(entry_id)
        if entry is None:
            return False
        if entry.is_terminal:
            log.warning("history_update_refused", entry_id=entry_id, status=entry.status.value)
            return False

        if "status" in fields:
            fields["status"] = HistoryStatus(fields["status"])
        for name, value in fields.items():
            setattr(entry, name, value)
        self._file.schedule_flush()
        return True

    def get(self, entry_id: str) -> Optional[HistoryEntry]:
        for entry in self._entries:
            if entry.id == entry_id:
                return entry
        return None

    def list(
        self,
        identity: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[HistoryEntry]:
        """Return entries newest first, optionally for one identity."""
        entries = self._entries
        if identity:
            entries = [e for e in entries if e.identity == identity]
        return entries[offset : offset + limit]

    def search(
        self,
        query: str,
        identity: Optional[str] = None,
        limit: int = 50,
    ) -> list[HistoryEntry]:
        """Case-insensitive substring search over command, tool name and output."""
        term = query.lower()
        results = []
        for entry in self._entries:
            if identity and entry.identity != identity:
                continue
            haystacks = (entry.command, entry.tool_name or "", entry.output or "")
            if any(term in text.lower() for text in haystacks):
                results.append(entry)
                if len(results) >= limit:
                    break
        return results

    async def clear(self, identity: Optional[str] = None) -> int:
        """Remove all entries, or only those of identity, and flush at once.

        Returns:
            Number of entries removed.
        """
        before = len(self._entries)
        if identity:
            self._entries = [e for e in self._entries if e.identity != identity]
        else:
            self._entries = []
        removed = before - len(self._entries)

        await self._file.flush()
        if self._audit is not None:
            await self._audit.log(
                "history_cleared",
                "success",
                identity=identity or "system",
                metadata={"clearedBy": identity or "system", "removed": removed},
            )
        log.info("history_cleared", identity=identity, removed=removed)
        return removed

    async def replay(
        self,
        entry_id: str,
        identity: str,
        roles: Sequence[str] = (),
    ) -> HistoryEntry:
        """Re-execute a past entry under identity and return the new entry.

        Raises:
            HistoryEntryNotFoundError: If entry_id is unknown.
            ValueError: If the entry does not name a tool.
            RuntimeError: If no runner has been bound.
        """
        original = self.get(entry_id)
        if original is None:
            raise HistoryEntryNotFoundError(entry_id)
        if not original.tool_name:
            raise ValueError(f"History entry {entry_id} has no tool to replay")
        if self._runner is None:
            raise RuntimeError("HistoryStore runner not bound. Call bind_runner() first.")

        tool_name = original.tool_name
        arguments = dict(original.arguments)
        replay_id = self.add(
            identity=identity,
            command=original.command,
            arguments=arguments,
            tool_name=tool_name,
            metadata={"replayedFrom": entry_id, "originalUser": original.identity},
        )

        start_time = time.perf_counter()
        try:
            response = await self._runner(
                tool_name,
                arguments,
                identity,
                roles=tuple(roles),
                record_history=False,
            )
        except Exception as e:
            self.update(
                replay_id,
                status=HistoryStatus.FAILED,
                error=str(e),
                duration_ms=int((time.perf_counter() - start_time) * 1000),
            )
            await self._audit_replay(replay_id, entry_id, identity, tool_name, ok=False)
            raise

        self.update(
            replay_id,
            status=HistoryStatus.FAILED if response.is_error else HistoryStatus.SUCCESS,
            output=None if response.is_error else response.text,
            error=response.text if response.is_error else None,
            duration_ms=int((time.perf_counter() - start_time) * 1000),
        )
        await self._audit_replay(replay_id, entry_id, identity, tool_name, ok=not response.is_error)

        replayed = self.get(replay_id)
        # Only evicted if capacity was exceeded while the run was in flight
        if replayed is None:
            raise HistoryEntryNotFoundError(replay_id)
        return replayed

    async def _audit_replay(
        self, replay_id: str, original_id: str, identity: str, tool_name: str, ok: bool
    ) -> None:
        if self._audit is None:
            return
        await self._audit.log(
            "history_replayed",
            "success" if ok else "failure",
            identity=identity,
            resource=tool_name,
            metadata={"entryId": replay_id, "replayedFrom": original_id},
        )

    async def close(self) -> None:
        """Flush pending changes."""
        await self._file.close()
