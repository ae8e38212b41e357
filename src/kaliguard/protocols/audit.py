"""Audit sink protocol for KaliGuard.

AuditLogger implements this protocol; any other monitor that needs an
append-only trail (for example a file-integrity scanner) writes through
the same sink so all entries share one ordered, rotated log.
"""

from __future__ import annotations

from typing import Any, Optional, Protocol, Union, runtime_checkable

from kaliguard.core.models import AuditLogEntry, AuditStatus


@runtime_checkable
class AuditSink(Protocol):
    """Protocol for append-only audit trails.

    Methods:
        log: Append one entry; resolves once the entry is durable.
        close: Drain pending writes.
    """

    async def log(
        self,
        action: str,
        status: Union[AuditStatus, str],
        identity: Optional[str] = None,
        resource: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> AuditLogEntry:
        """Append an audit entry.

        Args:
            action: Event name, e.g. "tool_executed".
            status: success, failure or warning.
            identity: Acting identity, if any.
            resource: Affected resource (tool name, task id, file path).
            metadata: Additional JSON-serializable context.

        Returns:
            The timestamped entry that was written.
        """
        ...

    async def close(self) -> None:
        """Wait for queued entries to be written."""
        ...
