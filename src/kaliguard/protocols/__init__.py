"""Protocol abstractions for KaliGuard.

This module provides the seams that let collaborators be swapped in tests
and by neighbouring components.

Protocols:
    TelemetrySink: Fire-and-forget event sink.
    AuditSink: Append-only audit trail shared with other monitors.
    SchedulerProtocol: Recurring timer capability behind the task scheduler.

Usage:
    from kaliguard.protocols import AuditSink, TelemetrySink

    assert isinstance(audit_logger, AuditSink)
"""

from __future__ import annotations

from kaliguard.protocols.audit import AuditSink
from kaliguard.protocols.scheduler import SchedulerProtocol, TimerCallback
from kaliguard.protocols.telemetry import TelemetrySink

__all__ = [
    "AuditSink",
    "SchedulerProtocol",
    "TelemetrySink",
    "TimerCallback",
]
