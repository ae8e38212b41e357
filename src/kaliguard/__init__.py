"""
KaliGuard - Security-mediated execution of Kali command-line tools

Validates, admits, runs and audits catalog tools on behalf of multiple
callers, with recurring schedules and replayable history.
"""

from kaliguard.protocols import (
    AuditSink,
    SchedulerProtocol,
    TelemetrySink,
)

__version__ = "1.0.0"

__all__ = [
    "AuditSink",
    "SchedulerProtocol",
    "TelemetrySink",
]
