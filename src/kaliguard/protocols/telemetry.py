"""Telemetry protocol for KaliGuard.

Telemetry is a collaborator, not a dependency: the pipeline reports events
such as ``audit_event`` or ``audit_log_write_failed`` and carries on whether
or not anything is listening.

Usage:
    from kaliguard.protocols import TelemetrySink

    class PrintSink:
        def capture(self, event, properties=None):
            print(event, properties)

    assert isinstance(PrintSink(), TelemetrySink)
"""

from __future__ import annotations

from typing import Any, Optional, Protocol, runtime_checkable


@runtime_checkable
class TelemetrySink(Protocol):
    """Protocol for telemetry sinks.

    Note:
        capture() must not raise and must not block on I/O.
        Implementations do NOT need to inherit from this class.
    """

    def capture(self, event: str, properties: Optional[dict[str, Any]] = None) -> None:
        """Record a named event with optional properties.

        Args:
            event: Event name (snake_case).
            properties: JSON-serializable key-value pairs.
        """
        ...
