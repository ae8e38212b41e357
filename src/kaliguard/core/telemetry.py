"""Telemetry sinks.

Telemetry is fire-and-forget: capture() must never raise into the caller
and must never block on I/O.
"""

from __future__ import annotations

from typing import Any, Optional

import structlog

from kaliguard.protocols.telemetry import TelemetrySink

log = structlog.get_logger(__name__)


class StructlogTelemetry(TelemetrySink):
    """Emits captured events as structured debug log lines."""

    def __init__(self, source: str = "kaliguard") -> None:
        self._log = log.bind(component="telemetry", source=source)

    def capture(self, event: str, properties: Optional[dict[str, Any]] = None) -> None:
        try:
            self._log.debug(event, **(properties or {}))
        except Exception:  # pragma: no cover
            pass


class NullTelemetry(TelemetrySink):
    """Discards every event."""

    def capture(self, event: str, properties: Optional[dict[str, Any]] = None) -> None:
        return None
