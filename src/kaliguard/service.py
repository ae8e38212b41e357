"""Service wiring.

KaliGuard builds every collaborator once from Settings and passes the
references explicitly; there are no module-level singletons.

Usage:
    settings = create_settings()
    async with KaliGuard.from_settings(settings) as guard:
        response = await guard.execute("nmap", {"target": "10.0.0.1"}, identity="alice")
"""

from __future__ import annotations

from typing import Any, Iterable, Mapping, Optional, Sequence

import structlog

from kaliguard.core.config import Settings
from kaliguard.core.models import ToolDefinition, ToolResponse
from kaliguard.core.telemetry import StructlogTelemetry
from kaliguard.protocols.scheduler import SchedulerProtocol
from kaliguard.protocols.telemetry import TelemetrySink
from kaliguard.scheduler.cron import APSchedulerBackend
from kaliguard.scheduler.tasks import TaskScheduler
from kaliguard.security.audit import AuditLogger
from kaliguard.security.permissions import PermissionManager
from kaliguard.security.rate_limiter import RateLimiterService
from kaliguard.storage.history import HistoryStore
from kaliguard.tools.executor import SubprocessExecutor
from kaliguard.tools.manager import ToolManager
from kaliguard.tools.registry import ToolRegistry

log = structlog.get_logger(__name__)


class KaliGuard:
    """Owns the pipeline, the history store and the task scheduler."""

    def __init__(
        self,
        settings: Settings,
        audit: AuditLogger,
        history: HistoryStore,
        tools: ToolManager,
        scheduler: TaskScheduler,
        telemetry: TelemetrySink,
    ) -> None:
        self.settings = settings
        self.audit = audit
        self.history = history
        self.tools = tools
        self.scheduler = scheduler
        self.telemetry = telemetry
        self._started = False

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        telemetry: Optional[TelemetrySink] = None,
        scheduler_backend: Optional[SchedulerProtocol] = None,
        tool_definitions: Optional[Iterable[ToolDefinition]] = None,
        executor: Optional[SubprocessExecutor] = None,
    ) -> KaliGuard:
        """Build all services from settings."""
        telemetry = telemetry or StructlogTelemetry()
        storage = settings.storage

        audit = AuditLogger(
            storage.resolve(storage.audit_dir),
            max_file_size=settings.audit.max_file_size,
            max_files=settings.audit.max_files,
            telemetry=telemetry,
        )
        history = HistoryStore(
            storage.resolve(storage.history_file),
            max_entries=settings.history.max_entries,
            flush_debounce=settings.history.flush_debounce,
            audit=audit,
            telemetry=telemetry,
        )
        registry = ToolRegistry(tool_definitions)
        tools = ToolManager(
            registry=registry,
            audit=audit,
            permissions=PermissionManager.from_config(settings.permissions, registry),
            rate_limiter=RateLimiterService(
                tokens=settings.rate_limit.tokens,
                interval=settings.rate_limit.interval,
                idle_ttl=settings.rate_limit.idle_ttl,
                telemetry=telemetry,
            ),
            executor=executor
            or SubprocessExecutor(
                default_timeout=settings.execution.default_timeout,
                max_timeout=settings.execution.max_timeout,
                max_output_bytes=settings.execution.max_output_bytes,
            ),
            history=history,
            telemetry=telemetry,
        )
        history.bind_runner(tools.execute)

        scheduler = TaskScheduler(
            storage.resolve(storage.tasks_file),
            backend=scheduler_backend or APSchedulerBackend(timezone=settings.scheduler.timezone),
            runner=tools.execute,
            history=history,
            audit=audit,
            telemetry=telemetry,
        )
        return cls(settings, audit, history, tools, scheduler, telemetry)

    async def start(self, run_scheduler: bool = True) -> None:
        """Load persisted state and, if enabled, start dispatching timers."""
        self.history.load()
        self.scheduler.load()
        if run_scheduler and self.settings.scheduler.enabled:
            self.scheduler.start()
        self._started = True
        log.info("kaliguard_started", tools=len(self.tools.registry), scheduler=run_scheduler)

    async def shutdown(self) -> None:
        """Stop timers and flush every persisted file."""
        if not self._started:
            return
        await self.scheduler.shutdown()
        await self.history.close()
        await self.audit.close()
        self._started = False
        log.info("kaliguard_stopped")

    async def execute(
        self,
        tool_name: str,
        arguments: Optional[Mapping[str, Any]] = None,
        identity: str = "system",
        roles: Sequence[str] = (),
    ) -> ToolResponse:
        return await self.tools.execute(tool_name, arguments, identity, roles)

    def list_tools(self) -> list[dict[str, Any]]:
        return self.tools.list_tools()

    async def __aenter__(self) -> KaliGuard:
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.shutdown()
