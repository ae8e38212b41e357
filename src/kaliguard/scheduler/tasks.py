"""Task Scheduler - Recurring tool invocations driven through the pipeline.

Per-task state machine:

    disabled --enable--> scheduled --fires--> running --completes--> scheduled
    scheduled | running --disable | delete--> disabled | removed

An enabled task owns exactly one live timer; a disabled task owns none.
Changing a task's cron expression or enabled flag cancels the old timer
before the new one is created. A fire that arrives while the same task is
still running is skipped.

Each run creates a running HistoryEntry, executes the task's tool with its
fixed arguments under the owning identity, updates last_run/next_run, moves
the HistoryEntry to success or failed, and audits the outcome.

The task file is flushed immediately on every structural change (create,
update, delete); run bookkeeping uses the debounced flush.
"""

from __future__ import annotations

import asyncio
import functools
import time
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional, Sequence, Union

import structlog

from kaliguard.core.exceptions import TaskNotFoundError
from kaliguard.core.models import HistoryStatus, ScheduledTask, ToolResponse, utc_now
from kaliguard.protocols.audit import AuditSink
from kaliguard.protocols.scheduler import SchedulerProtocol
from kaliguard.protocols.telemetry import TelemetrySink
from kaliguard.storage.history import HistoryStore, Runner
from kaliguard.storage.persistence import DebouncedJsonFile

log = structlog.get_logger(__name__)

UPDATABLE_FIELDS = frozenset(
    {
        "name",
        "description",
        "cron_expression",
        "tool_name",
        "arguments",
        "enabled",
        "roles",
        "metadata",
    }
)


def _iso(moment: Optional[datetime]) -> Optional[str]:
    if moment is None:
        return None
    return moment.astimezone(timezone.utc).isoformat()


def _next_run_sort_key(task: ScheduledTask) -> tuple[int, datetime]:
    if task.next_run is None:
        return (1, datetime.max.replace(tzinfo=timezone.utc))
    return (0, datetime.fromisoformat(task.next_run))


class TaskScheduler:
    """Owns scheduled tasks, their timers and their persistence."""

    def __init__(
        self,
        path: Union[str, Path],
        backend: SchedulerProtocol,
        runner: Runner,
        history: Optional[HistoryStore] = None,
        audit: Optional[AuditSink] = None,
        telemetry: Optional[TelemetrySink] = None,
        flush_debounce: float = 1.0,
    ) -> None:
        self._backend = backend
        self._runner = runner
        self._history = history
        self._audit = audit
        self._telemetry = telemetry

        self._tasks: dict[str, ScheduledTask] = {}
        self._handles: dict[str, Any] = {}
        self._running: set[str] = set()
        self._inflight: set[asyncio.Task] = set()
        self._file = DebouncedJsonFile(
            path,
            snapshot=lambda: [task.to_dict() for task in self._tasks.values()],
            debounce=flush_debounce,
            telemetry=telemetry,
        )

    @property
    def file(self) -> DebouncedJsonFile:
        return self._file

    def has_timer(self, task_id: str) -> bool:
        """Whether task_id currently owns a live timer."""
        return task_id in self._handles

    def is_running(self, task_id: str) -> bool:
        return task_id in self._running

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def load(self) -> int:
        """Load persisted tasks and arm timers for the enabled ones.

        Tasks whose cron expression no longer parses are kept but left
        without a timer.

        Returns:
            Number of tasks loaded.
        """
        for task_id in list(self._handles):
            self._unschedule(task_id)
        self._tasks = {}

        for raw in self._file.read() or []:
            try:
                task = ScheduledTask.from_dict(raw)
            except (TypeError, ValueError) as e:
                log.warning("scheduled_task_skipped", error=str(e))
                continue
            self._tasks[task.id] = task
            if task.enabled:
                try:
                    self._schedule(task)
                except ValueError as e:
                    task.next_run = None
                    log.error("scheduled_task_invalid_cron", task_id=task.id, error=str(e))

        log.info("scheduled_tasks_loaded", path=str(self._file.path), count=len(self._tasks))
        if self._telemetry is not None:
            self._telemetry.capture("scheduler_tasks_loaded", {"count": len(self._tasks)})
        return len(self._tasks)

    def start(self) -> None:
        """Start dispatching timers."""
        self._backend.start()
        # Next fire times become authoritative once the backend runs
        for task_id, handle in self._handles.items():
            self._tasks[task_id].next_run = _iso(self._backend.next_fire_time(handle))

    async def shutdown(self) -> None:
        """Stop all timers, wait for in-flight runs and flush the task file."""
        self._backend.shutdown()
        self._handles.clear()
        await self.wait_for_running()
        await self._file.flush()

    async def wait_for_running(self) -> None:
        """Wait for out-of-band runs started by run_task_now()."""
        while self._inflight:
            await asyncio.gather(*list(self._inflight))

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------

    async def create_task(
        self,
        name: str,
        cron_expression: str,
        tool_name: str,
        identity: str,
        arguments: Optional[dict[str, Any]] = None,
        enabled: bool = True,
        description: Optional[str] = None,
        roles: Sequence[str] = (),
        metadata: Optional[dict[str, Any]] = None,
    ) -> ScheduledTask:
        """Create a task and arm its timer if enabled.

        Raises:
            InvalidCronExpression: If cron_expression cannot be parsed.
        """
        self._backend.validate(cron_expression)
        now = utc_now()
        task = ScheduledTask(
            id=uuid.uuid4().hex,
            name=name,
            cron_expression=cron_expression,
            tool_name=tool_name,
            identity=identity,
            arguments=dict(arguments or {}),
            enabled=enabled,
            description=description,
            roles=list(roles),
            created_at=now,
            updated_at=now,
            metadata=dict(metadata or {}),
        )
        self._tasks[task.id] = task
        if task.enabled:
            self._schedule(task)
        await self._file.flush()

        await self._audit_event(
            "scheduled_task_created",
            task,
            {"taskName": name, "tool": tool_name, "cronExpression": cron_expression},
        )
        log.info("scheduled_task_created", task_id=task.id, tool=tool_name, enabled=enabled)
        return task

    async def update_task(self, task_id: str, **updates: Any) -> ScheduledTask:
        """Apply updates to a task, replacing its timer when needed.

        Raises:
            TaskNotFoundError: If task_id is unknown.
            ValueError: If updates names a field that cannot change.
            InvalidCronExpression: If a new cron expression cannot be parsed.
        """
        task = self._tasks.get(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        invalid = set(updates) - UPDATABLE_FIELDS
        if invalid:
            raise ValueError(f"Cannot update task fields: {sorted(invalid)}")
        if "cron_expression" in updates:
            self._backend.validate(updates["cron_expression"])

        for name, value in updates.items():
            if name == "roles":
                value = list(value)
            elif name in ("arguments", "metadata"):
                value = dict(value or {})
            setattr(task, name, value)
        task.updated_at = utc_now()

        if "cron_expression" in updates or "enabled" in updates:
            # Stop the old timer before the new one starts
            self._unschedule(task_id)
            if task.enabled:
                self._schedule(task)
            else:
                task.next_run = None
        await self._file.flush()

        await self._audit_event(
            "scheduled_task_updated",
            task,
            {"taskName": task.name, "updates": sorted(updates)},
        )
        log.info("scheduled_task_updated", task_id=task_id, updates=sorted(updates))
        return task

    async def delete_task(self, task_id: str) -> bool:
        """Remove a task and its timer.

        Returns:
            False if task_id is unknown.
        """
        task = self._tasks.pop(task_id, None)
        if task is None:
            return False
        self._unschedule(task_id)
        await self._file.flush()

        await self._audit_event("scheduled_task_deleted", task, {"taskName": task.name})
        log.info("scheduled_task_deleted", task_id=task_id)
        return True

    def get_task(self, task_id: str) -> Optional[ScheduledTask]:
        return self._tasks.get(task_id)

    def list_tasks(self, identity: Optional[str] = None) -> list[ScheduledTask]:
        """Return tasks sorted by next run; unscheduled tasks last."""
        tasks = [t for t in self._tasks.values() if not identity or t.identity == identity]
        return sorted(tasks, key=_next_run_sort_key)

    async def run_task_now(self, task_id: str) -> bool:
        """Start an out-of-band run without touching the schedule.

        The run proceeds in the background; wait_for_running() awaits it.

        Returns:
            False if task_id is unknown.
        """
        task = self._tasks.get(task_id)
        if task is None:
            return False

        await self._audit_event("scheduled_task_run_requested", task, {"taskName": task.name})
        run = asyncio.get_running_loop().create_task(self._fire(task_id))
        self._inflight.add(run)
        run.add_done_callback(self._inflight.discard)
        return True

    # ------------------------------------------------------------------
    # Timers and execution
    # ------------------------------------------------------------------

    def _schedule(self, task: ScheduledTask) -> None:
        handle = self._backend.schedule_recurring(
            task.cron_expression, functools.partial(self._fire, task.id)
        )
        self._handles[task.id] = handle
        task.next_run = _iso(self._backend.next_fire_time(handle))

    def _unschedule(self, task_id: str) -> None:
        handle = self._handles.pop(task_id, None)
        if handle is not None:
            self._backend.cancel(handle)

    async def _fire(self, task_id: str) -> None:
        task = self._tasks.get(task_id)
        if task is None:
            return
        if task_id in self._running:
            log.warning("scheduled_task_skipped_still_running", task_id=task_id)
            return

        self._running.add(task_id)
        try:
            await self._execute(task)
        finally:
            self._running.discard(task_id)

    async def _execute(self, task: ScheduledTask) -> None:
        start_time = time.perf_counter()
        history_id = None
        if self._history is not None:
            history_id = self._history.add(
                identity=task.identity,
                command=task.tool_name,
                arguments=task.arguments,
                tool_name=task.tool_name,
                metadata={"scheduledTaskId": task.id, "scheduledTaskName": task.name},
            )

        response: Optional[ToolResponse] = None
        error: Optional[str] = None
        try:
            response = await self._runner(
                task.tool_name,
                dict(task.arguments),
                task.identity,
                roles=tuple(task.roles),
                record_history=False,
            )
        except Exception as e:
            log.error("scheduled_task_exception", task_id=task.id, error=str(e), exc_info=True)
            error = str(e)

        if response is not None and response.is_error:
            error = response.text
        duration_ms = int((time.perf_counter() - start_time) * 1000)

        task.last_run = utc_now()
        handle = self._handles.get(task.id)
        if handle is not None:
            task.next_run = _iso(self._backend.next_fire_time(handle))
        self._file.schedule_flush()

        if self._history is not None and history_id is not None:
            self._history.update(
                history_id,
                status=HistoryStatus.FAILED if error else HistoryStatus.SUCCESS,
                output=None if error or response is None else response.text,
                error=error,
                duration_ms=duration_ms,
            )

        metadata: dict[str, Any] = {
            "taskName": task.name,
            "tool": task.tool_name,
            "duration_ms": duration_ms,
        }
        if error:
            metadata["error"] = error
        await self._audit_event(
            "scheduled_task_failed" if error else "scheduled_task_completed",
            task,
            metadata,
            status="failure" if error else "success",
        )

    async def _audit_event(
        self,
        action: str,
        task: ScheduledTask,
        metadata: dict[str, Any],
        status: str = "success",
    ) -> None:
        if self._audit is None:
            return
        await self._audit.log(
            action,
            status,
            identity=task.identity,
            resource=f"scheduled-task:{task.id}",
            metadata=metadata,
        )
