"""Unit tests for TaskScheduler.

Time is driven by ManualScheduler, so every fire is deterministic. The
runner is a FakeRunner standing in for ToolManager.execute.
"""

import asyncio
import json
from datetime import timedelta
from pathlib import Path

import pytest

from fixtures.fakes import FakeRunner, RecordingAudit
from fixtures.manual_scheduler import ManualScheduler
from kaliguard.core.exceptions import InvalidCronExpression, TaskNotFoundError
from kaliguard.core.models import HistoryStatus, ToolResponse
from kaliguard.scheduler.tasks import TaskScheduler
from kaliguard.storage.history import HistoryStore

ONE_MINUTE = timedelta(minutes=1)


@pytest.fixture
def runner() -> FakeRunner:
    return FakeRunner(ToolResponse(is_error=False, text="scan output"))


@pytest.fixture
def history(tmp_path: Path) -> HistoryStore:
    return HistoryStore(tmp_path / "history.json", flush_debounce=0.01)


@pytest.fixture
def scheduler(
    tmp_path: Path,
    manual_scheduler: ManualScheduler,
    runner: FakeRunner,
    history: HistoryStore,
    audit: RecordingAudit,
) -> TaskScheduler:
    return TaskScheduler(
        tmp_path / "tasks.json",
        backend=manual_scheduler,
        runner=runner,
        history=history,
        audit=audit,
        flush_debounce=0.01,
    )


async def create(scheduler: TaskScheduler, **overrides) -> str:
    fields = {
        "name": "sweep",
        "cron_expression": "* * * * *",
        "tool_name": "nmap",
        "identity": "alice",
        "arguments": {"target": "10.0.0.1"},
        "roles": ["user"],
    }
    fields.update(overrides)
    task = await scheduler.create_task(**fields)
    return task.id


class TestCreate:
    @pytest.mark.asyncio
    async def test_enabled_task_gets_timer(
        self, scheduler: TaskScheduler, manual_scheduler: ManualScheduler, audit: RecordingAudit, tmp_path: Path
    ) -> None:
        task_id = await create(scheduler)

        task = scheduler.get_task(task_id)
        assert scheduler.has_timer(task_id)
        assert manual_scheduler.timer_count == 1
        assert task.next_run == "2026-01-01T00:01:00+00:00"
        persisted = json.loads((tmp_path / "tasks.json").read_text())
        assert [t["id"] for t in persisted] == [task_id]
        created = audit.last("scheduled_task_created")
        assert created.resource == f"scheduled-task:{task_id}"
        assert created.identity == "alice"

    @pytest.mark.asyncio
    async def test_disabled_task_has_no_timer(
        self, scheduler: TaskScheduler, manual_scheduler: ManualScheduler
    ) -> None:
        task_id = await create(scheduler, enabled=False)
        assert not scheduler.has_timer(task_id)
        assert manual_scheduler.timer_count == 0
        assert scheduler.get_task(task_id).next_run is None

    @pytest.mark.asyncio
    async def test_invalid_cron_rejected(self, scheduler: TaskScheduler) -> None:
        with pytest.raises(InvalidCronExpression):
            await create(scheduler, cron_expression="not a cron")
        assert scheduler.list_tasks() == []


class TestFiring:
    @pytest.mark.asyncio
    async def test_fire_runs_tool_and_records(
        self,
        scheduler: TaskScheduler,
        manual_scheduler: ManualScheduler,
        runner: FakeRunner,
        history: HistoryStore,
        audit: RecordingAudit,
    ) -> None:
        task_id = await create(scheduler)

        await manual_scheduler.advance(ONE_MINUTE)

        assert runner.calls == [
            {
                "tool_name": "nmap",
                "arguments": {"target": "10.0.0.1"},
                "identity": "alice",
                "roles": ("user",),
                "record_history": False,
            }
        ]
        [entry] = history.list()
        assert entry.status is HistoryStatus.SUCCESS
        assert entry.output == "scan output"
        assert entry.metadata == {"scheduledTaskId": task_id, "scheduledTaskName": "sweep"}
        task = scheduler.get_task(task_id)
        assert task.last_run is not None
        assert task.next_run == "2026-01-01T00:02:00+00:00"
        assert audit.last("scheduled_task_completed").resource == f"scheduled-task:{task_id}"
        await history.close()

    @pytest.mark.asyncio
    async def test_every_period_fires(
        self, scheduler: TaskScheduler, manual_scheduler: ManualScheduler, runner: FakeRunner, history: HistoryStore
    ) -> None:
        await create(scheduler, cron_expression="*/5 * * * *")
        await manual_scheduler.advance(timedelta(minutes=16))
        assert len(runner.calls) == 3
        await history.close()

    @pytest.mark.asyncio
    async def test_failed_response_recorded(
        self,
        scheduler: TaskScheduler,
        manual_scheduler: ManualScheduler,
        runner: FakeRunner,
        history: HistoryStore,
        audit: RecordingAudit,
    ) -> None:
        runner.response = ToolResponse(is_error=True, text="Permission denied: insufficient permissions")
        await create(scheduler)

        await manual_scheduler.advance(ONE_MINUTE)

        [entry] = history.list()
        assert entry.status is HistoryStatus.FAILED
        assert entry.error == "Permission denied: insufficient permissions"
        failed = audit.last("scheduled_task_failed")
        assert failed.status.value == "failure"
        await history.close()

    @pytest.mark.asyncio
    async def test_runner_exception_recorded(
        self,
        scheduler: TaskScheduler,
        manual_scheduler: ManualScheduler,
        runner: FakeRunner,
        history: HistoryStore,
    ) -> None:
        runner.error = RuntimeError("executor crashed")
        task_id = await create(scheduler)

        await manual_scheduler.advance(ONE_MINUTE)

        [entry] = history.list()
        assert entry.error == "executor crashed"
        # The timer survives a failed run
        assert scheduler.has_timer(task_id)
        await history.close()

    @pytest.mark.asyncio
    async def test_fire_skipped_while_running(
        self,
        scheduler: TaskScheduler,
        manual_scheduler: ManualScheduler,
        runner: FakeRunner,
        history: HistoryStore,
    ) -> None:
        task_id = await create(scheduler)
        runner.gate = asyncio.Event()

        assert await scheduler.run_task_now(task_id) is True
        await runner.started.wait()
        assert scheduler.is_running(task_id)

        await manual_scheduler.advance(ONE_MINUTE)
        assert len(runner.calls) == 1

        runner.gate.set()
        await scheduler.wait_for_running()
        assert not scheduler.is_running(task_id)
        assert len(history.list()) == 1
        await history.close()


class TestUpdate:
    @pytest.mark.asyncio
    async def test_disabled_to_enabled_fires_once_per_period(
        self,
        scheduler: TaskScheduler,
        manual_scheduler: ManualScheduler,
        runner: FakeRunner,
        history: HistoryStore,
    ) -> None:
        task_id = await create(scheduler, enabled=False)

        await scheduler.update_task(task_id, enabled=True)
        await scheduler.update_task(task_id, enabled=True)

        assert manual_scheduler.timer_count == 1
        await manual_scheduler.advance(ONE_MINUTE)
        assert len(runner.calls) == 1
        assert len(history.list()) == 1
        await history.close()

    @pytest.mark.asyncio
    async def test_cron_change_replaces_timer(
        self, scheduler: TaskScheduler, manual_scheduler: ManualScheduler, audit: RecordingAudit
    ) -> None:
        task_id = await create(scheduler)

        task = await scheduler.update_task(task_id, cron_expression="0 3 * * *")

        assert manual_scheduler.specs() == ["0 3 * * *"]
        assert task.next_run == "2026-01-01T03:00:00+00:00"
        assert audit.last("scheduled_task_updated").metadata["updates"] == ["cron_expression"]

    @pytest.mark.asyncio
    async def test_disable_stops_runs(
        self, scheduler: TaskScheduler, manual_scheduler: ManualScheduler, runner: FakeRunner
    ) -> None:
        task_id = await create(scheduler)

        task = await scheduler.update_task(task_id, enabled=False)
        await manual_scheduler.advance(timedelta(minutes=5))

        assert not scheduler.has_timer(task_id)
        assert task.next_run is None
        assert runner.calls == []

    @pytest.mark.asyncio
    async def test_plain_field_update_keeps_timer(
        self, scheduler: TaskScheduler, manual_scheduler: ManualScheduler
    ) -> None:
        task_id = await create(scheduler)
        await scheduler.update_task(task_id, name="renamed", arguments={"target": "10.0.0.2"})
        assert manual_scheduler.timer_count == 1
        assert scheduler.get_task(task_id).arguments == {"target": "10.0.0.2"}

    @pytest.mark.asyncio
    async def test_invalid_cron_leaves_task_unchanged(self, scheduler: TaskScheduler) -> None:
        task_id = await create(scheduler)
        with pytest.raises(InvalidCronExpression):
            await scheduler.update_task(task_id, cron_expression="99 * * * *")
        assert scheduler.get_task(task_id).cron_expression == "* * * * *"

    @pytest.mark.asyncio
    async def test_unknown_task(self, scheduler: TaskScheduler) -> None:
        with pytest.raises(TaskNotFoundError):
            await scheduler.update_task("missing", name="x")

    @pytest.mark.asyncio
    async def test_fixed_fields_rejected(self, scheduler: TaskScheduler) -> None:
        task_id = await create(scheduler)
        with pytest.raises(ValueError):
            await scheduler.update_task(task_id, identity="mallory")


class TestDeleteAndRunNow:
    @pytest.mark.asyncio
    async def test_delete(
        self, scheduler: TaskScheduler, manual_scheduler: ManualScheduler, audit: RecordingAudit
    ) -> None:
        task_id = await create(scheduler)

        assert await scheduler.delete_task(task_id) is True
        assert await scheduler.delete_task(task_id) is False
        assert manual_scheduler.timer_count == 0
        assert scheduler.get_task(task_id) is None
        assert "scheduled_task_deleted" in audit.actions()

    @pytest.mark.asyncio
    async def test_run_now_does_not_touch_schedule(
        self,
        scheduler: TaskScheduler,
        runner: FakeRunner,
        history: HistoryStore,
        audit: RecordingAudit,
    ) -> None:
        task_id = await create(scheduler)
        before = scheduler.get_task(task_id).next_run

        assert await scheduler.run_task_now(task_id) is True
        await scheduler.wait_for_running()

        assert len(runner.calls) == 1
        assert scheduler.get_task(task_id).next_run == before
        assert "scheduled_task_run_requested" in audit.actions()
        await history.close()

    @pytest.mark.asyncio
    async def test_run_now_unknown(self, scheduler: TaskScheduler) -> None:
        assert await scheduler.run_task_now("missing") is False


class TestListing:
    @pytest.mark.asyncio
    async def test_sorted_by_next_run_unscheduled_last(self, scheduler: TaskScheduler) -> None:
        hourly = await create(scheduler, name="hourly", cron_expression="0 * * * *")
        disabled = await create(scheduler, name="off", enabled=False)
        minutely = await create(scheduler, name="minutely", identity="bob")

        assert [t.id for t in scheduler.list_tasks()] == [minutely, hourly, disabled]
        assert [t.id for t in scheduler.list_tasks("bob")] == [minutely]


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_load_rearms_enabled_tasks(
        self, tmp_path: Path, scheduler: TaskScheduler, runner: FakeRunner
    ) -> None:
        enabled = await create(scheduler)
        await create(scheduler, name="off", enabled=False)
        await scheduler.shutdown()

        backend = ManualScheduler()
        reloaded = TaskScheduler(tmp_path / "tasks.json", backend=backend, runner=runner)
        assert reloaded.load() == 2
        assert backend.timer_count == 1
        assert reloaded.has_timer(enabled)

        reloaded.start()
        assert backend.started

    @pytest.mark.asyncio
    async def test_load_keeps_task_with_broken_cron(self, tmp_path: Path, runner: FakeRunner) -> None:
        path = tmp_path / "tasks.json"
        path.write_text(
            json.dumps(
                [
                    {
                        "id": "t1",
                        "name": "broken",
                        "cron_expression": "every tuesday",
                        "tool_name": "nmap",
                        "identity": "alice",
                        "next_run": "2026-01-01T00:00:00+00:00",
                    }
                ]
            )
        )
        reloaded = TaskScheduler(path, backend=ManualScheduler(), runner=runner)

        assert reloaded.load() == 1
        assert not reloaded.has_timer("t1")
        assert reloaded.get_task("t1").next_run is None

    @pytest.mark.asyncio
    async def test_shutdown_drops_timers(
        self, scheduler: TaskScheduler, manual_scheduler: ManualScheduler
    ) -> None:
        task_id = await create(scheduler)
        await scheduler.shutdown()
        assert manual_scheduler.timer_count == 0
        assert not scheduler.has_timer(task_id)
