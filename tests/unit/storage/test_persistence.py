"""Unit tests for DebouncedJsonFile."""

import asyncio
import json
import threading
from pathlib import Path
from typing import Any

import pytest

from fixtures.fakes import RecordingTelemetry
from kaliguard.storage.persistence import DebouncedJsonFile


class State:
    def __init__(self) -> None:
        self.items: list[int] = []
        self.snapshots = 0

    def snapshot(self) -> list[int]:
        self.snapshots += 1
        return list(self.items)


def test_read_missing_returns_none(tmp_path: Path) -> None:
    assert DebouncedJsonFile(tmp_path / "none.json", snapshot=list).read() is None


def test_read_corrupt_reports_failure(tmp_path: Path) -> None:
    path = tmp_path / "corrupt.json"
    path.write_text("{not json")
    telemetry = RecordingTelemetry()

    assert DebouncedJsonFile(path, snapshot=list, telemetry=telemetry).read() is None
    assert telemetry.names() == ["persistence_failed"]
    assert telemetry.events[0][1]["operation"] == "read"


def test_schedule_without_loop_writes_immediately(tmp_path: Path) -> None:
    state = State()
    state.items = [1, 2]
    file = DebouncedJsonFile(tmp_path / "sub" / "state.json", snapshot=state.snapshot)

    file.schedule_flush()

    assert json.loads(file.path.read_text()) == [1, 2]
    assert not file.has_pending_flush


@pytest.mark.asyncio
async def test_flushes_are_coalesced(tmp_path: Path) -> None:
    state = State()
    file = DebouncedJsonFile(tmp_path / "state.json", snapshot=state.snapshot, debounce=0.05)

    for n in range(5):
        state.items.append(n)
        file.schedule_flush()
    assert file.has_pending_flush
    assert not file.path.exists()

    await asyncio.sleep(0.2)

    assert state.snapshots == 1
    assert json.loads(file.path.read_text()) == [0, 1, 2, 3, 4]
    assert not file.has_pending_flush


@pytest.mark.asyncio
async def test_flush_cancels_pending_and_writes_now(tmp_path: Path) -> None:
    state = State()
    file = DebouncedJsonFile(tmp_path / "state.json", snapshot=state.snapshot, debounce=10.0)
    state.items.append(7)
    file.schedule_flush()

    assert await file.flush() is True

    assert json.loads(file.path.read_text()) == [7]
    assert not file.has_pending_flush


@pytest.mark.asyncio
async def test_close_flushes_pending(tmp_path: Path) -> None:
    state = State()
    file = DebouncedJsonFile(tmp_path / "state.json", snapshot=state.snapshot, debounce=10.0)
    state.items.append(1)
    file.schedule_flush()

    await file.close()

    assert json.loads(file.path.read_text()) == [1]


@pytest.mark.asyncio
async def test_close_waits_for_write_in_progress(tmp_path: Path) -> None:
    entered = threading.Event()
    release = threading.Event()

    class SlowFile(DebouncedJsonFile):
        def _write(self, data: Any) -> bool:
            entered.set()
            release.wait(5)
            return super()._write(data)

    file = SlowFile(tmp_path / "state.json", snapshot=lambda: [1], debounce=0.01)
    file.schedule_flush()
    assert await asyncio.to_thread(entered.wait, 5)
    assert not file.has_pending_flush

    closing = asyncio.create_task(file.close())
    await asyncio.sleep(0.05)
    assert not closing.done()

    release.set()
    await closing
    assert json.loads(file.path.read_text()) == [1]

def test_atomic_write_leaves_no_temp_file(tmp_path: Path) -> None:
    file = DebouncedJsonFile(tmp_path / "state.json", snapshot=lambda: {"a": 1})
    assert file.write_now() is True
    assert sorted(p.name for p in tmp_path.iterdir()) == ["state.json"]


def test_write_failure_reported(tmp_path: Path) -> None:
    blocker = tmp_path / "blocker"
    blocker.write_text("")
    telemetry = RecordingTelemetry()
    file = DebouncedJsonFile(blocker / "state.json", snapshot=list, telemetry=telemetry)

    assert file.write_now() is False
    assert telemetry.events[0][1]["operation"] == "write"
