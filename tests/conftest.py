"""
KaliGuard Test Configuration

Shared pytest fixtures and configuration for all test types.
"""

from pathlib import Path
from typing import Any, Callable

import pytest

from fixtures.fakes import FakeExecutor, RecordingAudit, RecordingTelemetry
from fixtures.manual_scheduler import ManualScheduler
from kaliguard.core.config import Settings
from kaliguard.core.models import ParamKind, ParamSpec, ToolDefinition


# Configure pytest collection
def pytest_configure(config: pytest.Config) -> None:
    """Register custom markers for test categorization."""
    config.addinivalue_line("markers", "unit: Unit tests (fast, isolated)")
    config.addinivalue_line("markers", "safety: Safety-critical tests (input screening, admission)")


@pytest.fixture
def audit() -> RecordingAudit:
    return RecordingAudit()


@pytest.fixture
def telemetry() -> RecordingTelemetry:
    return RecordingTelemetry()


@pytest.fixture
def fake_executor() -> FakeExecutor:
    return FakeExecutor()


@pytest.fixture
def manual_scheduler() -> ManualScheduler:
    return ManualScheduler()


@pytest.fixture
def probe_tool() -> ToolDefinition:
    """A minimal tool with one required target argument."""
    return ToolDefinition(
        name="probe",
        description="Connectivity probe",
        command="probe",
        params=(
            ParamSpec("target", "Host to probe", required=True),
            ParamSpec("count", "Probe count", kind=ParamKind.NUMBER),
            ParamSpec("verbose", "Verbose output", kind=ParamKind.BOOLEAN, default=False),
        ),
        timeout=30,
    )


@pytest.fixture
def settings_factory(tmp_path: Path) -> Callable[..., Settings]:
    """Build Settings rooted in a temporary directory."""

    def _make(**sections: Any) -> Settings:
        storage = {"base_path": str(tmp_path / ".kaliguard")}
        storage.update(sections.pop("storage", {}))
        return Settings(storage=storage, **sections)

    return _make
