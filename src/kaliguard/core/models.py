"""Core Data Models for KaliGuard.

This module defines the standardized dataclasses shared by the execution
pipeline, the audit trail, the history store and the task scheduler.

Models:
    ParamSpec / ToolDefinition: Immutable tool catalog entries.
    ExecutionRequest: Transient request passed through the pipeline.
    ToolResult: Subprocess execution result (expected errors, not exceptions).
    ToolResponse: Caller-facing result of ToolManager.execute().
    AuditLogEntry: Append-only audit record.
    HistoryEntry: Execution history record (mutable only while running).
    ScheduledTask: Recurring tool invocation.

Usage:
    from kaliguard.core.models import ToolDefinition, ParamSpec, ParamKind

    probe = ToolDefinition(
        name="probe",
        description="Connectivity probe",
        command="probe",
        params=(ParamSpec("target", "Host to probe", required=True),),
    )
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Optional, Union


# Per-tool timeout bounds (seconds)
DEFAULT_TOOL_TIMEOUT = 300
MAX_TOOL_TIMEOUT = 1800

# Returns an error reason, or None when the value is acceptable
ValueCheck = Callable[[Any], Optional[str]]
OutputCheck = Callable[[str], Optional[str]]


def utc_now() -> str:
    """Return the current UTC time as an ISO 8601 string."""
    return datetime.now(timezone.utc).isoformat()


class ErrorKind(str, Enum):
    """Caller-visible failure taxonomy."""

    NOT_FOUND = "NotFound"
    MISSING_ARGUMENT = "MissingRequiredArgument"
    INVALID_ARGUMENT = "InvalidArgumentValue"
    DANGEROUS_INPUT = "DangerousInputRejected"
    PERMISSION_DENIED = "PermissionDenied"
    RATE_LIMITED = "RateLimited"
    EXECUTION_TIMEOUT = "ExecutionTimeout"
    EXECUTION_FAILURE = "ExecutionFailure"
    OUTPUT_VALIDATION = "OutputValidationError"
    PERSISTENCE = "PersistenceError"


class ParamKind(str, Enum):
    """Declared type of a tool parameter."""

    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    FILE = "file"
    DIRECTORY = "directory"


@dataclass(frozen=True)
class ParamSpec:
    """Schema of a single tool parameter.

    Attributes:
        name: Argument name as supplied by callers and emitted as a flag.
        description: Human-readable description (exposed in listings).
        required: Whether the argument must be present.
        kind: Declared type, checked before the validator runs.
        default: Value applied when an optional argument is absent.
        validator: Optional check returning an error reason or None.
    """

    name: str
    description: str = ""
    required: bool = False
    kind: ParamKind = ParamKind.STRING
    default: Any = None
    validator: Optional[ValueCheck] = field(default=None, compare=False)


@dataclass(frozen=True)
class ToolDefinition:
    """Immutable catalog entry for one wrapped command-line tool.

    Attributes:
        name: Registry key used by callers.
        description: Human-readable description.
        command: Underlying executable.
        params: Ordered parameter specs.
        timeout: Hard execution limit in seconds.
        output_validator: Optional post-run check on captured stdout.
    """

    name: str
    description: str
    command: str
    params: tuple[ParamSpec, ...] = ()
    timeout: int = DEFAULT_TOOL_TIMEOUT
    output_validator: Optional[OutputCheck] = field(default=None, compare=False)

    def __post_init__(self) -> None:
        """Validate fields after initialization."""
        if not self.name or not self.command:
            raise ValueError("Tool name and command must be non-empty")
        if not 0 < self.timeout <= MAX_TOOL_TIMEOUT:
            raise ValueError(
                f"Invalid timeout {self.timeout}s for tool '{self.name}'. "
                f"Must be in (0, {MAX_TOOL_TIMEOUT}]"
            )
        names = [p.name for p in self.params]
        if len(names) != len(set(names)):
            raise ValueError(f"Duplicate parameter names in tool '{self.name}'")
        # Freeze lists passed by callers
        object.__setattr__(self, "params", tuple(self.params))

    def param(self, name: str) -> Optional[ParamSpec]:
        """Return the spec for an argument name, if declared."""
        for spec in self.params:
            if spec.name == name:
                return spec
        return None


@dataclass
class ExecutionRequest:
    """Transient request flowing through the pipeline. Never persisted."""

    tool_name: str
    identity: str
    arguments: dict[str, Any] = field(default_factory=dict)
    roles: tuple[str, ...] = ()


@dataclass
class ToolResult:
    """Tool execution result.

    Used for expected/tool errors (success=True/False).
    Critical/system errors use exceptions instead.

    Attributes:
        success: Whether tool execution succeeded.
        stdout: Standard output from tool.
        stderr: Standard error from tool.
        exit_code: Process exit code.
        duration_ms: Execution duration in milliseconds.
        error_type: Optional error classification. Valid values:
            - None: Success (no error)
            - "TIMEOUT": Execution exceeded time limit
            - "NON_ZERO_EXIT": Command returned non-zero exit code
            - "OUTPUT_LIMIT_EXCEEDED": Captured output exceeded the buffer cap
            - "EXECUTION_EXCEPTION": Process could not be spawned or awaited
        started_at: ISO 8601 start timestamp.
        finished_at: ISO 8601 end timestamp.
    """

    success: bool
    stdout: str
    stderr: str
    exit_code: int
    duration_ms: int
    error_type: Optional[str] = None
    started_at: Optional[str] = None
    finished_at: Optional[str] = None

    def to_json(self) -> str:
        """Serialize to JSON string."""
        return json.dumps(asdict(self))

    @classmethod
    def from_json(cls, data: Union[str, dict]) -> ToolResult:
        """Deserialize from JSON string or dict."""
        if isinstance(data, str):
            data = json.loads(data)
        return cls(**data)


@dataclass
class ToolResponse:
    """Caller-facing outcome of an execution request.

    Serialized by to_dict() into the external call contract:
    ``{isError, content: [{type: "text", text}], meta?}``.
    """

    is_error: bool
    text: str
    meta: Optional[dict[str, Any]] = None

    @property
    def error_kind(self) -> Optional[str]:
        """Return the taxonomy tag for failed responses."""
        if self.meta is None:
            return None
        return self.meta.get("errorKind")

    def to_dict(self) -> dict[str, Any]:
        """Return the external representation."""
        data: dict[str, Any] = {
            "isError": self.is_error,
            "content": [{"type": "text", "text": self.text}],
        }
        if self.meta is not None:
            data["meta"] = dict(self.meta)
        return data


class AuditStatus(str, Enum):
    """Outcome recorded on an audit entry."""

    SUCCESS = "success"
    FAILURE = "failure"
    WARNING = "warning"


@dataclass(frozen=True)
class AuditLogEntry:
    """Append-only audit record. Never mutated once written."""

    timestamp: str
    action: str
    status: AuditStatus
    identity: Optional[str] = None
    resource: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Return a JSON-serializable dict."""
        data = asdict(self)
        data["status"] = self.status.value
        return data

    def to_json(self) -> str:
        """Serialize to one JSON line (non-JSON values rendered as str)."""
        return json.dumps(self.to_dict(), default=str)

    @classmethod
    def from_json(cls, data: Union[str, dict]) -> AuditLogEntry:
        """Deserialize from JSON string or dict."""
        if isinstance(data, str):
            data = json.loads(data)
        data = dict(data)
        data["status"] = AuditStatus(data["status"])
        return cls(**data)


class HistoryStatus(str, Enum):
    """Lifecycle state of a history entry."""

    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"


@dataclass
class HistoryEntry:
    """Record of one past (or in-flight) execution.

    Mutable only while status is RUNNING.
    """

    id: str
    timestamp: str
    identity: str
    command: str
    arguments: dict[str, Any] = field(default_factory=dict)
    status: HistoryStatus = HistoryStatus.RUNNING
    output: Optional[str] = None
    error: Optional[str] = None
    duration_ms: Optional[int] = None
    tool_name: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        """Whether the entry has left the running state."""
        return self.status is not HistoryStatus.RUNNING

    def to_dict(self) -> dict[str, Any]:
        """Return a JSON-serializable dict."""
        data = asdict(self)
        data["status"] = self.status.value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> HistoryEntry:
        """Rebuild an entry from its persisted form."""
        data = dict(data)
        data["status"] = HistoryStatus(data.get("status", "running"))
        return cls(**data)


@dataclass
class ScheduledTask:
    """Recurring invocation of a catalog tool.

    Attributes:
        id: Task identifier.
        name: Display name.
        cron_expression: Five-field crontab expression (UTC).
        tool_name: Registry name of the target tool.
        arguments: Fixed arguments passed on every run.
        enabled: Whether the task owns a live timer.
        identity: Owning identity; runs execute under it.
        roles: Roles presented to the permission manager on each run.
        last_run / next_run: ISO 8601 timestamps.
        created_at / updated_at: ISO 8601 timestamps.
    """

    id: str
    name: str
    cron_expression: str
    tool_name: str
    identity: str
    arguments: dict[str, Any] = field(default_factory=dict)
    enabled: bool = True
    description: Optional[str] = None
    roles: list[str] = field(default_factory=list)
    last_run: Optional[str] = None
    next_run: Optional[str] = None
    created_at: str = field(default_factory=utc_now)
    updated_at: str = field(default_factory=utc_now)
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Return a JSON-serializable dict."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ScheduledTask:
        """Rebuild a task from its persisted form."""
        return cls(**data)
