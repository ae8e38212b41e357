"""Core models, exceptions, configuration and logging for KaliGuard."""

from kaliguard.core.exceptions import (
    ArgumentValidationError,
    ConfigurationError,
    DangerousInputRejected,
    HistoryEntryNotFoundError,
    InvalidArgumentValue,
    InvalidCronExpression,
    KaliGuardError,
    MissingRequiredArgument,
    OutputValidationError,
    PermissionDeniedError,
    PersistenceError,
    RateLimitedError,
    TaskNotFoundError,
    ToolNotFoundError,
)
from kaliguard.core.models import (
    AuditLogEntry,
    AuditStatus,
    ErrorKind,
    ExecutionRequest,
    HistoryEntry,
    HistoryStatus,
    ParamKind,
    ParamSpec,
    ScheduledTask,
    ToolDefinition,
    ToolResponse,
    ToolResult,
)

__all__ = [
    "ArgumentValidationError",
    "AuditLogEntry",
    "AuditStatus",
    "ConfigurationError",
    "DangerousInputRejected",
    "ErrorKind",
    "ExecutionRequest",
    "HistoryEntry",
    "HistoryEntryNotFoundError",
    "HistoryStatus",
    "InvalidArgumentValue",
    "InvalidCronExpression",
    "KaliGuardError",
    "MissingRequiredArgument",
    "OutputValidationError",
    "ParamKind",
    "ParamSpec",
    "PermissionDeniedError",
    "PersistenceError",
    "RateLimitedError",
    "ScheduledTask",
    "TaskNotFoundError",
    "ToolDefinition",
    "ToolNotFoundError",
    "ToolResponse",
    "ToolResult",
]
