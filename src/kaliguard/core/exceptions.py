"""KaliGuard Exception Hierarchy.

This module defines the structured exception hierarchy for KaliGuard.
All custom exceptions inherit from KaliGuardError, enabling consistent
error handling across the codebase.

Exception Categories:
- Admission/validation errors → Exceptions raised inside the pipeline,
  converted to error responses at the ToolManager boundary.
- Expected/tool errors (timeout, non-zero exit) → Result objects (ToolResult)

Usage:
    from kaliguard.core.exceptions import MissingRequiredArgument

    raise MissingRequiredArgument(argument="target", tool="nmap")
"""

from typing import Any, Optional

from kaliguard.core.models import ErrorKind


class KaliGuardError(Exception):
    """Base exception for all KaliGuard errors.

    Attributes:
        message: Human-readable error description.
        error_kind: Taxonomy tag surfaced in caller-facing responses.
    """

    error_kind: Optional[ErrorKind] = None

    def __init__(self, message: Optional[str] = None) -> None:
        """Initialize KaliGuardError.

        Args:
            message: Optional custom message. Defaults to a generic message.
        """
        self.message = message or "A KaliGuard error occurred."
        super().__init__(self.message)

    @property
    def context(self) -> dict[str, Any]:
        """Return context dictionary for structured logging.

        Returns:
            dict: Key-value pairs of exception context.
        """
        return {}

    def __repr__(self) -> str:
        """Return debug representation."""
        return f"{self.__class__.__name__}({self.message!r})"


class ToolNotFoundError(KaliGuardError):
    """Requested tool is not registered in the catalog.

    Attributes:
        tool: The tool name that was requested.
    """

    error_kind = ErrorKind.NOT_FOUND

    def __init__(self, tool: str, message: Optional[str] = None) -> None:
        self.tool = tool
        if message is None:
            message = f"Tool not found: {tool}"
        super().__init__(message)

    @property
    def context(self) -> dict[str, Any]:
        """Return context for unknown tool."""
        return {"tool": self.tool}

    def __repr__(self) -> str:
        return f"ToolNotFoundError(tool={self.tool!r})"


class ArgumentValidationError(KaliGuardError):
    """Base class for argument rejections raised by the ArgumentValidator.

    Attributes:
        argument: Name of the offending argument.
        reason: Validator-supplied reason, if any.
    """

    error_kind = ErrorKind.INVALID_ARGUMENT

    def __init__(
        self,
        argument: str,
        reason: Optional[str] = None,
        message: Optional[str] = None,
    ) -> None:
        self.argument = argument
        self.reason = reason
        if message is None:
            message = f"Invalid value for {argument}: {reason}"
        super().__init__(message)

    @property
    def context(self) -> dict[str, Any]:
        """Return context for argument validation error."""
        return {"argument": self.argument, "reason": self.reason}

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}(argument={self.argument!r}, "
            f"reason={self.reason!r})"
        )


class MissingRequiredArgument(ArgumentValidationError):
    """A required parameter was absent from the request."""

    error_kind = ErrorKind.MISSING_ARGUMENT

    def __init__(self, argument: str, message: Optional[str] = None) -> None:
        if message is None:
            message = f"Missing required argument: {argument}"
        super().__init__(argument=argument, reason="required", message=message)


class InvalidArgumentValue(ArgumentValidationError):
    """A supplied value failed its kind check or per-argument validator."""

    error_kind = ErrorKind.INVALID_ARGUMENT


class DangerousInputRejected(ArgumentValidationError):
    """A value matched the request-wide dangerous-input screen.

    This screen is independent of tool definitions and cannot be weakened
    by them.
    """

    error_kind = ErrorKind.DANGEROUS_INPUT

    def __init__(
        self,
        argument: str,
        reason: str,
        message: Optional[str] = None,
    ) -> None:
        if message is None:
            message = f"Dangerous input rejected for {argument}: {reason}"
        super().__init__(argument=argument, reason=reason, message=message)


class PermissionDeniedError(KaliGuardError):
    """Admission denied by the permission rule set.

    Attributes:
        command: Normalized command that was checked.
        identity: Caller identity.
        reason: Denial reason from the winning rule.
    """

    error_kind = ErrorKind.PERMISSION_DENIED

    def __init__(
        self,
        command: str,
        identity: str,
        reason: str,
        message: Optional[str] = None,
    ) -> None:
        self.command = command
        self.identity = identity
        self.reason = reason
        if message is None:
            message = f"Permission denied: {reason}"
        super().__init__(message)

    @property
    def context(self) -> dict[str, Any]:
        """Return context for permission denial."""
        return {
            "command": self.command,
            "identity": self.identity,
            "reason": self.reason,
        }

    def __repr__(self) -> str:
        return (
            f"PermissionDeniedError(command={self.command!r}, "
            f"identity={self.identity!r}, reason={self.reason!r})"
        )


class RateLimitedError(KaliGuardError):
    """Identity has exhausted its token bucket.

    Attributes:
        identity: Caller identity.
        limit: Bucket capacity.
        interval: Refill window in seconds.
    """

    error_kind = ErrorKind.RATE_LIMITED

    def __init__(
        self,
        identity: str,
        limit: int,
        interval: float,
        message: Optional[str] = None,
    ) -> None:
        self.identity = identity
        self.limit = limit
        self.interval = interval
        if message is None:
            message = (
                f"Rate limited: more than {limit} executions "
                f"per {interval:g}s for '{identity}'"
            )
        super().__init__(message)

    @property
    def context(self) -> dict[str, Any]:
        """Return context for rate limit rejection."""
        return {
            "identity": self.identity,
            "limit": self.limit,
            "interval": self.interval,
        }


class OutputValidationError(KaliGuardError):
    """Tool output failed the tool's output validator.

    Treated identically to an execution failure for auditing and
    caller-facing purposes.
    """

    error_kind = ErrorKind.OUTPUT_VALIDATION

    def __init__(
        self, tool: str, reason: str, message: Optional[str] = None
    ) -> None:
        self.tool = tool
        self.reason = reason
        if message is None:
            message = f"Output validation failed: {reason}"
        super().__init__(message)

    @property
    def context(self) -> dict[str, Any]:
        """Return context for output validation failure."""
        return {"tool": self.tool, "reason": self.reason}


class PersistenceError(KaliGuardError):
    """Disk I/O on the audit log, history or task file failed.

    Always logged and reported to telemetry; never fatal to the
    in-flight operation.

    Attributes:
        path: File that could not be read or written.
        operation: "read", "write" or "rotate".
    """

    error_kind = ErrorKind.PERSISTENCE

    def __init__(
        self,
        path: str,
        operation: str,
        message: Optional[str] = None,
    ) -> None:
        self.path = path
        self.operation = operation
        if message is None:
            message = f"Failed to {operation} '{path}'."
        super().__init__(message)

    @property
    def context(self) -> dict[str, Any]:
        """Return context for persistence failure."""
        return {"path": self.path, "operation": self.operation}

    def __repr__(self) -> str:
        return (
            f"PersistenceError(path={self.path!r}, "
            f"operation={self.operation!r})"
        )


class ConfigurationError(KaliGuardError):
    """Configuration file or value is invalid.

    Attributes:
        config_path: Path to the configuration file.
        key: The configuration key that caused the error.
    """

    def __init__(
        self,
        config_path: str,
        key: Optional[str] = None,
        message: Optional[str] = None,
    ) -> None:
        self.config_path = config_path
        self.key = key
        if message is None:
            key_info = f" key '{key}'" if key else ""
            message = f"Configuration error in '{config_path}'{key_info}."
        super().__init__(message)

    @property
    def context(self) -> dict[str, Any]:
        """Return context for configuration error."""
        return {"config_path": self.config_path, "key": self.key}

    def __repr__(self) -> str:
        return (
            f"ConfigurationError(config_path={self.config_path!r}, "
            f"key={self.key!r})"
        )


class HistoryEntryNotFoundError(KaliGuardError):
    """History entry id is unknown (e.g. on replay)."""

    error_kind = ErrorKind.NOT_FOUND

    def __init__(self, entry_id: str, message: Optional[str] = None) -> None:
        self.entry_id = entry_id
        if message is None:
            message = f"Command not found in history: {entry_id}"
        super().__init__(message)

    @property
    def context(self) -> dict[str, Any]:
        return {"entry_id": self.entry_id}


class TaskNotFoundError(KaliGuardError):
    """Scheduled task id is unknown."""

    error_kind = ErrorKind.NOT_FOUND

    def __init__(self, task_id: str, message: Optional[str] = None) -> None:
        self.task_id = task_id
        if message is None:
            message = f"Scheduled task not found: {task_id}"
        super().__init__(message)

    @property
    def context(self) -> dict[str, Any]:
        return {"task_id": self.task_id}


class InvalidCronExpression(KaliGuardError, ValueError):
    """Cron expression could not be parsed by the scheduler backend."""

    def __init__(
        self, expression: str, reason: str, message: Optional[str] = None
    ) -> None:
        self.expression = expression
        self.reason = reason
        if message is None:
            message = f"Invalid cron expression '{expression}': {reason}"
        super().__init__(message)

    @property
    def context(self) -> dict[str, Any]:
        return {"expression": self.expression, "reason": self.reason}
