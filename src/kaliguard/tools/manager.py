"""Tool Manager - The security-mediated execution pipeline.

execute() is the single entry point for every caller, including the task
scheduler and history replay:

    registry lookup -> audit start -> argument validation
        -> permission + rate-limit admission -> command build
        -> subprocess run (concurrency slot held) -> output validation
        -> audit outcome + history update

Admission and validation failures short-circuit before any subprocess is
started. Every call produces exactly one terminal audit entry, written
before the response is returned:

    tool_not_found          unknown tool (no start entry)
    tool_execution_denied   permission or rate-limit rejection
    tool_execution_failed   validation, execution or output failure
    tool_executed           success
"""

from __future__ import annotations

import asyncio
from typing import Any, Mapping, Optional, Sequence

import structlog

from kaliguard.core.exceptions import (
    ArgumentValidationError,
    KaliGuardError,
    OutputValidationError,
    PermissionDeniedError,
    RateLimitedError,
    ToolNotFoundError,
)
from kaliguard.core.models import (
    ErrorKind,
    HistoryStatus,
    ToolDefinition,
    ToolResponse,
    ToolResult,
    utc_now,
)
from kaliguard.protocols.audit import AuditSink
from kaliguard.protocols.telemetry import TelemetrySink
from kaliguard.security.permissions import PermissionManager
from kaliguard.security.rate_limiter import RateLimiterService
from kaliguard.storage.history import HistoryStore
from kaliguard.tools.command_builder import CommandBuilder
from kaliguard.tools.executor import SubprocessExecutor
from kaliguard.tools.registry import ToolRegistry
from kaliguard.tools.validator import ArgumentValidator

log = structlog.get_logger(__name__)


class ToolManager:
    """Runs catalog tools on behalf of identified callers."""

    def __init__(
        self,
        registry: ToolRegistry,
        audit: AuditSink,
        permissions: Optional[PermissionManager] = None,
        rate_limiter: Optional[RateLimiterService] = None,
        executor: Optional[SubprocessExecutor] = None,
        validator: Optional[ArgumentValidator] = None,
        builder: Optional[CommandBuilder] = None,
        history: Optional[HistoryStore] = None,
        telemetry: Optional[TelemetrySink] = None,
    ) -> None:
        self._registry = registry
        self._audit = audit
        self._permissions = permissions or PermissionManager()
        self._rate_limiter = rate_limiter or RateLimiterService()
        self._executor = executor or SubprocessExecutor()
        self._validator = validator or ArgumentValidator()
        self._builder = builder or CommandBuilder()
        self._history = history
        self._telemetry = telemetry

    @property
    def registry(self) -> ToolRegistry:
        return self._registry

    @property
    def permissions(self) -> PermissionManager:
        return self._permissions

    def list_tools(self) -> list[dict[str, Any]]:
        """Return the redacted tool catalog."""
        return self._registry.list_tools()

    async def execute(
        self,
        tool_name: str,
        arguments: Optional[Mapping[str, Any]] = None,
        identity: str = "system",
        roles: Sequence[str] = (),
        record_history: bool = True,
    ) -> ToolResponse:
        """Validate, admit, run and audit one tool invocation.

        Args:
            tool_name: Registry name of the tool.
            arguments: Caller-supplied arguments.
            identity: Verified caller identity.
            roles: Roles held by the caller.
            record_history: Create a HistoryEntry for this call. The
                scheduler and replay record their own entries.

        Returns:
            ToolResponse; expected failures are error responses, not
            exceptions.
        """
        args = dict(arguments or {})
        try:
            tool = self._registry.get(tool_name)
        except ToolNotFoundError as e:
            await self._audit.log(
                "tool_not_found",
                "failure",
                identity=identity,
                resource=tool_name,
                metadata={"args": args},
            )
            log.info("tool_not_found", tool=tool_name, identity=identity)
            return self._error_response(tool_name, e.message, e.message, ErrorKind.NOT_FOUND)

        call = _Call(tool, identity, args)
        await self._audit.log(
            "tool_execution_started",
            "success",
            identity=identity,
            resource=tool.name,
            metadata={"args": args},
        )
        if record_history and self._history is not None:
            call.history_id = self._history.add(
                identity=identity,
                command=tool.name,
                arguments=args,
                tool_name=tool.name,
            )

        try:
            validated = self._validator.validate(tool, args)
        except ArgumentValidationError as e:
            return await self._fail(call, f"Invalid arguments: {e.message}", e)

        rejection = self._admit(tool, identity, roles)
        if rejection is not None:
            return await self._deny(call, rejection)

        try:
            with self._permissions.track(identity, tool.command):
                command_line = self._builder.build(tool, validated)
                call.command_line = command_line
                if call.history_id is not None:
                    self._history.update(call.history_id, command=command_line)
                result = await self._executor.run(command_line, tool.timeout)
        except asyncio.CancelledError:
            self._finish_history(call, HistoryStatus.FAILED, error="cancelled")
            raise
        except Exception as e:
            log.error("tool_execution_exception", tool=tool.name, error=str(e), exc_info=True)
            return await self._fail(
                call, f"Error executing {tool.name}: {e}", None, ErrorKind.EXECUTION_FAILURE
            )

        if not result.success:
            kind = (
                ErrorKind.EXECUTION_TIMEOUT
                if result.error_type == "TIMEOUT"
                else ErrorKind.EXECUTION_FAILURE
            )
            return await self._fail(
                call,
                f"Error executing {tool.name}: {_failure_message(result)}",
                None,
                kind,
                result,
            )

        if tool.output_validator is not None:
            try:
                reason = tool.output_validator(result.stdout)
            except Exception as e:
                log.error("output_validator_exception", tool=tool.name, error=str(e), exc_info=True)
                reason = f"output validator raised {type(e).__name__}: {e}"
            if reason:
                error = OutputValidationError(tool.name, reason)
                return await self._fail(
                    call, f"Error executing {tool.name}: {error.message}", error, result=result
                )

        return await self._succeed(call, result)

    # ------------------------------------------------------------------
    # Admission
    # ------------------------------------------------------------------

    def _admit(
        self, tool: ToolDefinition, identity: str, roles: Sequence[str]
    ) -> Optional[KaliGuardError]:
        decision = self._permissions.check(tool.command, identity, roles)
        if not decision.allowed:
            return PermissionDeniedError(tool.command, identity, decision.reason or "denied")

        limit = self._rate_limiter.check_limit(identity)
        if not limit.allowed:
            return RateLimitedError(identity, self._rate_limiter.tokens, self._rate_limiter.interval)

        rule = decision.rule
        if rule is not None and rule.rate_limit is not None:
            limit = self._rate_limiter.check_limit(
                identity, spec=rule.rate_limit, key=str(rule.pattern)
            )
            if not limit.allowed:
                self._rate_limiter.refund(identity)
                return RateLimitedError(identity, rule.rate_limit.tokens, rule.rate_limit.interval)
        return None

    # ------------------------------------------------------------------
    # Outcomes
    # ------------------------------------------------------------------

    async def _succeed(self, call: _Call, result: ToolResult) -> ToolResponse:
        await self._audit.log(
            "tool_executed",
            "success",
            identity=call.identity,
            resource=call.tool.name,
            metadata={
                "args": call.args,
                "command": call.command_line,
                "exitCode": result.exit_code,
                "duration_ms": result.duration_ms,
            },
        )
        self._capture("tool_executed", {"tool": call.tool.name, "duration_ms": result.duration_ms})
        self._finish_history(
            call, HistoryStatus.SUCCESS, output=result.stdout, duration_ms=result.duration_ms
        )
        log.info(
            "tool_executed",
            tool=call.tool.name,
            identity=call.identity,
            duration_ms=result.duration_ms,
        )
        return ToolResponse(
            is_error=False,
            text=result.stdout,
            meta={"tool": call.tool.name, "executionTime": utc_now(), "status": "success"},
        )

    async def _fail(
        self,
        call: _Call,
        text: str,
        error: Optional[KaliGuardError],
        kind: Optional[ErrorKind] = None,
        result: Optional[ToolResult] = None,
    ) -> ToolResponse:
        kind = kind or (error.error_kind if error else None) or ErrorKind.EXECUTION_FAILURE
        message = error.message if error else text
        metadata: dict[str, Any] = {"error": message, "errorKind": kind.value, "args": call.args}
        if error is not None:
            metadata.update(error.context)
        if result is not None:
            metadata["exitCode"] = result.exit_code
            metadata["duration_ms"] = result.duration_ms

        await self._audit.log(
            "tool_execution_failed",
            "failure",
            identity=call.identity,
            resource=call.tool.name,
            metadata=metadata,
        )
        self._capture(
            "tool_execution_failed",
            {"tool": call.tool.name, "error": message, "errorKind": kind.value},
        )
        self._finish_history(
            call,
            HistoryStatus.FAILED,
            output=result.stdout if result and result.stdout else None,
            error=message,
            duration_ms=result.duration_ms if result else None,
        )
        log.warning(
            "tool_execution_failed",
            tool=call.tool.name,
            identity=call.identity,
            error_kind=kind.value,
            error=message,
        )
        return self._error_response(call.tool.name, text, message, kind)

    async def _deny(self, call: _Call, error: KaliGuardError) -> ToolResponse:
        kind = error.error_kind or ErrorKind.PERMISSION_DENIED
        await self._audit.log(
            "tool_execution_denied",
            "failure",
            identity=call.identity,
            resource=call.tool.name,
            metadata={
                "error": error.message,
                "errorKind": kind.value,
                "args": call.args,
                **error.context,
            },
        )
        self._capture("tool_execution_denied", {"tool": call.tool.name, "errorKind": kind.value})
        self._finish_history(call, HistoryStatus.FAILED, error=error.message)
        log.warning(
            "tool_execution_denied",
            tool=call.tool.name,
            identity=call.identity,
            error_kind=kind.value,
            reason=error.message,
        )
        return self._error_response(call.tool.name, error.message, error.message, kind)

    def _finish_history(self, call: _Call, status: HistoryStatus, **fields: Any) -> None:
        if call.history_id is None or self._history is None:
            return
        self._history.update(call.history_id, status=status, **fields)

    @staticmethod
    def _error_response(tool: str, text: str, error: str, kind: ErrorKind) -> ToolResponse:
        return ToolResponse(
            is_error=True,
            text=text,
            meta={
                "tool": tool,
                "executionTime": utc_now(),
                "status": "error",
                "error": error,
                "errorKind": kind.value,
            },
        )

    def _capture(self, event: str, properties: dict[str, Any]) -> None:
        if self._telemetry is not None:
            self._telemetry.capture(event, properties)


class _Call:
    """Per-request bookkeeping."""

    __slots__ = ("tool", "identity", "args", "history_id", "command_line")

    def __init__(self, tool: ToolDefinition, identity: str, args: dict[str, Any]) -> None:
        self.tool = tool
        self.identity = identity
        self.args = args
        self.history_id: Optional[str] = None
        self.command_line: Optional[str] = None


def _failure_message(result: ToolResult) -> str:
    stderr = result.stderr.strip()
    if stderr:
        return stderr
    return f"command exited with code {result.exit_code}"
