"""Argument Validator - Per-tool checks plus a request-wide dangerous-input screen.

Validation runs in two passes:

1. The tool's ParamSpecs, in declaration order: a missing required value
   fails immediately, a supplied value must match its declared kind and
   then pass the parameter's own validator.
2. A screen over every supplied string value (including unknown
   arguments and list items) that no ToolDefinition can relax:
   blacklisted sub-commands, path traversal, shell metacharacters and
   control characters.

Security Features:
- NFKC Unicode normalization and zero-width stripping before screening
- Word-bounded, case-insensitive blacklist matching
- Null byte and control character rejection

Usage:
    from kaliguard.tools.validator import ArgumentValidator

    validated = ArgumentValidator().validate(tool, {"target": "10.0.0.1"})
"""

from __future__ import annotations

import re
import unicodedata
from typing import Any, Mapping, Optional

import structlog

from kaliguard.core.exceptions import (
    DangerousInputRejected,
    InvalidArgumentValue,
    MissingRequiredArgument,
)
from kaliguard.core.models import ParamKind, ParamSpec, ToolDefinition

log = structlog.get_logger(__name__)

COMMAND_BLACKLIST = (
    "rm -rf",
    "mkfs",
    "dd if=",
    "shutdown",
    "reboot",
    "halt",
    "poweroff",
    "init",
    "killall",
    "pkill",
    "kill",
    "chmod 777",
    "chown -R",
    "mv /",
    "> /dev/sd",
    "mknod",
    "wget",
    "curl",
)

PATH_TRAVERSAL_RE = re.compile(r"\.\./|\.\.\\")
SHELL_METACHARS_RE = re.compile(r"[|&;`$(){}\[\]<>]")
ZERO_WIDTH_CHARS = "\u200b\u200c\u200d\u200e\u200f\ufeff"
MAX_VALUE_LENGTH = 4096


def _blacklist_pattern(item: str) -> re.Pattern[str]:
    # Substring match; any run of whitespace stands in for a single space
    body = r"\s+".join(re.escape(part) for part in item.split(" "))
    return re.compile(body, re.IGNORECASE)


BLACKLIST_PATTERNS = tuple((item, _blacklist_pattern(item)) for item in COMMAND_BLACKLIST)


def normalize_value(text: str) -> str:
    """Apply NFKC normalization and strip zero-width characters."""
    normalized = unicodedata.normalize("NFKC", text)
    for zwc in ZERO_WIDTH_CHARS:
        normalized = normalized.replace(zwc, "")
    return normalized


def screen_value(text: str) -> Optional[str]:
    """Return why a string value is dangerous, or None if it passes.

    The value must already be normalized.
    """
    if "\x00" in text:
        return "null byte"
    for char in text:
        if unicodedata.category(char) == "Cc":
            return f"control character U+{ord(char):04X}"
    if len(text) > MAX_VALUE_LENGTH:
        return f"value longer than {MAX_VALUE_LENGTH} characters"
    for item, pattern in BLACKLIST_PATTERNS:
        if pattern.search(text):
            return f"blacklisted pattern '{item}'"
    if PATH_TRAVERSAL_RE.search(text):
        return "path traversal detected"
    match = SHELL_METACHARS_RE.search(text)
    if match:
        return f"shell metacharacter '{match.group()}'"
    return None


class ArgumentValidator:
    """Validates a request's arguments against a ToolDefinition."""

    def validate(self, tool: ToolDefinition, args: Mapping[str, Any]) -> dict[str, Any]:
        """Validate arguments and return the map to build the command from.

        Declared defaults are applied for absent optional parameters.
        Unknown argument names are screened, then dropped.

        Raises:
            MissingRequiredArgument: A required parameter is absent, None or blank.
            InvalidArgumentValue: Kind check or parameter validator failed.
            DangerousInputRejected: A value failed the dangerous-input screen.
        """
        validated: dict[str, Any] = {}

        for spec in tool.params:
            value = args.get(spec.name)
            if value is None or (spec.required and isinstance(value, str) and not value.strip()):
                if spec.required:
                    raise MissingRequiredArgument(spec.name)
                if spec.default is not None:
                    validated[spec.name] = spec.default
                continue

            value = self._check_kind(spec, value)
            if spec.validator is not None:
                reason = spec.validator(value)
                if reason:
                    raise InvalidArgumentValue(spec.name, reason)
            validated[spec.name] = value

        unknown = [name for name in args if tool.param(name) is None]

        # Request-wide screen over everything the caller supplied
        for name, value in args.items():
            if value is None:
                continue
            cleaned = self._screen(name, value)
            if isinstance(validated.get(name), str):
                validated[name] = cleaned

        if unknown:
            log.warning("unknown_arguments_dropped", tool=tool.name, arguments=unknown)
        return validated

    def _screen(self, name: str, value: Any) -> Any:
        if isinstance(value, str):
            normalized = normalize_value(value)
            reason = screen_value(normalized)
            if reason:
                log.warning("dangerous_input_rejected", argument=name, reason=reason)
                raise DangerousInputRejected(name, reason)
            return normalized
        if isinstance(value, (list, tuple)):
            return [self._screen(name, item) for item in value]
        return value

    @staticmethod
    def _check_kind(spec: ParamSpec, value: Any) -> Any:
        if spec.kind is ParamKind.NUMBER:
            if isinstance(value, bool):
                raise InvalidArgumentValue(spec.name, "expected a number")
            if isinstance(value, (int, float)):
                return value
            if isinstance(value, str):
                try:
                    return int(value)
                except ValueError:
                    pass
                try:
                    return float(value)
                except ValueError:
                    raise InvalidArgumentValue(spec.name, "expected a number") from None
            raise InvalidArgumentValue(spec.name, "expected a number")

        if spec.kind is ParamKind.BOOLEAN:
            if isinstance(value, bool):
                return value
            if isinstance(value, str) and value.lower() in ("true", "false"):
                return value.lower() == "true"
            raise InvalidArgumentValue(spec.name, "expected a boolean")

        if not isinstance(value, str):
            raise InvalidArgumentValue(spec.name, f"expected a {spec.kind.value} path or string")
        return value
