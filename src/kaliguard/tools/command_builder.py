"""Command Builder - Turns validated arguments into one shell command line."""

from __future__ import annotations

import re
from typing import Any, Mapping

from kaliguard.core.models import ParamKind, ToolDefinition

# Tools whose arguments are laid out positionally rather than as flags
POSITIONAL_TOOLS = frozenset({"nmap"})

# Values passed through without shell interpretation
OUTPUT_ARGUMENT = "output"

SAFE_ARG_RE = re.compile(r"^[A-Za-z0-9_\-/.:?=&%@+~,]+$")


def escape_shell_arg(arg: str) -> str:
    """Quote a value so it stays a single shell word.

    Empty input becomes ``''``; values already wrapped in matching quotes
    and values made only of safe characters pass through unchanged;
    anything else is single-quoted with embedded quotes written as ``'\\''``.
    """
    if not arg:
        return "''"
    if len(arg) >= 2 and arg[0] == arg[-1] and arg[0] in ("'", '"'):
        return arg
    if SAFE_ARG_RE.match(arg):
        return arg
    return "'" + arg.replace("'", "'\\''") + "'"


def _is_empty(value: Any) -> bool:
    return value is None or value == ""


class CommandBuilder:
    """Formats a tool invocation from its definition and validated arguments."""

    def build(self, tool: ToolDefinition, args: Mapping[str, Any]) -> str:
        if tool.name in POSITIONAL_TOOLS:
            parts = self._positional(tool, args)
        else:
            parts = self._flags(tool, args)
        return " ".join([tool.command, *parts])

    @staticmethod
    def _positional(tool: ToolDefinition, args: Mapping[str, Any]) -> list[str]:
        # Order is fixed: scan type, ports, then target
        parts: list[str] = []
        if not _is_empty(args.get("scan_type")):
            parts.append(escape_shell_arg(str(args["scan_type"])))
        if not _is_empty(args.get("ports")):
            parts.append(f"-p {escape_shell_arg(str(args['ports']))}")
        if not _is_empty(args.get("target")):
            parts.append(escape_shell_arg(str(args["target"])))
        return parts

    @staticmethod
    def _flags(tool: ToolDefinition, args: Mapping[str, Any]) -> list[str]:
        parts: list[str] = []
        for spec in tool.params:
            value = args.get(spec.name)
            if _is_empty(value):
                continue

            flag = f"-{spec.name}" if len(spec.name) == 1 else f"--{spec.name}"
            if spec.kind is ParamKind.BOOLEAN:
                if value is True:
                    parts.append(flag)
                continue

            parts.append(flag)
            if spec.name == OUTPUT_ARGUMENT:
                parts.append(str(value))
            else:
                parts.append(escape_shell_arg(str(value)))
        return parts
