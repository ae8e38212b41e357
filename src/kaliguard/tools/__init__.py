"""KaliGuard Tools Package - Catalog, validation and execution pipeline.

Safety-Critical Components:
- ArgumentValidator's dangerous-input screen cannot be relaxed per tool
- Commands are built with shell escaping even after screening
- Every execution is audited before the caller sees the result
"""

from kaliguard.tools.command_builder import CommandBuilder, escape_shell_arg
from kaliguard.tools.executor import SubprocessExecutor
from kaliguard.tools.manager import ToolManager
from kaliguard.tools.registry import ToolRegistry
from kaliguard.tools.validator import ArgumentValidator, screen_value

__all__ = [
    "ArgumentValidator",
    "CommandBuilder",
    "SubprocessExecutor",
    "ToolManager",
    "ToolRegistry",
    "escape_shell_arg",
    "screen_value",
]
