"""Tool Registry.

Holds the immutable catalog of ToolDefinitions keyed by name. Listings are
redacted: validators and the underlying executable are never exposed to
callers.
"""

from __future__ import annotations

from typing import Any, Iterable, Iterator, Optional

import structlog

from kaliguard.core.exceptions import ToolNotFoundError
from kaliguard.core.models import ToolDefinition
from kaliguard.tools.catalog import DEFAULT_TOOLS

log = structlog.get_logger(__name__)


class ToolRegistry:
    """Name-indexed catalog of tool definitions."""

    def __init__(self, tools: Optional[Iterable[ToolDefinition]] = None) -> None:
        self._tools: dict[str, ToolDefinition] = {}
        for tool in DEFAULT_TOOLS if tools is None else tools:
            self._register(tool)

    def _register(self, tool: ToolDefinition) -> None:
        """Add a definition during construction. Names are unique.

        Raises:
            ValueError: If a tool with the same name is already registered.
        """
        if tool.name in self._tools:
            raise ValueError(f"Tool already registered: {tool.name}")
        self._tools[tool.name] = tool
        log.debug("tool_registered", tool=tool.name, timeout=tool.timeout)

    def get(self, name: str) -> ToolDefinition:
        """Return the definition for name.

        Raises:
            ToolNotFoundError: If name is not registered.
        """
        try:
            return self._tools[name]
        except KeyError:
            raise ToolNotFoundError(name) from None

    def names(self) -> list[str]:
        return list(self._tools)

    def list_tools(self) -> list[dict[str, Any]]:
        """Return the redacted catalog view."""
        return [
            {
                "name": tool.name,
                "description": tool.description,
                "args": [
                    {
                        "name": spec.name,
                        "description": spec.description,
                        "required": spec.required,
                        "type": spec.kind.value,
                    }
                    for spec in tool.params
                ],
            }
            for tool in self._tools.values()
        ]

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __iter__(self) -> Iterator[ToolDefinition]:
        return iter(self._tools.values())

    def __len__(self) -> int:
        return len(self._tools)
