"""
Tool Registry — register tools, export schemas, look up by name.

An explicitly constructed service object: build one, register tools,
pass it to whatever executes turns. Lookups are plain dict reads, so any
number of concurrent tool executions may share a registry. Registration
is expected to happen outside of active turns.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Protocol

from marionette.llm.contracts import ToolSchema
from marionette.tools.base import FunctionTool, Tool, ToolParam

logger = logging.getLogger(__name__)


class ToolHandlerLookup(Protocol):
    """Read-only lookup consumed by ToolExecutor."""

    def find(self, name: str) -> Tool | None: ...


class ToolRegistry:
    """Registry of the tools available to a set of agents."""

    def __init__(self, tools: list[Tool] | None = None):
        self._tools: dict[str, Tool] = {}
        for tool in tools or []:
            self.register(tool)

    def register(self, tool: Tool) -> Tool:
        """Register a tool. Overwrites if the name already exists."""
        if not tool.name:
            raise ValueError(f"Tool must have a name: {tool}")
        if tool.name in self._tools:
            logger.warning(f"Replacing registered tool: {tool.name}")
        self._tools[tool.name] = tool
        logger.debug(f"Registered tool: {tool.name}")
        return tool

    def register_function(
        self,
        fn: Callable[..., Any],
        name: str | None = None,
        description: str | None = None,
        parameters: list[ToolParam] | dict[str, Any] | None = None,
    ) -> Tool:
        """Wrap a plain callable in a FunctionTool and register it."""
        return self.register(FunctionTool(fn, name, description, parameters))

    def unregister(self, name: str) -> bool:
        return self._tools.pop(name, None) is not None

    def find(self, name: str) -> Tool | None:
        """Get a tool by name, or None."""
        return self._tools.get(name)

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    def tool_names(self) -> list[str]:
        return list(self._tools.keys())

    def schemas(self) -> list[ToolSchema]:
        """Snapshot of every tool's schema, in registration order."""
        return [tool.to_schema() for tool in self._tools.values()]

    def to_openai_tools(self) -> list[dict]:
        """All tool schemas in OpenAI function calling format."""
        return [schema.to_openai_schema() for schema in self.schemas()]

    def without(self, *names: str) -> ToolRegistry:
        """Return a new registry excluding the named tools."""
        filtered = ToolRegistry()
        for name, tool in self._tools.items():
            if name not in names:
                filtered._tools[name] = tool
        return filtered
