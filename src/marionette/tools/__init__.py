"""Marionette Tools — what a turn can call."""

from marionette.tools.base import FunctionTool, Tool, ToolParam
from marionette.tools.executor import ToolExecutor
from marionette.tools.registry import ToolHandlerLookup, ToolRegistry

__all__ = ["FunctionTool", "Tool", "ToolParam", "ToolExecutor", "ToolHandlerLookup", "ToolRegistry"]
