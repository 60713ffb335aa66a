"""
Tool — the base class for everything an agent can call.

name + description + parameters + execute. The registry turns tools into
ToolSchemas for the model; the ToolExecutor calls them and normalizes
whatever they return (or raise) into a ToolResult.

Two ways to define one:

    class AddTool(Tool):
        name = "add"
        description = "Add two integers"
        parameters = [
            ToolParam("a", "integer", "First operand"),
            ToolParam("b", "integer", "Second operand"),
        ]

        async def execute(self, a: int, b: int):
            return a + b

    add = FunctionTool(lambda a, b: a + b, name="add", parameters=[...])

Handlers may return a plain value, or an envelope {"ok": bool, "data": ...}
/ {"ok": False, "error": "..."}; see ToolExecutor.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable

from marionette.llm.contracts import ToolSchema

logger = logging.getLogger(__name__)


@dataclass
class ToolParam:
    """A single parameter for a tool."""

    name: str
    type: str  # "string", "integer", "number", "boolean", "array", "object"
    description: str = ""
    required: bool = True
    default: Any = None
    enum: list[str] | None = None
    items: dict | None = None  # For array types


def build_parameter_schema(params: list[ToolParam]) -> dict[str, Any]:
    """JSON-schema object describing a parameter list."""
    properties: dict[str, Any] = {}
    required = []

    for param in params:
        prop: dict[str, Any] = {"type": param.type}
        if param.description:
            prop["description"] = param.description
        if param.enum:
            prop["enum"] = param.enum
        if param.items:
            prop["items"] = param.items
        if param.default is not None:
            prop["default"] = param.default
        properties[param.name] = prop

        if param.required:
            required.append(param.name)

    return {"type": "object", "properties": properties, "required": required}


class Tool(ABC):
    """
    Base class for all tools.

    Subclass this, set the class attributes, implement execute().
    """

    # --- Override these in subclasses ---
    name: str = ""
    description: str = ""
    parameters: list[ToolParam] = []

    @abstractmethod
    async def execute(self, **kwargs) -> Any:
        """Run the tool. Return data, or raise to report a tool_error."""
        ...

    def to_schema(self) -> ToolSchema:
        return ToolSchema(
            name=self.name,
            description=self.description,
            parameters=build_parameter_schema(self.parameters),
        )

    def validate_args(self, args: dict) -> dict:
        """Validate and fill defaults. Returns cleaned args."""
        cleaned = {}
        for param in self.parameters:
            if param.name in args:
                cleaned[param.name] = args[param.name]
            elif param.required:
                raise ValueError(f"Missing required parameter: {param.name}")
            elif param.default is not None:
                cleaned[param.name] = param.default
        return cleaned

    async def __call__(self, arguments: dict[str, Any]) -> Any:
        return await self.execute(**self.validate_args(arguments))

    def __repr__(self) -> str:
        return f"<Tool:{self.name}>"


class FunctionTool(Tool):
    """
    Wrap a plain function (sync or async) as a tool.

    Sync functions run in a worker thread so they never block the event
    loop. With a raw JSON schema instead of ToolParams, arguments are
    passed through unvalidated.
    """

    def __init__(
        self,
        fn: Callable[..., Any],
        name: str | None = None,
        description: str | None = None,
        parameters: list[ToolParam] | dict[str, Any] | None = None,
    ):
        self.fn = fn
        self.name = name or fn.__name__
        self.description = description or inspect.getdoc(fn) or ""
        self._schema: dict[str, Any] | None = None
        if isinstance(parameters, dict):
            self._schema = parameters
            self.parameters = []
        else:
            self.parameters = list(parameters or [])

    def to_schema(self) -> ToolSchema:
        if self._schema is not None:
            return ToolSchema(self.name, self.description, self._schema)
        return super().to_schema()

    def validate_args(self, args: dict) -> dict:
        if self._schema is not None or not self.parameters:
            return dict(args)
        return super().validate_args(args)

    async def execute(self, **kwargs) -> Any:
        if inspect.iscoroutinefunction(self.fn):
            return await self.fn(**kwargs)
        result = await asyncio.to_thread(self.fn, **kwargs)
        if inspect.isawaitable(result):
            return await result
        return result
