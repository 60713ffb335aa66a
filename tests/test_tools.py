"""Tests for the tool system — Tool, FunctionTool, ToolRegistry."""

import pytest

from marionette.llm.contracts import ToolSchema
from marionette.tools.base import FunctionTool, Tool, ToolParam, build_parameter_schema
from marionette.tools.registry import ToolRegistry


class GreetTool(Tool):
    name = "greet"
    description = "Greet someone"
    parameters = [
        ToolParam("name", "string", "Who to greet"),
        ToolParam("excited", "boolean", "Add an exclamation mark", required=False, default=False),
    ]

    async def execute(self, name: str, excited: bool = False) -> str:
        return f"Hello, {name}{'!' if excited else '.'}"


# --- Schemas ---


class TestSchema:
    def test_parameter_schema(self):
        schema = build_parameter_schema(
            [
                ToolParam("city", "string", "City name"),
                ToolParam("units", "string", required=False, enum=["c", "f"], default="c"),
                ToolParam("days", "array", items={"type": "integer"}, required=False),
            ]
        )
        assert schema["type"] == "object"
        assert schema["required"] == ["city"]
        assert schema["properties"]["city"] == {"type": "string", "description": "City name"}
        assert schema["properties"]["units"] == {"type": "string", "enum": ["c", "f"], "default": "c"}
        assert schema["properties"]["days"]["items"] == {"type": "integer"}

    def test_tool_to_schema(self):
        schema = GreetTool().to_schema()
        assert isinstance(schema, ToolSchema)
        assert schema.name == "greet"
        assert schema.parameters["required"] == ["name"]

    def test_openai_function_format(self):
        schema = GreetTool().to_schema().to_openai_schema()
        assert schema["type"] == "function"
        assert schema["function"]["name"] == "greet"
        assert schema["function"]["description"] == "Greet someone"


# --- Tool ---


class TestTool:
    @pytest.mark.asyncio
    async def test_call_validates_and_fills_defaults(self):
        assert await GreetTool()({"name": "Ada"}) == "Hello, Ada."

    @pytest.mark.asyncio
    async def test_unknown_arguments_are_dropped(self):
        assert await GreetTool()({"name": "Ada", "excited": True, "extra": 1}) == "Hello, Ada!"

    @pytest.mark.asyncio
    async def test_missing_required_argument(self):
        with pytest.raises(ValueError, match="Missing required parameter: name"):
            await GreetTool()({})

    def test_abstract(self):
        with pytest.raises(TypeError):
            Tool()  # type: ignore


# --- FunctionTool ---


class TestFunctionTool:
    @pytest.mark.asyncio
    async def test_sync_function(self):
        def multiply(a: int, b: int) -> int:
            """Multiply two numbers."""
            return a * b

        tool = FunctionTool(multiply, parameters=[ToolParam("a", "integer"), ToolParam("b", "integer")])
        assert tool.name == "multiply"
        assert tool.description == "Multiply two numbers."
        assert await tool({"a": 6, "b": 7}) == 42

    @pytest.mark.asyncio
    async def test_async_function(self):
        async def shout(text: str) -> str:
            return text.upper()

        tool = FunctionTool(shout, name="shout", description="Upper-case text")
        assert await tool({"text": "hey"}) == "HEY"

    @pytest.mark.asyncio
    async def test_raw_schema_passes_arguments_through(self):
        raw = {
            "type": "object",
            "properties": {"q": {"type": "string"}},
            "required": ["q"],
        }
        tool = FunctionTool(lambda **kw: kw, name="search", parameters=raw)
        assert tool.to_schema().parameters == raw
        assert await tool({"q": "cats", "page": 2}) == {"q": "cats", "page": 2}


# --- Registry ---


class TestRegistry:
    def test_register_and_find(self):
        registry = ToolRegistry([GreetTool()])
        assert registry.find("greet") is not None
        assert registry.find("nope") is None
        assert "greet" in registry
        assert len(registry) == 1

    def test_register_function(self, registry):
        assert registry.tool_names() == ["add"]
        assert isinstance(registry.find("add"), FunctionTool)

    def test_register_replaces(self):
        registry = ToolRegistry([GreetTool()])
        replacement = FunctionTool(lambda: "hi", name="greet")
        registry.register(replacement)
        assert registry.find("greet") is replacement
        assert len(registry) == 1

    def test_nameless_tool_rejected(self):
        class Nameless(Tool):
            async def execute(self):
                return None

        with pytest.raises(ValueError):
            ToolRegistry().register(Nameless())

    def test_unregister(self, registry):
        assert registry.unregister("add") is True
        assert registry.unregister("add") is False
        assert len(registry) == 0

    def test_schemas_in_registration_order(self, registry):
        registry.register(GreetTool())
        assert [s.name for s in registry.schemas()] == ["add", "greet"]
        assert [t["function"]["name"] for t in registry.to_openai_tools()] == ["add", "greet"]

    def test_without(self, registry):
        registry.register(GreetTool())
        filtered = registry.without("add")
        assert filtered.tool_names() == ["greet"]
        assert registry.tool_names() == ["add", "greet"]
