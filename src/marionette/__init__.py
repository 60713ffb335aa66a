"""
Marionette — streaming LLM turn orchestration with tool calling.

    from marionette import Agent, TurnController, ToolRegistry
    from marionette.providers import get_llm_transport
"""

from marionette.agent import Agent, VoiceReply
from marionette.llm import (
    ErrorInfo,
    ErrorKind,
    Message,
    StreamSession,
    ToolCallRequest,
    ToolResult,
    ToolSchema,
    Transport,
    TurnController,
    TurnEvent,
    TurnEventType,
    TurnOutcome,
)
from marionette.tools import FunctionTool, Tool, ToolExecutor, ToolParam, ToolRegistry

__version__ = "0.1.0"

__all__ = [
    "Agent",
    "VoiceReply",
    "ErrorInfo",
    "ErrorKind",
    "Message",
    "StreamSession",
    "ToolCallRequest",
    "ToolResult",
    "ToolSchema",
    "Transport",
    "TurnController",
    "TurnEvent",
    "TurnEventType",
    "TurnOutcome",
    "FunctionTool",
    "Tool",
    "ToolExecutor",
    "ToolParam",
    "ToolRegistry",
]
