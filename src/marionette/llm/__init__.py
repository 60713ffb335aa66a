"""Marionette LLM — the turn core: contracts, transport boundary, turns and streams."""

from marionette.llm.contracts import (
    Message,
    ToolCallRequest,
    ToolResult,
    ToolSchema,
    TurnEvent,
    TurnEventType,
    TurnOutcome,
)
from marionette.llm.errors import ErrorInfo, ErrorKind, TransportError, TurnError
from marionette.llm.stream_session import StreamSession
from marionette.llm.transport import StreamHandle, Transport, TurnOptions
from marionette.llm.turn import TurnController, validate_messages

__all__ = [
    "Message",
    "ToolCallRequest",
    "ToolResult",
    "ToolSchema",
    "TurnEvent",
    "TurnEventType",
    "TurnOutcome",
    "ErrorInfo",
    "ErrorKind",
    "TransportError",
    "TurnError",
    "StreamSession",
    "StreamHandle",
    "Transport",
    "TurnOptions",
    "TurnController",
    "validate_messages",
]
