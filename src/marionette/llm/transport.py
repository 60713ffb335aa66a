"""
Transport — the boundary between the turn core and a remote model.

A Transport owns everything wire-level: request shapes, streaming event
parsing, retries. The core only ever sees TurnResult values and
StreamListener callbacks.

Non-streaming:
    result = await transport.send_turn(history, tools, options)
    result = await transport.resubmit_tool_results(handle, results, ...)

Streaming:
    handle = await transport.open_stream(history, tools, listener, options)
    # listener.on_started / on_text_delta / on_tool_call_delta /
    # on_tool_call_done / on_finished / on_error are called as events arrive
    await transport.resume_stream_with_result(handle, result)
    await transport.discard_call(handle, call_id)  # dropped call, no result coming
    await transport.abort(handle)
"""

from __future__ import annotations

import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Protocol, Sequence

from marionette.llm.contracts import Message, ToolResult, ToolSchema, TurnResult
from marionette.llm.errors import ErrorInfo


@dataclass
class TurnOptions:
    """Per-request model settings. Unset values fall back to the transport's."""

    model: str | None = None
    max_tokens: int | None = None
    temperature: float | None = None
    tool_choice: str = "auto"
    extra: dict[str, Any] = field(default_factory=dict)


@dataclass
class StreamHandle:
    """Opaque handle to one in-flight stream, owned by the Transport."""

    stream_id: str = field(default_factory=lambda: f"stream-{uuid.uuid4().hex[:12]}")
    # Latest remote response id (changes on every continuation)
    response_id: str = ""


class StreamListener(Protocol):
    """Callbacks a Transport invokes, in wire order, for one stream."""

    def on_started(self, response_id: str) -> None: ...

    def on_text_delta(self, text: str) -> None: ...

    def on_tool_call_delta(self, call_id: str, name: str, args_fragment: str) -> None: ...

    def on_tool_call_done(self, call_id: str, name: str, full_args_text: str) -> None: ...

    def on_finished(self, ok: bool, final_text: str, usage: dict[str, int]) -> None: ...

    def on_error(self, error: ErrorInfo) -> None: ...


class Transport(ABC):
    """Remote completion endpoint interface."""

    @abstractmethod
    async def send_turn(
        self,
        history: Sequence[Message],
        tools: Sequence[ToolSchema],
        options: TurnOptions | None = None,
    ) -> TurnResult:
        """One blocking round trip."""
        ...

    @abstractmethod
    async def resubmit_tool_results(
        self,
        turn_handle: str,
        results: Sequence[ToolResult],
        *,
        history: Sequence[Message] = (),
        tools: Sequence[ToolSchema] = (),
        options: TurnOptions | None = None,
    ) -> TurnResult:
        """Continue a turn with a batch of tool results.

        turn_handle is the response_id of the ToolCalls being answered.
        history (which already ends with the tool messages) is supplied for
        transports that cannot continue from a handle alone.
        """
        ...

    @abstractmethod
    async def open_stream(
        self,
        history: Sequence[Message],
        tools: Sequence[ToolSchema],
        listener: StreamListener,
        options: TurnOptions | None = None,
    ) -> StreamHandle:
        """Start a streaming round trip. Returns once the request is in flight."""
        ...

    @abstractmethod
    async def resume_stream_with_result(
        self, handle: StreamHandle, result: ToolResult
    ) -> None:
        """Feed one tool result back into a paused stream."""
        ...

    @abstractmethod
    async def abort(self, handle: StreamHandle | str) -> None:
        """Best-effort cancellation of an in-flight request."""
        ...

    async def discard_call(self, handle: StreamHandle, call_id: str) -> None:
        """A streamed tool call was dropped and will never get a result.

        Transports that hold a continuation until every call is answered
        must stop waiting for this one. Optional.
        """

    async def start(self) -> None:
        """Open clients / connections. Optional."""

    async def stop(self) -> None:
        """Release clients / connections. Optional."""
