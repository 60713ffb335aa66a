"""
OpenAI Transport — Responses API, blocking and streaming, with tool calls.

Blocking turns map to responses.create(); continuations pass
previous_response_id plus function_call_output items.

Streaming turns pump the SSE event stream into a StreamListener:

    response.created                         -> on_started
    response.output_text.delta               -> on_text_delta
    response.function_call_arguments.delta   -> on_tool_call_delta
    response.function_call_arguments.done    -> on_tool_call_done
    response.completed (no function calls)   -> on_finished
    error / response.failed                  -> on_error

The listener resumes calls one at a time. The Responses API only accepts
a continuation once every function call of a response has an output, so
outputs are collected per response and the follow-up request goes out as
soon as the last one arrives.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Sequence

import httpx
import openai
from openai import AsyncOpenAI

import marionette.core.config as config_module
from marionette.core.metrics import metrics
from marionette.llm.contracts import (
    AssistantFinal,
    AudioPart,
    ErrorResult,
    ImagePart,
    Message,
    Role,
    TextPart,
    ToolCallPart,
    ToolCallRequest,
    ToolCalls,
    ToolResult,
    ToolResultPart,
    ToolSchema,
    TurnResult,
)
from marionette.llm.errors import ErrorInfo, ErrorKind
from marionette.llm.transport import StreamHandle, StreamListener, Transport, TurnOptions

logger = logging.getLogger(__name__)


def map_openai_error(exc: Exception) -> ErrorInfo:
    """Translate an SDK / HTTP exception into the core's error kinds."""
    if isinstance(exc, openai.RateLimitError):
        return ErrorInfo(ErrorKind.RATE_LIMITED, str(exc), {"status": exc.status_code})
    if isinstance(exc, openai.APIStatusError):
        return ErrorInfo(ErrorKind.HTTP_ERROR, str(exc), {"status": exc.status_code})
    return ErrorInfo(ErrorKind.TRANSPORT_ERROR, str(exc))


def to_input_items(history: Sequence[Message]) -> list[dict[str, Any]]:
    """Convert Messages into Responses API input items."""
    items: list[dict[str, Any]] = []
    for message in history:
        if message.role == Role.TOOL:
            for part in message.tool_results:
                items.append(
                    {
                        "type": "function_call_output",
                        "call_id": part.call_id,
                        "output": part.output,
                    }
                )
            continue

        if message.role == Role.ASSISTANT:
            if message.text:
                items.append({"role": "assistant", "content": message.text})
            for call in message.tool_calls:
                items.append(_function_call_item(call))
            continue

        content: list[dict[str, Any]] = []
        for part in message.content:
            if isinstance(part, TextPart):
                content.append({"type": "input_text", "text": part.text})
            elif isinstance(part, ImagePart):
                content.append(
                    {"type": "input_image", "image_url": part.url, "detail": part.detail}
                )
            elif isinstance(part, AudioPart):
                # Audio reaches the model as its transcript
                if part.transcript:
                    content.append({"type": "input_text", "text": part.transcript})
                else:
                    logger.warning("Dropping audio part without transcript")
            elif isinstance(part, (ToolCallPart, ToolResultPart)):
                logger.warning(f"Ignoring {part.type} part on a {message.role.value} message")
        items.append({"role": message.role.value, "content": content})
    return items


def to_function_tools(tools: Sequence[ToolSchema]) -> list[dict[str, Any]]:
    return [
        {
            "type": "function",
            "name": tool.name,
            "description": tool.description,
            "parameters": tool.parameters,
        }
        for tool in tools
    ]


def _function_call_item(call: ToolCallPart) -> dict[str, Any]:
    return {
        "type": "function_call",
        "call_id": call.call_id,
        "name": call.name,
        "arguments": json.dumps(call.arguments),
    }


def _usage(usage: Any) -> dict[str, int]:
    if usage is None:
        return {}
    return {
        "input_tokens": getattr(usage, "input_tokens", 0) or 0,
        "output_tokens": getattr(usage, "output_tokens", 0) or 0,
        "total_tokens": getattr(usage, "total_tokens", 0) or 0,
    }


def parse_response(response: Any) -> TurnResult:
    """Turn a completed Response object into a TurnResult."""
    calls: list[ToolCallRequest] = []
    for item in getattr(response, "output", None) or []:
        if getattr(item, "type", "") != "function_call":
            continue
        try:
            arguments = json.loads(item.arguments) if item.arguments else {}
        except json.JSONDecodeError:
            logger.warning(f"Failed to parse tool args: {item.arguments[:100]}")
            arguments = {}
        calls.append(ToolCallRequest(item.call_id, item.name, arguments))

    text = getattr(response, "output_text", "") or ""
    usage = _usage(getattr(response, "usage", None))
    if calls:
        return ToolCalls(tuple(calls), response_id=response.id, text=text, usage=usage)
    return AssistantFinal(text, usage=usage, response_id=response.id)


@dataclass
class _StreamState:
    """Transport-side bookkeeping for one stream."""

    handle: StreamHandle
    listener: StreamListener
    tools: list[dict[str, Any]]
    options: TurnOptions
    # item_id -> (call_id, name) for function calls of the current response
    items: dict[str, tuple[str, str]] = field(default_factory=dict)
    awaiting: set[str] = field(default_factory=set)
    outputs: list[dict[str, Any]] = field(default_factory=list)
    completed: bool = False
    # How the paused response ended, replayed if no continuation is needed
    completed_ok: bool = True
    final_text: str = ""
    usage: dict[str, int] = field(default_factory=dict)
    task: asyncio.Task | None = None


class OpenAITransport(Transport):
    """Transport backed by the OpenAI Responses API."""

    def __init__(
        self,
        client: AsyncOpenAI | None = None,
        model: str | None = None,
    ):
        self.client = client
        self._model = model
        self._streams: dict[str, _StreamState] = {}

    @property
    def model(self) -> str:
        return self._model or config_module.config.llm.model

    async def start(self) -> None:
        if self.client:
            return  # Already started

        llm = config_module.config.llm
        client_kwargs: dict[str, Any] = {}
        if llm.api_key:
            client_kwargs["api_key"] = llm.api_key
        if llm.base_url:
            client_kwargs["base_url"] = llm.base_url
            logger.info(f"Using custom base_url: {llm.base_url}")

        self.client = AsyncOpenAI(**client_kwargs)
        logger.info(f"OpenAI transport ready (model={self.model})")

    async def stop(self) -> None:
        for stream_id in list(self._streams):
            await self.abort(stream_id)
        if self.client:
            await self.client.close()
            self.client = None

    # ─── Blocking ────────────────────────────────────────────────

    async def send_turn(
        self,
        history: Sequence[Message],
        tools: Sequence[ToolSchema],
        options: TurnOptions | None = None,
    ) -> TurnResult:
        return await self._create(
            {"input": to_input_items(history)}, to_function_tools(tools), options
        )

    async def resubmit_tool_results(
        self,
        turn_handle: str,
        results: Sequence[ToolResult],
        *,
        history: Sequence[Message] = (),
        tools: Sequence[ToolSchema] = (),
        options: TurnOptions | None = None,
    ) -> TurnResult:
        outputs = [
            {
                "type": "function_call_output",
                "call_id": result.call_id,
                "output": result.output_text(),
            }
            for result in results
        ]
        return await self._create(
            {"previous_response_id": turn_handle, "input": outputs},
            to_function_tools(tools),
            options,
        )

    async def _create(
        self,
        body: dict[str, Any],
        tools: list[dict[str, Any]],
        options: TurnOptions | None,
    ) -> TurnResult:
        if not self.client:
            raise RuntimeError("OpenAI transport not started")

        started = time.time()
        metrics.inc("provider.llm.requests", labels={"provider": "openai"})
        try:
            response = await self.client.responses.create(
                **self._request_kwargs(body, tools, options)
            )
        except (openai.OpenAIError, httpx.HTTPError) as e:
            logger.error(f"OpenAI request failed: {e}")
            metrics.inc("provider.llm.errors", labels={"provider": "openai"})
            return ErrorResult(map_openai_error(e))

        metrics.observe(
            "provider.llm.latency_ms",
            (time.time() - started) * 1000,
            labels={"provider": "openai"},
        )
        return parse_response(response)

    # ─── Streaming ───────────────────────────────────────────────

    async def open_stream(
        self,
        history: Sequence[Message],
        tools: Sequence[ToolSchema],
        listener: StreamListener,
        options: TurnOptions | None = None,
    ) -> StreamHandle:
        if not self.client:
            raise RuntimeError("OpenAI transport not started")

        handle = StreamHandle()
        state = _StreamState(
            handle=handle,
            listener=listener,
            tools=to_function_tools(tools),
            options=options or TurnOptions(),
        )
        self._streams[handle.stream_id] = state
        self._start_pump(state, {"input": to_input_items(history)})
        return handle

    async def resume_stream_with_result(
        self, handle: StreamHandle, result: ToolResult
    ) -> None:
        state = self._streams.get(handle.stream_id)
        if state is None:
            logger.debug(f"Resume for closed stream {handle.stream_id}")
            return

        state.awaiting.discard(result.call_id)
        state.outputs.append(
            {
                "type": "function_call_output",
                "call_id": result.call_id,
                "output": result.output_text(),
            }
        )
        self._maybe_continue(state)

    async def abort(self, handle: StreamHandle | str) -> None:
        stream_id = handle.stream_id if isinstance(handle, StreamHandle) else handle
        state = self._streams.pop(stream_id, None)
        if state is None:
            # Blocking requests have nothing to abort once returned
            return
        task = state.task
        if task and not task.done() and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        logger.debug(f"Stream aborted: {stream_id}")

    async def discard_call(self, handle: StreamHandle, call_id: str) -> None:
        state = self._streams.get(handle.stream_id)
        if state is None:
            return
        state.awaiting.discard(call_id)
        self._maybe_continue(state)

    def _maybe_continue(self, state: _StreamState) -> None:
        """Send the continuation once the response is complete and fully answered."""
        if not state.completed or state.awaiting:
            return
        if not state.outputs:
            # Every call of the response was dropped; nothing to send back
            self._streams.pop(state.handle.stream_id, None)
            state.listener.on_finished(state.completed_ok, state.final_text, state.usage)
            return
        outputs, state.outputs = state.outputs, []
        state.completed = False
        state.items.clear()
        self._start_pump(
            state,
            {"previous_response_id": state.handle.response_id, "input": outputs},
        )

    def _start_pump(self, state: _StreamState, body: dict[str, Any]) -> None:
        state.task = asyncio.create_task(
            self._pump(state, body), name=f"openai-{state.handle.stream_id}"
        )

    async def _pump(self, state: _StreamState, body: dict[str, Any]) -> None:
        listener = state.listener
        kwargs = self._request_kwargs(body, state.tools, state.options)
        metrics.inc("provider.llm.requests", labels={"provider": "openai"})

        try:
            stream = await self.client.responses.create(stream=True, **kwargs)
            async with stream:
                async for event in stream:
                    self._dispatch(state, event)
        except asyncio.CancelledError:
            raise
        except (openai.OpenAIError, httpx.HTTPError) as e:
            logger.error(f"OpenAI stream failed: {e}")
            metrics.inc("provider.llm.errors", labels={"provider": "openai"})
            self._streams.pop(state.handle.stream_id, None)
            listener.on_error(map_openai_error(e))

    def _dispatch(self, state: _StreamState, event: Any) -> None:
        listener = state.listener
        kind = getattr(event, "type", "")

        if kind == "response.created":
            state.handle.response_id = event.response.id
            listener.on_started(event.response.id)

        elif kind == "response.output_item.added":
            item = event.item
            if getattr(item, "type", "") == "function_call":
                state.items[item.id] = (item.call_id, item.name)

        elif kind == "response.output_text.delta":
            listener.on_text_delta(event.delta)

        elif kind == "response.function_call_arguments.delta":
            call_id, name = state.items.get(event.item_id, (event.item_id, ""))
            listener.on_tool_call_delta(call_id, name, event.delta)

        elif kind == "response.function_call_arguments.done":
            call_id, name = state.items.get(event.item_id, (event.item_id, ""))
            name = getattr(event, "name", None) or name
            state.awaiting.add(call_id)
            listener.on_tool_call_done(call_id, name, event.arguments)

        elif kind in ("response.completed", "response.incomplete"):
            response = event.response
            state.handle.response_id = response.id
            if state.items:
                # Paused on function calls; resumes arrive via the listener
                state.completed = True
                state.completed_ok = kind == "response.completed"
                state.final_text = getattr(response, "output_text", "") or ""
                state.usage = _usage(getattr(response, "usage", None))
                self._maybe_continue(state)
                return
            self._streams.pop(state.handle.stream_id, None)
            listener.on_finished(
                kind == "response.completed",
                getattr(response, "output_text", "") or "",
                _usage(getattr(response, "usage", None)),
            )

        elif kind == "response.failed":
            self._streams.pop(state.handle.stream_id, None)
            error = getattr(event.response, "error", None)
            message = getattr(error, "message", None) or "Response failed"
            listener.on_error(ErrorInfo(ErrorKind.TRANSPORT_ERROR, message))

        elif kind == "error":
            self._streams.pop(state.handle.stream_id, None)
            listener.on_error(
                ErrorInfo(
                    ErrorKind.TRANSPORT_ERROR,
                    getattr(event, "message", "") or "Stream error",
                    {"code": getattr(event, "code", None)},
                )
            )

    # ─── Internal ────────────────────────────────────────────────

    def _request_kwargs(
        self,
        body: dict[str, Any],
        tools: list[dict[str, Any]],
        options: TurnOptions | None,
    ) -> dict[str, Any]:
        options = options or TurnOptions()
        llm = config_module.config.llm
        kwargs: dict[str, Any] = {
            "model": options.model or self.model,
            "max_output_tokens": options.max_tokens or llm.max_tokens,
            "temperature": (
                options.temperature if options.temperature is not None else llm.temperature
            ),
            **body,
        }
        if tools:
            kwargs["tools"] = tools
            kwargs["tool_choice"] = options.tool_choice
        kwargs.update(options.extra)
        return kwargs
