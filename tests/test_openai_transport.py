"""Tests for OpenAITransport against a fake Responses API client."""

from __future__ import annotations

import asyncio
import json
from types import SimpleNamespace
from unittest.mock import AsyncMock

import httpx
import openai
import pytest

from conftest import wait_until

from marionette.llm.contracts import (
    AssistantFinal,
    ErrorResult,
    Message,
    ToolCallRequest,
    ToolCalls,
    ToolResult,
    ToolSchema,
)
from marionette.llm.errors import ErrorKind
from marionette.llm.stream_session import StreamStatus
from marionette.llm.turn import TurnController
from marionette.providers.openai_llm import (
    OpenAITransport,
    map_openai_error,
    to_input_items,
)

REQUEST = httpx.Request("POST", "https://api.openai.com/v1/responses")


# ─── Fakes ───────────────────────────────────────────────────────


class FakeStream:
    def __init__(self, events, hold: asyncio.Event | None = None):
        self.events = events
        self.hold = hold

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for event in self.events:
            yield event
        if self.hold is not None:
            await self.hold.wait()


class FakeResponses:
    def __init__(self, *replies):
        self.replies = list(replies)
        self.requests: list[dict] = []

    async def create(self, **kwargs):
        self.requests.append(kwargs)
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply


class RecordingListener:
    def __init__(self):
        self.events: list[tuple] = []

    def on_started(self, response_id):
        self.events.append(("started", response_id))

    def on_text_delta(self, text):
        self.events.append(("delta", text))

    def on_tool_call_delta(self, call_id, name, args_fragment):
        self.events.append(("call_delta", call_id, name, args_fragment))

    def on_tool_call_done(self, call_id, name, full_args_text):
        self.events.append(("call_done", call_id, name, full_args_text))

    def on_finished(self, ok, final_text, usage):
        self.events.append(("finished", ok, final_text, usage))

    def on_error(self, error):
        self.events.append(("error", error))

    def kinds(self):
        return [e[0] for e in self.events]


def _client(*replies):
    return SimpleNamespace(responses=FakeResponses(*replies), close=AsyncMock())


def _usage(i=3, o=1):
    return SimpleNamespace(input_tokens=i, output_tokens=o, total_tokens=i + o)


def _response(id="resp_1", output=(), text="", usage=None):
    return SimpleNamespace(id=id, output=list(output), output_text=text, usage=usage)


def _event(type, **fields):
    return SimpleNamespace(type=type, **fields)


def _created(id):
    return _event("response.created", response=SimpleNamespace(id=id))


def _completed(id, text="", usage=None):
    return _event("response.completed", response=_response(id, text=text, usage=usage))


ADD = ToolSchema("add", "Add two integers", {"type": "object", "properties": {}})


# ─── Message conversion ──────────────────────────────────────────


class TestInputItems:
    def test_roles_and_tool_messages(self):
        items = to_input_items(
            [
                Message.system("Be brief"),
                Message.user("3+4?"),
                Message.assistant("", [ToolCallRequest("call_1", "add", {"a": 3, "b": 4})]),
                Message.tool(ToolResult.success("call_1", 7)),
                Message.assistant("7"),
            ]
        )
        assert items[0] == {"role": "system", "content": [{"type": "input_text", "text": "Be brief"}]}
        assert items[1] == {"role": "user", "content": [{"type": "input_text", "text": "3+4?"}]}
        assert items[2] == {
            "type": "function_call",
            "call_id": "call_1",
            "name": "add",
            "arguments": json.dumps({"a": 3, "b": 4}),
        }
        assert items[3] == {"type": "function_call_output", "call_id": "call_1", "output": "7"}
        assert items[4] == {"role": "assistant", "content": "7"}


class TestErrorMapping:
    def test_rate_limited(self):
        exc = openai.RateLimitError(
            "slow down", response=httpx.Response(429, request=REQUEST), body=None
        )
        info = map_openai_error(exc)
        assert info.kind == ErrorKind.RATE_LIMITED
        assert info.details == {"status": 429}

    def test_http_status(self):
        exc = openai.InternalServerError(
            "boom", response=httpx.Response(500, request=REQUEST), body=None
        )
        assert map_openai_error(exc).kind == ErrorKind.HTTP_ERROR

    def test_connection_error(self):
        exc = openai.APIConnectionError(request=REQUEST)
        assert map_openai_error(exc).kind == ErrorKind.TRANSPORT_ERROR


# ─── Blocking ────────────────────────────────────────────────────


class TestBlocking:
    @pytest.mark.asyncio
    async def test_send_turn_final_text(self):
        client = _client(_response(text="4", usage=_usage()))
        transport = OpenAITransport(client=client, model="gpt-test")

        result = await transport.send_turn([Message.user("2+2?")], [])

        assert result == AssistantFinal(
            "4",
            usage={"input_tokens": 3, "output_tokens": 1, "total_tokens": 4},
            response_id="resp_1",
        )
        request = client.responses.requests[0]
        assert request["model"] == "gpt-test"
        assert request["input"] == [
            {"role": "user", "content": [{"type": "input_text", "text": "2+2?"}]}
        ]
        assert "tools" not in request

    @pytest.mark.asyncio
    async def test_send_turn_tool_calls(self):
        call = SimpleNamespace(
            type="function_call", call_id="call_1", name="add", arguments='{"a": 3, "b": 4}'
        )
        client = _client(_response(output=[call]))
        transport = OpenAITransport(client=client)

        result = await transport.send_turn([Message.user("3+4?")], [ADD])

        assert isinstance(result, ToolCalls)
        assert result.response_id == "resp_1"
        assert result.calls == (ToolCallRequest("call_1", "add", {"a": 3, "b": 4}),)
        request = client.responses.requests[0]
        assert request["tools"][0]["name"] == "add"
        assert request["tool_choice"] == "auto"

    @pytest.mark.asyncio
    async def test_resubmit_uses_previous_response_id(self):
        client = _client(_response(id="resp_2", text="The answer is 7"))
        transport = OpenAITransport(client=client)

        result = await transport.resubmit_tool_results(
            "resp_1", [ToolResult.success("call_1", 7)], tools=[ADD]
        )

        assert result.text == "The answer is 7"
        request = client.responses.requests[0]
        assert request["previous_response_id"] == "resp_1"
        assert request["input"] == [
            {"type": "function_call_output", "call_id": "call_1", "output": "7"}
        ]

    @pytest.mark.asyncio
    async def test_sdk_error_becomes_error_result(self):
        client = _client(openai.APIConnectionError(request=REQUEST))
        transport = OpenAITransport(client=client)

        result = await transport.send_turn([Message.user("hi")], [])

        assert isinstance(result, ErrorResult)
        assert result.error.kind == ErrorKind.TRANSPORT_ERROR

    @pytest.mark.asyncio
    async def test_not_started(self):
        with pytest.raises(RuntimeError):
            await OpenAITransport().send_turn([Message.user("hi")], [])

    @pytest.mark.asyncio
    async def test_stop_closes_client(self):
        client = _client()
        transport = OpenAITransport(client=client)
        await transport.stop()
        client.close.assert_awaited_once()
        assert transport.client is None


# ─── Streaming ───────────────────────────────────────────────────


class TestStreaming:
    @pytest.mark.asyncio
    async def test_text_stream(self):
        client = _client(
            FakeStream(
                [
                    _created("resp_1"),
                    _event("response.output_text.delta", delta="Hel"),
                    _event("response.output_text.delta", delta="lo"),
                    _completed("resp_1", text="Hello", usage=_usage(5, 2)),
                ]
            )
        )
        transport = OpenAITransport(client=client)
        listener = RecordingListener()

        handle = await transport.open_stream([Message.user("hi")], [], listener)
        await wait_until(lambda: "finished" in listener.kinds())

        assert listener.events == [
            ("started", "resp_1"),
            ("delta", "Hel"),
            ("delta", "lo"),
            ("finished", True, "Hello", {"input_tokens": 5, "output_tokens": 2, "total_tokens": 7}),
        ]
        assert handle.response_id == "resp_1"
        assert client.responses.requests[0]["stream"] is True

    @pytest.mark.asyncio
    async def test_tool_call_then_continuation(self):
        first = FakeStream(
            [
                _created("resp_1"),
                _event(
                    "response.output_item.added",
                    item=SimpleNamespace(type="function_call", id="fc_1", call_id="call_1", name="add"),
                ),
                _event("response.function_call_arguments.delta", item_id="fc_1", delta='{"a": 1,'),
                _event("response.function_call_arguments.delta", item_id="fc_1", delta=' "b": 2}'),
                _event(
                    "response.function_call_arguments.done",
                    item_id="fc_1",
                    arguments='{"a": 1, "b": 2}',
                ),
                _completed("resp_1"),
            ]
        )
        second = FakeStream(
            [
                _created("resp_2"),
                _event("response.output_text.delta", delta="3"),
                _completed("resp_2", text="3"),
            ]
        )
        client = _client(first, second)
        transport = OpenAITransport(client=client)
        listener = RecordingListener()

        handle = await transport.open_stream([Message.user("1+2")], [ADD], listener)
        await wait_until(lambda: "call_done" in listener.kinds())
        assert ("call_delta", "call_1", "add", '{"a": 1,') in listener.events
        assert ("call_done", "call_1", "add", '{"a": 1, "b": 2}') in listener.events

        await transport.resume_stream_with_result(handle, ToolResult.success("call_1", 3))
        await wait_until(lambda: "finished" in listener.kinds())

        assert listener.kinds().count("finished") == 1
        assert listener.events[-1][:3] == ("finished", True, "3")
        continuation = client.responses.requests[1]
        assert continuation["previous_response_id"] == "resp_1"
        assert continuation["input"] == [
            {"type": "function_call_output", "call_id": "call_1", "output": "3"}
        ]

    @pytest.mark.asyncio
    async def test_continuation_waits_for_every_call(self):
        def added(item_id, call_id):
            return _event(
                "response.output_item.added",
                item=SimpleNamespace(type="function_call", id=item_id, call_id=call_id, name="add"),
            )

        def done(item_id):
            return _event("response.function_call_arguments.done", item_id=item_id, arguments="{}")

        first = FakeStream(
            [_created("resp_1"), added("fc_1", "call_1"), added("fc_2", "call_2"), done("fc_1"), done("fc_2"), _completed("resp_1")]
        )
        second = FakeStream([_created("resp_2"), _completed("resp_2", text="ok")])
        client = _client(first, second)
        transport = OpenAITransport(client=client)
        listener = RecordingListener()

        handle = await transport.open_stream([Message.user("x")], [ADD], listener)
        await wait_until(lambda: listener.kinds().count("call_done") == 2)

        await transport.resume_stream_with_result(handle, ToolResult.success("call_2", 2))
        await asyncio.sleep(0.01)
        assert len(client.responses.requests) == 1

        await transport.resume_stream_with_result(handle, ToolResult.success("call_1", 1))
        await wait_until(lambda: "finished" in listener.kinds())
        outputs = client.responses.requests[1]["input"]
        assert [o["call_id"] for o in outputs] == ["call_2", "call_1"]

    @pytest.mark.asyncio
    async def test_error_event(self):
        client = _client(FakeStream([_created("resp_1"), _event("error", message="overloaded", code="server_error")]))
        transport = OpenAITransport(client=client)
        listener = RecordingListener()

        await transport.open_stream([Message.user("hi")], [], listener)
        await wait_until(lambda: "error" in listener.kinds())

        error = listener.events[-1][1]
        assert error.kind == ErrorKind.TRANSPORT_ERROR
        assert error.message == "overloaded"

    @pytest.mark.asyncio
    async def test_connection_failure_reported_to_listener(self):
        client = _client(
            openai.RateLimitError("slow", response=httpx.Response(429, request=REQUEST), body=None)
        )
        transport = OpenAITransport(client=client)
        listener = RecordingListener()

        await transport.open_stream([Message.user("hi")], [], listener)
        await wait_until(lambda: "error" in listener.kinds())
        assert listener.events[-1][1].kind == ErrorKind.RATE_LIMITED

    @pytest.mark.asyncio
    async def test_abort_cancels_pump(self):
        hold = asyncio.Event()
        client = _client(FakeStream([_created("resp_1")], hold=hold))
        transport = OpenAITransport(client=client)
        listener = RecordingListener()

        handle = await transport.open_stream([Message.user("hi")], [], listener)
        await wait_until(lambda: "started" in listener.kinds())
        await transport.abort(handle)

        assert transport._streams == {}
        assert listener.kinds() == ["started"]

    @pytest.mark.asyncio
    async def test_resume_after_abort_is_ignored(self):
        hold = asyncio.Event()
        client = _client(FakeStream([_created("resp_1")], hold=hold))
        transport = OpenAITransport(client=client)
        handle = await transport.open_stream([Message.user("hi")], [], RecordingListener())
        await transport.abort(handle)

        await transport.resume_stream_with_result(handle, ToolResult.success("call_1", 1))
        assert len(client.responses.requests) <= 1


# ─── Sessions over the OpenAI stream ─────────────────────────────


def _added(item_id, call_id, name="add"):
    return _event(
        "response.output_item.added",
        item=SimpleNamespace(type="function_call", id=item_id, call_id=call_id, name=name),
    )


def _args_done(item_id, arguments):
    return _event("response.function_call_arguments.done", item_id=item_id, arguments=arguments)


class TestDroppedCalls:
    @pytest.mark.asyncio
    async def test_stream_ends_when_only_call_is_dropped(self, registry):
        client = _client(
            FakeStream(
                [
                    _created("resp_1"),
                    _added("fc_1", "call_1"),
                    _args_done("fc_1", "{not json"),
                    _completed("resp_1", usage=_usage()),
                ]
            )
        )
        controller = TurnController(
            OpenAITransport(client=client),
            registry,
            max_steps=10,
            system_prompt="",
            debug=False,
            drop_malformed_calls=True,
        )

        session = await controller.stream([Message.user("x")])
        outcome = await asyncio.wait_for(session.finish(), 1.0)

        assert session.status == StreamStatus.FINISHED
        assert outcome.ok is True
        assert outcome.usage["total_tokens"] == 4
        assert len(client.responses.requests) == 1
        assert controller.active_turns == 0

    @pytest.mark.asyncio
    async def test_continuation_skips_dropped_call(self, registry):
        first = FakeStream(
            [
                _created("resp_1"),
                _added("fc_1", "call_1"),
                _added("fc_2", "call_2"),
                _args_done("fc_1", "{not json"),
                _args_done("fc_2", '{"a": 1, "b": 2}'),
                _completed("resp_1"),
            ]
        )
        second = FakeStream(
            [
                _created("resp_2"),
                _event("response.output_text.delta", delta="3"),
                _completed("resp_2", text="3"),
            ]
        )
        client = _client(first, second)
        controller = TurnController(
            OpenAITransport(client=client),
            registry,
            max_steps=10,
            system_prompt="",
            debug=False,
            drop_malformed_calls=True,
        )

        session = await controller.stream([Message.user("x")])
        outcome = await asyncio.wait_for(session.finish(), 1.0)

        assert outcome.ok is True
        assert outcome.text == "3"
        continuation = client.responses.requests[1]
        assert continuation["previous_response_id"] == "resp_1"
        assert [o["call_id"] for o in continuation["input"]] == ["call_2"]
