"""
Shared fixtures for marionette tests.

FakeTransport is an in-memory Transport: blocking calls pop scripted
TurnResults (or raise scripted exceptions), streaming calls hand the
listener to the test so it can play wire events by hand. Every call is
recorded for assertion.
"""

from __future__ import annotations

import asyncio
from typing import Any, Callable

import pytest

from marionette.core.metrics import metrics
from marionette.llm.contracts import ToolResult
from marionette.llm.transport import StreamHandle, Transport
from marionette.tools.base import ToolParam
from marionette.tools.registry import ToolRegistry


class FakeTransport(Transport):
    """Scripted Transport spy."""

    def __init__(self, *results: Any):
        self.results = list(results)
        self.calls: list[tuple] = []
        self.aborted: list[Any] = []
        self.resumed: list[ToolResult] = []
        self.listener = None
        self.handle: StreamHandle | None = None
        self.open_error: Exception | None = None
        self.resume_error: Exception | None = None
        # Called after every resume_stream_with_result, e.g. to finish the stream
        self.after_resume: Callable[[FakeTransport, ToolResult], None] | None = None

    async def send_turn(self, history, tools, options=None):
        self.calls.append(("send_turn", list(history), list(tools)))
        return self._next()

    async def resubmit_tool_results(
        self, turn_handle, results, *, history=(), tools=(), options=None
    ):
        self.calls.append(("resubmit", turn_handle, list(results)))
        return self._next()

    async def open_stream(self, history, tools, listener, options=None):
        self.calls.append(("open_stream", list(history), list(tools)))
        if self.open_error is not None:
            raise self.open_error
        self.listener = listener
        self.handle = StreamHandle()
        return self.handle

    async def resume_stream_with_result(self, handle, result):
        self.resumed.append(result)
        if self.resume_error is not None:
            raise self.resume_error
        if self.after_resume is not None:
            self.after_resume(self, result)

    async def abort(self, handle):
        self.aborted.append(handle)

    def _next(self):
        if not self.results:
            raise AssertionError("FakeTransport ran out of scripted results")
        item = self.results.pop(0)
        if callable(item):
            item = item()
        if isinstance(item, Exception):
            raise item
        return item


async def wait_until(predicate: Callable[[], bool], timeout: float = 1.0) -> None:
    """Yield to the loop until predicate() holds."""

    async def poll():
        while not predicate():
            await asyncio.sleep(0.001)

    await asyncio.wait_for(poll(), timeout)


def add(a: int, b: int) -> dict:
    """Add two integers."""
    return {"ok": True, "data": a + b}


ADD_PARAMS = [
    ToolParam("a", "integer", "First operand"),
    ToolParam("b", "integer", "Second operand"),
]


@pytest.fixture(autouse=True)
def reset_metrics():
    metrics.reset()
    yield
    metrics.reset()


@pytest.fixture
def registry():
    r = ToolRegistry()
    r.register_function(add, name="add", parameters=ADD_PARAMS)
    return r
