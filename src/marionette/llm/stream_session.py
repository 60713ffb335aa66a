"""
Stream Session — live state of one streaming turn.

The Transport calls the on_* handlers in wire order; the session turns
them into caller-facing TurnEvents on its own channel:

    session = await controller.stream(messages)
    async for event in session.events():
        if event.type == TurnEventType.DELTA:
            ui.append(event.payload["text"])
    outcome = await session.finish()

Tool calls resolve independently: as soon as one call's arguments are
complete it is executed and its result is fed back into the same stream,
without waiting for sibling calls.

States: STARTED -> STREAMING -> FINISHED | ERRORED | CANCELLED.
Once terminal, every further wire event is ignored and nothing else is
emitted. pending_call_args is only touched from the handlers below, which
all run on the transport's delivery path.
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from enum import Enum
from typing import TYPE_CHECKING, AsyncIterator, Protocol

from marionette.core.metrics import metrics
from marionette.llm.contracts import (
    Message,
    ToolCallRequest,
    ToolResult,
    TurnEvent,
    TurnOutcome,
)
from marionette.llm.errors import ErrorInfo, ErrorKind, TransportError

if TYPE_CHECKING:
    from marionette.llm.transport import StreamHandle, Transport
    from marionette.tools.executor import ToolExecutor
    from marionette.tools.registry import ToolHandlerLookup

logger = logging.getLogger(__name__)


class StreamStatus(str, Enum):
    STARTED = "started"
    STREAMING = "streaming"
    FINISHED = "finished"
    ERRORED = "errored"
    CANCELLED = "cancelled"


TERMINAL_STREAM_STATUSES = frozenset(
    {StreamStatus.FINISHED, StreamStatus.ERRORED, StreamStatus.CANCELLED}
)


class ContinuationGuard(Protocol):
    """Turn-level policy layered over a stream by its owner."""

    def check(self) -> ErrorInfo | None:
        """Checkpoint on every event arrival; an error ends the stream."""
        ...

    def admit(self, step: int) -> ErrorInfo | None:
        """Called before continuation number `step` is sent."""
        ...


class StreamSession:
    """Accumulates one stream's events and resumes it after tool calls."""

    def __init__(
        self,
        transport: "Transport",
        executor: "ToolExecutor",
        registry: "ToolHandlerLookup",
        *,
        turn_id: str | None = None,
        guard: ContinuationGuard | None = None,
        debug: bool = False,
        drop_malformed_calls: bool = False,
    ):
        self.transport = transport
        self.executor = executor
        self.registry = registry
        self.turn_id = turn_id or uuid.uuid4().hex[:12]
        self.guard = guard
        self.debug = debug
        self.drop_malformed_calls = drop_malformed_calls

        self.stream_id = ""
        self.response_id = ""
        self.status = StreamStatus.STARTED
        self.accumulated_text = ""
        self.pending_call_args: dict[str, str] = {}
        # Call ids already taken from on_tool_call_done; repeats are ignored
        self.seen_call_ids: set[str] = set()
        self.cancelled = False
        self.steps = 0
        self.usage: dict[str, int] = {}
        self.error: ErrorInfo | None = None
        self.finished_ok = False
        # Messages produced by this stream: tool calls, tool results, final text
        self.messages: list[Message] = []

        self._segment_text = ""
        self._handle: StreamHandle | None = None
        self._attached = asyncio.Event()
        self._done = asyncio.Event()
        self._events: asyncio.Queue[TurnEvent | None] = asyncio.Queue()
        self._sequence = 0
        self._tasks: set[asyncio.Task] = set()
        self._close_callbacks: list = []

    # ─── Lifecycle ───────────────────────────────────────────────

    @property
    def terminal(self) -> bool:
        return self.status in TERMINAL_STREAM_STATUSES

    def attach(self, handle: "StreamHandle") -> None:
        """Bind the transport handle; counts as the first step."""
        self._handle = handle
        self.stream_id = handle.stream_id
        self.steps = max(self.steps, 1)
        self._attached.set()
        if self.status == StreamStatus.ERRORED:
            # Failed before open_stream returned; the remote side may still be live
            self._spawn(self.transport.abort(handle), "abort")

    def fail(self, error: ErrorInfo, abort: bool = True) -> bool:
        """End the stream with an error event. False if already terminal."""
        if self.terminal:
            return False
        logger.warning(
            f"Stream failed: {error.kind.value}: {error.message}",
            extra={"stream_id": self.stream_id, "kind": error.kind.value},
        )
        self.status = StreamStatus.ERRORED
        self.error = error
        self._emit(TurnEvent.error(self.turn_id, self._next_sequence(), error))
        self._close()
        metrics.inc("turn.finished", labels={"status": "failed"})
        if abort and self._handle is not None:
            self._spawn(self.transport.abort(self._handle), "abort")
        return True

    def add_close_callback(self, callback) -> None:
        """Run callback once the stream ends (immediately if it already has)."""
        if self.terminal:
            callback()
        else:
            self._close_callbacks.append(callback)

    async def cancel(self) -> bool:
        """
        Cancel the stream. No further events are emitted, not even finished.

        Tool calls already running are left to complete; their results are
        discarded. Returns False if the stream had already ended.
        """
        if self.terminal:
            return False
        self.cancelled = True
        self.status = StreamStatus.CANCELLED
        self.error = ErrorInfo(ErrorKind.CANCELLED, "Stream cancelled")
        self._close()
        metrics.inc("turn.finished", labels={"status": "cancelled"})
        logger.info("Stream cancelled", extra={"stream_id": self.stream_id})
        if self._handle is not None:
            await self.transport.abort(self._handle)
        return True

    async def events(self) -> AsyncIterator[TurnEvent]:
        """Caller-facing events in emission order; ends after the terminal one."""
        while True:
            event = await self._events.get()
            if event is None:
                return
            yield event

    async def finish(self) -> TurnOutcome:
        """Drain in-flight tool calls, wait for the stream to end, return the outcome."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        await self._done.wait()
        return self.outcome

    @property
    def outcome(self) -> TurnOutcome:
        ok = self.status == StreamStatus.FINISHED and self.finished_ok
        return TurnOutcome(
            ok=ok,
            text=self.accumulated_text,
            steps=self.steps,
            usage=dict(self.usage),
            error=self.error,
            messages=tuple(self.messages),
            turn_id=self.turn_id,
        )

    # ─── Transport callbacks ─────────────────────────────────────

    def on_started(self, response_id: str) -> None:
        if not self._accept():
            return
        self.response_id = response_id
        self.status = StreamStatus.STREAMING
        if self.debug:
            self._emit_debug("started", response_id=response_id, step=self.steps)

    def on_text_delta(self, text: str) -> None:
        if not self._accept():
            return
        self.status = StreamStatus.STREAMING
        self.accumulated_text += text
        self._segment_text += text
        metrics.inc("stream.deltas")
        self._emit(TurnEvent.delta(self.turn_id, self._next_sequence(), text))

    def on_tool_call_delta(self, call_id: str, name: str, args_fragment: str) -> None:
        if not self._accept():
            return
        self.pending_call_args[call_id] = (
            self.pending_call_args.get(call_id, "") + args_fragment
        )

    def on_tool_call_done(self, call_id: str, name: str, full_args_text: str) -> None:
        if not self._accept():
            return
        if call_id in self.seen_call_ids:
            logger.debug(
                f"Ignoring repeated completion for tool call {call_id}",
                extra={"stream_id": self.stream_id, "call_id": call_id},
            )
            return
        self.seen_call_ids.add(call_id)
        buffered = self.pending_call_args.pop(call_id, "")
        args_text = full_args_text or buffered

        try:
            arguments = json.loads(args_text) if args_text.strip() else {}
            if not isinstance(arguments, dict):
                raise ValueError(f"expected an object, got {type(arguments).__name__}")
        except ValueError as e:
            logger.warning(
                f"Malformed arguments for tool call {name}: {e}",
                extra={"stream_id": self.stream_id, "call_id": call_id, "tool": name},
            )
            if self.drop_malformed_calls:
                if self.debug:
                    self._emit_debug("tool_call_dropped", call_id=call_id, name=name)
                self._spawn(self._discard(call_id), f"discard-{call_id}")
                return
            self._record_call(ToolCallRequest(call_id, name, {}))
            result = ToolResult.failed(
                call_id,
                ErrorKind.PARSE_ERROR,
                f"Could not parse tool arguments: {e}",
                name=name,
                arguments=args_text,
            )
            self._spawn(self._resume(result), f"resume-{call_id}")
            return

        request = ToolCallRequest(call_id, name, arguments)
        self._record_call(request)
        self._spawn(self._run_call(request), f"tool-{call_id}")

    def on_finished(self, ok: bool, final_text: str, usage: dict[str, int]) -> None:
        if not self._accept():
            return
        if not self.accumulated_text and final_text:
            self.accumulated_text = final_text
            self._segment_text = final_text
        if self._segment_text:
            self.messages.append(Message.assistant(self._segment_text))
            self._segment_text = ""
        self.usage = dict(usage or {})
        self.finished_ok = ok
        self.status = StreamStatus.FINISHED
        if self._tasks:
            logger.debug(
                f"Stream finished with {len(self._tasks)} tool call(s) in flight",
                extra={"stream_id": self.stream_id},
            )
        self._emit(
            TurnEvent.finished(
                self.turn_id,
                self._next_sequence(),
                ok,
                self.accumulated_text,
                self.usage,
                self.steps,
            )
        )
        self._close()
        metrics.inc("turn.finished", labels={"status": "done" if ok else "failed"})
        metrics.observe("turn.steps", self.steps)

    def on_error(self, error: ErrorInfo) -> None:
        self.fail(error, abort=False)

    # ─── Tool calls ──────────────────────────────────────────────

    async def _run_call(self, request: ToolCallRequest) -> None:
        result = await self.executor.execute(request, self.registry)
        await self._resume(result)

    async def _resume(self, result: ToolResult) -> None:
        """Feed one result back into the stream, subject to the guard."""
        if self.terminal:
            logger.debug(
                f"Discarding result for {result.call_id}: stream already ended",
                extra={"stream_id": self.stream_id, "call_id": result.call_id},
            )
            return
        if self.debug:
            self._emit(TurnEvent.tool_result(self.turn_id, self._next_sequence(), result))

        # The initial request is step 1 even if it has not been attached yet
        step = max(self.steps, 1) + 1
        if self.guard is not None:
            error = self.guard.check() or self.guard.admit(step)
            if error is not None:
                self.fail(error)
                return
        self.steps = step

        await self._attached.wait()
        if self.terminal:
            return
        self.messages.append(Message.tool(result))
        try:
            await self.transport.resume_stream_with_result(self._handle, result)
        except TransportError as e:
            self.fail(e.info, abort=False)

    async def _discard(self, call_id: str) -> None:
        """Tell the transport a dropped call will never get a result."""
        await self._attached.wait()
        if self.terminal:
            return
        await self.transport.discard_call(self._handle, call_id)

    def _record_call(self, request: ToolCallRequest) -> None:
        self.messages.append(Message.assistant(self._segment_text, [request]))
        self._segment_text = ""

    # ─── Internal ────────────────────────────────────────────────

    def _accept(self) -> bool:
        """Event-arrival checkpoint. False means drop the event."""
        if self.terminal:
            return False
        if self.guard is not None:
            error = self.guard.check()
            if error is not None:
                self.fail(error)
                return False
        return True

    def _spawn(self, coro, name: str) -> asyncio.Task:
        task = asyncio.create_task(self._guarded(coro), name=f"{self.stream_id}:{name}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _guarded(self, coro) -> None:
        try:
            await coro
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Stream task failed: {e}", exc_info=True)
            self.fail(ErrorInfo(ErrorKind.TRANSPORT_ERROR, str(e)), abort=False)

    def _emit_debug(self, event: str, **data) -> None:
        self._emit(TurnEvent.debug(self.turn_id, self._next_sequence(), event, **data))

    def _emit(self, event: TurnEvent) -> None:
        self._events.put_nowait(event)

    def _next_sequence(self) -> int:
        self._sequence += 1
        return self._sequence

    def _close(self) -> None:
        self._events.put_nowait(None)
        self._done.set()
        # Wake tasks still waiting for a handle; they see the terminal status
        self._attached.set()
        callbacks, self._close_callbacks = self._close_callbacks, []
        for callback in callbacks:
            callback()
