"""
Turn Controller — drives one conversational turn to its final text.

This is the heart of the core. Every turn, blocking or streaming, goes
through it:

    controller = TurnController(transport, registry)

    # Blocking: model -> tools -> model ... -> final text
    outcome = await controller.invoke([Message.user("2+2?")])
    outcome.to_dict()  # {"ok": True, "text": "4", "steps": 1}

    # Streaming: same rules, events as they happen
    session = await controller.stream([Message.user("Tell me a story")])
    async for event in session.events():
        ...

Non-streaming state machine:

    PREPARING -> AWAITING_MODEL -> DONE | FAILED
                       |  ^
                       v  |
                  TOOL_DISPATCH

TOOL_DISPATCH runs every requested call concurrently and waits for the
whole batch before one continuation is sent. Streams instead resume per
call (see StreamSession); step-limit and interruption apply to both.

Interruption is cooperative: interrupt() raises a flag that is checked
at each transition, never mid network call.
"""

from __future__ import annotations

import inspect
import logging
import time
from typing import Any, Awaitable, Callable, Iterable, Sequence

import marionette.core.config as config_module
from marionette.core.metrics import metrics
from marionette.llm.contracts import (
    AssistantFinal,
    ErrorResult,
    Message,
    Role,
    ToolCalls,
    ToolResult,
    ToolSchema,
    TurnEvent,
    TurnOutcome,
    TurnResult,
    TurnState,
    TurnStatus,
)
from marionette.llm.errors import ErrorInfo, ErrorKind, TransportError, TurnError
from marionette.llm.stream_session import StreamSession
from marionette.llm.transport import Transport, TurnOptions
from marionette.tools.executor import ToolExecutor
from marionette.tools.registry import ToolHandlerLookup, ToolRegistry

logger = logging.getLogger(__name__)

EventCallback = Callable[[TurnEvent], Any]


def validate_messages(
    messages: Iterable[Message | dict[str, Any]],
    system_prompt: str | None = None,
) -> list[Message]:
    """
    Check a message list and return it as Messages.

    At most one system message is allowed, and only at index 0. If there
    is none and a system_prompt is given, one is prepended.

    Raises:
        TurnError(invalid_messages)
    """
    try:
        history = [Message.coerce(m) for m in messages]
    except ValueError as e:
        raise TurnError(ErrorKind.INVALID_MESSAGES, f"Malformed message: {e}")

    system_positions = [i for i, m in enumerate(history) if m.role == Role.SYSTEM]
    if len(system_positions) > 1:
        raise TurnError(
            ErrorKind.INVALID_MESSAGES,
            f"At most one system message allowed, got {len(system_positions)}",
            {"positions": system_positions},
        )
    if system_positions and system_positions[0] != 0:
        raise TurnError(
            ErrorKind.INVALID_MESSAGES,
            f"System message must be first, found at index {system_positions[0]}",
            {"positions": system_positions},
        )

    if not system_positions and system_prompt:
        history.insert(0, Message.system(system_prompt))
    return history


class _TurnGuard:
    """Step-limit and interruption policy for one streaming turn."""

    def __init__(self, state: TurnState, max_steps: int):
        self.state = state
        self.max_steps = max_steps

    def check(self) -> ErrorInfo | None:
        if self.state.interrupted:
            self.state.status = TurnStatus.FAILED
            return ErrorInfo(ErrorKind.INTERRUPTED, "Turn interrupted")
        return None

    def admit(self, step: int) -> ErrorInfo | None:
        if step > self.max_steps:
            self.state.status = TurnStatus.FAILED
            return ErrorInfo(
                ErrorKind.STEP_LIMIT_EXCEEDED,
                f"Turn exceeded {self.max_steps} steps",
                {"max_steps": self.max_steps},
            )
        self.state.step_count = step
        return None


class TurnController:
    """
    Runs turns against one Transport and one tool lookup.

    Collaborators are passed in; nothing is looked up globally. Config
    only provides defaults for arguments left as None.
    """

    def __init__(
        self,
        transport: Transport,
        registry: ToolHandlerLookup | None = None,
        executor: ToolExecutor | None = None,
        *,
        system_prompt: str | None = None,
        max_steps: int | None = None,
        options: TurnOptions | None = None,
        debug: bool | None = None,
        drop_malformed_calls: bool = False,
    ):
        llm = config_module.config.llm
        self.transport = transport
        self.registry = registry if registry is not None else ToolRegistry()
        self.executor = executor or ToolExecutor()
        self.system_prompt = system_prompt if system_prompt is not None else llm.system_prompt
        self.max_steps = max_steps if max_steps is not None else llm.max_steps
        if self.max_steps < 1:
            raise ValueError(f"max_steps must be >= 1, got {self.max_steps}")
        self.options = options or TurnOptions(
            model=llm.model,
            max_tokens=llm.max_tokens,
            temperature=llm.temperature,
        )
        self.debug = debug if debug is not None else llm.debug
        self.drop_malformed_calls = drop_malformed_calls
        self._active: set[TurnState] = set()

    # ─── Public API ──────────────────────────────────────────────

    def interrupt(self) -> int:
        """Flag every active turn as interrupted. Returns how many were flagged."""
        for state in self._active:
            state.interrupt()
        return len(self._active)

    @property
    def active_turns(self) -> int:
        return len(self._active)

    async def invoke(
        self,
        messages: Iterable[Message | dict[str, Any]],
        *,
        tools: Sequence[ToolSchema] | None = None,
        on_event: EventCallback | None = None,
    ) -> TurnOutcome:
        """
        Run one blocking turn.

        Never raises for turn-level failures: the returned TurnOutcome is
        the single terminal result (ok, or error with its kind). on_event
        receives debug events per step (in debug mode) and exactly one
        finished or error event.
        """
        state = TurnState()
        sequence = 0

        async def emit(event_factory: Callable[[int], TurnEvent]) -> None:
            nonlocal sequence
            if on_event is None:
                return
            sequence += 1
            result = on_event(event_factory(sequence))
            if inspect.isawaitable(result):
                await result

        started = time.monotonic()
        self._active.add(state)
        metrics.inc("turn.started", labels={"mode": "invoke"})
        metrics.gauge_inc("turn.active")
        logger.info("Turn started", extra={"turn_id": state.turn_id})
        try:
            outcome = await self._run(state, messages, tools, emit)
        finally:
            self._active.discard(state)
            metrics.gauge_dec("turn.active")

        duration_ms = (time.monotonic() - started) * 1000
        metrics.inc("turn.finished", labels={"status": state.status.value})
        metrics.observe("turn.steps", outcome.steps)
        if outcome.ok:
            logger.info(
                f"Turn done in {outcome.steps} step(s)",
                extra={"turn_id": state.turn_id, "step": outcome.steps, "duration_ms": duration_ms},
            )
            await emit(
                lambda seq: TurnEvent.finished(
                    state.turn_id, seq, True, outcome.text, outcome.usage, outcome.steps
                )
            )
        else:
            await emit(lambda seq: TurnEvent.error(state.turn_id, seq, outcome.error))
        return outcome

    async def stream(
        self,
        messages: Iterable[Message | dict[str, Any]],
        *,
        tools: Sequence[ToolSchema] | None = None,
    ) -> StreamSession:
        """
        Start one streaming turn and return its session.

        Validation failures and transport errors on open do not raise:
        the session comes back already ended with a single error event.
        """
        state = TurnState()
        session = StreamSession(
            self.transport,
            self.executor,
            self.registry,
            turn_id=state.turn_id,
            guard=_TurnGuard(state, self.max_steps),
            debug=self.debug,
            drop_malformed_calls=self.drop_malformed_calls,
        )
        metrics.inc("turn.started", labels={"mode": "stream"})

        try:
            history = self._prepare(state, messages)
        except TurnError as e:
            state.status = TurnStatus.FAILED
            session.fail(e.info)
            return session

        tool_schemas = self._snapshot_tools(tools)
        state.status = TurnStatus.STREAMING
        state.step_count = 1
        self._active.add(state)
        logger.info("Stream turn started", extra={"turn_id": state.turn_id})

        try:
            handle = await self.transport.open_stream(
                history, tool_schemas, session, self.options
            )
        except TransportError as e:
            self._active.discard(state)
            state.status = TurnStatus.FAILED
            session.fail(e.info, abort=False)
            return session
        except Exception as e:
            logger.error(f"Opening stream failed: {e}", exc_info=True)
            self._active.discard(state)
            state.status = TurnStatus.FAILED
            session.fail(ErrorInfo(ErrorKind.TRANSPORT_ERROR, str(e)), abort=False)
            return session

        session.attach(handle)
        session.add_close_callback(lambda: self._close_stream_state(state, session))
        return session

    # ─── Non-streaming loop ──────────────────────────────────────

    async def _run(
        self,
        state: TurnState,
        messages: Iterable[Message | dict[str, Any]],
        tools: Sequence[ToolSchema] | None,
        emit: Callable[[Callable[[int], TurnEvent]], Awaitable[None]],
    ) -> TurnOutcome:
        # PREPARING
        try:
            self._prepare(state, messages)
        except TurnError as e:
            return self._fail(state, e.info)

        tool_schemas = self._snapshot_tools(tools)
        resolved: dict[str, ToolResult] = {}
        handle = ""

        # AWAITING_MODEL (step 1)
        if state.interrupted:
            return self._fail(state, ErrorInfo(ErrorKind.INTERRUPTED, "Turn interrupted"))
        state.status = TurnStatus.AWAITING_MODEL
        state.step_count = 1
        await self._emit_step(state, emit)
        result = await self._call(
            self.transport.send_turn(list(state.history), tool_schemas, self.options)
        )

        while True:
            if state.interrupted:
                await self._abort(handle or self._handle_of(result))
                return self._fail(state, ErrorInfo(ErrorKind.INTERRUPTED, "Turn interrupted"))

            if isinstance(result, ErrorResult):
                return self._fail(state, result.error)

            if isinstance(result, AssistantFinal) or not result.calls:
                return self._done(state, result)

            # TOOL_DISPATCH
            state.status = TurnStatus.TOOL_DISPATCH
            handle = result.response_id
            if state.step_count >= self.max_steps:
                return self._fail(
                    state,
                    ErrorInfo(
                        ErrorKind.STEP_LIMIT_EXCEEDED,
                        f"Turn exceeded {self.max_steps} steps",
                        {"max_steps": self.max_steps},
                    ),
                )

            # A call id repeated within one response runs once
            calls = list({c.call_id: c for c in result.calls}.values())
            state.record_tool_calls(calls, result.text)
            fresh = [c for c in calls if c.call_id not in resolved]
            ran = await self.executor.execute_batch(fresh, self.registry)
            for tool_result in ran:
                resolved[tool_result.call_id] = tool_result
                if self.debug:
                    await emit(
                        lambda seq, r=tool_result: TurnEvent.tool_result(state.turn_id, seq, r)
                    )
            batch = [resolved[c.call_id] for c in calls]

            if state.interrupted:
                await self._abort(handle)
                return self._fail(state, ErrorInfo(ErrorKind.INTERRUPTED, "Turn interrupted"))

            state.record_tool_results(batch)
            state.step_count += 1
            state.status = TurnStatus.AWAITING_MODEL
            await self._emit_step(state, emit)
            result = await self._call(
                self.transport.resubmit_tool_results(
                    handle,
                    batch,
                    history=list(state.history),
                    tools=tool_schemas,
                    options=self.options,
                )
            )

    # ─── Helpers ─────────────────────────────────────────────────

    def _prepare(
        self, state: TurnState, messages: Iterable[Message | dict[str, Any]]
    ) -> list[Message]:
        state.status = TurnStatus.PREPARING
        history = validate_messages(messages, self.system_prompt)
        state.history = list(history)
        state.input_length = len(history)
        return history

    def _snapshot_tools(self, tools: Sequence[ToolSchema] | None) -> list[ToolSchema]:
        if tools is not None:
            return list(tools)
        schemas = getattr(self.registry, "schemas", None)
        return list(schemas()) if callable(schemas) else []

    async def _call(self, pending: Awaitable[TurnResult]) -> TurnResult:
        try:
            return await pending
        except TransportError as e:
            return ErrorResult(e.info)
        except Exception as e:
            logger.error(f"Transport call failed: {e}", exc_info=True)
            return ErrorResult(ErrorInfo(ErrorKind.TRANSPORT_ERROR, str(e)))

    async def _abort(self, handle: str) -> None:
        if not handle:
            return
        try:
            await self.transport.abort(handle)
        except TransportError as e:
            logger.warning(f"Abort failed: {e}")

    @staticmethod
    def _handle_of(result: TurnResult) -> str:
        return getattr(result, "response_id", "")

    async def _emit_step(self, state: TurnState, emit) -> None:
        logger.debug(
            f"Step {state.step_count}",
            extra={"turn_id": state.turn_id, "step": state.step_count},
        )
        if self.debug:
            await emit(
                lambda seq: TurnEvent.debug(
                    state.turn_id, seq, "step", step=state.step_count, status=state.status.value
                )
            )

    def _done(self, state: TurnState, result: AssistantFinal | ToolCalls) -> TurnOutcome:
        text = result.text
        if text:
            state.append(Message.assistant(text))
        state.status = TurnStatus.DONE
        return TurnOutcome(
            ok=True,
            text=text,
            steps=state.step_count,
            usage=dict(result.usage),
            messages=tuple(state.exchange()),
            turn_id=state.turn_id,
        )

    def _fail(self, state: TurnState, error: ErrorInfo) -> TurnOutcome:
        state.status = TurnStatus.FAILED
        log = logger.warning if error.kind != ErrorKind.INVALID_MESSAGES else logger.info
        log(
            f"Turn failed: {error.kind.value}: {error.message}",
            extra={"turn_id": state.turn_id, "kind": error.kind.value, "step": state.step_count},
        )
        return TurnOutcome(
            ok=False,
            steps=state.step_count,
            error=error,
            messages=tuple(state.exchange()),
            turn_id=state.turn_id,
        )

    def _close_stream_state(self, state: TurnState, session: StreamSession) -> None:
        self._active.discard(state)
        if state.status not in (TurnStatus.DONE, TurnStatus.FAILED):
            state.status = TurnStatus.DONE if session.outcome.ok else TurnStatus.FAILED
