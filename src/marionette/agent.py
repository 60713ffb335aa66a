"""
Agent — a conversation that outlives a single turn.

The TurnController is stateless across turns; the Agent owns the history
and feeds it back in on every ask:

    agent = Agent(TurnController(transport, registry), system_prompt="Be brief.")
    outcome = await agent.ask("What is 3 + 4?")
    outcome.text  # "The answer is 7"

    session = await agent.ask_stream("Tell me a story")
    async for event in session.events():
        ...

History is only extended by successful turns. Retention trims it to
max_history_messages (the system message always survives) and can drop
tool call/result messages once a turn is over.

Voice glue is a thin wrapper: STT -> ask -> TTS.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable

import marionette.core.config as config_module
from marionette.core.logging import PipelineTimer
from marionette.core.metrics import metrics
from marionette.llm.contracts import (
    Message,
    Role,
    TextPart,
    ToolCallPart,
    TurnOutcome,
)
from marionette.llm.stream_session import StreamSession
from marionette.llm.turn import EventCallback, TurnController
from marionette.providers.base import STTProvider, TTSProvider

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class VoiceReply:
    """Result of one spoken exchange."""

    transcript: str
    outcome: TurnOutcome | None = None
    audio: bytes = b""


class Agent:
    """Persistent conversation wrapped around a TurnController."""

    def __init__(
        self,
        controller: TurnController,
        *,
        system_prompt: str | None = None,
        history: Iterable[Message] | None = None,
        stt: STTProvider | None = None,
        tts: TTSProvider | None = None,
        keep_tool_messages: bool | None = None,
        max_history_messages: int | None = None,
    ):
        llm = config_module.config.llm
        self.controller = controller
        self.system_prompt = system_prompt
        self.stt = stt
        self.tts = tts
        self.keep_tool_messages = (
            keep_tool_messages if keep_tool_messages is not None else llm.keep_tool_messages
        )
        self.max_history_messages = (
            max_history_messages
            if max_history_messages is not None
            else llm.max_history_messages
        )
        self._history: list[Message] = []
        self.reset(history)

    @property
    def history(self) -> list[Message]:
        return list(self._history)

    def reset(self, history: Iterable[Message] | None = None) -> None:
        """Forget the conversation, keeping only the system prompt."""
        self._history = [Message.system(self.system_prompt)] if self.system_prompt else []
        if history:
            self._history.extend(history)
            self._trim()

    def interrupt(self) -> int:
        """Interrupt whatever turn is in flight."""
        return self.controller.interrupt()

    # ─── Turns ───────────────────────────────────────────────────

    async def ask(
        self,
        text: str | Message,
        on_event: EventCallback | None = None,
    ) -> TurnOutcome:
        """Run one blocking turn on top of the history."""
        user = text if isinstance(text, Message) else Message.user(text)
        outcome = await self.controller.invoke(
            [*self._history, user], on_event=on_event
        )
        if outcome.ok:
            self._commit(user, outcome.messages)
        else:
            logger.info(
                f"Turn failed, history unchanged: {outcome.error.kind.value}",
                extra={"turn_id": outcome.turn_id},
            )
        return outcome

    async def ask_stream(self, text: str | Message) -> StreamSession:
        """Start a streaming turn; history is extended once it finishes ok."""
        user = text if isinstance(text, Message) else Message.user(text)
        session = await self.controller.stream([*self._history, user])

        def on_close() -> None:
            outcome = session.outcome
            if outcome.ok:
                self._commit(user, outcome.messages)

        session.add_close_callback(on_close)
        return session

    async def ask_voice(self, audio: bytes) -> VoiceReply:
        """Transcribe audio, run a turn on the transcript, synthesize the answer."""
        if self.stt is None:
            raise RuntimeError("Agent has no STT provider")

        timer = PipelineTimer()
        transcript = await self.stt.transcribe(audio)
        timer.mark("stt")
        if not transcript:
            logger.info("No speech detected")
            return VoiceReply(transcript="")

        outcome = await self.ask(transcript)
        timer.mark("llm")

        speech = b""
        if outcome.ok and outcome.text and self.tts is not None:
            speech = await self.tts.synthesize(outcome.text)
            timer.mark("tts")

        for stage, seconds in timer.stages().items():
            metrics.observe("voice.stage_ms", seconds * 1000, labels={"stage": stage})
        logger.info(f"Voice turn: {timer.summary()}", extra={"turn_id": outcome.turn_id})
        return VoiceReply(transcript=transcript, outcome=outcome, audio=speech)

    # ─── Retention ───────────────────────────────────────────────

    def _commit(self, user: Message, produced: Iterable[Message]) -> None:
        self._history.append(user)
        for message in produced:
            if not self.keep_tool_messages:
                message = _strip_tool_parts(message)
                if message is None:
                    continue
            self._history.append(message)
        self._trim()

    def _trim(self) -> None:
        limit = self.max_history_messages
        if limit <= 0 or len(self._history) <= limit:
            return

        head = self._history[:1] if self._history[0].role == Role.SYSTEM else []
        room = limit - len(head)
        tail = self._history[len(head):][-room:] if room > 0 else []
        # Never start on a tool result or assistant reply whose request was cut
        while tail and tail[0].role != Role.USER:
            tail.pop(0)
        self._history = head + tail


def _strip_tool_parts(message: Message) -> Message | None:
    """Drop tool calls/results from a message; None if nothing is left."""
    if message.role == Role.TOOL:
        return None
    if not message.tool_calls:
        return message
    parts = tuple(p for p in message.content if not isinstance(p, ToolCallPart))
    if not any(isinstance(p, TextPart) and p.text for p in parts):
        return None
    return Message(message.role, parts)
