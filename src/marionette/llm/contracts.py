"""
Turn Contracts — fixed structures shared by every piece of the core.

- Message / content parts: one entry of conversation history
- ToolSchema: a callable capability offered to the model
- ToolCallRequest / ToolResult: one tool invocation and its outcome
- TurnResult: what a Transport round trip produced
  (AssistantFinal | ToolCalls | ErrorResult)
- TurnEvent: caller-facing event (delta, debug, finished, error)
- TurnState / TurnOutcome: the live state of one turn and its terminal result

None of these carry vendor vocabulary; Transport implementations translate.
"""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar, Iterable, Union

from marionette.llm.errors import ErrorInfo, ErrorKind


class Role(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


# ═══════════════════════════════════════════════════════════════════════════════
# CONTENT PARTS
# ═══════════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class TextPart:
    text: str
    type: ClassVar[str] = "text"


@dataclass(frozen=True)
class ImagePart:
    """Image by URL (or data: URL)."""

    url: str
    detail: str = "auto"
    type: ClassVar[str] = "image"


@dataclass(frozen=True)
class AudioPart:
    data: bytes
    format: str = "wav"
    transcript: str = ""
    type: ClassVar[str] = "audio"


@dataclass(frozen=True)
class ToolCallPart:
    """A tool call proposed by the assistant, kept in history."""

    call_id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)
    type: ClassVar[str] = "tool_call"


@dataclass(frozen=True)
class ToolResultPart:
    """The model-facing output of one tool call."""

    call_id: str
    output: str
    ok: bool = True
    type: ClassVar[str] = "tool_result"


ContentPart = Union[TextPart, ImagePart, AudioPart, ToolCallPart, ToolResultPart]


# ═══════════════════════════════════════════════════════════════════════════════
# MESSAGE
# ═══════════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class Message:
    """
    One entry of conversation history.

    Immutable: content is a tuple of parts. Build with the role
    constructors or coerce a plain {"role", "content"} dict.
    """

    role: Role
    content: tuple[ContentPart, ...] = ()

    @classmethod
    def system(cls, text: str) -> Message:
        return cls(Role.SYSTEM, (TextPart(text),))

    @classmethod
    def user(cls, content: str | Iterable[ContentPart]) -> Message:
        if isinstance(content, str):
            return cls(Role.USER, (TextPart(content),))
        return cls(Role.USER, tuple(content))

    @classmethod
    def assistant(
        cls, text: str = "", tool_calls: Iterable[ToolCallRequest] = ()
    ) -> Message:
        parts: list[ContentPart] = []
        if text:
            parts.append(TextPart(text))
        for call in tool_calls:
            parts.append(ToolCallPart(call.call_id, call.name, dict(call.arguments)))
        return cls(Role.ASSISTANT, tuple(parts))

    @classmethod
    def tool(cls, result: ToolResult) -> Message:
        return cls(
            Role.TOOL,
            (ToolResultPart(result.call_id, result.output_text(), result.ok),),
        )

    @classmethod
    def coerce(cls, value: Message | dict[str, Any]) -> Message:
        """Accept a Message or a {"role": ..., "content": str | [parts]} dict."""
        if isinstance(value, Message):
            return value
        if not isinstance(value, dict) or "role" not in value:
            raise ValueError(f"Not a message: {value!r}")
        role = Role(value["role"])
        content = value.get("content", "")
        if isinstance(content, str):
            parts: tuple[ContentPart, ...] = (TextPart(content),) if content else ()
        else:
            parts = tuple(_coerce_part(p) for p in content)
        return cls(role, parts)

    @property
    def text(self) -> str:
        return "".join(p.text for p in self.content if isinstance(p, TextPart))

    @property
    def tool_calls(self) -> list[ToolCallPart]:
        return [p for p in self.content if isinstance(p, ToolCallPart)]

    @property
    def tool_results(self) -> list[ToolResultPart]:
        return [p for p in self.content if isinstance(p, ToolResultPart)]


def _coerce_part(value: Any) -> ContentPart:
    if isinstance(value, (TextPart, ImagePart, AudioPart, ToolCallPart, ToolResultPart)):
        return value
    if isinstance(value, str):
        return TextPart(value)
    kind = value.get("type", "text")
    if kind == "text":
        return TextPart(value.get("text", ""))
    if kind == "image":
        return ImagePart(value["url"], value.get("detail", "auto"))
    if kind == "audio":
        return AudioPart(
            value["data"], value.get("format", "wav"), value.get("transcript", "")
        )
    raise ValueError(f"Unknown content part type: {kind}")


# ═══════════════════════════════════════════════════════════════════════════════
# TOOL CALLING CONTRACT
# ═══════════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class ToolSchema:
    """Static declaration of a callable capability."""

    name: str
    description: str = ""
    parameters: dict[str, Any] = field(
        default_factory=lambda: {"type": "object", "properties": {}, "required": []}
    )

    def to_openai_schema(self) -> dict[str, Any]:
        """OpenAI function calling format."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }


@dataclass(frozen=True)
class ToolCallRequest:
    """One invocation requested by the model mid-turn."""

    call_id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ToolResult:
    """
    Outcome of executing a ToolCallRequest.

    Exactly one per request, matched by call_id. Either data (ok=True)
    or error (ok=False) is meaningful.
    """

    call_id: str
    ok: bool
    data: Any = None
    error: ErrorInfo | None = None
    name: str = ""

    @classmethod
    def success(cls, call_id: str, data: Any, name: str = "") -> ToolResult:
        return cls(call_id=call_id, ok=True, data=data, name=name)

    @classmethod
    def failed(
        cls,
        call_id: str,
        kind: ErrorKind,
        message: str,
        name: str = "",
        **details: Any,
    ) -> ToolResult:
        return cls(
            call_id=call_id,
            ok=False,
            error=ErrorInfo(kind, message, details),
            name=name,
        )

    def output_text(self) -> str:
        """Serialize for the model: strings pass through, everything else is JSON."""
        if not self.ok:
            error = self.error.to_dict() if self.error else {"kind": "tool_error"}
            return json.dumps({"error": error}, default=str)
        if isinstance(self.data, str):
            return self.data
        return json.dumps(self.data, default=str)


# ═══════════════════════════════════════════════════════════════════════════════
# TRANSPORT RESULTS
# ═══════════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class AssistantFinal:
    """The model produced text and no tool calls."""

    text: str
    usage: dict[str, int] = field(default_factory=dict)
    response_id: str = ""
    tag: ClassVar[str] = "assistant_final"


@dataclass(frozen=True)
class ToolCalls:
    """The model requested one or more tool calls."""

    calls: tuple[ToolCallRequest, ...]
    response_id: str = ""
    text: str = ""
    usage: dict[str, int] = field(default_factory=dict)
    tag: ClassVar[str] = "tool_calls"


@dataclass(frozen=True)
class ErrorResult:
    """The round trip failed below the core boundary."""

    error: ErrorInfo
    tag: ClassVar[str] = "error"


TurnResult = Union[AssistantFinal, ToolCalls, ErrorResult]


# ═══════════════════════════════════════════════════════════════════════════════
# CALLER-FACING EVENTS
# ═══════════════════════════════════════════════════════════════════════════════


class TurnEventType(str, Enum):
    DELTA = "delta"
    DEBUG = "debug"
    FINISHED = "finished"
    ERROR = "error"


TERMINAL_EVENTS = frozenset({TurnEventType.FINISHED, TurnEventType.ERROR})


@dataclass(frozen=True)
class TurnEvent:
    """
    Event emitted to whatever UI/agent layer started the turn.

    sequence is monotonic per turn, so consumers can order or dedupe.
    """

    type: TurnEventType
    turn_id: str = ""
    sequence: int = 0
    payload: dict[str, Any] = field(default_factory=dict)

    @property
    def terminal(self) -> bool:
        return self.type in TERMINAL_EVENTS

    @classmethod
    def delta(cls, turn_id: str, sequence: int, text: str) -> TurnEvent:
        return cls(TurnEventType.DELTA, turn_id, sequence, {"text": text})

    @classmethod
    def debug(cls, turn_id: str, sequence: int, event: str, **data: Any) -> TurnEvent:
        return cls(TurnEventType.DEBUG, turn_id, sequence, {"event": event, **data})

    @classmethod
    def tool_result(cls, turn_id: str, sequence: int, result: ToolResult) -> TurnEvent:
        """Debug event describing one finished tool call."""
        return cls.debug(
            turn_id,
            sequence,
            "tool_result",
            call_id=result.call_id,
            name=result.name,
            ok=result.ok,
            output=result.output_text(),
        )

    @classmethod
    def finished(
        cls,
        turn_id: str,
        sequence: int,
        ok: bool,
        text: str,
        usage: dict[str, int] | None = None,
        steps: int = 0,
    ) -> TurnEvent:
        return cls(
            TurnEventType.FINISHED,
            turn_id,
            sequence,
            {"ok": ok, "text": text, "usage": dict(usage or {}), "steps": steps},
        )

    @classmethod
    def error(cls, turn_id: str, sequence: int, error: ErrorInfo) -> TurnEvent:
        return cls(TurnEventType.ERROR, turn_id, sequence, error.to_dict())


# ═══════════════════════════════════════════════════════════════════════════════
# TURN STATE
# ═══════════════════════════════════════════════════════════════════════════════


class TurnStatus(str, Enum):
    PREPARING = "preparing"
    AWAITING_MODEL = "awaiting_model"
    TOOL_DISPATCH = "tool_dispatch"
    STREAMING = "streaming"
    DONE = "done"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({TurnStatus.DONE, TurnStatus.FAILED})


@dataclass(eq=False)
class TurnState:
    """
    The state machine instance for one turn.

    history is append-only. Tool results are recorded at most once per
    call_id, so a duplicated continuation cannot duplicate history.
    """

    history: list[Message] = field(default_factory=list)
    turn_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    step_count: int = 0
    status: TurnStatus = TurnStatus.PREPARING
    interrupted: bool = False
    # Index of the first message produced by this turn (prompt excluded)
    input_length: int = 0
    _recorded_calls: set[str] = field(default_factory=set, init=False, repr=False)
    _recorded_results: set[str] = field(default_factory=set, init=False, repr=False)

    @property
    def terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def interrupt(self) -> None:
        self.interrupted = True

    def append(self, message: Message) -> None:
        self.history.append(message)

    def record_tool_calls(self, calls: Iterable[ToolCallRequest], text: str = "") -> None:
        fresh = [c for c in calls if c.call_id not in self._recorded_calls]
        if not fresh:
            return
        self._recorded_calls.update(c.call_id for c in fresh)
        self.history.append(Message.assistant(text, fresh))

    def record_tool_results(self, results: Iterable[ToolResult]) -> list[ToolResult]:
        """Append tool messages for results not seen before; return those appended."""
        appended = []
        for result in results:
            if result.call_id in self._recorded_results:
                continue
            self._recorded_results.add(result.call_id)
            self.history.append(Message.tool(result))
            appended.append(result)
        return appended

    def exchange(self) -> list[Message]:
        """Messages produced during this turn."""
        return self.history[self.input_length:]


@dataclass(frozen=True)
class TurnOutcome:
    """Terminal result of one invoke/stream."""

    ok: bool
    text: str = ""
    steps: int = 0
    usage: dict[str, int] = field(default_factory=dict)
    error: ErrorInfo | None = None
    messages: tuple[Message, ...] = ()
    turn_id: str = ""

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"ok": self.ok, "text": self.text, "steps": self.steps}
        if self.usage:
            data["usage"] = dict(self.usage)
        if self.error:
            data["error"] = self.error.to_dict()
        return data
