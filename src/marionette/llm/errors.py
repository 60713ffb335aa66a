"""
Error taxonomy for turn orchestration.

Errors are identified by kind, not by exception type. Every failure that
crosses a component boundary is carried as an ErrorInfo value; the two
exception classes below exist only for the places where raising is the
natural control flow (input validation, transports that prefer to raise).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    """Kinds of failure a turn or a tool call can report."""

    INVALID_MESSAGES = "invalid_messages"
    UNKNOWN_TOOL = "unknown_tool"
    TOOL_ERROR = "tool_error"
    TRANSPORT_ERROR = "transport_error"
    HTTP_ERROR = "http_error"
    RATE_LIMITED = "rate_limited"
    STEP_LIMIT_EXCEEDED = "step_limit_exceeded"
    INTERRUPTED = "interrupted"
    PARSE_ERROR = "parse_error"
    CANCELLED = "cancelled"


# Failures that originate below the orchestration boundary
TRANSPORT_KINDS = frozenset(
    {ErrorKind.TRANSPORT_ERROR, ErrorKind.HTTP_ERROR, ErrorKind.RATE_LIMITED}
)


@dataclass(frozen=True)
class ErrorInfo:
    """Kind + human-readable message, plus optional structured details."""

    kind: ErrorKind
    message: str = ""
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"kind": self.kind.value, "message": self.message}
        if self.details:
            data.update(self.details)
        return data


class TurnError(Exception):
    """A turn-level failure carrying its ErrorInfo."""

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message)
        self.info = ErrorInfo(ErrorKind(kind), message, dict(details or {}))

    @property
    def kind(self) -> ErrorKind:
        return self.info.kind

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.kind.value}: {self})"


class TransportError(TurnError):
    """Raised by Transport implementations for wire-level failures."""

    def __init__(
        self,
        message: str,
        kind: ErrorKind = ErrorKind.TRANSPORT_ERROR,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(kind, message, details)
