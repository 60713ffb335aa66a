"""
Marionette Logging — readable or JSON logs for whatever hosts the core.

Library modules only ever do `logger = logging.getLogger(__name__)` and
pass turn context through `extra`:

    logger.info("Turn done", extra={"turn_id": state.turn_id, "step": 2})

The host calls setup_logging() once. Text mode appends that context as a
short tag ("turn=ab12 step=2"); JSON mode puts every field at the top
level of the line.

Env vars (explicit arguments win):
    MARIONETTE_LOG_LEVEL  DEBUG / INFO / WARNING / ERROR (default: INFO)
    MARIONETTE_LOG_COLOR  true / false / auto (default: auto, TTY detection)
    MARIONETTE_LOG_FORMAT text / json (default: text)
"""

from __future__ import annotations

import json
import logging
import os
import sys
import time
from datetime import datetime, timezone

# Turn context forwarded from logger.info(..., extra={...})
CONTEXT_FIELDS = (
    "turn_id",
    "stream_id",
    "call_id",
    "tool",
    "step",
    "kind",
    "duration_ms",
    "status",
)

# Short labels used in text mode
_TAG_LABELS = {"turn_id": "turn", "stream_id": "stream", "call_id": "call"}

NOISY_LOGGERS = ("httpx", "httpcore", "openai", "openai._base_client", "deepgram", "websockets")

_LEVEL_COLORS = {
    logging.DEBUG: "\033[36m",
    logging.INFO: "\033[32m",
    logging.WARNING: "\033[33m",
    logging.ERROR: "\033[31m",
    logging.CRITICAL: "\033[1;31m",
}
_RESET = "\033[0m"
_DIM = "\033[2m"


def record_context(record: logging.LogRecord) -> dict:
    """The turn context fields present on a record."""
    context = {}
    for key in CONTEXT_FIELDS:
        value = getattr(record, key, None)
        if value is not None:
            context[key] = value
    return context


def _tag(context: dict) -> str:
    parts = []
    for key, value in context.items():
        if key == "duration_ms":
            parts.append(f"{value:.0f}ms")
        else:
            parts.append(f"{_TAG_LABELS.get(key, key)}={value}")
    return " ".join(parts)


class ColorFormatter(logging.Formatter):
    """One line per record, turn context appended, optionally colorized."""

    def __init__(self, use_color: bool = True):
        super().__init__(datefmt="%H:%M:%S")
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        stamp = self.formatTime(record, self.datefmt)
        level, name = record.levelname, record.name
        if self.use_color:
            level = f"{_LEVEL_COLORS.get(record.levelno, '')}{level}{_RESET}"
            name = f"{_DIM}{name}{_RESET}"

        line = f"{stamp} [{name}] {level}: {record.getMessage()}"
        tag = _tag(record_context(record))
        if tag:
            line += f"  {_DIM}({tag}){_RESET}" if self.use_color else f"  ({tag})"
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


class StructuredFormatter(logging.Formatter):
    """One JSON object per line, turn context at the top level."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            **record_context(record),
        }
        if record.exc_info:
            entry["exc"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class PipelineTimer:
    """Wall-clock time spent in each stage of one voice exchange.

    Usage:
        timer = PipelineTimer()
        # ... transcribe ...
        timer.mark("stt")
        # ... run the turn ...
        timer.mark("llm")
        timer.summary()  # -> "stt: 0.4s | llm: 2.1s | Total: 2.5s"
    """

    def __init__(self):
        self._start = time.monotonic()
        self._last = self._start
        self._stages: dict[str, float] = {}

    def mark(self, stage: str) -> None:
        """Close the current stage under the given name."""
        now = time.monotonic()
        self._stages[stage] = now - self._last
        self._last = now

    def elapsed(self, stage: str) -> float | None:
        return self._stages.get(stage)

    def stages(self) -> dict[str, float]:
        return dict(self._stages)

    def total(self) -> float:
        return time.monotonic() - self._start

    def summary(self) -> str:
        parts = [f"{name}: {seconds:.1f}s" for name, seconds in self._stages.items()]
        parts.append(f"Total: {self.total():.1f}s")
        return " | ".join(parts)


def _should_use_color() -> bool:
    setting = os.getenv("MARIONETTE_LOG_COLOR", "auto").lower()
    if setting in ("true", "false"):
        return setting == "true"
    return hasattr(sys.stdout, "isatty") and sys.stdout.isatty()


def setup_logging(
    level: str | None = None,
    log_format: str | None = None,
    use_color: bool | None = None,
) -> None:
    """Configure the root logger. Call once at startup; library code never does."""
    level_name = (level or os.getenv("MARIONETTE_LOG_LEVEL", "INFO")).upper()
    numeric_level = getattr(logging, level_name, logging.INFO)
    log_format = (log_format or os.getenv("MARIONETTE_LOG_FORMAT", "text")).lower()

    if log_format == "json":
        formatter: logging.Formatter = StructuredFormatter()
    else:
        formatter = ColorFormatter(
            use_color=_should_use_color() if use_color is None else use_color
        )

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(numeric_level)
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(numeric_level)
    root.addHandler(handler)

    # Request/response chatter from the SDKs drowns out turn logs
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logging.getLogger("marionette").debug(
        f"Logging configured (level={level_name}, format={log_format})"
    )
