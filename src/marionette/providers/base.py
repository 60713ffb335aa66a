"""
Provider base classes — the edges around the turn core.

The LLM edge is llm.transport.Transport. Speech lives out here: an
STTProvider turns audio into text before a turn, a TTSProvider turns the
final text back into audio after it.
"""

from __future__ import annotations

from abc import ABC, abstractmethod


class STTProvider(ABC):
    """Speech-to-text provider interface."""

    @abstractmethod
    async def start(self) -> None:
        ...

    @abstractmethod
    async def stop(self) -> None:
        ...

    @abstractmethod
    async def transcribe(self, audio_data: bytes) -> str | None:
        """Transcribe a complete audio buffer. None if nothing was heard."""
        ...

    async def health_check(self) -> dict:
        return {"provider": self.__class__.__name__, "status": "unknown"}


class TTSProvider(ABC):
    """Text-to-speech provider interface."""

    @abstractmethod
    async def start(self) -> None:
        ...

    @abstractmethod
    async def stop(self) -> None:
        ...

    @abstractmethod
    async def synthesize(self, text: str) -> bytes:
        """Convert text to audio bytes (MP3)."""
        ...

    async def health_check(self) -> dict:
        return {"provider": self.__class__.__name__, "status": "unknown"}
