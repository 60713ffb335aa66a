"""
Deepgram STT Provider — batch transcription of a recorded utterance.
"""

from __future__ import annotations

import logging
import time

from deepgram import AsyncDeepgramClient

import marionette.core.config as config_module
from marionette.core.metrics import metrics
from marionette.providers.base import STTProvider

logger = logging.getLogger(__name__)


class DeepgramSTTProvider(STTProvider):
    def __init__(self, client: AsyncDeepgramClient | None = None):
        self.client = client

    async def start(self) -> None:
        if self.client:
            return
        stt = config_module.config.stt
        if not stt.api_key:
            raise ValueError("DEEPGRAM_API_KEY not set")
        self.client = AsyncDeepgramClient(api_key=stt.api_key)
        logger.info(f"Deepgram STT ready (model={stt.model})")

    async def stop(self) -> None:
        self.client = None

    async def transcribe(self, audio_data: bytes) -> str | None:
        """Batch transcription of a complete audio buffer."""
        if not self.client:
            raise RuntimeError("Deepgram STT not started")

        stt = config_module.config.stt
        started = time.time()
        metrics.inc("provider.stt.requests", labels={"provider": "deepgram"})
        try:
            response = await self.client.listen.v1.media.transcribe_file(
                request=audio_data,
                model=stt.model,
                smart_format=True,
                language=stt.language,
            )
        except Exception as e:
            logger.error(f"Deepgram batch transcription error: {e}", exc_info=True)
            metrics.inc("provider.stt.errors", labels={"provider": "deepgram"})
            return None

        metrics.observe(
            "provider.stt.latency_ms",
            (time.time() - started) * 1000,
            labels={"provider": "deepgram"},
        )
        transcript = response.results.channels[0].alternatives[0].transcript
        if transcript and transcript.strip():
            return transcript.strip()
        return None

    async def health_check(self) -> dict:
        return {
            "provider": "deepgram",
            "model": config_module.config.stt.model,
            "status": "ready" if self.client else "not_started",
        }
