"""
ElevenLabs TTS Provider — speaks a finished turn.

REST API: POST https://api.elevenlabs.io/v1/text-to-speech/{voice_id}
Returns raw audio bytes directly (no base64).
"""

from __future__ import annotations

import logging
import time

import httpx

import marionette.core.config as config_module
from marionette.core.metrics import metrics
from marionette.providers.base import TTSProvider

logger = logging.getLogger(__name__)

ELEVENLABS_TTS_URL = "https://api.elevenlabs.io/v1/text-to-speech"


class ElevenLabsTTSProvider(TTSProvider):
    def __init__(self, client: httpx.AsyncClient | None = None):
        self.client = client

    async def start(self) -> None:
        if self.client:
            return  # Already started
        tts = config_module.config.tts
        if not tts.api_key:
            raise ValueError("ELEVENLABS_API_KEY not set")

        self.client = httpx.AsyncClient(
            timeout=httpx.Timeout(tts.timeout),
            headers={"xi-api-key": tts.api_key, "Content-Type": "application/json"},
        )
        logger.info(f"ElevenLabs TTS ready (model={tts.model}, voice={tts.voice_id})")

    async def stop(self) -> None:
        if self.client:
            await self.client.aclose()
            self.client = None

    async def synthesize(self, text: str) -> bytes:
        """Convert text to MP3 audio bytes."""
        if not self.client:
            raise RuntimeError("ElevenLabs TTS not started")

        tts = config_module.config.tts
        started = time.time()
        metrics.inc("provider.tts.requests", labels={"provider": "elevenlabs"})

        try:
            response = await self.client.post(
                f"{ELEVENLABS_TTS_URL}/{tts.voice_id}",
                json={"text": text, "model_id": tts.model},
            )
            response.raise_for_status()
        except httpx.HTTPError:
            metrics.inc("provider.tts.errors", labels={"provider": "elevenlabs"})
            raise

        metrics.observe(
            "provider.tts.latency_ms",
            (time.time() - started) * 1000,
            labels={"provider": "elevenlabs"},
        )
        return response.content

    async def health_check(self) -> dict:
        tts = config_module.config.tts
        return {
            "provider": "elevenlabs",
            "model": tts.model,
            "voice_id": tts.voice_id,
            "status": "ready" if self.client else "not_started",
        }
