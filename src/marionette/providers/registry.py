"""
Provider Registry — builds the transport and speech providers named in config.

Each getter returns a fresh, unstarted instance; the caller owns start/stop.
"""

from __future__ import annotations

import marionette.core.config as config_module
from marionette.llm.transport import Transport
from marionette.providers.base import STTProvider, TTSProvider


def get_llm_transport() -> Transport:
    provider = config_module.config.llm.provider.lower()
    if provider == "openai":
        from marionette.providers.openai_llm import OpenAITransport

        return OpenAITransport()
    raise ValueError(f"Unknown LLM provider: {provider}")


def get_stt_provider() -> STTProvider:
    provider = config_module.config.stt.provider.lower()
    if provider == "deepgram":
        from marionette.providers.deepgram_stt import DeepgramSTTProvider

        return DeepgramSTTProvider()
    raise ValueError(f"Unknown STT provider: {provider}")


def get_tts_provider() -> TTSProvider:
    provider = config_module.config.tts.provider.lower()
    if provider == "elevenlabs":
        from marionette.providers.elevenlabs_tts import ElevenLabsTTSProvider

        return ElevenLabsTTSProvider()
    raise ValueError(f"Unknown TTS provider: {provider}")
