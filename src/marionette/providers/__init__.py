"""
Marionette Providers — the OpenAI transport plus speech edges.

Swap providers by changing config.
"""

from marionette.providers.base import STTProvider, TTSProvider
from marionette.providers.registry import get_llm_transport, get_stt_provider, get_tts_provider

__all__ = [
    "STTProvider",
    "TTSProvider",
    "get_llm_transport",
    "get_stt_provider",
    "get_tts_provider",
]
