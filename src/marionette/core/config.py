"""
Marionette Configuration — single source of truth for all settings.

Reads from environment variables with sensible defaults.
No config files, no YAML. Just env vars (a local .env is honored).

Core objects take explicit constructor arguments; this module only
supplies the defaults they fall back to.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field

from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class LLMConfig:
    """Language model / turn orchestration settings."""

    provider: str = "openai"
    api_key: str = ""
    base_url: str = ""
    model: str = "gpt-4o-mini"
    max_tokens: int = 1024
    temperature: float = 0.7
    # Model round-trips allowed per turn (initial request + continuations)
    max_steps: int = 10
    system_prompt: str = ""
    # Emit a debug event per step / tool result
    debug: bool = False
    # Agent history retention
    max_history_messages: int = 40
    keep_tool_messages: bool = True

    @classmethod
    def from_env(cls) -> LLMConfig:
        return cls(
            provider=os.getenv("MARIONETTE_LLM_PROVIDER", "openai"),
            api_key=os.getenv("OPENAI_API_KEY", ""),
            base_url=os.getenv("MARIONETTE_LLM_BASE_URL", ""),
            model=os.getenv("MARIONETTE_LLM_MODEL", "gpt-4o-mini"),
            max_tokens=int(os.getenv("MARIONETTE_LLM_MAX_TOKENS", "1024")),
            temperature=float(os.getenv("MARIONETTE_LLM_TEMPERATURE", "0.7")),
            max_steps=int(os.getenv("MARIONETTE_LLM_MAX_STEPS", "10")),
            system_prompt=os.getenv("MARIONETTE_LLM_SYSTEM_PROMPT", ""),
            debug=_env_bool("MARIONETTE_LLM_DEBUG", False),
            max_history_messages=int(
                os.getenv("MARIONETTE_LLM_MAX_HISTORY_MESSAGES", "40")
            ),
            keep_tool_messages=_env_bool("MARIONETTE_LLM_KEEP_TOOL_MESSAGES", True),
        )


@dataclass(frozen=True)
class STTConfig:
    """Speech-to-text provider settings."""

    provider: str = "deepgram"
    api_key: str = ""
    model: str = "nova-3"
    language: str = "en"

    @classmethod
    def from_env(cls) -> STTConfig:
        return cls(
            provider=os.getenv("MARIONETTE_STT_PROVIDER", "deepgram"),
            api_key=os.getenv("DEEPGRAM_API_KEY", ""),
            model=os.getenv("MARIONETTE_STT_MODEL", "nova-3"),
            language=os.getenv("MARIONETTE_STT_LANGUAGE", "en"),
        )


@dataclass(frozen=True)
class TTSConfig:
    """Text-to-speech provider settings."""

    provider: str = "elevenlabs"
    api_key: str = ""
    model: str = "eleven_multilingual_v2"
    voice_id: str = "21m00Tcm4TlvDq8ikWAM"  # Rachel
    timeout: float = 15.0

    @classmethod
    def from_env(cls) -> TTSConfig:
        return cls(
            provider=os.getenv("MARIONETTE_TTS_PROVIDER", "elevenlabs"),
            api_key=os.getenv("ELEVENLABS_API_KEY", ""),
            model=os.getenv("MARIONETTE_TTS_MODEL", "eleven_multilingual_v2"),
            voice_id=os.getenv("MARIONETTE_TTS_VOICE_ID", "21m00Tcm4TlvDq8ikWAM"),
            timeout=float(os.getenv("MARIONETTE_TTS_TIMEOUT", "15.0")),
        )


@dataclass(frozen=True)
class MarionetteConfig:
    """Root configuration — one object for every section."""

    llm: LLMConfig = field(default_factory=LLMConfig)
    stt: STTConfig = field(default_factory=STTConfig)
    tts: TTSConfig = field(default_factory=TTSConfig)

    @classmethod
    def from_env(cls) -> MarionetteConfig:
        return cls(
            llm=LLMConfig.from_env(),
            stt=STTConfig.from_env(),
            tts=TTSConfig.from_env(),
        )


# Module-level default, read via `config_module.config` so reloads are seen
config = MarionetteConfig.from_env()


def reload_config() -> MarionetteConfig:
    """Re-read the environment and replace the module-level config."""
    global config
    config = MarionetteConfig.from_env()
    return config
