"""Centralised configuration for the real-time voice runtime."""
from __future__ import annotations

import os
from dataclasses import dataclass, field

from voicecoach.core.exceptions import ConfigurationError

ENGINES = ("remote", "google")


def _env_ms(name: str, default: int) -> float:
    raw = os.getenv(name, str(default))
    try:
        return int(raw) / 1000.0
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be an integer number of milliseconds", {"value": raw}) from exc


def _default_aliases() -> dict[str, str]:
    return {
        "english": "en-US",
        "en": "en-US",
        "spanish": "es-ES",
        "es": "es-ES",
    }


def _default_voices() -> dict[str, str]:
    return {
        "en-US": os.getenv("GOOGLE_TTS_VOICE_EN", "en-US-Wavenet-F"),
        "es-ES": os.getenv("GOOGLE_TTS_VOICE_ES", "es-ES-Wavenet-D"),
    }


@dataclass
class VoiceSettings:
    """Runtime configuration for the speech coordinator and its engines.

    Durations are stored in seconds; the environment variables use
    milliseconds. ``engine`` selects where speech runs: ``remote`` (the
    connected browser) or ``google`` (Google Cloud with server audio devices).
    """

    max_operation_seconds: float = field(default_factory=lambda: _env_ms("VOICE_MAX_OPERATION_MS", 3000))
    heartbeat_seconds: float = field(default_factory=lambda: _env_ms("VOICE_HEARTBEAT_MS", 1000))
    silence_threshold_seconds: float = field(default_factory=lambda: _env_ms("VOICE_SILENCE_MS", 280))
    engine: str = field(default_factory=lambda: os.getenv("VOICE_ENGINE", "remote").strip().lower())
    default_language: str = field(default_factory=lambda: os.getenv("VOICE_DEFAULT_LANGUAGE", "en-US"))
    language_aliases: dict[str, str] = field(default_factory=_default_aliases)
    voice_names: dict[str, str] = field(default_factory=_default_voices)
    google_sample_rate: int = field(default_factory=lambda: int(os.getenv("VOICE_STREAM_SAMPLE_RATE", "16000")))
    google_tts_audio_encoding: str = field(default_factory=lambda: os.getenv("GOOGLE_TTS_AUDIO_ENCODING", "MP3"))
    stream_fallback_text: str = "Sorry, I lost my train of thought. Could you say that again?"
    empty_response_text: str = "I apologize, but I was unable to generate a response."

    def __post_init__(self) -> None:
        for name in ("max_operation_seconds", "heartbeat_seconds", "silence_threshold_seconds"):
            if getattr(self, name) <= 0:
                raise ConfigurationError(f"{name} must be positive", {name: getattr(self, name)})
        if self.engine not in ENGINES:
            raise ConfigurationError(f"VOICE_ENGINE must be one of {', '.join(ENGINES)}", {"value": self.engine})

    def normalize_language(self, language: str) -> str:
        """Resolve aliases such as ``english`` to a BCP-47 tag."""
        cleaned = language.strip()
        return self.language_aliases.get(cleaned.lower(), cleaned)

    def voice_for(self, language: str) -> str | None:
        return self.voice_names.get(language)
