"""
VoiceCoach - API server
=======================
FastAPI application exposing the voice conversation session socket.

Endpoints: /health, /api/metrics, /api/voice/config, /api/voice/session (WS)
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Callable, Dict, Optional

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from voicecoach.api.voice_endpoints import router as voice_router
from voicecoach.conversation.chat import ChatProvider, OpenAIChatProvider
from voicecoach.core.config import Settings, get_settings
from voicecoach.core.exceptions import ConfigurationError
from voicecoach.core.logging import get_logger, setup_unified_logging
from voicecoach.voice import metrics as voice_metrics
from voicecoach.voice.google_engine import AudioDevicesFactory
from voicecoach.voice.settings import VoiceSettings

logger = get_logger(__name__)


def _collect_sample(metric, suffix: Optional[str] = None) -> float:
    for family in metric.collect():
        for sample in family.samples:
            if suffix and not sample.name.endswith(suffix):
                continue
            return sample.value
    return 0.0


def _collect_by_label(metric, suffix: str, label: str) -> Dict[str, float]:
    data: Dict[str, float] = {}
    for family in metric.collect():
        for sample in family.samples:
            if not sample.name.endswith(suffix):
                continue
            key = sample.labels.get(label, "total")
            data[key] = data.get(key, 0.0) + sample.value
    return data


def voice_metrics_snapshot() -> Dict[str, Any]:
    return {
        "active_sessions": _collect_sample(voice_metrics.VOICE_ACTIVE_SESSIONS),
        "operation_failures": _collect_by_label(voice_metrics.VOICE_OPERATION_FAILURES, "_total", "reason"),
        "watchdog_recoveries": _collect_by_label(voice_metrics.VOICE_WATCHDOG_RECOVERIES, "_total", "operation"),
        "silence_finalizations": _collect_sample(voice_metrics.VOICE_SILENCE_FINALIZATIONS, "_total"),
        "response_streams": _collect_by_label(voice_metrics.VOICE_RESPONSE_STREAMS, "_total", "result"),
        "operation_latency_ms": {
            "count": sum(_collect_by_label(voice_metrics.VOICE_OPERATION_LATENCY, "_count", "operation").values()),
            "sum": sum(_collect_by_label(voice_metrics.VOICE_OPERATION_LATENCY, "_sum", "operation").values()),
        },
    }


def create_app(
    settings: Optional[Settings] = None,
    voice_settings: Optional[VoiceSettings] = None,
    chat_provider_factory: Optional[Callable[[], ChatProvider]] = None,
    audio_devices_factory: Optional[AudioDevicesFactory] = None,
) -> FastAPI:
    load_dotenv()
    settings = settings or get_settings()
    voice_settings = voice_settings or VoiceSettings()
    if voice_settings.engine == "google" and audio_devices_factory is None:
        raise ConfigurationError(
            "VOICE_ENGINE=google needs server audio devices (audio_devices_factory)",
            {"engine": voice_settings.engine},
        )
    setup_unified_logging(level=settings.LOG_LEVEL, log_format=settings.LOG_FORMAT, log_dir=settings.LOG_DIR)

    app = FastAPI(title=settings.APP_NAME, version=settings.APP_VERSION)
    app.state.start_time = datetime.now()
    app.state.settings = settings
    app.state.voice_settings = voice_settings
    app.state.audio_devices_factory = audio_devices_factory
    # One provider per connection: it holds that conversation's history
    app.state.chat_provider_factory = chat_provider_factory or OpenAIChatProvider

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.include_router(voice_router)

    @app.get("/health", include_in_schema=False)
    async def health() -> Dict[str, Any]:
        return {"status": "ok", "version": settings.APP_VERSION, "environment": settings.ENVIRONMENT}

    @app.get("/api/metrics")
    async def get_metrics() -> Dict[str, Any]:
        snapshot: Dict[str, Any] = {
            "timestamp": datetime.now().isoformat(),
            "uptime_seconds": (datetime.now() - app.state.start_time).total_seconds(),
        }
        try:
            snapshot["voice"] = voice_metrics_snapshot()
        except Exception as exc:  # pragma: no cover - metrics collection should not break API
            logger.warning({"event": "voice_metrics_collect_failed", "error": str(exc)})
            snapshot["voice"] = {}
        return snapshot

    logger.info({"event": "app_created", "environment": settings.ENVIRONMENT})
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    _settings = get_settings()
    uvicorn.run(app, host=_settings.HOST, port=_settings.PORT)
