"""Voice conversation endpoints: configuration and the per-connection session socket."""
from __future__ import annotations

import asyncio
import contextlib
import json
from typing import Any, Awaitable, Callable, Dict, Union
from uuid import uuid4

from fastapi import APIRouter, HTTPException, Request, WebSocket, WebSocketDisconnect

from voicecoach.conversation.chat import ChatProvider, ConversationConfig
from voicecoach.conversation.session import ConversationSession
from voicecoach.core.logging import get_logger
from voicecoach.voice import metrics as voice_metrics
from voicecoach.voice.coordinator import SpeechCoordinator
from voicecoach.voice.engine import EngineFactory
from voicecoach.voice.google_engine import GoogleSpeechEngine
from voicecoach.voice.models import SpeechState, Utterance
from voicecoach.voice.remote_engine import RemoteSpeechChannel, RemoteSpeechEngine
from voicecoach.voice.settings import VoiceSettings

router = APIRouter(prefix="/api/voice", tags=["voice"])
logger = get_logger(__name__)

ControlHandler = Callable[[ConversationSession, SpeechCoordinator, Dict[str, Any]], Awaitable[Any]]

_CONTROL_ACTIONS: Dict[str, ControlHandler] = {
    "start": lambda session, coordinator, payload: session.start_listening(),
    "stop": lambda session, coordinator, payload: session.stop_listening(),
    "pause": lambda session, coordinator, payload: coordinator.pause_listening(),
    "resume": lambda session, coordinator, payload: coordinator.resume_listening(),
    "mute": lambda session, coordinator, payload: coordinator.set_muted(True),
    "unmute": lambda session, coordinator, payload: coordinator.set_muted(False),
    "stop_speaking": lambda session, coordinator, payload: coordinator.stop_speaking(),
    "set_language": lambda session, coordinator, payload: coordinator.set_language(str(payload.get("language") or "")),
    "greet": lambda session, coordinator, payload: session.greet(),
    "say": lambda session, coordinator, payload: session.submit(str(payload.get("text") or "")),
    "feedback": lambda session, coordinator, payload: session.request_feedback(),
}


def _get_voice_settings(scope_obj: Union[Request, WebSocket]) -> VoiceSettings:
    app = getattr(scope_obj, "app", None)
    settings = getattr(getattr(app, "state", None), "voice_settings", None)
    if settings is None:
        raise HTTPException(status_code=503, detail="Voice settings not initialised")
    return settings


def _engine_factory(websocket: WebSocket, settings: VoiceSettings, channel: RemoteSpeechChannel) -> EngineFactory:
    if settings.engine == "google":
        # Devices outlive the engine: a recreated engine reuses them
        source, sink = websocket.app.state.audio_devices_factory()
        return lambda: GoogleSpeechEngine(settings, source, sink)
    return lambda: RemoteSpeechEngine(channel)


def _get_chat_provider(scope_obj: Union[Request, WebSocket]) -> ChatProvider:
    app = getattr(scope_obj, "app", None)
    factory = getattr(getattr(app, "state", None), "chat_provider_factory", None)
    if factory is None:
        raise HTTPException(status_code=503, detail="Chat provider not initialised")
    return factory()


@router.get("/config")
async def voice_config(request: Request) -> Dict[str, Any]:
    """Expose non-sensitive configuration for clients and health checks."""
    settings = _get_voice_settings(request)
    return {
        "engine": settings.engine,
        "default_language": settings.normalize_language(settings.default_language),
        "language_aliases": dict(settings.language_aliases),
        "voices": dict(settings.voice_names),
        "max_operation_ms": int(settings.max_operation_seconds * 1000),
        "heartbeat_ms": int(settings.heartbeat_seconds * 1000),
        "silence_ms": int(settings.silence_threshold_seconds * 1000),
        "control_actions": sorted(_CONTROL_ACTIONS),
    }


@router.websocket("/session")
async def voice_session(websocket: WebSocket) -> None:
    """Text-only conversation socket.

    With the remote engine the client runs recognition and playback and
    answers speech commands; with the google engine speech runs on the
    server audio devices and the socket only carries the conversation.
    """
    await websocket.accept()
    voice_settings = _get_voice_settings(websocket)
    chat = _get_chat_provider(websocket)
    session_id = str(websocket.query_params.get("session_id") or uuid4())
    level = "premium" if websocket.query_params.get("level") == "premium" else "basic"

    outbox: asyncio.Queue = asyncio.Queue()
    writer = asyncio.create_task(_write_outbox(websocket, outbox), name=f"voice-writer-{session_id}")

    async def enqueue(payload: Dict[str, Any]) -> None:
        outbox.put_nowait(payload)

    channel = RemoteSpeechChannel(enqueue)
    coordinator = SpeechCoordinator(_engine_factory(websocket, voice_settings, channel), voice_settings)

    def on_state(state: SpeechState, error: str | None) -> None:
        outbox.put_nowait({"type": "state", **state.as_dict(), "error": error})

    def on_message(utterance: Utterance) -> None:
        outbox.put_nowait({"type": "message", **utterance.as_dict()})

    coordinator.subscribe(on_state)
    session = ConversationSession(
        coordinator,
        chat,
        config=ConversationConfig(level=level),
        on_message=on_message,
        session_id=session_id,
    )
    controls: set[asyncio.Task] = set()
    voice_metrics.session_opened()
    logger.info({"event": "voice_session_open", "session_id": session_id, "level": level, "client": str(websocket.client)})

    try:
        await coordinator.start()
        outbox.put_nowait({
            "type": "ready",
            "session_id": session_id,
            "engine": voice_settings.engine,
            "initialized": coordinator.is_initialized,
            **coordinator.state.as_dict(),
        })
        while True:
            raw = await websocket.receive_text()
            try:
                payload = json.loads(raw)
            except ValueError:
                payload = None
            if not isinstance(payload, dict):
                outbox.put_nowait({"type": "error", "message": "Expected a JSON object"})
                continue
            kind = payload.get("type")
            if kind in ("ack", "speech_end", "interim", "final"):
                channel.dispatch(payload)
            elif kind == "control":
                # Controls wait for client acknowledgements, so they must not block this loop
                task = asyncio.create_task(_run_control(session, coordinator, payload, outbox))
                controls.add(task)
                task.add_done_callback(controls.discard)
            elif kind == "ping":
                outbox.put_nowait({"type": "pong"})
            else:
                outbox.put_nowait({"type": "error", "message": f"Unknown message type: {kind}"})
    except WebSocketDisconnect:
        logger.info({"event": "voice_session_disconnect", "session_id": session_id})
    finally:
        for task in list(controls):
            task.cancel()
        await coordinator.dispose()
        await session.close()
        writer.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await writer
        voice_metrics.session_closed()


async def _run_control(
    session: ConversationSession,
    coordinator: SpeechCoordinator,
    payload: Dict[str, Any],
    outbox: asyncio.Queue,
) -> None:
    action = str(payload.get("action") or "")
    handler = _CONTROL_ACTIONS.get(action)
    if handler is None:
        outbox.put_nowait({"type": "error", "message": f"Unknown control action: {action}"})
        return
    try:
        result = await handler(session, coordinator, payload)
    except Exception as exc:
        logger.exception({"event": "voice_control_failed", "action": action})
        message = f"Control action {action} failed: {exc}"
        outbox.put_nowait({"type": "error", "message": message})
        outbox.put_nowait({"type": "control_result", "action": action, "ok": False, "error": message})
        return
    ok = result if isinstance(result, bool) else result is not None
    outbox.put_nowait({"type": "control_result", "action": action, "ok": ok, "error": coordinator.error})


async def _write_outbox(websocket: WebSocket, outbox: asyncio.Queue) -> None:
    while True:
        payload = await outbox.get()
        try:
            await websocket.send_json(payload)
        except (WebSocketDisconnect, RuntimeError):
            logger.debug({"event": "voice_session_send_failed", "type": payload.get("type")})
            return
