"""Speech engine running in a connected client (browser speech worker).

Recognition and synthesis happen on the client. The server sends commands
over the session WebSocket and every command settles when the client sends
the matching acknowledgement. A ``speak`` command is acknowledged once the
audio is synthesized and playback has started, not when it ends; the end of
playback (natural or after ``stop_speaking``) is reported separately with
the id of the ``speak`` command::

    server -> client  {"type": "command", "id": 7, "command": "speak", "text": "Hola"}
    client -> server  {"type": "ack", "id": 7, "ok": true}
    client -> server  {"type": "speech_end", "id": 7}
    client -> server  {"type": "interim", "text": "Hol"}
    client -> server  {"type": "final", "text": "Hola"}

A client that never acknowledges leaves the command pending; the
coordinator's deadline and watchdog deal with that. Acknowledgements for
unknown ids (late answers to abandoned commands) are ignored.
"""
from __future__ import annotations

import asyncio
import itertools
from typing import Any, Awaitable, Callable, Dict, Optional

from voicecoach.core.exceptions import EngineError
from voicecoach.core.logging import get_logger
from voicecoach.voice.models import PlaybackCallback, TranscriptCallback

logger = get_logger(__name__)

SendJson = Callable[[Dict[str, Any]], Awaitable[None]]


def _command_id(payload: Dict[str, Any]) -> Optional[int]:
    try:
        return int(payload.get("id"))
    except (TypeError, ValueError):
        return None


class RemoteSpeechChannel:
    """Client connection shared by successive engines of one session.

    Only the engine currently attached receives client messages; a
    recreated engine attaches itself and the disposed one detaches.
    """

    def __init__(self, send: SendJson) -> None:
        self._send = send
        self._ids = itertools.count(1)
        self._engine: Optional["RemoteSpeechEngine"] = None
        self._background: set[asyncio.Task] = set()

    def next_id(self) -> int:
        return next(self._ids)

    async def send(self, payload: Dict[str, Any]) -> None:
        await self._send(payload)

    def attach(self, engine: "RemoteSpeechEngine") -> None:
        self._engine = engine

    def detach(self, engine: "RemoteSpeechEngine") -> None:
        if self._engine is engine:
            self._engine = None

    def dispatch(self, payload: Dict[str, Any]) -> bool:
        """Route one client message to the attached engine."""
        engine = self._engine
        if engine is None:
            logger.debug({"event": "client_message_without_engine", "type": payload.get("type")})
            return False
        return engine.handle_client_message(payload)

    def notify(self, payload: Dict[str, Any]) -> None:
        """Send without waiting for the client; used where awaiting is not allowed."""
        try:
            task = asyncio.get_running_loop().create_task(self._send(payload))
        except RuntimeError:
            logger.debug({"event": "client_notify_without_loop", "type": payload.get("type")})
            return
        self._background.add(task)
        task.add_done_callback(self._notify_done)

    def _notify_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.warning({"event": "client_notify_failed", "error": repr(task.exception())})


class RemoteSpeechEngine:
    def __init__(self, channel: RemoteSpeechChannel) -> None:
        self._channel = channel
        self._pending: Dict[int, asyncio.Future] = {}
        self._on_interim: Optional[TranscriptCallback] = None
        self._on_final: Optional[TranscriptCallback] = None
        self._playback: Optional[tuple[int, PlaybackCallback]] = None
        self._disposed = False
        channel.attach(self)

    @property
    def disposed(self) -> bool:
        return self._disposed

    @property
    def pending_commands(self) -> int:
        return len(self._pending)

    async def start_listening(self, on_interim: TranscriptCallback, on_final: TranscriptCallback) -> None:
        # Results can arrive before the acknowledgement
        self._on_interim, self._on_final = on_interim, on_final
        try:
            await self._command("start_listening")
        except BaseException:
            self._on_interim = self._on_final = None
            raise

    async def stop_listening(self) -> None:
        self._on_interim = self._on_final = None
        await self._command("stop_listening")

    async def speak(self, text: str, on_finished: PlaybackCallback) -> None:
        command_id = self._channel.next_id()
        # The client may report the end of a short clip before its acknowledgement
        self._playback = (command_id, on_finished)
        try:
            await self._command("speak", command_id=command_id, text=text)
        except BaseException:
            if self._playback is not None and self._playback[0] == command_id:
                self._playback = None
            raise

    async def stop_speaking(self) -> None:
        await self._command("stop_speaking")
        self._playback = None

    async def set_language(self, language: str) -> None:
        await self._command("set_language", language=language)

    def dispose(self) -> None:
        if self._disposed:
            return
        self._disposed = True
        self._on_interim = self._on_final = None
        self._playback = None
        self._channel.detach(self)
        for future in self._pending.values():
            if not future.done():
                future.cancel()
        self._pending.clear()
        # The client drops its recognizer and any audio still playing
        self._channel.notify({"type": "command", "id": self._channel.next_id(), "command": "reset"})
        logger.info({"event": "remote_engine_disposed"})

    def handle_client_message(self, payload: Dict[str, Any]) -> bool:
        kind = payload.get("type")
        if kind == "ack":
            return self._acknowledge(payload)
        if kind == "speech_end":
            return self._playback_ended(payload)
        if kind in ("interim", "final"):
            callback = self._on_interim if kind == "interim" else self._on_final
            if callback is None:
                logger.debug({"event": "recognition_result_dropped", "type": kind})
                return False
            callback(str(payload.get("text") or ""))
            return True
        logger.debug({"event": "unknown_client_message", "type": kind})
        return False

    async def _command(self, command: str, command_id: Optional[int] = None, **payload: Any) -> None:
        if self._disposed:
            raise EngineError("Speech engine was disposed", operation=command)
        if command_id is None:
            command_id = self._channel.next_id()
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending[command_id] = future
        try:
            await self._channel.send({"type": "command", "id": command_id, "command": command, **payload})
            await future
        finally:
            self._pending.pop(command_id, None)

    def _acknowledge(self, payload: Dict[str, Any]) -> bool:
        command_id = _command_id(payload)
        if command_id is None:
            logger.debug({"event": "ack_without_id"})
            return False
        future = self._pending.get(command_id)
        if future is None or future.done():
            logger.debug({"event": "late_ack_ignored", "id": command_id})
            return False
        if payload.get("ok", True):
            future.set_result(None)
        else:
            future.set_exception(EngineError(str(payload.get("error") or "Client rejected the command")))
        return True

    def _playback_ended(self, payload: Dict[str, Any]) -> bool:
        playback = self._playback
        if playback is None or _command_id(payload) != playback[0]:
            logger.debug({"event": "late_speech_end_ignored", "id": payload.get("id")})
            return False
        self._playback = None
        playback[1]()
        return True
