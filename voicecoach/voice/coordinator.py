"""Speech coordinator: the single owner of the speech engine and its state.

Every engine call is tracked by the watchdog, preceded by an optimistic
state update, raced against the maximum operation time and, on failure,
converted into an error message keyed by the operation name. Nothing raised
by the engine or by consumer callbacks escapes the public methods; they
return ``True`` on success and ``False`` otherwise.

Forced recoveries bump an epoch counter. An engine call that settles after a
recovery compares its captured epoch and leaves the state alone.

Speech is tracked in two steps: ``speak`` covers synthesis up to the start of
playback and is raced like any other call, while the end of playback arrives
through a callback and clears ``is_speaking`` whenever it happens.
"""
from __future__ import annotations

import asyncio
import time
from typing import Awaitable, Callable, Optional

from voicecoach.core.exceptions import (
    EngineError,
    InitializationError,
    MisuseError,
    OperationTimeoutError,
    SpeechError,
)
from voicecoach.core.logging import get_logger
from voicecoach.voice import metrics as voice_metrics
from voicecoach.voice.engine import EngineFactory, SpeechEngineAdapter
from voicecoach.voice.models import CallbackPair, OperationRecord, PlaybackCallback, SpeechState, TranscriptCallback
from voicecoach.voice.settings import VoiceSettings
from voicecoach.voice.silence import SilenceDetector
from voicecoach.voice.stream import RecognitionStream
from voicecoach.voice.timeouts import run_with_timeout
from voicecoach.voice.watchdog import OperationWatchdog

logger = get_logger(__name__)

StateListener = Callable[[SpeechState, Optional[str]], None]

NOT_INITIALIZED_MESSAGE = "Speech service not initialized"
TIMEOUT_MESSAGE = "Speech operation timed out. Speech service was reset."

_FAILURE_MESSAGES = {
    "start_listening": "Failed to start listening",
    "stop_listening": "Failed to stop listening",
    "pause_listening": "Failed to pause listening",
    "resume_listening": "Failed to resume listening",
    "speak": "Failed to synthesize speech",
    "stop_speaking": "Failed to stop speaking",
    "set_language": "Failed to change language",
}


class SpeechCoordinator:
    def __init__(
        self,
        engine_factory: EngineFactory,
        settings: VoiceSettings | None = None,
        *,
        metrics=None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.settings = settings or VoiceSettings()
        self.metrics = metrics or voice_metrics
        self._engine_factory = engine_factory
        self._engine: Optional[SpeechEngineAdapter] = None
        self._default_language = self.settings.normalize_language(self.settings.default_language)
        self._engine_language = self._default_language
        self._state = SpeechState(current_language=self._default_language)
        self._callbacks: Optional[CallbackPair] = None
        self._silence: Optional[SilenceDetector] = None
        self._session_id = 0
        self._epoch = 0
        self._speech_seq = 0
        self._inflight_seq: Optional[int] = None
        self._error: Optional[str] = None
        self._last_error: Optional[SpeechError] = None
        self._errors: dict[str, str] = {}
        self._listeners: list[StateListener] = []
        self._watchdog = OperationWatchdog(
            max_operation_seconds=self.settings.max_operation_seconds,
            heartbeat_seconds=self.settings.heartbeat_seconds,
            on_stuck=self._recover_stuck_operation,
            clock=clock,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def start(self) -> bool:
        """Create the engine (if needed) and start the watchdog heartbeat."""
        if self._engine is None:
            self._create_engine()
        self._watchdog.start()
        return self._engine is not None

    async def dispose(self) -> None:
        await self._watchdog.stop()
        self._epoch += 1
        self._speech_seq += 1
        self._inflight_seq = None
        self._end_session()
        self._retire_callbacks()
        self._dispose_engine()
        self._update(is_listening=False, is_speaking=False, is_paused=False)
        self._listeners.clear()
        logger.info({"event": "speech_coordinator_disposed"})

    async def __aenter__(self) -> "SpeechCoordinator":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.dispose()

    # ------------------------------------------------------------------
    # Observable state
    # ------------------------------------------------------------------
    @property
    def state(self) -> SpeechState:
        return self._state

    @property
    def is_listening(self) -> bool:
        return self._state.is_listening

    @property
    def is_speaking(self) -> bool:
        return self._state.is_speaking

    @property
    def is_paused(self) -> bool:
        return self._state.is_paused

    @property
    def is_muted(self) -> bool:
        return self._state.is_muted

    @property
    def current_language(self) -> str:
        return self._state.current_language

    @property
    def is_initialized(self) -> bool:
        return self._engine is not None

    @property
    def error(self) -> Optional[str]:
        return self._error

    @property
    def last_error(self) -> Optional[SpeechError]:
        return self._last_error

    @property
    def errors(self) -> dict[str, str]:
        return dict(self._errors)

    @property
    def watchdog(self) -> OperationWatchdog:
        return self._watchdog

    def clear_error(self) -> None:
        self._error = None
        self._last_error = None
        self._errors.clear()
        self._notify()

    def report_error(self, exc: SpeechError) -> None:
        """Publish a failure raised outside the engine, e.g. by the reply stream."""
        self._record_error(exc)

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        """Call ``listener(state, error)`` on every change; returns an unsubscribe handle."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    # ------------------------------------------------------------------
    # Recognition
    # ------------------------------------------------------------------
    async def start_listening(
        self,
        on_interim: TranscriptCallback,
        on_final: TranscriptCallback,
        on_close: Optional[Callable[[], None]] = None,
    ) -> bool:
        if not self._ready("start_listening"):
            return False
        if self._state.is_listening and not await self._stop_recognition():
            return False

        pair = CallbackPair(on_interim=on_interim, on_final=on_final, on_close=on_close)
        self._retire_callbacks()
        self._callbacks = pair
        started = await self._begin_session(pair, "start_listening")
        if not started and self._callbacks is pair:
            self._retire_callbacks()
        return started

    async def listen(self) -> RecognitionStream:
        """Start a listening session and return its events as an async iterator.

        The stream ends when the session is stopped or replaced; it is
        returned already closed when listening could not start.
        """
        stream = RecognitionStream()
        pair = stream.callbacks()
        started = await self.start_listening(pair.on_interim, pair.on_final, on_close=pair.on_close)
        if not started:
            stream.close()
        return stream

    async def stop_listening(self) -> bool:
        stopped = await self._stop_recognition()
        self._retire_callbacks()
        return stopped

    async def pause_listening(self) -> bool:
        if not self._state.is_listening:
            return self._misuse("pause_listening", "No active recognition to pause")
        if self._state.is_paused:
            return True
        if not self._ready("pause_listening"):
            return False

        epoch = self._epoch
        self._update(is_paused=True)
        try:
            current = await self._invoke("pause_listening", lambda engine: engine.stop_listening())
        except SpeechError as exc:
            return self._fail(exc, epoch, revert=lambda: self._update(is_paused=False))
        if current:
            self._end_session()
            self._clear_error("pause_listening")
            logger.info({"event": "listening_paused"})
        return current

    async def resume_listening(self) -> bool:
        pair = self._callbacks
        if pair is None:
            return self._misuse("resume_listening", "Cannot resume listening before it was started")
        if self._state.is_listening and not self._state.is_paused:
            return self._misuse("resume_listening", "Listening is already active")
        if not self._ready("resume_listening"):
            return False
        return await self._begin_session(pair, "resume_listening")

    # ------------------------------------------------------------------
    # Synthesis
    # ------------------------------------------------------------------
    async def speak(self, text: str) -> bool:
        """Hand ``text`` to the engine; returns once playback has started.

        ``is_speaking`` stays set until the engine reports the end of
        playback, which is not raced against the operation deadline.
        """
        if self._state.is_muted:
            logger.debug({"event": "speak_skipped_muted", "text_length": len(text or "")})
            return True
        if not text or not text.strip():
            return True
        if not self._ready("speak"):
            return False
        if self._state.is_speaking and not await self.stop_speaking():
            return False

        epoch = self._epoch
        self._speech_seq += 1
        seq = self._speech_seq
        self._inflight_seq = seq
        self._update(is_speaking=True)

        def revert() -> None:
            if self._inflight_seq == seq:
                self._inflight_seq = None
                self._update(is_speaking=False)

        on_finished = self._playback_finished(seq, epoch)
        try:
            current = await self._sync_engine_language()
            if current:
                current = await self._invoke("speak", lambda engine: engine.speak(text, on_finished))
        except SpeechError as exc:
            if epoch == self._epoch and seq != self._speech_seq:
                revert()
                logger.info({"event": "superseded_speech_failed", "error": exc.message})
                return False
            return self._fail(exc, epoch, revert=revert)
        except asyncio.CancelledError:
            if epoch == self._epoch:
                revert()
            raise

        if current and seq == self._speech_seq:
            self._clear_error("speak")
            logger.debug({"event": "playback_started", "text_length": len(text)})
        return current

    async def stop_speaking(self) -> bool:
        if not self._state.is_speaking:
            return True
        if not self._ready("stop_speaking"):
            return False

        epoch = self._epoch
        # A speak call still in flight must not report into the next utterance
        self._speech_seq += 1
        interrupted = self._inflight_seq
        self._update(is_speaking=False)
        try:
            current = await self._invoke("stop_speaking", lambda engine: engine.stop_speaking())
        except SpeechError as exc:
            return self._fail(exc, epoch, revert=lambda: self._update(is_speaking=self._inflight_seq is not None))
        if current:
            if self._inflight_seq == interrupted:
                self._inflight_seq = None
            self._clear_error("stop_speaking")
        return current

    async def set_muted(self, muted: bool) -> bool:
        if muted == self._state.is_muted:
            return True
        self._update(is_muted=muted)
        logger.info({"event": "mute_changed", "muted": muted})
        if muted and self._state.is_speaking:
            return await self.stop_speaking()
        return True

    async def set_language(self, language: str) -> bool:
        target = self.settings.normalize_language(language or "")
        if not target:
            return self._misuse("set_language", "Language must not be empty")
        if target == self._state.current_language:
            return True
        if not self._ready("set_language"):
            return False

        restart = self._state.is_listening and not self._state.is_paused
        if restart and not await self._stop_recognition():
            return False

        epoch = self._epoch
        try:
            current = await self._invoke("set_language", lambda engine: engine.set_language(target))
        except SpeechError as exc:
            return self._fail(exc, epoch)
        if not current:
            return False

        self._engine_language = target
        self._update(current_language=target)
        self._clear_error("set_language")
        logger.info({"event": "language_changed", "language": target, "restart": restart})
        if restart and self._callbacks is not None:
            return await self._begin_session(self._callbacks, "start_listening")
        return True

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    async def _invoke(self, operation: str, call: Callable[[SpeechEngineAdapter], Awaitable[None]]) -> bool:
        """Run one engine call under the watchdog and the deadline.

        Returns ``False`` when the call settled after a forced recovery.
        """
        engine = self._engine
        if engine is None:
            raise InitializationError(NOT_INITIALIZED_MESSAGE, operation=operation)

        epoch = self._epoch
        release = self._watchdog.track(operation)
        started_at = self._metric_started()
        try:
            await run_with_timeout(call(engine), self.settings.max_operation_seconds, operation=operation)
        except OperationTimeoutError:
            self._metric_failed(operation, started_at, "timeout")
            raise
        except Exception as exc:
            self._metric_failed(operation, started_at, "engine")
            raise EngineError(
                f"{_FAILURE_MESSAGES.get(operation, operation)}: {exc}",
                operation=operation,
                details={"exception": type(exc).__name__},
            ) from exc
        finally:
            release()

        self._metric_completed(operation, started_at)
        if epoch != self._epoch:
            logger.info({"event": "stale_operation_result_ignored", "operation": operation})
            return False
        return True

    async def _begin_session(self, pair: CallbackPair, operation: str) -> bool:
        epoch = self._epoch
        on_interim, on_final = self._open_session(pair)
        self._update(is_listening=True, is_paused=False)

        def revert() -> None:
            self._end_session()
            self._update(is_listening=False, is_paused=False)

        try:
            current = await self._sync_engine_language()
            if current:
                current = await self._invoke(operation, lambda engine: engine.start_listening(on_interim, on_final))
        except SpeechError as exc:
            return self._fail(exc, epoch, revert=revert)
        if current:
            self._clear_error(operation)
            logger.info({"event": "listening_started", "operation": operation, "language": self._state.current_language})
        return current

    async def _stop_recognition(self) -> bool:
        """Stop the recognizer; the flags end up not listening whatever happens."""
        recognizer_active = self._state.is_listening and not self._state.is_paused
        epoch = self._epoch
        self._end_session()
        self._update(is_listening=False, is_paused=False)
        if not recognizer_active:
            return True
        try:
            current = await self._invoke("stop_listening", lambda engine: engine.stop_listening())
        except SpeechError as exc:
            return self._fail(exc, epoch)
        if current:
            self._clear_error("stop_listening")
            logger.info({"event": "listening_stopped"})
        return current

    async def _sync_engine_language(self) -> bool:
        # A recreated engine starts on the default language
        language = self._state.current_language
        if self._engine_language == language:
            return True
        current = await self._invoke("set_language", lambda engine: engine.set_language(language))
        if current:
            self._engine_language = language
        return current

    def _playback_finished(self, seq: int, epoch: int) -> PlaybackCallback:
        def finished() -> None:
            # Only the utterance still marked as playing clears the flag
            if epoch != self._epoch or self._inflight_seq != seq:
                return
            self._inflight_seq = None
            self._update(is_speaking=False)
            logger.debug({"event": "playback_finished"})

        return finished

    def _open_session(self, pair: CallbackPair) -> tuple[TranscriptCallback, TranscriptCallback]:
        self._end_session()
        session_id = self._session_id
        detector = SilenceDetector(
            self.settings.silence_threshold_seconds,
            self._guard(pair.on_interim, "on_interim"),
            self._guard(pair.on_final, "on_final"),
            on_auto_final=self._metric_silence,
        )
        self._silence = detector

        def on_interim(text: str) -> None:
            if session_id == self._session_id:
                detector.interim(text)

        def on_final(text: str) -> None:
            if session_id == self._session_id:
                detector.final(text)

        return on_interim, on_final

    def _end_session(self) -> None:
        # Events from the engine carrying an older session id are dropped
        self._session_id += 1
        detector, self._silence = self._silence, None
        if detector is not None:
            detector.close()

    def _retire_callbacks(self) -> None:
        pair, self._callbacks = self._callbacks, None
        if pair is None:
            return
        try:
            pair.close()
        except Exception:
            logger.exception({"event": "consumer_callback_failed", "callback": "on_close"})

    def _guard(self, callback: TranscriptCallback, name: str) -> TranscriptCallback:
        def guarded(text: str) -> None:
            try:
                callback(text)
            except Exception:
                logger.exception({"event": "consumer_callback_failed", "callback": name})

        return guarded

    def _ready(self, operation: str) -> bool:
        if self._engine is not None:
            return True
        self._record_error(InitializationError(NOT_INITIALIZED_MESSAGE, operation=operation))
        return False

    def _misuse(self, operation: str, message: str) -> bool:
        self._record_error(MisuseError(message, operation=operation))
        return False

    def _fail(self, exc: SpeechError, epoch: int, revert: Optional[Callable[[], None]] = None) -> bool:
        if epoch != self._epoch:
            logger.info({"event": "stale_operation_error_ignored", "operation": exc.operation, "error": exc.message})
            return False
        if isinstance(exc, OperationTimeoutError):
            self._force_reset(exc.operation or "unknown", exc)
            return False
        if revert is not None:
            revert()
        self._record_error(exc)
        return False

    def _recover_stuck_operation(self, record: OperationRecord) -> None:
        self._force_reset(
            record.name,
            OperationTimeoutError(TIMEOUT_MESSAGE, operation=record.name, details={"started_at": record.started_at}),
        )

    def _force_reset(self, operation: str, error: SpeechError) -> None:
        """Return to the safe baseline and replace the engine. Never awaits."""
        logger.warning({"event": "speech_forced_reset", "operation": operation, "reason": error.message})
        self._epoch += 1
        self._speech_seq += 1
        self._inflight_seq = None
        self._end_session()
        self._dispose_engine()
        self._update(is_listening=False, is_speaking=False, is_paused=False)
        if not isinstance(error, OperationTimeoutError) or error.message != TIMEOUT_MESSAGE:
            error = OperationTimeoutError(TIMEOUT_MESSAGE, operation=operation, details={"cause": error.message})
        self._record_error(error)
        try:
            self.metrics.watchdog_recovered(operation)
        except Exception:
            pass  # pragma: no cover - metrics must not break flow
        self._create_engine()

    def _create_engine(self) -> bool:
        try:
            engine = self._engine_factory()
        except Exception as exc:
            self._engine = None
            logger.exception({"event": "speech_engine_init_failed"})
            self._record_error(
                InitializationError(f"{NOT_INITIALIZED_MESSAGE}: {exc}", operation="initialize")
            )
            return False
        self._engine = engine
        self._engine_language = self._default_language
        self._errors.pop("initialize", None)
        if isinstance(self._last_error, InitializationError):
            self._last_error = None
            self._error = None
        logger.info({"event": "speech_engine_created", "engine": type(engine).__name__})
        return True

    def _dispose_engine(self) -> None:
        engine, self._engine = self._engine, None
        if engine is None:
            return
        try:
            engine.dispose()
        except Exception:
            logger.exception({"event": "speech_engine_dispose_failed"})

    def _update(self, **changes) -> None:
        new_state = self._state.evolve(**changes)
        if new_state == self._state:
            return
        self._state = new_state
        self._notify()

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self._state, self._error)
            except Exception:
                logger.exception({"event": "state_listener_failed"})

    def _record_error(self, exc: SpeechError) -> None:
        self._last_error = exc
        self._error = exc.message
        if exc.operation:
            self._errors[exc.operation] = exc.message
        payload = {"event": "speech_operation_error", "kind": exc.kind, "operation": exc.operation, "error": exc.message}
        if isinstance(exc, (OperationTimeoutError, MisuseError)):
            logger.warning(payload)
        else:
            logger.error(payload)
        self._notify()

    def _clear_error(self, operation: str) -> None:
        self._errors.pop(operation, None)
        if self._last_error is not None:
            self._last_error = None
            self._error = None
            self._notify()

    def _metric_started(self) -> float:
        try:
            return self.metrics.operation_started()
        except Exception:
            return 0.0  # pragma: no cover - metrics must not break flow

    def _metric_completed(self, operation: str, started_at: float) -> None:
        try:
            self.metrics.operation_completed(operation, started_at)
        except Exception:
            pass  # pragma: no cover - metrics must not break flow

    def _metric_failed(self, operation: str, started_at: float, reason: str) -> None:
        try:
            self.metrics.operation_failed(operation, started_at, reason=reason)
        except Exception:
            pass  # pragma: no cover - metrics must not break flow

    def _metric_silence(self) -> None:
        try:
            self.metrics.silence_finalized()
        except Exception:
            pass  # pragma: no cover - metrics must not break flow
