"""Server-side speech engine backed by Google Cloud Speech-to-Text and Text-to-Speech."""
from __future__ import annotations

import asyncio
import contextlib
from typing import Any, AsyncGenerator, AsyncIterator, Callable, Optional, Protocol

from google.api_core.exceptions import GoogleAPIError
from google.cloud import texttospeech_v1
from google.cloud.speech_v1 import SpeechAsyncClient
from google.cloud.speech_v1.types import (
    RecognitionConfig,
    StreamingRecognitionConfig,
    StreamingRecognizeRequest,
)

from voicecoach.core.exceptions import EngineError
from voicecoach.core.logging import get_logger
from voicecoach.voice.models import PlaybackCallback, TranscriptCallback
from voicecoach.voice.settings import VoiceSettings

logger = get_logger(__name__)

_MIME_TYPES = {
    "MP3": "audio/mpeg",
    "OGG_OPUS": "audio/ogg",
    "LINEAR16": "audio/wav",
    "MULAW": "audio/basic",
    "ALAW": "audio/basic",
}


class AudioSource(Protocol):
    def frames(self) -> AsyncIterator[bytes | None]:
        """PCM 16-bit little endian chunks; ``None`` ends the stream."""
        ...


class AudioSink(Protocol):
    async def play(self, audio: bytes, mime_type: str) -> None:
        """Return once the clip finished playing; cancelled to interrupt it."""
        ...

    async def stop(self) -> None:
        ...


AudioDevicesFactory = Callable[[], tuple[AudioSource, AudioSink]]


class GoogleSpeechEngine:
    """Continuous recognition and synthesis on local audio devices.

    Recognition runs as a background task feeding the callbacks. ``speak``
    returns once the audio is synthesized and handed to a playback task;
    the end of that task, natural or through ``stop_speaking``, is reported
    with the ``on_finished`` callback.
    """

    def __init__(
        self,
        settings: VoiceSettings,
        audio_source: AudioSource,
        audio_sink: AudioSink,
        *,
        speech_client_factory: Callable[[], Any] = SpeechAsyncClient,
        tts_client_factory: Callable[[], Any] = texttospeech_v1.TextToSpeechAsyncClient,
    ) -> None:
        self._settings = settings
        self._source = audio_source
        self._sink = audio_sink
        self._speech_client_factory = speech_client_factory
        self._tts_client_factory = tts_client_factory
        self._language = settings.normalize_language(settings.default_language)
        self._recognition: Optional[asyncio.Task] = None
        self._playback: Optional[asyncio.Task] = None
        self._utterance = 0
        self._disposed = False

    @property
    def language(self) -> str:
        return self._language

    @property
    def recognizing(self) -> bool:
        return self._recognition is not None and not self._recognition.done()

    async def start_listening(self, on_interim: TranscriptCallback, on_final: TranscriptCallback) -> None:
        self._ensure_active("start_listening")
        await self._cancel_recognition()
        task = asyncio.get_running_loop().create_task(
            self._recognize(on_interim, on_final, self._language),
            name="google-stt",
        )
        task.add_done_callback(self._recognition_done)
        self._recognition = task
        logger.info({"event": "google_recognition_started", "language": self._language})

    async def stop_listening(self) -> None:
        await self._cancel_recognition()

    async def speak(self, text: str, on_finished: PlaybackCallback) -> None:
        self._ensure_active("speak")
        await self._cancel_playback()
        self._utterance += 1
        utterance = self._utterance
        audio, mime_type = await self._synthesize(text)
        if utterance != self._utterance or not audio:
            # Stopped while synthesizing, or nothing to play
            on_finished()
            return
        task = asyncio.get_running_loop().create_task(self._sink.play(audio, mime_type), name="google-tts")
        task.add_done_callback(lambda done: self._playback_done(done, on_finished))
        self._playback = task
        logger.info({"event": "google_playback_started", "mime_type": mime_type, "bytes": len(audio)})

    async def stop_speaking(self) -> None:
        self._utterance += 1
        await self._cancel_playback()
        await self._sink.stop()

    async def set_language(self, language: str) -> None:
        self._ensure_active("set_language")
        # Applies to the next recognition session and utterance
        self._language = language

    def dispose(self) -> None:
        if self._disposed:
            return
        self._disposed = True
        self._utterance += 1
        for task in (self._recognition, self._playback):
            if task is not None and not task.done():
                task.cancel()
        self._recognition = None
        self._playback = None
        logger.info({"event": "google_engine_disposed"})

    async def _recognize(self, on_interim: TranscriptCallback, on_final: TranscriptCallback, language: str) -> None:
        recognition_config = RecognitionConfig(
            encoding=RecognitionConfig.AudioEncoding.LINEAR16,
            language_code=language,
            sample_rate_hertz=self._settings.google_sample_rate,
            enable_automatic_punctuation=True,
            enable_word_time_offsets=False,
        )
        streaming_config = StreamingRecognitionConfig(
            config=recognition_config,
            interim_results=True,
            single_utterance=False,
        )

        async def request_iterator() -> AsyncGenerator[StreamingRecognizeRequest, None]:
            yield StreamingRecognizeRequest(streaming_config=streaming_config)
            async for chunk in self._source.frames():
                if chunk is None:
                    break
                if not chunk:
                    continue
                yield StreamingRecognizeRequest(audio_content=chunk)

        try:
            async with self._speech_client_factory() as client:
                responses = await client.streaming_recognize(requests=request_iterator())
                async for response in responses:
                    for result in response.results:
                        if not result.alternatives:
                            continue
                        text = result.alternatives[0].transcript or ""
                        if result.is_final:
                            on_final(text)
                        else:
                            on_interim(text)
        except GoogleAPIError:
            logger.exception({"event": "google_recognition_error", "language": language})
            raise

    async def _synthesize(self, text: str) -> tuple[bytes, str]:
        encoding_name = self._settings.google_tts_audio_encoding.upper()
        voice_params = texttospeech_v1.VoiceSelectionParams(
            language_code=self._language,
            name=self._settings.voice_for(self._language) or "",
        )
        audio_config = texttospeech_v1.AudioConfig(audio_encoding=texttospeech_v1.AudioEncoding[encoding_name])
        try:
            async with self._tts_client_factory() as client:
                response = await client.synthesize_speech(
                    input=texttospeech_v1.SynthesisInput(text=text),
                    voice=voice_params,
                    audio_config=audio_config,
                )
        except GoogleAPIError:
            logger.exception({"event": "google_tts_error", "language": self._language})
            raise
        audio_content = getattr(response, "audio_content", None) or b""
        return audio_content, _MIME_TYPES.get(encoding_name, "audio/mpeg")

    async def _cancel_recognition(self) -> None:
        task, self._recognition = self._recognition, None
        if task is None or task.done():
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def _cancel_playback(self) -> None:
        task, self._playback = self._playback, None
        if task is None or task.done():
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    def _recognition_done(self, task: asyncio.Task) -> None:
        if self._recognition is task:
            self._recognition = None
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error({"event": "google_recognition_stopped", "error": str(exc)})

    def _playback_done(self, task: asyncio.Task, on_finished: PlaybackCallback) -> None:
        if self._playback is task:
            self._playback = None
        if not task.cancelled() and task.exception() is not None:
            logger.error({"event": "google_playback_failed", "error": str(task.exception())})
        on_finished()

    def _ensure_active(self, operation: str) -> None:
        if self._disposed:
            raise EngineError("Speech engine was disposed", operation=operation)
