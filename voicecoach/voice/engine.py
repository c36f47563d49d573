"""Speech engine contract used by the coordinator."""
from __future__ import annotations

from typing import Callable, Protocol

from voicecoach.voice.models import PlaybackCallback, TranscriptCallback


class SpeechEngineAdapter(Protocol):
    """Recognition and synthesis on top of one shared engine resource.

    Every coroutine may raise or never settle; callers are expected to race
    them against a deadline. Recognition and playback callbacks are invoked
    on the event loop thread, interim results in the order the engine
    produced them.
    """

    async def start_listening(self, on_interim: TranscriptCallback, on_final: TranscriptCallback) -> None:
        ...

    async def stop_listening(self) -> None:
        ...

    async def speak(self, text: str, on_finished: PlaybackCallback) -> None:
        """Resolve once ``text`` is synthesized and playback has started.

        Playback itself is not bounded by any deadline: ``on_finished`` is
        called once, when the audio ends or is interrupted.
        """
        ...

    async def stop_speaking(self) -> None:
        ...

    async def set_language(self, language: str) -> None:
        ...

    def dispose(self) -> None:
        """Release the engine; must not block and must not raise."""
        ...


EngineFactory = Callable[[], SpeechEngineAdapter]
