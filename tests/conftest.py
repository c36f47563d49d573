"""Pytest configuration and shared fixtures."""
import asyncio
from typing import Dict, List, Optional

import pytest
import pytest_asyncio

from voicecoach.voice.coordinator import SpeechCoordinator
from voicecoach.voice.settings import VoiceSettings


class StubSpeechEngine:
    """In-memory engine recording every call.

    ``hang`` names operations that never settle, ``fail`` maps operations to
    the exception they raise and ``gates`` holds events an operation waits
    on before returning. Playback ends as soon as ``speak`` returns unless
    ``hold_speech`` is set, in which case it keeps playing until
    ``stop_speaking`` or ``finish_playback``.
    """

    def __init__(self) -> None:
        self.calls: List[str] = []
        self.spoken: List[str] = []
        self.languages: List[str] = []
        self.hang: set = set()
        self.fail: Dict[str, Exception] = {}
        self.gates: Dict[str, asyncio.Event] = {}
        self.hold_speech = False
        self.disposed = False
        self.on_interim = None
        self.on_final = None
        self._hangs: List[asyncio.Future] = []
        self._on_finished = None
        self.playbacks: List = []

    def count(self, name: str) -> int:
        return self.calls.count(name)

    async def _run(self, name: str) -> None:
        self.calls.append(name)
        if name in self.fail:
            raise self.fail[name]
        if name in self.hang:
            future = asyncio.get_running_loop().create_future()
            self._hangs.append(future)
            await future
        gate = self.gates.get(name)
        if gate is not None:
            await gate.wait()

    async def start_listening(self, on_interim, on_final) -> None:
        self.on_interim, self.on_final = on_interim, on_final
        await self._run("start_listening")

    async def stop_listening(self) -> None:
        await self._run("stop_listening")

    async def speak(self, text: str, on_finished) -> None:
        self.spoken.append(text)
        await self._run("speak")
        self.playbacks.append(on_finished)
        if self.hold_speech:
            self._on_finished = on_finished
        else:
            on_finished()

    async def stop_speaking(self) -> None:
        await self._run("stop_speaking")
        self.finish_playback()

    def finish_playback(self) -> None:
        on_finished, self._on_finished = self._on_finished, None
        if on_finished is not None:
            on_finished()

    async def set_language(self, language: str) -> None:
        self.languages.append(language)
        await self._run("set_language")

    def dispose(self) -> None:
        self.disposed = True
        for future in self._hangs:
            if not future.done():
                future.cancel()

    def emit_interim(self, text: str) -> None:
        self.on_interim(text)

    def emit_final(self, text: str) -> None:
        self.on_final(text)


class StubEngineFactory:
    def __init__(self) -> None:
        self.created: List[StubSpeechEngine] = []
        self.error: Optional[Exception] = None

    def __call__(self) -> StubSpeechEngine:
        if self.error is not None:
            raise self.error
        engine = StubSpeechEngine()
        self.created.append(engine)
        return engine

    @property
    def current(self) -> StubSpeechEngine:
        return self.created[-1]


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def fast_settings():
    """Voice settings with short timings so timeout paths run quickly."""
    return VoiceSettings(
        max_operation_seconds=0.2,
        heartbeat_seconds=0.05,
        silence_threshold_seconds=0.05,
        default_language="en-US",
        voice_names={"en-US": "en-US-Test", "es-ES": "es-ES-Test"},
    )


@pytest.fixture
def engine_factory():
    return StubEngineFactory()


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest_asyncio.fixture
async def coordinator(engine_factory, fast_settings):
    coordinator = SpeechCoordinator(engine_factory, fast_settings)
    await coordinator.start()
    yield coordinator
    await coordinator.dispose()
