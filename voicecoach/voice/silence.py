"""End-of-utterance detection from trailing interim results."""
from __future__ import annotations

import asyncio
from typing import Callable, Optional

from voicecoach.core.logging import get_logger
from voicecoach.voice.models import SilenceWindow, TranscriptCallback

logger = get_logger(__name__)


class SilenceDetector:
    """Synthesizes a final result when interim results stop arriving.

    One detector serves one listening session. Every interim result restarts
    the quiet-period timer; if it expires the last interim text is emitted as
    the final result. A genuine final result from the engine cancels the
    timer so the same utterance is never finalized twice. An engine final
    that arrives after an auto-finalization, with no interim result in
    between, belongs to the utterance already emitted and is dropped.
    """

    def __init__(
        self,
        threshold_seconds: float,
        on_interim: TranscriptCallback,
        on_final: TranscriptCallback,
        *,
        on_auto_final: Optional[Callable[[], None]] = None,
    ) -> None:
        self.threshold_seconds = threshold_seconds
        self._on_interim = on_interim
        self._on_final = on_final
        self._on_auto_final = on_auto_final
        self._window = SilenceWindow()
        self._closed = False
        self._auto_finalized = False

    @property
    def pending_text(self) -> str:
        return self._window.last_interim_text

    @property
    def armed(self) -> bool:
        return self._window.timer_handle is not None

    def interim(self, text: str) -> None:
        if self._closed:
            return
        self._auto_finalized = False
        self._window.last_interim_text = text
        self._on_interim(text)
        self._restart_timer()

    def final(self, text: str) -> None:
        if self._closed:
            return
        self._reset()
        if self._auto_finalized:
            self._auto_finalized = False
            logger.debug({"event": "engine_final_after_silence_dropped"})
            return
        self._on_final(text)

    def close(self) -> None:
        """Stop without emitting anything for a pending utterance."""
        self._closed = True
        self._reset()

    def _restart_timer(self) -> None:
        self._cancel_timer()
        loop = asyncio.get_running_loop()
        self._window.timer_handle = loop.call_later(self.threshold_seconds, self._expire)

    def _expire(self) -> None:
        self._window.timer_handle = None
        text = self._window.last_interim_text
        self._window.last_interim_text = ""
        if self._closed or not text.strip():
            return
        logger.debug({"event": "silence_finalized", "text_length": len(text)})
        self._auto_finalized = True
        if self._on_auto_final is not None:
            self._on_auto_final()
        self._on_final(text)

    def _cancel_timer(self) -> None:
        if self._window.timer_handle is not None:
            self._window.timer_handle.cancel()
            self._window.timer_handle = None

    def _reset(self) -> None:
        self._cancel_timer()
        self._window.last_interim_text = ""
