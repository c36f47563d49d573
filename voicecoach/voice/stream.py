"""Async-iterator view over one listening session's recognition events."""
from __future__ import annotations

import asyncio
from typing import AsyncIterator, Optional

from voicecoach.voice.models import CallbackPair, TranscriptSegment

_CLOSED = object()


class RecognitionStream:
    """Queue-backed stream of ``TranscriptSegment`` objects.

    The coordinator feeds it through ``callbacks()`` and closes it when the
    session's callback pair is retired; iteration then ends after the
    already-queued segments.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def callbacks(self) -> CallbackPair:
        return CallbackPair(on_interim=self.push_interim, on_final=self.push_final, on_close=self.close)

    def push_interim(self, text: str) -> None:
        self._push(TranscriptSegment(text=text, is_final=False))

    def push_final(self, text: str) -> None:
        self._push(TranscriptSegment(text=text, is_final=True))

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(_CLOSED)

    async def next_segment(self) -> Optional[TranscriptSegment]:
        """Return the next segment, or ``None`` once the stream is closed."""
        item = await self._queue.get()
        if item is _CLOSED:
            # Keep the sentinel for any other waiter
            self._queue.put_nowait(_CLOSED)
            return None
        return item

    def __aiter__(self) -> AsyncIterator[TranscriptSegment]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[TranscriptSegment]:
        while True:
            segment = await self.next_segment()
            if segment is None:
                return
            yield segment

    def _push(self, segment: TranscriptSegment) -> None:
        if not self._closed:
            self._queue.put_nowait(segment)
