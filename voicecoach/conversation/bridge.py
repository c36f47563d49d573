"""Relay a streamed chat reply into the transcript and then into speech."""
from __future__ import annotations

from typing import AsyncIterator, Callable, Optional, Protocol

from voicecoach.conversation.chat import ChatStreamEvent, CompletionEvent, ErrorEvent, TokenEvent
from voicecoach.core.exceptions import SpeechError, StreamError
from voicecoach.core.logging import get_logger
from voicecoach.voice import metrics as voice_metrics
from voicecoach.voice.models import Role, Utterance

logger = get_logger(__name__)


class Speaker(Protocol):
    async def speak(self, text: str) -> bool:
        ...


class StreamingResponseBridge:
    """Turns token events into provisional assistant utterances.

    Each token replaces the provisional utterance with the text accumulated
    so far. The completion finalizes it and hands the text to the speaker
    once. A failed stream ends with a fixed fallback notice that is never
    spoken, and its StreamError goes to ``on_error`` (the coordinator's
    observable error field in a conversation). Starting another relay, or
    calling ``abandon``, makes the running one stale: its remaining events
    are discarded.
    """

    def __init__(
        self,
        speaker: Speaker,
        *,
        fallback_text: str,
        empty_text: str,
        on_update: Optional[Callable[[Utterance], None]] = None,
        on_error: Optional[Callable[[SpeechError], None]] = None,
        metrics=None,
    ) -> None:
        self._speaker = speaker
        self.fallback_text = fallback_text
        self.empty_text = empty_text
        self._on_update = on_update
        self._on_error = on_error
        self.metrics = metrics or voice_metrics
        self._generation = 0
        self._speaking_generation: Optional[int] = None
        self.last_error: Optional[StreamError] = None

    @property
    def speaking(self) -> bool:
        """True while the finalized reply is being handed to the speaker."""
        return self._speaking_generation is not None

    def abandon(self) -> None:
        self._generation += 1

    async def relay(self, events: AsyncIterator[ChatStreamEvent]) -> Optional[Utterance]:
        """Consume ``events``; return the final utterance, or ``None`` if abandoned."""
        self._generation += 1
        generation = self._generation
        tokens: list[str] = []
        final_text: Optional[str] = None

        try:
            async for event in events:
                if generation != self._generation:
                    return self._abandoned(len(tokens))
                if isinstance(event, TokenEvent):
                    tokens.append(event.text)
                    self._publish(Utterance(role=Role.ASSISTANT, text="".join(tokens), is_provisional=True))
                elif isinstance(event, CompletionEvent):
                    final_text = event.text or "".join(tokens)
                    break
                elif isinstance(event, ErrorEvent):
                    raise StreamError(event.message, operation="response_stream")
        except Exception as exc:
            if generation != self._generation:
                return self._abandoned(len(tokens))
            return self._fail(exc)
        finally:
            aclose = getattr(events, "aclose", None)
            if aclose is not None:
                await aclose()

        if generation != self._generation:
            return self._abandoned(len(tokens))
        if final_text is None:
            # Iterator ended without a completion event
            final_text = "".join(tokens)

        text = final_text if final_text.strip() else self.empty_text
        final = Utterance(role=Role.ASSISTANT, text=text, is_provisional=False)
        self._publish(final)
        self._metric("completed")
        logger.info({"event": "response_stream_completed", "tokens": len(tokens), "text_length": len(text)})

        self._speaking_generation = generation
        try:
            await self._speaker.speak(text)
        finally:
            if self._speaking_generation == generation:
                self._speaking_generation = None
        return final

    def _fail(self, exc: Exception) -> Utterance:
        error = exc if isinstance(exc, StreamError) else StreamError(str(exc), operation="response_stream")
        self.last_error = error
        logger.error({"event": "response_stream_failed", "error": error.message})
        if self._on_error is not None:
            try:
                self._on_error(error)
            except Exception:
                logger.exception({"event": "stream_error_listener_failed"})
        final = Utterance(role=Role.ASSISTANT, text=self.fallback_text, is_provisional=False)
        self._publish(final)
        self._metric("failed")
        return final

    def _abandoned(self, token_count: int) -> None:
        logger.info({"event": "response_stream_abandoned", "tokens": token_count})
        self._metric("abandoned")
        return None

    def _publish(self, utterance: Utterance) -> None:
        if self._on_update is None:
            return
        try:
            self._on_update(utterance)
        except Exception:
            logger.exception({"event": "utterance_listener_failed"})

    def _metric(self, result: str) -> None:
        try:
            self.metrics.response_stream_finished(result)
        except Exception:
            pass  # pragma: no cover - metrics must not break flow
