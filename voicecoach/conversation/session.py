"""One tutoring conversation: recognition -> chat reply -> speech."""
from __future__ import annotations

import asyncio
import contextlib
from typing import AsyncIterator, Callable, List, Optional
from uuid import uuid4

from voicecoach.conversation.bridge import StreamingResponseBridge
from voicecoach.conversation.chat import ChatProvider, ChatStreamEvent, ConversationConfig
from voicecoach.core.logging import get_logger
from voicecoach.voice.coordinator import SpeechCoordinator
from voicecoach.voice.models import Role, Utterance
from voicecoach.voice.stream import RecognitionStream

logger = get_logger(__name__)

MessageListener = Callable[[Utterance], None]


class ConversationSession:
    """Drives turns between the learner and the tutor.

    Final recognition results (or typed input through ``submit``) become user
    utterances and start a reply turn. A new turn abandons a reply that is
    still streaming; a reply that is already being spoken is left to the
    coordinator, which stops it before speaking the next one.
    """

    def __init__(
        self,
        coordinator: SpeechCoordinator,
        chat: ChatProvider,
        *,
        config: Optional[ConversationConfig] = None,
        on_message: Optional[MessageListener] = None,
        session_id: Optional[str] = None,
    ) -> None:
        self.session_id = session_id or uuid4().hex
        self.config = config or ConversationConfig()
        self._coordinator = coordinator
        self._chat = chat
        self._on_message = on_message
        self._messages: List[Utterance] = []
        self._bridge = StreamingResponseBridge(
            coordinator,
            fallback_text=coordinator.settings.stream_fallback_text,
            empty_text=coordinator.settings.empty_response_text,
            on_update=self._publish,
            on_error=coordinator.report_error,
        )
        self._stream: Optional[RecognitionStream] = None
        self._reader: Optional[asyncio.Task] = None
        self._turn: Optional[asyncio.Task] = None
        self._processing = False

    @property
    def messages(self) -> List[Utterance]:
        return list(self._messages)

    @property
    def is_processing(self) -> bool:
        return self._processing

    @property
    def bridge(self) -> StreamingResponseBridge:
        return self._bridge

    async def start(self, *, greet: bool = True) -> bool:
        if greet:
            await self.greet()
        return await self.start_listening()

    async def greet(self) -> Utterance:
        utterance = Utterance(role=Role.ASSISTANT, text=self._chat.greeting(self.config))
        self._publish(utterance)
        await self._coordinator.speak(utterance.text)
        return utterance

    async def start_listening(self) -> bool:
        await self._stop_reader()
        stream = await self._coordinator.listen()
        if stream.closed:
            return False
        self._stream = stream
        self._reader = asyncio.create_task(self._read(stream), name=f"recognition-{self.session_id}")
        return True

    async def stop_listening(self) -> bool:
        stopped = await self._coordinator.stop_listening()
        await self._stop_reader()
        return stopped

    async def submit(self, text: str) -> Optional[Utterance]:
        """Typed input path; returns the tutor's final reply, or ``None`` if superseded."""
        cleaned = text.strip()
        if not cleaned:
            return None
        task = self._begin_turn(cleaned)
        return await self._wait_turn(task)

    async def request_feedback(self) -> Optional[Utterance]:
        task = self._start_relay(self._chat.stream_feedback())
        return await self._wait_turn(task)

    def reset(self) -> None:
        self._interrupt_reply()
        self._chat.clear_history()
        self._messages = []

    async def close(self) -> None:
        task = self._interrupt_reply(force=True)
        if task is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        await self.stop_listening()
        logger.info({"event": "conversation_closed", "session_id": self.session_id, "messages": len(self._messages)})

    async def _read(self, stream: RecognitionStream) -> None:
        async for segment in stream:
            if segment.is_final:
                cleaned = segment.text.strip()
                if cleaned:
                    self._begin_turn(cleaned)
            else:
                self._publish(Utterance(role=Role.USER, text=segment.text, is_provisional=True))

    def _begin_turn(self, text: str) -> asyncio.Task:
        self._publish(Utterance(role=Role.USER, text=text))
        logger.info({"event": "user_turn", "session_id": self.session_id, "text_length": len(text)})
        return self._start_relay(self._chat.stream_reply(text, self.config))

    def _start_relay(self, events: AsyncIterator[ChatStreamEvent]) -> asyncio.Task:
        self._interrupt_reply()
        task = asyncio.create_task(self._relay(events), name=f"reply-{self.session_id}")
        self._turn = task
        return task

    async def _relay(self, events: AsyncIterator[ChatStreamEvent]) -> Optional[Utterance]:
        self._processing = True
        try:
            return await self._bridge.relay(events)
        finally:
            if asyncio.current_task() is self._turn:
                self._processing = False
                self._turn = None

    def _interrupt_reply(self, *, force: bool = False) -> Optional[asyncio.Task]:
        self._bridge.abandon()
        task, self._turn = self._turn, None
        self._processing = False
        if task is None or task.done():
            return None
        # A reply already handed to the speaker finishes its handoff; the next speak stops it
        if force or not self._bridge.speaking:
            task.cancel()
        return task

    async def _wait_turn(self, task: asyncio.Task) -> Optional[Utterance]:
        await asyncio.wait({task})
        if task.cancelled():
            return None
        return task.result()

    async def _stop_reader(self) -> None:
        reader, self._reader = self._reader, None
        self._stream = None
        if reader is None or reader.done():
            return
        reader.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await reader

    def _publish(self, utterance: Utterance) -> None:
        if not utterance.is_provisional:
            self._messages.append(utterance)
        if self._on_message is None:
            return
        try:
            self._on_message(utterance)
        except Exception:
            logger.exception({"event": "message_listener_failed", "session_id": self.session_id})
