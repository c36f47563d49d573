"""Streaming chat-completion provider for the language tutor."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Literal, Optional, Protocol, Union

from openai import AsyncOpenAI, OpenAIError

from voicecoach.core.config import get_settings
from voicecoach.core.logging import get_logger

LOGGER = get_logger(__name__)

Level = Literal["basic", "premium"]


@dataclass
class ConversationConfig:
    level: Level = "basic"
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None


@dataclass(frozen=True)
class TokenEvent:
    text: str


@dataclass(frozen=True)
class CompletionEvent:
    text: str


@dataclass(frozen=True)
class ErrorEvent:
    message: str


ChatStreamEvent = Union[TokenEvent, CompletionEvent, ErrorEvent]


class ChatProvider(Protocol):
    def greeting(self, config: ConversationConfig) -> str:
        ...

    def stream_reply(self, user_text: str, config: ConversationConfig) -> AsyncIterator[ChatStreamEvent]:
        ...

    def stream_feedback(self) -> AsyncIterator[ChatStreamEvent]:
        ...

    def clear_history(self) -> None:
        ...


_LEVEL_DESCRIPTIONS: Dict[str, str] = {
    "basic": "simple conversations using everyday vocabulary and basic grammar, focusing on common situations",
    "premium": "advanced conversations with rich vocabulary, idiomatic expressions, and complex grammar structures",
}

FEEDBACK_PROMPT = (
    "Analyze the conversation history and provide a detailed feedback report including: "
    "1. Grammar usage 2. Vocabulary level 3. Conversation flow 4. Specific improvements needed. "
    "Be constructive and encouraging."
)
FEEDBACK_UNAVAILABLE = "Unable to generate feedback."


def build_system_prompt(config: ConversationConfig) -> str:
    level = config.level if config.level in _LEVEL_DESCRIPTIONS else "basic"
    premium = level == "premium"
    lines = [
        "You are MyVoiceCoach.ai, an expert language tutor specializing in conversational English.",
        "Engage in natural, interactive conversations while helping the user improve their speaking skills.",
        "",
        f"Package: {level} ({_LEVEL_DESCRIPTIONS[level]})",
        "",
        "Key responsibilities:",
        "1. Keep the conversation flowing: ask follow-up questions and show interest in the answers.",
        "2. Guide according to the package:",
        "   - Basic: essential vocabulary, simple clear sentences, gentle correction of major errors only;"
        " topics such as daily life, hobbies, family and work.",
        "   - Premium: advanced vocabulary, idioms and cultural context, detailed corrections;"
        " topics such as current events and professional scenarios.",
        "3. Adapt pace and complexity to the user's proficiency and scaffold when they struggle.",
        "4. Encourage: acknowledge good use of new vocabulary or grammar.",
        "",
        "Remember to:",
        "- Keep responses concise (2-3 sentences)",
        "- Always ask a follow-up question",
        "- Use natural speech patterns; your reply will be read aloud",
    ]
    if premium:
        lines.append("- Offer alternative phrasings, vocabulary enrichment and cultural insights")
    else:
        lines.append("- Keep language simple and clear")
    return "\n".join(lines)


class OpenAIChatProvider:
    """OpenAI streaming chat wrapper that keeps the tutoring conversation history."""

    def __init__(
        self,
        *,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        timeout: Optional[float] = None,
        client: Optional[AsyncOpenAI] = None,
    ) -> None:
        settings = get_settings()
        self.api_key = api_key or settings.OPENAI_API_KEY
        self.model = model or settings.DEFAULT_MODEL
        self.temperature = temperature if temperature is not None else settings.TEMPERATURE
        self.max_tokens = max_tokens or settings.MAX_TOKENS
        self.timeout = timeout or settings.CHAT_TIMEOUT_SECONDS
        self._client = client
        self._history: List[Dict[str, str]] = []

        if not self.api_key and client is None:
            LOGGER.warning("OpenAIChatProvider initialized without OPENAI_API_KEY; replies will fail")

    @property
    def history(self) -> List[Dict[str, str]]:
        return [dict(item) for item in self._history]

    def clear_history(self) -> None:
        self._history = []

    def greeting(self, config: ConversationConfig) -> str:
        text = (
            f"Hi! I'm your English conversation partner. I see you're at a {config.level} level. "
            "Let's practice speaking English together!"
        )
        if not self._history:
            self._history.append({"role": "system", "content": build_system_prompt(config)})
            self._history.append({"role": "assistant", "content": text})
        return text

    async def stream_reply(self, user_text: str, config: ConversationConfig) -> AsyncIterator[ChatStreamEvent]:
        if not self._history:
            self._history.append({"role": "system", "content": build_system_prompt(config)})
        self._history.append({"role": "user", "content": user_text})

        parts: List[str] = []
        async for event in self._stream(
            self._history,
            temperature=config.temperature if config.temperature is not None else self.temperature,
            max_tokens=config.max_tokens or self.max_tokens,
            purpose="reply",
        ):
            if isinstance(event, ErrorEvent):
                yield event
                return
            parts.append(event.text)
            yield event

        text = "".join(parts)
        if text:
            self._history.append({"role": "assistant", "content": text})
        yield CompletionEvent(text)

    async def stream_feedback(self) -> AsyncIterator[ChatStreamEvent]:
        messages = [{"role": "system", "content": FEEDBACK_PROMPT}, *self._history]
        parts: List[str] = []
        async for event in self._stream(messages, temperature=0.7, max_tokens=self.max_tokens, purpose="feedback"):
            if isinstance(event, ErrorEvent):
                yield event
                return
            parts.append(event.text)
            yield event
        yield CompletionEvent("".join(parts) or FEEDBACK_UNAVAILABLE)

    def _get_client(self) -> AsyncOpenAI:
        if self._client is None:
            self._client = AsyncOpenAI(api_key=self.api_key, timeout=self.timeout)
        return self._client

    async def _stream(
        self,
        messages: List[Dict[str, str]],
        *,
        temperature: float,
        max_tokens: int,
        purpose: str,
    ) -> AsyncIterator[TokenEvent | ErrorEvent]:
        if not self.api_key and self._client is None:
            LOGGER.error({"event": "chat_missing_key", "purpose": purpose})
            yield ErrorEvent("OpenAI API key not configured")
            return

        request_kwargs: Dict[str, Any] = {
            "model": self.model,
            "messages": list(messages),
            "temperature": temperature,
            "max_tokens": max(1, max_tokens),
            "stream": True,
        }
        try:
            stream = await self._get_client().chat.completions.create(**request_kwargs)
        except OpenAIError as exc:
            LOGGER.error({"event": "chat_request_failed", "purpose": purpose, "error": str(exc), "model": self.model})
            yield ErrorEvent(str(exc))
            return

        try:
            async for chunk in stream:
                if not chunk.choices:
                    continue
                content = chunk.choices[0].delta.content
                if content:
                    yield TokenEvent(content)
        except OpenAIError as exc:
            LOGGER.error({"event": "chat_stream_failed", "purpose": purpose, "error": str(exc), "model": self.model})
            yield ErrorEvent(str(exc))
        finally:
            await stream.close()
