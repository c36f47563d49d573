from types import SimpleNamespace

import pytest
from openai import OpenAIError

from voicecoach.conversation.chat import (
    FEEDBACK_PROMPT,
    FEEDBACK_UNAVAILABLE,
    CompletionEvent,
    ConversationConfig,
    ErrorEvent,
    OpenAIChatProvider,
    TokenEvent,
    build_system_prompt,
)
from voicecoach.core.config import get_settings


def _chunk(content):
    return SimpleNamespace(choices=[SimpleNamespace(delta=SimpleNamespace(content=content))])


class StubStream:
    def __init__(self, chunks, error=None):
        self._chunks = chunks
        self._error = error
        self.closed = False

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for chunk in self._chunks:
            yield chunk
        if self._error is not None:
            raise self._error

    async def close(self):
        self.closed = True


class StubCompletions:
    def __init__(self, streams):
        self._streams = list(streams)
        self.requests = []

    async def create(self, **kwargs):
        self.requests.append(kwargs)
        result = self._streams.pop(0)
        if isinstance(result, Exception):
            raise result
        return result


def _provider(*streams):
    completions = StubCompletions(streams)
    client = SimpleNamespace(chat=SimpleNamespace(completions=completions))
    provider = OpenAIChatProvider(api_key="sk-test", model="gpt-test", client=client)
    return provider, completions


async def _collect(iterator):
    return [event async for event in iterator]


@pytest.fixture(autouse=True)
def _fresh_settings(monkeypatch):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.mark.asyncio
async def test_stream_reply_yields_tokens_and_records_history():
    stream = StubStream([_chunk("Great"), SimpleNamespace(choices=[]), _chunk(None), _chunk(" question!")])
    provider, completions = _provider(stream)

    events = await _collect(provider.stream_reply("How are you?", ConversationConfig(level="basic")))

    assert events == [TokenEvent("Great"), TokenEvent(" question!"), CompletionEvent("Great question!")]
    assert stream.closed is True
    request = completions.requests[0]
    assert request["model"] == "gpt-test"
    assert request["stream"] is True
    assert [m["role"] for m in provider.history] == ["system", "user", "assistant"]
    assert provider.history[2]["content"] == "Great question!"


@pytest.mark.asyncio
async def test_config_overrides_sampling_parameters():
    provider, completions = _provider(StubStream([_chunk("ok")]))

    await _collect(provider.stream_reply("hi", ConversationConfig(temperature=0.2, max_tokens=50)))

    assert completions.requests[0]["temperature"] == 0.2
    assert completions.requests[0]["max_tokens"] == 50


@pytest.mark.asyncio
async def test_request_failure_yields_error_event():
    provider, _ = _provider(OpenAIError("rate limited"))

    events = await _collect(provider.stream_reply("hi", ConversationConfig()))

    assert events == [ErrorEvent("rate limited")]
    assert [m["role"] for m in provider.history] == ["system", "user"]


@pytest.mark.asyncio
async def test_mid_stream_failure_yields_error_and_closes_stream():
    stream = StubStream([_chunk("Par")], error=OpenAIError("connection reset"))
    provider, _ = _provider(stream)

    events = await _collect(provider.stream_reply("hi", ConversationConfig()))

    assert events == [TokenEvent("Par"), ErrorEvent("connection reset")]
    assert stream.closed is True


@pytest.mark.asyncio
async def test_missing_api_key_yields_error_event():
    provider = OpenAIChatProvider(api_key=None)

    events = await _collect(provider.stream_reply("hi", ConversationConfig()))

    assert events == [ErrorEvent("OpenAI API key not configured")]


@pytest.mark.asyncio
async def test_feedback_uses_history_and_falls_back_when_empty():
    provider, completions = _provider(
        StubStream([_chunk("Nice")]),
        StubStream([_chunk("Use 'went'.")]),
        StubStream([]),
    )
    await _collect(provider.stream_reply("I goed home", ConversationConfig()))

    feedback = await _collect(provider.stream_feedback())
    assert feedback[-1] == CompletionEvent("Use 'went'.")
    request = completions.requests[1]
    assert request["messages"][0] == {"role": "system", "content": FEEDBACK_PROMPT}
    assert request["messages"][2] == {"role": "user", "content": "I goed home"}

    provider.clear_history()
    empty = await _collect(provider.stream_feedback())
    assert empty == [CompletionEvent(FEEDBACK_UNAVAILABLE)]


def test_greeting_seeds_history_once():
    provider, _ = _provider()

    text = provider.greeting(ConversationConfig(level="premium"))
    provider.greeting(ConversationConfig(level="premium"))

    assert "premium level" in text
    assert [m["role"] for m in provider.history] == ["system", "assistant"]
    assert "Package: premium" in provider.history[0]["content"]


def test_system_prompt_depends_on_level():
    basic = build_system_prompt(ConversationConfig(level="basic"))
    premium = build_system_prompt(ConversationConfig(level="premium"))

    assert "Keep language simple and clear" in basic
    assert "cultural insights" in premium
    assert "Package: basic" in build_system_prompt(ConversationConfig(level="unknown"))
