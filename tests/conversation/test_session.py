import asyncio

import pytest

from voicecoach.conversation.chat import CompletionEvent, ConversationConfig, ErrorEvent, TokenEvent
from voicecoach.conversation.session import ConversationSession
from voicecoach.voice.models import Role


class ScriptedChat:
    """Chat provider replaying canned token lists."""

    def __init__(self, *replies):
        self.replies = [list(reply) for reply in replies]
        self.requests = []
        self.cleared = 0
        self.gate = None

    def greeting(self, config):
        return f"Hi! You are on the {config.level} plan."

    async def stream_reply(self, user_text, config):
        self.requests.append(user_text)
        tokens = self.replies.pop(0) if self.replies else ["Okay."]
        for token in tokens:
            if self.gate is not None:
                await self.gate.wait()
            yield TokenEvent(token)
        yield CompletionEvent("".join(tokens))

    async def stream_feedback(self):
        yield TokenEvent("Great job")
        yield CompletionEvent("Great job")

    def clear_history(self):
        self.cleared += 1


async def _wait_for(predicate, timeout=1.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


@pytest.fixture
def published():
    return []


@pytest.mark.asyncio
async def test_interim_results_publish_provisional_user_text_in_order(coordinator, engine_factory, published):
    session = ConversationSession(coordinator, ScriptedChat(), on_message=published.append)
    assert await session.start(greet=False) is True
    engine = engine_factory.current

    for text in ("H", "He", "Hel"):
        engine.emit_interim(text)
    await _wait_for(lambda: len(published) == 3)

    assert [(u.role, u.text, u.is_provisional) for u in published] == [
        (Role.USER, "H", True),
        (Role.USER, "He", True),
        (Role.USER, "Hel", True),
    ]
    assert session.messages == []
    await session.close()


@pytest.mark.asyncio
async def test_final_result_starts_a_spoken_reply(coordinator, engine_factory, published):
    chat = ScriptedChat(["Hola", " ", "mundo"])
    session = ConversationSession(coordinator, chat, on_message=published.append)
    await session.start(greet=False)
    engine = engine_factory.current

    engine.emit_final("Say hello in Spanish")
    await _wait_for(lambda: engine.spoken)

    assert engine.spoken == ["Hola mundo"]
    assert chat.requests == ["Say hello in Spanish"]
    assert [(m.role, m.text) for m in session.messages] == [
        (Role.USER, "Say hello in Spanish"),
        (Role.ASSISTANT, "Hola mundo"),
    ]
    provisional = [u.text for u in published if u.is_provisional]
    assert provisional == ["Hola", "Hola ", "Hola mundo"]
    await session.close()


@pytest.mark.asyncio
async def test_silence_ends_the_user_turn(coordinator, engine_factory):
    chat = ScriptedChat(["Me too!"])
    session = ConversationSession(coordinator, chat)
    await session.start(greet=False)
    engine = engine_factory.current

    engine.emit_interim("I like tea")
    await _wait_for(lambda: engine.spoken)

    assert chat.requests == ["I like tea"]
    assert engine.spoken == ["Me too!"]
    await session.close()


@pytest.mark.asyncio
async def test_submit_returns_final_reply(coordinator, engine_factory):
    session = ConversationSession(coordinator, ScriptedChat(["Nice ", "to meet you."]))

    reply = await session.submit("  Hello  ")

    assert reply.text == "Nice to meet you."
    assert engine_factory.current.spoken == ["Nice to meet you."]
    assert session.messages[0].text == "Hello"
    assert session.is_processing is False
    assert await session.submit("   ") is None


@pytest.mark.asyncio
async def test_greeting_is_spoken_before_listening(coordinator, engine_factory):
    session = ConversationSession(coordinator, ScriptedChat(), config=ConversationConfig(level="premium"))

    assert await session.start() is True

    engine = engine_factory.current
    assert engine.spoken == ["Hi! You are on the premium plan."]
    assert engine.calls == ["speak", "start_listening"]
    assert session.messages[0].role is Role.ASSISTANT
    await session.close()


@pytest.mark.asyncio
async def test_new_turn_abandons_streaming_reply(coordinator, engine_factory):
    chat = ScriptedChat(["first answer"], ["second answer"])
    chat.gate = asyncio.Event()
    session = ConversationSession(coordinator, chat)

    first = asyncio.create_task(session.submit("first"))
    await _wait_for(lambda: chat.requests == ["first"])
    assert session.is_processing is True
    second = asyncio.create_task(session.submit("second"))
    await _wait_for(lambda: chat.requests == ["first", "second"])
    chat.gate.set()

    assert await first is None
    reply = await second
    assert reply.text == "second answer"
    assert engine_factory.current.spoken == ["second answer"]
    assert [m.text for m in session.messages] == ["first", "second", "second answer"]


@pytest.mark.asyncio
async def test_feedback_is_spoken(coordinator, engine_factory):
    session = ConversationSession(coordinator, ScriptedChat())

    feedback = await session.request_feedback()

    assert feedback.text == "Great job"
    assert engine_factory.current.spoken == ["Great job"]


@pytest.mark.asyncio
async def test_reset_clears_transcript_and_history(coordinator):
    chat = ScriptedChat()
    session = ConversationSession(coordinator, chat)
    await session.submit("hello")

    session.reset()

    assert session.messages == []
    assert chat.cleared == 1


@pytest.mark.asyncio
async def test_close_stops_listening(coordinator, engine_factory, published):
    session = ConversationSession(coordinator, ScriptedChat(), on_message=published.append)
    await session.start(greet=False)

    await session.close()

    assert coordinator.is_listening is False
    engine_factory.current.emit_interim("after close")
    await asyncio.sleep(0.01)
    assert published == []


@pytest.mark.asyncio
async def test_message_listener_errors_are_contained(coordinator, engine_factory):
    def broken(utterance):
        raise RuntimeError("ui crashed")

    session = ConversationSession(coordinator, ScriptedChat(["Fine."]), on_message=broken)

    reply = await session.submit("How are you?")

    assert reply.text == "Fine."
    assert engine_factory.current.spoken == ["Fine."]


@pytest.mark.asyncio
async def test_failed_reply_stream_is_reported_on_the_coordinator(coordinator, engine_factory):
    class FailingChat(ScriptedChat):
        async def stream_reply(self, user_text, config):
            self.requests.append(user_text)
            yield TokenEvent("Let me")
            yield ErrorEvent("quota exceeded")

    session = ConversationSession(coordinator, FailingChat())

    reply = await session.submit("Tell me a story")

    assert reply.text == coordinator.settings.stream_fallback_text
    assert coordinator.error == "quota exceeded"
    assert engine_factory.current.spoken == []
