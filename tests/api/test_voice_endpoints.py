import pytest
from fastapi.testclient import TestClient

from voicecoach.api.main import create_app
from voicecoach.conversation.chat import CompletionEvent, TokenEvent
from voicecoach.core.config import Settings
from voicecoach.core.exceptions import ConfigurationError
from voicecoach.voice.coordinator import TIMEOUT_MESSAGE
from voicecoach.voice.settings import VoiceSettings


class CannedChat:
    def greeting(self, config):
        return "Welcome!"

    async def stream_reply(self, user_text, config):
        for token in ("Hi", " there"):
            yield TokenEvent(token)
        yield CompletionEvent("Hi there")

    async def stream_feedback(self):
        yield CompletionEvent("Keep practicing")

    def clear_history(self):
        pass


def _app(max_operation_seconds=2.0, chat=CannedChat, **overrides):
    voice_settings = VoiceSettings(
        engine=overrides.pop("engine", "remote"),
        max_operation_seconds=max_operation_seconds,
        heartbeat_seconds=0.05,
        silence_threshold_seconds=5.0,
        default_language="en-US",
        voice_names={"en-US": "en-US-Test"},
    )
    return create_app(settings=Settings(), voice_settings=voice_settings, chat_provider_factory=chat, **overrides)


def _receive_until(ws, predicate):
    seen = []
    while True:
        message = ws.receive_json()
        seen.append(message)
        if predicate(message):
            return message, seen


@pytest.fixture
def client():
    return TestClient(_app())


def test_voice_config_exposes_timings(client):
    response = client.get("/api/voice/config")

    assert response.status_code == 200
    data = response.json()
    assert data["default_language"] == "en-US"
    assert data["max_operation_ms"] == 2000
    assert data["silence_ms"] == 5000
    assert data["voices"] == {"en-US": "en-US-Test"}
    assert "set_language" in data["control_actions"]


def test_voice_config_requires_settings():
    app = _app()
    app.state.voice_settings = None

    response = TestClient(app).get("/api/voice/config")

    assert response.status_code == 503


def test_health_and_metrics(client):
    health = client.get("/health")
    assert health.status_code == 200
    assert health.json()["status"] == "ok"

    metrics = client.get("/api/metrics").json()
    assert "uptime_seconds" in metrics
    assert "watchdog_recoveries" in metrics["voice"]


def test_session_rejects_malformed_messages(client):
    with client.websocket_connect("/api/voice/session?session_id=s-1") as ws:
        ready = ws.receive_json()
        assert ready["type"] == "ready"
        assert ready["session_id"] == "s-1"
        assert ready["initialized"] is True
        assert ready["is_listening"] is False

        ws.send_text("not json")
        assert ws.receive_json() == {"type": "error", "message": "Expected a JSON object"}

        ws.send_json({"type": "bogus"})
        assert ws.receive_json()["message"] == "Unknown message type: bogus"

        ws.send_json({"type": "control", "action": "dance"})
        assert ws.receive_json()["message"] == "Unknown control action: dance"

        ws.send_json({"type": "ping"})
        assert ws.receive_json() == {"type": "pong"}


def test_typed_turn_streams_reply_and_waits_for_speech_ack(client):
    with client.websocket_connect("/api/voice/session") as ws:
        ws.receive_json()
        ws.send_json({"type": "control", "action": "say", "text": "hello"})

        command, seen = _receive_until(ws, lambda m: m["type"] == "command")
        assert command["command"] == "speak"
        assert command["text"] == "Hi there"
        messages = [(m["role"], m["text"], m["provisional"]) for m in seen if m["type"] == "message"]
        assert messages == [
            ("user", "hello", False),
            ("assistant", "Hi", True),
            ("assistant", "Hi there", True),
            ("assistant", "Hi there", False),
        ]
        assert any(m["type"] == "state" and m["is_speaking"] for m in seen)

        ws.send_json({"type": "ack", "id": command["id"], "ok": True})
        result, seen = _receive_until(ws, lambda m: m["type"] == "control_result")
        assert result == {"type": "control_result", "action": "say", "ok": True, "error": None}
        assert not any(m["type"] == "state" and not m["is_speaking"] for m in seen)

        # Playback outlasts the acknowledgement until the client reports its end
        ws.send_json({"type": "speech_end", "id": command["id"]})
        state, _ = _receive_until(ws, lambda m: m["type"] == "state")
        assert state["is_speaking"] is False
        assert state["error"] is None


def test_client_recognition_results_become_user_messages(client):
    with client.websocket_connect("/api/voice/session") as ws:
        ws.receive_json()
        ws.send_json({"type": "control", "action": "start"})

        command, _ = _receive_until(ws, lambda m: m["type"] == "command")
        assert command["command"] == "start_listening"
        ws.send_json({"type": "ack", "id": command["id"]})
        result, _ = _receive_until(ws, lambda m: m["type"] == "control_result")
        assert result["ok"] is True

        ws.send_json({"type": "interim", "text": "Goo"})
        message, _ = _receive_until(ws, lambda m: m["type"] == "message")
        assert message == {"type": "message", "role": "user", "text": "Goo", "provisional": True}


def test_client_rejection_is_reported(client):
    with client.websocket_connect("/api/voice/session") as ws:
        ws.receive_json()
        ws.send_json({"type": "control", "action": "set_language", "language": "spanish"})

        command, _ = _receive_until(ws, lambda m: m["type"] == "command")
        assert command == {"type": "command", "id": command["id"], "command": "set_language", "language": "es-ES"}
        ws.send_json({"type": "ack", "id": command["id"], "ok": False, "error": "voice missing"})

        result, _ = _receive_until(ws, lambda m: m["type"] == "control_result")
        assert result["ok"] is False
        assert result["error"] == "Failed to change language: voice missing"


def test_unacknowledged_command_resets_the_session_engine():
    client = TestClient(_app(max_operation_seconds=0.2))
    with client.websocket_connect("/api/voice/session") as ws:
        ws.receive_json()
        ws.send_json({"type": "control", "action": "start"})

        result, seen = _receive_until(ws, lambda m: m["type"] == "control_result")

        assert result["ok"] is False
        assert result["error"] == TIMEOUT_MESSAGE
        states = [m for m in seen if m["type"] == "state"]
        assert states[-1]["is_listening"] is False
        assert states[-1]["error"] == TIMEOUT_MESSAGE


def test_failing_control_action_reports_error_to_client():
    class BrokenGreetingChat(CannedChat):
        def greeting(self, config):
            raise RuntimeError("greeting template missing")

    client = TestClient(_app(chat=BrokenGreetingChat))
    with client.websocket_connect("/api/voice/session") as ws:
        ws.receive_json()
        ws.send_json({"type": "control", "action": "greet"})

        result, seen = _receive_until(ws, lambda m: m["type"] == "control_result")

        expected = "Control action greet failed: greeting template missing"
        assert {"type": "error", "message": expected} in seen
        assert result == {"type": "control_result", "action": "greet", "ok": False, "error": expected}

        ws.send_json({"type": "ping"})
        assert ws.receive_json() == {"type": "pong"}


class SilentSource:
    async def frames(self):
        yield None


class NullSink:
    def __init__(self):
        self.played = []

    async def play(self, audio, mime_type):
        self.played.append(mime_type)

    async def stop(self):
        pass


def test_google_engine_requires_audio_devices():
    with pytest.raises(ConfigurationError, match="audio_devices_factory"):
        _app(engine="google")


def test_google_engine_session_runs_without_client_commands():
    devices = []

    def audio_devices():
        devices.append((SilentSource(), NullSink()))
        return devices[-1]

    client = TestClient(_app(engine="google", audio_devices_factory=audio_devices))
    assert client.get("/api/voice/config").json()["engine"] == "google"

    with client.websocket_connect("/api/voice/session") as ws:
        ready = ws.receive_json()
        assert ready["engine"] == "google"
        ws.send_json({"type": "control", "action": "set_language", "language": "spanish"})

        result, seen = _receive_until(ws, lambda m: m["type"] == "control_result")

        assert result == {"type": "control_result", "action": "set_language", "ok": True, "error": None}
        assert not any(m["type"] == "command" for m in seen)
        assert any(m["type"] == "state" and m["current_language"] == "es-ES" for m in seen)
    assert len(devices) == 1
