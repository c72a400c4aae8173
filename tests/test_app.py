"""Tests for the FastAPI surface: relay WebSocket, Twilio stream and summary SSE."""

import base64
import json

import pytest
from fastapi.testclient import TestClient

import sys, os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from coaching.analysis import CoachingAnalyzer
from coaching.app import create_app


class FakeSpeechClient:
    """Speech client stand-in: records audio, never produces transcripts."""

    def __init__(self, on_transcript, on_status):
        self.on_transcript = on_transcript
        self.on_status = on_status
        self.audio: list[bytes] = []
        self.connected = False
        self.closed = False

    async def connect(self):
        self.connected = True

    async def send_audio(self, pcm):
        self.audio.append(pcm)

    async def close(self):
        self.closed = True


@pytest.fixture
def speech_clients():
    return []


@pytest.fixture
def client(fake_client, speech_clients):
    def factory(on_transcript, on_status):
        speech = FakeSpeechClient(on_transcript, on_status)
        speech_clients.append(speech)
        return speech

    app = create_app(analyzer=CoachingAnalyzer(client=fake_client, model="test-model"), speech_factory=factory)
    with TestClient(app) as test_client:
        yield test_client


def _receive_until(ws, event_type, limit=50) -> list[dict]:
    """Collect events up to and including the first of ``event_type``."""
    seen = []
    for _ in range(limit):
        event = ws.receive_json()
        seen.append(event)
        if event["type"] == event_type:
            return seen
    raise AssertionError(f"{event_type} not received; got {[e['type'] for e in seen]}")


def _sse_events(body: str) -> list[tuple[str, object]]:
    events = []
    for block in body.strip().split("\n\n"):
        lines = dict(line.split(": ", 1) for line in block.splitlines())
        events.append((lines["event"], json.loads(lines["data"])))
    return events


# ── HTTP ────────────────────────────────────────────────────────────


class TestHttp:
    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"

    def test_sessions_listing(self, client):
        with client.websocket_connect("/ws") as ws:
            ws.send_json({"event": "start_call"})
            ready = _receive_until(ws, "connection_ready")[-1]

            body = client.get("/api/sessions").json()
            assert body["count"] >= 1
            ids = [s["session_id"] for s in body["sessions"]]
            assert ready["data"]["session_id"] in ids


# ── Relay WebSocket ─────────────────────────────────────────────────


class TestRelay:
    def test_coaching_round_trip(self, client):
        with client.websocket_connect("/ws") as ws:
            ws.send_json({"event": "start_call"})
            _receive_until(ws, "connection_ready")

            ws.send_json({"event": "simulate_speech", "data": {"speaker": "seller", "text": "What's your offer?"}})
            events = _receive_until(ws, "ai_suggestion")

            assert events[0]["type"] == "transcript_update"
            assert events[0]["data"]["text"] == "What's your offer?"
            tokens = [e["data"]["token"] for e in events if e["type"] == "ai_suggestion_token"]
            assert "".join(tokens) == "Family comes first."
            assert events[-1]["data"]["suggested_response"] == "Family comes first."

            ws.send_json({"event": "end_call", "data": {"duration_seconds": 125}})
            summary = _receive_until(ws, "call_summary")[-1]
            assert summary["data"]["duration_seconds"] == 125

    def test_invalid_json(self, client):
        with client.websocket_connect("/ws") as ws:
            ws.send_text("this is not json")
            error = _receive_until(ws, "error")[-1]
            assert "Invalid message" in error["data"]["message"]

    def test_unknown_event(self, client):
        with client.websocket_connect("/ws") as ws:
            ws.send_json({"event": "launch_rockets"})
            error = _receive_until(ws, "error")[-1]
            assert "Unknown event" in error["data"]["message"]

    def test_invalid_event_data(self, client):
        with client.websocket_connect("/ws") as ws:
            ws.send_json({"event": "simulate_speech", "data": {"speaker": "seller", "text": ""}})
            error = _receive_until(ws, "error")[-1]
            assert "Invalid simulate_speech data" in error["data"]["message"]

    def test_session_released_on_disconnect(self, client):
        with client.websocket_connect("/ws") as ws:
            ws.send_json({"event": "start_call"})
            sid = _receive_until(ws, "connection_ready")[-1]["data"]["session_id"]

        ids = [s["session_id"] for s in client.get("/api/sessions").json()["sessions"]]
        assert sid not in ids


# ── Twilio Media Stream ─────────────────────────────────────────────


class TestTwilioStream:
    def test_stream_binds_to_registered_session(self, client, speech_clients):
        with client.websocket_connect("/ws") as relay:
            relay.send_json({"event": "start_call"})
            _receive_until(relay, "connection_ready")
            relay.send_json({"event": "register_call", "data": {"call_sid": "CA-test"}})

            with client.websocket_connect("/twilio/stream") as twilio:
                twilio.send_text(json.dumps({"event": "connected", "protocol": "Call", "version": "1.0.0"}))
                twilio.send_text(json.dumps({
                    "event": "start",
                    "start": {"streamSid": "MZ-test", "callSid": "CA-test"},
                }))
                started = _receive_until(relay, "telephony_stream_started")[-1]
                assert started["data"] == {"stream_sid": "MZ-test", "call_sid": "CA-test"}

                payload = base64.b64encode(b"\xff" * 160).decode()
                twilio.send_text(json.dumps({"event": "media", "media": {"payload": payload, "track": "inbound"}}))
                twilio.send_text(json.dumps({"event": "stop"}))

                stopped = _receive_until(relay, "telephony_stream_stopped")[-1]
                assert stopped["data"]["stream_sid"] == "MZ-test"

        assert len(speech_clients) == 1


# ── Summary SSE ─────────────────────────────────────────────────────


class TestSummarySse:
    def test_streams_summary(self, client):
        response = client.post("/api/summary", json={
            "transcript": [
                {"speaker": "seller", "text": "We need to move soon."},
                {"speaker": "user", "text": "What's your timeline?"},
            ],
            "duration_seconds": 60,
        })
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")

        events = _sse_events(response.text)
        names = [name for name, _ in events]
        assert names[0] == "summary_start"
        assert "summary_token" in names
        assert "structured_data" in names
        assert names[-1] == "done"

        done = events[-1][1]
        assert done["summary"] == "Seller is highly motivated."
        assert done["duration_seconds"] == 60
        assert done["final_motivation_level"] == 8

    def test_empty_transcript(self, client, fake_client):
        response = client.post("/api/summary", json={"transcript": [], "duration_seconds": 5})
        events = _sse_events(response.text)
        assert [name for name, _ in events] == ["done"]
        assert events[0][1]["summary"] == "No conversation recorded."
        assert fake_client.messages.create_calls == []

    def test_error_event(self, client, fake_client):
        fake_client.messages.errors["provide_summary"] = RuntimeError("summary down")
        response = client.post("/api/summary", json={
            "transcript": [{"speaker": "seller", "text": "Hello"}],
            "duration_seconds": 5,
        })
        events = _sse_events(response.text)
        assert events[-1] == ("error", {"error": "summary down"})

    def test_invalid_body_rejected(self, client):
        response = client.post("/api/summary", json={"transcript": "nope"})
        assert response.status_code == 422
