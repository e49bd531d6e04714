"""Tests for POST /v1/webhooks/provider."""
from __future__ import annotations

import json

from conftest import WEBHOOK_SECRET
from tts_gateway.services.webhook_service import TranscriptionCompleted, sign_payload

HEADER = "X-ElevenLabs-Signature"
URL = "/v1/webhooks/provider"


def _post(client, payload, secret=WEBHOOK_SECRET, raw=None):
    body = raw if raw is not None else json.dumps(payload).encode("utf-8")
    return client.post(URL, content=body, headers={HEADER: sign_payload(secret, body),
                                                   "Content-Type": "application/json"})


def _transcription(user_id="user-1"):
    return {
        "type": "post_call_transcription",
        "data": {
            "conversation_id": "conv-42",
            "agent_id": "agent-1",
            "user_id": user_id,
            "metadata": {"call_duration_secs": 60},
        },
    }


class TestWebhookEndpoint:
    def test_processed_then_duplicate(self, client):
        r = _post(client, _transcription())
        assert r.status_code == 200
        assert r.json() == {"status": "processed", "event_id": "conv-42"}

        r = _post(client, _transcription())
        assert r.status_code == 200
        assert r.json()["status"] == "already_processed"

    def test_duplicate_delivery_runs_handler_once(self, client):
        ingestor = client.app.state.ingestor
        handler = ingestor._handlers[TranscriptionCompleted]
        calls = []

        def counted(event):
            calls.append(event.conversation_id)
            handler(event)

        ingestor._handlers[TranscriptionCompleted] = counted
        responses = [_post(client, _transcription()), _post(client, _transcription())]
        assert [r.status_code for r in responses] == [200, 200]
        assert [r.json()["status"] for r in responses] == ["processed", "already_processed"]
        assert calls == ["conv-42"]

    def test_bad_signature(self, client):
        r = _post(client, _transcription(), secret="wrong")
        assert r.status_code == 401
        assert r.json()["error"] == "SIGNATURE_INVALID"

    def test_missing_signature(self, client):
        r = client.post(URL, content=b"{}")
        assert r.status_code == 401

    def test_invalid_json(self, client):
        r = _post(client, None, raw=b"{broken")
        assert r.status_code == 400
        assert r.json()["error"] == "INVALID_INPUT"

    def test_handler_failure_answers_500(self, client):
        r = _post(client, _transcription(user_id=None))
        assert r.status_code == 500
        body = r.json()
        assert body["event_id"] == "conv-42"
        assert "No user mapping" in body["error"]

    def test_webhook_metrics(self, client):
        _post(client, {"type": "voice_created", "event_id": "v1", "data": {"voice_id": "voice-1"}})
        text = client.get("/metrics").text
        assert 'tts_gw_webhook_events_total{type="voice_created",outcome="processed"}' in text
