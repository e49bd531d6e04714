"""
Tests for webhook verification, idempotency and event handlers.

Tests cover:
- HMAC verification before parsing
- Event id derivation
- Duplicate deliveries are acknowledged without re-running handlers
- Handler failures are recorded and retried on redelivery
- post_call_transcription / usage_updated / voice_* / agent_* handlers
"""
from __future__ import annotations

import json

import pytest

from tts_gateway.core.config import WebhookConfig
from tts_gateway.core.errors import InvalidInputError, SignatureInvalidError
from tts_gateway.core.metrics import GatewayMetrics
from tts_gateway.db.datastore import Datastore, month_key
from tts_gateway.services.webhook_service import (
    TranscriptionCompleted,
    VoiceChanged,
    WebhookIngestor,
    parse_event,
    resolve_call_duration,
    sign_payload,
)

SECRET = "whsec"


@pytest.fixture
def datastore(tmp_path):
    ds = Datastore(f"sqlite:///{tmp_path / 'hooks.db'}")
    ds.create_all()
    yield ds
    ds.dispose()


@pytest.fixture
def ingestor(datastore):
    return WebhookIngestor(datastore, WebhookConfig(secret=SECRET), metrics=GatewayMetrics(), clock=lambda: 1234.5)


def _deliver(ingestor, payload, secret=SECRET):
    body = json.dumps(payload).encode("utf-8")
    return ingestor.ingest(body, sign_payload(secret, body))


def _count_calls(ingestor, event_type):
    """Wrap one dispatch-table entry; returns the list each call appends to."""
    calls = []
    handler = ingestor._handlers[event_type]

    def counted(event):
        calls.append(event)
        handler(event)

    ingestor._handlers[event_type] = counted
    return calls


def _transcription(conversation_id="conv-1", **data):
    base = {
        "conversation_id": conversation_id,
        "agent_id": "agent-1",
        "user_id": "u1",
        "started_at": "2026-10-05T10:00:00Z",
        "metadata": {"call_duration_secs": 120},
        "transcript": [{"role": "agent", "message": "Hi"}],
    }
    base.update(data)
    return {"type": "post_call_transcription", "data": base}


class TestSignature:
    def test_missing_signature(self, ingestor):
        with pytest.raises(SignatureInvalidError):
            ingestor.ingest(b"{}", None)

    def test_wrong_signature(self, ingestor):
        with pytest.raises(SignatureInvalidError):
            ingestor.ingest(b'{"type": "x"}', sign_payload("other", b'{"type": "x"}'))

    def test_signature_checked_before_parsing(self, ingestor):
        with pytest.raises(SignatureInvalidError):
            ingestor.ingest(b"not json", "sha256=00")

    def test_no_secret_skips_verification(self, datastore):
        open_ingestor = WebhookIngestor(datastore, WebhookConfig(secret=""))
        assert open_ingestor.ingest(b'{"type": "ping", "event_id": "e1"}', None).status == "processed"

    def test_invalid_json(self, ingestor):
        body = b"not json"
        with pytest.raises(InvalidInputError):
            ingestor.ingest(body, sign_payload(SECRET, body))


class TestEventId:
    def test_explicit_event_id(self, ingestor):
        assert ingestor.derive_event_id({"event_id": "e1", "data": {"conversation_id": "c1"}}) == "e1"

    def test_conversation_id(self, ingestor):
        assert ingestor.derive_event_id({"data": {"conversation_id": "c1"}}) == "c1"

    def test_synthesized(self, ingestor):
        assert ingestor.derive_event_id({"type": "ping"}) == "ping_1234500"


class TestIdempotency:
    def test_duplicate_delivery(self, ingestor, datastore):
        assert _deliver(ingestor, _transcription()).status == "processed"
        result = _deliver(ingestor, _transcription())
        assert result.status == "already_processed"
        assert result.http_status == 200
        usage = datastore.get_usage("u1", "2026-10")
        assert usage.conversation_minutes == 2.0
        assert usage.conversation_count == 1

    def test_duplicate_runs_handler_once(self, ingestor):
        calls = _count_calls(ingestor, TranscriptionCompleted)
        first = _deliver(ingestor, _transcription())
        second = _deliver(ingestor, _transcription())
        assert (first.status, first.http_status) == ("processed", 200)
        assert (second.status, second.http_status) == ("already_processed", 200)
        assert len(calls) == 1

    def test_duplicate_event_id_runs_voice_handler_once(self, ingestor):
        calls = _count_calls(ingestor, VoiceChanged)
        payload = {"event_id": "evt-9", "type": "voice_created",
                   "data": {"voice_id": "v-1", "user_id": "u1", "name": "Narrator"}}
        assert _deliver(ingestor, payload).status == "processed"
        payload["data"]["name"] = "Renamed"
        assert _deliver(ingestor, payload).status == "already_processed"
        assert len(calls) == 1

    def test_failure_then_redelivery(self, ingestor, datastore):
        payload = _transcription(agent_id="agent-x", user_id=None)
        failed = _deliver(ingestor, payload)
        assert failed.status == "failed"
        assert failed.http_status == 500
        assert "No user mapping found for agent agent-x" in failed.error
        event = datastore.get_webhook_event("conv-1")
        assert event.retry_count == 1
        assert event.processed_at is None

        datastore.upsert_agent("agent-x", user_id="u9", name="Known")
        assert _deliver(ingestor, payload).status == "processed"
        assert datastore.get_webhook_event("conv-1").processed_at is not None
        assert datastore.get_usage("u9", "2026-10").conversation_minutes == 2.0


class TestHandlers:
    def test_transcription_records_conversation_and_agent(self, ingestor, datastore):
        _deliver(ingestor, _transcription(agent_name="Support"))
        conversation = datastore.get_conversation("conv-1")
        assert conversation.user_id == "u1"
        assert conversation.duration_seconds == 120
        assert conversation.transcript == [{"role": "agent", "message": "Hi"}]
        assert datastore.get_agent("agent-1").name == "Support"

    def test_agent_mapping_wins_over_payload_user(self, ingestor, datastore):
        datastore.upsert_agent("agent-1", user_id="owner", name="A")
        _deliver(ingestor, _transcription(user_id="someone-else"))
        assert datastore.get_conversation("conv-1").user_id == "owner"

    def test_usage_snapshot(self, ingestor, datastore):
        datastore.increment_usage("u1", month_key(), characters=900)
        payload = {
            "type": "usage_updated",
            "event_id": "usage-1",
            "data": {"user_id": "u1", "usage_data": {"tts_characters": 500, "conversation_minutes": 3.5,
                                                     "total_credits": 12}},
        }
        assert _deliver(ingestor, payload).status == "processed"
        usage = datastore.get_usage("u1", month_key())
        assert usage.tts_characters == 900
        assert usage.conversation_minutes == 3.5
        assert usage.total_credits == 12

    def test_voice_upsert(self, ingestor, datastore):
        payload = {"type": "voice_created", "event_id": "v-1",
                   "data": {"voice_id": "voice-9", "name": "Rachel", "labels": {"accent": "us"}}}
        assert _deliver(ingestor, payload).status == "processed"
        payload = {"type": "voice_updated", "event_id": "v-2", "data": {"voice_id": "voice-9", "name": "Rach"}}
        assert _deliver(ingestor, payload).status == "processed"

    def test_agent_without_user_is_acknowledged(self, ingestor, datastore):
        payload = {"type": "agent_created", "event_id": "a-1", "data": {"agent_id": "lonely"}}
        assert _deliver(ingestor, payload).status == "processed"
        assert datastore.get_agent("lonely") is None

    def test_unknown_type_acknowledged(self, ingestor):
        assert _deliver(ingestor, {"type": "something_new", "event_id": "x-1"}).status == "processed"

    def test_missing_required_field_fails(self, ingestor):
        result = _deliver(ingestor, {"type": "voice_created", "event_id": "v-3", "data": {}})
        assert result.status == "failed"


class TestParsing:
    def test_duration_sources_in_order(self):
        assert resolve_call_duration({"metadata": {"call_duration_secs": 30}, "analysis": {"duration_seconds": 99}}) == 30
        assert resolve_call_duration({"analysis": {"call_duration_secs": 45}}) == 45
        assert resolve_call_duration({"transcript": {"duration": 12.4}}) == 12
        assert resolve_call_duration({
            "started_at": "2026-10-05T10:00:00Z",
            "ended_at": "2026-10-05T10:01:30Z",
        }) == 90
        assert resolve_call_duration({}) == 0

    def test_parse_usage_defaults(self):
        event = parse_event("usage_updated", {"user_id": "u1"})
        assert (event.characters, event.minutes, event.credits) == (0, 0.0, 0)
