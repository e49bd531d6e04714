"""Tests that drive SynthesisPipeline directly; HTTP is used only to check what a cache hit serves."""
from __future__ import annotations

import threading

import pytest
from fastapi.testclient import TestClient

from conftest import AUDIO, USER, auth
from tts_gateway.db.models import RequestStatus
from tts_gateway.services.tts_service import SynthesisInput


@pytest.fixture
def app(make_app):
    app = make_app()
    with TestClient(app):
        yield app


class TestSynthesisPipeline:
    def test_abandoned_stream_still_persists(self, app, provider):
        provider.audio = b"z" * 50_000
        pipeline = app.state.pipeline
        result = pipeline.handle(USER, SynthesisInput(text="Leave early."))
        assert result.kind == "generated"

        first = next(result.audio)
        assert first
        result.audio.close()

        outcome = result.persistence.result(timeout=5)
        assert outcome.status == "completed"
        assert outcome.audio_bytes == 50_000
        row = app.state.datastore.find_latest_request(USER, result.request_hash)
        assert row.status == RequestStatus.completed.value

    def test_cache_hit_result(self, app):
        pipeline = app.state.pipeline
        first = pipeline.handle(USER, SynthesisInput(text="Cache me."))
        assert b"".join(first.audio) == AUDIO
        assert pipeline.wait_for_background(5)

        second = pipeline.handle(USER, SynthesisInput(text="Cache me."))
        assert second.kind == "cache"
        assert second.audio_bytes == len(AUDIO)
        assert b"".join(second.audio) == AUDIO

    def test_in_flight_request_is_resynthesized(self, app, provider):
        provider.gate = threading.Event()
        pipeline = app.state.pipeline
        first = pipeline.handle(USER, SynthesisInput(text="Twice."))
        second = pipeline.handle(USER, SynthesisInput(text="Twice."))
        assert second.kind == "generated"
        provider.gate.set()
        b"".join(first.audio)
        b"".join(second.audio)
        statuses = sorted([first.persistence.result(timeout=5).status, second.persistence.result(timeout=5).status])
        assert statuses == ["completed", "rejected"]
        assert len(provider.calls) == 2
        assert app.state.datastore.get_usage(USER).tts_requests == 1

    def test_racing_attempts_leave_matching_object(self, app, provider):
        provider.gate = threading.Event()
        provider.queued = [AUDIO, AUDIO * 2]
        pipeline = app.state.pipeline
        first = pipeline.handle(USER, SynthesisInput(text="Race me."))
        second = pipeline.handle(USER, SynthesisInput(text="Race me."))
        provider.gate.set()
        b"".join(first.audio)
        b"".join(second.audio)
        outcomes = [first.persistence.result(timeout=5), second.persistence.result(timeout=5)]
        assert sorted(o.status for o in outcomes) == ["completed", "rejected"]
        assert pipeline.wait_for_background(5)

        row = app.state.datastore.find_completed(USER, first.request_hash)
        store = app.state.store
        assert store.size(row.storage_path) == row.audio_bytes
        winner = next(o for o in outcomes if o.status == "completed")
        assert row.audio_bytes == winner.audio_bytes

        response = TestClient(app).post(
            "/v1/tts", json={"text": "Race me."}, headers=auth(),
        )
        assert response.status_code == 200
        assert response.headers["X-Audio-Source"] == "cache"
        assert int(response.headers["Content-Length"]) == len(response.content) == row.audio_bytes

    def test_request_status_not_found(self, app):
        from tts_gateway.core.errors import NotFoundError

        with pytest.raises(NotFoundError):
            app.state.pipeline.request_status(USER, "missing")
