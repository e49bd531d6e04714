"""Tests for batch job creation, chunk resolution and deferral."""
from __future__ import annotations

import pytest

from tts_gateway.core.config import PipelineConfig
from tts_gateway.core.errors import NotFoundError
from tts_gateway.core.metrics import GatewayMetrics
from tts_gateway.db.datastore import Datastore
from tts_gateway.db.models import BatchStatus, RequestStatus
from tts_gateway.tts.batch import DEFERRED_MESSAGE, BatchOrchestrator
from tts_gateway.tts.fingerprint import fingerprint, text_hash


@pytest.fixture
def datastore(tmp_path):
    ds = Datastore(f"sqlite:///{tmp_path / 'batch.db'}")
    ds.create_all()
    yield ds
    ds.dispose()


@pytest.fixture
def orchestrator(datastore):
    return BatchOrchestrator(datastore, PipelineConfig(max_chunk_size=1000), metrics=GatewayMetrics())


def _long_text() -> str:
    return ("a" * 899 + ".") + " " + ("b" * 599 + ".")


class TestSubmit:
    def test_chunks_in_order(self, orchestrator, datastore):
        accepted = orchestrator.submit("u1", _long_text())
        body = accepted.to_dict()
        assert body["status"] == "batch_processing"
        assert body["totalChunks"] == 2

        job = datastore.get_batch_job(accepted.batch_job_id)
        assert job.status == BatchStatus.pending.value
        assert [c["index"] for c in job.chunks] == [0, 1]
        assert " ".join(c["text"] for c in job.chunks) == _long_text()
        assert all(c["request_id"] is None for c in job.chunks)

    def test_status_only_for_owner(self, orchestrator):
        job_id = orchestrator.submit("u1", _long_text()).batch_job_id
        assert orchestrator.status(job_id, "u1").id == job_id
        with pytest.raises(NotFoundError):
            orchestrator.status(job_id, "u2")
        with pytest.raises(NotFoundError):
            orchestrator.status("missing", "u1")


class TestResolveChunk:
    def test_completed_only_when_all_chunks_resolved(self, orchestrator):
        job_id = orchestrator.submit("u1", _long_text()).batch_job_id

        job = orchestrator.resolve_chunk(job_id, 1, "req-b")
        assert job.status == BatchStatus.processing.value
        assert job.completed_chunks == 1

        job = orchestrator.resolve_chunk(job_id, 0, "req-a")
        assert job.status == BatchStatus.completed.value
        assert job.completed_chunks == 2
        assert [c["request_id"] for c in job.chunks] == ["req-a", "req-b"]

    def test_failed_chunk_fails_job(self, orchestrator):
        job_id = orchestrator.submit("u1", _long_text()).batch_job_id
        assert orchestrator.resolve_chunk(job_id, 0, None, failed=True).status == BatchStatus.failed.value
        # terminal jobs are left alone
        assert orchestrator.resolve_chunk(job_id, 1, "req-b").status == BatchStatus.failed.value

    def test_bad_index(self, orchestrator):
        job_id = orchestrator.submit("u1", _long_text()).batch_job_id
        with pytest.raises(IndexError):
            orchestrator.resolve_chunk(job_id, 5, "req")

    def test_unknown_job(self, orchestrator):
        with pytest.raises(KeyError):
            orchestrator.resolve_chunk("missing", 0, "req")


class TestDefer:
    def _row(self, datastore):
        fp = fingerprint("Hi", "v1", {})
        return datastore.get_or_create_request(
            user_id="u1", text="Hi", text_hash=text_hash("Hi"), request_hash=fp,
            voice_id="v1", model_id="m1", voice_settings={},
        )

    def test_pending_row_annotated(self, orchestrator, datastore):
        row = self._row(datastore)
        body = orchestrator.defer_processing(row).to_dict()
        assert body["status"] == "processing_deferred"
        assert body["requestHash"] == row.request_hash
        saved = datastore.get_request(row.id)
        assert saved.status == RequestStatus.pending.value
        assert saved.error_message == DEFERRED_MESSAGE

    def test_processing_row_left_alone(self, orchestrator, datastore):
        row = self._row(datastore)
        datastore.mark_processing(row.id)
        orchestrator.defer_processing(row)
        saved = datastore.get_request(row.id)
        assert saved.status == RequestStatus.processing.value
        assert saved.error_message is None
