"""
Batch Orchestrator.

Two ways a request leaves the synchronous path without touching the
provider:

    submit()            text over the sync threshold: split into chunks and
                        record a BatchJob for an out-of-band worker (202)
    defer_processing()  not enough execution budget left: leave the request
                        pending with a note (202)

Chunk order is fixed when the job is created. A job is completed only
when every chunk has been resolved; resolve_chunk() is the entry point
for whatever processes chunks later.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

from tts_gateway.core.config import PipelineConfig
from tts_gateway.core.errors import InvalidInputError, NotFoundError
from tts_gateway.core.logging import get_logger, info
from tts_gateway.core.metrics import GatewayMetrics
from tts_gateway.db.datastore import Datastore
from tts_gateway.db.models import BatchJob, SynthesisRequest
from tts_gateway.tts.chunker import chunk_text

_LOG = get_logger("tts-gateway.batch")

DEFERRED_MESSAGE = "Deferred for async processing"


@dataclass
class BatchAccepted:
    batch_job_id: str
    total_chunks: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": "batch_processing",
            "batchJobId": self.batch_job_id,
            "totalChunks": self.total_chunks,
            "message": f"Text split into {self.total_chunks} chunks for batch processing",
        }


@dataclass
class Deferred:
    request_hash: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": "processing_deferred",
            "requestHash": self.request_hash,
            "message": "Request queued for processing due to time constraints",
        }


class BatchOrchestrator:
    def __init__(self, datastore: Datastore, config: PipelineConfig, metrics: Optional[GatewayMetrics] = None):
        self._datastore = datastore
        self._config = config
        self._metrics = metrics

    def submit(self, user_id: str, text: str) -> BatchAccepted:
        result = chunk_text(text, self._config.max_chunk_size)
        if not result.chunks:
            raise InvalidInputError("Text is required")
        job = self._datastore.create_batch_job(user_id, text, result.chunks)
        info(_LOG, "batch_created", batch_id=job.id, chunks=job.total_chunks, chars=len(text))
        return BatchAccepted(batch_job_id=job.id, total_chunks=job.total_chunks)

    def defer_processing(self, request: SynthesisRequest) -> Deferred:
        self._datastore.mark_deferred(request.id, DEFERRED_MESSAGE)
        info(_LOG, "request_deferred", request_id=request.id, status=request.status)
        return Deferred(request_hash=request.request_hash)

    def status(self, job_id: str, user_id: str) -> BatchJob:
        job = self._datastore.get_batch_job(job_id)
        if job is None or job.user_id != user_id:
            raise NotFoundError("Batch job not found", details={"batch_job_id": job_id})
        return job

    def resolve_chunk(self, job_id: str, index: int, request_id: Optional[str], failed: bool = False) -> BatchJob:
        job = self._datastore.resolve_chunk(job_id, index, request_id, failed=failed)
        if self._metrics is not None:
            self._metrics.record_batch_chunk("failed" if failed else "resolved")
        info(_LOG, "batch_chunk_resolved", batch_id=job_id, index=index,
             done=job.completed_chunks, total=job.total_chunks, status=job.status)
        return job
