"""
Synthesis Pipeline.

This module holds SynthesisPipeline, the single code path behind
POST /v1/tts. It wires the leaf components together in a fixed order
so that nothing expensive happens before the cheap checks have passed.

Pipeline Stages:
    1. Validate      text, voice id, voice settings, model id
    2. Quota         reject (429) before any provider spend
    3. Cache lookup  completed row + existing object -> stream it back
    4. Size check    text over the sync threshold -> batch job (202)
    5. Resolve row   get-or-create the SynthesisRequest for this attempt
    6. Budget check  too little execution time left -> defer (202)
    7. Provider      open the streaming synthesis
    8. Tee           caller gets the primary branch, the persistence
                     worker gets the secondary branch

Execution Budget:
    The gateway mirrors a serverless deployment with a hard per-invocation
    ceiling. Elapsed time is measured from request start; when less than
    pipeline.defer_margin_s of pipeline.execution_budget_s remains, new
    syntheses are deferred instead of started.

Example:
    pipeline = SynthesisPipeline(...)
    result = pipeline.handle("user-1", SynthesisInput(text="Hello"))
    if result.kind in ("cache", "generated"):
        return StreamingResponse(result.audio, media_type="audio/mpeg")

See Also:
    - tts/persistence.py: what happens to the secondary branch
    - api/routes.py: HTTP mapping of PipelineResult
"""
from __future__ import annotations

import time
from concurrent.futures import Future
from concurrent.futures import wait as wait_futures
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, Optional

from tts_gateway.core.config import GatewayConfig
from tts_gateway.core.errors import NotFoundError, ProviderError, QuotaExceededError
from tts_gateway.core.logging import debug, get_logger, info, success, verbose
from tts_gateway.core.metrics import GatewayMetrics
from tts_gateway.db.datastore import Datastore
from tts_gateway.db.models import RequestStatus
from tts_gateway.services.validators import (
    validate_model_id,
    validate_text,
    validate_voice_id,
    validate_voice_settings,
)
from tts_gateway.tts.batch import BatchOrchestrator
from tts_gateway.tts.fingerprint import CacheIndex, fingerprint, text_hash
from tts_gateway.tts.persistence import PersistenceJob, PersistenceOutcome, PersistenceWorker
from tts_gateway.tts.provider import SynthesisClient
from tts_gateway.tts.quota import QuotaGuard
from tts_gateway.tts.storage import LocalBlobStore
from tts_gateway.tts.tee import StreamTee
from tts_gateway.utils.timeit import timeit

_LOG = get_logger("tts-gateway.pipeline")


@dataclass
class SynthesisInput:
    """
    Caller-supplied synthesis parameters.

    Attributes:
        text: Text to synthesize (required).
        voice_id: Provider voice (defaults to provider.default_voice_id).
        voice_settings: Partial settings; missing keys get defaults.
        model_id: Provider model (defaults to provider.default_model_id).
    """
    text: str
    voice_id: Optional[str] = None
    voice_settings: Optional[Dict[str, Any]] = None
    model_id: Optional[str] = None


@dataclass
class PipelineResult:
    """
    Outcome of one POST /v1/tts.

    kind is "cache" or "generated" (audio is set) or "batch" or
    "deferred" (payload is the 202 body).
    """
    kind: str
    processing_ms: int
    request_hash: Optional[str] = None
    audio: Optional[Iterator[bytes]] = None
    audio_url: Optional[str] = None
    audio_bytes: Optional[int] = None
    payload: Dict[str, Any] = field(default_factory=dict)
    persistence: Optional["Future[PersistenceOutcome]"] = None


class SynthesisPipeline:
    """
    Orchestrates one synthesis request across the gateway components.

    All collaborators are injected; the pipeline keeps no per-request
    state between calls and is safe to share across server threads.

    Args:
        config: Validated gateway configuration.
        clock: Monotonic clock used for the execution budget.
    """

    def __init__(
        self,
        config: GatewayConfig,
        datastore: Datastore,
        store: LocalBlobStore,
        cache: CacheIndex,
        quota: QuotaGuard,
        client: SynthesisClient,
        orchestrator: BatchOrchestrator,
        persistence: PersistenceWorker,
        metrics: GatewayMetrics,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._config = config
        self._datastore = datastore
        self._store = store
        self._cache = cache
        self._quota = quota
        self._client = client
        self._orchestrator = orchestrator
        self._persistence = persistence
        self._metrics = metrics
        self._clock = clock
        self._preview_chars = config.logging.text_preview_chars

    def _elapsed_ms(self, started: float) -> int:
        return int(round((self._clock() - started) * 1000))

    def handle(self, user_id: str, request: SynthesisInput, started_at: Optional[float] = None) -> PipelineResult:
        """
        Run the pipeline for one caller.

        Args:
            user_id: Authenticated caller.
            request: Synthesis parameters.
            started_at: Clock reading when the HTTP request arrived.

        Raises:
            InvalidInputError, QuotaExceededError, ProviderError subclasses.
        """
        started = started_at if started_at is not None else self._clock()
        pipeline_cfg = self._config.pipeline
        provider_cfg = self._config.provider

        text = validate_text(request.text, pipeline_cfg.max_text_chars)
        voice_id = validate_voice_id(request.voice_id or provider_cfg.default_voice_id)
        model_id = validate_model_id(request.model_id or provider_cfg.default_model_id)
        settings = validate_voice_settings(
            request.voice_settings,
            provider_cfg.default_stability,
            provider_cfg.default_similarity_boost,
        )

        preview = text[:self._preview_chars] if self._preview_chars > 0 else ""
        info(_LOG, "tts_request", chars=len(text), voice_id=voice_id, text_preview=preview)

        # Stage 2: quota
        try:
            self._quota.require(user_id, character_delta=len(text))
        except QuotaExceededError as e:
            self._metrics.record_quota_denial(e.details.get("resource", "characters"))
            self._metrics.record_request("rejected")
            raise

        # Stage 3: cache
        fp = fingerprint(text, voice_id, settings)
        hit = self._cache.lookup_completed(fp, user_id)
        if hit is not None:
            size = self._store.size(hit.request.storage_path)
            elapsed = self._elapsed_ms(started)
            self._metrics.record_request("cache", duration=elapsed / 1000, audio_bytes=size)
            success(_LOG, "tts_cache_hit", request_hash=fp[:12], bytes=size, seconds=elapsed / 1000)
            return PipelineResult(
                kind="cache",
                processing_ms=elapsed,
                request_hash=fp,
                audio=self._store.open_stream(hit.request.storage_path),
                audio_url=hit.signed_url,
                audio_bytes=size,
            )

        # Stage 4: oversized input
        if len(text) > pipeline_cfg.sync_threshold:
            accepted = self._orchestrator.submit(user_id, text)
            self._metrics.record_request("batch")
            return PipelineResult(
                kind="batch",
                processing_ms=self._elapsed_ms(started),
                payload=accepted.to_dict(),
            )

        # Stage 5: request row
        with timeit("resolve_request") as t:
            row = self._datastore.get_or_create_request(
                user_id=user_id,
                text=text,
                text_hash=text_hash(text),
                request_hash=fp,
                voice_id=voice_id,
                model_id=model_id,
                voice_settings=settings,
            )
        verbose(_LOG, "stage", event="resolve_request", request_id=row.id, attempt=row.attempt, seconds=round(t.seconds, 4))

        # Stage 6: execution budget
        elapsed_s = self._clock() - started
        if elapsed_s > pipeline_cfg.execution_budget_s - pipeline_cfg.defer_margin_s:
            deferred = self._orchestrator.defer_processing(row)
            self._metrics.record_request("deferred")
            return PipelineResult(
                kind="deferred",
                processing_ms=self._elapsed_ms(started),
                request_hash=fp,
                payload=deferred.to_dict(),
            )

        # Stage 7: provider
        if row.status == RequestStatus.processing.value:
            debug(_LOG, "resynthesizing_in_flight", request_id=row.id)
        self._datastore.mark_processing(row.id)
        try:
            stream = self._client.synthesize(text, voice_id, settings, model_id)
        except ProviderError as e:
            self._datastore.mark_failed(row.id, e.message, 0)
            self._metrics.record_request("error")
            raise

        # Stage 8: tee
        tee = StreamTee(stream, name=f"tts-{row.id[:8]}")
        future = self._persistence.submit(PersistenceJob(
            request_id=row.id,
            user_id=user_id,
            fingerprint=fp,
            characters=len(text),
            stream=tee.secondary(),
        ))
        tee.start()

        elapsed = self._elapsed_ms(started)
        self._metrics.record_request("generated", duration=elapsed / 1000)
        info(_LOG, "tts_streaming", request_id=row.id, request_hash=fp[:12], source="generated", seconds=elapsed / 1000)
        return PipelineResult(
            kind="generated",
            processing_ms=elapsed,
            request_hash=fp,
            audio=self._metered(tee.primary()),
            persistence=future,
        )

    def _metered(self, chunks: Iterator[bytes]) -> Iterator[bytes]:
        for chunk in chunks:
            self._metrics.record_audio_bytes(len(chunk))
            yield chunk

    def request_status(self, user_id: str, request_hash: str) -> Dict[str, Any]:
        """Latest attempt of a fingerprint for this caller, as a JSON-ready dict."""
        row = self._datastore.find_latest_request(user_id, request_hash)
        if row is None:
            raise NotFoundError("Request not found", details={"request_hash": request_hash})

        body: Dict[str, Any] = {
            "requestHash": row.request_hash,
            "status": row.status,
            "attempt": row.attempt,
            "characters": row.characters_processed,
            "createdAt": row.created_at.isoformat() if row.created_at else None,
            "processedAt": row.processed_at.isoformat() if row.processed_at else None,
        }
        if row.error_message:
            body["errorMessage"] = row.error_message
        if row.status == RequestStatus.completed.value and row.storage_path and self._store.exists(row.storage_path):
            body["audioUrl"] = self._store.signed_url(row.storage_path)
            body["audioBytes"] = row.audio_bytes
            body["durationSeconds"] = row.audio_duration_seconds
            body["creditsUsed"] = row.credits_used
        return body

    def wait_for_background(self, timeout: Optional[float] = None) -> bool:
        """Block until persistence jobs and cache touches have finished."""
        done = self._persistence.wait(timeout)
        pending = self._cache.pending()
        if pending:
            _, not_done = wait_futures(pending, timeout=timeout)
            done = done and not not_done
        return done
