"""
Gateway API Routes.

Endpoints:
    POST /v1/tts                    - Synthesize (streams audio/mpeg) or accept (202)
    GET  /v1/tts/requests/{hash}    - Latest attempt of a request for the caller
    GET  /v1/tts/batches/{id}       - Batch job progress for its owner
    GET  /v1/audio/{path}           - Signed-URL download of stored audio
    GET  /health                    - Liveness plus datastore check
    GET  /metrics                   - Prometheus exposition

Response Headers (POST /v1/tts, 200):
    X-Audio-Source      cache | generated
    X-Request-Hash      fingerprint of text + voice + settings
    X-Processing-Time   "<ms>ms" until the response started
    X-Audio-Url         signed URL of the stored object (cache hits only)
    X-Request-Id        set by the request-id middleware on every response

Error Handling:
    {
        "ok": false,
        "error": "<ERROR_CODE>",
        "message": "<human readable message>",
        "processing_time": 12
    }

Example:
    curl -X POST http://localhost:8000/v1/tts \\
        -H "Authorization: Bearer $TOKEN" \\
        -H "Content-Type: application/json" \\
        -d '{"text": "Hello there!"}' --output speech.mp3
"""
from __future__ import annotations

import time

from fastapi import APIRouter, Depends, Query, Response
from fastapi.responses import JSONResponse, StreamingResponse
from sqlalchemy import text as sql_text

from tts_gateway import __version__
from tts_gateway.api.dependencies import (
    get_config,
    get_current_user,
    get_datastore,
    get_metrics,
    get_orchestrator,
    get_pipeline,
    get_store,
)
from tts_gateway.api.schemas import TTSRequest
from tts_gateway.core.config import GatewayConfig
from tts_gateway.core.errors import ErrorCode, ForbiddenError, GatewayError, NotFoundError
from tts_gateway.core.logging import error, get_logger, warn
from tts_gateway.core.metrics import GatewayMetrics
from tts_gateway.db.datastore import Datastore
from tts_gateway.services.tts_service import SynthesisInput, SynthesisPipeline
from tts_gateway.tts.batch import BatchOrchestrator
from tts_gateway.tts.storage import LocalBlobStore

router = APIRouter()

_LOG = get_logger("tts-gateway.api")


def _elapsed_ms(started: float) -> int:
    return int(round((time.monotonic() - started) * 1000))


def _error_response(e: GatewayError, started: float) -> JSONResponse:
    body = e.to_dict()
    body["processing_time"] = _elapsed_ms(started)
    return JSONResponse(status_code=e.status_code, content=body)


@router.post("/v1/tts", response_class=Response)
def tts_v1(
    req: TTSRequest,
    user_id: str = Depends(get_current_user),
    pipeline: SynthesisPipeline = Depends(get_pipeline),
    metrics: GatewayMetrics = Depends(get_metrics),
):
    """
    Synthesize speech for the authenticated caller.

    Returns:
        200 audio/mpeg streamed from the cache or the provider,
        202 JSON when the text became a batch job or was deferred.
    """
    started = time.monotonic()
    try:
        result = pipeline.handle(
            user_id,
            SynthesisInput(
                text=req.text,
                voice_id=req.voice_id,
                voice_settings=req.voice_settings.as_params() if req.voice_settings else None,
                model_id=req.model_id,
            ),
        )
    except GatewayError as e:
        return _error_response(e, started)
    except Exception as e:
        error(_LOG, "tts_unhandled", exc_info=True, error=str(e), error_type=type(e).__name__)
        metrics.record_request("error")
        return JSONResponse(
            status_code=500,
            content={
                "ok": False,
                "error": ErrorCode.INTERNAL_ERROR,
                "message": "Internal server error",
                "processing_time": _elapsed_ms(started),
            },
        )

    headers = {"X-Processing-Time": f"{result.processing_ms}ms"}
    if result.request_hash:
        headers["X-Request-Hash"] = result.request_hash

    if result.kind in ("batch", "deferred"):
        return JSONResponse(status_code=202, content=result.payload, headers=headers)

    headers["X-Audio-Source"] = result.kind
    if result.audio_url:
        headers["X-Audio-Url"] = result.audio_url
    if result.audio_bytes:
        headers["Content-Length"] = str(result.audio_bytes)
    return StreamingResponse(result.audio, media_type="audio/mpeg", headers=headers)


@router.get("/v1/tts/requests/{request_hash}")
def request_status(
    request_hash: str,
    user_id: str = Depends(get_current_user),
    pipeline: SynthesisPipeline = Depends(get_pipeline),
):
    return pipeline.request_status(user_id, request_hash)


@router.get("/v1/tts/batches/{batch_id}")
def batch_status(
    batch_id: str,
    user_id: str = Depends(get_current_user),
    orchestrator: BatchOrchestrator = Depends(get_orchestrator),
):
    job = orchestrator.status(batch_id, user_id)
    return {
        "batchJobId": job.id,
        "status": job.status,
        "totalChunks": job.total_chunks,
        "completedChunks": job.completed_chunks,
        "chunks": [
            {"index": c["index"], "requestId": c.get("request_id"), "characters": len(c["text"])}
            for c in job.chunks
        ],
        "createdAt": job.created_at.isoformat() if job.created_at else None,
        "updatedAt": job.updated_at.isoformat() if job.updated_at else None,
    }


@router.get("/v1/audio/{path:path}")
def audio_download(
    path: str,
    expires: int = Query(...),
    signature: str = Query(...),
    store: LocalBlobStore = Depends(get_store),
):
    """Serve a stored object behind a valid, unexpired signature."""
    try:
        valid = store.verify_signature(path, expires, signature)
        present = valid and store.exists(path)
    except ValueError:
        valid = present = False
    if not valid:
        warn(_LOG, "audio_signature_rejected", path=path)
        raise ForbiddenError("Invalid or expired signature")
    if not present:
        raise NotFoundError("Audio not found")
    return StreamingResponse(
        store.open_stream(path),
        media_type="audio/mpeg",
        headers={"Content-Length": str(store.size(path))},
    )


@router.get("/health")
def health(
    config: GatewayConfig = Depends(get_config),
    datastore: Datastore = Depends(get_datastore),
):
    try:
        with datastore.session() as s:
            s.execute(sql_text("SELECT 1"))
        db_ok = True
    except Exception as e:
        warn(_LOG, "health_db_error", error=str(e))
        db_ok = False

    return JSONResponse(
        status_code=200 if db_ok else 503,
        content={
            "status": "healthy" if db_ok else "degraded",
            "version": __version__,
            "database": "ok" if db_ok else "unavailable",
            "provider_configured": bool(config.provider.api_key),
            "webhook_verification": bool(config.webhook.secret),
        },
    )


@router.get("/metrics")
def prometheus_metrics(metrics: GatewayMetrics = Depends(get_metrics)):
    content, content_type = metrics.get_metrics_response()
    return Response(content=content, media_type=content_type)
