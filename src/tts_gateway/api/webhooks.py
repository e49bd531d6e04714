"""
Provider webhook endpoint.

    POST /v1/webhooks/provider
    X-ElevenLabs-Signature: sha256=<hex>      (header name configurable)

Responses:
    200 {"status": "processed" | "already_processed", "event_id": ...}
    400 invalid JSON
    401 missing or wrong signature
    500 {"error": ..., "event_id": ...} so the provider redelivers

The handler is async only to read the raw body (the signature covers
the exact bytes); ingestion itself runs in the threadpool like every
other route.
"""
from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from tts_gateway.api.dependencies import get_config, get_ingestor
from tts_gateway.core.config import GatewayConfig
from tts_gateway.core.errors import GatewayError
from tts_gateway.core.logging import get_logger, warn
from tts_gateway.services.webhook_service import WebhookIngestor

router = APIRouter()

_LOG = get_logger("tts-gateway.api.webhooks")


@router.post("/v1/webhooks/provider")
async def provider_webhook(
    request: Request,
    config: GatewayConfig = Depends(get_config),
    ingestor: WebhookIngestor = Depends(get_ingestor),
):
    raw_body = await request.body()
    signature = request.headers.get(config.webhook.signature_header)
    try:
        result = await run_in_threadpool(ingestor.ingest, raw_body, signature)
    except GatewayError as e:
        warn(_LOG, "webhook_rejected", code=e.code, message=e.message)
        return JSONResponse(status_code=e.status_code, content=e.to_dict())
    return JSONResponse(status_code=result.http_status, content=result.to_dict())
