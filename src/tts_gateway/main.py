"""
FastAPI Application Entry Point.

create_app() builds every gateway component once, hangs it on
``app.state`` and registers the routers:

    - Synthesis API: /v1/tts, /v1/tts/requests/{hash}, /v1/tts/batches/{id}
    - Audio downloads: /v1/audio/{path}
    - Provider webhooks: /v1/webhooks/provider
    - Operations: /health, /metrics

Usage:
    # Run with uvicorn (factory mode, settings from TTS_GW_SETTINGS)
    uvicorn tts_gateway.main:create_app --factory --host 0.0.0.0 --port 8000

    # Or through the CLI
    tts-gateway --serve --port 8000
"""
from __future__ import annotations

import os
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from contextlib import asynccontextmanager
from typing import Callable, Optional

import httpx
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from tts_gateway import __version__
from tts_gateway.api.routes import router
from tts_gateway.api.webhooks import router as webhook_router
from tts_gateway.core.auth import IdentityProvider
from tts_gateway.core.config import Settings, load_settings
from tts_gateway.core.errors import ErrorCode, GatewayError
from tts_gateway.core.logging import configure_logging, get_logger, info, set_request_id, verbose, warn
from tts_gateway.core.metrics import GatewayMetrics
from tts_gateway.db.datastore import Datastore
from tts_gateway.services.tts_service import SynthesisPipeline
from tts_gateway.services.webhook_service import WebhookIngestor
from tts_gateway.tts.batch import BatchOrchestrator
from tts_gateway.tts.fingerprint import CacheIndex
from tts_gateway.tts.persistence import PersistenceWorker
from tts_gateway.tts.provider import SynthesisClient
from tts_gateway.tts.quota import QuotaGuard
from tts_gateway.tts.storage import LocalBlobStore

_LOG = get_logger("tts-gateway.app")

REQUEST_ID_HEADER = "X-Request-Id"


def _default_settings() -> Settings:
    return load_settings(os.getenv("TTS_GW_SETTINGS", "config/settings.yaml"), missing_ok=True)


def create_app(
    settings: Optional[Settings] = None,
    *,
    http_client: Optional[httpx.Client] = None,
    clock: Optional[Callable[[], float]] = None,
    sleep: Optional[Callable[[float], None]] = None,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        settings: Raw settings; read from TTS_GW_SETTINGS (or
            config/settings.yaml) when omitted.
        http_client: httpx.Client for provider calls (tests pass one
            backed by a MockTransport).
        clock: Monotonic clock for the execution budget.
        sleep: Sleep used between persistence retries.

    Returns:
        FastAPI: Configured application instance.

    Raises:
        ConfigValidationError: If the settings are invalid.
    """
    configure_logging()

    config = (settings or _default_settings()).get_config()

    datastore = Datastore(config.database.url, echo=config.database.echo)
    datastore.create_all()
    store = LocalBlobStore(config.storage)
    metrics = GatewayMetrics(enabled=config.metrics.enabled)

    touch_executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="tts-touch")
    cache = CacheIndex(datastore, store, touch_executor)
    quota = QuotaGuard(datastore, config.quota)
    client = SynthesisClient(config.provider, client=http_client, metrics=metrics)
    orchestrator = BatchOrchestrator(datastore, config.pipeline, metrics=metrics)
    persistence = PersistenceWorker(
        datastore, store, config.persistence, metrics=metrics, sleep=sleep or time.sleep,
    )
    pipeline = SynthesisPipeline(
        config=config,
        datastore=datastore,
        store=store,
        cache=cache,
        quota=quota,
        client=client,
        orchestrator=orchestrator,
        persistence=persistence,
        metrics=metrics,
        clock=clock or time.monotonic,
    )
    ingestor = WebhookIngestor(datastore, config.webhook, metrics=metrics)
    identity = IdentityProvider(config.auth)

    if not config.provider.api_key:
        warn(_LOG, "provider_api_key_missing", hint="set TTS_GW_PROVIDER_API_KEY")
    if not config.webhook.secret:
        warn(_LOG, "webhook_verification_disabled", hint="set TTS_GW_WEBHOOK_SECRET")

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        info(_LOG, "startup", version=__version__, database=config.database.url.split("://")[0],
             storage=config.storage.base_dir)
        yield
        info(_LOG, "shutdown", pending_persistence=not persistence.wait(0))
        persistence.shutdown(wait=True)
        touch_executor.shutdown(wait=True)
        client.close()
        datastore.dispose()

    app = FastAPI(title="tts-gateway", version=__version__, lifespan=lifespan)

    app.state.config = config
    app.state.datastore = datastore
    app.state.store = store
    app.state.metrics = metrics
    app.state.cache = cache
    app.state.orchestrator = orchestrator
    app.state.persistence = persistence
    app.state.pipeline = pipeline
    app.state.ingestor = ingestor
    app.state.identity = identity

    @app.middleware("http")
    async def request_id_middleware(request: Request, call_next):
        rid = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex[:12]
        set_request_id(rid)
        verbose(_LOG, "http_request", method=request.method, path=request.url.path)
        response = await call_next(request)
        response.headers[REQUEST_ID_HEADER] = rid
        return response

    @app.exception_handler(GatewayError)
    async def gateway_error_handler(request: Request, exc: GatewayError):
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        errors = exc.errors()
        first = errors[0] if errors else {}
        loc = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
        message = f"{loc}: {first.get('msg')}" if loc else str(first.get("msg") or "Invalid request")
        return JSONResponse(
            status_code=400,
            content={"ok": False, "error": ErrorCode.INVALID_INPUT, "message": message},
        )

    app.include_router(router)
    app.include_router(webhook_router)

    return app
