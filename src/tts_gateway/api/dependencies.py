"""
FastAPI Dependency Providers.

Components are built once by create_app() and hung on ``app.state``;
these functions hand them to route handlers. Nothing here is a module
level singleton, so every app instance (one per test) is isolated.

Usage in Route Handlers:
    @router.post("/v1/tts")
    def tts_v1(
        req: TTSRequest,
        user_id: str = Depends(get_current_user),
        pipeline: SynthesisPipeline = Depends(get_pipeline),
    ): ...
"""
from __future__ import annotations

from typing import Optional

from fastapi import Header, Request

from tts_gateway.core.auth import IdentityProvider
from tts_gateway.core.config import GatewayConfig
from tts_gateway.core.metrics import GatewayMetrics
from tts_gateway.db.datastore import Datastore
from tts_gateway.services.tts_service import SynthesisPipeline
from tts_gateway.services.webhook_service import WebhookIngestor
from tts_gateway.tts.batch import BatchOrchestrator
from tts_gateway.tts.storage import LocalBlobStore


def get_config(request: Request) -> GatewayConfig:
    return request.app.state.config


def get_pipeline(request: Request) -> SynthesisPipeline:
    return request.app.state.pipeline


def get_ingestor(request: Request) -> WebhookIngestor:
    return request.app.state.ingestor


def get_orchestrator(request: Request) -> BatchOrchestrator:
    return request.app.state.orchestrator


def get_store(request: Request) -> LocalBlobStore:
    return request.app.state.store


def get_datastore(request: Request) -> Datastore:
    return request.app.state.datastore


def get_metrics(request: Request) -> GatewayMetrics:
    return request.app.state.metrics


def get_current_user(request: Request, authorization: Optional[str] = Header(default=None)) -> str:
    """
    Authenticated user id for the request.

    Raises:
        UnauthenticatedError: Missing or unknown bearer token (401).
    """
    identity: IdentityProvider = request.app.state.identity
    return identity.authenticate(authorization)
