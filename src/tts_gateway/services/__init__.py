"""
Service layer: the synthesis pipeline and the webhook ingestor.

Routes call into these; they in turn compose the tts/ building blocks
and the datastore.
"""
from tts_gateway.services.tts_service import PipelineResult, SynthesisInput, SynthesisPipeline
from tts_gateway.services.webhook_service import IngestResult, WebhookIngestor, sign_payload

__all__ = [
    "IngestResult",
    "PipelineResult",
    "SynthesisInput",
    "SynthesisPipeline",
    "WebhookIngestor",
    "sign_payload",
]
