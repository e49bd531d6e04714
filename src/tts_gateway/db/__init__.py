"""Relational persistence: SQLAlchemy models and the Datastore facade."""
from tts_gateway.db.datastore import Datastore, month_key
from tts_gateway.db.models import (
    Agent,
    Base,
    BatchJob,
    BatchStatus,
    Conversation,
    RequestStatus,
    SynthesisRequest,
    UsageCounter,
    Voice,
    WebhookEvent,
)

__all__ = [
    "Agent",
    "Base",
    "BatchJob",
    "BatchStatus",
    "Conversation",
    "Datastore",
    "RequestStatus",
    "SynthesisRequest",
    "UsageCounter",
    "Voice",
    "WebhookEvent",
    "month_key",
]
