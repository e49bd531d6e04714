"""
Webhook Ingestor for provider events.

Providers deliver at least once, so ingestion is idempotent on the
event id and every handler is an upsert.

Flow:
    1. Verify "sha256=<hex hmac>" over the raw body when a secret is
       configured (before the body is parsed).
    2. Parse JSON and derive the event id: event_id, else
       data.conversation_id, else "{type}_{epoch_ms}".
    3. Already processed -> "already_processed", no handler runs.
    4. Record the event (or reuse the unprocessed row of an earlier,
       failed delivery), dispatch it, then mark it processed. A handler
       error is stored on the row with retry_count + 1 and answered
       with 500 so the provider redelivers.

Events:
    post_call_transcription          -> TranscriptionCompleted
    usage_updated                    -> UsageUpdated
    voice_created / voice_updated    -> VoiceChanged
    agent_created / agent_updated    -> AgentChanged
    anything else                    -> UnknownEvent (acknowledged, ignored)
"""
from __future__ import annotations

import hashlib
import hmac
import json
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Union

from tts_gateway.core.config import WebhookConfig
from tts_gateway.core.errors import DuplicateEventError, InvalidInputError, SignatureInvalidError
from tts_gateway.core.logging import error, get_logger, info, success, verbose, warn
from tts_gateway.core.metrics import GatewayMetrics
from tts_gateway.db.datastore import Datastore, month_key

_LOG = get_logger("tts-gateway.webhooks")


def sign_payload(secret: str, body: bytes) -> str:
    """Signature header value for a raw body."""
    return "sha256=" + hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


# ─────────────────────────────────────────────────────────────────────────────
# Events
# ─────────────────────────────────────────────────────────────────────────────

@dataclass
class TranscriptionCompleted:
    conversation_id: str
    agent_id: Optional[str]
    user_id: Optional[str]
    agent_name: Optional[str]
    duration_seconds: float
    started_at: Optional[datetime]
    transcript: Any = None
    analysis: Any = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class UsageUpdated:
    user_id: str
    characters: int
    minutes: float
    credits: int


@dataclass
class VoiceChanged:
    voice_id: str
    name: Optional[str] = None
    category: Optional[str] = None
    description: Optional[str] = None
    labels: Dict[str, Any] = field(default_factory=dict)
    settings: Optional[Dict[str, Any]] = None
    preview_url: Optional[str] = None


@dataclass
class AgentChanged:
    agent_id: str
    user_id: Optional[str] = None
    name: Optional[str] = None
    description: Optional[str] = None
    voice_id: Optional[str] = None
    language: Optional[str] = None
    config: Dict[str, Any] = field(default_factory=dict)


@dataclass
class UnknownEvent:
    event_type: str


ProviderEvent = Union[TranscriptionCompleted, UsageUpdated, VoiceChanged, AgentChanged, UnknownEvent]


def parse_timestamp(value: Any) -> Optional[datetime]:
    """ISO-8601 string or unix seconds to an aware datetime; None if unusable."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return None


def _positive_number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value) if value > 0 else None


def resolve_call_duration(data: Dict[str, Any]) -> float:
    """
    Call length in seconds from the first usable source:

        metadata.call_duration_secs, analysis.duration_seconds,
        analysis.call_duration_secs, transcript.duration,
        ended_at - started_at, else 0.
    """
    metadata = data.get("metadata") if isinstance(data.get("metadata"), dict) else {}
    analysis = data.get("analysis") if isinstance(data.get("analysis"), dict) else {}
    transcript = data.get("transcript") if isinstance(data.get("transcript"), dict) else {}

    for candidate in (
        metadata.get("call_duration_secs"),
        analysis.get("duration_seconds"),
        analysis.get("call_duration_secs"),
    ):
        seconds = _positive_number(candidate)
        if seconds is not None:
            return seconds

    seconds = _positive_number(transcript.get("duration"))
    if seconds is not None:
        return float(round(seconds))

    start = parse_timestamp(data.get("started_at"))
    end = parse_timestamp(data.get("ended_at"))
    if start and end and end > start:
        return float(round((end - start).total_seconds()))
    return 0.0


def _required(data: Dict[str, Any], key: str, event_type: str) -> str:
    value = data.get(key)
    if not value:
        raise ValueError(f"{event_type} event is missing {key}")
    return str(value)


def parse_event(event_type: str, data: Dict[str, Any]) -> ProviderEvent:
    if event_type == "post_call_transcription":
        metadata = data.get("metadata") if isinstance(data.get("metadata"), dict) else {}
        return TranscriptionCompleted(
            conversation_id=_required(data, "conversation_id", event_type),
            agent_id=data.get("agent_id"),
            user_id=data.get("user_id"),
            agent_name=data.get("agent_name"),
            duration_seconds=resolve_call_duration(data),
            started_at=parse_timestamp(data.get("started_at")),
            transcript=data.get("transcript"),
            analysis=data.get("analysis"),
            metadata=metadata,
        )
    if event_type == "usage_updated":
        usage = data.get("usage_data") if isinstance(data.get("usage_data"), dict) else {}
        return UsageUpdated(
            user_id=_required(data, "user_id", event_type),
            characters=int(usage.get("tts_characters") or 0),
            minutes=float(usage.get("conversation_minutes") or 0.0),
            credits=int(usage.get("total_credits") or 0),
        )
    if event_type in ("voice_created", "voice_updated"):
        return VoiceChanged(
            voice_id=_required(data, "voice_id", event_type),
            name=data.get("name"),
            category=data.get("category"),
            description=data.get("description"),
            labels=data.get("labels") or {},
            settings=data.get("settings"),
            preview_url=data.get("preview_url"),
        )
    if event_type in ("agent_created", "agent_updated"):
        return AgentChanged(
            agent_id=_required(data, "agent_id", event_type),
            user_id=data.get("user_id"),
            name=data.get("name"),
            description=data.get("description"),
            voice_id=data.get("voice_id"),
            language=data.get("language"),
            config=data.get("config") or {},
        )
    return UnknownEvent(event_type=event_type)


# ─────────────────────────────────────────────────────────────────────────────
# Ingestor
# ─────────────────────────────────────────────────────────────────────────────

@dataclass
class IngestResult:
    status: str                 # "processed", "already_processed" or "failed"
    event_id: str
    event_type: str = "unknown"
    error: Optional[str] = None

    @property
    def http_status(self) -> int:
        return 500 if self.status == "failed" else 200

    def to_dict(self) -> Dict[str, Any]:
        if self.status == "failed":
            return {"error": self.error or "Handler failed", "event_id": self.event_id}
        return {"status": self.status, "event_id": self.event_id}


class WebhookIngestor:
    def __init__(
        self,
        datastore: Datastore,
        config: WebhookConfig,
        metrics: Optional[GatewayMetrics] = None,
        clock: Callable[[], float] = time.time,
    ):
        self._datastore = datastore
        self._config = config
        self._metrics = metrics
        self._clock = clock
        self._handlers: Dict[type, Callable[[Any], None]] = {
            TranscriptionCompleted: self._on_transcription,
            UsageUpdated: self._on_usage,
            VoiceChanged: self._on_voice,
            AgentChanged: self._on_agent,
            UnknownEvent: self._on_unknown,
        }

    def verify_signature(self, raw_body: bytes, signature: Optional[str]) -> None:
        if not self._config.secret:
            return
        if not signature:
            raise SignatureInvalidError("Missing signature")
        if not hmac.compare_digest(sign_payload(self._config.secret, raw_body), signature.strip()):
            raise SignatureInvalidError()

    def derive_event_id(self, payload: Dict[str, Any]) -> str:
        if payload.get("event_id"):
            return str(payload["event_id"])
        data = payload.get("data")
        if isinstance(data, dict) and data.get("conversation_id"):
            return str(data["conversation_id"])
        return f"{payload.get('type') or 'unknown'}_{int(self._clock() * 1000)}"

    def _record(self, event_type: str, outcome: str) -> None:
        if self._metrics is not None:
            self._metrics.record_webhook(event_type, outcome)

    def ingest(self, raw_body: bytes, signature: Optional[str]) -> IngestResult:
        """
        Verify, record and dispatch one delivery.

        Raises:
            SignatureInvalidError: Secret configured and signature missing or wrong.
            InvalidInputError: Body is not a JSON object.
        """
        self.verify_signature(raw_body, signature)

        try:
            payload = json.loads(raw_body)
        except (ValueError, UnicodeDecodeError) as e:
            raise InvalidInputError("Invalid JSON payload") from e
        if not isinstance(payload, dict):
            raise InvalidInputError("Webhook payload must be a JSON object")

        event_type = str(payload.get("type") or "unknown")
        event_id = self.derive_event_id(payload)
        info(_LOG, "webhook_received", event_id=event_id, type=event_type)

        existing = self._datastore.get_webhook_event(event_id)
        if existing is not None and existing.processed_at is not None:
            self._record(event_type, "already_processed")
            info(_LOG, "webhook_duplicate", event_id=event_id, status="already_processed")
            return IngestResult("already_processed", event_id, event_type)

        if existing is None:
            try:
                self._datastore.insert_webhook_event(event_id, event_type, payload)
            except DuplicateEventError:
                self._record(event_type, "already_processed")
                info(_LOG, "webhook_duplicate", event_id=event_id, status="already_processed")
                return IngestResult("already_processed", event_id, event_type)
        else:
            verbose(_LOG, "webhook_redelivery", event_id=event_id, retry_count=existing.retry_count)

        data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
        try:
            event = parse_event(event_type, data)
            self._handlers[type(event)](event)
        except Exception as e:
            message = str(e) or e.__class__.__name__
            retries = self._datastore.record_event_failure(event_id, message)
            error(_LOG, "webhook_handler_failed", event_id=event_id, type=event_type,
                  error=message, retry_count=retries)
            self._record(event_type, "failed")
            return IngestResult("failed", event_id, event_type, error=message)

        self._datastore.mark_event_processed(event_id)
        self._record(event_type, "processed")
        success(_LOG, "webhook_processed", event_id=event_id, type=event_type)
        return IngestResult("processed", event_id, event_type)

    # ─────────────────────────────────────────────────────────────────────
    # Handlers
    # ─────────────────────────────────────────────────────────────────────

    def _on_transcription(self, event: TranscriptionCompleted) -> None:
        agent = self._datastore.get_agent(event.agent_id) if event.agent_id else None
        user_id = (agent.user_id if agent else None) or event.user_id
        if not user_id:
            raise ValueError(f"No user mapping found for agent {event.agent_id}")
        if event.agent_id and (agent is None or agent.user_id is None):
            self._datastore.upsert_agent(event.agent_id, user_id=user_id, name=event.agent_name or "Unknown Agent")

        if event.duration_seconds <= 0:
            warn(_LOG, "conversation_without_duration", conversation_id=event.conversation_id)

        charged = self._datastore.record_conversation(
            conversation_id=event.conversation_id,
            user_id=user_id,
            duration_seconds=event.duration_seconds,
            month_year=month_key(event.started_at),
            agent_id=event.agent_id,
            transcript=event.transcript,
            analysis=event.analysis,
            metadata_json=event.metadata,
        )
        info(_LOG, "conversation_recorded", conversation_id=event.conversation_id,
             duration=event.duration_seconds, charged=charged)

    def _on_usage(self, event: UsageUpdated) -> None:
        self._datastore.apply_usage_snapshot(
            event.user_id,
            month_key(),
            characters=event.characters,
            minutes=event.minutes,
            credits=event.credits,
        )

    def _on_voice(self, event: VoiceChanged) -> None:
        self._datastore.upsert_voice(
            event.voice_id,
            name=event.name,
            category=event.category,
            description=event.description,
            labels=event.labels,
            settings=event.settings,
            preview_url=event.preview_url,
        )

    def _on_agent(self, event: AgentChanged) -> None:
        user_id = event.user_id
        if not user_id:
            existing = self._datastore.get_agent(event.agent_id)
            user_id = existing.user_id if existing else None
        if not user_id:
            error(_LOG, "agent_without_user", agent_id=event.agent_id)
            return
        self._datastore.upsert_agent(
            event.agent_id,
            user_id=user_id,
            name=event.name or "Unnamed Agent",
            description=event.description,
            voice_id=event.voice_id,
            language=event.language,
            config=event.config,
        )

    def _on_unknown(self, event: UnknownEvent) -> None:
        info(_LOG, "webhook_unhandled_type", type=event.event_type)
