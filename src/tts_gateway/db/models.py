"""
Relational models for the gateway.

Tables:
    tts_requests     one row per synthesis attempt, keyed by
                     (user_id, request_hash, attempt)
    tts_batch_jobs   oversized inputs split into ordered chunks
    tts_usage        per-user monthly counters, one row per (user_id, month_year)
    webhook_events   provider events, unique by event_id
    conversations    call transcripts reported by the provider
    voices           provider voice metadata
    agents           provider conversational agents

Status columns store plain strings; the allowed values live in the
RequestStatus and BatchStatus enums.
"""
import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Float,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class RequestStatus(str, enum.Enum):
    """Lifecycle of a synthesis request. Only forward moves are allowed."""
    pending = "pending"
    processing = "processing"
    completed = "completed"
    failed = "failed"


class BatchStatus(str, enum.Enum):
    pending = "pending"
    processing = "processing"
    completed = "completed"
    failed = "failed"


class SynthesisRequest(Base):
    """
    One synthesis attempt of (user, text, voice, params).

    Attributes:
        request_hash: Fingerprint of text + voice_id + voice settings.
        attempt: 1 for the first row; a retry after a failed row gets attempt + 1.
        storage_path: "<user_id>/<request_hash>.mp3" once persisted.
        audio_duration_seconds: Estimated from byte size at 128 kbps.
        credits_used: ceil(characters / 1000).
        retry_count: Upload attempts spent by the persistence worker.
    """
    __tablename__ = "tts_requests"
    __table_args__ = (
        UniqueConstraint("user_id", "request_hash", "attempt", name="uq_tts_requests_user_hash_attempt"),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(255), nullable=False, index=True)
    text = Column(Text, nullable=False)
    text_hash = Column(String(64), nullable=False)
    request_hash = Column(String(64), nullable=False, index=True)
    attempt = Column(Integer, nullable=False, default=1)
    voice_id = Column(String(100), nullable=False)
    model_id = Column(String(100), nullable=False)
    voice_settings = Column(JSON, nullable=False, default=dict)
    status = Column(String(20), nullable=False, default=RequestStatus.pending.value)
    storage_path = Column(Text, nullable=True)
    audio_duration_seconds = Column(Float, nullable=True)
    audio_bytes = Column(Integer, nullable=True)
    credits_used = Column(Integer, nullable=True)
    characters_processed = Column(Integer, nullable=False, default=0)
    error_message = Column(Text, nullable=True)
    retry_count = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    processed_at = Column(DateTime(timezone=True), nullable=True)
    last_accessed_at = Column(DateTime(timezone=True), nullable=True)

    def __repr__(self):
        return f"<SynthesisRequest {self.id} hash={self.request_hash[:12]} status={self.status}>"


class BatchJob(Base):
    """
    Oversized input split into ordered chunks.

    chunks is a JSON list of {"index", "text", "request_id"}; request_id
    stays null until the chunk has been synthesized.
    """
    __tablename__ = "tts_batch_jobs"

    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(String(255), nullable=False, index=True)
    original_text = Column(Text, nullable=False)
    chunks = Column(JSON, nullable=False, default=list)
    total_chunks = Column(Integer, nullable=False)
    completed_chunks = Column(Integer, nullable=False, default=0)
    status = Column(String(20), nullable=False, default=BatchStatus.pending.value)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    def __repr__(self):
        return f"<BatchJob {self.id} {self.completed_chunks}/{self.total_chunks} status={self.status}>"


class UsageCounter(Base):
    """Monthly usage per user. month_year is "YYYY-MM"."""
    __tablename__ = "tts_usage"
    __table_args__ = (
        UniqueConstraint("user_id", "month_year", name="uq_tts_usage_user_month"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(255), nullable=False)
    month_year = Column(String(7), nullable=False)
    tts_characters = Column(Integer, nullable=False, default=0)
    tts_requests = Column(Integer, nullable=False, default=0)
    conversation_minutes = Column(Float, nullable=False, default=0.0)
    conversation_count = Column(Integer, nullable=False, default=0)
    total_credits = Column(Integer, nullable=False, default=0)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)


class WebhookEvent(Base):
    __tablename__ = "webhook_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    event_id = Column(String(255), nullable=False, unique=True)
    event_type = Column(String(100), nullable=False)
    payload = Column(JSON, nullable=False)
    received_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    processed_at = Column(DateTime(timezone=True), nullable=True)
    retry_count = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    last_error_at = Column(DateTime(timezone=True), nullable=True)


class Agent(Base):
    __tablename__ = "agents"

    id = Column(Integer, primary_key=True, autoincrement=True)
    agent_id = Column(String(255), nullable=False, unique=True)
    user_id = Column(String(255), nullable=True, index=True)
    name = Column(String(255), nullable=True)
    description = Column(Text, nullable=True)
    language = Column(String(20), nullable=True)
    voice_id = Column(String(100), nullable=True)
    config = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)


class Conversation(Base):
    """
    A provider call. usage_recorded guards against counting its minutes twice.
    """
    __tablename__ = "conversations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    conversation_id = Column(String(255), nullable=False, unique=True)
    agent_id = Column(String(255), nullable=True)
    user_id = Column(String(255), nullable=True, index=True)
    status = Column(String(50), nullable=True)
    transcript = Column(JSON, nullable=True)
    analysis = Column(JSON, nullable=True)
    metadata_json = Column("metadata", JSON, nullable=True)
    duration_seconds = Column(Float, nullable=False, default=0.0)
    usage_recorded = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)


class Voice(Base):
    __tablename__ = "voices"

    id = Column(Integer, primary_key=True, autoincrement=True)
    voice_id = Column(String(100), nullable=False, unique=True)
    name = Column(String(255), nullable=True)
    category = Column(String(100), nullable=True)
    description = Column(Text, nullable=True)
    labels = Column(JSON, nullable=True)
    settings = Column(JSON, nullable=True)
    preview_url = Column(Text, nullable=True)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)
