"""
SQLAlchemy datastore.

All reads and writes of the gateway go through Datastore. Each public
method runs in its own short transaction and returns detached ORM rows
(the session factory uses expire_on_commit=False, so attributes stay
readable after the session closes).

Consistency rules enforced here rather than in callers:
    - Request status only moves forward. Every transition is a
      conditional UPDATE ... WHERE status IN (...), and the method
      reports whether it won.
    - Usage counters are incremented with ``col = col + delta`` in SQL.
      The row for a new month is inserted first in its own transaction;
      losing that insert race is harmless.
    - Webhook event ids are unique; a second insert raises
      DuplicateEventError.

Example:
    store = Datastore("sqlite:///./tts_gateway.db")
    store.create_all()
    row = store.get_or_create_request(user_id="u1", text="Hello", ...)
"""
from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterator, List, Optional

from sqlalchemy import case, create_engine, func, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from tts_gateway.core.errors import DuplicateEventError
from tts_gateway.core.logging import debug, get_logger, warn
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
    utcnow,
)

_LOG = get_logger("tts-gateway.db")

_OPEN_STATUSES = (RequestStatus.pending.value, RequestStatus.processing.value)


def month_key(moment: Optional[datetime] = None) -> str:
    """Usage bucket for a moment in time, "YYYY-MM" (UTC)."""
    moment = moment or datetime.now(timezone.utc)
    if moment.tzinfo is not None:
        moment = moment.astimezone(timezone.utc)
    return moment.strftime("%Y-%m")


def _build_engine(url: str, echo: bool) -> Engine:
    if url.startswith("sqlite"):
        kwargs: Dict[str, Any] = {"connect_args": {"check_same_thread": False}}
        if url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
        return create_engine(url, echo=echo, **kwargs)
    return create_engine(url, echo=echo, pool_pre_ping=True)


class Datastore:
    """Transactional access to requests, batches, usage and webhook tables."""

    def __init__(self, url: str, echo: bool = False, engine: Optional[Engine] = None):
        self.engine = engine or _build_engine(url, echo)
        self._session_factory = sessionmaker(bind=self.engine, expire_on_commit=False)

    @contextmanager
    def session(self) -> Iterator[Session]:
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def create_all(self) -> None:
        Base.metadata.create_all(self.engine)

    def dispose(self) -> None:
        self.engine.dispose()

    # ─────────────────────────────────────────────────────────────────────────
    # Synthesis requests
    # ─────────────────────────────────────────────────────────────────────────

    def find_latest_request(self, user_id: str, request_hash: str) -> Optional[SynthesisRequest]:
        with self.session() as s:
            return s.scalars(
                select(SynthesisRequest)
                .where(SynthesisRequest.user_id == user_id, SynthesisRequest.request_hash == request_hash)
                .order_by(SynthesisRequest.attempt.desc())
                .limit(1)
            ).first()

    def find_completed(self, user_id: str, request_hash: str) -> Optional[SynthesisRequest]:
        """Most recent completed attempt of this fingerprint for this user."""
        with self.session() as s:
            return s.scalars(
                select(SynthesisRequest)
                .where(
                    SynthesisRequest.user_id == user_id,
                    SynthesisRequest.request_hash == request_hash,
                    SynthesisRequest.status == RequestStatus.completed.value,
                )
                .order_by(SynthesisRequest.attempt.desc())
                .limit(1)
            ).first()

    def get_request(self, request_id: str) -> Optional[SynthesisRequest]:
        with self.session() as s:
            return s.get(SynthesisRequest, request_id)

    def get_or_create_request(
        self,
        user_id: str,
        text: str,
        text_hash: str,
        request_hash: str,
        voice_id: str,
        model_id: str,
        voice_settings: Dict[str, Any],
    ) -> SynthesisRequest:
        """
        Resolve the row a synthesis should write to.

        Reuses the latest attempt unless it failed, in which case a new
        attempt row is inserted. Two callers racing on the insert both end
        up with the winner's row.
        """
        for _ in range(3):
            latest = self.find_latest_request(user_id, request_hash)
            if latest is not None and latest.status != RequestStatus.failed.value:
                return latest

            row = SynthesisRequest(
                user_id=user_id,
                text=text,
                text_hash=text_hash,
                request_hash=request_hash,
                attempt=(latest.attempt + 1) if latest else 1,
                voice_id=voice_id,
                model_id=model_id,
                voice_settings=voice_settings,
                status=RequestStatus.pending.value,
                characters_processed=len(text),
            )
            try:
                with self.session() as s:
                    s.add(row)
                debug(_LOG, "request_created", request_id=row.id, attempt=row.attempt)
                return row
            except IntegrityError:
                debug(_LOG, "request_insert_race", request_hash=request_hash[:12])

        latest = self.find_latest_request(user_id, request_hash)
        if latest is None:
            raise RuntimeError(f"could not create request row for {request_hash}")
        return latest

    def _transition(self, request_id: str, allowed_from: tuple, **values: Any) -> bool:
        with self.session() as s:
            result = s.execute(
                update(SynthesisRequest)
                .where(SynthesisRequest.id == request_id, SynthesisRequest.status.in_(allowed_from))
                .values(**values)
            )
            return result.rowcount == 1

    def mark_processing(self, request_id: str) -> bool:
        return self._transition(
            request_id, _OPEN_STATUSES,
            status=RequestStatus.processing.value, error_message=None,
        )

    def mark_deferred(self, request_id: str, message: str) -> bool:
        """Note a deferral on a pending row. Rows already in flight are left alone."""
        return self._transition(
            request_id, (RequestStatus.pending.value,),
            error_message=message,
        )

    def mark_failed(self, request_id: str, error_message: str, retry_count: int) -> bool:
        ok = self._transition(
            request_id, _OPEN_STATUSES,
            status=RequestStatus.failed.value,
            error_message=error_message,
            retry_count=retry_count,
            processed_at=utcnow(),
        )
        if not ok:
            warn(_LOG, "request_transition_rejected", request_id=request_id, target="failed")
        return ok

    def complete_request(
        self,
        request_id: str,
        user_id: str,
        storage_path: str,
        audio_bytes: int,
        duration_seconds: float,
        credits: int,
        characters: int,
        retry_count: int,
        month_year: Optional[str] = None,
        on_claimed: Optional[Callable[[], None]] = None,
    ) -> bool:
        """
        Mark a request completed and charge its usage in one transaction.

        on_claimed runs inside the transaction once the row has been
        claimed, before commit; if it raises, nothing is recorded. Only
        one caller per row ever gets that far.

        Returns False (and charges nothing) if the row was no longer open.
        """
        month_year = month_year or month_key()
        self._ensure_usage_row(user_id, month_year)
        with self.session() as s:
            result = s.execute(
                update(SynthesisRequest)
                .where(SynthesisRequest.id == request_id, SynthesisRequest.status.in_(_OPEN_STATUSES))
                .values(
                    status=RequestStatus.completed.value,
                    storage_path=storage_path,
                    audio_bytes=audio_bytes,
                    audio_duration_seconds=duration_seconds,
                    credits_used=credits,
                    characters_processed=characters,
                    retry_count=retry_count,
                    error_message=None,
                    processed_at=utcnow(),
                )
            )
            if result.rowcount != 1:
                warn(_LOG, "request_transition_rejected", request_id=request_id, target="completed")
                return False
            self._increment(s, user_id, month_year, tts_characters=characters, tts_requests=1, total_credits=credits)
            if on_claimed is not None:
                on_claimed()
        return True

    def touch_last_accessed(self, request_id: str) -> None:
        with self.session() as s:
            s.execute(
                update(SynthesisRequest)
                .where(SynthesisRequest.id == request_id)
                .values(last_accessed_at=utcnow())
            )

    # ─────────────────────────────────────────────────────────────────────────
    # Batch jobs
    # ─────────────────────────────────────────────────────────────────────────

    def create_batch_job(self, user_id: str, original_text: str, chunks: List[str]) -> BatchJob:
        job = BatchJob(
            user_id=user_id,
            original_text=original_text,
            chunks=[{"index": i, "text": c, "request_id": None} for i, c in enumerate(chunks)],
            total_chunks=len(chunks),
            completed_chunks=0,
            status=BatchStatus.pending.value,
        )
        with self.session() as s:
            s.add(job)
        return job

    def get_batch_job(self, job_id: str) -> Optional[BatchJob]:
        with self.session() as s:
            return s.get(BatchJob, job_id)

    def resolve_chunk(self, job_id: str, index: int, request_id: Optional[str], failed: bool = False) -> BatchJob:
        """
        Record the outcome of one chunk and recompute the job status.

        A failed chunk fails the whole job. Terminal jobs are not touched.
        """
        with self.session() as s:
            job = s.scalars(select(BatchJob).where(BatchJob.id == job_id).with_for_update()).first()
            if job is None:
                raise KeyError(job_id)
            if job.status in (BatchStatus.completed.value, BatchStatus.failed.value):
                return job
            if not 0 <= index < job.total_chunks:
                raise IndexError(f"chunk {index} out of range for job {job_id}")

            chunks = [dict(c) for c in job.chunks]
            if failed:
                job.status = BatchStatus.failed.value
            else:
                chunks[index]["request_id"] = request_id
                done = sum(1 for c in chunks if c.get("request_id"))
                job.completed_chunks = done
                job.status = BatchStatus.completed.value if done == job.total_chunks else BatchStatus.processing.value
            job.chunks = chunks
            return job

    # ─────────────────────────────────────────────────────────────────────────
    # Usage
    # ─────────────────────────────────────────────────────────────────────────

    def get_usage(self, user_id: str, month_year: Optional[str] = None) -> Optional[UsageCounter]:
        with self.session() as s:
            return s.scalars(
                select(UsageCounter).where(
                    UsageCounter.user_id == user_id,
                    UsageCounter.month_year == (month_year or month_key()),
                )
            ).first()

    def _ensure_usage_row(self, user_id: str, month_year: str) -> None:
        if self.get_usage(user_id, month_year) is not None:
            return
        try:
            with self.session() as s:
                s.add(UsageCounter(user_id=user_id, month_year=month_year))
        except IntegrityError:
            # another writer created it first
            pass

    @staticmethod
    def _increment(s: Session, user_id: str, month_year: str, **deltas: Any) -> None:
        values = {
            name: getattr(UsageCounter, name) + delta
            for name, delta in deltas.items()
            if delta
        }
        if not values:
            return
        values["updated_at"] = utcnow()
        s.execute(
            update(UsageCounter)
            .where(UsageCounter.user_id == user_id, UsageCounter.month_year == month_year)
            .values(**values)
        )

    def increment_usage(
        self,
        user_id: str,
        month_year: Optional[str] = None,
        characters: int = 0,
        requests: int = 0,
        minutes: float = 0.0,
        conversations: int = 0,
        credits: int = 0,
    ) -> None:
        month_year = month_year or month_key()
        self._ensure_usage_row(user_id, month_year)
        with self.session() as s:
            self._increment(
                s, user_id, month_year,
                tts_characters=characters,
                tts_requests=requests,
                conversation_minutes=minutes,
                conversation_count=conversations,
                total_credits=credits,
            )

    def apply_usage_snapshot(
        self,
        user_id: str,
        month_year: Optional[str] = None,
        characters: int = 0,
        minutes: float = 0.0,
        credits: int = 0,
    ) -> None:
        """Raise counters to a provider-reported snapshot; never lowers them."""
        month_year = month_year or month_key()
        self._ensure_usage_row(user_id, month_year)

        def raise_to(column, value):
            return case((column < value, value), else_=column)

        with self.session() as s:
            s.execute(
                update(UsageCounter)
                .where(UsageCounter.user_id == user_id, UsageCounter.month_year == month_year)
                .values(
                    tts_characters=raise_to(UsageCounter.tts_characters, characters),
                    conversation_minutes=raise_to(UsageCounter.conversation_minutes, minutes),
                    total_credits=raise_to(UsageCounter.total_credits, credits),
                    updated_at=utcnow(),
                )
            )

    # ─────────────────────────────────────────────────────────────────────────
    # Webhook events
    # ─────────────────────────────────────────────────────────────────────────

    def get_webhook_event(self, event_id: str) -> Optional[WebhookEvent]:
        with self.session() as s:
            return s.scalars(select(WebhookEvent).where(WebhookEvent.event_id == event_id)).first()

    def insert_webhook_event(self, event_id: str, event_type: str, payload: Dict[str, Any]) -> WebhookEvent:
        row = WebhookEvent(event_id=event_id, event_type=event_type, payload=payload)
        try:
            with self.session() as s:
                s.add(row)
        except IntegrityError as e:
            raise DuplicateEventError(event_id) from e
        return row

    def mark_event_processed(self, event_id: str) -> None:
        with self.session() as s:
            s.execute(
                update(WebhookEvent)
                .where(WebhookEvent.event_id == event_id)
                .values(processed_at=utcnow(), last_error=None)
            )

    def record_event_failure(self, event_id: str, error_message: str) -> int:
        """Store the handler error and bump retry_count by one. Returns the new count."""
        with self.session() as s:
            s.execute(
                update(WebhookEvent)
                .where(WebhookEvent.event_id == event_id)
                .values(
                    retry_count=func.coalesce(WebhookEvent.retry_count, 0) + 1,
                    last_error=error_message,
                    last_error_at=utcnow(),
                )
            )
            return s.scalar(select(WebhookEvent.retry_count).where(WebhookEvent.event_id == event_id)) or 0

    # ─────────────────────────────────────────────────────────────────────────
    # Provider entities (conversations, voices, agents)
    # ─────────────────────────────────────────────────────────────────────────

    def _upsert(self, model, key_name: str, key: str, fields: Dict[str, Any]):
        for _ in range(2):
            try:
                with self.session() as s:
                    row = s.scalars(select(model).where(getattr(model, key_name) == key)).first()
                    if row is None:
                        row = model(**{key_name: key}, **fields)
                        s.add(row)
                    else:
                        for name, value in fields.items():
                            setattr(row, name, value)
                    return row
            except IntegrityError:
                debug(_LOG, "upsert_race", table=model.__tablename__, key=key)
        raise RuntimeError(f"upsert of {model.__tablename__} {key} kept conflicting")

    def get_agent(self, agent_id: str) -> Optional[Agent]:
        with self.session() as s:
            return s.scalars(select(Agent).where(Agent.agent_id == agent_id)).first()

    def upsert_agent(self, agent_id: str, **fields: Any) -> Agent:
        return self._upsert(Agent, "agent_id", agent_id, fields)

    def upsert_voice(self, voice_id: str, **fields: Any) -> Voice:
        return self._upsert(Voice, "voice_id", voice_id, fields)

    def get_conversation(self, conversation_id: str) -> Optional[Conversation]:
        with self.session() as s:
            return s.scalars(select(Conversation).where(Conversation.conversation_id == conversation_id)).first()

    def record_conversation(
        self,
        conversation_id: str,
        user_id: Optional[str],
        duration_seconds: float,
        month_year: Optional[str] = None,
        **fields: Any,
    ) -> bool:
        """
        Upsert a finished conversation and charge its minutes once.

        Returns True if this call charged the usage counter.
        """
        self._upsert(
            Conversation, "conversation_id", conversation_id,
            dict(fields, user_id=user_id, duration_seconds=duration_seconds, status="completed"),
        )
        if not user_id or duration_seconds <= 0:
            return False

        month_year = month_year or month_key()
        self._ensure_usage_row(user_id, month_year)
        with self.session() as s:
            claimed = s.execute(
                update(Conversation)
                .where(Conversation.conversation_id == conversation_id, Conversation.usage_recorded.is_(False))
                .values(usage_recorded=True)
            ).rowcount == 1
            if claimed:
                self._increment(
                    s, user_id, month_year,
                    conversation_minutes=duration_seconds / 60.0,
                    conversation_count=1,
                )
        return claimed
