"""
Persistence Worker.

Runs after the caller already has (or is receiving) its audio:

    1. Drain the tee's secondary branch into one buffer.
    2. Up to max_attempts times:
         stage the audio next to {user_id}/{fingerprint}.mp3, then in one
         transaction mark the request completed, add its characters, one
         request and its credits to the month's usage counter, and move
         the staged object into place. An attempt that finds the row no
         longer open (another attempt won) discards its staged copy, so
         the stored object always matches the completed row.
       Between failed attempts sleep base_delay * 2**n (2s, 4s by default).
    3. If every attempt failed, mark the request failed with the last
       error and the number of attempts spent.

A failure while draining (provider stream broke, empty audio) marks the
request failed at once; there is nothing to retry with.

Jobs run on a dedicated ThreadPoolExecutor and submit() returns a
Future[PersistenceOutcome]. Errors are reported through the outcome and
the request row, never raised into the HTTP path.

Usage:
    worker = PersistenceWorker(datastore, store, config.persistence)
    future = worker.submit(PersistenceJob(request_id, user_id, fp, chars, tee.secondary()))
    outcome = future.result()
"""
from __future__ import annotations

import math
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import wait as wait_futures
from dataclasses import dataclass
from functools import partial
from typing import Callable, Iterable, List, Optional

from tts_gateway.core.config import PersistenceConfig
from tts_gateway.core.errors import PersistenceError
from tts_gateway.core.logging import (
    error,
    fail,
    get_logger,
    get_request_id,
    set_request_id,
    success,
    verbose,
    warn,
)
from tts_gateway.core.metrics import GatewayMetrics
from tts_gateway.db.datastore import Datastore, month_key
from tts_gateway.tts.storage import LocalBlobStore, object_path
from tts_gateway.utils.timeit import timeit

_LOG = get_logger("tts-gateway.persistence")


@dataclass
class PersistenceJob:
    """
    Attributes:
        request_id: SynthesisRequest row to finalise.
        user_id: Owner; also the storage prefix and usage bucket.
        fingerprint: Request hash, used as the object name.
        characters: Billable characters of the text.
        stream: Audio chunks (the tee's secondary branch).
    """
    request_id: str
    user_id: str
    fingerprint: str
    characters: int
    stream: Iterable[bytes]


@dataclass
class PersistenceOutcome:
    request_id: str
    status: str                     # "completed", "failed" or "rejected"
    attempts: int
    audio_bytes: int = 0
    storage_path: Optional[str] = None
    error: Optional[str] = None


def estimate_duration_seconds(num_bytes: int, bitrate_kbps: int) -> float:
    """Constant-bitrate estimate: bytes * 8 / bitrate."""
    return round(num_bytes * 8 / (bitrate_kbps * 1000), 3)


def credits_for(characters: int, chars_per_credit: int) -> int:
    return math.ceil(characters / chars_per_credit) if characters > 0 else 0


class PersistenceWorker:
    def __init__(
        self,
        datastore: Datastore,
        store: LocalBlobStore,
        config: PersistenceConfig,
        metrics: Optional[GatewayMetrics] = None,
        sleep: Callable[[float], None] = time.sleep,
        month: Callable[[], str] = month_key,
    ):
        self._datastore = datastore
        self._store = store
        self._config = config
        self._metrics = metrics
        self._sleep = sleep
        self._month = month
        self._executor = ThreadPoolExecutor(max_workers=config.max_workers, thread_name_prefix="tts-persist")
        self._futures: List[Future] = []
        self._lock = threading.Lock()
        self._in_flight = 0

    def submit(self, job: PersistenceJob) -> "Future[PersistenceOutcome]":
        rid = get_request_id()
        future = self._executor.submit(self._run_with_context, job, rid)
        with self._lock:
            self._futures = [f for f in self._futures if not f.done()]
            self._futures.append(future)
        return future

    def _run_with_context(self, job: PersistenceJob, rid: str) -> PersistenceOutcome:
        set_request_id(rid)
        self._adjust_in_flight(1)
        try:
            return self.run(job)
        finally:
            self._adjust_in_flight(-1)

    def _adjust_in_flight(self, delta: int) -> None:
        with self._lock:
            self._in_flight += delta
            count = self._in_flight
        if self._metrics is not None:
            self._metrics.set_persistence_in_flight(count)

    def _record(self, status: str) -> None:
        if self._metrics is not None:
            self._metrics.record_persistence(status)

    def run(self, job: PersistenceJob) -> PersistenceOutcome:
        """Persist one job synchronously. Never raises."""
        try:
            with timeit("drain") as t:
                audio = b"".join(job.stream)
            if not audio:
                raise PersistenceError("Provider returned no audio", details={"request_id": job.request_id})
        except Exception as e:
            msg = f"Audio stream failed: {e}"
            fail(_LOG, "persist_drain_failed", request_id=job.request_id, error=str(e))
            self._mark_failed(job.request_id, msg, 0)
            self._record("failed")
            return PersistenceOutcome(job.request_id, "failed", attempts=0, error=msg)

        verbose(_LOG, "persist_drained", request_id=job.request_id, bytes=len(audio), seconds=round(t.seconds, 4))

        path = object_path(job.user_id, job.fingerprint)
        last_error = ""
        max_attempts = self._config.max_attempts
        for attempt in range(1, max_attempts + 1):
            if self._metrics is not None:
                self._metrics.inc_persistence_attempts()
            staged: Optional[str] = None
            try:
                with timeit("persist_attempt") as t:
                    staged = self._store.stage(path, audio)
                    won = self._datastore.complete_request(
                        request_id=job.request_id,
                        user_id=job.user_id,
                        storage_path=path,
                        audio_bytes=len(audio),
                        duration_seconds=estimate_duration_seconds(len(audio), self._config.bitrate_kbps),
                        credits=credits_for(job.characters, self._config.chars_per_credit),
                        characters=job.characters,
                        retry_count=attempt - 1,
                        month_year=self._month(),
                        on_claimed=partial(self._store.promote, staged, path),
                    )
            except Exception as e:
                self._discard(staged)
                last_error = str(e) or e.__class__.__name__
                warn(_LOG, "persist_attempt_failed", request_id=job.request_id, attempt=attempt, error=last_error)
                if attempt < max_attempts:
                    delay = self._config.base_delay_s * (2 ** attempt)
                    verbose(_LOG, "persist_backoff", request_id=job.request_id, delay=delay)
                    self._sleep(delay)
                continue

            if not won:
                self._discard(staged)
                self._record("rejected")
                return PersistenceOutcome(job.request_id, "rejected", attempts=attempt, audio_bytes=len(audio),
                                          storage_path=path, error="request no longer open")

            success(_LOG, "persisted", request_id=job.request_id, path=path, bytes=len(audio),
                    attempt=attempt, seconds=round(t.seconds, 4))
            self._record("completed")
            return PersistenceOutcome(job.request_id, "completed", attempts=attempt,
                                      audio_bytes=len(audio), storage_path=path)

        msg = f"Persistence failed after {max_attempts} attempts: {last_error}"
        fail(_LOG, "persist_gave_up", request_id=job.request_id, attempts=max_attempts, error=last_error)
        self._mark_failed(job.request_id, msg, max_attempts)
        self._record("failed")
        return PersistenceOutcome(job.request_id, "failed", attempts=max_attempts,
                                  audio_bytes=len(audio), error=msg)

    def _discard(self, staged: Optional[str]) -> None:
        if staged is None:
            return
        try:
            self._store.discard(staged)
        except OSError as e:
            warn(_LOG, "discard_failed", staged=staged, error=str(e))

    def _mark_failed(self, request_id: str, message: str, retry_count: int) -> None:
        try:
            self._datastore.mark_failed(request_id, message, retry_count)
        except Exception as e:
            error(_LOG, "mark_failed_error", request_id=request_id, error=str(e))

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Wait for every submitted job. Returns False if some are still running."""
        with self._lock:
            futures = list(self._futures)
        _, not_done = wait_futures(futures, timeout=timeout)
        return not not_done

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)
