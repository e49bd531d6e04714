"""
Request Fingerprints and the Cache Index.

A fingerprint identifies "the same audio": SHA-256 over

    "{text}:{voice_id}:{canonical JSON of voice settings}"

with settings keys sorted, so {"stability": .5, "similarity_boost": .75}
and the same dict in another order hash identically. Text is hashed as
given (no normalisation); changing a single character is a new request.

The Cache Index answers "has this user already paid for this audio?"
from the datastore, and only counts rows whose object still exists in
the blob store.
"""
from __future__ import annotations

import hashlib
import json
from concurrent.futures import Executor, Future
from dataclasses import dataclass
from typing import Any, List, Mapping, Optional

from tts_gateway.core.logging import debug, get_logger, verbose, warn
from tts_gateway.db.datastore import Datastore
from tts_gateway.db.models import SynthesisRequest
from tts_gateway.tts.storage import LocalBlobStore
from tts_gateway.utils.timeit import timeit

_LOG = get_logger("tts-gateway.cache")


def canonical_params(params: Optional[Mapping[str, Any]]) -> str:
    return json.dumps(dict(params or {}), sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def fingerprint(text: str, voice_id: str, params: Optional[Mapping[str, Any]] = None) -> str:
    """
    Deterministic request fingerprint.

    Examples:
        >>> a = fingerprint("Hi", "v1", {"stability": 0.5, "similarity_boost": 0.75})
        >>> b = fingerprint("Hi", "v1", {"similarity_boost": 0.75, "stability": 0.5})
        >>> a == b
        True
    """
    payload = f"{text}:{voice_id}:{canonical_params(params)}"
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def text_hash(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


@dataclass
class CacheHit:
    request: SynthesisRequest
    signed_url: str


class CacheIndex:
    """
    Lookup of completed syntheses per user.

    last_accessed_at is updated on the executor so a hit never waits on
    the extra write.
    """

    def __init__(self, datastore: Datastore, store: LocalBlobStore, executor: Executor):
        self._datastore = datastore
        self._store = store
        self._executor = executor
        self._pending: List[Future] = []

    def lookup_completed(self, fp: str, user_id: str) -> Optional[CacheHit]:
        with timeit("cache_lookup") as t:
            row = self._datastore.find_completed(user_id, fp)
            present = bool(row and row.storage_path and self._store.exists(row.storage_path))

        if row is None:
            verbose(_LOG, "cache_miss", key=fp[:12], seconds=round(t.seconds, 4))
            return None
        if not present:
            warn(_LOG, "cache_object_missing", key=fp[:12], path=row.storage_path)
            return None

        self._pending = [f for f in self._pending if not f.done()]
        self._pending.append(self._executor.submit(self._touch, row.id))
        return CacheHit(request=row, signed_url=self._store.signed_url(row.storage_path))

    def _touch(self, request_id: str) -> None:
        try:
            self._datastore.touch_last_accessed(request_id)
        except Exception as e:
            warn(_LOG, "touch_failed", request_id=request_id, error=str(e))
        else:
            debug(_LOG, "touched", request_id=request_id)

    def pending(self) -> List[Future]:
        return list(self._pending)
