"""
Blob Storage for synthesized audio.

Objects live under ``{base_dir}/{user_id}/{fingerprint}.mp3``; the
relative part is the ``storage_path`` recorded on the request row.

Writes are atomic (staging file + replace) so a crash mid-upload never
leaves a truncated MP3 that the cache index would later serve. Unlike a
best-effort cache, ``put`` raises on failure: the persistence worker owns
the retry policy.

Signed URLs:
    Cache hits hand the caller a time-limited link instead of the path:

        {public_base_url}/v1/audio/{path}?expires={unix}&signature={hex}

    signature = HMAC-SHA256(signing_secret, "{path}:{expires}"). The
    /v1/audio route checks it with verify_signature().

Usage:
    store = LocalBlobStore(config.storage)
    store.put("u1/ab12.mp3", audio)
    url = store.signed_url("u1/ab12.mp3")
"""
from __future__ import annotations

import hashlib
import hmac
import secrets
import time
import uuid
from pathlib import Path
from typing import Callable, Iterator, Optional
from urllib.parse import quote, urlencode

from tts_gateway.core.config import StorageConfig
from tts_gateway.core.logging import get_logger, info, verbose, warn
from tts_gateway.utils.timeit import timeit

_LOG = get_logger("tts-gateway.storage")


def object_path(user_id: str, fingerprint: str) -> str:
    return f"{user_id}/{fingerprint}.mp3"


class LocalBlobStore:
    """
    Filesystem-backed blob store with HMAC-signed download URLs.

    Attributes:
        base_dir: Root directory for all objects.
        ttl_s: Default lifetime of signed URLs in seconds.
    """

    def __init__(self, config: StorageConfig, clock: Callable[[], float] = time.time):
        self.base_dir = Path(config.base_dir)
        self.ttl_s = config.signed_url_ttl_s
        self._public_base = config.public_base_url
        self._clock = clock
        secret = config.signing_secret
        if not secret:
            secret = secrets.token_hex(32)
            warn(_LOG, "signing_secret_ephemeral", note="signed URLs will not survive a restart")
        self._secret = secret.encode("utf-8")

    def _resolve(self, path: str) -> Path:
        parts = Path(path).parts
        if not parts or Path(path).is_absolute() or ".." in parts:
            raise ValueError(f"invalid object path: {path!r}")
        return self.base_dir.joinpath(*parts)

    def put(self, path: str, data: bytes) -> None:
        self.promote(self.stage(path, data), path)

    def stage(self, path: str, data: bytes) -> str:
        """
        Write data next to ``path`` under a unique staging name.

        Nothing is visible at ``path`` until promote(); concurrent writers
        of the same object never share a staging file.

        Returns:
            The staging key to pass to promote() or discard().
        """
        target = self._resolve(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        staged = f"{path}.{uuid.uuid4().hex[:12]}.part"
        tmp = self._resolve(staged)
        with timeit("storage_write") as t:
            try:
                tmp.write_bytes(data)
            except OSError:
                tmp.unlink(missing_ok=True)
                raise
        verbose(_LOG, "staged", path=path, bytes=len(data), seconds=round(t.seconds, 4))
        return staged

    def promote(self, staged: str, path: str) -> None:
        """Atomically replace ``path`` with a staged object."""
        self._resolve(staged).replace(self._resolve(path))
        info(_LOG, "stored", path=path, bytes=self.size(path))

    def discard(self, staged: str) -> None:
        self._resolve(staged).unlink(missing_ok=True)

    def get(self, path: str) -> Optional[bytes]:
        target = self._resolve(path)
        if not target.is_file():
            return None
        return target.read_bytes()

    def exists(self, path: str) -> bool:
        try:
            return self._resolve(path).is_file()
        except ValueError:
            return False

    def size(self, path: str) -> int:
        return self._resolve(path).stat().st_size

    def open_stream(self, path: str, chunk_size: int = 64 * 1024) -> Iterator[bytes]:
        """Yield an object's bytes in chunks; raises FileNotFoundError if absent."""
        target = self._resolve(path)
        with target.open("rb") as f:
            while True:
                block = f.read(chunk_size)
                if not block:
                    break
                yield block

    def _sign(self, path: str, expires: int) -> str:
        return hmac.new(self._secret, f"{path}:{expires}".encode("utf-8"), hashlib.sha256).hexdigest()

    def signed_url(self, path: str, expires_in: Optional[int] = None) -> str:
        expires = int(self._clock()) + int(expires_in or self.ttl_s)
        query = urlencode({"expires": expires, "signature": self._sign(path, expires)})
        url = f"{self._public_base}/v1/audio/{quote(path)}?{query}"
        verbose(_LOG, "signed_url", path=path, expires=expires)
        return url

    def verify_signature(self, path: str, expires: int, signature: str) -> bool:
        if expires < int(self._clock()):
            return False
        return hmac.compare_digest(self._sign(path, expires), signature or "")
