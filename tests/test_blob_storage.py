"""Tests for the local blob store and signed download URLs."""
from __future__ import annotations

from urllib.parse import parse_qs, urlparse

import pytest

from tts_gateway.core.config import StorageConfig
from tts_gateway.tts.storage import LocalBlobStore, object_path


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(tmp_path, clock):
    config = StorageConfig(
        base_dir=str(tmp_path / "blobs"),
        signing_secret="secret",
        signed_url_ttl_s=60,
        public_base_url="https://gw.test",
    )
    return LocalBlobStore(config, clock=clock)


class TestObjects:
    def test_object_path(self):
        assert object_path("u1", "abc") == "u1/abc.mp3"

    def test_put_get_stream(self, store):
        store.put("u1/a.mp3", b"x" * 100_000)
        assert store.exists("u1/a.mp3")
        assert store.size("u1/a.mp3") == 100_000
        assert store.get("u1/a.mp3") == b"x" * 100_000
        assert b"".join(store.open_stream("u1/a.mp3", chunk_size=4096)) == b"x" * 100_000

    def test_put_overwrites_atomically(self, store, tmp_path):
        store.put("u1/a.mp3", b"old")
        store.put("u1/a.mp3", b"new")
        assert store.get("u1/a.mp3") == b"new"
        assert not list((tmp_path / "blobs" / "u1").glob("*.part"))

    def test_staged_object_invisible_until_promoted(self, store):
        store.put("u1/a.mp3", b"winner")
        first = store.stage("u1/a.mp3", b"first")
        second = store.stage("u1/a.mp3", b"second, longer")
        assert first != second
        assert store.get("u1/a.mp3") == b"winner"

        store.promote(first, "u1/a.mp3")
        store.discard(second)
        assert store.get("u1/a.mp3") == b"first"
        assert store.exists(second) is False

    def test_discard_missing_is_noop(self, store):
        store.discard("u1/never.mp3.abc.part")

    def test_missing_object(self, store):
        assert store.get("u1/none.mp3") is None
        assert store.exists("u1/none.mp3") is False

    @pytest.mark.parametrize("path", ["../escape.mp3", "/etc/passwd", ""])
    def test_unsafe_paths_rejected(self, store, path):
        with pytest.raises(ValueError):
            store.put(path, b"x")
        assert store.exists(path) is False


class TestSignedUrls:
    def _parts(self, url):
        parsed = urlparse(url)
        query = parse_qs(parsed.query)
        return parsed, int(query["expires"][0]), query["signature"][0]

    def test_url_shape(self, store, clock):
        parsed, expires, signature = self._parts(store.signed_url("u1/a.mp3"))
        assert parsed.netloc == "gw.test"
        assert parsed.path == "/v1/audio/u1/a.mp3"
        assert expires == int(clock.now) + 60
        assert len(signature) == 64

    def test_valid_signature(self, store):
        _, expires, signature = self._parts(store.signed_url("u1/a.mp3"))
        assert store.verify_signature("u1/a.mp3", expires, signature)

    def test_signature_bound_to_path(self, store):
        _, expires, signature = self._parts(store.signed_url("u1/a.mp3"))
        assert not store.verify_signature("u2/a.mp3", expires, signature)

    def test_expired(self, store, clock):
        _, expires, signature = self._parts(store.signed_url("u1/a.mp3", expires_in=10))
        clock.now += 11
        assert not store.verify_signature("u1/a.mp3", expires, signature)

    def test_ephemeral_secret_when_unset(self, tmp_path):
        a = LocalBlobStore(StorageConfig(base_dir=str(tmp_path)))
        b = LocalBlobStore(StorageConfig(base_dir=str(tmp_path)))
        _, expires, signature = self._parts(a.signed_url("u/x.mp3"))
        assert a.verify_signature("u/x.mp3", expires, signature)
        assert not b.verify_signature("u/x.mp3", expires, signature)
