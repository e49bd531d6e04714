"""Shared fixtures: isolated settings, a scripted provider and an app factory."""
from __future__ import annotations

import json
import threading
from typing import Callable, Dict, List, Optional

import httpx
import pytest

from tts_gateway.core.config import Settings

AUDIO = b"ID3" + bytes(range(256)) * 40
TOKEN = "test-token"
OTHER_TOKEN = "other-token"
USER = "user-1"
OTHER_USER = "user-2"
WEBHOOK_SECRET = "whsec-test"

_ENV_VARS = (
    "TTS_GW_SETTINGS",
    "TTS_GW_PROVIDER_BASE_URL",
    "TTS_GW_PROVIDER_API_KEY",
    "TTS_GW_STORAGE_DIR",
    "TTS_GW_SIGNING_SECRET",
    "TTS_GW_DATABASE_URL",
    "TTS_GW_WEBHOOK_SECRET",
    "TTS_GW_AUTH_TOKENS",
    "TTS_GW_LOG_LEVEL",
    "TTS_GW_LOG_DIR",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    """Keep the developer's TTS_GW_* environment out of the tests."""
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("TTS_GW_NO_COLOR", "1")
    yield


@pytest.fixture
def raw_settings(tmp_path) -> Dict:
    return {
        "provider": {
            "base_url": "https://provider.test/v1",
            "api_key": "xi-test-key",
            "stream_chunk_bytes": 1024,
        },
        "pipeline": {"max_chunk_size": 1000, "sync_threshold": 1000},
        "quota": {
            "default_plan": "free",
            "plans": {"free": {"characters": 10000, "minutes": 60}},
        },
        "persistence": {"max_attempts": 3, "base_delay_s": 1.0, "max_workers": 2},
        "storage": {
            "base_dir": str(tmp_path / "storage"),
            "signing_secret": "signing-test",
            "public_base_url": "http://testserver",
        },
        "database": {"url": f"sqlite:///{tmp_path / 'gateway.db'}"},
        "webhook": {"secret": WEBHOOK_SECRET},
        "auth": {"tokens": {TOKEN: USER, OTHER_TOKEN: OTHER_USER}},
    }


@pytest.fixture
def settings(raw_settings) -> Settings:
    return Settings(raw=raw_settings)


class FakeProvider:
    """httpx MockTransport handler that records calls; `queued` audio is served first, one per call."""

    def __init__(self, audio: bytes = AUDIO):
        self.audio = audio
        self.queued: List[bytes] = []
        self.calls: List[httpx.Request] = []
        self.status = 200
        self.body = b""
        self.gate: Optional[threading.Event] = None

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request)
        if self.status != 200:
            return httpx.Response(self.status, content=self.body or b'{"detail": "nope"}')
        audio = self.queued.pop(0) if self.queued else self.audio
        content = self._gated(audio) if self.gate is not None else audio
        return httpx.Response(200, content=content, headers={"content-type": "audio/mpeg"})

    def _gated(self, audio: bytes):
        """Hold the audio back until the test opens the gate."""
        self.gate.wait(5)
        yield audio

    def last_json(self) -> Dict:
        return json.loads(self.calls[-1].content)

    def client(self) -> httpx.Client:
        return httpx.Client(transport=httpx.MockTransport(self))


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def sleeps() -> List[float]:
    return []


@pytest.fixture
def make_app(settings, provider, sleeps):
    """Build an app wired to the fake provider; sleeping only records the delay."""
    from tts_gateway.main import create_app

    def _make(clock: Optional[Callable[[], float]] = None, app_settings: Optional[Settings] = None):
        return create_app(
            app_settings or settings,
            http_client=provider.client(),
            clock=clock,
            sleep=sleeps.append,
        )

    return _make


@pytest.fixture
def client(make_app):
    from fastapi.testclient import TestClient

    app = make_app()
    with TestClient(app) as c:
        yield c


def auth(token: str = TOKEN) -> Dict[str, str]:
    return {"Authorization": f"Bearer {token}"}
