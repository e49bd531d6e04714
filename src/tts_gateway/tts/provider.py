"""
Synthesis Client for the upstream speech provider.

Calls the ElevenLabs-style streaming endpoint:

    POST {base_url}/text-to-speech/{voice_id}/stream
    xi-api-key: <key>
    Accept: audio/mpeg
    {"text": ..., "model_id": ..., "voice_settings": {...}}

The status line is checked before any audio is handed out, so the
caller learns about provider failures while it can still answer with a
JSON error instead of a half-written audio stream.

Error mapping:
    429              -> ProviderRateLimitedError
    401 / 403        -> ProviderMisconfiguredError
    other non-2xx    -> ProviderUpstreamError (provider body attached)
    transport errors -> ProviderUpstreamError
"""
from __future__ import annotations

from typing import Any, Dict, Iterator, Mapping, Optional

import httpx

from tts_gateway.core.config import ProviderConfig
from tts_gateway.core.errors import (
    ProviderError,
    ProviderMisconfiguredError,
    ProviderRateLimitedError,
    ProviderUpstreamError,
)
from tts_gateway.core.logging import error, get_logger, verbose, warn
from tts_gateway.core.metrics import GatewayMetrics
from tts_gateway.utils.timeit import timeit

_LOG = get_logger("tts-gateway.provider")

_MAX_ERROR_BODY = 2000


class AudioStream:
    """
    An open provider response, consumed once.

    Iterating yields audio chunks as they arrive. A transport failure
    mid-stream is raised as ProviderUpstreamError. The underlying
    connection is released when iteration ends or close() is called.
    """

    def __init__(self, response: httpx.Response, chunk_size: int):
        self._response = response
        self._chunk_size = chunk_size
        self.content_type = response.headers.get("content-type", "audio/mpeg")

    def __iter__(self) -> Iterator[bytes]:
        try:
            for chunk in self._response.iter_bytes(self._chunk_size):
                if chunk:
                    yield chunk
        except httpx.HTTPError as e:
            raise ProviderUpstreamError(f"Provider stream interrupted: {e}") from e
        finally:
            self._response.close()

    def close(self) -> None:
        self._response.close()


class SynthesisClient:
    """
    HTTP client for the provider.

    Args:
        config: Provider settings (base URL, API key, defaults).
        client: Optional preconfigured httpx.Client (tests pass one with a
            MockTransport).
        metrics: Optional metrics collector.
    """

    def __init__(
        self,
        config: ProviderConfig,
        client: Optional[httpx.Client] = None,
        metrics: Optional[GatewayMetrics] = None,
    ):
        self._config = config
        self._client = client or httpx.Client(timeout=httpx.Timeout(config.timeout_s))
        self._metrics = metrics

    def close(self) -> None:
        self._client.close()

    def _record(self, status: str) -> None:
        if self._metrics is not None:
            self._metrics.record_provider_call(status)

    def synthesize(
        self,
        text: str,
        voice_id: str,
        params: Mapping[str, Any],
        model_id: Optional[str] = None,
    ) -> AudioStream:
        """
        Open a streaming synthesis.

        Returns:
            AudioStream yielding MP3 bytes.

        Raises:
            ProviderError subclass when the provider refuses or is unreachable.
        """
        if not self._config.api_key:
            raise ProviderMisconfiguredError("Provider API key is not configured")

        url = f"{self._config.base_url}/text-to-speech/{voice_id}/stream"
        body: Dict[str, Any] = {
            "text": text,
            "model_id": model_id or self._config.default_model_id,
            "voice_settings": dict(params),
        }
        headers = {
            "xi-api-key": self._config.api_key,
            "Accept": "audio/mpeg",
            "Content-Type": "application/json",
        }

        request = self._client.build_request("POST", url, json=body, headers=headers)
        with timeit("provider_open") as t:
            try:
                response = self._client.send(request, stream=True)
            except httpx.HTTPError as e:
                self._record("transport_error")
                error(_LOG, "provider_unreachable", voice_id=voice_id, error=str(e))
                raise ProviderUpstreamError(f"Provider request failed: {e}") from e

        if response.status_code >= 400:
            self._raise_for_status(response, voice_id)

        self._record("ok")
        verbose(_LOG, "provider_stream_open", voice_id=voice_id, chars=len(text), seconds=round(t.seconds, 4))
        return AudioStream(response, self._config.stream_chunk_bytes)

    def _raise_for_status(self, response: httpx.Response, voice_id: str) -> None:
        try:
            response.read()
            detail = response.text[:_MAX_ERROR_BODY]
        except httpx.HTTPError:
            detail = ""
        finally:
            response.close()

        status = response.status_code
        exc: ProviderError
        if status == 429:
            self._record("rate_limited")
            exc = ProviderRateLimitedError(details={"provider_status": status})
        elif status in (401, 403):
            self._record("unauthorized")
            exc = ProviderMisconfiguredError(details={"provider_status": status})
        else:
            self._record("error")
            exc = ProviderUpstreamError(
                f"Provider API error: {status}",
                details={"provider_status": status, "provider_body": detail},
            )
        warn(_LOG, "provider_error", status=status, voice_id=voice_id, code=exc.code)
        raise exc
