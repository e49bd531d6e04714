"""
Prometheus Metrics for the gateway.

Metrics Exposed:
    tts_gw_requests_total{outcome}            - POST /v1/tts outcomes
                                                (cache, generated, batch,
                                                deferred, rejected, error)
    tts_gw_request_duration_seconds{source}   - time to first response byte
    tts_gw_provider_calls_total{status}       - provider requests by result
    tts_gw_audio_bytes_total                  - audio bytes streamed to callers
    tts_gw_persistence_total{status}          - background jobs (completed/failed)
    tts_gw_persistence_attempts_total         - upload attempts incl. retries
    tts_gw_persistence_in_flight              - jobs currently being persisted
    tts_gw_batch_chunks_total{status}         - batch chunk resolutions
    tts_gw_webhook_events_total{type,outcome} - webhook ingestion outcomes
    tts_gw_quota_denials_total{resource}      - quota rejections

Each GatewayMetrics owns a private CollectorRegistry, so several apps
(one per test) can live in one process without duplicate-series errors.

Usage:
    metrics = GatewayMetrics()
    metrics.record_request("cache", duration=0.004, audio_bytes=48213)
    content, content_type = metrics.get_metrics_response()
"""
from __future__ import annotations

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)


class GatewayMetrics:
    """
    Gateway metrics collector.

    When constructed with enabled=False every recording call is a no-op
    and /metrics answers with a short plain-text note.
    """

    def __init__(self, enabled: bool = True):
        self._enabled = enabled
        self._registry = CollectorRegistry()
        if enabled:
            self._setup_metrics()

    def _setup_metrics(self) -> None:
        self._requests_total = Counter(
            "tts_gw_requests_total",
            "Synthesis requests by outcome",
            ["outcome"],
            registry=self._registry,
        )
        self._request_duration = Histogram(
            "tts_gw_request_duration_seconds",
            "Time until the response started streaming",
            ["source"],
            buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 9.0),
            registry=self._registry,
        )
        self._provider_calls = Counter(
            "tts_gw_provider_calls_total",
            "Provider synthesis calls by result",
            ["status"],
            registry=self._registry,
        )
        self._audio_bytes_total = Counter(
            "tts_gw_audio_bytes_total",
            "Audio bytes streamed to callers",
            registry=self._registry,
        )
        self._persistence_total = Counter(
            "tts_gw_persistence_total",
            "Background persistence jobs by final status",
            ["status"],
            registry=self._registry,
        )
        self._persistence_attempts = Counter(
            "tts_gw_persistence_attempts_total",
            "Upload attempts including retries",
            registry=self._registry,
        )
        self._persistence_in_flight = Gauge(
            "tts_gw_persistence_in_flight",
            "Persistence jobs currently running",
            registry=self._registry,
        )
        self._batch_chunks = Counter(
            "tts_gw_batch_chunks_total",
            "Batch chunk resolutions",
            ["status"],
            registry=self._registry,
        )
        self._webhook_events = Counter(
            "tts_gw_webhook_events_total",
            "Webhook events by type and outcome",
            ["type", "outcome"],
            registry=self._registry,
        )
        self._quota_denials = Counter(
            "tts_gw_quota_denials_total",
            "Requests rejected by the quota guard",
            ["resource"],
            registry=self._registry,
        )

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def registry(self) -> CollectorRegistry:
        return self._registry

    def record_request(self, outcome: str, duration: float | None = None, audio_bytes: int = 0) -> None:
        """
        Record one POST /v1/tts outcome.

        Args:
            outcome: cache, generated, batch, deferred, rejected or error.
            duration: Seconds until the response was ready to stream.
            audio_bytes: Bytes delivered (cache hits know this up front).
        """
        if not self._enabled:
            return
        self._requests_total.labels(outcome=outcome).inc()
        if duration is not None:
            self._request_duration.labels(source=outcome).observe(duration)
        if audio_bytes > 0:
            self._audio_bytes_total.inc(audio_bytes)

    def record_audio_bytes(self, count: int) -> None:
        if self._enabled and count > 0:
            self._audio_bytes_total.inc(count)

    def record_provider_call(self, status: str) -> None:
        if self._enabled:
            self._provider_calls.labels(status=status).inc()

    def record_persistence(self, status: str) -> None:
        if self._enabled:
            self._persistence_total.labels(status=status).inc()

    def inc_persistence_attempts(self) -> None:
        if self._enabled:
            self._persistence_attempts.inc()

    def set_persistence_in_flight(self, count: int) -> None:
        if self._enabled:
            self._persistence_in_flight.set(count)

    def record_batch_chunk(self, status: str) -> None:
        if self._enabled:
            self._batch_chunks.labels(status=status).inc()

    def record_webhook(self, event_type: str, outcome: str) -> None:
        if self._enabled:
            self._webhook_events.labels(type=event_type, outcome=outcome).inc()

    def record_quota_denial(self, resource: str) -> None:
        if self._enabled:
            self._quota_denials.labels(resource=resource).inc()

    def get_metrics_response(self) -> tuple[bytes, str]:
        """Prometheus exposition body and content type."""
        if not self._enabled:
            return (b"# Metrics disabled\n", "text/plain; charset=utf-8")
        return (generate_latest(self._registry), CONTENT_TYPE_LATEST)
