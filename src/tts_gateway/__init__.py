"""
tts-gateway: Metered Text-to-Speech Gateway.

A FastAPI service that fronts a third-party streaming speech synthesis API
and adds what the provider does not give you:

Key Features:
    - Per-user request deduplication backed by a persistent cache
    - Sentence-aware chunking of oversized inputs into batch jobs
    - Monthly usage quota checked before any provider spend
    - Streamed audio teed to the caller and to durable storage at once
    - Background persistence with bounded exponential-backoff retries
    - Idempotent, signature-verified provider webhook ingestion

Example Usage:
    >>> from tts_gateway.main import create_app
    >>> from tts_gateway.core.config import Settings
    >>>
    >>> app = create_app(Settings(raw={"provider": {"api_key": "xi-..."}}))
    >>> # uvicorn.run(app)
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
