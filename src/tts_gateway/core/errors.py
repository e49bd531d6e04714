"""
Error Codes and Exception Hierarchy.

Every failure the gateway can report to a client is a GatewayError carrying
a stable machine-readable code and the HTTP status it maps to. Route
handlers turn these into JSON bodies with ``to_dict()``; nothing else
reaches the client.

Taxonomy:
    Synchronous path (surfaced immediately, no retry here):
        UNAUTHENTICATED             401  missing/invalid caller identity
        INVALID_INPUT               400  empty text, malformed payloads
        QUOTA_EXCEEDED              429  monthly limit would be exceeded
        PROVIDER_RATE_LIMITED       429  provider answered 429
        PROVIDER_MISCONFIGURED      500  provider rejected our credentials
        PROVIDER_UPSTREAM_FAILURE   502  any other provider failure

    Background path (retried, recorded, never surfaced to the caller):
        PERSISTENCE_FAILED

    Webhook boundary:
        SIGNATURE_INVALID           401  HMAC mismatch, checked before parsing
        DUPLICATE_EVENT                  not an error for the provider; the
                                         ingestor answers "already_processed"

Response Format:
    {
        "ok": false,
        "error": "QUOTA_EXCEEDED",
        "message": "Usage limit exceeded for this month"
    }
"""
from __future__ import annotations

from typing import Any, Dict, Optional


class ErrorCode:
    """Stable error codes returned in the ``error`` field."""
    UNAUTHENTICATED = "UNAUTHENTICATED"
    INVALID_INPUT = "INVALID_INPUT"
    NOT_FOUND = "NOT_FOUND"
    FORBIDDEN = "FORBIDDEN"
    QUOTA_EXCEEDED = "QUOTA_EXCEEDED"
    PROVIDER_RATE_LIMITED = "PROVIDER_RATE_LIMITED"
    PROVIDER_MISCONFIGURED = "PROVIDER_MISCONFIGURED"
    PROVIDER_UPSTREAM_FAILURE = "PROVIDER_UPSTREAM_FAILURE"
    PERSISTENCE_FAILED = "PERSISTENCE_FAILED"
    SIGNATURE_INVALID = "SIGNATURE_INVALID"
    DUPLICATE_EVENT = "DUPLICATE_EVENT"
    HANDLER_FAILED = "HANDLER_FAILED"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class GatewayError(Exception):
    """
    Base exception for gateway errors.

    Attributes:
        message: Human-readable error message.
        code: Error code from ErrorCode.
        status_code: HTTP status the error maps to.
        details: Optional dictionary with additional context.
    """
    status_code: int = 500

    def __init__(
        self,
        message: str,
        code: str = ErrorCode.INTERNAL_ERROR,
        details: Optional[Dict[str, Any]] = None,
        status_code: Optional[int] = None,
    ):
        self.message = message
        self.code = code
        self.details = details or {}
        if status_code is not None:
            self.status_code = status_code
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the standardized error response dict."""
        result: Dict[str, Any] = {
            "ok": False,
            "error": self.code,
            "message": self.message,
        }
        if self.details:
            result["details"] = self.details
        return result


class UnauthenticatedError(GatewayError):
    """Raised when the caller identity is missing or invalid."""
    status_code = 401

    def __init__(self, message: str = "Unauthorized", details: Optional[Dict] = None):
        super().__init__(message, ErrorCode.UNAUTHENTICATED, details)


class InvalidInputError(GatewayError):
    """Raised when request data fails validation."""
    status_code = 400

    def __init__(self, message: str, details: Optional[Dict] = None):
        super().__init__(message, ErrorCode.INVALID_INPUT, details)


class NotFoundError(GatewayError):
    """Raised when a requested record does not exist for this caller."""
    status_code = 404

    def __init__(self, message: str, details: Optional[Dict] = None):
        super().__init__(message, ErrorCode.NOT_FOUND, details)


class ForbiddenError(GatewayError):
    """Raised when a signed URL is invalid or expired."""
    status_code = 403

    def __init__(self, message: str, details: Optional[Dict] = None):
        super().__init__(message, ErrorCode.FORBIDDEN, details)


class QuotaExceededError(GatewayError):
    """Raised by the quota guard before any provider spend."""
    status_code = 429

    def __init__(self, message: str = "Usage limit exceeded for this month", details: Optional[Dict] = None):
        super().__init__(message, ErrorCode.QUOTA_EXCEEDED, details)


class ProviderError(GatewayError):
    """Base class for failures reported by the speech provider."""


class ProviderRateLimitedError(ProviderError):
    """Provider answered 429."""
    status_code = 429

    def __init__(self, message: str = "Rate limit exceeded. Please try again later.", details: Optional[Dict] = None):
        super().__init__(message, ErrorCode.PROVIDER_RATE_LIMITED, details)


class ProviderMisconfiguredError(ProviderError):
    """Provider rejected our credentials (401/403)."""
    status_code = 500

    def __init__(self, message: str = "Invalid provider API configuration", details: Optional[Dict] = None):
        super().__init__(message, ErrorCode.PROVIDER_MISCONFIGURED, details)


class ProviderUpstreamError(ProviderError):
    """Any other non-2xx answer or transport failure from the provider."""
    status_code = 502

    def __init__(self, message: str, details: Optional[Dict] = None):
        super().__init__(message, ErrorCode.PROVIDER_UPSTREAM_FAILURE, details)


class PersistenceError(GatewayError):
    """Raised inside the persistence worker; recorded, never sent to clients."""

    def __init__(self, message: str, details: Optional[Dict] = None):
        super().__init__(message, ErrorCode.PERSISTENCE_FAILED, details)


class SignatureInvalidError(GatewayError):
    """Webhook signature missing or mismatched."""
    status_code = 401

    def __init__(self, message: str = "Invalid signature", details: Optional[Dict] = None):
        super().__init__(message, ErrorCode.SIGNATURE_INVALID, details)


class DuplicateEventError(GatewayError):
    """A webhook event id was inserted twice."""
    status_code = 200

    def __init__(self, event_id: str):
        self.event_id = event_id
        super().__init__(f"Event {event_id} already recorded", ErrorCode.DUPLICATE_EVENT, {"event_id": event_id})
