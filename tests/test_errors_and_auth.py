"""
Tests for the error taxonomy and bearer-token identity.

Tests cover:
- HTTP status and code of every GatewayError subclass
- to_dict() response shape
- Static and HMAC-signed bearer tokens
"""
import pytest

from tts_gateway.core.auth import IdentityProvider, sign_user_token
from tts_gateway.core.config import AuthConfig
from tts_gateway.core.errors import (
    DuplicateEventError,
    ErrorCode,
    GatewayError,
    InvalidInputError,
    ProviderMisconfiguredError,
    ProviderRateLimitedError,
    ProviderUpstreamError,
    QuotaExceededError,
    SignatureInvalidError,
    UnauthenticatedError,
)


class TestErrorTaxonomy:
    """Each error maps to a stable code and status."""

    @pytest.mark.parametrize("exc, status, code", [
        (UnauthenticatedError(), 401, ErrorCode.UNAUTHENTICATED),
        (InvalidInputError("bad"), 400, ErrorCode.INVALID_INPUT),
        (QuotaExceededError(), 429, ErrorCode.QUOTA_EXCEEDED),
        (ProviderRateLimitedError(), 429, ErrorCode.PROVIDER_RATE_LIMITED),
        (ProviderMisconfiguredError(), 500, ErrorCode.PROVIDER_MISCONFIGURED),
        (ProviderUpstreamError("boom"), 502, ErrorCode.PROVIDER_UPSTREAM_FAILURE),
        (SignatureInvalidError(), 401, ErrorCode.SIGNATURE_INVALID),
    ])
    def test_status_and_code(self, exc, status, code):
        assert exc.status_code == status
        assert exc.code == code
        assert isinstance(exc, GatewayError)

    def test_to_dict(self):
        body = QuotaExceededError(details={"resource": "characters"}).to_dict()
        assert body == {
            "ok": False,
            "error": "QUOTA_EXCEEDED",
            "message": "Usage limit exceeded for this month",
            "details": {"resource": "characters"},
        }

    def test_to_dict_without_details(self):
        assert "details" not in InvalidInputError("Text is required").to_dict()

    def test_duplicate_event_keeps_id(self):
        exc = DuplicateEventError("evt-1")
        assert exc.event_id == "evt-1"
        assert exc.details == {"event_id": "evt-1"}


class TestIdentityProvider:
    """Authorization header resolution."""

    def test_static_token(self):
        idp = IdentityProvider(AuthConfig(tokens={"tok": "alice"}))
        assert idp.authenticate("Bearer tok") == "alice"
        assert idp.authenticate("bearer  tok ") == "alice"

    @pytest.mark.parametrize("header", [None, "", "tok", "Basic tok", "Bearer ", "Bearer unknown"])
    def test_rejected(self, header):
        idp = IdentityProvider(AuthConfig(tokens={"tok": "alice"}))
        with pytest.raises(UnauthenticatedError):
            idp.authenticate(header)

    def test_signed_token(self):
        idp = IdentityProvider(AuthConfig(token_secret="s3cret"))
        token = sign_user_token("s3cret", "bob")
        assert token.startswith("bob.")
        assert idp.authenticate(f"Bearer {token}") == "bob"

    def test_signed_token_with_wrong_secret(self):
        idp = IdentityProvider(AuthConfig(token_secret="s3cret"))
        with pytest.raises(UnauthenticatedError):
            idp.authenticate(f"Bearer {sign_user_token('other', 'bob')}")

    def test_signed_tokens_disabled_without_secret(self):
        idp = IdentityProvider(AuthConfig())
        with pytest.raises(UnauthenticatedError):
            idp.authenticate(f"Bearer {sign_user_token('', 'bob')}")
