"""Bearer-token caller identity."""
from __future__ import annotations

import hashlib
import hmac
from typing import Dict, Optional

from tts_gateway.core.config import AuthConfig
from tts_gateway.core.errors import UnauthenticatedError


def sign_user_token(secret: str, user_id: str) -> str:
    """Build a "<user_id>.<hex hmac>" token accepted when token_secret is set."""
    digest = hmac.new(secret.encode("utf-8"), user_id.encode("utf-8"), hashlib.sha256).hexdigest()
    return f"{user_id}.{digest}"


class IdentityProvider:
    """
    Resolve an Authorization header to a user id.

    Static tokens from ``auth.tokens`` are checked first, then signed
    tokens if ``auth.token_secret`` is configured. Anything else is
    rejected with UnauthenticatedError.
    """

    def __init__(self, config: AuthConfig):
        self._tokens: Dict[str, str] = dict(config.tokens)
        self._secret = config.token_secret

    def authenticate(self, authorization: Optional[str]) -> str:
        if not authorization:
            raise UnauthenticatedError("Missing authorization header")

        scheme, _, token = authorization.strip().partition(" ")
        token = token.strip()
        if scheme.lower() != "bearer" or not token:
            raise UnauthenticatedError("Authorization must be a Bearer token")

        user_id = self._tokens.get(token)
        if user_id:
            return user_id

        if self._secret:
            user_id, sep, _ = token.rpartition(".")
            if sep and user_id and hmac.compare_digest(sign_user_token(self._secret, user_id), token):
                return user_id

        raise UnauthenticatedError("Unauthorized")
