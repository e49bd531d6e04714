"""
Quota Guard.

Checked before any provider spend. A request is denied when

    used + delta > limit

for characters or conversation minutes in the current month. Only the
resources a request consumes are checked: a TTS request (minute delta 0)
is never refused because webhook-recorded call minutes ran over. A plan
limit of None (configured as 0 or null) is unlimited.

The check and the later increment are separate steps, so two concurrent
requests near the limit can both pass; the overshoot is bounded by one
request per concurrent caller. The increment itself is atomic.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Optional

from tts_gateway.core.config import QuotaConfig
from tts_gateway.core.errors import QuotaExceededError
from tts_gateway.core.logging import debug, get_logger, warn
from tts_gateway.db.datastore import Datastore, month_key

_LOG = get_logger("tts-gateway.quota")


@dataclass
class QuotaDecision:
    allowed: bool
    reason: Optional[str] = None
    resource: Optional[str] = None


class QuotaGuard:
    def __init__(self, datastore: Datastore, config: QuotaConfig, month: Callable[[], str] = month_key):
        self._datastore = datastore
        self._config = config
        self._month = month

    def can_proceed(self, user_id: str, character_delta: int = 0, minute_delta: float = 0.0) -> QuotaDecision:
        limits = self._config.limits_for(user_id)
        usage = self._datastore.get_usage(user_id, self._month())
        used_chars = usage.tts_characters if usage else 0
        used_minutes = usage.conversation_minutes if usage else 0.0

        debug(_LOG, "quota_check", user_id=user_id, used_chars=used_chars, delta=character_delta)

        if character_delta > 0 and limits.characters is not None and used_chars + character_delta > limits.characters:
            return QuotaDecision(
                allowed=False,
                reason=f"Character limit of {limits.characters} would be exceeded",
                resource="characters",
            )
        if minute_delta > 0 and limits.minutes is not None and used_minutes + minute_delta > limits.minutes:
            return QuotaDecision(
                allowed=False,
                reason=f"Conversation minute limit of {limits.minutes:g} would be exceeded",
                resource="minutes",
            )
        return QuotaDecision(allowed=True)

    def require(self, user_id: str, character_delta: int = 0, minute_delta: float = 0.0) -> None:
        """can_proceed that raises QuotaExceededError on denial."""
        decision = self.can_proceed(user_id, character_delta, minute_delta)
        if not decision.allowed:
            warn(_LOG, "quota_denied", user_id=user_id, resource=decision.resource, reason=decision.reason)
            raise QuotaExceededError(details={"resource": decision.resource, "reason": decision.reason})
