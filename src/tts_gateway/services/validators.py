"""
Input Validation for synthesis requests.

Runs before quota, cache or provider work so bad input costs nothing.
All failures raise InvalidInputError (HTTP 400) with a message the
caller can act on.

Rules:
    - text: required, non-blank, at most pipeline.max_text_chars
    - voice_id: 1-100 chars of letters, digits, "_" and "-"
    - voice settings: stability / similarity_boost / style in [0, 1],
      use_speaker_boost boolean; unknown keys are rejected
    - model_id: 1-100 chars of letters, digits, "_", "-" and "."
"""
from __future__ import annotations

import re
from typing import Any, Dict, Mapping, Optional

from tts_gateway.core.errors import InvalidInputError
from tts_gateway.core.logging import get_logger, warn

_LOG = get_logger("tts-gateway.validators")

_VOICE_ID = re.compile(r"^[A-Za-z0-9_-]{1,100}$")
_MODEL_ID = re.compile(r"^[A-Za-z0-9_.-]{1,100}$")

_UNIT_INTERVAL_SETTINGS = ("stability", "similarity_boost", "style")
_BOOL_SETTINGS = ("use_speaker_boost",)


def validate_text(text: Optional[str], max_length: int) -> str:
    """
    Validate and trim the text to synthesize.

    Raises:
        InvalidInputError: Missing, blank or too long.
    """
    if text is None or not str(text).strip():
        raise InvalidInputError("Text is required")

    text = str(text).strip()
    if len(text) > max_length:
        warn(_LOG, "text_too_long", chars=len(text), max_chars=max_length)
        raise InvalidInputError(
            f"Text exceeds maximum length ({len(text)} > {max_length})",
            details={"max_length": max_length},
        )
    return text


def validate_voice_id(voice_id: str) -> str:
    if not _VOICE_ID.match(voice_id or ""):
        raise InvalidInputError("Invalid voice id", details={"voice_id": voice_id})
    return voice_id


def validate_model_id(model_id: str) -> str:
    if not _MODEL_ID.match(model_id or ""):
        raise InvalidInputError("Invalid model id", details={"model_id": model_id})
    return model_id


def validate_voice_settings(
    settings: Optional[Mapping[str, Any]],
    default_stability: float,
    default_similarity_boost: float,
) -> Dict[str, Any]:
    """
    Fill defaults and range-check voice settings.

    The returned dict is what gets fingerprinted and sent upstream, so
    equal inputs must always produce equal dicts.
    """
    merged: Dict[str, Any] = {
        "stability": default_stability,
        "similarity_boost": default_similarity_boost,
    }
    for key, value in (settings or {}).items():
        if value is None:
            continue
        if key in _UNIT_INTERVAL_SETTINGS:
            if isinstance(value, bool) or not isinstance(value, (int, float)) or not 0.0 <= value <= 1.0:
                raise InvalidInputError(f"{key} must be a number between 0 and 1")
            merged[key] = float(value)
        elif key in _BOOL_SETTINGS:
            if not isinstance(value, bool):
                raise InvalidInputError(f"{key} must be a boolean")
            merged[key] = value
        else:
            raise InvalidInputError(f"Unknown voice setting: {key}")
    return merged
