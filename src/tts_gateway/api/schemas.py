"""
API Request Schemas.

Browser clients send camelCase (voiceId, voiceSettings.similarityBoost);
server-side callers tend to send snake_case. Both are accepted.

Range checks live in services/validators.py so that every entry point
(HTTP, CLI, tests) gets the same rules and error messages. These models
only enforce shape and types.

Example Request:
    {
        "text": "Hello there!",
        "voiceId": "21m00Tcm4TlvDq8ikWAM",
        "voiceSettings": {"stability": 0.4, "similarityBoost": 0.8},
        "modelId": "eleven_multilingual_v2"
    }
"""
from __future__ import annotations

from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class VoiceSettings(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")

    stability: Optional[float] = Field(default=None, description="0-1, lower is more expressive")
    similarity_boost: Optional[float] = Field(default=None, description="0-1, adherence to the voice")
    style: Optional[float] = Field(default=None, description="0-1, style exaggeration")
    use_speaker_boost: Optional[bool] = Field(default=None)

    def as_params(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)


class TTSRequest(BaseModel):
    """
    Body of POST /v1/tts.

    Attributes:
        text: Text to synthesize. Longer than the sync threshold becomes a batch job.
        voice_id: Provider voice; server default when omitted.
        voice_settings: Partial settings merged over server defaults.
        model_id: Provider model; server default when omitted.
    """
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, protected_namespaces=())

    text: Optional[str] = Field(default=None, description="Text to synthesize")
    voice_id: Optional[str] = Field(default=None, description="Provider voice id")
    voice_settings: Optional[VoiceSettings] = Field(default=None)
    model_id: Optional[str] = Field(default=None, description="Provider model id")
