"""Tests for request validation rules."""
import pytest

from tts_gateway.core.errors import InvalidInputError
from tts_gateway.services.validators import (
    validate_model_id,
    validate_text,
    validate_voice_id,
    validate_voice_settings,
)


class TestValidateText:
    def test_valid_text_trimmed(self):
        assert validate_text("  Hello, world!  ", 100) == "Hello, world!"

    def test_unicode(self):
        text = "Merhaba, nasılsınız? Çok güzel."
        assert validate_text(text, 100) == text

    @pytest.mark.parametrize("text", [None, "", "   \n\t"])
    def test_required(self, text):
        with pytest.raises(InvalidInputError) as exc_info:
            validate_text(text, 100)
        assert exc_info.value.message == "Text is required"

    def test_too_long(self):
        with pytest.raises(InvalidInputError) as exc_info:
            validate_text("a" * 11, 10)
        assert "11" in exc_info.value.message
        assert exc_info.value.details == {"max_length": 10}

    def test_exactly_max_length(self):
        assert len(validate_text("a" * 10, 10)) == 10


class TestIdentifiers:
    def test_voice_ids(self):
        assert validate_voice_id("21m00Tcm4TlvDq8ikWAM") == "21m00Tcm4TlvDq8ikWAM"
        for bad in ("", "has space", "../etc", "x" * 101):
            with pytest.raises(InvalidInputError):
                validate_voice_id(bad)

    def test_model_ids(self):
        assert validate_model_id("eleven_multilingual_v2") == "eleven_multilingual_v2"
        assert validate_model_id("model-1.5") == "model-1.5"
        with pytest.raises(InvalidInputError):
            validate_model_id("bad/model")


class TestVoiceSettings:
    def test_defaults_filled(self):
        assert validate_voice_settings(None, 0.5, 0.75) == {"stability": 0.5, "similarity_boost": 0.75}

    def test_overrides_and_extras(self):
        merged = validate_voice_settings({"stability": 0, "style": 0.3, "use_speaker_boost": True}, 0.5, 0.75)
        assert merged == {"stability": 0.0, "similarity_boost": 0.75, "style": 0.3, "use_speaker_boost": True}

    def test_none_values_ignored(self):
        assert validate_voice_settings({"style": None}, 0.5, 0.75) == {"stability": 0.5, "similarity_boost": 0.75}

    @pytest.mark.parametrize("settings", [
        {"stability": 1.1},
        {"similarity_boost": -0.1},
        {"style": "high"},
        {"stability": True},
        {"use_speaker_boost": "yes"},
        {"pitch": 0.2},
    ])
    def test_rejected(self, settings):
        with pytest.raises(InvalidInputError):
            validate_voice_settings(settings, 0.5, 0.75)
