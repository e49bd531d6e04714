"""
Tests for configuration loading and validation.

Tests cover:
- Defaults used when sections are missing
- Environment overrides (TTS_GW_*)
- ConfigValidationError on bad values
- Quota plan resolution per user
- load_settings() with and without a file
"""
import pytest

from tts_gateway.core.config import (
    ConfigValidationError,
    Defaults,
    GatewayConfig,
    PlanLimits,
    Settings,
    load_settings,
)


def _config(raw):
    return Settings(raw=raw).get_config()


class TestDefaults:
    """Missing sections fall back to Defaults."""

    def test_empty_settings_use_defaults(self):
        config = _config({})
        assert config.provider.base_url == Defaults.PROVIDER_BASE_URL
        assert config.provider.default_voice_id == "21m00Tcm4TlvDq8ikWAM"
        assert config.pipeline.max_chunk_size == 1000
        assert config.pipeline.sync_threshold == 1000
        assert config.persistence.max_attempts == 3
        assert config.persistence.base_delay_s == 1.0
        assert config.webhook.signature_header == "X-ElevenLabs-Signature"

    def test_default_quota_plan(self):
        config = _config({})
        limits = config.quota.limits_for("anyone")
        assert limits.characters == 10000
        assert limits.minutes == 60

    def test_provider_base_url_trailing_slash_trimmed(self):
        config = _config({"provider": {"base_url": "https://x.test/v1/"}})
        assert config.provider.base_url == "https://x.test/v1"


class TestEnvironmentOverrides:
    """TTS_GW_* variables win over the file."""

    def test_database_and_secret_overrides(self, monkeypatch):
        monkeypatch.setenv("TTS_GW_DATABASE_URL", "sqlite:///env.db")
        monkeypatch.setenv("TTS_GW_WEBHOOK_SECRET", "from-env")
        monkeypatch.setenv("TTS_GW_PROVIDER_API_KEY", "key-env")
        config = _config({"database": {"url": "sqlite:///file.db"}, "webhook": {"secret": "from-file"}})
        assert config.database.url == "sqlite:///env.db"
        assert config.webhook.secret == "from-env"
        assert config.provider.api_key == "key-env"

    def test_auth_tokens_from_env(self, monkeypatch):
        monkeypatch.setenv("TTS_GW_AUTH_TOKENS", "tok-a:alice, tok-b:bob")
        config = _config({"auth": {"tokens": {"tok-c": "carol"}}})
        assert config.auth.tokens == {"tok-a": "alice", "tok-b": "bob", "tok-c": "carol"}

    def test_malformed_auth_tokens_rejected(self, monkeypatch):
        monkeypatch.setenv("TTS_GW_AUTH_TOKENS", "no-user-here")
        with pytest.raises(ConfigValidationError):
            _config({})


class TestValidation:
    """Invalid values raise ConfigValidationError."""

    def test_zero_chunk_size_rejected(self):
        with pytest.raises(ConfigValidationError):
            _config({"pipeline": {"max_chunk_size": 0}})

    def test_margin_must_be_below_budget(self):
        with pytest.raises(ConfigValidationError):
            _config({"pipeline": {"execution_budget_s": 5, "defer_margin_s": 5}})

    def test_stability_out_of_range(self):
        with pytest.raises(ConfigValidationError):
            _config({"provider": {"default_stability": 1.5}})

    def test_unknown_default_plan(self):
        with pytest.raises(ConfigValidationError):
            _config({"quota": {"default_plan": "gold"}})

    def test_logging_level_name_coerced(self):
        assert _config({"logging": {"level": "VERBOSE"}}).logging.level == 3

    def test_logging_level_out_of_range(self):
        with pytest.raises(ConfigValidationError):
            _config({"logging": {"level": 9}})


class TestQuotaPlans:
    """Per-user plan assignment and unlimited plans."""

    def test_user_plan_and_unlimited(self):
        config = _config({
            "quota": {
                "default_plan": "free",
                "plans": {
                    "free": {"characters": 100, "minutes": 1},
                    "enterprise": {"characters": None, "minutes": None},
                },
                "user_plans": {"vip": "enterprise"},
            }
        })
        assert config.quota.limits_for("vip") == PlanLimits(characters=None, minutes=None)
        assert config.quota.limits_for("someone").characters == 100


class TestLoadSettings:
    """load_settings() file handling."""

    def test_missing_file_raises(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_settings(str(tmp_path / "nope.yaml"))

    def test_missing_ok_returns_empty(self, tmp_path):
        settings = load_settings(str(tmp_path / "nope.yaml"), missing_ok=True)
        assert settings.raw == {}
        assert isinstance(settings.get_config(), GatewayConfig)

    def test_yaml_file_loaded(self, tmp_path):
        path = tmp_path / "settings.yaml"
        path.write_text("pipeline:\n  sync_threshold: 500\n", encoding="utf-8")
        assert load_settings(str(path)).get_config().pipeline.sync_threshold == 500

    def test_repository_settings_file_is_valid(self):
        from pathlib import Path

        path = Path(__file__).resolve().parent.parent / "config" / "settings.yaml"
        config = load_settings(str(path)).get_config()
        assert config.quota.limits_for("x").characters == 10000
