"""
Configuration Management for tts-gateway.

This module provides centralized configuration handling with:
    - Default values (Defaults class)
    - Dataclass-based configuration objects per concern
    - YAML file loading with environment variable overrides
    - Validation with meaningful error messages

Configuration Hierarchy (highest priority first):
    1. Environment variables (TTS_GW_PROVIDER_API_KEY, TTS_GW_DATABASE_URL, ...)
    2. YAML config file (config/settings.yaml, or TTS_GW_SETTINGS)
    3. Defaults class values

Example settings.yaml:
    provider:
      base_url: https://api.elevenlabs.io/v1
      default_voice_id: 21m00Tcm4TlvDq8ikWAM

    pipeline:
      max_chunk_size: 1000
      execution_budget_s: 9.0

    quota:
      default_plan: free
      plans:
        free: {characters: 10000, minutes: 60}
        pro: {characters: 500000, minutes: 600}
      user_plans:
        user-123: pro

    persistence:
      max_attempts: 3
      base_delay_s: 1.0
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml


class ConfigValidationError(Exception):
    """
    Raised when configuration validation fails.

    Thrown when a configuration value is outside acceptable bounds
    or of the wrong type.
    """
    pass


class Defaults:
    """
    Centralized default configuration values.

    Sections:
        - Provider: Upstream speech API
        - Pipeline: Chunking and execution budget
        - Quota: Monthly plan limits
        - Persistence: Background upload retries
        - Storage: Blob store and signed URLs
        - Database: Relational datastore
        - Webhook / Auth / Logging / Metrics
    """

    # ─────────────────────────────────────────────────────────────────────────
    # Provider
    # ─────────────────────────────────────────────────────────────────────────
    PROVIDER_BASE_URL = "https://api.elevenlabs.io/v1"
    PROVIDER_DEFAULT_VOICE_ID = "21m00Tcm4TlvDq8ikWAM"
    PROVIDER_DEFAULT_MODEL_ID = "eleven_multilingual_v2"
    PROVIDER_TIMEOUT_S = 30.0
    PROVIDER_STREAM_CHUNK_BYTES = 4096
    VOICE_STABILITY = 0.5
    VOICE_SIMILARITY_BOOST = 0.75

    # ─────────────────────────────────────────────────────────────────────────
    # Pipeline
    # ─────────────────────────────────────────────────────────────────────────
    PIPELINE_MAX_CHUNK_SIZE = 1000      # Provider-safe chunk size (chars)
    PIPELINE_SYNC_THRESHOLD = 1000      # Longer texts go to batch jobs
    PIPELINE_MAX_TEXT_CHARS = 100_000   # Hard input limit
    PIPELINE_EXECUTION_BUDGET_S = 9.0   # 10s platform ceiling minus 1s margin
    PIPELINE_DEFER_MARGIN_S = 2.0       # Defer if less than this remains

    # ─────────────────────────────────────────────────────────────────────────
    # Quota
    # ─────────────────────────────────────────────────────────────────────────
    QUOTA_DEFAULT_PLAN = "free"
    QUOTA_PLANS = {"free": {"characters": 10_000, "minutes": 60}}

    # ─────────────────────────────────────────────────────────────────────────
    # Persistence
    # ─────────────────────────────────────────────────────────────────────────
    PERSISTENCE_MAX_ATTEMPTS = 3        # Upload attempts before "failed"
    PERSISTENCE_BASE_DELAY_S = 1.0      # Sleeps base * 2**attempt: 2s, 4s
    PERSISTENCE_MAX_WORKERS = 4         # Background thread pool size
    PERSISTENCE_BITRATE_KBPS = 128      # Duration estimate for MP3 output
    PERSISTENCE_CHARS_PER_CREDIT = 1000

    # ─────────────────────────────────────────────────────────────────────────
    # Storage
    # ─────────────────────────────────────────────────────────────────────────
    STORAGE_BASE_DIR = "./storage"
    STORAGE_SIGNED_URL_TTL_S = 3600
    STORAGE_PUBLIC_BASE_URL = ""

    # ─────────────────────────────────────────────────────────────────────────
    # Database
    # ─────────────────────────────────────────────────────────────────────────
    DATABASE_URL = "sqlite:///./tts_gateway.db"

    # ─────────────────────────────────────────────────────────────────────────
    # Webhook
    # ─────────────────────────────────────────────────────────────────────────
    WEBHOOK_SIGNATURE_HEADER = "X-ElevenLabs-Signature"

    # ─────────────────────────────────────────────────────────────────────────
    # Logging
    # ─────────────────────────────────────────────────────────────────────────
    LOGGING_TEXT_PREVIEW_CHARS = 80
    LOGGING_LEVEL = 2                   # 1=MINIMAL, 2=NORMAL, 3=VERBOSE, 4=DEBUG


@dataclass
class ProviderConfig:
    """Upstream speech synthesis API."""
    base_url: str = Defaults.PROVIDER_BASE_URL
    api_key: str = ""
    default_voice_id: str = Defaults.PROVIDER_DEFAULT_VOICE_ID
    default_model_id: str = Defaults.PROVIDER_DEFAULT_MODEL_ID
    timeout_s: float = Defaults.PROVIDER_TIMEOUT_S
    stream_chunk_bytes: int = Defaults.PROVIDER_STREAM_CHUNK_BYTES
    default_stability: float = Defaults.VOICE_STABILITY
    default_similarity_boost: float = Defaults.VOICE_SIMILARITY_BOOST


@dataclass
class PipelineConfig:
    """
    Synthesis pipeline limits.

    Texts longer than sync_threshold become batch jobs split into
    max_chunk_size pieces. When less than defer_margin_s of the
    execution budget remains, new syntheses are deferred.
    """
    max_chunk_size: int = Defaults.PIPELINE_MAX_CHUNK_SIZE
    sync_threshold: int = Defaults.PIPELINE_SYNC_THRESHOLD
    max_text_chars: int = Defaults.PIPELINE_MAX_TEXT_CHARS
    execution_budget_s: float = Defaults.PIPELINE_EXECUTION_BUDGET_S
    defer_margin_s: float = Defaults.PIPELINE_DEFER_MARGIN_S


@dataclass
class PlanLimits:
    """Monthly limits of one plan. None means unlimited."""
    characters: Optional[int] = None
    minutes: Optional[float] = None


@dataclass
class QuotaConfig:
    """Per-plan monthly limits and the user → plan mapping."""
    default_plan: str = Defaults.QUOTA_DEFAULT_PLAN
    plans: Dict[str, PlanLimits] = field(
        default_factory=lambda: {k: PlanLimits(**v) for k, v in Defaults.QUOTA_PLANS.items()}
    )
    user_plans: Dict[str, str] = field(default_factory=dict)

    def limits_for(self, user_id: str) -> PlanLimits:
        """Resolve the plan limits for a user, falling back to the default plan."""
        plan = self.user_plans.get(user_id, self.default_plan)
        return self.plans.get(plan) or self.plans.get(self.default_plan) or PlanLimits()


@dataclass
class PersistenceConfig:
    """Background upload and accounting."""
    max_attempts: int = Defaults.PERSISTENCE_MAX_ATTEMPTS
    base_delay_s: float = Defaults.PERSISTENCE_BASE_DELAY_S
    max_workers: int = Defaults.PERSISTENCE_MAX_WORKERS
    bitrate_kbps: int = Defaults.PERSISTENCE_BITRATE_KBPS
    chars_per_credit: int = Defaults.PERSISTENCE_CHARS_PER_CREDIT


@dataclass
class StorageConfig:
    """Blob storage for synthesized audio."""
    base_dir: str = Defaults.STORAGE_BASE_DIR
    signing_secret: str = ""
    signed_url_ttl_s: int = Defaults.STORAGE_SIGNED_URL_TTL_S
    public_base_url: str = Defaults.STORAGE_PUBLIC_BASE_URL


@dataclass
class DatabaseConfig:
    """Relational datastore connection."""
    url: str = Defaults.DATABASE_URL
    echo: bool = False


@dataclass
class WebhookConfig:
    """Provider webhook verification. An empty secret disables verification."""
    secret: str = ""
    signature_header: str = Defaults.WEBHOOK_SIGNATURE_HEADER


@dataclass
class AuthConfig:
    """
    Caller authentication.

    tokens maps static bearer tokens to user ids. token_secret enables
    HMAC-signed "<user_id>.<hex signature>" tokens.
    """
    tokens: Dict[str, str] = field(default_factory=dict)
    token_secret: str = ""


@dataclass
class LoggingConfig:
    """
    Logging configuration.

    Log levels:
        1 = MINIMAL: Startup, shutdown, critical errors only
        2 = NORMAL: Request lifecycle, cache status (default)
        3 = VERBOSE: Per-stage timing, detailed flow
        4 = DEBUG: Internal state, full tracing
    """
    text_preview_chars: int = Defaults.LOGGING_TEXT_PREVIEW_CHARS
    level: int = Defaults.LOGGING_LEVEL


@dataclass
class MetricsConfig:
    """Prometheus metrics."""
    enabled: bool = True


@dataclass
class GatewayConfig:
    """
    Validated configuration for the whole gateway.

    Usage:
        settings = load_settings("config/settings.yaml")
        config = GatewayConfig.from_settings(settings)
        print(config.pipeline.max_chunk_size)
    """
    provider: ProviderConfig = field(default_factory=ProviderConfig)
    pipeline: PipelineConfig = field(default_factory=PipelineConfig)
    quota: QuotaConfig = field(default_factory=QuotaConfig)
    persistence: PersistenceConfig = field(default_factory=PersistenceConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    webhook: WebhookConfig = field(default_factory=WebhookConfig)
    auth: AuthConfig = field(default_factory=AuthConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    metrics: MetricsConfig = field(default_factory=MetricsConfig)

    @classmethod
    def from_settings(cls, settings: "Settings") -> "GatewayConfig":
        """
        Create GatewayConfig from Settings with validation.

        Reads the raw configuration dictionary, applies environment
        overrides and defaults, validates constraints, and returns
        typed configuration.

        Raises:
            ConfigValidationError: If any value fails validation.
        """
        raw = settings.raw

        # ─────────────────────────────────────────────────────────────────────
        # Provider
        # ─────────────────────────────────────────────────────────────────────
        p = raw.get("provider", {}) or {}
        provider = ProviderConfig(
            base_url=str(os.getenv("TTS_GW_PROVIDER_BASE_URL") or p.get("base_url", Defaults.PROVIDER_BASE_URL)).rstrip("/"),
            api_key=str(os.getenv("TTS_GW_PROVIDER_API_KEY") or p.get("api_key", "")),
            default_voice_id=str(p.get("default_voice_id", Defaults.PROVIDER_DEFAULT_VOICE_ID)),
            default_model_id=str(p.get("default_model_id", Defaults.PROVIDER_DEFAULT_MODEL_ID)),
            timeout_s=float(p.get("timeout_s", Defaults.PROVIDER_TIMEOUT_S)),
            stream_chunk_bytes=int(p.get("stream_chunk_bytes", Defaults.PROVIDER_STREAM_CHUNK_BYTES)),
            default_stability=float(p.get("default_stability", Defaults.VOICE_STABILITY)),
            default_similarity_boost=float(p.get("default_similarity_boost", Defaults.VOICE_SIMILARITY_BOOST)),
        )
        cls._validate_positive("provider.timeout_s", provider.timeout_s)
        cls._validate_positive("provider.stream_chunk_bytes", provider.stream_chunk_bytes)
        cls._validate_range("provider.default_stability", provider.default_stability, 0.0, 1.0)
        cls._validate_range("provider.default_similarity_boost", provider.default_similarity_boost, 0.0, 1.0)

        # ─────────────────────────────────────────────────────────────────────
        # Pipeline
        # ─────────────────────────────────────────────────────────────────────
        pl = raw.get("pipeline", {}) or {}
        pipeline = PipelineConfig(
            max_chunk_size=int(pl.get("max_chunk_size", Defaults.PIPELINE_MAX_CHUNK_SIZE)),
            sync_threshold=int(pl.get("sync_threshold", Defaults.PIPELINE_SYNC_THRESHOLD)),
            max_text_chars=int(pl.get("max_text_chars", Defaults.PIPELINE_MAX_TEXT_CHARS)),
            execution_budget_s=float(pl.get("execution_budget_s", Defaults.PIPELINE_EXECUTION_BUDGET_S)),
            defer_margin_s=float(pl.get("defer_margin_s", Defaults.PIPELINE_DEFER_MARGIN_S)),
        )
        cls._validate_positive("pipeline.max_chunk_size", pipeline.max_chunk_size)
        cls._validate_positive("pipeline.sync_threshold", pipeline.sync_threshold)
        cls._validate_positive("pipeline.max_text_chars", pipeline.max_text_chars)
        cls._validate_positive("pipeline.execution_budget_s", pipeline.execution_budget_s)
        cls._validate_non_negative("pipeline.defer_margin_s", pipeline.defer_margin_s)
        if pipeline.defer_margin_s >= pipeline.execution_budget_s:
            raise ConfigValidationError(
                "pipeline.defer_margin_s must be smaller than pipeline.execution_budget_s"
            )

        # ─────────────────────────────────────────────────────────────────────
        # Quota
        # ─────────────────────────────────────────────────────────────────────
        q = raw.get("quota", {}) or {}
        plans_raw = q.get("plans") or Defaults.QUOTA_PLANS
        plans: Dict[str, PlanLimits] = {}
        for name, limits in plans_raw.items():
            limits = limits or {}
            chars = limits.get("characters")
            minutes = limits.get("minutes")
            plans[str(name)] = PlanLimits(
                characters=int(chars) if chars else None,
                minutes=float(minutes) if minutes else None,
            )
            if plans[str(name)].characters is not None:
                cls._validate_positive(f"quota.plans.{name}.characters", plans[str(name)].characters)
        quota = QuotaConfig(
            default_plan=str(q.get("default_plan", Defaults.QUOTA_DEFAULT_PLAN)),
            plans=plans,
            user_plans={str(k): str(v) for k, v in (q.get("user_plans") or {}).items()},
        )
        if quota.default_plan not in quota.plans:
            raise ConfigValidationError(f"quota.default_plan '{quota.default_plan}' is not a defined plan")

        # ─────────────────────────────────────────────────────────────────────
        # Persistence
        # ─────────────────────────────────────────────────────────────────────
        ps = raw.get("persistence", {}) or {}
        persistence = PersistenceConfig(
            max_attempts=int(ps.get("max_attempts", Defaults.PERSISTENCE_MAX_ATTEMPTS)),
            base_delay_s=float(ps.get("base_delay_s", Defaults.PERSISTENCE_BASE_DELAY_S)),
            max_workers=int(ps.get("max_workers", Defaults.PERSISTENCE_MAX_WORKERS)),
            bitrate_kbps=int(ps.get("bitrate_kbps", Defaults.PERSISTENCE_BITRATE_KBPS)),
            chars_per_credit=int(ps.get("chars_per_credit", Defaults.PERSISTENCE_CHARS_PER_CREDIT)),
        )
        cls._validate_positive("persistence.max_attempts", persistence.max_attempts)
        cls._validate_non_negative("persistence.base_delay_s", persistence.base_delay_s)
        cls._validate_positive("persistence.max_workers", persistence.max_workers)
        cls._validate_positive("persistence.bitrate_kbps", persistence.bitrate_kbps)
        cls._validate_positive("persistence.chars_per_credit", persistence.chars_per_credit)

        # ─────────────────────────────────────────────────────────────────────
        # Storage
        # ─────────────────────────────────────────────────────────────────────
        st = raw.get("storage", {}) or {}
        storage = StorageConfig(
            base_dir=str(os.getenv("TTS_GW_STORAGE_DIR") or st.get("base_dir", Defaults.STORAGE_BASE_DIR)),
            signing_secret=str(os.getenv("TTS_GW_SIGNING_SECRET") or st.get("signing_secret", "")),
            signed_url_ttl_s=int(st.get("signed_url_ttl_s", Defaults.STORAGE_SIGNED_URL_TTL_S)),
            public_base_url=str(st.get("public_base_url", Defaults.STORAGE_PUBLIC_BASE_URL)).rstrip("/"),
        )
        cls._validate_positive("storage.signed_url_ttl_s", storage.signed_url_ttl_s)

        # ─────────────────────────────────────────────────────────────────────
        # Database
        # ─────────────────────────────────────────────────────────────────────
        db = raw.get("database", {}) or {}
        database = DatabaseConfig(
            url=str(os.getenv("TTS_GW_DATABASE_URL") or db.get("url", Defaults.DATABASE_URL)),
            echo=bool(db.get("echo", False)),
        )

        # ─────────────────────────────────────────────────────────────────────
        # Webhook
        # ─────────────────────────────────────────────────────────────────────
        wh = raw.get("webhook", {}) or {}
        webhook = WebhookConfig(
            secret=str(os.getenv("TTS_GW_WEBHOOK_SECRET") or wh.get("secret", "")),
            signature_header=str(wh.get("signature_header", Defaults.WEBHOOK_SIGNATURE_HEADER)),
        )

        # ─────────────────────────────────────────────────────────────────────
        # Auth (TTS_GW_AUTH_TOKENS="token-a:user-a,token-b:user-b")
        # ─────────────────────────────────────────────────────────────────────
        au = raw.get("auth", {}) or {}
        tokens = {str(k): str(v) for k, v in (au.get("tokens") or {}).items()}
        env_tokens = os.getenv("TTS_GW_AUTH_TOKENS")
        if env_tokens:
            for pair in env_tokens.split(","):
                token, sep, user_id = pair.strip().partition(":")
                if not sep or not token or not user_id:
                    raise ConfigValidationError(f"TTS_GW_AUTH_TOKENS entry must be token:user, got '{pair}'")
                tokens[token] = user_id
        auth = AuthConfig(tokens=tokens, token_secret=str(au.get("token_secret", "")))

        # ─────────────────────────────────────────────────────────────────────
        # Logging
        # ─────────────────────────────────────────────────────────────────────
        lg = raw.get("logging", {}) or {}
        log_level_raw = lg.get("level", Defaults.LOGGING_LEVEL)
        if isinstance(log_level_raw, str):
            level_map = {
                "MINIMAL": 1, "1": 1,
                "NORMAL": 2, "INFO": 2, "2": 2,
                "VERBOSE": 3, "3": 3,
                "DEBUG": 4, "TRACE": 4, "4": 4,
            }
            log_level = level_map.get(log_level_raw.upper(), Defaults.LOGGING_LEVEL)
        else:
            log_level = int(log_level_raw)
        logging_cfg = LoggingConfig(
            text_preview_chars=int(lg.get("text_preview_chars", Defaults.LOGGING_TEXT_PREVIEW_CHARS)),
            level=log_level,
        )
        cls._validate_non_negative("logging.text_preview_chars", logging_cfg.text_preview_chars)
        cls._validate_range("logging.level", logging_cfg.level, 1, 4)

        mt = raw.get("metrics", {}) or {}
        metrics_cfg = MetricsConfig(enabled=bool(mt.get("enabled", True)))

        return cls(
            provider=provider,
            pipeline=pipeline,
            quota=quota,
            persistence=persistence,
            storage=storage,
            database=database,
            webhook=webhook,
            auth=auth,
            logging=logging_cfg,
            metrics=metrics_cfg,
        )

    @staticmethod
    def _validate_positive(name: str, value: int | float) -> None:
        """Validate that a value is positive (> 0)."""
        if value <= 0:
            raise ConfigValidationError(f"{name} must be positive, got {value}")

    @staticmethod
    def _validate_non_negative(name: str, value: int | float) -> None:
        """Validate that a value is non-negative (>= 0)."""
        if value < 0:
            raise ConfigValidationError(f"{name} must be non-negative, got {value}")

    @staticmethod
    def _validate_range(name: str, value: int | float, min_val: int | float, max_val: int | float) -> None:
        """Validate that a value is within [min_val, max_val]."""
        if not (min_val <= value <= max_val):
            raise ConfigValidationError(f"{name} must be between {min_val} and {max_val}, got {value}")


@dataclass(frozen=True)
class Settings:
    """
    Immutable settings container loaded from YAML.

    This is the raw settings object before validation. Use
    get_config() to get a validated GatewayConfig.
    """
    raw: Dict[str, Any]

    def get_config(self) -> GatewayConfig:
        """
        Get validated GatewayConfig from these settings.

        Raises:
            ConfigValidationError: If validation fails.
        """
        return GatewayConfig.from_settings(self)


def load_settings(path: str = "config/settings.yaml", missing_ok: bool = False) -> Settings:
    """
    Load settings from a YAML configuration file.

    Args:
        path: Path to the YAML configuration file.
        missing_ok: Return empty settings instead of raising when the
            file does not exist.

    Returns:
        Settings object with loaded configuration.

    Raises:
        FileNotFoundError: If the file doesn't exist and missing_ok is False.
    """
    p = Path(path)
    if not p.exists():
        if missing_ok:
            return Settings(raw={})
        raise FileNotFoundError(f"settings file not found: {p.resolve()}")

    with p.open("r", encoding="utf-8") as f:
        raw: Dict[str, Any] = yaml.safe_load(f) or {}

    return Settings(raw=raw)
