"""
Logging State: request correlation and resolved configuration.

The request id lives in a ContextVar so every log line emitted while a
request is handled carries it, including lines from helper functions that
never see the request object. Background workers copy the id onto their
own thread with ``set_request_id`` so persistence retries can be traced
back to the request that scheduled them.

Environment Variables:
    TTS_GW_LOG_LEVEL          level (1-4 or name)
    TTS_GW_LOG_DIR            directory for the JSONL file; unset disables it
    TTS_GW_JSONL_FILE         JSONL filename (default tts-gateway.jsonl)
    TTS_GW_LOG_ROTATE_BYTES   rotate after this many bytes
    TTS_GW_LOG_ROTATE_BACKUP  rotated files to keep
"""
from __future__ import annotations

import os
from contextvars import ContextVar
from typing import Any, Dict

import yaml

from .levels import LEVEL_NAMES, LogLevel

_request_id: ContextVar[str] = ContextVar("request_id", default="-")

_configured: bool = False
_log_config: Dict[str, Any] = {}
_current_level: LogLevel = LogLevel.NORMAL


def get_request_id() -> str:
    """Request id of the current context, "-" outside a request."""
    return _request_id.get()


def set_request_id(rid: str) -> None:
    _request_id.set(rid)


def get_level() -> LogLevel:
    return _current_level


def set_level(level: LogLevel) -> None:
    global _current_level
    _current_level = level


def get_level_name() -> str:
    return LEVEL_NAMES.get(int(_current_level), "NORMAL")


def is_configured() -> bool:
    return _configured


def set_configured(value: bool) -> None:
    global _configured
    _configured = value


def get_log_config() -> Dict[str, Any]:
    return _log_config


def set_log_config(config: Dict[str, Any]) -> None:
    global _log_config
    _log_config = config


def _env_int(name: str) -> int | None:
    raw = os.getenv(name)
    if not raw:
        return None
    try:
        return int(raw)
    except ValueError:
        return None


def read_logging_config() -> Dict[str, Any]:
    """
    Resolve the ``logging`` section from settings.yaml and the environment.

    The settings file named by TTS_GW_SETTINGS (default
    config/settings.yaml) is optional here: logging must come up even
    when the rest of the configuration is broken, so an unreadable file
    only means defaults.
    """
    cfg: Dict[str, Any] = {}

    settings_path = os.getenv("TTS_GW_SETTINGS", "config/settings.yaml")
    if os.path.exists(settings_path):
        try:
            with open(settings_path, "r", encoding="utf-8") as f:
                raw = yaml.safe_load(f) or {}
            cfg.update(raw.get("logging", {}) or {})
        except (OSError, yaml.YAMLError, AttributeError):
            pass

    if os.getenv("TTS_GW_LOG_LEVEL"):
        cfg["level"] = os.environ["TTS_GW_LOG_LEVEL"]
    if os.getenv("TTS_GW_LOG_DIR"):
        cfg["log_dir"] = os.environ["TTS_GW_LOG_DIR"]
    if os.getenv("TTS_GW_JSONL_FILE"):
        cfg["jsonl_file"] = os.environ["TTS_GW_JSONL_FILE"]

    rotate_bytes = _env_int("TTS_GW_LOG_ROTATE_BYTES")
    if rotate_bytes is not None:
        cfg["rotate_max_bytes"] = rotate_bytes
    rotate_backup = _env_int("TTS_GW_LOG_ROTATE_BACKUP")
    if rotate_backup is not None:
        cfg["rotate_backup_count"] = rotate_backup

    return cfg
