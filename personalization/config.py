from __future__ import annotations

import json
import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Optional

from personalization.constants import (
    DEFAULT_ANALYTICS_TTL_DAYS,
    DEFAULT_DECAY_DAYS,
    DEFAULT_ETL_WORKERS,
    ETL_MAX_DURATION_SECONDS,
    ETL_MAX_ERROR_RATE,
    FEED_TTL_MAX_SECONDS,
    FEED_TTL_MIN_SECONDS,
    SEGMENT_DEEP_READ_SECONDS,
    SEGMENT_DEEP_SESSIONS,
    SEGMENT_EXPLORER_SESSIONS,
    SEGMENT_EXPLORER_TOPICS,
    SEGMENT_FEEDBACK_COUNT,
    SEGMENT_FEEDBACK_READ_SECONDS,
)

CONFIG_DIR = Path.home() / ".config" / "reader_personalization"
CONFIG_FILE = CONFIG_DIR / "config.json"


def load_config() -> dict:
    if not CONFIG_FILE.exists():
        return {}
    try:
        with open(CONFIG_FILE, "r") as f:
            data = json.load(f)
    except (OSError, ValueError):
        return {}
    return data if isinstance(data, dict) else {}


def save_config(key: str, value: Any) -> None:
    CONFIG_DIR.mkdir(parents=True, exist_ok=True)
    config = load_config()
    config[key] = value
    with open(CONFIG_FILE, "w") as f:
        json.dump(config, f, indent=2)


@dataclass
class Settings:
    data_dir: str = ".data"
    cache_dir: str = ".cache/feed"
    analytics_ttl_days: int = DEFAULT_ANALYTICS_TTL_DAYS
    feed_ttl_hours: float = 6.0
    decay_days: float = float(DEFAULT_DECAY_DAYS)
    etl_workers: int = DEFAULT_ETL_WORKERS
    etl_max_error_rate: float = ETL_MAX_ERROR_RATE
    etl_max_duration_seconds: float = float(ETL_MAX_DURATION_SECONDS)
    recommender_model: str = "gpt-4o-mini"
    segment_deep_read_seconds: float = SEGMENT_DEEP_READ_SECONDS
    segment_deep_sessions: int = SEGMENT_DEEP_SESSIONS
    segment_explorer_sessions: int = SEGMENT_EXPLORER_SESSIONS
    segment_explorer_topics: int = SEGMENT_EXPLORER_TOPICS
    segment_feedback_count: int = SEGMENT_FEEDBACK_COUNT
    segment_feedback_read_seconds: float = SEGMENT_FEEDBACK_READ_SECONDS
    log_level: str = "INFO"

    @property
    def feed_ttl_seconds(self) -> int:
        seconds = round(self.feed_ttl_hours * 3600)
        return min(max(seconds, FEED_TTL_MIN_SECONDS), FEED_TTL_MAX_SECONDS)


_ENV_VARS: dict[str, tuple[str, ...]] = {
    "data_dir": ("PERSONALIZATION_DATA_DIR",),
    "cache_dir": ("PERSONALIZATION_CACHE_DIR",),
    "analytics_ttl_days": ("ANALYTICS_TTL_DAYS",),
    "feed_ttl_hours": ("AI_PERSONALIZATION_TTL_HOURS",),
    "decay_days": ("PERSONALIZATION_DECAY_DAYS",),
    "etl_workers": ("ETL_WORKERS",),
    "etl_max_error_rate": ("ETL_MAX_ERROR_RATE",),
    "etl_max_duration_seconds": ("ETL_MAX_DURATION_SECONDS",),
    "recommender_model": ("AI_MODEL_RECOMMENDER", "AI_MODEL"),
    "log_level": ("LOG_LEVEL",),
}


def _env_value(names: tuple[str, ...]) -> Optional[str]:
    for name in names:
        value = os.environ.get(name)
        if value:
            return value
    return None


def _coerce(raw: Any, default: Any) -> Any:
    """Cast raw to the type of default; fall back to default when it doesn't parse."""
    try:
        if isinstance(default, bool):
            return str(raw).lower() in ("1", "true", "yes")
        if isinstance(default, int):
            return int(float(raw))
        if isinstance(default, float):
            return float(raw)
    except (TypeError, ValueError):
        return default
    return str(raw)


def get_settings(overrides: Optional[dict[str, Any]] = None) -> Settings:
    """Resolve settings: defaults, then the config file, then the environment."""
    settings = Settings()
    file_config = load_config()
    for f in fields(Settings):
        default = getattr(settings, f.name)
        if f.name in file_config:
            setattr(settings, f.name, _coerce(file_config[f.name], default))
        env = _env_value(_ENV_VARS.get(f.name, ()))
        if env is not None:
            setattr(settings, f.name, _coerce(env, default))
    for key, value in (overrides or {}).items():
        setattr(settings, key, value)

    if settings.analytics_ttl_days <= 0:
        settings.analytics_ttl_days = DEFAULT_ANALYTICS_TTL_DAYS
    if settings.decay_days <= 0:
        settings.decay_days = DEFAULT_DECAY_DAYS
    if settings.feed_ttl_hours <= 0:
        settings.feed_ttl_hours = Settings.feed_ttl_hours
    settings.etl_workers = max(1, settings.etl_workers)
    return settings
