import pytest

from personalization import config
from personalization.config import Settings, get_settings, load_config, save_config

pytestmark = pytest.mark.usefixtures("isolated_config")


def test_config_workflow():
    # 1. Load non-existent config
    assert load_config() == {}

    # 2. Save config
    save_config("feed_ttl_hours", 2)
    assert config.CONFIG_FILE.exists()

    # 3. Save another key
    save_config("data_dir", "/srv/data")
    assert load_config() == {"feed_ttl_hours": 2, "data_dir": "/srv/data"}


def test_load_corrupt_config():
    config.CONFIG_DIR.mkdir(parents=True)
    config.CONFIG_FILE.write_text("invalid json{")
    assert load_config() == {}


def test_defaults():
    settings = get_settings()
    assert settings == Settings()
    assert settings.analytics_ttl_days == 90
    assert settings.decay_days == 21.0
    assert settings.feed_ttl_seconds == 6 * 3600


def test_env_overrides_file(monkeypatch):
    save_config("analytics_ttl_days", 30)
    save_config("etl_workers", 2)
    monkeypatch.setenv("ANALYTICS_TTL_DAYS", "45")

    settings = get_settings()

    assert settings.analytics_ttl_days == 45
    assert settings.etl_workers == 2


def test_overrides_win(monkeypatch):
    monkeypatch.setenv("PERSONALIZATION_DATA_DIR", "/env")
    assert get_settings({"data_dir": "/cli"}).data_dir == "/cli"


def test_recommender_model_fallback_chain(monkeypatch):
    monkeypatch.setenv("AI_MODEL", "general-model")
    assert get_settings().recommender_model == "general-model"
    monkeypatch.setenv("AI_MODEL_RECOMMENDER", "ranker-model")
    assert get_settings().recommender_model == "ranker-model"


@pytest.mark.parametrize("raw", ["abc", "0", "-5"])
def test_invalid_analytics_window_uses_default(monkeypatch, raw):
    monkeypatch.setenv("ANALYTICS_TTL_DAYS", raw)
    assert get_settings().analytics_ttl_days == 90


def test_sanitizes_workers_and_decay(monkeypatch):
    monkeypatch.setenv("ETL_WORKERS", "0")
    monkeypatch.setenv("PERSONALIZATION_DECAY_DAYS", "-1")
    settings = get_settings()
    assert settings.etl_workers == 1
    assert settings.decay_days == 21


@pytest.mark.parametrize(
    "hours,seconds",
    [(0.05, 600), (0.5, 1800), (6, 21600), (48, 86400)],
)
def test_feed_ttl_is_clamped(hours, seconds):
    assert Settings(feed_ttl_hours=hours).feed_ttl_seconds == seconds


def test_invalid_ttl_hours_falls_back(monkeypatch):
    monkeypatch.setenv("AI_PERSONALIZATION_TTL_HOURS", "soon")
    assert get_settings().feed_ttl_hours == 6.0
