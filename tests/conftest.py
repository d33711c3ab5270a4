from datetime import UTC, datetime, timedelta

import pytest

from personalization.cache import MemoryCache
from personalization.config import Settings
from personalization.context import ServiceContext
from personalization.models import (
    ContentVectorSnapshot,
    PostRecord,
    UserEngagementEvent,
)
from personalization.repositories import InMemoryStore

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=UTC)


class FakeTime:
    """Monotonic seconds for cache TTL checks; advance() moves it forward."""

    def __init__(self, start: float = 1_000_000.0) -> None:
        self.value = start

    def __call__(self) -> float:
        return self.value

    def advance(self, seconds: float) -> None:
        self.value += seconds


@pytest.fixture
def isolated_config(tmp_path, monkeypatch):
    """Keep tests away from the real ~/.config and env overrides."""
    monkeypatch.setattr(
        "personalization.config.CONFIG_FILE", tmp_path / "config" / "config.json"
    )
    monkeypatch.setattr("personalization.config.CONFIG_DIR", tmp_path / "config")
    for var in (
        "PERSONALIZATION_DATA_DIR",
        "PERSONALIZATION_CACHE_DIR",
        "ANALYTICS_TTL_DAYS",
        "AI_PERSONALIZATION_TTL_HOURS",
        "PERSONALIZATION_DECAY_DAYS",
        "ETL_WORKERS",
        "ETL_MAX_ERROR_RATE",
        "ETL_MAX_DURATION_SECONDS",
        "AI_MODEL_RECOMMENDER",
        "AI_MODEL",
        "LOG_LEVEL",
        "LOG_FORMAT",
    ):
        monkeypatch.delenv(var, raising=False)


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def fake_time() -> FakeTime:
    return FakeTime()


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def context(store, fake_time) -> ServiceContext:
    return ServiceContext.from_store(
        store,
        cache=MemoryCache(clock=fake_time),
        settings=Settings(etl_workers=1),
        clock=lambda: NOW,
        seed=7,
    )


@pytest.fixture
def make_post():
    def _make(
        post_id: str,
        tags=("python",),
        embedding=(1.0, 0.0),
        days_old: float = 1.0,
        author_id=None,
        status: str = "PUBLISHED",
        title=None,
        summary=None,
        content: str = "",
    ) -> PostRecord:
        return PostRecord(
            post_id=post_id,
            slug=f"slug-{post_id}",
            title=title or f"Post {post_id}",
            summary=summary,
            content=content,
            tags=list(tags),
            status=status,
            author_id=author_id,
            published_at=NOW - timedelta(days=days_old),
            created_at=NOW - timedelta(days=days_old),
            embedding=list(embedding) if embedding is not None else None,
        )

    return _make


@pytest.fixture
def make_vector():
    def _make(
        post_id: str,
        tags=("python",),
        embedding=(1.0, 0.0),
        engagement: float = 0.0,
        freshness: float = 0.0,
        author_id=None,
        status: str = "PUBLISHED",
        days_old: float = 1.0,
        title=None,
        summary=None,
        word_count: int = 0,
    ) -> ContentVectorSnapshot:
        return ContentVectorSnapshot(
            post_id=post_id,
            slug=f"slug-{post_id}",
            title=title or f"Post {post_id}",
            summary=summary,
            tags=list(tags),
            embedding=list(embedding),
            engagement_score=engagement,
            freshness_score=freshness,
            status=status,
            author_id=author_id,
            published_at=NOW - timedelta(days=days_old),
            word_count=word_count,
        )

    return _make


@pytest.fixture
def make_event():
    def _make(
        user_id: str,
        post_id,
        type: str = "view",
        days_ago: float = 0.0,
        duration=None,
    ) -> UserEngagementEvent:
        return UserEngagementEvent(
            user_id=user_id,
            type=type,  # type: ignore[arg-type]
            created_at=NOW - timedelta(days=days_ago),
            post_id=post_id,
            duration_seconds=duration,
        )

    return _make
