from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Optional

import numpy as np

from personalization.cache import FeedCache, FileCache
from personalization.config import Settings, get_settings
from personalization.repositories import (
    AffinityRepository,
    AuditSink,
    ClusterRepository,
    ContentVectorRepository,
    EngagementRepository,
    InMemoryStore,
    JsonFileStore,
    PostRepository,
    ProfileRepository,
)


def utc_now() -> datetime:
    return datetime.now(UTC)


@dataclass
class ServiceContext:
    """Everything an entry point needs, passed explicitly instead of module globals."""

    posts: PostRepository
    engagement: EngagementRepository
    vectors: ContentVectorRepository
    profiles: ProfileRepository
    affinities: AffinityRepository
    clusters: ClusterRepository
    audit: AuditSink
    cache: Optional[FeedCache]
    settings: Settings = field(default_factory=Settings)
    clock: Callable[[], datetime] = utc_now
    rng: np.random.Generator = field(default_factory=np.random.default_rng)
    database_enabled: bool = True

    @classmethod
    def from_store(
        cls,
        store: InMemoryStore,
        cache: Optional[FeedCache] = None,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utc_now,
        seed: Optional[int] = None,
        database_enabled: bool = True,
    ) -> ServiceContext:
        """Wire a single store object into every repository slot."""
        return cls(
            posts=store,
            engagement=store,
            vectors=store,
            profiles=store,
            affinities=store,
            clusters=store,
            audit=store,
            cache=cache,
            settings=settings or Settings(),
            clock=clock,
            rng=np.random.default_rng(seed),
            database_enabled=database_enabled,
        )


def build_context(
    settings: Optional[Settings] = None,
    seed: Optional[int] = None,
) -> ServiceContext:
    """Context backed by the JSON file store and file cache from settings."""
    settings = settings or get_settings()
    store = JsonFileStore(Path(settings.data_dir))
    cache = FileCache(Path(settings.cache_dir))
    return ServiceContext.from_store(store, cache=cache, settings=settings, seed=seed)
