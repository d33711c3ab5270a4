"""Repository interfaces and the storage backends behind them.

The algorithms only see the Protocols below. ``InMemoryStore`` backs tests and
simulations; ``JsonFileStore`` persists the same state as JSON documents under
a data directory.
"""

from __future__ import annotations

import copy
import threading
from collections.abc import Callable, Iterable, Iterator, Sequence
from contextlib import contextmanager
from dataclasses import replace
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Optional, Protocol, TypeVar

from personalization.cache_utils import atomic_write_json, read_json
from personalization.errors import StorageError
from personalization.logging_config import get_logger
from personalization.models import (
    AffinityScore,
    ContentVectorSnapshot,
    PostRecord,
    TopicCluster,
    UsageRecord,
    UserEngagementEvent,
    UserProfileSnapshot,
    format_datetime,
)

logger = get_logger(__name__)

_COLLECTION_ATTRS = {"audit": "audit_log"}

T = TypeVar("T")


class ContentVectorRepository(Protocol):
    def list_vectors(self) -> list[ContentVectorSnapshot]: ...

    def get_vector(self, post_id: str) -> Optional[ContentVectorSnapshot]: ...

    def upsert_vector(self, vector: ContentVectorSnapshot) -> None: ...

    def delete_vectors(self, post_ids: Iterable[str]) -> int: ...

    def update_highlights(self, post_id: str, highlights: list[str]) -> None: ...


class ClusterRepository(Protocol):
    def list_clusters(self) -> list[TopicCluster]: ...

    def replace_all(self, clusters: Sequence[TopicCluster]) -> None: ...


class ProfileRepository(Protocol):
    def get_profile(self, user_id: str) -> Optional[UserProfileSnapshot]: ...

    def list_profiles(self) -> list[UserProfileSnapshot]: ...

    def upsert_profile(self, profile: UserProfileSnapshot) -> None: ...

    def update_flags(
        self,
        user_id: str,
        personalization_opt_out: Optional[bool] = None,
        analytics_opt_out: Optional[bool] = None,
    ) -> UserProfileSnapshot: ...


class AffinityRepository(Protocol):
    def list_for_user(self, user_id: str, limit: Optional[int] = None) -> list[AffinityScore]: ...

    def replace_for_user(self, user_id: str, scores: Sequence[AffinityScore]) -> None: ...

    def delete_for_user(self, user_id: str) -> int: ...


class PostRepository(Protocol):
    def list_posts(self, published_only: bool = True) -> list[PostRecord]: ...

    def get_post(self, post_id: str) -> Optional[PostRecord]: ...


class EngagementRepository(Protocol):
    def list_events(self, since: Optional[datetime] = None) -> list[UserEngagementEvent]: ...

    def events_for_user(
        self, user_id: str, since: Optional[datetime] = None
    ) -> list[UserEngagementEvent]: ...

    def list_usage(self, since: Optional[datetime] = None) -> list[UsageRecord]: ...


class AuditSink(Protocol):
    def record(self, task: str, user_id: Optional[str], detail: dict[str, Any]) -> None: ...


class InMemoryStore:
    """Implements every repository Protocol over plain dicts."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self.posts: dict[str, PostRecord] = {}
        self.events: list[UserEngagementEvent] = []
        self.usage: list[UsageRecord] = []
        self.vectors: dict[str, ContentVectorSnapshot] = {}
        self.profiles: dict[str, UserProfileSnapshot] = {}
        self.affinities: dict[str, list[AffinityScore]] = {}
        self.clusters: list[TopicCluster] = []
        self.audit_log: list[dict[str, Any]] = []

    # Seeding
    def add_posts(self, posts: Iterable[PostRecord]) -> None:
        with self._mutating("posts"):
            for post in posts:
                self.posts[post.post_id] = post

    def add_events(self, events: Iterable[UserEngagementEvent]) -> None:
        with self._mutating("events"):
            self.events.extend(events)

    def add_usage(self, usage: Iterable[UsageRecord]) -> None:
        with self._mutating("usage"):
            self.usage.extend(usage)

    # Posts
    def list_posts(self, published_only: bool = True) -> list[PostRecord]:
        with self._lock:
            posts = list(self.posts.values())
        if published_only:
            posts = [p for p in posts if p.status == "PUBLISHED"]
        return posts

    def get_post(self, post_id: str) -> Optional[PostRecord]:
        return self.posts.get(post_id)

    # Engagement
    def list_events(self, since: Optional[datetime] = None) -> list[UserEngagementEvent]:
        with self._lock:
            events = list(self.events)
        if since is not None:
            events = [e for e in events if e.created_at >= since]
        return events

    def events_for_user(
        self, user_id: str, since: Optional[datetime] = None
    ) -> list[UserEngagementEvent]:
        return [e for e in self.list_events(since) if e.user_id == user_id]

    def list_usage(self, since: Optional[datetime] = None) -> list[UsageRecord]:
        with self._lock:
            usage = list(self.usage)
        if since is not None:
            usage = [u for u in usage if u.created_at >= since]
        return usage

    # Content vectors
    def list_vectors(self) -> list[ContentVectorSnapshot]:
        with self._lock:
            return list(self.vectors.values())

    def get_vector(self, post_id: str) -> Optional[ContentVectorSnapshot]:
        return self.vectors.get(post_id)

    def upsert_vector(self, vector: ContentVectorSnapshot) -> None:
        with self._mutating("vectors"):
            self.vectors[vector.post_id] = vector

    def delete_vectors(self, post_ids: Iterable[str]) -> int:
        with self._mutating("vectors"):
            removed = [pid for pid in post_ids if self.vectors.pop(pid, None) is not None]
            return len(removed)

    def update_highlights(self, post_id: str, highlights: list[str]) -> None:
        with self._mutating("vectors"):
            current = self.vectors.get(post_id)
            if current is None:
                raise StorageError(f"no content vector for post {post_id}")
            self.vectors[post_id] = replace(current, highlights=list(highlights))

    # Clusters
    def list_clusters(self) -> list[TopicCluster]:
        with self._lock:
            return list(self.clusters)

    def replace_all(self, clusters: Sequence[TopicCluster]) -> None:
        with self._mutating("clusters"):
            self.clusters = list(clusters)

    # Profiles
    def get_profile(self, user_id: str) -> Optional[UserProfileSnapshot]:
        return self.profiles.get(user_id)

    def list_profiles(self) -> list[UserProfileSnapshot]:
        with self._lock:
            return list(self.profiles.values())

    def upsert_profile(self, profile: UserProfileSnapshot) -> None:
        with self._mutating("profiles"):
            self.profiles[profile.user_id] = profile

    def update_flags(
        self,
        user_id: str,
        personalization_opt_out: Optional[bool] = None,
        analytics_opt_out: Optional[bool] = None,
    ) -> UserProfileSnapshot:
        """Partial update of opt-out flags; creates an empty profile if needed."""
        with self._mutating("profiles"):
            profile = self.profiles.get(user_id) or UserProfileSnapshot(
                user_id=user_id, segment=""
            )
            changes: dict[str, bool] = {}
            if personalization_opt_out is not None:
                changes["personalization_opt_out"] = bool(personalization_opt_out)
            if analytics_opt_out is not None:
                changes["analytics_opt_out"] = bool(analytics_opt_out)
            profile = replace(profile, **changes)
            self.profiles[user_id] = profile
            return profile

    # Affinities
    def list_for_user(self, user_id: str, limit: Optional[int] = None) -> list[AffinityScore]:
        with self._lock:
            scores = sorted(
                self.affinities.get(user_id, []), key=lambda a: -a.affinity
            )
        return scores if limit is None else scores[:limit]

    def replace_for_user(self, user_id: str, scores: Sequence[AffinityScore]) -> None:
        with self._mutating("affinities"):
            self.affinities[user_id] = list(scores)

    def delete_for_user(self, user_id: str) -> int:
        with self._mutating("affinities"):
            removed = len(self.affinities.pop(user_id, []))
            return removed

    # Audit
    def record(self, task: str, user_id: Optional[str], detail: dict[str, Any]) -> None:
        with self._mutating("audit"):
            self.audit_log.append(
                {
                    "task": task,
                    "user_id": user_id,
                    "detail": detail,
                    "created_at": format_datetime(datetime.now(UTC)),
                }
            )

    @contextmanager
    def _mutating(self, collection: str) -> Iterator[None]:
        """Apply a change under the lock; restore the collection if persisting fails."""
        attr = _COLLECTION_ATTRS.get(collection, collection)
        with self._lock:
            before = copy.copy(getattr(self, attr))
            yield
            try:
                self._changed(collection)
            except StorageError:
                setattr(self, attr, before)
                raise

    def _changed(self, collection: str) -> None:
        """Hook for persistent subclasses."""


class JsonFileStore(InMemoryStore):
    """InMemoryStore mirrored to one JSON file per collection under data_dir."""

    def __init__(self, data_dir: Path) -> None:
        super().__init__()
        self.data_dir = Path(data_dir)
        self._loading = True
        try:
            self._load()
        finally:
            self._loading = False

    def _file(self, collection: str) -> Path:
        return self.data_dir / f"{collection}.json"

    def _read(self, collection: str) -> Any:
        try:
            return read_json(self._file(collection))
        except (OSError, ValueError) as e:
            raise StorageError(f"failed to read {collection}: {e}") from e

    def _records(self, collection: str, parse: Callable[[Any], T]) -> list[T]:
        try:
            return [parse(raw) for raw in self._read(collection) or []]
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            raise StorageError(f"malformed record in {collection}: {e}") from e

    def _load(self) -> None:
        for post in self._records("posts", PostRecord.from_dict):
            self.posts[post.post_id] = post
        for raw in self._read("events") or []:
            try:
                self.events.append(UserEngagementEvent.from_dict(raw))
            except (KeyError, ValueError) as e:
                logger.warning("event_skipped", error=str(e))
        self.usage = self._records("usage", UsageRecord.from_dict)
        for vector in self._records("vectors", ContentVectorSnapshot.from_dict):
            self.vectors[vector.post_id] = vector
        for profile in self._records("profiles", UserProfileSnapshot.from_dict):
            self.profiles[profile.user_id] = profile
        affinities = self._read("affinities") or {}
        try:
            for user_id, scores in affinities.items():
                self.affinities[user_id] = [AffinityScore.from_dict(s) for s in scores]
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            raise StorageError(f"malformed record in affinities: {e}") from e
        self.clusters = self._records("clusters", TopicCluster.from_dict)
        self.audit_log = list(self._read("audit") or [])

    def _serialize(self, collection: str) -> Any:
        if collection == "posts":
            return [p.to_dict() for p in self.posts.values()]
        if collection == "events":
            return [e.to_dict() for e in self.events]
        if collection == "usage":
            return [u.to_dict() for u in self.usage]
        if collection == "vectors":
            return [v.to_dict() for v in self.vectors.values()]
        if collection == "profiles":
            return [p.to_dict() for p in self.profiles.values()]
        if collection == "affinities":
            return {
                user_id: [s.to_dict() for s in scores]
                for user_id, scores in self.affinities.items()
            }
        if collection == "clusters":
            return [c.to_dict() for c in self.clusters]
        return self.audit_log

    def _changed(self, collection: str) -> None:
        if self._loading:
            return
        try:
            atomic_write_json(self._file(collection), self._serialize(collection))
        except (OSError, TypeError, ValueError) as e:
            raise StorageError(f"failed to persist {collection}: {e}") from e
