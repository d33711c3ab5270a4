"""Typed data models for reader personalization."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Literal, Optional, TypedDict

EventType = Literal["session", "view", "share", "feedback"]
Tone = Literal["informative", "conversational", "persuasive"]
CacheStatus = Literal["hit", "miss", "bypass"]

PUBLISHED = "PUBLISHED"


def parse_datetime(value: object) -> Optional[datetime]:
    """Parse an ISO string (or pass through a datetime) as an aware UTC datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt


def format_datetime(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.isoformat()


class PostDict(TypedDict, total=False):
    """Serialized post from the external content store."""

    id: str
    slug: str
    title: str
    summary: Optional[str]
    content: str
    tags: list[str]
    status: str
    author_id: Optional[str]
    published_at: Optional[str]
    created_at: Optional[str]
    embedding: list[float]


class ContentVectorDict(TypedDict, total=False):
    post_id: str
    slug: str
    title: str
    summary: Optional[str]
    tags: list[str]
    embedding: list[float]
    engagement_score: float
    freshness_score: float
    highlights: list[str]
    status: str
    author_id: Optional[str]
    published_at: Optional[str]
    word_count: int


class TopicPreferenceDict(TypedDict):
    name: str
    weight: float
    last_seen: str


class ProfileDict(TypedDict, total=False):
    user_id: str
    segment: str
    avg_read_time_seconds: float
    session_count: int
    view_count: int
    topics: list[TopicPreferenceDict]
    tone_preference: str
    feature_vector: list[float]
    personalization_opt_out: bool
    analytics_opt_out: bool
    last_active_at: Optional[str]
    last_insight_refresh: Optional[str]


class FeedItemDict(TypedDict):
    id: str
    slug: str
    title: str
    summary: Optional[str]
    score: float
    reason: list[str]
    published_at: Optional[str]
    tags: list[str]


class FeedResponseDict(TypedDict, total=False):
    items: list[FeedItemDict]
    cache: str
    generated_at: str
    latency_ms: int
    fallback: bool
    segment: Optional[str]


@dataclass
class PostRecord:
    """A post as exposed by the external content store."""

    post_id: str
    slug: str
    title: str
    summary: Optional[str] = None
    content: str = ""
    tags: list[str] = field(default_factory=list)
    status: str = PUBLISHED
    author_id: Optional[str] = None
    published_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    embedding: object = None  # Raw provider payload; validated downstream

    @classmethod
    def from_dict(cls, d: PostDict) -> PostRecord:
        return cls(
            post_id=str(d.get("id", "")),
            slug=str(d.get("slug", "")),
            title=str(d.get("title", "")),
            summary=d.get("summary"),
            content=str(d.get("content", "")),
            tags=[str(t) for t in d.get("tags", [])],
            status=str(d.get("status", PUBLISHED)),
            author_id=d.get("author_id"),
            published_at=parse_datetime(d.get("published_at")),
            created_at=parse_datetime(d.get("created_at")),
            embedding=d.get("embedding"),
        )

    def to_dict(self) -> PostDict:
        return {
            "id": self.post_id,
            "slug": self.slug,
            "title": self.title,
            "summary": self.summary,
            "content": self.content,
            "tags": self.tags,
            "status": self.status,
            "author_id": self.author_id,
            "published_at": format_datetime(self.published_at),
            "created_at": format_datetime(self.created_at),
            "embedding": self.embedding if isinstance(self.embedding, list) else [],
        }


@dataclass
class ContentVectorSnapshot:
    """One embedding plus derived scores per published item."""

    post_id: str
    slug: str
    title: str
    summary: Optional[str]
    tags: list[str]
    embedding: list[float]
    engagement_score: float = 0.0
    freshness_score: float = 0.0
    highlights: list[str] = field(default_factory=list)
    status: str = PUBLISHED
    author_id: Optional[str] = None
    published_at: Optional[datetime] = None
    word_count: int = 0

    @property
    def is_published(self) -> bool:
        return self.status == PUBLISHED

    @classmethod
    def from_dict(cls, d: ContentVectorDict) -> ContentVectorSnapshot:
        return cls(
            post_id=str(d.get("post_id", "")),
            slug=str(d.get("slug", "")),
            title=str(d.get("title", "")),
            summary=d.get("summary"),
            tags=[str(t) for t in d.get("tags", [])],
            embedding=[float(v) for v in d.get("embedding", [])],
            engagement_score=float(d.get("engagement_score", 0.0)),
            freshness_score=float(d.get("freshness_score", 0.0)),
            highlights=list(d.get("highlights", [])),
            status=str(d.get("status", PUBLISHED)),
            author_id=d.get("author_id"),
            published_at=parse_datetime(d.get("published_at")),
            word_count=int(d.get("word_count", 0)),
        )

    def to_dict(self) -> ContentVectorDict:
        return {
            "post_id": self.post_id,
            "slug": self.slug,
            "title": self.title,
            "summary": self.summary,
            "tags": self.tags,
            "embedding": self.embedding,
            "engagement_score": self.engagement_score,
            "freshness_score": self.freshness_score,
            "highlights": self.highlights,
            "status": self.status,
            "author_id": self.author_id,
            "published_at": format_datetime(self.published_at),
            "word_count": self.word_count,
        }


@dataclass
class ClusterMember:
    post_id: str
    membership_score: float  # Cosine similarity to the final centroid


@dataclass
class TopicCluster:
    """A group of content vectors sharing a topic."""

    centroid: list[float]
    label: str
    keywords: list[str]
    members: list[ClusterMember] = field(default_factory=list)

    @classmethod
    def from_dict(cls, d: dict) -> TopicCluster:
        return cls(
            centroid=[float(v) for v in d.get("centroid", [])],
            label=str(d.get("label", "")),
            keywords=list(d.get("keywords", [])),
            members=[
                ClusterMember(str(m["post_id"]), float(m["membership_score"]))
                for m in d.get("members", [])
            ],
        )

    def to_dict(self) -> dict:
        return {
            "centroid": self.centroid,
            "label": self.label,
            "keywords": self.keywords,
            "members": [
                {"post_id": m.post_id, "membership_score": m.membership_score}
                for m in self.members
            ],
        }


@dataclass
class UserEngagementEvent:
    """A single append-only reader engagement event."""

    user_id: str
    type: EventType
    created_at: datetime
    post_id: Optional[str] = None
    slug: Optional[str] = None
    duration_seconds: Optional[float] = None
    max_scroll_percent: Optional[float] = None
    sentiment: Optional[float] = None

    @classmethod
    def from_dict(cls, d: dict) -> UserEngagementEvent:
        created_at = parse_datetime(d.get("created_at"))
        if created_at is None:
            raise ValueError("engagement event is missing created_at")
        return cls(
            user_id=str(d["user_id"]),
            type=d["type"],
            created_at=created_at,
            post_id=d.get("post_id"),
            slug=d.get("slug"),
            duration_seconds=d.get("duration_seconds"),
            max_scroll_percent=d.get("max_scroll_percent"),
            sentiment=d.get("sentiment"),
        )

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "type": self.type,
            "created_at": format_datetime(self.created_at),
            "post_id": self.post_id,
            "slug": self.slug,
            "duration_seconds": self.duration_seconds,
            "max_scroll_percent": self.max_scroll_percent,
            "sentiment": self.sentiment,
        }


@dataclass
class UsageRecord:
    """A historical task/action tag (e.g. "tone:conversational") for a user."""

    user_id: str
    task: str
    created_at: datetime

    @classmethod
    def from_dict(cls, d: dict) -> UsageRecord:
        return cls(
            user_id=str(d["user_id"]),
            task=str(d["task"]),
            created_at=parse_datetime(d.get("created_at")) or datetime.now(UTC),
        )

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "task": self.task,
            "created_at": format_datetime(self.created_at),
        }


@dataclass
class TopicPreference:
    name: str
    weight: float  # Recency-decayed accumulation
    last_seen: datetime

    def to_dict(self) -> TopicPreferenceDict:
        return {
            "name": self.name,
            "weight": self.weight,
            "last_seen": self.last_seen.isoformat(),
        }

    @classmethod
    def from_dict(cls, d: TopicPreferenceDict) -> TopicPreference:
        return cls(
            name=str(d["name"]),
            weight=float(d["weight"]),
            last_seen=parse_datetime(d["last_seen"]) or datetime.now(UTC),
        )


@dataclass
class UserProfileSnapshot:
    """Per-reader interest profile rebuilt on each ETL pass."""

    user_id: str
    segment: str
    avg_read_time_seconds: float = 0.0
    session_count: int = 0
    view_count: int = 0
    topics: list[TopicPreference] = field(default_factory=list)
    tone_preference: Tone = "informative"
    feature_vector: list[float] = field(default_factory=list)
    personalization_opt_out: bool = False
    analytics_opt_out: bool = False
    last_active_at: Optional[datetime] = None
    last_insight_refresh: Optional[datetime] = None

    @property
    def has_signal(self) -> bool:
        """True when the profile carries topics or a feature vector."""
        return bool(self.topics) or any(v != 0.0 for v in self.feature_vector)

    @classmethod
    def from_dict(cls, d: ProfileDict) -> UserProfileSnapshot:
        return cls(
            user_id=str(d.get("user_id", "")),
            segment=str(d.get("segment", "")),
            avg_read_time_seconds=float(d.get("avg_read_time_seconds", 0.0)),
            session_count=int(d.get("session_count", 0)),
            view_count=int(d.get("view_count", 0)),
            topics=[TopicPreference.from_dict(t) for t in d.get("topics", [])],
            tone_preference=d.get("tone_preference", "informative"),  # type: ignore[arg-type]
            feature_vector=[float(v) for v in d.get("feature_vector", [])],
            personalization_opt_out=bool(d.get("personalization_opt_out", False)),
            analytics_opt_out=bool(d.get("analytics_opt_out", False)),
            last_active_at=parse_datetime(d.get("last_active_at")),
            last_insight_refresh=parse_datetime(d.get("last_insight_refresh")),
        )

    def to_dict(self) -> ProfileDict:
        return {
            "user_id": self.user_id,
            "segment": self.segment,
            "avg_read_time_seconds": self.avg_read_time_seconds,
            "session_count": self.session_count,
            "view_count": self.view_count,
            "topics": [t.to_dict() for t in self.topics],
            "tone_preference": self.tone_preference,
            "feature_vector": self.feature_vector,
            "personalization_opt_out": self.personalization_opt_out,
            "analytics_opt_out": self.analytics_opt_out,
            "last_active_at": format_datetime(self.last_active_at),
            "last_insight_refresh": format_datetime(self.last_insight_refresh),
        }


@dataclass
class AffinityScore:
    post_id: str
    affinity: float
    reason: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"post_id": self.post_id, "affinity": self.affinity, "reason": self.reason}

    @classmethod
    def from_dict(cls, d: dict) -> AffinityScore:
        reason = d.get("reason")
        return cls(
            post_id=str(d["post_id"]),
            affinity=float(d["affinity"]),
            reason=list(reason) if isinstance(reason, list) else ["Personalized"],
        )


@dataclass
class PersonalizedFeedOptions:
    user_id: Optional[str]
    limit: Optional[int] = None
    fallback_limit: Optional[int] = None
    context_post_id: Optional[str] = None
    force_refresh: bool = False


@dataclass
class PersonalizedFeedItem:
    id: str
    slug: str
    title: str
    summary: Optional[str]
    score: float
    reason: list[str]
    published_at: Optional[str]
    tags: list[str]

    def to_dict(self) -> FeedItemDict:
        return {
            "id": self.id,
            "slug": self.slug,
            "title": self.title,
            "summary": self.summary,
            "score": self.score,
            "reason": self.reason,
            "published_at": self.published_at,
            "tags": self.tags,
        }

    @classmethod
    def from_dict(cls, d: FeedItemDict) -> PersonalizedFeedItem:
        return cls(
            id=str(d["id"]),
            slug=str(d["slug"]),
            title=str(d["title"]),
            summary=d.get("summary"),
            score=float(d["score"]),
            reason=list(d.get("reason", [])),
            published_at=d.get("published_at"),
            tags=list(d.get("tags", [])),
        )


@dataclass
class PersonalizedFeedResponse:
    items: list[PersonalizedFeedItem]
    cache: CacheStatus
    generated_at: str
    latency_ms: int
    fallback: bool
    segment: Optional[str] = None

    def to_dict(self) -> FeedResponseDict:
        return {
            "items": [item.to_dict() for item in self.items],
            "cache": self.cache,
            "generated_at": self.generated_at,
            "latency_ms": self.latency_ms,
            "fallback": self.fallback,
            "segment": self.segment,
        }

    @classmethod
    def from_dict(cls, d: FeedResponseDict) -> PersonalizedFeedResponse:
        return cls(
            items=[PersonalizedFeedItem.from_dict(i) for i in d.get("items", [])],
            cache=d.get("cache", "miss"),  # type: ignore[arg-type]
            generated_at=str(d.get("generated_at", "")),
            latency_ms=int(d.get("latency_ms", 0)),
            fallback=bool(d.get("fallback", False)),
            segment=d.get("segment"),
        )


@dataclass
class EtlOptions:
    refresh_affinities: bool = True
    skip_audit_log: bool = False
    refresh_clusters: bool = True


@dataclass
class EtlResult:
    profiles: int = 0
    content_vectors: int = 0
    affinities: int = 0
    duration_ms: int = 0
    errors: int = 0
    clusters: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "profiles": self.profiles,
            "content_vectors": self.content_vectors,
            "affinities": self.affinities,
            "duration_ms": self.duration_ms,
            "errors": self.errors,
            "clusters": self.clusters,
        }


@dataclass
class PrivacyPreferences:
    personalization_opt_out: bool
    analytics_opt_out: bool
    segment: Optional[str] = None
    last_insight_refresh: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "personalization_opt_out": self.personalization_opt_out,
            "analytics_opt_out": self.analytics_opt_out,
            "segment": self.segment,
            "last_insight_refresh": self.last_insight_refresh,
        }


@dataclass
class PredictiveInsight:
    post_id: str
    slug: str
    title: str
    predicted_ctr: float
    predicted_dwell_seconds: int
    predicted_engagement_probability: float
    top_drivers: list[str]

    def to_dict(self) -> dict:
        return {
            "post_id": self.post_id,
            "slug": self.slug,
            "title": self.title,
            "predicted_ctr": self.predicted_ctr,
            "predicted_dwell_seconds": self.predicted_dwell_seconds,
            "predicted_engagement_probability": self.predicted_engagement_probability,
            "top_drivers": self.top_drivers,
        }


@dataclass
class CreatorInsightSnapshot:
    posts: list[PredictiveInsight]
    refreshed_at: str
    model: str

    def to_dict(self) -> dict:
        return {
            "posts": [p.to_dict() for p in self.posts],
            "refreshed_at": self.refreshed_at,
            "model": self.model,
        }
