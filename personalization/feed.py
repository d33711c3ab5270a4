"""Personalized feed assembly.

Per request: eligibility check, cache lookup, affinity ranking over live
content vectors, trending blend, cache write. Storage and cache failures
degrade to the trending fallback; they never surface to the caller.
"""

from __future__ import annotations

import time
from collections.abc import Collection
from datetime import timedelta
from typing import Optional

from personalization.aggregation import calculate_freshness_score, clamp
from personalization.constants import (
    DEFAULT_FALLBACK_LIMIT,
    DEFAULT_FEED_LIMIT,
    FALLBACK_LIMIT_MAX,
    FEED_CACHE_PREFIX,
    FEED_LIMIT_MAX,
    FEED_LIMIT_MIN,
    MIN_AFFINITY,
    TRENDING_ENGAGEMENT_WEIGHT,
    TRENDING_FRESHNESS_WEIGHT,
    TRENDING_REASON,
    TRENDING_SCORE,
)
from personalization.context import ServiceContext
from personalization.errors import CacheError, StorageError
from personalization.logging_config import get_logger
from personalization.models import (
    CacheStatus,
    ContentVectorSnapshot,
    PersonalizedFeedItem,
    PersonalizedFeedOptions,
    PersonalizedFeedResponse,
    TopicPreference,
    UserProfileSnapshot,
    format_datetime,
)
from personalization.profile import build_profile
from personalization.scoring import score_affinity

logger = get_logger(__name__)

_MATCH_REASONS = ("Topic match:", "Embedding similarity")


def resolve_limits(
    limit: Optional[int], fallback_limit: Optional[int]
) -> tuple[int, int]:
    resolved = int(clamp(limit or DEFAULT_FEED_LIMIT, FEED_LIMIT_MIN, FEED_LIMIT_MAX))
    resolved_fallback = int(
        clamp(
            fallback_limit or max(DEFAULT_FALLBACK_LIMIT, resolved),
            resolved,
            FALLBACK_LIMIT_MAX,
        )
    )
    return resolved, resolved_fallback


def user_cache_prefix(user_id: str) -> str:
    """Prefix shared by every cached feed of one reader."""
    return f"{FEED_CACHE_PREFIX}:user:{user_id}:"


def build_cache_key(
    user_id: Optional[str],
    limit: int,
    fallback_limit: int,
    context_post_id: Optional[str],
    ttl_hours: float,
) -> str:
    parts = [
        FEED_CACHE_PREFIX,
        f"user:{user_id}" if user_id else "anon",
        f"limit:{limit}",
        f"fallback:{fallback_limit}",
        f"context:{context_post_id}" if context_post_id else "none",
        f"ttl:{ttl_hours:g}",
    ]
    return ":".join(parts)


def _trending_score(vector: Optional[ContentVectorSnapshot], freshness: float) -> float:
    engagement = vector.engagement_score if vector else 0.0
    return engagement * TRENDING_ENGAGEMENT_WEIGHT + freshness * TRENDING_FRESHNESS_WEIGHT


def load_fallback_posts(
    context: ServiceContext,
    limit: int,
    exclude: Collection[str] = (),
) -> list[PersonalizedFeedItem]:
    """Trending pool: published posts by engagement/freshness, newest first on ties."""
    if not context.database_enabled or limit <= 0:
        return []
    now = context.clock()
    vectors = {v.post_id: v for v in context.vectors.list_vectors()}

    ranked: list[tuple[float, float, PersonalizedFeedItem]] = []
    for post in context.posts.list_posts(published_only=True):
        if post.post_id in exclude:
            continue
        vector = vectors.get(post.post_id)
        published = post.published_at or post.created_at
        freshness = (
            vector.freshness_score if vector else calculate_freshness_score(published, now)
        )
        item = PersonalizedFeedItem(
            id=post.post_id,
            slug=post.slug,
            title=post.title,
            summary=post.summary,
            score=TRENDING_SCORE,
            reason=[TRENDING_REASON],
            published_at=format_datetime(published),
            tags=list(post.tags),
        )
        published_ts = published.timestamp() if published else float("-inf")
        ranked.append((_trending_score(vector, freshness), published_ts, item))

    ranked.sort(key=lambda entry: (entry[0], entry[1]), reverse=True)
    return [item for _, _, item in ranked[:limit]]


def _context_profile(
    context: ServiceContext, context_post_id: str
) -> Optional[UserProfileSnapshot]:
    """Transient "more like this" profile built from the context post."""
    vector = context.vectors.get_vector(context_post_id)
    if vector is None:
        return None
    now = context.clock()
    return UserProfileSnapshot(
        user_id="",
        segment="",
        topics=[TopicPreference(name=t.lower(), weight=1.0, last_seen=now) for t in vector.tags],
        feature_vector=list(vector.embedding),
    )


def _load_profile(
    context: ServiceContext, user_id: str
) -> UserProfileSnapshot:
    profile = context.profiles.get_profile(user_id)
    if profile is not None:
        return profile

    # Rebuilt on the fly for readers the ETL has not seen yet; not persisted.
    now = context.clock()
    since = now - timedelta(days=context.settings.analytics_ttl_days)
    events = context.engagement.events_for_user(user_id, since)
    tasks = [u.task for u in context.engagement.list_usage(since) if u.user_id == user_id]
    vectors = {v.post_id: v for v in context.vectors.list_vectors()}
    return build_profile(user_id, events, vectors, tasks, now, context.settings)


def _rank_candidates(
    context: ServiceContext,
    profile: UserProfileSnapshot,
    user_id: Optional[str],
    context_post_id: Optional[str],
    limit: int,
) -> list[PersonalizedFeedItem]:
    # Vector status is a copy taken at ETL time; the post record is authoritative.
    published = {p.post_id for p in context.posts.list_posts(published_only=True)}
    scored: list[PersonalizedFeedItem] = []
    for vector in context.vectors.list_vectors():
        if vector.post_id not in published or not vector.is_published:
            continue
        if vector.post_id == context_post_id:
            continue
        if user_id and vector.author_id == user_id:
            continue
        affinity = score_affinity(profile, vector)
        if affinity.affinity <= MIN_AFFINITY:
            continue
        if not any(r.startswith(_MATCH_REASONS) for r in affinity.reason):
            continue
        scored.append(
            PersonalizedFeedItem(
                id=vector.post_id,
                slug=vector.slug,
                title=vector.title,
                summary=vector.summary,
                score=affinity.affinity,
                reason=affinity.reason,
                published_at=format_datetime(vector.published_at),
                tags=list(vector.tags),
            )
        )
    scored.sort(key=lambda item: (-item.score, item.id))
    return scored[:limit]


def _blend(
    selected: list[PersonalizedFeedItem],
    trending: list[PersonalizedFeedItem],
    fallback_limit: int,
) -> list[PersonalizedFeedItem]:
    seen = {item.id for item in selected}
    blended = list(selected)
    for item in trending:
        if len(blended) >= fallback_limit:
            break
        if item.id in seen:
            continue
        seen.add(item.id)
        blended.append(item)
    return blended


def _elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)


def _fallback_response(
    context: ServiceContext,
    fallback_limit: int,
    started: float,
    cache: CacheStatus = "bypass",
    segment: Optional[str] = None,
) -> PersonalizedFeedResponse:
    try:
        items = load_fallback_posts(context, fallback_limit)
    except StorageError as e:
        logger.warning("trending_pool_unavailable", error=str(e))
        items = []
    return PersonalizedFeedResponse(
        items=items,
        cache=cache,
        generated_at=context.clock().isoformat(),
        latency_ms=_elapsed_ms(started),
        fallback=True,
        segment=segment,
    )


def _cache_get(context: ServiceContext, key: str) -> Optional[PersonalizedFeedResponse]:
    if context.cache is None:
        return None
    try:
        cached = context.cache.get(key)
    except CacheError as e:
        logger.warning("feed_cache_read_failed", key=key, error=str(e))
        return None
    if not cached:
        return None
    try:
        return PersonalizedFeedResponse.from_dict(cached)
    except (AttributeError, KeyError, TypeError, ValueError) as e:
        logger.warning("feed_cache_payload_invalid", key=key, error=str(e))
        return None


def _cache_set(context: ServiceContext, key: str, response: PersonalizedFeedResponse) -> None:
    if context.cache is None:
        return
    try:
        context.cache.set(key, response.to_dict(), context.settings.feed_ttl_seconds)
    except CacheError as e:
        logger.warning("feed_cache_write_failed", key=key, error=str(e))


def get_personalized_feed(
    context: ServiceContext, options: PersonalizedFeedOptions
) -> PersonalizedFeedResponse:
    """Assemble a ranked feed for one request. Always returns a response."""
    started = time.perf_counter()
    limit, fallback_limit = resolve_limits(options.limit, options.fallback_limit)
    user_id = options.user_id or None
    context_post_id = options.context_post_id or None

    if not context.database_enabled:
        return _fallback_response(context, fallback_limit, started)
    if user_id is None and context_post_id is None:
        return _fallback_response(context, fallback_limit, started)

    try:
        profile = (
            _load_profile(context, user_id)
            if user_id
            else _context_profile(context, context_post_id)  # type: ignore[arg-type]
        )
    except StorageError as e:
        logger.warning("feed_profile_unavailable", user_id=user_id, error=str(e))
        return _fallback_response(context, fallback_limit, started)
    if profile is None:
        return _fallback_response(context, fallback_limit, started)
    segment = profile.segment or None
    if profile.personalization_opt_out:
        return _fallback_response(context, fallback_limit, started, segment=segment)

    key = build_cache_key(
        user_id, limit, fallback_limit, context_post_id, context.settings.feed_ttl_hours
    )
    if not options.force_refresh:
        cached = _cache_get(context, key)
        if cached is not None:
            cached.cache = "hit"
            cached.latency_ms = _elapsed_ms(started)
            return cached

    try:
        selected = _rank_candidates(context, profile, user_id, context_post_id, limit)
        fallback_used = len(selected) < fallback_limit or not profile.has_signal
        items = selected
        if fallback_used:
            exclude = {context_post_id} if context_post_id else set()
            trending = load_fallback_posts(
                context, fallback_limit + len(selected), exclude=exclude
            )
            items = _blend(selected, trending, fallback_limit)
    except StorageError as e:
        logger.warning("feed_ranking_unavailable", user_id=user_id, error=str(e))
        return _fallback_response(context, fallback_limit, started, segment=segment)

    response = PersonalizedFeedResponse(
        items=items,
        cache="bypass" if options.force_refresh else "miss",
        generated_at=context.clock().isoformat(),
        latency_ms=_elapsed_ms(started),
        fallback=fallback_used,
        segment=segment,
    )
    _cache_set(context, key, response)
    _record_audit(context, user_id, limit, segment)
    return response


def _record_audit(
    context: ServiceContext, user_id: Optional[str], limit: int, segment: Optional[str]
) -> None:
    try:
        context.audit.record(
            "feed",
            user_id,
            {
                "prompt": f"feed:personal limit={limit} segment={segment or 'unknown'}",
                "model": context.settings.recommender_model,
            },
        )
    except Exception as e:
        logger.warning("feed_audit_failed", user_id=user_id, error=str(e))
