"""
Batch insight ETL: content vectors, reader profiles, affinities, clusters.

Per-item work runs on a bounded thread pool. Every per-item failure is
logged and counted; only an unreachable store or incompatible embedding
dimensions stop the run.
"""

from __future__ import annotations

import time
from collections.abc import Callable, Iterable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Optional, TypeVar

from personalization.aggregation import (
    blend_highlights,
    calculate_engagement_score,
    calculate_freshness_score,
)
from personalization.clustering import regenerate_topic_clusters
from personalization.config import Settings
from personalization.constants import SUMMARY_FALLBACK_CHARS
from personalization.context import ServiceContext
from personalization.errors import PersonalizationError, StorageError, ValidationError
from personalization.logging_config import get_logger
from personalization.models import (
    ContentVectorSnapshot,
    EtlOptions,
    EtlResult,
    PostRecord,
    UserEngagementEvent,
    UserProfileSnapshot,
)
from personalization.profile import build_profile, neutral_snapshot
from personalization.scoring import top_affinities
from personalization.vectors import check_dimensions, coerce_embedding

logger = get_logger(__name__)

T = TypeVar("T")
R = TypeVar("R")


def _run_pool(
    fn: Callable[[T], R], items: Iterable[T], workers: int
) -> list[R]:
    items = list(items)
    if workers <= 1 or len(items) <= 1:
        return [fn(item) for item in items]
    with ThreadPoolExecutor(max_workers=workers) as pool:
        futures = [pool.submit(fn, item) for item in items]
        return [f.result() for f in futures]


def _resolve_post_ids(
    events: Iterable[UserEngagementEvent], posts: Iterable[PostRecord]
) -> list[UserEngagementEvent]:
    """Fill post_id from slug where telemetry only carried the slug."""
    by_slug = {p.slug: p.post_id for p in posts}
    resolved = []
    for event in events:
        if not event.post_id and event.slug in by_slug:
            event = replace(event, post_id=by_slug[event.slug])
        resolved.append(event)
    return resolved


def _prepare_embeddings(
    posts: list[PostRecord],
) -> tuple[dict[str, list[float]], int]:
    """Validate every post's embedding. Returns (embeddings by post, invalid count)."""
    embeddings: dict[str, list[float]] = {}
    invalid = 0
    for post in posts:
        if post.embedding is None or post.embedding == []:
            embeddings[post.post_id] = []
            continue
        try:
            embeddings[post.post_id] = coerce_embedding(post.embedding, post.post_id)
        except ValidationError as e:
            invalid += 1
            logger.error("content_vector_invalid", post_id=post.post_id, error=str(e))
    check_dimensions(emb for emb in embeddings.values() if emb)
    return embeddings, invalid


def build_content_vector(
    post: PostRecord,
    embedding: list[float],
    events: list[UserEngagementEvent],
    now: datetime,
) -> ContentVectorSnapshot:
    summary = post.summary or post.content[:SUMMARY_FALLBACK_CHARS]
    return ContentVectorSnapshot(
        post_id=post.post_id,
        slug=post.slug,
        title=post.title,
        summary=post.summary,
        tags=[t.lower() for t in post.tags],
        embedding=embedding,
        engagement_score=calculate_engagement_score(events),
        freshness_score=calculate_freshness_score(post.published_at or post.created_at, now),
        highlights=blend_highlights(summary),
        status=post.status,
        author_id=post.author_id,
        published_at=post.published_at or post.created_at,
        word_count=len(post.content.split()),
    )


def refresh_highlights(context: ServiceContext, post_id: str, text: str) -> list[str]:
    """Recompute highlights for one stored vector without touching its embedding."""
    highlights = blend_highlights(text)
    context.vectors.update_highlights(post_id, highlights)
    return highlights


def run_insight_etl(
    context: ServiceContext, options: Optional[EtlOptions] = None
) -> EtlResult:
    """Rebuild content vectors, profiles and affinities for the analytics window."""
    started = time.perf_counter()
    options = options or EtlOptions()
    settings = context.settings
    if not context.database_enabled:
        raise StorageError("personalization store is disabled")

    now = context.clock()
    cutoff = now - timedelta(days=settings.analytics_ttl_days)
    try:
        posts = context.posts.list_posts(published_only=True)
        events = _resolve_post_ids(context.engagement.list_events(cutoff), posts)
        usage = context.engagement.list_usage(cutoff)
        existing = {p.user_id: p for p in context.profiles.list_profiles()}
    except StorageError as e:
        logger.error("etl_load_failed", error=str(e))
        raise

    embeddings, errors = _prepare_embeddings(posts)
    result = EtlResult(errors=errors)

    events_by_post: dict[str, list[UserEngagementEvent]] = {}
    events_by_user: dict[str, list[UserEngagementEvent]] = {}
    for event in events:
        events_by_user.setdefault(event.user_id, []).append(event)
        if event.post_id:
            events_by_post.setdefault(event.post_id, []).append(event)
    tasks_by_user: dict[str, list[str]] = {}
    for record in usage:
        tasks_by_user.setdefault(record.user_id, []).append(record.task)

    # Content vectors
    vectors: dict[str, ContentVectorSnapshot] = {}

    def refresh_vector(post: PostRecord) -> bool:
        try:
            snapshot = build_content_vector(
                post, embeddings[post.post_id], events_by_post.get(post.post_id, []), now
            )
            vectors[post.post_id] = snapshot
            context.vectors.upsert_vector(snapshot)
            return True
        except Exception:
            logger.error("content_vector_refresh_failed", post_id=post.post_id, exc_info=True)
            return False

    valid_posts = [p for p in posts if p.post_id in embeddings]
    outcomes = _run_pool(refresh_vector, valid_posts, settings.etl_workers)
    result.content_vectors = sum(outcomes)
    result.errors += outcomes.count(False)
    result.errors += _prune_stale_vectors(context, {p.post_id for p in posts})

    # Profiles and affinities
    user_ids = set(events_by_user) | {
        uid for uid, p in existing.items() if p.personalization_opt_out
    }
    content = list(vectors.values())

    def refresh_user(user_id: str) -> Optional[tuple[int, int]]:
        try:
            previous = existing.get(user_id)
            if previous is not None and previous.personalization_opt_out:
                _purge_opted_out(context, previous)
                return 0, 0
            profile = build_profile(
                user_id,
                events_by_user.get(user_id, []),
                vectors,
                tasks_by_user.get(user_id, []),
                now,
                settings,
                analytics_opt_out=previous.analytics_opt_out if previous else False,
            )
            profile.last_insight_refresh = now
            context.profiles.upsert_profile(profile)
            stored = 0
            if options.refresh_affinities:
                top = top_affinities(profile, content, exclude_author=user_id)
                context.affinities.replace_for_user(user_id, top)
                stored = len(top)
            return 1, stored
        except Exception:
            logger.error("profile_refresh_failed", user_id=user_id, exc_info=True)
            return None

    for outcome in _run_pool(refresh_user, sorted(user_ids), settings.etl_workers):
        if outcome is None:
            result.errors += 1
            continue
        result.profiles += outcome[0]
        result.affinities += outcome[1]

    if options.refresh_clusters:
        try:
            result.clusters = regenerate_topic_clusters(context).clusters
        except PersonalizationError as e:
            result.errors += 1
            logger.error("cluster_refresh_failed", error=str(e))

    if not options.skip_audit_log:
        _record_audit(context, cutoff, result)

    result.duration_ms = int((time.perf_counter() - started) * 1000)
    logger.info("etl_complete", **result.to_dict())
    return result


def _prune_stale_vectors(context: ServiceContext, published: set[str]) -> int:
    """Drop vectors of posts that were unpublished or deleted. Returns errors."""
    stale = [v.post_id for v in context.vectors.list_vectors() if v.post_id not in published]
    if not stale:
        return 0
    try:
        removed = context.vectors.delete_vectors(stale)
    except StorageError as e:
        logger.error("stale_vector_prune_failed", count=len(stale), error=str(e))
        return 1
    logger.info("stale_vectors_pruned", removed=removed)
    return 0


def _purge_opted_out(context: ServiceContext, previous: UserProfileSnapshot) -> None:
    context.profiles.upsert_profile(
        neutral_snapshot(
            previous.user_id,
            analytics_opt_out=previous.analytics_opt_out,
            last_active_at=previous.last_active_at,
        )
    )
    context.affinities.delete_for_user(previous.user_id)


def _record_audit(context: ServiceContext, cutoff: datetime, result: EtlResult) -> None:
    try:
        context.audit.record(
            "insight",
            None,
            {
                "prompt": (
                    f"insights:refresh cutoff={cutoff.isoformat()} "
                    f"profiles={result.profiles} vectors={result.content_vectors}"
                ),
                "model": context.settings.recommender_model,
            },
        )
    except Exception as e:
        logger.warning("etl_audit_failed", error=str(e))


def evaluate_etl_run(result: EtlResult, settings: Settings) -> list[str]:
    """Policy violations for a finished run; empty means healthy."""
    violations = []
    if result.errors:
        rate = result.errors / result.profiles if result.profiles else float("inf")
        if rate > settings.etl_max_error_rate:
            violations.append(
                f"error rate {result.errors}/{result.profiles} exceeds "
                f"{settings.etl_max_error_rate:.1%}"
            )
    if result.duration_ms > settings.etl_max_duration_seconds * 1000:
        violations.append(
            f"duration {result.duration_ms}ms exceeds {settings.etl_max_duration_seconds:g}s"
        )
    return violations
