from __future__ import annotations

from typing import Any, Optional

from personalization.constants import EXPORT_AFFINITY_LIMIT
from personalization.context import ServiceContext
from personalization.errors import CacheError, StorageError
from personalization.feed import user_cache_prefix
from personalization.logging_config import get_logger
from personalization.models import PrivacyPreferences, UserProfileSnapshot, format_datetime

logger = get_logger(__name__)


def _preferences(profile: UserProfileSnapshot) -> PrivacyPreferences:
    return PrivacyPreferences(
        personalization_opt_out=profile.personalization_opt_out,
        analytics_opt_out=profile.analytics_opt_out,
        segment=profile.segment or None,
        last_insight_refresh=format_datetime(profile.last_insight_refresh),
    )


def get_privacy_preferences(context: ServiceContext, user_id: str) -> PrivacyPreferences:
    if not context.database_enabled:
        return PrivacyPreferences(personalization_opt_out=False, analytics_opt_out=False)
    profile = context.profiles.get_profile(user_id)
    if profile is None:
        return PrivacyPreferences(personalization_opt_out=False, analytics_opt_out=False)
    return _preferences(profile)


def purge_personalization(context: ServiceContext, user_id: str) -> None:
    """Drop stored affinities and cached feeds for a reader. Both steps are best-effort."""
    try:
        removed = context.affinities.delete_for_user(user_id)
        logger.info("affinities_purged", user_id=user_id, removed=removed)
    except StorageError as e:
        logger.warning("affinity_purge_failed", user_id=user_id, error=str(e))
    if context.cache is None:
        return
    try:
        purged = context.cache.purge_prefix(user_cache_prefix(user_id))
        logger.info("feed_cache_purged", user_id=user_id, removed=purged)
    except CacheError as e:
        logger.warning("feed_cache_purge_failed", user_id=user_id, error=str(e))


def update_privacy_preferences(
    context: ServiceContext,
    user_id: str,
    personalization_opt_out: Optional[bool] = None,
    analytics_opt_out: Optional[bool] = None,
) -> PrivacyPreferences:
    """Partial update of opt-out flags. Fields left as None are untouched."""
    if not context.database_enabled:
        return PrivacyPreferences(
            personalization_opt_out=bool(personalization_opt_out),
            analytics_opt_out=bool(analytics_opt_out),
        )

    profile = context.profiles.update_flags(
        user_id,
        personalization_opt_out=personalization_opt_out,
        analytics_opt_out=analytics_opt_out,
    )
    if personalization_opt_out:
        purge_personalization(context, user_id)
    return _preferences(profile)


def export_user_insights(context: ServiceContext, user_id: str) -> Optional[dict[str, Any]]:
    """Everything stored about a reader's personalization, for data export."""
    if not context.database_enabled:
        return None
    profile = context.profiles.get_profile(user_id)
    if profile is None:
        return None

    recommendations = []
    for affinity in context.affinities.list_for_user(user_id, limit=EXPORT_AFFINITY_LIMIT):
        vector = context.vectors.get_vector(affinity.post_id)
        recommendations.append(
            {
                "post_id": affinity.post_id,
                "affinity": affinity.affinity,
                "title": vector.title if vector else "",
                "slug": vector.slug if vector else "",
                "reason": affinity.reason,
            }
        )

    return {
        "user_id": user_id,
        "personalization_opt_out": profile.personalization_opt_out,
        "analytics_opt_out": profile.analytics_opt_out,
        "segment": profile.segment,
        "avg_read_time_seconds": profile.avg_read_time_seconds,
        "session_count": profile.session_count,
        "view_count": profile.view_count,
        "tone_preference": profile.tone_preference,
        "topics": [t.to_dict() for t in profile.topics],
        "generated_at": context.clock().isoformat(),
        "recommendations": recommendations,
    }
