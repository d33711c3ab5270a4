"""Creator-facing predictions derived from content vector scores."""

from __future__ import annotations

from personalization.aggregation import clamp
from personalization.constants import (
    INSIGHT_DEFAULT_LIMIT,
    INSIGHT_DRIVER_THRESHOLD,
    INSIGHT_LONG_POST_WORDS,
    INSIGHT_WORDS_PER_MINUTE,
)
from personalization.context import ServiceContext
from personalization.models import (
    ContentVectorSnapshot,
    CreatorInsightSnapshot,
    PredictiveInsight,
)


def score_ctr(engagement: float, freshness: float, word_count: int) -> float:
    base = 0.05 + engagement * 0.3 + freshness * 0.2
    penalty = 0.02 if word_count > INSIGHT_LONG_POST_WORDS else 0.0
    return clamp(base - penalty, 0.02, 0.4)


def score_dwell(engagement: float, word_count: int) -> int:
    minutes = max(1.0, word_count / INSIGHT_WORDS_PER_MINUTE)
    return round(clamp(minutes * 60 * (0.8 + engagement), 120, 900))


def score_engagement_probability(engagement: float, freshness: float) -> float:
    return clamp(0.3 + engagement * 0.5 + freshness * 0.3, 0.1, 0.98)


def detect_drivers(tags: list[str], engagement: float, freshness: float) -> list[str]:
    drivers = []
    if engagement > INSIGHT_DRIVER_THRESHOLD:
        drivers.append("High recent engagement")
    if freshness > INSIGHT_DRIVER_THRESHOLD:
        drivers.append("Recently updated")
    if "ai" in (t.lower() for t in tags):
        drivers.append("AI topic demand")
    if not drivers:
        drivers.append("Stable evergreen interest")
    return drivers


def predict(vector: ContentVectorSnapshot) -> PredictiveInsight:
    e, f = vector.engagement_score, vector.freshness_score
    return PredictiveInsight(
        post_id=vector.post_id,
        slug=vector.slug,
        title=vector.title,
        predicted_ctr=round(score_ctr(e, f, vector.word_count), 3),
        predicted_dwell_seconds=score_dwell(e, vector.word_count),
        predicted_engagement_probability=round(score_engagement_probability(e, f), 3),
        top_drivers=detect_drivers(vector.tags, e, f),
    )


def get_creator_insight_snapshot(
    context: ServiceContext, limit: int = INSIGHT_DEFAULT_LIMIT
) -> CreatorInsightSnapshot:
    refreshed_at = context.clock().isoformat()
    if not context.database_enabled:
        return CreatorInsightSnapshot(posts=[], refreshed_at=refreshed_at, model="offline")

    vectors = sorted(
        context.vectors.list_vectors(),
        key=lambda v: (v.published_at.timestamp() if v.published_at else 0.0, v.post_id),
        reverse=True,
    )
    return CreatorInsightSnapshot(
        posts=[predict(v) for v in vectors[: max(0, limit)]],
        refreshed_at=refreshed_at,
        model=context.settings.recommender_model,
    )
