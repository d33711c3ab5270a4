from __future__ import annotations

from collections.abc import Iterable
from typing import Optional

from personalization.aggregation import clamp
from personalization.constants import (
    AFFINITY_ENGAGEMENT_WEIGHT,
    AFFINITY_FRESHNESS_WEIGHT,
    AFFINITY_REASON_TOPICS,
    AFFINITY_TOPIC_WEIGHT,
    AFFINITY_VECTOR_WEIGHT,
    FRESH_CONTENT_THRESHOLD,
    HIGH_ENGAGEMENT_THRESHOLD,
    MAX_AFFINITIES,
    MIN_AFFINITY,
    SEMANTIC_MATCH_THRESHOLD,
)
from personalization.models import AffinityScore, ContentVectorSnapshot, UserProfileSnapshot
from personalization.vectors import cosine


def topic_overlap(
    profile: UserProfileSnapshot, content: ContentVectorSnapshot
) -> tuple[float, list[str]]:
    """Share of the profile's topic weight that lands on the content's tags.

    Returns (score in [0, 1], matched topic names by descending weight).
    """
    if not profile.topics:
        return 0.0, []
    tags = {t.lower() for t in content.tags}
    total = sum(max(t.weight, 0.0) for t in profile.topics)
    matched = sorted(
        (t for t in profile.topics if t.name.lower() in tags),
        key=lambda t: (-t.weight, t.name),
    )
    if not matched:
        return 0.0, []
    if total <= 0:
        return 0.0, [t.name for t in matched]
    score = sum(max(t.weight, 0.0) for t in matched) / total
    return clamp(score, 0.0, 1.0), [t.name for t in matched]


def score_affinity(
    profile: UserProfileSnapshot, content: ContentVectorSnapshot
) -> AffinityScore:
    """Blend topic overlap, embedding similarity, engagement and freshness.

    Missing or mismatched vectors contribute 0 to the similarity term
    rather than raising.
    """
    reasons: list[str] = []

    topic_score, matched = topic_overlap(profile, content)
    for name in matched[:AFFINITY_REASON_TOPICS]:
        reasons.append(f"Topic match: {name}")

    raw_cos = raw_similarity(profile, content)
    vector_score = 0.0
    if raw_cos is not None:
        vector_score = clamp((raw_cos + 1.0) / 2.0, 0.0, 1.0)
        if raw_cos >= SEMANTIC_MATCH_THRESHOLD:
            reasons.append("Embedding similarity")

    engagement = clamp(content.engagement_score, 0.0, 1.0)
    freshness = clamp(content.freshness_score, 0.0, 1.0)
    if engagement > HIGH_ENGAGEMENT_THRESHOLD:
        reasons.append("High engagement")
    if freshness > FRESH_CONTENT_THRESHOLD:
        reasons.append("Fresh content")

    score = (
        topic_score * AFFINITY_TOPIC_WEIGHT
        + vector_score * AFFINITY_VECTOR_WEIGHT
        + engagement * AFFINITY_ENGAGEMENT_WEIGHT
        + freshness * AFFINITY_FRESHNESS_WEIGHT
    )
    return AffinityScore(post_id=content.post_id, affinity=round(score, 4), reason=reasons)


def raw_similarity(
    profile: UserProfileSnapshot, content: ContentVectorSnapshot
) -> Optional[float]:
    """Raw cosine of feature vector vs embedding, or None when not comparable."""
    a, b = profile.feature_vector, content.embedding
    if not a or not b or len(a) != len(b):
        return None
    return cosine(a, b)


def top_affinities(
    profile: UserProfileSnapshot,
    contents: Iterable[ContentVectorSnapshot],
    exclude_author: Optional[str] = None,
    limit: int = MAX_AFFINITIES,
) -> list[AffinityScore]:
    """Scores above the floor, best first, skipping the reader's own posts."""
    scored = []
    for content in contents:
        if not content.is_published:
            continue
        if exclude_author is not None and content.author_id == exclude_author:
            continue
        affinity = score_affinity(profile, content)
        if affinity.affinity <= MIN_AFFINITY:
            continue
        scored.append(affinity)
    scored.sort(key=lambda a: (-a.affinity, a.post_id))
    return scored[:limit]
