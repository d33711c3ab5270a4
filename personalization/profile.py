from __future__ import annotations

from collections.abc import Mapping, Sequence
from datetime import datetime
from typing import Optional

import numpy as np

from personalization.aggregation import (
    clamp,
    determine_tone_preference,
    score_topic_preferences,
)
from personalization.config import Settings
from personalization.constants import (
    DEFAULT_TONE,
    ENGAGED_DURATION_MAX,
    ENGAGED_DURATION_MIN,
    ENGAGED_DURATION_SCALE,
    ENGAGED_TYPE_WEIGHTS,
    FEATURE_WEIGHT_MAX,
    FEATURE_WEIGHT_MIN,
    SEGMENT_CASUAL,
    SEGMENT_DEEP_READER,
    SEGMENT_EXPLORER,
    SEGMENT_OPTED_OUT,
)
from personalization.models import (
    ContentVectorSnapshot,
    Tone,
    TopicPreference,
    UserEngagementEvent,
    UserProfileSnapshot,
)


def engagement_weights(events: Sequence[UserEngagementEvent]) -> dict[str, float]:
    """Per-post engagement weight: duration weight times type weight, summed."""
    weights: dict[str, float] = {}
    for event in events:
        if not event.post_id:
            continue
        duration_weight = clamp(
            (event.duration_seconds or 0) / ENGAGED_DURATION_SCALE,
            ENGAGED_DURATION_MIN,
            ENGAGED_DURATION_MAX,
        )
        type_weight = ENGAGED_TYPE_WEIGHTS.get(event.type, 1.0)
        weights[event.post_id] = weights.get(event.post_id, 0.0) + duration_weight * type_weight
    return weights


def build_feature_vector(
    engaged: Sequence[ContentVectorSnapshot],
    weights: Sequence[float],
) -> list[float]:
    """
    Weighted mean of engaged content embeddings.

    Weights are clamped to [0.1, 5]; a weights list of the wrong length is
    replaced by uniform weights. Content whose embedding does not match the
    first item's dimensionality is ignored.
    """
    if not engaged:
        return []
    dim = len(engaged[0].embedding)
    if dim == 0:
        return []
    if len(weights) != len(engaged):
        weights = [1.0] * len(engaged)

    rows = []
    row_weights = []
    for content, weight in zip(engaged, weights):
        if len(content.embedding) != dim:
            continue
        rows.append(content.embedding)
        row_weights.append(clamp(weight, FEATURE_WEIGHT_MIN, FEATURE_WEIGHT_MAX))

    vector = np.average(
        np.asarray(rows, dtype=np.float64),
        axis=0,
        weights=np.asarray(row_weights, dtype=np.float64),
    )
    return [round(float(v), 6) for v in vector]


def determine_segment(
    avg_read_time_seconds: float,
    session_count: int,
    topic_diversity: int,
    feedback_count: int,
    settings: Optional[Settings] = None,
) -> str:
    s = settings or Settings()
    if (
        avg_read_time_seconds >= s.segment_deep_read_seconds
        or session_count >= s.segment_deep_sessions
    ):
        return SEGMENT_DEEP_READER
    if (
        session_count >= s.segment_explorer_sessions
        and topic_diversity >= s.segment_explorer_topics
    ):
        return SEGMENT_EXPLORER
    if (
        feedback_count >= s.segment_feedback_count
        and avg_read_time_seconds >= s.segment_feedback_read_seconds
    ):
        return SEGMENT_EXPLORER
    return SEGMENT_CASUAL


def compute_profile_snapshot(
    user_id: str,
    events: Sequence[UserEngagementEvent],
    topics: list[TopicPreference],
    tone: Tone,
    feature_vector: list[float],
    personalization_opt_out: bool = False,
    analytics_opt_out: bool = False,
    settings: Optional[Settings] = None,
) -> UserProfileSnapshot:
    sessions = [e for e in events if e.type == "session"]
    avg_read = (
        sum(e.duration_seconds or 0 for e in sessions) / len(sessions) if sessions else 0.0
    )
    view_count = sum(1 for e in events if e.type == "view")
    feedback_count = sum(1 for e in events if e.type == "feedback")
    last_active = max((e.created_at for e in events), default=None)

    return UserProfileSnapshot(
        user_id=user_id,
        segment=determine_segment(
            avg_read, len(sessions), len(topics), feedback_count, settings
        ),
        avg_read_time_seconds=float(round(avg_read)),
        session_count=len(sessions),
        view_count=view_count,
        topics=topics,
        tone_preference=tone,
        feature_vector=feature_vector,
        personalization_opt_out=personalization_opt_out,
        analytics_opt_out=analytics_opt_out,
        last_active_at=last_active,
    )


def neutral_snapshot(
    user_id: str,
    analytics_opt_out: bool = False,
    last_active_at: Optional[datetime] = None,
) -> UserProfileSnapshot:
    """Snapshot for a reader who opted out of personalization: no topics, no vector."""
    return UserProfileSnapshot(
        user_id=user_id,
        segment=SEGMENT_OPTED_OUT,
        tone_preference=DEFAULT_TONE,  # type: ignore[arg-type]
        personalization_opt_out=True,
        analytics_opt_out=analytics_opt_out,
        last_active_at=last_active_at,
    )


def build_profile(
    user_id: str,
    events: Sequence[UserEngagementEvent],
    vectors_by_post: Mapping[str, ContentVectorSnapshot],
    tasks: Sequence[str],
    now: datetime,
    settings: Optional[Settings] = None,
    personalization_opt_out: bool = False,
    analytics_opt_out: bool = False,
) -> UserProfileSnapshot:
    """Full profile build for one reader.

    Opted-out readers short-circuit to a neutral snapshot. Readers who opted
    out of analytics are rebuilt from an empty history but keep their flags.
    """
    if personalization_opt_out:
        return neutral_snapshot(user_id, analytics_opt_out)

    s = settings or Settings()
    effective = [] if analytics_opt_out else list(events)
    tags_by_post = {post_id: v.tags for post_id, v in vectors_by_post.items()}
    topics = score_topic_preferences(effective, tags_by_post, now, s.decay_days)

    engaged: list[ContentVectorSnapshot] = []
    weights: list[float] = []
    for post_id, weight in engagement_weights(effective).items():
        content = vectors_by_post.get(post_id)
        if content is None or not content.embedding:
            continue
        engaged.append(content)
        weights.append(weight)

    return compute_profile_snapshot(
        user_id=user_id,
        events=effective,
        topics=topics,
        tone=determine_tone_preference(tasks),
        feature_vector=build_feature_vector(engaged, weights),
        personalization_opt_out=False,
        analytics_opt_out=analytics_opt_out,
        settings=s,
    )
