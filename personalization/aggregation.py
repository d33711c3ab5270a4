"""
Engagement aggregation: decayed topic preferences, tone, and per-content scores.
"""

from __future__ import annotations

import math
import re
from collections import Counter
from collections.abc import Iterable, Mapping, Sequence
from datetime import datetime
from typing import Optional

from personalization.constants import (
    CONTENT_ENGAGEMENT_NORMALIZER,
    CONTENT_EVENT_SCORES,
    CONTENT_SESSION_MAX,
    CONTENT_SESSION_MIN,
    CONTENT_SESSION_SCALE,
    DEFAULT_DECAY_DAYS,
    DEFAULT_TONE,
    FRESHNESS_DECAY_DAYS,
    FRESHNESS_UNKNOWN,
    HIGHLIGHT_LIMIT,
    HIGHLIGHT_MAX_CHARS,
    HIGHLIGHT_MIN_CHARS,
    MAX_TOPIC_PREFERENCES,
    SECONDS_PER_DAY,
    TONES,
)
from personalization.models import Tone, TopicPreference, UserEngagementEvent

_SENTENCE_SPLIT = re.compile(r"(?<=[.!?])\s+")
_MARKDOWN_CHARS = re.compile(r"[*_`>#-]")


def clamp(value: float, lo: float, hi: float) -> float:
    return min(max(value, lo), hi)


def age_in_days(then: datetime, now: datetime) -> float:
    return (now - then).total_seconds() / SECONDS_PER_DAY


def decay_factor(age_days: float, decay_days: float = DEFAULT_DECAY_DAYS) -> float:
    """exp(-age/decay_days); future timestamps count as age 0."""
    return math.exp(-max(0.0, age_days) / decay_days)


def event_signal(event: UserEngagementEvent) -> float:
    """Session events carry their duration as signal, everything else counts once."""
    if event.type == "session" and event.duration_seconds:
        return float(event.duration_seconds)
    return 1.0


def score_topic_preferences(
    events: Iterable[UserEngagementEvent],
    tags_by_post: Mapping[str, Sequence[str]],
    now: datetime,
    decay_days: float = DEFAULT_DECAY_DAYS,
) -> list[TopicPreference]:
    """
    Accumulate signal * decay per tag of every post a reader engaged with.
    Returns preferences sorted by weight (desc), ties by name.
    """
    weights: dict[str, float] = {}
    last_seen: dict[str, datetime] = {}

    for event in events:
        if not event.post_id:
            continue
        tags = tags_by_post.get(event.post_id)
        if not tags:
            continue
        weight = event_signal(event) * decay_factor(
            age_in_days(event.created_at, now), decay_days
        )
        for tag in tags:
            key = tag.lower()
            weights[key] = weights.get(key, 0.0) + weight
            seen = last_seen.get(key)
            if seen is None or event.created_at > seen:
                last_seen[key] = event.created_at

    ranked = sorted(weights.items(), key=lambda item: (-item[1], item[0]))
    return [
        TopicPreference(name=name, weight=weight, last_seen=last_seen[name])
        for name, weight in ranked[:MAX_TOPIC_PREFERENCES]
    ]


def _tone_marker(task: str) -> Optional[Tone]:
    task = task.lower()
    if "conversational" in task:
        return "conversational"
    if "persuasive" in task or "cta" in task:
        return "persuasive"
    if "informative" in task or "tone" in task:
        return "informative"
    return None


def determine_tone_preference(tasks: Iterable[str]) -> Tone:
    """Most frequent tone marker; ties resolve in TONES order."""
    counts: Counter[str] = Counter()
    for task in tasks:
        marker = _tone_marker(task)
        if marker:
            counts[marker] += 1
    if not counts:
        return DEFAULT_TONE  # type: ignore[return-value]
    return max(TONES, key=lambda tone: (counts[tone], -TONES.index(tone)))  # type: ignore[return-value]


def calculate_engagement_score(events: Sequence[UserEngagementEvent]) -> float:
    """Average per-event engagement for one post, scaled into [0, 1]."""
    if not events:
        return 0.0
    total = 0.0
    for event in events:
        if event.type == "session":
            total += clamp(
                (event.duration_seconds or 0) / CONTENT_SESSION_SCALE,
                CONTENT_SESSION_MIN,
                CONTENT_SESSION_MAX,
            )
        else:
            total += CONTENT_EVENT_SCORES.get(event.type, 0.0)
    normalized = clamp(total / len(events), 0.0, 2.0)
    return round(min(1.0, normalized / CONTENT_ENGAGEMENT_NORMALIZER), 4)


def calculate_freshness_score(published_at: Optional[datetime], now: datetime) -> float:
    if published_at is None:
        return FRESHNESS_UNKNOWN
    score = math.exp(-age_in_days(published_at, now) / FRESHNESS_DECAY_DAYS)
    return round(clamp(score, 0.0, 1.0), 4)


def summarize_highlights(content: str, limit: int = HIGHLIGHT_LIMIT) -> list[str]:
    """Non-empty lines with markdown punctuation stripped."""
    lines = []
    for line in content.splitlines():
        cleaned = _MARKDOWN_CHARS.sub("", line.strip()).strip()
        if cleaned:
            lines.append(cleaned)
    return lines[:limit]


def blend_highlights(summary: str) -> list[str]:
    sentences = [s.strip() for s in _SENTENCE_SPLIT.split(summary)]
    picked = [
        s for s in sentences if HIGHLIGHT_MIN_CHARS <= len(s) <= HIGHLIGHT_MAX_CHARS
    ][:HIGHLIGHT_LIMIT]
    return picked or summarize_highlights(summary)
