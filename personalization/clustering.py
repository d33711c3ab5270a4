"""Topic clustering of content embeddings.

A small cosine k-means: k distinct random seeds, up to a fixed number of
assign/recompute rounds, early stop once centroids settle. Runs in batch
contexts only (ETL, CLI); the feed path never calls it.
"""

from __future__ import annotations

import math
import re
from collections import Counter
from collections.abc import Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING

import numpy as np
from numpy.typing import NDArray

from personalization.constants import (
    CLUSTER_DEFAULT_LABEL,
    CLUSTER_KEYWORD_LIMIT,
    CLUSTER_KEYWORD_MIN_LENGTH,
    CLUSTER_MAX_ITERS,
    CLUSTER_MAX_K,
    CLUSTER_MIN_K,
    CLUSTER_SHIFT_TOLERANCE,
    CLUSTER_TAG_WEIGHT,
    CLUSTER_WORD_WEIGHT,
)
from personalization.errors import ValidationError
from personalization.logging_config import get_logger
from personalization.models import ClusterMember, ContentVectorSnapshot, TopicCluster
from personalization.vectors import (
    as_matrix,
    check_dimensions,
    coerce_embedding,
    cosine,
    cosine_matrix,
)

if TYPE_CHECKING:
    from personalization.context import ServiceContext

logger = get_logger(__name__)

_WORD_SPLIT = re.compile(r"[^a-z0-9]+")


@dataclass
class ClusteringResult:
    clusters: int = 0
    assignments: int = 0


def choose_cluster_count(n_items: int) -> int:
    """k = clamp(round(sqrt(n)), 2, min(n, 8))."""
    if n_items <= 0:
        return 0
    k = round(math.sqrt(n_items))
    return min(max(k, CLUSTER_MIN_K), min(n_items, CLUSTER_MAX_K))


def _assign(
    matrix: NDArray[np.float64], centroids: NDArray[np.float64]
) -> NDArray[np.int64]:
    # argmax keeps the lowest index on ties, so duplicate seeds leave later
    # clusters empty instead of splitting identical vectors.
    sims = cosine_matrix(matrix, centroids)
    return np.argmax(sims, axis=1)


def _recompute(
    matrix: NDArray[np.float64],
    labels: NDArray[np.int64],
    centroids: NDArray[np.float64],
) -> NDArray[np.float64]:
    updated = centroids.copy()
    for idx in range(len(centroids)):
        mask = labels == idx
        if np.any(mask):
            updated[idx] = matrix[mask].mean(axis=0)
    return updated


def _max_shift(old: NDArray[np.float64], new: NDArray[np.float64]) -> float:
    shift = 0.0
    for before, after in zip(old, new):
        shift = max(shift, 1.0 - cosine(before.tolist(), after.tolist()))
    return shift


def kmeans_cosine(
    matrix: NDArray[np.float64],
    rng: np.random.Generator,
    k: int | None = None,
) -> tuple[NDArray[np.float64], NDArray[np.int64]]:
    """Run cosine k-means over the rows of ``matrix``.

    Returns (centroids, labels). Centroids are un-normalized member means;
    a cluster that empties out mid-run keeps its previous centroid.
    """
    n_items = len(matrix)
    if k is None:
        k = choose_cluster_count(n_items)
    seeds = rng.choice(n_items, size=k, replace=False)
    centroids = matrix[seeds].copy()

    for iteration in range(CLUSTER_MAX_ITERS):
        labels = _assign(matrix, centroids)
        next_centroids = _recompute(matrix, labels, centroids)
        shift = _max_shift(centroids, next_centroids)
        centroids = next_centroids
        if shift < CLUSTER_SHIFT_TOLERANCE:
            logger.debug("kmeans_converged", iteration=iteration, shift=shift)
            break

    return centroids, _assign(matrix, centroids)


def keyword_summary(members: Sequence[ContentVectorSnapshot]) -> list[str]:
    """Top keywords across members: tags count 1, title/summary words count 0.5."""
    counter: Counter[str] = Counter()
    for member in members:
        for tag in member.tags:
            counter[tag.lower()] += CLUSTER_TAG_WEIGHT
        text = f"{member.title} {member.summary or ''}".lower()
        for word in _WORD_SPLIT.split(text):
            if len(word) < CLUSTER_KEYWORD_MIN_LENGTH:
                continue
            counter[word] += CLUSTER_WORD_WEIGHT
    ranked = sorted(counter.items(), key=lambda item: -item[1])
    return [keyword for keyword, _ in ranked[:CLUSTER_KEYWORD_LIMIT]]


def cluster_label(keywords: Sequence[str]) -> str:
    if not keywords:
        return CLUSTER_DEFAULT_LABEL
    return re.sub(r"\b\w", lambda m: m.group(0).upper(), keywords[0])


def _valid_items(
    vectors: Sequence[ContentVectorSnapshot],
) -> tuple[list[ContentVectorSnapshot], list[list[float]]]:
    items: list[ContentVectorSnapshot] = []
    embeddings: list[list[float]] = []
    for vector in vectors:
        if not vector.embedding:
            continue
        try:
            embedding = coerce_embedding(vector.embedding, vector.post_id)
        except ValidationError as exc:
            logger.warning("cluster_skip_invalid", post_id=vector.post_id, error=str(exc))
            continue
        items.append(vector)
        embeddings.append(embedding)
    return items, embeddings


def cluster_topics(
    vectors: Sequence[ContentVectorSnapshot],
    rng: np.random.Generator,
) -> list[TopicCluster]:
    """Group content vectors into labelled topic clusters.

    Items with malformed embeddings are skipped; a dimensionality mismatch
    across the remaining items raises ConfigurationError.
    """
    items, embeddings = _valid_items(vectors)
    if not items:
        return []
    check_dimensions(embeddings)

    matrix = as_matrix(embeddings)
    centroids, labels = kmeans_cosine(matrix, rng)

    groups: list[tuple[NDArray[np.float64], list[int]]] = []
    for idx, centroid in enumerate(centroids):
        member_idx = [int(i) for i in np.flatnonzero(labels == idx)]
        if member_idx:
            groups.append((centroid, member_idx))
    if not groups:
        groups = [(matrix[0].copy(), [0])]

    clusters: list[TopicCluster] = []
    for centroid, member_idx in groups:
        members = [items[i] for i in member_idx]
        keywords = keyword_summary(members)
        centroid_list = centroid.tolist()
        clusters.append(
            TopicCluster(
                centroid=centroid_list,
                label=cluster_label(keywords),
                keywords=keywords,
                members=[
                    ClusterMember(
                        post_id=items[i].post_id,
                        membership_score=cosine(embeddings[i], centroid_list),
                    )
                    for i in member_idx
                ],
            )
        )
    return clusters


def regenerate_topic_clusters(context: ServiceContext) -> ClusteringResult:
    """Recluster all published content and replace the stored cluster set."""
    if not context.database_enabled:
        logger.warning("clustering_skipped", reason="store disabled")
        return ClusteringResult()

    published = {p.post_id for p in context.posts.list_posts(published_only=True)}
    vectors = [
        v for v in context.vectors.list_vectors() if v.is_published and v.post_id in published
    ]
    clusters = cluster_topics(vectors, context.rng)
    context.clusters.replace_all(clusters)

    result = ClusteringResult(
        clusters=len(clusters),
        assignments=sum(len(c.members) for c in clusters),
    )
    logger.info(
        "clusters_regenerated",
        clusters=result.clusters,
        assignments=result.assignments,
    )
    return result
