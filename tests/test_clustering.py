"""Tests and property checks for topic clustering."""

from __future__ import annotations

import numpy as np
import pytest
from hypothesis import given, settings
from hypothesis import strategies as st
from hypothesis.extra.numpy import arrays

from personalization.clustering import (
    choose_cluster_count,
    cluster_label,
    cluster_topics,
    keyword_summary,
    regenerate_topic_clusters,
)
from personalization.errors import ConfigurationError
from personalization.models import ContentVectorSnapshot, TopicCluster


def vectors_from(matrix, tags=("topic",)) -> list[ContentVectorSnapshot]:
    return [
        ContentVectorSnapshot(
            post_id=f"p{i}",
            slug=f"p{i}",
            title=f"Post {i}",
            summary=None,
            tags=list(tags),
            embedding=[float(x) for x in row],
        )
        for i, row in enumerate(matrix)
    ]


def embedding_strategy(n_samples: int, dim: int = 8) -> st.SearchStrategy:
    """Random vectors; a constant last component keeps every row non-zero."""
    return arrays(
        dtype=np.float64,
        shape=(n_samples, dim),
        elements=st.floats(-1.0, 1.0, allow_nan=False, allow_infinity=False),
    ).map(lambda x: np.hstack([x, np.ones((x.shape[0], 1))]))


# =============================================================================
# Cluster count
# =============================================================================


@pytest.mark.parametrize(
    "n,expected",
    [(0, 0), (1, 1), (2, 2), (3, 2), (4, 2), (9, 3), (10, 3), (16, 4), (64, 8), (500, 8)],
)
def test_choose_cluster_count(n, expected):
    assert choose_cluster_count(n) == expected


@settings(deadline=None, max_examples=40)
@given(st.integers(min_value=1, max_value=30).flatmap(lambda n: embedding_strategy(n)))
def test_cluster_count_within_bounds(matrix):
    """1 <= clusters <= k, all non-empty, every item assigned exactly once."""
    clusters = cluster_topics(vectors_from(matrix), np.random.default_rng(0))
    k = choose_cluster_count(len(matrix))

    assert 1 <= len(clusters) <= k
    assert all(c.members for c in clusters)
    member_ids = [m.post_id for c in clusters for m in c.members]
    assert sorted(member_ids) == sorted(f"p{i}" for i in range(len(matrix)))
    for c in clusters:
        for m in c.members:
            assert -1.0 <= m.membership_score <= 1.0


def test_two_separated_groups():
    """Five items at [1,0] and five at [0,1] split into two clusters of five."""
    matrix = [[1.0, 0.0]] * 5 + [[0.0, 1.0]] * 5
    for seed in range(10):
        clusters = cluster_topics(vectors_from(matrix), np.random.default_rng(seed))

        assert len(clusters) == 2
        assert sorted(len(c.members) for c in clusters) == [5, 5]
        for c in clusters:
            ids = {m.post_id for m in c.members}
            assert ids in ({f"p{i}" for i in range(5)}, {f"p{i}" for i in range(5, 10)})
            assert all(m.membership_score > 0.9 for m in c.members)


def test_seeded_rng_is_deterministic():
    rng = np.random.default_rng(123)
    matrix = rng.normal(size=(25, 6))
    first = cluster_topics(vectors_from(matrix), np.random.default_rng(42))
    second = cluster_topics(vectors_from(matrix), np.random.default_rng(42))

    assert [c.to_dict() for c in first] == [c.to_dict() for c in second]


def test_empty_input_returns_no_clusters():
    assert cluster_topics([], np.random.default_rng(0)) == []


def test_invalid_embeddings_are_skipped():
    items = vectors_from([[1.0, 0.0], [0.0, 1.0], [1.0, 0.1]])
    items[1].embedding = [float("nan"), 1.0]
    clusters = cluster_topics(items, np.random.default_rng(0))

    member_ids = {m.post_id for c in clusters for m in c.members}
    assert member_ids == {"p0", "p2"}


def test_dimension_mismatch_is_fatal():
    items = vectors_from([[1.0, 0.0], [0.0, 1.0]])
    items.append(vectors_from([[1.0, 0.0, 0.0]])[0])
    items[-1].post_id = "p9"
    with pytest.raises(ConfigurationError):
        cluster_topics(items, np.random.default_rng(0))


# =============================================================================
# Keywords and labels
# =============================================================================


def test_keyword_summary_weights_tags_over_words():
    members = [
        ContentVectorSnapshot("a", "a", "Hooks in depth", "State hooks", ["React"], [1.0]),
        ContentVectorSnapshot("b", "b", "Server hooks", None, ["react", "ssr"], [1.0]),
    ]
    keywords = keyword_summary(members)

    # react: 2 tags = 2.0; hooks: 3 words * 0.5 = 1.5
    assert keywords[0] == "react"
    assert keywords[1] == "hooks"
    assert "in" not in keywords
    assert len(keywords) <= 8


def test_cluster_label():
    assert cluster_label(["machine-learning", "x"]) == "Machine-Learning"
    assert cluster_label([]) == "Topic"


# =============================================================================
# Persistence driver
# =============================================================================


def test_regenerate_replaces_clusters(context, store, make_post, make_vector):
    store.add_posts([make_post("a"), make_post("b"), make_post("c")])
    store.replace_all([TopicCluster(centroid=[0.0], label="Stale", keywords=[])])
    store.upsert_vector(make_vector("a", embedding=(1.0, 0.0)))
    store.upsert_vector(make_vector("b", embedding=(0.0, 1.0)))
    store.upsert_vector(make_vector("c", embedding=(0.0, 1.0), status="DRAFT"))

    result = regenerate_topic_clusters(context)

    assert result.clusters == len(store.clusters)
    assert result.assignments == 2
    assert all(c.label != "Stale" for c in store.clusters)


def test_regenerate_ignores_vectors_of_unpublished_posts(context, store, make_post, make_vector):
    store.add_posts([make_post("a"), make_post("b"), make_post("c", status="DRAFT")])
    for pid, emb in (("a", (1.0, 0.0)), ("b", (0.0, 1.0)), ("c", (0.0, 1.0)), ("gone", (1.0, 0.0))):
        store.upsert_vector(make_vector(pid, embedding=emb))

    result = regenerate_topic_clusters(context)

    members = {m.post_id for c in store.clusters for m in c.members}
    assert members == {"a", "b"}
    assert result.assignments == 2


def test_regenerate_with_no_vectors_clears_state(context, store):
    store.replace_all([TopicCluster(centroid=[0.0], label="Stale", keywords=[])])

    result = regenerate_topic_clusters(context)

    assert (result.clusters, result.assignments) == (0, 0)
    assert store.clusters == []


def test_regenerate_skipped_when_store_disabled(context, store, make_vector):
    store.upsert_vector(make_vector("a"))
    context.database_enabled = False

    result = regenerate_topic_clusters(context)

    assert (result.clusters, result.assignments) == (0, 0)
