import pytest

from personalization.config import Settings
from personalization.errors import ConfigurationError, StorageError
from personalization.etl import evaluate_etl_run, refresh_highlights, run_insight_etl
from personalization.models import AffinityScore, EtlOptions, EtlResult, UserEngagementEvent


@pytest.fixture
def populated(store, make_post, make_event):
    store.add_posts(
        [
            make_post("r1", tags=["React"], embedding=(1.0, 0.0), summary="Hooks are a way to reuse stateful logic."),
            make_post("r2", tags=["react"], embedding=(0.9, 0.1)),
            make_post("s1", tags=["rust"], embedding=(0.0, 1.0)),
            make_post("s2", tags=["rust"], embedding=(0.1, 0.9), author_id="u2"),
            make_post("d1", tags=["draft"], embedding=(0.5, 0.5), status="DRAFT"),
        ]
    )
    store.add_events(
        [
            make_event("u1", "r1", type="session", duration=400),
            make_event("u1", "r2", type="view"),
            make_event("u2", "s1", type="session", duration=200),
            make_event("u3", "s2", type="feedback"),
            make_event("u3", "r1", type="view", days_ago=120),
        ]
    )
    return store


def test_full_run(context, populated, now):
    result = run_insight_etl(context)

    assert result.errors == 0
    assert result.content_vectors == 4
    assert result.profiles == 3
    assert result.affinities == sum(len(v) for v in populated.affinities.values())
    assert result.clusters == len(populated.clusters) >= 1
    assert result.duration_ms >= 0

    r1 = populated.get_vector("r1")
    assert r1.tags == ["react"]
    assert r1.highlights == ["Hooks are a way to reuse stateful logic."]
    assert r1.engagement_score > 0
    assert populated.get_vector("d1") is None

    u1 = populated.get_profile("u1")
    assert u1.topics[0].name == "react"
    assert u1.last_insight_refresh == now
    assert populated.list_for_user("u1")[0].post_id in {"r1", "r2"}
    assert all(a.post_id != "s2" for a in populated.list_for_user("u2"))

    assert populated.audit_log[-1]["task"] == "insight"


def test_unpublished_post_is_pruned_on_next_run(context, populated, make_post):
    run_insight_etl(context)
    assert populated.get_vector("r2") is not None

    populated.add_posts([make_post("r2", tags=["react"], embedding=(0.9, 0.1), status="DRAFT")])
    result = run_insight_etl(context)

    assert result.errors == 0
    assert result.content_vectors == 3
    assert populated.get_vector("r2") is None
    assert "r2" not in {m.post_id for c in populated.clusters for m in c.members}
    assert all(a.post_id != "r2" for scores in populated.affinities.values() for a in scores)


def test_events_outside_window_are_ignored(context, populated):
    run_insight_etl(context)
    u3 = populated.get_profile("u3")
    assert [t.name for t in u3.topics] == ["rust"]


def test_slug_only_events_resolve(context, store, make_post, now):
    store.add_posts([make_post("p1", tags=["go"])])
    store.add_events([UserEngagementEvent("u1", "view", now, slug="slug-p1")])

    run_insight_etl(context)

    assert store.get_profile("u1").topics[0].name == "go"


def test_one_failing_reader_does_not_stop_the_run(context, populated, monkeypatch):
    original = populated.upsert_profile

    def flaky(profile):
        if profile.user_id == "u2":
            raise StorageError("write timeout")
        original(profile)

    monkeypatch.setattr(populated, "upsert_profile", flaky)
    result = run_insight_etl(context)

    assert result.errors == 1
    assert result.profiles == 2
    assert set(populated.profiles) == {"u1", "u3"}


def test_parallel_run_matches_serial(context, populated):
    serial = run_insight_etl(context)
    serial_profiles = {uid: p.to_dict() for uid, p in populated.profiles.items()}

    context.settings = Settings(etl_workers=4)
    parallel = run_insight_etl(context)

    assert (parallel.profiles, parallel.content_vectors, parallel.errors) == (
        serial.profiles,
        serial.content_vectors,
        serial.errors,
    )
    assert {uid: p.to_dict() for uid, p in populated.profiles.items()} == serial_profiles


def test_disabled_store_raises(context, populated):
    context.database_enabled = False
    with pytest.raises(StorageError):
        run_insight_etl(context)


def test_dimension_mismatch_aborts_before_writes(context, populated, make_post):
    populated.add_posts([make_post("x", embedding=(1.0, 0.0, 0.0))])
    with pytest.raises(ConfigurationError):
        run_insight_etl(context)
    assert populated.vectors == {}
    assert populated.profiles == {}


def test_invalid_embedding_is_counted(context, populated, make_post):
    populated.add_posts([make_post("bad", embedding=(float("nan"), 1.0))])
    result = run_insight_etl(context)

    assert result.errors == 1
    assert result.content_vectors == 4
    assert populated.get_vector("bad") is None


def test_opted_out_reader_is_purged(context, populated):
    populated.update_flags("u1", personalization_opt_out=True)
    populated.replace_for_user("u1", [AffinityScore("r1", 0.9, ["Topic match: react"])])

    result = run_insight_etl(context)

    profile = populated.get_profile("u1")
    assert profile.segment == "Opted Out"
    assert profile.topics == []
    assert profile.feature_vector == []
    assert populated.list_for_user("u1") == []
    assert result.profiles == 2


def test_options_skip_stages(context, populated):
    result = run_insight_etl(
        context,
        EtlOptions(refresh_affinities=False, skip_audit_log=True, refresh_clusters=False),
    )

    assert result.affinities == 0
    assert result.clusters == 0
    assert populated.affinities == {}
    assert populated.clusters == []
    assert populated.audit_log == []


@pytest.mark.parametrize(
    "result,violations",
    [
        (EtlResult(profiles=1000, errors=5), 0),
        (EtlResult(profiles=1000, errors=6), 1),
        (EtlResult(profiles=0, errors=1), 1),
        (EtlResult(profiles=10, duration_ms=301_000), 1),
        (EtlResult(profiles=10, errors=10, duration_ms=400_000), 2),
    ],
)
def test_evaluate_etl_run(result, violations):
    assert len(evaluate_etl_run(result, Settings())) == violations


def test_refresh_highlights(context, store, make_vector):
    store.upsert_vector(make_vector("p1"))
    highlights = refresh_highlights(context, "p1", "Too short. This one is long enough to count.")

    assert highlights == ["This one is long enough to count."]
    assert store.get_vector("p1").highlights == highlights
    assert store.get_vector("p1").embedding == [1.0, 0.0]
