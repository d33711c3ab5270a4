import json
from datetime import timedelta

import pytest

from personalization import repositories
from personalization.errors import StorageError
from personalization.models import AffinityScore, TopicCluster, UsageRecord, UserProfileSnapshot
from personalization.repositories import JsonFileStore


def test_update_flags_is_partial(store):
    profile = store.update_flags("u1", personalization_opt_out=True)
    assert profile.personalization_opt_out is True
    assert profile.analytics_opt_out is False

    profile = store.update_flags("u1", analytics_opt_out=True)
    assert profile.personalization_opt_out is True
    assert profile.analytics_opt_out is True

    profile = store.update_flags("u1")
    assert (profile.personalization_opt_out, profile.analytics_opt_out) == (True, True)


def test_affinities_sorted_and_deleted(store):
    store.replace_for_user(
        "u1", [AffinityScore("a", 0.2, []), AffinityScore("b", 0.9, ["Fresh content"])]
    )
    assert [a.post_id for a in store.list_for_user("u1")] == ["b", "a"]
    assert [a.post_id for a in store.list_for_user("u1", limit=1)] == ["b"]
    assert store.delete_for_user("u1") == 2
    assert store.list_for_user("u1") == []
    assert store.delete_for_user("u1") == 0


def test_update_highlights(store, make_vector):
    store.upsert_vector(make_vector("p1"))
    store.update_highlights("p1", ["One", "Two"])
    assert store.get_vector("p1").highlights == ["One", "Two"]

    with pytest.raises(StorageError):
        store.update_highlights("missing", ["x"])


def test_list_posts_filters_drafts(store, make_post):
    store.add_posts([make_post("p1"), make_post("p2", status="DRAFT")])
    assert [p.post_id for p in store.list_posts()] == ["p1"]
    assert len(store.list_posts(published_only=False)) == 2


def test_events_since(store, make_event, now):
    store.add_events([make_event("u1", "p1", days_ago=100), make_event("u1", "p2", days_ago=1)])
    store.add_events([make_event("u2", "p1", days_ago=1)])

    recent = store.list_events(since=now - timedelta(days=90))
    assert [e.post_id for e in recent] == ["p2", "p1"]
    assert [e.post_id for e in store.events_for_user("u1")] == ["p1", "p2"]


def test_json_store_persists_across_instances(tmp_path, make_post, make_event, make_vector, now):
    store = JsonFileStore(tmp_path)
    store.add_posts([make_post("p1", tags=["react"])])
    store.add_events([make_event("u1", "p1", type="session", duration=120)])
    store.add_usage([UsageRecord("u1", "tone:conversational", now)])
    store.upsert_vector(make_vector("p1", embedding=(0.5, 0.5)))
    store.replace_for_user("u1", [AffinityScore("p1", 0.7, ["Topic match: react"])])
    store.replace_all([TopicCluster(centroid=[1.0, 0.0], label="React", keywords=["react"])])
    store.update_flags("u1", analytics_opt_out=True)
    store.record("feed", "u1", {"cache": "miss"})

    reloaded = JsonFileStore(tmp_path)

    assert reloaded.get_post("p1").tags == ["react"]
    assert reloaded.list_events()[0].duration_seconds == 120
    assert reloaded.list_events()[0].created_at == now
    assert reloaded.list_usage()[0].task == "tone:conversational"
    assert reloaded.get_vector("p1").embedding == [0.5, 0.5]
    assert reloaded.list_for_user("u1")[0].reason == ["Topic match: react"]
    assert reloaded.list_clusters()[0].label == "React"
    assert reloaded.get_profile("u1").analytics_opt_out is True
    assert reloaded.audit_log[0]["task"] == "feed"


def test_json_store_corrupt_file_raises(tmp_path):
    (tmp_path / "profiles.json").write_text("{not json")
    with pytest.raises(StorageError):
        JsonFileStore(tmp_path)


def test_json_store_skips_bad_events(tmp_path):
    (tmp_path / "events.json").write_text(
        json.dumps([{"user_id": "u1"}, {"user_id": "u1", "type": "view", "created_at": "2026-01-01T00:00:00Z"}])
    )
    store = JsonFileStore(tmp_path)
    assert len(store.list_events()) == 1


@pytest.mark.parametrize(
    "collection,payload",
    [
        ("profiles", [{"user_id": "u1", "topics": [{"name": "react"}]}]),
        ("profiles", ["u1"]),
        ("affinities", {"u1": [{"post_id": "p1"}]}),
        ("affinities", ["u1"]),
        ("vectors", [{"post_id": "p1", "embedding": ["x"]}]),
        ("clusters", [{"centroid": None}]),
    ],
)
def test_json_store_malformed_record_raises(tmp_path, collection, payload):
    (tmp_path / f"{collection}.json").write_text(json.dumps(payload))
    with pytest.raises(StorageError, match=collection):
        JsonFileStore(tmp_path)


def test_failed_write_is_rolled_back(tmp_path, monkeypatch):
    store = JsonFileStore(tmp_path)
    store.upsert_profile(UserProfileSnapshot(user_id="u1", segment="Casual"))

    def disk_full(path, data):
        raise OSError("no space left on device")

    monkeypatch.setattr(repositories, "atomic_write_json", disk_full)
    with pytest.raises(StorageError):
        store.upsert_profile(UserProfileSnapshot(user_id="u2", segment="Casual"))
    with pytest.raises(StorageError):
        store.replace_for_user("u2", [AffinityScore("p1", 0.5, [])])
    assert store.get_profile("u2") is None
    assert store.list_for_user("u2") == []

    monkeypatch.undo()
    store.upsert_profile(UserProfileSnapshot(user_id="u3", segment="Explorer"))
    store.replace_for_user("u3", [AffinityScore("p1", 0.4, [])])

    reloaded = JsonFileStore(tmp_path)
    assert {p.user_id for p in reloaded.list_profiles()} == {"u1", "u3"}
    assert reloaded.list_for_user("u2") == []
    assert [a.post_id for a in reloaded.list_for_user("u3")] == ["p1"]
