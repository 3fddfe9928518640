import pytest

from intercom.core.registry import NameInUse, UserNotFound, sort_public


def test_upsert_creates_user_with_empty_queue(registry):
    user, previous = registry.upsert("u1", "Alice", 100)

    assert previous is None
    assert user.id == "u1"
    assert user.name == "Alice"
    assert user.time == 100
    assert user.queue == []
    assert user.slot is None
    assert registry.lookup("u1") is user


def test_upsert_renames_in_place_and_keeps_queue_and_slot(registry):
    user, _ = registry.upsert("u1", "Alice", 100)
    user.queue.append({"offer": "sdp", "name": "Bob"})
    marker = object()
    user.slot = marker

    same, previous = registry.upsert("u1", "Alicia", 200)

    assert same is user
    assert previous == "Alice"
    assert user.name == "Alicia"
    assert user.time == 200
    assert user.queue == [{"offer": "sdp", "name": "Bob"}]
    assert user.slot is marker


def test_name_conflict_is_case_insensitive_and_does_not_mutate(registry):
    registry.upsert("u1", "Alice", 100)

    with pytest.raises(NameInUse):
        registry.upsert("u2", "aLiCe", 200)

    assert len(registry) == 1
    assert "u2" not in registry


def test_reasserting_own_name_is_allowed(registry):
    registry.upsert("u1", "Alice", 100)

    user, previous = registry.upsert("u1", "Alice", 300)

    assert previous == "Alice"
    assert user.time == 300


def test_lookup_failures_raise(registry):
    registry.upsert("u1", "Alice", 100)

    with pytest.raises(UserNotFound):
        registry.lookup("nope")
    with pytest.raises(UserNotFound):
        registry.remove("nope")
    # name lookup is an exact match
    with pytest.raises(UserNotFound):
        registry.lookup_by_name("alice")
    assert registry.lookup_by_name("Alice").id == "u1"
    assert registry.get("nope") is None


def test_remove_returns_record(registry):
    registry.upsert("u1", "Alice", 100)

    removed = registry.remove("u1")

    assert removed.name == "Alice"
    assert "u1" not in registry
    assert registry.ids() == []


def test_list_public_sorted_ignoring_case(registry):
    registry.upsert("u1", "carol", 1)
    registry.upsert("u2", "Bob", 2)
    registry.upsert("u3", "alice", 3)

    assert registry.list_public() == [{"name": "alice"}, {"name": "Bob"}, {"name": "carol"}]
    assert registry.list_public(exclude_id="u2") == [{"name": "alice"}, {"name": "carol"}]


def test_sort_public_is_stable_for_equal_keys():
    users = [{"name": "b", "n": 1}, {"name": "A"}, {"name": "B", "n": 2}]

    assert sort_public(users) == [{"name": "A"}, {"name": "b", "n": 1}, {"name": "B", "n": 2}]
