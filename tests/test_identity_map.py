"""Tests for the identity map."""

import threading

import pytest

from entitymap.cache.identity_map import (
    IdentityMap,
    Wildcard,
    get_global_identity_map,
    make_key,
    reset_global_identity_map,
    serialize_id,
)

SEGMENTS = ("dependents", "Review", "abc123")


def test_put_and_get_returns_same_object():
    """Verify a stored value is returned as the same object."""
    identity_map = IdentityMap()
    value = object()

    identity_map.put("Course", 10, value)

    assert identity_map.get("Course", 10) is value
    assert identity_map.get("Course", "10") is value


def test_get_miss_returns_default():
    identity_map = IdentityMap()

    assert identity_map.get("Course", 10) is None
    assert identity_map.get("Course", 10, default="fallback") == "fallback"
    assert not identity_map.contains("Course", 10)


def test_cached_none_is_distinct_from_miss():
    """Verify a cached None (e.g. a single dependent that does not exist) is a hit."""
    identity_map = IdentityMap()
    identity_map.put("Course", 12, None, SEGMENTS)

    assert identity_map.contains("Course", 12, SEGMENTS)


def test_serialize_id_normalizes_collections():
    assert serialize_id(10) == "10"
    assert serialize_id("10") == "10"
    assert serialize_id(["2", 1, 2]) == "[1,2]"
    assert serialize_id((1, 2)) == serialize_id({2, 1})


def test_batch_keys_ignore_order():
    identity_map = IdentityMap()
    identity_map.put("Course", [11, 10], "batch", SEGMENTS)

    assert identity_map.get("Course", (10, 11), SEGMENTS) == "batch"


def test_make_key_rejects_delimiter_in_segments():
    with pytest.raises(ValueError):
        make_key("Course", 10, ["dependents", "a.b"])
    with pytest.raises(ValueError):
        make_key("Course", 10, [""])


def test_invalidate_exact_key_only():
    identity_map = IdentityMap()
    identity_map.put("Course", 10, "course")
    identity_map.put("Course", 10, "reviews", SEGMENTS)

    removed = identity_map.invalidate("Course", 10)

    assert removed == 1
    assert identity_map.get("Course", 10) is None
    assert identity_map.get("Course", 10, SEGMENTS) == "reviews"


def test_scoped_invalidation_removes_entity_prefix_and_batches():
    """Verify a scoped wildcard keeps the entity but drops its dependent sets."""
    identity_map = IdentityMap()
    identity_map.put("Course", 10, "course10")
    identity_map.put("Course", 11, "course11")
    identity_map.put("Course", 10, "reviews10", SEGMENTS)
    identity_map.put("Course", 11, "reviews11", SEGMENTS)
    identity_map.put("Course", [10, 11], "batch", SEGMENTS)

    removed = identity_map.invalidate("Course", 10, ("dependents",), wildcard=Wildcard.SCOPED)

    assert removed == 2
    assert identity_map.keys() == sorted([
        "Course.10",
        "Course.11",
        "Course.11.dependents.Review.abc123",
    ])


def test_full_invalidation_removes_sets_mentioning_type():
    """Verify a full wildcard removes the entity and any dependent set of its type."""
    identity_map = IdentityMap()
    identity_map.put("Course", 10, "course")
    identity_map.put("Course", 10, "reviews", SEGMENTS)
    identity_map.put("Instructor", 6, "instructor")
    identity_map.put("Instructor", 6, "courses", ("dependents", "Course", "ff00"))
    identity_map.put("Category", 1, "courses", ("dependents", "Course", "ee11"))

    removed = identity_map.invalidate("Course", 10, wildcard=Wildcard.FULL)

    assert removed == 4
    assert identity_map.keys() == ["Instructor.6"]


def test_invalidate_accepts_wildcard_value():
    identity_map = IdentityMap()
    identity_map.put("Course", 10, "course")

    assert identity_map.invalidate("Course", 10, wildcard="*") == 1


def test_disabled_map_stores_nothing():
    identity_map = IdentityMap()
    identity_map.put("Course", 10, "course")

    identity_map.disable()
    identity_map.put("Course", 11, "course")

    assert len(identity_map) == 0
    assert identity_map.get("Course", 11) is None

    identity_map.enable()
    identity_map.put("Course", 11, "course")
    assert identity_map.get("Course", 11) == "course"


def test_stats_track_hits_and_misses():
    identity_map = IdentityMap()
    identity_map.put("Course", 10, "course")

    identity_map.get("Course", 10)
    identity_map.get("Course", 11)

    stats = identity_map.get_stats()
    assert stats["hit_count"] == 1
    assert stats["miss_count"] == 1
    assert stats["hit_rate"] == 0.5
    assert stats["size"] == 1
    assert stats["enabled"] is True


def test_concurrent_writers_and_invalidators():
    """Verify concurrent puts and wildcard scans neither fail nor lose entries."""
    identity_map = IdentityMap()
    errors = []

    def writer(type_name: str) -> None:
        try:
            for entity_id in range(1, 201):
                identity_map.put(type_name, entity_id, entity_id)
                identity_map.put(type_name, entity_id, entity_id, SEGMENTS)
                assert identity_map.get(type_name, entity_id) == entity_id
        except Exception as exc:  # pragma: no cover - surfaced below
            errors.append(exc)

    def invalidator() -> None:
        try:
            for entity_id in range(1, 201):
                identity_map.invalidate("Scratch", entity_id, wildcard=Wildcard.FULL)
        except Exception as exc:  # pragma: no cover - surfaced below
            errors.append(exc)

    threads = [threading.Thread(target=writer, args=(f"Type{n}",)) for n in range(6)]
    threads.append(threading.Thread(target=invalidator))
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    assert len(identity_map) == 6 * 200 * 2


def test_global_identity_map_is_shared():
    reset_global_identity_map()
    first = get_global_identity_map()
    first.put("Course", 10, "course")

    assert get_global_identity_map() is first

    reset_global_identity_map()
    assert get_global_identity_map() is not first
    assert get_global_identity_map().get("Course", 10) is None
    reset_global_identity_map()
