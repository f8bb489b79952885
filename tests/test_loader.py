"""Tests for dependent loading and eager-load traversal."""

import pytest

from entitymap.errors import ConfigurationError
from entitymap.orm.loader import normalize_where, qualify_order

from conftest import Category, Course, Instructor, Review

NEWEST_FIRST = "created_at DESC"


def test_qualify_order_prefixes_bare_columns():
    assert qualify_order("created_at DESC, name", "a") == ['a."created_at" DESC', 'a."name"']
    assert qualify_order("RANDOM()", "a") == ["RANDOM()"]
    assert qualify_order(None, "a") == []


def test_normalize_where():
    assert normalize_where({"active = ?": 1}) == [("active = ?", 1)]
    assert normalize_where(None) == []
    assert normalize_where(["active = 1"])[0][0] == "active = 1"


def test_link_table_dependents(source):
    instructors = source.get_dependents(Course, 10, Instructor, order="name")

    assert list(instructors) == [6, 7]
    assert instructors[6].name == "Ben"
    assert instructors[6].links["Course"] == [10]


def test_direct_foreign_key_dependents(source):
    courses = source.get_dependents(Category, 1, Course, order="name")

    assert [course.name for course in courses.values()] == ["Knife Skills", "Pasta"]


def test_limit_applies_per_parent(source):
    """Verify a limit bounds each parent's group rather than the whole batch."""
    reviews = source.get_dependents(Course, [10, 11], Review, order=NEWEST_FIRST, limit=2)

    assert set(reviews) == {104, 103, 114, 113}

    by_parent = source.loader.dependents_by_parent(Course, [10, 11], Review, order=NEWEST_FIRST, limit=2)
    assert list(by_parent[10]) == [104, 103]
    assert list(by_parent[11]) == [114, 113]


def test_limit_applies_per_parent_with_interleaved_rows(source):
    """Verify each parent keeps its own top rows when the ordering mixes parents."""
    # course 10 is rated 1..5 by id and course 11 is rated 5..1
    by_parent = source.loader.dependents_by_parent(Course, [10, 11], Review, order="rating DESC", limit=2)

    assert list(by_parent[10]) == [104, 103]
    assert list(by_parent[11]) == [110, 111]

    reviews = source.get_dependents(Course, [10, 11], Review, order="rating DESC", limit=2)
    assert set(reviews) == {104, 103, 110, 111}


def test_limit_one_returns_single_entity(source):
    latest = source.get_dependents(Course, 10, Review, order=NEWEST_FIRST, limit=1)
    none = source.get_dependents(Course, 12, Review, order=NEWEST_FIRST, limit=1)

    assert latest.id == 104
    assert none is None


def test_count_dependents(source):
    assert source.get_dependents(Course, 10, Review, count=True) == 5
    assert source.get_dependents(Course, 12, Review, count=True) == 0
    assert source.get_dependents(Course, [10, 11, 12], Review, count=True) == {10: 5, 11: 5, 12: 0}


def test_where_filters_dependents(source):
    active = source.get_dependents(Course, 10, Review, where={"active = ?": 1})

    assert set(active) == {100, 101, 102, 104}


def test_no_dependents_returns_empty_mapping(source):
    assert source.get_dependents(Course, 12, Review) == {}
    assert source.get_dependents(Course, [], Review) is None


def test_repeat_lookup_is_cached(source, executor):
    source.get_dependents(Course, 10, Instructor, order="name")
    before = len(executor.selects)

    source.get_dependents(Course, 10, Instructor, order="name")

    assert len(executor.selects) == before


def test_batch_populates_per_parent_entries(source, executor):
    """Verify a single-parent lookup after a batched one is served from cache."""
    source.get_dependents(Course, [10, 11], Review, order=NEWEST_FIRST, limit=2)
    before = len(executor.selects)

    reviews = source.get_dependents(Course, 11, Review, order=NEWEST_FIRST, limit=2)

    assert list(reviews) == [114, 113]
    assert len(executor.selects) == before


def test_batch_queries_only_uncached_parents(source, executor):
    source.get_dependents(Course, 10, Instructor, order="name")

    result = source.get_dependents(Course, [10, 11], Instructor, order="name")

    assert set(result) == {6, 7}
    last = executor.selects_on("instructor")[-1]
    assert ('b."course_id" IN (?)', [11]) in last.where


def test_different_filters_are_cached_separately(source):
    everything = source.get_dependents(Course, 10, Review)
    active = source.get_dependents(Course, 10, Review, where={"active = ?": 1})

    assert len(everything) == 5
    assert len(active) == 4


def test_dependent_property_loads_lazily(source):
    course = source.get_entity(Course, 10)

    assert list(course.instructors) == [6, 7]
    assert list(course.reviews) == [104, 103]
    assert course.latestReview.id == 104
    assert course.reviewCount == 5
    assert set(course.activeReviews) == {100, 101, 102, 104}


def test_dependent_with_extra_filter(source):
    course = source.get_entity(Course, 10)

    high = course.dependent("activeReviews", {"rating >= ?": 4})

    assert list(high) == [104]
    assert set(course.activeReviews) == {100, 101, 102, 104}


def test_unsaved_entity_has_empty_dependents(source):
    course = source.create(Course, name="Draft")

    assert course.instructors == {}
    assert course.latestReview is None
    assert course.reviewCount == 0


def test_eager_load_nested_paths(source, executor):
    courses = source.load(Course, [10, 11], ["instructors.courses", "category"])

    assert list(courses) == [10, 11]
    assert set(courses[10].related("instructors")) == {6, 7}
    assert set(courses[11].related("instructors")) == {6}
    ben = courses[10].related("instructors")[6]
    assert set(ben.related("courses")) == {10, 11}
    assert courses[10].related("category").name == "Cooking"

    before = len(executor.selects)
    assert courses[11].instructors[6] is ben
    assert courses[10].category.id == 1
    assert len(executor.selects) == before


def test_eager_load_single_and_count_dependents(source):
    courses = source.load(Course, [10, 12], ["latestReview", "reviewCount"])

    assert courses[10].related("latestReview").id == 104
    assert courses[12].related("latestReview") is None
    assert courses[10].related("reviewCount") == 5
    assert courses[12].related("reviewCount") == 0


def test_eager_load_through_reference(source):
    reviews = source.load(Review, [100, 110], ["course.category"])

    assert reviews[100].related("course").id == 10
    assert reviews[110].related("course").related("category").name == "Cooking"


def test_eager_load_type_hint(source):
    courses = source.load(Course, [12], ["category:Category"])

    assert courses[12].related("category").name == "Art"


def test_eager_load_with_dependent_context(source):
    reviews = source.loader.load(Review, [10], ["course"], context=(Course, "reviews"))

    assert list(reviews) == [104, 103]
    assert reviews[104].related("course").id == 10


def test_invalid_eager_path_raises(source):
    with pytest.raises(ConfigurationError, match="Invalid eager loading configuration"):
        source.load(Course, [10], ["tutors"])

    with pytest.raises(ConfigurationError):
        source.load(Course, [10], ["instructors.students"])
