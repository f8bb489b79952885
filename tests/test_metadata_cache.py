"""Tests for the two-tier schema metadata cache."""

import logging
from pathlib import Path
from typing import Dict, List

import pytest

from entitymap.cache.metadata import (
    MISS,
    MetadataCache,
    SQLitePersistentCache,
    fingerprint_id,
)
from entitymap.db.schema import SchemaIntrospector
from entitymap.models.records import ColumnInfo, ForeignKey

FINGERPRINT = {"host": "db1", "port": "3306", "database": "catalog", "schema": "main"}


class CountingIntrospector:
    """Introspector double counting catalog lookups."""

    def __init__(self) -> None:
        self.calls: List[str] = []

    def columns(self, table: str) -> Dict[str, ColumnInfo]:
        self.calls.append(f"columns:{table}")
        return {
            "id": ColumnInfo("id", "INTEGER"),
            "name": ColumnInfo("name", "TEXT"),
            "start_date": ColumnInfo("start_date", "DATE"),
        }

    def inbound_references(self, table: str) -> List[str]:
        self.calls.append(f"inbound:{table}")
        return ["course_instructor", "review"]

    def outbound_references(self, table: str) -> Dict[str, List[ForeignKey]]:
        self.calls.append(f"outbound:{table}")
        return {"category": [ForeignKey(table, "category_id", "category")]}


class BrokenCache:
    def load(self, key):
        raise RuntimeError("cache server unavailable")

    def save(self, key, value):
        raise RuntimeError("cache server unavailable")


def test_fingerprint_id_is_stable_and_scoped():
    first = fingerprint_id(FINGERPRINT, "course", "columns")

    assert first == fingerprint_id(dict(FINGERPRINT), "course", "columns")
    assert len(first) == 32
    assert first != fingerprint_id(FINGERPRINT, "course", "inbound")
    assert first != fingerprint_id({**FINGERPRINT, "database": "other"}, "course", "columns")


def test_local_tier_answers_repeat_lookups():
    """Verify the introspector is consulted once per table and kind."""
    introspector = CountingIntrospector()
    cache = MetadataCache(introspector, fingerprint=FINGERPRINT)

    first = cache.columns("course")
    second = cache.columns("course")

    assert first == second
    assert first["start_date"].affinity == "date"
    assert introspector.calls == ["columns:course"]


def test_each_kind_is_cached_separately():
    introspector = CountingIntrospector()
    cache = MetadataCache(introspector, fingerprint=FINGERPRINT)

    assert cache.inbound("course") == ["course_instructor", "review"]
    assert [fk.column for fk in cache.outbound("course")["category"]] == ["category_id"]
    cache.inbound("course")
    cache.outbound("course")

    assert introspector.calls == ["inbound:course", "outbound:course"]


def test_persistent_tier_survives_new_instances(tmp_path: Path):
    """Verify a second cache instance reads from the persistent tier."""
    persistent = SQLitePersistentCache(tmp_path / "metadata.db")
    warm = CountingIntrospector()
    MetadataCache(warm, fingerprint=FINGERPRINT, persistent=persistent).columns("course")

    cold = CountingIntrospector()
    cache = MetadataCache(cold, fingerprint=FINGERPRINT, persistent=persistent)
    columns = cache.columns("course")

    assert list(columns) == ["id", "name", "start_date"]
    assert cold.calls == []
    assert persistent.count() == 1
    persistent.close()


def test_persistent_entries_are_scoped_by_fingerprint(tmp_path: Path):
    persistent = SQLitePersistentCache(tmp_path / "metadata.db")
    MetadataCache(CountingIntrospector(), fingerprint=FINGERPRINT, persistent=persistent).columns("course")

    other = CountingIntrospector()
    cache = MetadataCache(other, fingerprint={**FINGERPRINT, "host": "db2"}, persistent=persistent)
    cache.columns("course")

    assert other.calls == ["columns:course"]
    assert persistent.count() == 2
    persistent.close()


def test_failing_persistent_tier_is_not_fatal(caplog):
    """Verify persistent-tier errors are logged and lookups still succeed."""
    introspector = CountingIntrospector()
    cache = MetadataCache(introspector, fingerprint=FINGERPRINT, persistent=BrokenCache())

    with caplog.at_level(logging.WARNING):
        columns = cache.columns("course")
        cache.columns("course")

    assert "name" in columns
    assert introspector.calls == ["columns:course"]
    assert "Persistent metadata cache" in caplog.text


def test_link_table_distinguishes_miss_from_none():
    cache = MetadataCache(CountingIntrospector(), fingerprint=FINGERPRINT)

    assert cache.link_table("course", "review") is MISS

    cache.save_link_table("course", "review", None)
    cache.save_link_table("course", "instructor", "course_instructor")

    assert cache.link_table("course", "review") is None
    assert cache.link_table("course", "instructor") == "course_instructor"
    assert cache.link_table("instructor", "course") is MISS


def test_clear_drops_local_tier_only(tmp_path: Path):
    persistent = SQLitePersistentCache(tmp_path / "metadata.db")
    introspector = CountingIntrospector()
    cache = MetadataCache(introspector, fingerprint=FINGERPRINT, persistent=persistent)
    cache.columns("course")

    cache.clear()
    cache.columns("course")

    assert introspector.calls == ["columns:course"]
    assert cache.get_stats()["local_entries"] == 1

    assert persistent.clear() == 1
    persistent.close()


def test_fingerprint_defaults_to_executor(executor):
    cache = MetadataCache(SchemaIntrospector(executor))

    assert cache.fingerprint == executor.fingerprint()
    assert cache.columns("course")["price"].affinity == "decimal"
