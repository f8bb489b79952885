"""Two-tier schema metadata cache.

Metadata (columns, inbound and outbound foreign keys, inferred link tables)
is a pure function of the schema, so it is cached for as long as the
connection fingerprint stays the same:

1. An in-process map answers repeated lookups without deserializing.
2. An optional persistent tier survives process restarts and saves the
   catalog queries. Without one, misses go to the schema introspector.

Cache ids are ``md5("port:host/database:schema:table:kind")`` so one process
serving several stores never mixes their metadata.
"""

from __future__ import annotations

import hashlib
import json
import sqlite3
import threading
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Protocol

from ..db.schema import SchemaIntrospector
from ..logging_config import get_logger
from ..models.records import ColumnInfo, ForeignKey

logger = get_logger(__name__)

MISS: Any = object()

COLUMNS = "columns"
INBOUND = "inbound"
OUTBOUND = "outbound"


def link_kind(table_a: str, table_b: str) -> str:
    return f"link:{table_a}:{table_b}"


class PersistentCache(Protocol):
    """Storage for serialized metadata. ``load`` returns None on a miss."""

    def load(self, key: str) -> Optional[Dict[str, Any]]: ...

    def save(self, key: str, value: Dict[str, Any]) -> None: ...


class SQLitePersistentCache:
    """Persistent metadata tier stored as JSON in a SQLite file."""

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(str(self.path), check_same_thread=False, isolation_level=None)
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS metadata_cache (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                saved_at REAL NOT NULL
            )
            """
        )

    def load(self, key: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            row = self._conn.execute(
                "SELECT value FROM metadata_cache WHERE key = ?",
                (key,),
            ).fetchone()
        if not row:
            return None
        try:
            return json.loads(row[0])
        except json.JSONDecodeError:
            return None

    def save(self, key: str, value: Dict[str, Any]) -> None:
        payload = json.dumps(value, sort_keys=True)
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO metadata_cache (key, value, saved_at) VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value, saved_at = excluded.saved_at
                """,
                (key, payload, time.time()),
            )

    def clear(self) -> int:
        with self._lock:
            cursor = self._conn.execute("DELETE FROM metadata_cache")
            return cursor.rowcount

    def count(self) -> int:
        with self._lock:
            return int(self._conn.execute("SELECT COUNT(*) FROM metadata_cache").fetchone()[0])

    def close(self) -> None:
        self._conn.close()


def fingerprint_id(fingerprint: Dict[str, str], table: str, kind: str) -> str:
    port = fingerprint.get("port", "") or ""
    host = fingerprint.get("host", "") or ""
    database = fingerprint.get("database", "") or ""
    schema = fingerprint.get("schema", "") or ""
    raw = f"{port}:{host}/{database}:{schema}:{table}:{kind}"
    return hashlib.md5(raw.encode("utf-8")).hexdigest()


class MetadataCache:
    """Schema metadata with an in-process tier and an optional persistent tier.

    Attributes:
        introspector: Source of truth consulted on a miss
        fingerprint: Connection identity scoping every entry
        persistent: Optional persistent tier
    """

    def __init__(
        self,
        introspector: SchemaIntrospector,
        fingerprint: Optional[Dict[str, str]] = None,
        persistent: Optional[PersistentCache] = None,
    ) -> None:
        self.introspector = introspector
        self.fingerprint = fingerprint if fingerprint is not None else introspector.executor.fingerprint()
        self.persistent = persistent
        self._local: Dict[str, Any] = {}
        self._lock = threading.RLock()
        self._hits: int = 0
        self._misses: int = 0

    def cache_id(self, table: str, kind: str) -> str:
        return fingerprint_id(self.fingerprint, table, kind)

    def load(self, table: str, kind: str) -> Any:
        """Return cached data for ``(table, kind)`` or ``MISS``."""
        key = self.cache_id(table, kind)
        with self._lock:
            if key in self._local:
                self._hits += 1
                return self._local[key]

        envelope = self._load_persistent(key)
        if envelope is None or "data" not in envelope:
            with self._lock:
                self._misses += 1
            return MISS

        with self._lock:
            self._hits += 1
            self._local[key] = envelope["data"]
        return envelope["data"]

    def save(self, table: str, kind: str, data: Any) -> None:
        key = self.cache_id(table, kind)
        with self._lock:
            self._local[key] = data
        self._save_persistent(key, {"data": data})

    def _load_persistent(self, key: str) -> Optional[Dict[str, Any]]:
        if self.persistent is None:
            return None
        try:
            return self.persistent.load(key)
        except Exception as exc:
            logger.warning("Persistent metadata cache load failed, continuing without it: %s", exc)
            return None

    def _save_persistent(self, key: str, value: Dict[str, Any]) -> None:
        if self.persistent is None:
            return
        try:
            self.persistent.save(key, value)
        except Exception as exc:
            logger.warning("Persistent metadata cache save failed, continuing without it: %s", exc)

    def _fetch(self, table: str, kind: str, compute: Callable[[], Any]) -> Any:
        data = self.load(table, kind)
        if data is MISS:
            data = compute()
            logger.debug("Backfilled %s metadata for table %s", kind, table)
            self.save(table, kind, data)
        return data

    def columns(self, table: str) -> Dict[str, ColumnInfo]:
        raw = self._fetch(
            table,
            COLUMNS,
            lambda: {name: info.declared_type for name, info in self.introspector.columns(table).items()},
        )
        return {name: ColumnInfo(name=name, declared_type=declared) for name, declared in raw.items()}

    def inbound(self, table: str) -> List[str]:
        return list(self._fetch(table, INBOUND, lambda: self.introspector.inbound_references(table)))

    def outbound(self, table: str) -> Dict[str, List[ForeignKey]]:
        raw = self._fetch(
            table,
            OUTBOUND,
            lambda: {
                ref: [fk.to_dict() for fk in fks]
                for ref, fks in self.introspector.outbound_references(table).items()
            },
        )
        return {ref: [ForeignKey.from_dict(data) for data in edges] for ref, edges in raw.items()}

    def link_table(self, table_a: str, table_b: str) -> Any:
        """Cached link-table inference for an ordered pair, ``MISS`` if unknown.

        A cached ``None`` means no link table exists.
        """
        data = self.load(table_a, link_kind(table_a, table_b))
        if data is MISS:
            return MISS
        return data.get("table")

    def save_link_table(self, table_a: str, table_b: str, link: Optional[str]) -> None:
        self.save(table_a, link_kind(table_a, table_b), {"table": link})

    def clear(self) -> None:
        """Drop the in-process tier."""
        with self._lock:
            self._local.clear()

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "hit_count": self._hits,
                "miss_count": self._misses,
                "local_entries": len(self._local),
                "persistent": self.persistent is not None,
            }
