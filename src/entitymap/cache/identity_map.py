"""Process-local identity map.

The identity map guarantees one in-memory representative per
``(entity type, id)`` and caches dependent sets loaded for parents.

Keys are the entity type name, the serialized id (or sorted id set) and any
context segments, joined with ``.``:

    Course.10                                  # entity
    Course.[10,11].dependents.Instructor.ab12  # batch dependent set
    Course.10.dependents.Instructor.ab12       # per-parent dependent set

Invalidation comes in three modes (see ``Wildcard``). A full invalidation
scans every key: a changed entity may sit inside any cached dependent set
that mentions its type, whatever the relationship name.

Usage:
    identity_map = IdentityMap()
    identity_map.put("Course", 10, course)
    identity_map.get("Course", 10)
    identity_map.invalidate("Course", 10, wildcard=Wildcard.FULL)
"""

from __future__ import annotations

import json
import threading
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set

from ..logging_config import get_logger

logger = get_logger(__name__)

DELIMITER = "."
WILDCARD = "*"

MISSING: Any = object()


class Wildcard(str, Enum):
    NONE = "none"
    FULL = WILDCARD
    SCOPED = "scoped"


def _is_collection(value: Any) -> bool:
    return isinstance(value, (list, tuple, set, frozenset))


def serialize_id(value: Any) -> str:
    """Serialize an id or id collection, coercing every id to ``int``.

    Collections become a sorted JSON list of unique ids, so ``["2", 1]`` and
    ``(1, 2)`` share a key.
    """
    if _is_collection(value):
        return json.dumps(sorted({int(item) for item in value}), separators=(",", ":"))
    return str(int(value))


def _parse_ids(segment: str) -> Set[int]:
    if segment.startswith("["):
        return set(json.loads(segment))
    return {int(segment)}


def make_key(type_name: str, entity_id: Any, segments: Iterable[str] = ()) -> str:
    parts = [type_name, serialize_id(entity_id)]
    parts.extend(str(segment) for segment in segments)
    for part in parts:
        if not part or DELIMITER in part:
            raise ValueError(f"Invalid cache key segment: {part!r}")
    return DELIMITER.join(parts)


class IdentityMap:
    """Thread-safe identity map with wildcard invalidation.

    Every operation holds the same re-entrant lock, so a wildcard scan and
    its deletions are never interleaved with another writer.
    """

    def __init__(self, enabled: bool = True) -> None:
        self._entries: Dict[str, Any] = {}
        self._lock = threading.RLock()
        self._enabled = enabled
        self._hits: int = 0
        self._misses: int = 0

    @property
    def enabled(self) -> bool:
        return self._enabled

    def get(
        self,
        type_name: str,
        entity_id: Any,
        segments: Sequence[str] = (),
        default: Any = None,
    ) -> Any:
        """Return the cached value for a key, or ``default`` on a miss."""
        if not self._enabled or entity_id is None or (_is_collection(entity_id) and not entity_id):
            return default
        key = make_key(type_name, entity_id, segments)
        with self._lock:
            if key in self._entries:
                self._hits += 1
                return self._entries[key]
            self._misses += 1
        return default

    def contains(self, type_name: str, entity_id: Any, segments: Sequence[str] = ()) -> bool:
        return self.get(type_name, entity_id, segments, default=MISSING) is not MISSING

    def put(self, type_name: str, entity_id: Any, value: Any, segments: Sequence[str] = ()) -> None:
        """Store ``value``, replacing any previous entry for the key."""
        if not self._enabled or entity_id is None:
            return
        key = make_key(type_name, entity_id, segments)
        with self._lock:
            self._entries[key] = value

    def invalidate(
        self,
        type_name: str,
        entity_id: Any,
        segments: Sequence[str] = (),
        wildcard: Wildcard = Wildcard.NONE,
    ) -> int:
        """Remove entries for an entity. Returns the number of keys removed.

        Args:
            type_name: Entity type name
            entity_id: Entity id
            segments: Exact key segments, or the prefix for a scoped wildcard
            wildcard: NONE removes one key; FULL removes the entity, everything
                      scoped under it and every key mentioning its type;
                      SCOPED removes keys of the entity starting with segments
        """
        if not self._enabled or entity_id is None:
            return 0
        wildcard = Wildcard(wildcard)
        with self._lock:
            if wildcard is Wildcard.NONE:
                removed = 1 if self._entries.pop(make_key(type_name, entity_id, segments), MISSING) is not MISSING else 0
            else:
                removed = self._scan_and_remove(type_name, int(entity_id), list(segments), wildcard)
        logger.debug("Invalidated %d cache key(s) for %s.%s (%s)", removed, type_name, entity_id, wildcard.value)
        return removed

    def _scan_and_remove(self, type_name: str, entity_id: int, prefix: List[str], wildcard: Wildcard) -> int:
        doomed: List[str] = []
        for key in list(self._entries):
            parts = key.split(DELIMITER)
            if self._belongs_to(parts, type_name, entity_id, prefix):
                doomed.append(key)
            elif wildcard is Wildcard.FULL and type_name in parts[2:]:
                doomed.append(key)
        for key in doomed:
            del self._entries[key]
        return len(doomed)

    @staticmethod
    def _belongs_to(parts: List[str], type_name: str, entity_id: int, prefix: List[str]) -> bool:
        if parts[0] != type_name or entity_id not in _parse_ids(parts[1]):
            return False
        return parts[2:2 + len(prefix)] == prefix

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def disable(self) -> None:
        """Turn caching off and drop everything cached so far."""
        with self._lock:
            self._enabled = False
            self._entries.clear()

    def enable(self) -> None:
        with self._lock:
            self._enabled = True

    def keys(self) -> List[str]:
        with self._lock:
            return sorted(self._entries)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def get_stats(self) -> Dict[str, Any]:
        """Get cache statistics.

        Returns:
            Dictionary with hit_count, miss_count, hit_rate, size and enabled
        """
        with self._lock:
            total = self._hits + self._misses
            return {
                "hit_count": self._hits,
                "miss_count": self._misses,
                "hit_rate": self._hits / total if total > 0 else 0.0,
                "size": len(self._entries),
                "enabled": self._enabled,
            }


# Process-wide identity map shared by data sources that are not given one
_global_identity_map: Optional[IdentityMap] = None
_global_lock = threading.Lock()


def get_global_identity_map() -> IdentityMap:
    """Get or create the process-wide identity map."""
    global _global_identity_map
    with _global_lock:
        if _global_identity_map is None:
            _global_identity_map = IdentityMap()
        return _global_identity_map


def reset_global_identity_map() -> None:
    """Drop the process-wide identity map.

    Useful for testing or when you need a fresh cache.
    """
    global _global_identity_map
    with _global_lock:
        if _global_identity_map is not None:
            _global_identity_map.clear()
        _global_identity_map = None
