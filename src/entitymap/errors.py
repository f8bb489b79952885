"""Exceptions raised by the entity layer.

Missing entities are not errors: lookups return ``None``.
"""
from __future__ import annotations


class EntityMapError(Exception):
    """Base class for all entitymap errors."""
    pass


class ConfigurationError(EntityMapError):
    """Raised when a relationship path, dependent name or table mapping
    cannot be resolved. Indicates a programming mistake, never retried."""
    pass


class AmbiguousLinkError(ConfigurationError):
    """Raised when link-table inference finds several candidate tables."""

    def __init__(self, table_a: str, table_b: str, candidates: list[str]) -> None:
        self.table_a = table_a
        self.table_b = table_b
        self.candidates = candidates
        super().__init__(
            f"Ambiguous link table between '{table_a}' and '{table_b}': "
            f"{', '.join(candidates) or 'no candidate named after ' + table_b}"
        )


class ConflictError(EntityMapError):
    """Raised when adding a link that exists or removing one that does not."""
    pass


class StoreError(EntityMapError):
    """Raised by query executors for any failure of the underlying store."""
    pass
