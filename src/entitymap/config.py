"""Configuration for entitymap.

Settings are read from YAML when a config file exists:
- db_path: SQLite database holding the entity tables
- metadata_cache_path: optional file for the persistent schema-metadata cache
- column_prefix: namespace token used by the property mapper
"""
from __future__ import annotations

from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel, Field, field_validator


class Settings(BaseModel):
    """entitymap settings."""

    db_path: Path = Field(
        default_factory=lambda: Path("entities.db").resolve(),
        description="Path to the SQLite database"
    )
    metadata_cache_path: Optional[Path] = Field(
        default=None,
        description="Path to the persistent metadata cache (disabled when unset)"
    )
    column_prefix: str = Field(
        default="domain",
        description="Prefix of namespaced column names (e.g. domain_allow_syndication)"
    )
    cache_enabled: bool = Field(default=True, description="Enable the identity map")
    log_level: str = Field(default="WARNING")

    @field_validator("db_path", mode="before")
    def _coerce_path(cls, value: str | Path) -> Path:
        return Path(value).expanduser().resolve()

    @field_validator("metadata_cache_path", mode="before")
    def _coerce_optional_path(cls, value: str | Path | None) -> Optional[Path]:
        if value is None or value == "":
            return None
        return Path(value).expanduser().resolve()

    @field_validator("column_prefix")
    def _check_prefix(cls, value: str) -> str:
        if not value or "." in value:
            raise ValueError("column_prefix must be a non-empty identifier")
        return value


def load_settings(config_path: Optional[Path] = None) -> Settings:
    """Load configuration from YAML if provided, otherwise use defaults."""
    path = config_path or Path("entitymap.yaml")
    if path.exists():
        data = yaml.safe_load(path.read_text()) or {}
    else:
        data = {}
    return Settings(**data)
