"""Database connection utilities.

Connections are opened in read-write mode with dict-like rows and
foreign keys enforced, since the schema introspector relies on declared
foreign keys to infer relationships.
"""
from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator


def _configure_connection(conn: sqlite3.Connection) -> None:
    """Configure connection for entity access."""
    # Set row factory for dict-like access
    conn.row_factory = sqlite3.Row

    conn.execute("PRAGMA foreign_keys = ON;")


def connect(db_path: Path, must_exist: bool = True) -> sqlite3.Connection:
    """Create a connection to an entity database.
    
    Args:
        db_path: Path to the SQLite database
        must_exist: If True, refuse to create a new database file
        
    Returns:
        Configured SQLite connection, usable from several threads
        
    Raises:
        FileNotFoundError: If database file doesn't exist and must_exist is set
    """
    if must_exist and str(db_path) != ":memory:" and not Path(db_path).exists():
        raise FileNotFoundError(f"Database not found: {db_path}")

    conn = sqlite3.connect(str(db_path), check_same_thread=False, isolation_level=None)
    _configure_connection(conn)
    return conn


@contextmanager
def get_connection(db_path: Path, must_exist: bool = True) -> Iterator[sqlite3.Connection]:
    """Context manager for database connection.
    
    Args:
        db_path: Path to the SQLite database
        must_exist: If True, refuse to create a new database file
        
    Yields:
        Configured SQLite connection
    """
    conn = connect(db_path, must_exist=must_exist)
    try:
        yield conn
    finally:
        conn.close()
