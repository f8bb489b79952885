"""Query executors.

An executor is the only component that talks to the store. It receives
structured query descriptions (see ``entitymap.db.query``) and returns rows as
dictionaries. ``SQLiteExecutor`` is the bundled implementation.
"""
from __future__ import annotations

import sqlite3
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, Iterable, List, Sequence, Tuple

from ..errors import StoreError
from ..logging_config import get_logger
from ..models.records import ForeignKey
from .connection import connect
from .query import NO_VALUE, Condition, Select

logger = get_logger(__name__)

DIRECTIONS = ("inbound", "outbound")


class QueryExecutor(ABC):
    """Boundary between the entity engine and the relational store."""

    @abstractmethod
    def execute_select(self, query: Select) -> List[Dict[str, Any]]:
        raise NotImplementedError

    @abstractmethod
    def execute_insert(self, table: str, values: Dict[str, Any]) -> int:
        raise NotImplementedError

    @abstractmethod
    def execute_update(self, table: str, ids: int | Sequence[int], values: Dict[str, Any]) -> None:
        raise NotImplementedError

    @abstractmethod
    def execute_delete(self, table: str, where: Sequence[Condition]) -> None:
        raise NotImplementedError

    @abstractmethod
    def introspect_columns(self, table: str) -> Dict[str, str]:
        """Return ``{column: declared type}`` for a table (empty if unknown)."""
        raise NotImplementedError

    @abstractmethod
    def introspect_foreign_keys(self, table: str, direction: str) -> List[ForeignKey]:
        """Return foreign keys declared by ``table`` (outbound) or
        referencing it (inbound)."""
        raise NotImplementedError

    @abstractmethod
    def fingerprint(self) -> Dict[str, str]:
        """Identify the connection: host, port, database and schema."""
        raise NotImplementedError


def quote_identifier(name: str) -> str:
    return '"' + name.replace('"', '""') + '"'


def _is_sequence(value: Any) -> bool:
    return isinstance(value, (list, tuple, set, frozenset))


def compile_conditions(where: Iterable[Condition]) -> Tuple[str, List[Any]]:
    """Render condition pairs as a WHERE body and its parameters.

    ``IN (?)`` placeholders expand to one placeholder per element of a
    sequence value; an empty sequence matches nothing.
    """
    clauses: List[str] = []
    params: List[Any] = []
    for clause, value in where:
        if value is NO_VALUE:
            clauses.append(f"({clause})")
            continue
        if _is_sequence(value):
            values = list(value)
            if "(?)" not in clause:
                raise ValueError(f"Sequence value needs an 'IN (?)' clause: {clause}")
            placeholders = ", ".join("?" for _ in values) if values else "NULL"
            clauses.append("(" + clause.replace("(?)", f"({placeholders})", 1) + ")")
            params.extend(values)
            continue
        clauses.append(f"({clause})")
        params.append(value)
    return " AND ".join(clauses), params


def compile_select(query: Select) -> Tuple[str, List[Any]]:
    prefix = query.alias or query.table
    columns: List[str] = []
    for column in query.columns:
        if column == "*":
            columns.append(f"{quote_identifier(prefix)}.*")
        else:
            columns.append(column)
    for join in query.joins:
        columns.extend(f"{quote_identifier(join.alias)}.{quote_identifier(col)}" for col in join.columns)

    sql = f"SELECT {', '.join(columns)} FROM {quote_identifier(query.table)}"
    if query.alias:
        sql += f" AS {quote_identifier(query.alias)}"
    for join in query.joins:
        sql += f" JOIN {quote_identifier(join.table)} AS {quote_identifier(join.alias)} ON {join.condition}"

    params: List[Any] = []
    if query.where:
        body, params = compile_conditions(query.where)
        sql += f" WHERE {body}"
    if query.group_by:
        sql += " GROUP BY " + ", ".join(query.group_by)
    if query.order_by:
        sql += " ORDER BY " + ", ".join(query.order_by)
    if query.limit is not None:
        sql += " LIMIT ?"
        params.append(int(query.limit))
    return sql, params


class SQLiteExecutor(QueryExecutor):
    """Executor backed by a single sqlite3 connection.

    Statements are serialized through a lock so one executor can be shared by
    several threads.
    """

    def __init__(self, conn: sqlite3.Connection, database: str = ":memory:") -> None:
        self.conn = conn
        self.database = database
        self._lock = threading.RLock()

    @classmethod
    def open(cls, db_path: Path, must_exist: bool = True) -> "SQLiteExecutor":
        return cls(connect(db_path, must_exist=must_exist), database=str(Path(db_path).resolve()))

    def close(self) -> None:
        self.conn.close()

    def _execute(self, sql: str, params: Sequence[Any] = ()) -> sqlite3.Cursor:
        logger.debug("SQL %s %s", sql, list(params))
        try:
            with self._lock:
                return self.conn.execute(sql, tuple(params))
        except sqlite3.Error as exc:
            raise StoreError(f"{exc} [{sql}]") from exc

    def _fetch(self, sql: str, params: Sequence[Any] = ()) -> List[Dict[str, Any]]:
        try:
            with self._lock:
                cursor = self._execute(sql, params)
                return [dict(row) for row in cursor.fetchall()]
        except sqlite3.Error as exc:
            raise StoreError(str(exc)) from exc

    def execute_select(self, query: Select) -> List[Dict[str, Any]]:
        sql, params = compile_select(query)
        return self._fetch(sql, params)

    def execute_insert(self, table: str, values: Dict[str, Any]) -> int:
        if values:
            columns = ", ".join(quote_identifier(col) for col in values)
            placeholders = ", ".join("?" for _ in values)
            sql = f"INSERT INTO {quote_identifier(table)} ({columns}) VALUES ({placeholders})"
        else:
            sql = f"INSERT INTO {quote_identifier(table)} DEFAULT VALUES"
        with self._lock:
            cursor = self._execute(sql, list(values.values()))
            return int(cursor.lastrowid)

    def execute_update(self, table: str, ids: int | Sequence[int], values: Dict[str, Any]) -> None:
        if not values:
            return
        id_list = [int(i) for i in ids] if _is_sequence(ids) else [int(ids)]
        assignments = ", ".join(f"{quote_identifier(col)} = ?" for col in values)
        where, params = compile_conditions([("id IN (?)", id_list)])
        sql = f"UPDATE {quote_identifier(table)} SET {assignments} WHERE {where}"
        self._execute(sql, list(values.values()) + params)

    def execute_delete(self, table: str, where: Sequence[Condition]) -> None:
        if not where:
            raise ValueError("Refusing to delete without a where clause")
        body, params = compile_conditions(where)
        self._execute(f"DELETE FROM {quote_identifier(table)} WHERE {body}", params)

    def _table_names(self) -> List[str]:
        rows = self._fetch(
            "SELECT name FROM sqlite_master WHERE type = 'table' AND name NOT LIKE 'sqlite_%' ORDER BY name"
        )
        return [row["name"] for row in rows]

    def _outbound(self, table: str) -> List[ForeignKey]:
        rows = self._fetch(f"PRAGMA foreign_key_list({quote_identifier(table)})")
        return [
            ForeignKey(
                table=table,
                column=row["from"],
                referenced_table=row["table"],
                referenced_column=row["to"] or "id",
            )
            for row in rows
        ]

    def introspect_columns(self, table: str) -> Dict[str, str]:
        rows = self._fetch(f"PRAGMA table_info({quote_identifier(table)})")
        return {row["name"]: (row["type"] or "").upper() for row in rows}

    def introspect_foreign_keys(self, table: str, direction: str) -> List[ForeignKey]:
        if direction not in DIRECTIONS:
            raise ValueError("direction must be one of inbound, outbound")
        if direction == "outbound":
            return self._outbound(table)
        inbound: List[ForeignKey] = []
        for name in self._table_names():
            inbound.extend(fk for fk in self._outbound(name) if fk.referenced_table == table)
        return inbound

    def fingerprint(self) -> Dict[str, str]:
        return {"host": "", "port": "", "database": self.database, "schema": "main"}

    def table_names(self) -> List[str]:
        return self._table_names()
