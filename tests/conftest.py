"""Shared test fixtures for entitymap tests.

These fixtures create a small course catalog:

    category  <- course.category_id
    course    <- course_instructor.course_id, review.course_id
    instructor <- course_instructor.instructor_id
"""
import sqlite3
from pathlib import Path
from typing import Any, Dict, List

import pytest

from entitymap.cache.identity_map import IdentityMap
from entitymap.datasource import DataSource
from entitymap.db.executor import SQLiteExecutor
from entitymap.db.query import Select
from entitymap.models.entity import Entity
from entitymap.models.records import Dependent


class Category(Entity):
    fields = ("name",)
    dependents = {"courses": Dependent("Course", order="name")}


class Course(Entity):
    fields = ("name", "allowSyndication", "startDate", "price")
    references = {"category": "Category"}
    dependents = {
        "instructors": Dependent("Instructor", order="name"),
        "reviews": Dependent("Review", order="created_at DESC", limit=2),
        "activeReviews": Dependent("Review", where={"active = ?": 1}, order="created_at DESC"),
        "latestReview": Dependent("Review", order="created_at DESC", limit=1),
        "reviewCount": Dependent("Review", count=True),
    }


class Instructor(Entity):
    fields = ("name",)
    dependents = {"courses": Dependent("Course", order="name")}


class Review(Entity):
    fields = ("rating", "createdAt", "active")
    references = {"course": "Course"}


def create_entity_db(db_path: Path) -> sqlite3.Connection:
    """Create a test database with the course catalog schema."""
    conn = sqlite3.connect(str(db_path))
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON;")

    conn.execute("""
        CREATE TABLE category (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT NOT NULL
        )
    """)

    # allow_syndication and its prefixed twin both exist on purpose
    conn.execute("""
        CREATE TABLE course (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT NOT NULL,
            category_id INTEGER,
            allow_syndication INTEGER,
            domain_allow_syndication INTEGER,
            start_date DATE,
            price DECIMAL(10, 2),
            FOREIGN KEY(category_id) REFERENCES category(id)
        )
    """)

    conn.execute("""
        CREATE TABLE instructor (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT NOT NULL
        )
    """)

    conn.execute("""
        CREATE TABLE course_instructor (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            course_id INTEGER NOT NULL,
            instructor_id INTEGER NOT NULL,
            FOREIGN KEY(course_id) REFERENCES course(id),
            FOREIGN KEY(instructor_id) REFERENCES instructor(id)
        )
    """)

    conn.execute("""
        CREATE TABLE review (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            course_id INTEGER NOT NULL,
            rating INTEGER,
            created_at DATETIME,
            active INTEGER NOT NULL DEFAULT 1,
            FOREIGN KEY(course_id) REFERENCES course(id)
        )
    """)

    conn.commit()
    return conn


def seed_test_data(conn: sqlite3.Connection) -> None:
    """Seed the catalog.

    Creates:
    - Categories 1 (Cooking) and 2 (Art)
    - Courses 10, 11 in Cooking and 12 in Art
    - Instructors 5 (Ana, unassigned), 6 (Ben: 10, 11) and 7 (Cleo: 10)
    - Five reviews each for courses 10 (ids 100-104) and 11 (ids 110-114),
      newest last; review 103 is inactive. Course 12 has none.
    """
    conn.executemany(
        "INSERT INTO category (id, name) VALUES (?, ?)",
        [(1, "Cooking"), (2, "Art")],
    )
    conn.executemany(
        """
        INSERT INTO course (id, name, category_id, allow_syndication, domain_allow_syndication, start_date, price)
        VALUES (?, ?, ?, 1, 0, '2024-03-01', 45.5)
        """,
        [(10, "Knife Skills", 1), (11, "Pasta", 1), (12, "Watercolor", 2)],
    )
    conn.executemany(
        "INSERT INTO instructor (id, name) VALUES (?, ?)",
        [(5, "Ana"), (6, "Ben"), (7, "Cleo")],
    )
    conn.executemany(
        "INSERT INTO course_instructor (course_id, instructor_id) VALUES (?, ?)",
        [(10, 6), (10, 7), (11, 6)],
    )
    reviews = []
    for offset in range(5):
        reviews.append((100 + offset, 10, offset + 1, f"2024-01-0{offset + 1} 10:00:00", 0 if offset == 3 else 1))
        reviews.append((110 + offset, 11, 5 - offset, f"2024-02-0{offset + 1} 10:00:00", 1))
    conn.executemany(
        "INSERT INTO review (id, course_id, rating, created_at, active) VALUES (?, ?, ?, ?, ?)",
        reviews,
    )
    conn.commit()


class RecordingExecutor(SQLiteExecutor):
    """SQLite executor remembering every select it runs."""

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self.selects: List[Select] = []

    def execute_select(self, query: Select) -> List[Dict[str, Any]]:
        self.selects.append(query)
        return super().execute_select(query)

    def selects_on(self, table: str) -> List[Select]:
        return [query for query in self.selects if query.table == table]


@pytest.fixture
def entity_db(tmp_path: Path) -> Path:
    """Seeded catalog database on disk."""
    db_path = tmp_path / "entities.db"
    conn = create_entity_db(db_path)
    seed_test_data(conn)
    conn.close()
    return db_path


@pytest.fixture
def identity_map() -> IdentityMap:
    return IdentityMap()


@pytest.fixture
def executor(entity_db: Path):
    executor = RecordingExecutor.open(entity_db)
    yield executor
    executor.close()


@pytest.fixture
def source(executor: RecordingExecutor, identity_map: IdentityMap) -> DataSource:
    return DataSource(executor, identity_map=identity_map)
