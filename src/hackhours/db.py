"""SQLite storage for HackHours.

Three collections back the tracker: ``sessions``, ``events`` and
``aggregates``. Each is exposed through the narrow :class:`Collection`
interface and bound to a pydantic record type, so the session tracker
never sees raw rows.
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Generic, Protocol, TypeVar

from pydantic import BaseModel

from hackhours.errors import PersistenceFailure
from hackhours.timeutil import validate_range

logger = logging.getLogger(__name__)


class Event(BaseModel):
    """One observed file touch."""

    timestamp: int
    file_path: str
    language: str
    project: str
    session_id: str


class Session(BaseModel):
    """A contiguous span of activity. ``end_timestamp`` is None while open."""

    session_id: str
    start_timestamp: int
    end_timestamp: int | None = None
    duration_ms: int = 0

    @property
    def is_open(self) -> bool:
        return self.end_timestamp is None


class Aggregate(BaseModel):
    """Per-day rollup, keyed by local date (YYYY-MM-DD).

    ``files_edited`` and ``languages_used`` hold JSON arrays.
    """

    date: str
    total_time_ms: int = 0
    files_edited: str = "[]"
    languages_used: str = "[]"


SCHEMA = """
CREATE TABLE IF NOT EXISTS sessions (
    session_id TEXT PRIMARY KEY,
    start_timestamp INTEGER NOT NULL,
    end_timestamp INTEGER,
    duration_ms INTEGER DEFAULT 0
);

CREATE TABLE IF NOT EXISTS events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    timestamp INTEGER NOT NULL,
    file_path TEXT NOT NULL,
    language TEXT NOT NULL,
    project TEXT NOT NULL,
    session_id TEXT NOT NULL,
    FOREIGN KEY (session_id) REFERENCES sessions(session_id)
);

CREATE TABLE IF NOT EXISTS aggregates (
    date TEXT PRIMARY KEY,
    total_time_ms INTEGER DEFAULT 0,
    files_edited TEXT DEFAULT '[]',
    languages_used TEXT DEFAULT '[]'
);

CREATE INDEX IF NOT EXISTS idx_sessions_start ON sessions(start_timestamp);
CREATE INDEX IF NOT EXISTS idx_sessions_end ON sessions(end_timestamp);
CREATE INDEX IF NOT EXISTS idx_events_timestamp ON events(timestamp);
CREATE INDEX IF NOT EXISTS idx_events_session ON events(session_id);
CREATE INDEX IF NOT EXISTS idx_events_language ON events(language);
CREATE INDEX IF NOT EXISTS idx_events_project ON events(project);
"""

RecordT = TypeVar("RecordT", bound=BaseModel)


class Collection(Protocol[RecordT]):
    """Storage contract for one record collection."""

    def append(self, record: RecordT) -> None: ...

    def get_all(self) -> list[RecordT]: ...

    def find(self, match: Mapping[str, Any]) -> list[RecordT]: ...

    def get_one(self, match: Mapping[str, Any]) -> RecordT | None: ...

    def update_matching(self, match: Mapping[str, Any], patch: Mapping[str, Any]) -> int: ...


@contextmanager
def _persistence(action: str) -> Iterator[None]:
    """Translate sqlite3 errors into PersistenceFailure.

    Paths that are not valid UTF-8 (undecodable bytes in a file name) cannot
    be bound as TEXT and fail the same way.
    """
    try:
        yield
    except (sqlite3.Error, UnicodeError) as e:
        logger.error("Storage error while trying to %s: %s", action, e)
        raise PersistenceFailure(f"Failed to {action}: {e}") from e


class SqliteCollection(Generic[RecordT]):
    """A table whose columns mirror the fields of a pydantic record type.

    Rows come back in insertion order. Not thread-safe; callers serialize
    access (the session tracker holds its lock across every write).
    """

    def __init__(self, conn: sqlite3.Connection, table: str, model: type[RecordT]) -> None:
        self._conn = conn
        self._table = table
        self._model = model
        self._columns = list(model.model_fields)

    def _check_fields(self, fields: Mapping[str, Any]) -> None:
        unknown = set(fields) - set(self._columns)
        if unknown:
            raise ValueError(f"Unknown {self._table} fields: {', '.join(sorted(unknown))}")

    def _where(self, match: Mapping[str, Any]) -> tuple[str, list[Any]]:
        self._check_fields(match)
        clauses = []
        params: list[Any] = []
        for column, value in match.items():
            if value is None:
                clauses.append(f"{column} IS NULL")
            else:
                clauses.append(f"{column} = ?")
                params.append(value)
        return (" WHERE " + " AND ".join(clauses)) if clauses else "", params

    def _select(self, match: Mapping[str, Any], limit: int | None = None) -> list[RecordT]:
        where, params = self._where(match)
        query = f"SELECT {', '.join(self._columns)} FROM {self._table}{where} ORDER BY rowid ASC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        with _persistence(f"read {self._table}"):
            rows = self._conn.execute(query, params).fetchall()
        return [self._model.model_validate(dict(row)) for row in rows]

    def append(self, record: RecordT) -> None:
        """Insert one record. Commits immediately."""
        values = record.model_dump()
        placeholders = ", ".join("?" * len(self._columns))
        with _persistence(f"append to {self._table}"):
            self._conn.execute(
                f"INSERT INTO {self._table} ({', '.join(self._columns)}) VALUES ({placeholders})",
                [values[c] for c in self._columns],
            )
            self._conn.commit()

    def get_all(self) -> list[RecordT]:
        return self._select({})

    def find(self, match: Mapping[str, Any]) -> list[RecordT]:
        """Records whose fields equal every value in ``match`` (None matches NULL)."""
        return self._select(match)

    def get_one(self, match: Mapping[str, Any]) -> RecordT | None:
        found = self._select(match, limit=1)
        return found[0] if found else None

    def update_matching(self, match: Mapping[str, Any], patch: Mapping[str, Any]) -> int:
        """Apply ``patch`` to every record matching ``match``.

        Returns:
            Number of records updated.
        """
        if not patch:
            return 0
        self._check_fields(patch)
        where, where_params = self._where(match)
        assignments = ", ".join(f"{column} = ?" for column in patch)
        with _persistence(f"update {self._table}"):
            cursor = self._conn.execute(
                f"UPDATE {self._table} SET {assignments}{where}",
                list(patch.values()) + where_params,
            )
            self._conn.commit()
        return cursor.rowcount


class Store:
    """SQLite-backed store holding the sessions, events and aggregates collections."""

    def __init__(self, conn: sqlite3.Connection) -> None:
        self._conn = conn
        with _persistence("initialize schema"):
            self._conn.execute("PRAGMA foreign_keys = ON")
            self._init_schema()
        self.sessions: Collection[Session] = SqliteCollection(conn, "sessions", Session)
        self.events: Collection[Event] = SqliteCollection(conn, "events", Event)
        self.aggregates: Collection[Aggregate] = SqliteCollection(conn, "aggregates", Aggregate)

    def __enter__(self) -> "Store":
        return self

    def __exit__(self, exc_type: type | None, exc_val: Exception | None, exc_tb: object) -> None:
        self.close()

    def close(self) -> None:
        """Close the database connection."""
        self._conn.close()

    def _init_schema(self) -> None:
        """Initialize database schema."""
        self._conn.executescript(SCHEMA)
        self._conn.commit()

    @classmethod
    def open(cls, path: Path, *, check_same_thread: bool = True) -> Store:
        """Open or create a database at the given path.

        Args:
            path: Database file. Parent directories are created.
            check_same_thread: Pass False when one connection is shared by
                threads that serialize access themselves.
        """
        path.parent.mkdir(parents=True, exist_ok=True)
        with _persistence(f"open {path}"):
            conn = sqlite3.connect(path, check_same_thread=check_same_thread)
        conn.row_factory = sqlite3.Row
        return cls(conn)

    @classmethod
    def open_in_memory(cls) -> Store:
        """Create an in-memory database for testing."""
        conn = sqlite3.connect(":memory:", check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return cls(conn)


def session_overlaps(session: Session, start: int, end: int) -> bool:
    """Whether a session touches [start, end]. Open sessions count as a point at their start."""
    session_end = session.end_timestamp if session.end_timestamp is not None else session.start_timestamp
    return session.start_timestamp <= end and session_end >= start


def event_in_range(event: Event, start: int, end: int) -> bool:
    return start <= event.timestamp <= end


def get_sessions_in_range(store: Store, start: int, end: int) -> list[Session]:
    """Sessions overlapping the inclusive range [start, end]."""
    validate_range(start, end)
    return [s for s in store.sessions.get_all() if session_overlaps(s, start, end)]


def get_events_in_range(store: Store, start: int, end: int) -> list[Event]:
    """Events with start <= timestamp <= end, in arrival order."""
    validate_range(start, end)
    return [e for e in store.events.get_all() if event_in_range(e, start, end)]


def get_open_sessions(store: Store) -> list[Session]:
    return store.sessions.find({"end_timestamp": None})


def get_aggregate_by_date(store: Store, date: str) -> Aggregate | None:
    return store.aggregates.get_one({"date": date})
