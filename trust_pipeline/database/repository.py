"""
Record storage for trust profiles and rollup snapshots.

Records are JSON documents keyed by (kind, record_id). The backend is
swappable: SQLite for production, in-memory for tests. All access goes through
the abstract interface; scoring code only sees Repository (one per kind).
"""

from __future__ import annotations

import json
import sqlite3
import threading
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, Mapping

from trust_pipeline.core.exceptions import PersistenceError
from trust_pipeline.trust_logging import get_logger

logger = get_logger(__name__)

KIND_VENUE_PROFILES = "venue_profiles"
KIND_ACTOR_PROFILES = "actor_profiles"
KIND_ROLLUP_SNAPSHOTS = "rollup_snapshots"

SCHEMA_RECORDS = """
CREATE TABLE IF NOT EXISTS trust_records (
    kind TEXT NOT NULL,
    record_id TEXT NOT NULL,
    data_json TEXT NOT NULL,
    updated_at INTEGER NOT NULL,
    PRIMARY KEY (kind, record_id)
);
CREATE INDEX IF NOT EXISTS ix_trust_records_kind ON trust_records(kind);
"""


# -----------------------------------------------------------------------------
# Abstract backend
# -----------------------------------------------------------------------------


class RecordBackend(ABC):
    """Raw JSON text storage. Implementations raise PersistenceError on I/O failure."""

    @abstractmethod
    def ensure_schema(self) -> None:
        ...

    @abstractmethod
    def get(self, kind: str, record_id: str) -> str | None:
        ...

    @abstractmethod
    def put(self, kind: str, record_id: str, data_json: str) -> None:
        ...

    @abstractmethod
    def delete(self, kind: str, record_id: str) -> bool:
        ...

    @abstractmethod
    def list_ids(self, kind: str) -> list[str]:
        """All record ids of a kind, sorted ascending."""
        ...


# -----------------------------------------------------------------------------
# SQLite backend
# -----------------------------------------------------------------------------


class SQLiteBackend(RecordBackend):
    """SQLite implementation; single file, one connection per operation."""

    def __init__(self, path: str | Path, *, timeout_sec: float = 5.0) -> None:
        self._path = Path(path)
        self._timeout_sec = timeout_sec

    @property
    def path(self) -> Path:
        return self._path

    def _connect(self) -> sqlite3.Connection:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(self._path), timeout=self._timeout_sec)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode = WAL")
        return conn

    @contextmanager
    def _cursor(self) -> Iterator[sqlite3.Cursor]:
        try:
            conn = self._connect()
        except (sqlite3.Error, OSError) as e:
            raise PersistenceError(f"cannot open {self._path}: {e}") from e
        try:
            cur = conn.cursor()
            yield cur
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise PersistenceError(str(e)) from e
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def ensure_schema(self) -> None:
        with self._cursor() as cur:
            cur.executescript(SCHEMA_RECORDS)

    def get(self, kind: str, record_id: str) -> str | None:
        with self._cursor() as cur:
            cur.execute(
                "SELECT data_json FROM trust_records WHERE kind = ? AND record_id = ?",
                (kind, record_id),
            )
            row = cur.fetchone()
        return row["data_json"] if row is not None else None

    def put(self, kind: str, record_id: str, data_json: str) -> None:
        with self._cursor() as cur:
            cur.execute(
                """
                INSERT INTO trust_records (kind, record_id, data_json, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(kind, record_id) DO UPDATE SET
                    data_json = excluded.data_json,
                    updated_at = excluded.updated_at
                """,
                (kind, record_id, data_json, int(time.time())),
            )

    def delete(self, kind: str, record_id: str) -> bool:
        with self._cursor() as cur:
            cur.execute(
                "DELETE FROM trust_records WHERE kind = ? AND record_id = ?",
                (kind, record_id),
            )
            return cur.rowcount > 0

    def list_ids(self, kind: str) -> list[str]:
        with self._cursor() as cur:
            cur.execute(
                "SELECT record_id FROM trust_records WHERE kind = ? ORDER BY record_id ASC",
                (kind,),
            )
            return [row["record_id"] for row in cur.fetchall()]


# -----------------------------------------------------------------------------
# In-memory backend (tests, ephemeral runs)
# -----------------------------------------------------------------------------


class InMemoryBackend(RecordBackend):
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._records: dict[tuple[str, str], str] = {}

    def ensure_schema(self) -> None:
        return None

    def get(self, kind: str, record_id: str) -> str | None:
        with self._lock:
            return self._records.get((kind, record_id))

    def put(self, kind: str, record_id: str, data_json: str) -> None:
        with self._lock:
            self._records[(kind, record_id)] = data_json

    def delete(self, kind: str, record_id: str) -> bool:
        with self._lock:
            return self._records.pop((kind, record_id), None) is not None

    def list_ids(self, kind: str) -> list[str]:
        with self._lock:
            return sorted(rid for k, rid in self._records if k == kind)


# -----------------------------------------------------------------------------
# Repository facade: one per record kind
# -----------------------------------------------------------------------------


class Repository:
    """
    Load/save JSON records of one kind.

    load() raises PersistenceError for unreadable records (bad JSON or not an
    object); callers decide whether to fall back to a fresh record.
    """

    def __init__(self, backend: RecordBackend, kind: str) -> None:
        self._backend = backend
        self._kind = kind

    @property
    def kind(self) -> str:
        return self._kind

    def load(self, record_id: str) -> dict[str, Any] | None:
        raw = self._backend.get(self._kind, record_id)
        if raw is None:
            return None
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise PersistenceError(f"{self._kind}/{record_id}: invalid JSON: {e}") from e
        if not isinstance(data, dict):
            raise PersistenceError(f"{self._kind}/{record_id}: expected a JSON object")
        return data

    def save(self, record_id: str, data: Mapping[str, Any]) -> None:
        try:
            payload = json.dumps(dict(data), sort_keys=True, allow_nan=False)
        except (TypeError, ValueError) as e:
            raise PersistenceError(f"{self._kind}/{record_id}: not serializable: {e}") from e
        self._backend.put(self._kind, record_id, payload)

    def delete(self, record_id: str) -> bool:
        return self._backend.delete(self._kind, record_id)

    def list_ids(self) -> list[str]:
        return self._backend.list_ids(self._kind)


def open_repositories(backend: RecordBackend) -> dict[str, Repository]:
    """Ensure schema and return one Repository per record kind."""
    backend.ensure_schema()
    return {
        kind: Repository(backend, kind)
        for kind in (KIND_VENUE_PROFILES, KIND_ACTOR_PROFILES, KIND_ROLLUP_SNAPSHOTS)
    }
