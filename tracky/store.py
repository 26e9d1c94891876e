"""
tracky/store.py

Entity Store Adapter: typed get/create/update/delete/list over the record store.

Documents are flat JSON maps stored one row per (kind, id). Every row carries a
`revision` counter; every update is a compare-and-set on it, so a
read-check-write sequence in the workflow can never silently overwrite a
concurrent change. Timestamps (`createdAt`, `updatedAt` and any field set to
SERVER_TIMESTAMP) are assigned here at write time, never by callers.

No business rules live in this module.
"""

from __future__ import annotations

import json
import sqlite3
import threading
import time
import uuid
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

from sqlalchemy.exc import IntegrityError as SQLAlchemyIntegrityError
from sqlalchemy.exc import SQLAlchemyError

try:
    from tracky.config import IS_DEV, STALE_WRITE_RETRIES
    from tracky.db import get_db_connection, execute_query, fetch_one, fetch_all, commit
    from tracky.errors import DependencyFailure, NotFound, PreconditionFailed
    from tracky.models import RESERVED_FIELDS, EntityKind
except ModuleNotFoundError:
    from config import IS_DEV, STALE_WRITE_RETRIES
    from db import get_db_connection, execute_query, fetch_one, fetch_all, commit
    from errors import DependencyFailure, NotFound, PreconditionFailed
    from models import RESERVED_FIELDS, EntityKind


class _ServerTimestamp:
    """Placeholder resolved by the store to the write's server timestamp."""

    def __repr__(self) -> str:
        return "SERVER_TIMESTAMP"


SERVER_TIMESTAMP = _ServerTimestamp()

LocationRow = Tuple[int, float, float]


class ServerClock:
    """Epoch-millisecond clock that never returns the same or a smaller value twice."""

    def __init__(self, time_source: Callable[[], float] = time.time):
        self._time_source = time_source
        self._last = 0
        self._lock = threading.Lock()

    def now_ms(self) -> int:
        with self._lock:
            stamp = int(self._time_source() * 1000)
            if stamp <= self._last:
                stamp = self._last + 1
            self._last = stamp
            return stamp


def _resolve_timestamps(value: Any, stamp: int) -> Any:
    if value is SERVER_TIMESTAMP:
        return stamp
    if isinstance(value, dict):
        return {k: _resolve_timestamps(v, stamp) for k, v in value.items()}
    return value


def _label(kind: EntityKind) -> str:
    return kind.value.capitalize()


class EntityStore:
    """
    Keyed document store for assets and trackers plus the tracker location ledger.

    Args:
        database_path: SQLite file to use; None uses the configured database.
        clock: Server timestamp source (injectable for tests).
    """

    def __init__(self, database_path: Optional[str] = None, clock: Optional[ServerClock] = None):
        self.database_path = database_path
        self.clock = clock or ServerClock()

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------

    @contextmanager
    def _transaction(self, label: str) -> Iterator[Any]:
        """Open a connection, commit on success, wrap driver errors as DependencyFailure."""
        try:
            with get_db_connection(self.database_path) as conn:
                yield conn
                commit(conn)
        except (sqlite3.Error, SQLAlchemyError) as e:
            print(f"[STORE] {label} failed: {type(e).__name__}: {e}")
            raise DependencyFailure(f"Record store unavailable during {label}") from e

    @staticmethod
    def _hydrate(row: Dict[str, Any]) -> Dict[str, Any]:
        doc = json.loads(row["doc"])
        doc.update({
            "id": row["id"],
            "revision": int(row["revision"]),
            "createdAt": int(row["created_at"]),
            "updatedAt": int(row["updated_at"]),
        })
        return doc

    @staticmethod
    def _encode(doc: Dict[str, Any]) -> str:
        return json.dumps({k: v for k, v in doc.items() if k not in RESERVED_FIELDS}, sort_keys=True)

    @staticmethod
    def _select_row(conn, kind: EntityKind, entity_id: str) -> Optional[Dict[str, Any]]:
        return fetch_one(
            conn,
            """
            SELECT id, doc, revision, created_at, updated_at
            FROM entities
            WHERE kind = :kind AND id = :id
            """,
            {"kind": kind.value, "id": entity_id},
        )

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------

    def get(self, kind: EntityKind, entity_id: str) -> Dict[str, Any]:
        """Fetch one document. Raises NotFound if absent."""
        with self._transaction(f"get {kind.value}") as conn:
            row = self._select_row(conn, kind, str(entity_id))
        if row is None:
            raise NotFound(f"{_label(kind)} not found")
        return self._hydrate(row)

    def exists(self, kind: EntityKind, entity_id: str) -> bool:
        with self._transaction(f"exists {kind.value}") as conn:
            row = fetch_one(
                conn,
                "SELECT 1 AS present FROM entities WHERE kind = :kind AND id = :id",
                {"kind": kind.value, "id": str(entity_id)},
            )
        return row is not None

    def new_id(self) -> str:
        return uuid.uuid4().hex

    def create(self, kind: EntityKind, entity_id: Optional[str], doc: Dict[str, Any]) -> Dict[str, Any]:
        """
        Insert a new document.

        Args:
            kind: asset or tracker
            entity_id: Client-supplied id, or None to generate one
            doc: Initial fields (reserved fields are ignored)

        Returns:
            The stored document including id, revision and timestamps.

        Raises:
            PreconditionFailed: If the id is already taken.
        """
        entity_id = str(entity_id) if entity_id else self.new_id()
        stamp = self.clock.now_ms()
        payload = _resolve_timestamps(doc, stamp)

        with self._transaction(f"create {kind.value}") as conn:
            try:
                execute_query(
                    conn,
                    """
                    INSERT INTO entities (kind, id, doc, revision, created_at, updated_at)
                    VALUES (:kind, :id, :doc, 1, :stamp, :stamp)
                    """,
                    {"kind": kind.value, "id": entity_id, "doc": self._encode(payload), "stamp": stamp},
                )
            except (sqlite3.IntegrityError, SQLAlchemyIntegrityError):
                raise PreconditionFailed(f"{_label(kind)} {entity_id} already exists")
            row = self._select_row(conn, kind, entity_id)

        if IS_DEV:
            print(f"[STORE] Created {kind.value} id={entity_id}")
        return self._hydrate(row)

    def update(
        self,
        kind: EntityKind,
        entity_id: str,
        partial: Dict[str, Any],
        expected_revision: Optional[int] = None,
    ) -> Dict[str, Any]:
        """
        Field-level merge into an existing document.

        Fields absent from `partial` are untouched; a None value removes the field.

        Args:
            expected_revision: Revision the caller read. When given, the write only
                commits if the row is still at that revision. When omitted, the
                merge is retried against fresh reads a bounded number of times.

        Returns:
            The merged document at its new revision.

        Raises:
            NotFound: If the document does not exist.
            PreconditionFailed: If the revision moved underneath the caller.
        """
        entity_id = str(entity_id)
        attempts = 1 if expected_revision is not None else max(1, STALE_WRITE_RETRIES)

        for _ in range(attempts):
            stamp = self.clock.now_ms()
            changes = _resolve_timestamps(partial, stamp)

            with self._transaction(f"update {kind.value}") as conn:
                row = self._select_row(conn, kind, entity_id)
                if row is None:
                    raise NotFound(f"{_label(kind)} not found")

                read_revision = int(row["revision"])
                if expected_revision is not None and read_revision != int(expected_revision):
                    raise PreconditionFailed(
                        f"Stale revision for {kind.value} {entity_id}: "
                        f"expected {expected_revision}, found {read_revision}"
                    )

                doc = json.loads(row["doc"])
                for key, value in changes.items():
                    if key in RESERVED_FIELDS:
                        continue
                    if value is None:
                        doc.pop(key, None)
                    else:
                        doc[key] = value

                result = execute_query(
                    conn,
                    """
                    UPDATE entities
                    SET doc = :doc, revision = revision + 1, updated_at = :stamp
                    WHERE kind = :kind AND id = :id AND revision = :revision
                    """,
                    {
                        "doc": self._encode(doc),
                        "stamp": stamp,
                        "kind": kind.value,
                        "id": entity_id,
                        "revision": read_revision,
                    },
                )
                if result.rowcount == 1:
                    fresh = self._select_row(conn, kind, entity_id)
                    if IS_DEV:
                        print(f"[STORE] Updated {kind.value} id={entity_id} revision={read_revision + 1}")
                    return self._hydrate(fresh)

            print(f"[STORE] Lost revision race on {kind.value} id={entity_id} at revision={read_revision}")

        raise PreconditionFailed(f"Concurrent update on {kind.value} {entity_id}; retry with a fresh read")

    def delete(self, kind: EntityKind, entity_id: str) -> Dict[str, Any]:
        """Remove a document (and a tracker's ledger). Returns the removed document."""
        entity_id = str(entity_id)
        with self._transaction(f"delete {kind.value}") as conn:
            row = self._select_row(conn, kind, entity_id)
            if row is None:
                raise NotFound(f"{_label(kind)} not found")
            execute_query(
                conn,
                "DELETE FROM entities WHERE kind = :kind AND id = :id",
                {"kind": kind.value, "id": entity_id},
            )
            if kind is EntityKind.tracker:
                execute_query(conn, "DELETE FROM locations WHERE tracker_id = :id", {"id": entity_id})

        if IS_DEV:
            print(f"[STORE] Deleted {kind.value} id={entity_id}")
        return self._hydrate(row)

    def list(self, kind: EntityKind, filters: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        """All documents of a kind in creation order, optionally filtered by field equality."""
        with self._transaction(f"list {kind.value}") as conn:
            rows = fetch_all(
                conn,
                """
                SELECT id, doc, revision, created_at, updated_at
                FROM entities
                WHERE kind = :kind
                ORDER BY created_at, id
                """,
                {"kind": kind.value},
            )

        docs = [self._hydrate(row) for row in rows]
        if filters:
            docs = [d for d in docs if all(d.get(k) == v for k, v in filters.items())]
        return docs

    # ------------------------------------------------------------------
    # Location ledger rows
    # ------------------------------------------------------------------

    def append_location(self, tracker_id: str, timestamp: int, longitude: float, latitude: float) -> None:
        """
        Upsert one ledger entry keyed by (tracker, timestamp).

        Distinct timestamps never conflict; an equal timestamp replaces only that entry.

        Raises:
            NotFound: If the tracker row does not exist at write time.
        """
        with self._transaction("append location") as conn:
            result = execute_query(
                conn,
                """
                INSERT INTO locations (tracker_id, ts, longitude, latitude)
                SELECT :tracker_id, :ts, :longitude, :latitude
                WHERE EXISTS (
                    SELECT 1 FROM entities WHERE kind = :kind AND id = :tracker_id
                )
                ON CONFLICT (tracker_id, ts)
                DO UPDATE SET longitude = excluded.longitude, latitude = excluded.latitude
                """,
                {
                    "tracker_id": str(tracker_id),
                    "ts": int(timestamp),
                    "longitude": float(longitude),
                    "latitude": float(latitude),
                    "kind": EntityKind.tracker.value,
                },
            )
            if result.rowcount == 0:
                raise NotFound("Tracker not found")

    def location_history(self, tracker_id: str) -> List[LocationRow]:
        """Ledger entries for a tracker, oldest first."""
        with self._transaction("read locations") as conn:
            rows = fetch_all(
                conn,
                """
                SELECT ts, longitude, latitude
                FROM locations
                WHERE tracker_id = :tracker_id
                ORDER BY ts
                """,
                {"tracker_id": str(tracker_id)},
            )
        return [(int(r["ts"]), float(r["longitude"]), float(r["latitude"])) for r in rows]

    def latest_location(self, tracker_id: str) -> Optional[LocationRow]:
        with self._transaction("read latest location") as conn:
            row = fetch_one(
                conn,
                """
                SELECT ts, longitude, latitude
                FROM locations
                WHERE tracker_id = :tracker_id
                ORDER BY ts DESC
                LIMIT 1
                """,
                {"tracker_id": str(tracker_id)},
            )
        if row is None:
            return None
        return int(row["ts"]), float(row["longitude"]), float(row["latitude"])

    def latest_locations(self) -> Dict[str, LocationRow]:
        """Newest ledger entry of every tracker that has one, in a single query."""
        with self._transaction("read latest locations") as conn:
            rows = fetch_all(
                conn,
                """
                SELECT l.tracker_id, l.ts, l.longitude, l.latitude
                FROM locations l
                JOIN (
                    SELECT tracker_id, MAX(ts) AS ts
                    FROM locations
                    GROUP BY tracker_id
                ) newest ON newest.tracker_id = l.tracker_id AND newest.ts = l.ts
                """,
                {},
            )
        return {
            str(r["tracker_id"]): (int(r["ts"]), float(r["longitude"]), float(r["latitude"]))
            for r in rows
        }
