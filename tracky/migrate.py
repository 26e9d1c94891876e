# tracky/migrate.py
# Database migration module for PostgreSQL and SQLite
# Run: python -m tracky.migrate

from typing import Optional

try:
    from tracky.config import IS_POSTGRES
    from tracky.db import get_db_connection, execute_query, commit
except ModuleNotFoundError:
    from config import IS_POSTGRES
    from db import get_db_connection, execute_query, commit


def run_migrations(database_path: Optional[str] = None) -> None:
    """
    Run all database migrations (idempotent).
    Creates tables and indexes if missing. Safe to run multiple times.

    Args:
        database_path: Explicit SQLite file (tests/tools); None uses configuration.
    """
    print("[MIGRATE] Starting database migrations...")

    with get_db_connection(database_path) as conn:
        if IS_POSTGRES and database_path is None:
            _run_postgres_migrations(conn)
        else:
            _run_sqlite_migrations(conn)

        commit(conn)

    print("[MIGRATE] All migrations complete!")


def _run_postgres_migrations(conn) -> None:
    """PostgreSQL-specific migrations."""
    print("[MIGRATE] Running PostgreSQL migrations...")

    # Entity documents (assets and trackers), one row per (kind, id)
    execute_query(conn, """
        CREATE TABLE IF NOT EXISTS entities (
            kind TEXT NOT NULL,
            id TEXT NOT NULL,
            doc TEXT NOT NULL,
            revision BIGINT NOT NULL DEFAULT 1,
            created_at BIGINT NOT NULL,
            updated_at BIGINT NOT NULL,
            PRIMARY KEY (kind, id)
        )
    """)
    execute_query(conn, "CREATE INDEX IF NOT EXISTS idx_entities_kind_created ON entities(kind, created_at)")

    # Location ledger, one row per (tracker, timestamp)
    execute_query(conn, """
        CREATE TABLE IF NOT EXISTS locations (
            tracker_id TEXT NOT NULL,
            ts BIGINT NOT NULL,
            longitude DOUBLE PRECISION NOT NULL,
            latitude DOUBLE PRECISION NOT NULL,
            PRIMARY KEY (tracker_id, ts)
        )
    """)

    print("[MIGRATE] PostgreSQL migrations complete")


def _run_sqlite_migrations(conn) -> None:
    """SQLite-specific migrations."""
    print("[MIGRATE] Running SQLite migrations...")

    execute_query(conn, """
        CREATE TABLE IF NOT EXISTS entities (
            kind TEXT NOT NULL,
            id TEXT NOT NULL,
            doc TEXT NOT NULL,
            revision INTEGER NOT NULL DEFAULT 1,
            created_at INTEGER NOT NULL,
            updated_at INTEGER NOT NULL,
            PRIMARY KEY (kind, id)
        )
    """)
    execute_query(conn, "CREATE INDEX IF NOT EXISTS idx_entities_kind_created ON entities(kind, created_at)")

    execute_query(conn, """
        CREATE TABLE IF NOT EXISTS locations (
            tracker_id TEXT NOT NULL,
            ts INTEGER NOT NULL,
            longitude REAL NOT NULL,
            latitude REAL NOT NULL,
            PRIMARY KEY (tracker_id, ts)
        )
    """)

    print("[MIGRATE] SQLite migrations complete")


if __name__ == "__main__":
    run_migrations()
