# tracky/db.py
# Database abstraction layer supporting PostgreSQL (production) and SQLite (dev)

import sqlite3
from contextlib import contextmanager
from pathlib import Path as FsPath
from typing import Any, Dict, Generator, List, Optional, Union
from urllib.parse import urlparse

from sqlalchemy import create_engine, text, pool
from sqlalchemy.engine import Engine, Connection

try:
    from tracky.config import DATABASE_PATH, DATABASE_URL, IS_POSTGRES, IS_DEV
except ModuleNotFoundError:
    from config import DATABASE_PATH, DATABASE_URL, IS_POSTGRES, IS_DEV

# Global engine (SQLAlchemy) or None for SQLite
_engine: Optional[Engine] = None


def postgres_url(database_url: str) -> str:
    """Validated SQLAlchemy URL (Heroku-style postgres:// is rewritten to postgresql://)."""
    parsed = urlparse(database_url)
    if not parsed.scheme or not parsed.netloc:
        raise ValueError(f"Invalid DATABASE_URL: {database_url[:20]}...")
    if parsed.scheme == "postgres":
        return "postgresql" + database_url[len("postgres"):]
    return database_url


def init_engine() -> None:
    """Create the pooled PostgreSQL engine (no-op in SQLite mode)."""
    global _engine

    if not IS_POSTGRES:
        _engine = None
        print("[DB] Using SQLite (local dev mode)")
        return

    url = postgres_url(DATABASE_URL)
    _engine = create_engine(
        url,
        poolclass=pool.QueuePool,
        pool_size=5,
        max_overflow=10,
        pool_pre_ping=True,
    )
    print(f"[DB] Using PostgreSQL ({urlparse(url).hostname})")


def resolve_sqlite_path(database_path: Optional[str] = None) -> str:
    """Relative paths are resolved next to this package; absolute paths are used as-is."""
    return str(FsPath(__file__).resolve().parent / (database_path or DATABASE_PATH))


@contextmanager
def get_db_connection(database_path: Optional[str] = None) -> Generator[Union[sqlite3.Connection, Connection], None, None]:
    """
    Context manager for database connections.
    Returns sqlite3.Connection for SQLite or sqlalchemy.Connection for Postgres.

    An explicit `database_path` always selects SQLite (used by tests and tools).
    """
    if IS_POSTGRES and database_path is None:
        if _engine is None:
            init_engine()

        # SQLAlchemy connection
        with _engine.connect() as conn:
            yield conn
    else:
        # SQLite connection
        conn = sqlite3.connect(resolve_sqlite_path(database_path), check_same_thread=False)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()


def _is_sqlite(conn) -> bool:
    return isinstance(conn, sqlite3.Connection)


def execute_query(
    conn: Union[sqlite3.Connection, Connection],
    query: str,
    params: Optional[Dict[str, Any]] = None,
) -> Any:
    """
    Execute a query with named parameters.

    Both backends accept `:name` placeholders, so queries are written once.

    Returns:
        Cursor (SQLite) or CursorResult (PostgreSQL); both expose `rowcount`.
    """
    if _is_sqlite(conn):
        return conn.execute(query, params or {})
    return conn.execute(text(query), params or {})


def row_to_dict(row) -> Dict[str, Any]:
    """Convert a sqlite3.Row or SQLAlchemy Row to a plain dict ({} for None)."""
    if row is None:
        return {}
    if isinstance(row, sqlite3.Row):
        return dict(row)
    return dict(row._mapping)


def fetch_one(conn, query: str, params: Optional[Dict[str, Any]] = None) -> Optional[Dict[str, Any]]:
    row = execute_query(conn, query, params).fetchone()
    return row_to_dict(row) if row is not None else None


def fetch_all(conn, query: str, params: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
    return [row_to_dict(row) for row in execute_query(conn, query, params).fetchall()]


def commit(conn: Union[sqlite3.Connection, Connection]) -> None:
    """Commit transaction (same call on both backends)."""
    conn.commit()


# Initialize engine on module import if Postgres mode
if IS_POSTGRES and _engine is None:
    init_engine()
elif IS_DEV:
    print(f"[DB] SQLite database: {resolve_sqlite_path()}")
