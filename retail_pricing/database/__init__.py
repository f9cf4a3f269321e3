# database/__init__.py
from __future__ import annotations

from contextlib import contextmanager
from itertools import count
from pathlib import Path
import sqlite3
import threading

from ..config import DB_PATH
from ..constants import BUSY_TIMEOUT_SECONDS, SCHEMA_VERSION, TABLE_SCHEMA_VERSION
from . import schema as schema_module

_savepoint_ids = count(1)
_savepoint_lock = threading.Lock()


def _ensure_version_table(conn: sqlite3.Connection) -> None:
    conn.execute(f"""
        CREATE TABLE IF NOT EXISTS {TABLE_SCHEMA_VERSION}(
            id INTEGER PRIMARY KEY CHECK (id=1),
            version TEXT NOT NULL
        );
    """)
    row = conn.execute(
        f"SELECT version FROM {TABLE_SCHEMA_VERSION} WHERE id=1;"
    ).fetchone()
    if row is None:
        conn.execute(
            f"INSERT INTO {TABLE_SCHEMA_VERSION}(id, version) VALUES (1, ?);",
            (SCHEMA_VERSION,),
        )


def configure(conn: sqlite3.Connection) -> sqlite3.Connection:
    """Apply row factory + pragmas + schema to an already-open connection."""
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON;")
    schema_module.apply_schema(conn)
    _ensure_version_table(conn)
    conn.commit()
    return conn


def get_connection(
    db_path: Path | str | None = None,
    timeout: float = BUSY_TIMEOUT_SECONDS,
) -> sqlite3.Connection:
    """
    Returns a sqlite3.Connection with:
      - WAL mode (file databases only)
      - foreign_keys ON
      - row_factory = sqlite3.Row (so rows behave like dicts and tuples)
      - a busy timeout so BEGIN IMMEDIATE waits for a competing writer
    Ensures the schema is applied idempotently.

    Connections are not shared between threads; open one per worker.
    """
    target = str(db_path) if db_path is not None else str(DB_PATH)
    if target != ":memory:":
        Path(target).parent.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(target, timeout=timeout)
    if target != ":memory:":
        conn.execute("PRAGMA journal_mode = WAL;")
    return configure(conn)


@contextmanager
def atomic(conn: sqlite3.Connection):
    """
    Run the block as one write transaction.

    Outside a transaction this issues BEGIN IMMEDIATE (the write lock is
    taken up front, so concurrent writers queue on the busy timeout instead
    of failing mid-way), commits on success and rolls back on error.
    Inside an open transaction it nests through a SAVEPOINT, so callers can
    compose atomic blocks.
    """
    if conn.in_transaction:
        with _savepoint_lock:
            name = f"sp_{next(_savepoint_ids)}"
        conn.execute(f"SAVEPOINT {name}")
        try:
            yield conn
        except BaseException:
            conn.execute(f"ROLLBACK TO SAVEPOINT {name}")
            conn.execute(f"RELEASE SAVEPOINT {name}")
            raise
        conn.execute(f"RELEASE SAVEPOINT {name}")
        return

    cur = conn.cursor()
    try:
        cur.execute("BEGIN IMMEDIATE")
        yield conn
        conn.commit()
    except BaseException:
        conn.rollback()
        raise
    finally:
        cur.close()


__all__ = [
    "atomic",
    "configure",
    "get_connection",
]
