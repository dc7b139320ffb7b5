"""
SQLite connection and schema for the durable memory store
==========================================================

- One shared connection per process, opened in autocommit mode; writers open
  their own ``with conn:`` transactions inside worker threads.
- ``schema.sql`` is idempotent and stamped into ``PRAGMA user_version``.
"""

from __future__ import annotations

import logging
import pathlib
import sqlite3
from typing import Optional

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1
MEMORY_DB = ":memory:"


def connect(path: Optional[str] = None) -> sqlite3.Connection:
    """Open the memory database at ``path`` (in-memory when omitted)."""
    target = path or MEMORY_DB
    if target != MEMORY_DB:
        pathlib.Path(target).parent.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(target, isolation_level=None, check_same_thread=False)
    conn.row_factory = sqlite3.Row

    # WAL lets readers proceed while the maintenance sweep writes.
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA synchronous=NORMAL;")
    conn.execute("PRAGMA temp_store=MEMORY;")
    conn.execute("PRAGMA busy_timeout=3000;")
    return conn


def schema_version(conn: sqlite3.Connection) -> int:
    return int(conn.execute("PRAGMA user_version;").fetchone()[0])


def migrate(conn: sqlite3.Connection) -> int:
    """Apply ``schema.sql`` if the database is behind; returns the version."""
    current = schema_version(conn)
    if current > SCHEMA_VERSION:
        raise RuntimeError(
            f"Memory database schema v{current} is newer than supported v{SCHEMA_VERSION}"
        )

    sql = pathlib.Path(__file__).with_name("schema.sql").read_text(encoding="utf-8")
    conn.executescript(sql)
    if current < SCHEMA_VERSION:
        conn.execute(f"PRAGMA user_version={SCHEMA_VERSION};")
        logger.info("Memory schema migrated v%d -> v%d", current, SCHEMA_VERSION)
    return SCHEMA_VERSION


def wal_checkpoint_truncate(conn: sqlite3.Connection) -> None:
    """Fold the WAL back into the main file and truncate it."""
    conn.execute("PRAGMA wal_checkpoint(TRUNCATE);")
