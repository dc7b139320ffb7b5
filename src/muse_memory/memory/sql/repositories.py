"""
Repositories (SQL-only)
=======================
- No embedding logic here; pure CRUD and selects over ``memories``.
- Every sqlite failure surfaces as :class:`DurableStoreError`.
"""

from __future__ import annotations

import asyncio
import json
import sqlite3
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Set, TypeVar

from ..embeddings import from_bytes, to_bytes
from ..errors import DurableStoreError
from ..filters import MemoryFilter, to_sql_where
from ..model import MemoryMetadata, MemoryRecord
from .db import wal_checkpoint_truncate

T = TypeVar("T")

SUPERSEDED_ERROR = "superseded during index sync"

_COLUMNS = (
    "id, project_id, category, scope, owner_id, conversation_id, content, metadata, "
    "created_at, created_at_ts, updated_at, expires_at, expires_at_ts, embedding, "
    "sync_status, synced_at, last_error"
)

_UPSERT_SQL = f"""
    INSERT INTO memories ({_COLUMNS})
    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
    ON CONFLICT(id) DO UPDATE SET
      category=excluded.category,
      scope=excluded.scope,
      owner_id=excluded.owner_id,
      conversation_id=excluded.conversation_id,
      content=excluded.content,
      metadata=excluded.metadata,
      created_at=excluded.created_at,
      created_at_ts=excluded.created_at_ts,
      updated_at=excluded.updated_at,
      expires_at=excluded.expires_at,
      expires_at_ts=excluded.expires_at_ts,
      embedding=excluded.embedding,
      sync_status=excluded.sync_status,
      synced_at=excluded.synced_at,
      last_error=excluded.last_error
    WHERE memories.project_id = excluded.project_id
"""


def _to_row(r: MemoryRecord) -> tuple[Any, ...]:
    return (
        r.id,
        r.project_id,
        r.category,
        r.scope,
        r.owner_id,
        r.conversation_id,
        r.content,
        json.dumps(r.metadata.to_dict()),
        r.created_at,
        int(r.created_at_ts),
        r.updated_at or r.created_at,
        r.expires_at,
        r.expires_at_ts,
        to_bytes(r.embedding) if r.embedding is not None else None,
        r.sync_status,
        r.synced_at,
        r.last_error,
    )


def _from_row(row: sqlite3.Row, with_embedding: bool = False) -> MemoryRecord:
    blob = row["embedding"]
    return MemoryRecord(
        id=row["id"],
        project_id=row["project_id"],
        category=row["category"],
        scope=row["scope"],
        content=row["content"],
        created_at=row["created_at"],
        created_at_ts=int(row["created_at_ts"]),
        owner_id=row["owner_id"],
        conversation_id=row["conversation_id"],
        metadata=MemoryMetadata.from_dict(json.loads(row["metadata"] or "{}")),
        updated_at=row["updated_at"],
        expires_at=row["expires_at"],
        expires_at_ts=row["expires_at_ts"],
        embedding=from_bytes(blob) if (with_embedding and blob) else None,
        sync_status=row["sync_status"],
        synced_at=row["synced_at"],
        last_error=row["last_error"],
    )


class MemoriesRepo:
    def __init__(self, conn: sqlite3.Connection, lock: asyncio.Lock):
        self.conn = conn
        self._lock = lock

    async def _run(self, fn: Callable[[], T], what: str) -> T:
        async with self._lock:
            try:
                return await asyncio.to_thread(fn)
            except sqlite3.Error as e:
                raise DurableStoreError(f"Database error during {what}: {e}") from e

    async def upsert_many(self, records: Sequence[MemoryRecord]) -> None:
        """Upsert all rows in one transaction (all or nothing)."""
        rows = [_to_row(r) for r in records]

        def _run():
            with self.conn:
                self.conn.execute("BEGIN")
                self.conn.executemany(_UPSERT_SQL, rows)

        await self._run(_run, "upsert")

    async def existing_by_ids(self, project_id: str, ids: Sequence[str]) -> Dict[str, Dict[str, Any]]:
        """Age fields of rows already stored for ``ids`` within the project."""
        if not ids:
            return {}
        ph = ",".join("?" * len(ids))
        sql = f"""
            SELECT id, created_at, created_at_ts, expires_at, expires_at_ts
            FROM memories WHERE project_id=? AND id IN ({ph})
        """

        def _query():
            rows = self.conn.execute(sql, [project_id, *ids]).fetchall()
            return {r["id"]: dict(r) for r in rows}

        return await self._run(_query, "existing lookup")

    async def foreign_ids(self, project_id: str, ids: Sequence[str]) -> Set[str]:
        """Ids from ``ids`` that already belong to a different project."""
        if not ids:
            return set()
        ph = ",".join("?" * len(ids))
        sql = f"SELECT id FROM memories WHERE project_id != ? AND id IN ({ph})"

        def _query():
            return {r["id"] for r in self.conn.execute(sql, [project_id, *ids]).fetchall()}

        return await self._run(_query, "ownership lookup")

    async def mark_synced(self, versions: Mapping[str, str], synced_at: str) -> List[str]:
        """Mark rows synced, each only if its ``updated_at`` still matches.

        ``versions`` maps id -> the ``updated_at`` that was pushed to the index.
        A row rewritten in the meantime may now be shadowed by that older
        upsert, so it goes back to ``pending``. Returns those ids.
        """
        if not versions:
            return []
        items = list(versions.items())

        def _run():
            stale = []
            with self.conn:
                self.conn.execute("BEGIN")
                for memory_id, updated_at in items:
                    cur = self.conn.execute(
                        """
                        UPDATE memories SET sync_status='synced', synced_at=?, last_error=NULL
                        WHERE id=? AND updated_at=?
                        """,
                        (synced_at, memory_id, updated_at),
                    )
                    if cur.rowcount == 0:
                        stale.append(memory_id)
                for memory_id in stale:
                    self.conn.execute(
                        """
                        UPDATE memories SET sync_status='pending', synced_at=NULL, last_error=?
                        WHERE id=?
                        """,
                        (SUPERSEDED_ERROR, memory_id),
                    )
            return stale

        return await self._run(_run, "sync status update")

    async def mark_error(self, versions: Mapping[str, str], error: str) -> None:
        """Record an index failure on rows still at the given ``updated_at``.

        Rows already ``synced``, or rewritten since, keep their status.
        """
        if not versions:
            return
        params = [(error, memory_id, updated_at) for memory_id, updated_at in versions.items()]
        sql = """
            UPDATE memories SET sync_status='error', last_error=?
            WHERE id=? AND updated_at=? AND sync_status != 'synced'
        """

        def _run():
            with self.conn:
                self.conn.execute("BEGIN")
                self.conn.executemany(sql, params)

        await self._run(_run, "sync status update")

    async def get_many(self, ids: Sequence[str]) -> List[MemoryRecord]:
        if not ids:
            return []
        ph = ",".join("?" * len(ids))
        sql = f"SELECT {_COLUMNS} FROM memories WHERE id IN ({ph})"

        def _query():
            return [_from_row(r) for r in self.conn.execute(sql, list(ids)).fetchall()]

        return await self._run(_query, "select")

    async def select(
        self,
        flt: MemoryFilter,
        limit: Optional[int] = None,
        *,
        with_embedding: bool = False,
    ) -> List[MemoryRecord]:
        """Rows matching ``flt``, newest first."""
        where, params = to_sql_where(flt)
        sql = f"SELECT {_COLUMNS} FROM memories WHERE {where} ORDER BY created_at_ts DESC"
        if limit is not None:
            sql += " LIMIT ?"
            params = [*params, int(limit)]

        def _query():
            rows = self.conn.execute(sql, params).fetchall()
            return [_from_row(r, with_embedding) for r in rows]

        return await self._run(_query, "select")

    async def count(self, flt: MemoryFilter) -> int:
        where, params = to_sql_where(flt)
        sql = f"SELECT COUNT(*) FROM memories WHERE {where}"

        def _query():
            return int(self.conn.execute(sql, params).fetchone()[0])

        return await self._run(_query, "count")

    async def delete(self, flt: MemoryFilter) -> int:
        where, params = to_sql_where(flt)
        sql = f"DELETE FROM memories WHERE {where}"

        def _run():
            with self.conn:
                cur = self.conn.execute(sql, params)
            return cur.rowcount

        return await self._run(_run, "delete")

    async def unsynced(self, limit: int) -> List[MemoryRecord]:
        """Rows still owed to the index (``pending`` or ``error``), oldest first."""
        sql = f"""
            SELECT {_COLUMNS} FROM memories
            WHERE sync_status IN ('pending', 'error')
            ORDER BY updated_at ASC LIMIT ?
        """

        def _query():
            return [_from_row(r, True) for r in self.conn.execute(sql, (limit,)).fetchall()]

        return await self._run(_query, "select")

    async def expired_ids(self, now_ms: int, ttl_by_category: Mapping[str, Optional[int]]) -> List[str]:
        """Ids past their explicit expiry, or past the category TTL when none is stored."""
        clauses = ["(expires_at_ts IS NOT NULL AND expires_at_ts <= ?)"]
        params: List[Any] = [now_ms]
        for category, ttl in ttl_by_category.items():
            if ttl:
                clauses.append("(expires_at_ts IS NULL AND category = ? AND created_at_ts <= ?)")
                params.extend([category, now_ms - ttl])
        sql = f"SELECT id FROM memories WHERE {' OR '.join(clauses)}"

        def _query():
            return [r["id"] for r in self.conn.execute(sql, params).fetchall()]

        return await self._run(_query, "expiry scan")

    async def checkpoint(self) -> None:
        await self._run(lambda: wal_checkpoint_truncate(self.conn), "wal checkpoint")

    async def stats(self) -> Dict[str, int]:
        """Row counts per sync status."""
        sql = "SELECT sync_status, COUNT(*) AS n FROM memories GROUP BY sync_status"

        def _query():
            return {r["sync_status"]: int(r["n"]) for r in self.conn.execute(sql).fetchall()}

        return await self._run(_query, "stats")


__all__ = ["MemoriesRepo"]
