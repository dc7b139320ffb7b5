"""
Memory service
==============

Caller-facing entry point. Builds the three clients once and hands them to
the write/read/delete pipelines::

    from muse_memory.memory import MemoryService

    service = MemoryService.from_config()
    await service.write([{"category": "decision", "content": "..."}], project_id, owner_id)
    result = await service.read({"query": "..."}, project_id, owner_id)
    await service.delete(project_id, owner_id, ids=[...])

Callers pass the resolved ``owner_id`` (user id or anonymous device id). An
optional ``access_check`` coroutine vets the project before any I/O and a
refusal raises :class:`AccessDeniedError`.
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Sequence

# Module import: clients.embeddings imports memory.errors, which runs this
# package's __init__ while clients.embeddings is still initialising.
from muse_memory.clients import embeddings as embedding_clients
from muse_memory.config import Config

from . import policy
from .delete import DeleteFilter, DeletePipeline, DeleteResult
from .errors import AccessDeniedError
from .model import MemoryRecord, now_ms
from .read import ReadPipeline, ReadRequest, ReadResult
from .sql import db
from .sql.repositories import MemoriesRepo
from .vector.vector_index import IndexClient
from .write import WriteInput, WritePipeline

logger = logging.getLogger(__name__)


class MemoryService:
    def __init__(
        self,
        repo: MemoriesRepo,
        embedder: embedding_clients.EmbeddingClient,
        index: IndexClient,
        *,
        policy_config: policy.PolicyConfig | None = None,
        conn: sqlite3.Connection | None = None,
        maintenance_interval: float = 3600,
        reconcile_batch: int = 200,
        clock: Callable[[], int] = now_ms,
        access_check: Callable[[str, Optional[str]], Awaitable[bool]] | None = None,
    ) -> None:
        self.repo = repo
        self.embedder = embedder
        self.index = index
        self.policy_config = policy_config or policy.DEFAULT_POLICY
        self.maintenance_interval = maintenance_interval
        self.reconcile_batch = reconcile_batch
        self._conn = conn
        self._access_check = access_check

        self._writer = WritePipeline(repo, embedder, index, self.policy_config, clock)
        self._reader = ReadPipeline(repo, embedder, index, self.policy_config, clock)
        self._deleter = DeletePipeline(repo, index)

    @classmethod
    def from_config(cls, cfg=Config, *, db_path: Optional[str] = None, **kwargs) -> "MemoryService":
        """Wire a service from application settings.

        :param cfg: Object exposing ``store``, ``embeddings``, ``milvus`` and
            ``memory`` settings (defaults to :class:`muse_memory.config.Config`).
        :param db_path: Overrides ``cfg.store.SQL_DB_PATH``.
        :param kwargs: ``embedding_kwargs`` / ``index_kwargs`` go to the client
            constructors (tests inject fakes this way); the rest to ``cls``.
        """
        conn = db.connect(db_path or cfg.store.SQL_DB_PATH)
        db.migrate(conn)
        repo = MemoriesRepo(conn, asyncio.Lock())

        embedder = embedding_clients.EmbeddingClient.from_settings(cfg.embeddings, **kwargs.pop("embedding_kwargs", {}))
        index = IndexClient.from_settings(
            cfg.milvus, cfg.embeddings.EMB_DIM, **kwargs.pop("index_kwargs", {})
        )

        logger.info(
            "Memory service ready (db=%s, embeddings=%s, index=%s)",
            db_path or cfg.store.SQL_DB_PATH,
            "on" if embedder.configured else "off",
            "on" if index.configured else "off",
        )
        return cls(
            repo,
            embedder,
            index,
            policy_config=policy.load_policy_config(cfg.memory.DURATIONS),
            conn=conn,
            maintenance_interval=cfg.memory.MAINTENANCE_INTERVAL,
            reconcile_batch=cfg.memory.RECONCILE_BATCH,
            **kwargs,
        )

    async def _authorize(self, project_id: str, owner_id: Optional[str]) -> None:
        if self._access_check is None:
            return
        if not await self._access_check(project_id, owner_id):
            logger.warning("Access denied (project=%s owner=%s)", project_id, owner_id)
            raise AccessDeniedError(f"Access denied to project {project_id}")

    async def write(
        self,
        items: Sequence[WriteInput],
        project_id: str,
        owner_id: Optional[str],
    ) -> List[MemoryRecord]:
        await self._authorize(project_id, owner_id)
        return await self._writer.write(items, project_id, owner_id)

    async def read(
        self,
        request: ReadRequest | Mapping[str, Any],
        project_id: str,
        owner_id: Optional[str],
    ) -> ReadResult:
        await self._authorize(project_id, owner_id)
        return await self._reader.read(request, project_id, owner_id)

    async def delete(
        self,
        project_id: str,
        owner_id: Optional[str],
        ids: Optional[Sequence[str]] = None,
        filter: DeleteFilter | Mapping[str, Any] | None = None,
    ) -> DeleteResult:
        await self._authorize(project_id, owner_id)
        return await self._deleter.delete(project_id, owner_id, ids=ids, flt=filter)

    async def health(self) -> Dict[str, Any]:
        """Index health check plus durable sync-status counts; never raises for the index."""
        index = await self.index.health_check()
        stats = await self.repo.stats()
        return {
            "embeddings": {"configured": self.embedder.configured, "model": self.embedder.model},
            "index": index,
            "store": {"sync_status": stats},
        }

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None


__all__ = ["MemoryService"]
