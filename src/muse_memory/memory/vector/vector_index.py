"""Async client for the Milvus memory index.

All blocking ``pymilvus`` calls run in a worker thread, bounded by a per-call
timeout and retried through :func:`retry.call_with_retry`. Each call gets its
own retry budget; the lock below only guards lazy client construction.
"""

from __future__ import annotations

import asyncio
import heapq
import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence

import numpy as np
from pymilvus import MilvusClient

from ..errors import IndexNotConfiguredError, IndexServiceError
from ..filters import MemoryFilter, to_milvus_expr
from .retry import RetryPolicy, call_with_retry, status_of

logger = logging.getLogger(__name__)

VECTOR_FIELD = "vector"
ID_MAX_LENGTH = 128
SCROLL_BATCH_SIZE = 1000

# Dynamic payload fields returned by search/scroll.
OUTPUT_FIELDS = [
    "type",
    "schema_version",
    "memory_id",
    "project_id",
    "category",
    "scope",
    "text",
    "owner_id",
    "conversation_id",
    "created_at",
    "created_at_ts",
    "updated_at",
    "expires_at",
    "expires_at_ts",
    "source",
    "confidence",
    "entity_ids",
    "document_id",
    "tool_call_id",
    "tool_name",
    "pinned",
    "redacted",
    "redacted_at",
    "redaction_reason",
]


@dataclass(slots=True)
class IndexPoint:
    id: str
    vector: Any
    payload: Dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class IndexHit:
    id: str
    payload: Dict[str, Any]
    score: Optional[float] = None


def _normalize(v, dim: int) -> list[float]:
    """Return a length-normalized embedding as a writable list."""

    # ``np.asarray`` can hand back a read-only view; ``nan_to_num`` below
    # modifies in place, so take a writable copy first.
    v = np.array(v, dtype=np.float32, copy=True).reshape(-1)
    if v.shape[0] != dim:
        raise ValueError(f"Expected embedding of dim {dim}, got {v.shape[0]}")
    np.nan_to_num(v, copy=False)
    n = float(np.linalg.norm(v))
    if n > 0:
        v /= n
    return v.tolist()


def _payload_of(row: Dict[str, Any]) -> Dict[str, Any]:
    # Milvus may nest dynamic fields under "$meta" depending on server version.
    payload = dict(row.get("$meta") or {})
    payload.update({k: v for k, v in row.items() if k not in ("id", VECTOR_FIELD, "$meta", "distance")})
    return payload


class IndexClient:
    """Retrying wrapper around a Milvus collection.

    :param uri: Milvus endpoint (``http://host:19530`` or a Zilliz URI). An
        empty URI, or ``enabled=False``, leaves the client unconfigured and
        every operation raises :class:`IndexNotConfiguredError`.
    :param client_factory: Returns a ``MilvusClient``-compatible object; tests
        pass a fake here.
    """

    def __init__(
        self,
        *,
        uri: str,
        collection: str,
        dim: int,
        token: Optional[str] = None,
        timeout: float = 10.0,
        retry_policy: RetryPolicy | None = None,
        enabled: bool = True,
        client_factory: Callable[[], Any] | None = None,
        scroll_batch: int = SCROLL_BATCH_SIZE,
    ) -> None:
        self.uri = uri
        self.collection = collection
        self.dim = dim
        self.timeout = timeout
        self.retry_policy = retry_policy or RetryPolicy()
        self.enabled = enabled and bool(uri)
        self._token = token
        self._client_factory = client_factory or self._default_factory
        self._client: Any = None
        self._client_lock = threading.Lock()
        self.scroll_batch = scroll_batch

    @classmethod
    def from_settings(cls, milvus, dim: int, **kwargs) -> "IndexClient":
        return cls(
            uri=milvus.MILVUS_URI,
            token=milvus.MILVUS_TOKEN,
            collection=milvus.MILVUS_COLLECTION,
            dim=dim,
            timeout=milvus.MILVUS_TIMEOUT,
            retry_policy=RetryPolicy(
                max_retries=milvus.MILVUS_MAX_RETRIES,
                base_delay=milvus.MILVUS_RETRY_BASE_DELAY,
                max_delay=milvus.MILVUS_RETRY_MAX_DELAY,
            ),
            enabled=milvus.ENABLE_MILVUS,
            **kwargs,
        )

    @property
    def configured(self) -> bool:
        return self.enabled

    def _default_factory(self) -> MilvusClient:
        return MilvusClient(uri=self.uri, token=self._token or "")

    def _get_client(self) -> Any:
        """Return the shared Milvus client, creating the collection if needed."""

        if self._client is not None:
            return self._client

        with self._client_lock:
            if self._client is not None:
                return self._client

            client = self._client_factory()
            if not client.has_collection(self.collection):
                logger.info("Creating Milvus collection %s (dim=%d)", self.collection, self.dim)
                client.create_collection(
                    collection_name=self.collection,
                    dimension=self.dim,
                    primary_field_name="id",
                    id_type="string",
                    max_length=ID_MAX_LENGTH,
                    vector_field_name=VECTOR_FIELD,
                    metric_type="COSINE",
                    auto_id=False,
                    enable_dynamic_field=True,
                )
            self._client = client
            return client

    async def _call(self, label: str, fn: Callable[[Any], Any], policy: RetryPolicy | None = None) -> Any:
        if not self.enabled:
            raise IndexNotConfiguredError()

        def _run() -> Any:
            return fn(self._get_client())

        try:
            return await call_with_retry(
                lambda: asyncio.to_thread(_run),
                policy or self.retry_policy,
                timeout=self.timeout,
                label=f"milvus.{label}",
            )
        except IndexServiceError:
            raise
        except Exception as exc:
            message = str(exc) or exc.__class__.__name__
            if isinstance(exc, asyncio.TimeoutError):
                message = f"timed out after {self.timeout}s"
            raise IndexServiceError(
                f"Milvus {label} failed: {message}", status_code=status_of(exc)
            ) from exc

    async def ensure_collection(self) -> None:
        """Connect and create the collection if it does not exist yet."""

        await self._call("ensure_collection", lambda c: None)

    async def upsert(self, points: Sequence[IndexPoint]) -> None:
        """Insert or replace points (vector + payload) keyed by id."""

        if not points:
            return
        data = [
            {**p.payload, "id": str(p.id), VECTOR_FIELD: _normalize(p.vector, self.dim)}
            for p in points
        ]
        await self._call(
            "upsert",
            lambda c: c.upsert(collection_name=self.collection, data=data, timeout=self.timeout),
        )

    async def search(self, vector, limit: int, flt: MemoryFilter | None = None) -> List[IndexHit]:
        """Nearest ``limit`` points to ``vector`` within ``flt``, best first."""

        vec = _normalize(vector, self.dim)
        expr = to_milvus_expr(flt) if flt else ""

        def _run(c) -> List[IndexHit]:
            res = c.search(
                collection_name=self.collection,
                data=[vec],
                filter=expr,
                limit=limit,
                output_fields=OUTPUT_FIELDS,
                search_params={"metric_type": "COSINE"},
                anns_field=VECTOR_FIELD,
                timeout=self.timeout,
            )
            hits = res[0] if res else []
            return [
                IndexHit(
                    id=str(h["id"]),
                    payload=_payload_of(h.get("entity") or {}),
                    score=float(h["distance"]),
                )
                for h in hits
            ]

        return await self._call("search", _run)

    async def scroll(
        self,
        flt: MemoryFilter | None,
        limit: int,
        order_by: Optional[str] = None,
        descending: bool = True,
    ) -> List[IndexHit]:
        """List points matching ``flt`` without a query vector.

        Milvus applies ``limit`` in storage order and cannot sort a query, so
        with ``order_by`` every match is paged through ``query_iterator`` and
        only the top ``limit`` rows are kept.
        """

        expr = to_milvus_expr(flt) if flt else ""

        if order_by is None:
            def _run(c) -> List[Dict[str, Any]]:
                return c.query(
                    collection_name=self.collection,
                    filter=expr,
                    output_fields=OUTPUT_FIELDS,
                    limit=limit,
                    timeout=self.timeout,
                )
        else:
            def sort_key(row: Dict[str, Any]) -> Any:
                return _payload_of(row).get(order_by) or 0

            pick = heapq.nlargest if descending else heapq.nsmallest

            def _run(c) -> List[Dict[str, Any]]:
                it = c.query_iterator(
                    collection_name=self.collection,
                    batch_size=self.scroll_batch,
                    filter=expr,
                    output_fields=OUTPUT_FIELDS,
                    timeout=self.timeout,
                )
                best: List[Dict[str, Any]] = []
                try:
                    while True:
                        page = it.next()
                        if not page:
                            break
                        best = pick(limit, [*best, *page], key=sort_key)
                finally:
                    it.close()
                return best

        rows = await self._call("scroll", _run)
        return [IndexHit(id=str(r["id"]), payload=_payload_of(r)) for r in rows]

    async def delete_by_ids(self, ids: Sequence[str]) -> None:
        if not ids:
            return
        id_list = [str(i) for i in ids]
        await self._call(
            "delete_by_ids",
            lambda c: c.delete(collection_name=self.collection, ids=id_list, timeout=self.timeout),
        )

    async def delete_by_filter(self, flt: MemoryFilter) -> None:
        expr = to_milvus_expr(flt)
        if not expr:
            raise ValueError("Refusing to delete with an empty filter")
        await self._call(
            "delete_by_filter",
            lambda c: c.delete(collection_name=self.collection, filter=expr, timeout=self.timeout),
        )

    async def count(self, flt: MemoryFilter | None = None) -> int:
        expr = to_milvus_expr(flt) if flt else ""

        def _run(c) -> int:
            rows = c.query(
                collection_name=self.collection,
                filter=expr,
                output_fields=["count(*)"],
                timeout=self.timeout,
            )
            return int(rows[0]["count(*)"]) if rows else 0

        return await self._call("count", _run)

    async def health_check(self) -> Dict[str, Any]:
        """Single no-retry check; never raises."""

        if not self.enabled:
            return {"configured": False, "ok": False, "error": "not configured"}
        try:
            version = await self._call(
                "health_check", lambda c: c.get_server_version(), policy=RetryPolicy.none()
            )
        except IndexServiceError as e:
            logger.warning("Milvus health check failed: %s", e)
            return {"configured": True, "ok": False, "error": e.message}
        return {"configured": True, "ok": True, "server_version": version, "collection": self.collection}


__all__ = ["IndexClient", "IndexPoint", "IndexHit", "OUTPUT_FIELDS"]
