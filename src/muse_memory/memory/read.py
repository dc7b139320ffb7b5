"""
Read pipeline
=============

Two retrieval modes over one isolation-respecting filter:

- semantic: embed the query, over-fetch ``2 × limit`` nearest neighbours and
  rank by ``(1 - w) · similarity + w · recency_score``;
- recency-only: list without a query vector, newest first.

``recency_score`` decays linearly to zero over one week. It is deliberately
not the policy half-life (:func:`policy.decay_factor`): ranking optimises for
perceived freshness, retention policy for long-term value.

The durable store backs both modes: rows whose index sync is still owed are
merged into recency listings, and when the index is not configured at all
the store answers on its own (cosine search over stored embeddings for the
semantic mode).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Literal, Mapping, Optional, Sequence

from . import policy
from .embeddings import cosine_similarities
from .errors import ValidationError
from .filters import Match, MemoryFilter, Range, match_one_or_any
from .model import VALID_CATEGORIES, VALID_SCOPES, MemoryRecord, now_ms
from .payload import normalize

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 20
MAX_LIMIT = 100
DEFAULT_RECENCY_WEIGHT = 0.2
OVERFETCH = 2
RECENCY_WINDOW_MS = 7 * 24 * 60 * 60 * 1000

ReadMode = Literal["semantic", "recency"]


def recency_score(age_ms: float, window_ms: float = RECENCY_WINDOW_MS) -> float:
    """Linear freshness: 1.0 at age 0, 0.0 at ``window_ms`` and beyond."""
    if age_ms <= 0:
        return 1.0
    return max(0.0, 1.0 - age_ms / window_ms)


def blended_score(similarity: float, age_ms: float, recency_weight: float) -> float:
    return (1 - recency_weight) * similarity + recency_weight * recency_score(age_ms)


@dataclass(slots=True)
class ReadRequest:
    query: Optional[str] = None
    categories: Optional[List[str]] = None
    scope: Optional[str] = None
    conversation_id: Optional[str] = None
    limit: int = DEFAULT_LIMIT
    recency_weight: float = DEFAULT_RECENCY_WEIGHT
    max_age_ms: Optional[int] = None
    include_expired: bool = False
    include_redacted: bool = True

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ReadRequest":
        categories = data.get("categories")
        limit = data.get("limit")
        weight = data.get("recencyWeight", data.get("recency_weight"))
        return cls(
            query=data.get("query"),
            categories=list(categories) if categories else None,
            scope=data.get("scope"),
            conversation_id=data.get("conversation_id", data.get("conversationId")),
            limit=DEFAULT_LIMIT if limit is None else limit,
            recency_weight=DEFAULT_RECENCY_WEIGHT if weight is None else weight,
            max_age_ms=data.get("max_age_ms", data.get("maxAgeMs")),
            include_expired=bool(data.get("include_expired", data.get("includeExpired", False))),
            include_redacted=bool(data.get("include_redacted", data.get("includeRedacted", True))),
        )


@dataclass(slots=True)
class ReadResult:
    memories: List[MemoryRecord] = field(default_factory=list)
    mode: ReadMode = "recency"
    index_configured: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "memories": [m.to_dict() for m in self.memories],
            "mode": self.mode,
            "indexConfigured": self.index_configured,
        }


def build_read_filter(
    project_id: str,
    owner_id: Optional[str],
    *,
    categories: Optional[Sequence[str]] = None,
    scope: Optional[str] = None,
    conversation_id: Optional[str] = None,
) -> MemoryFilter:
    """Project-scoped filter that never leaks another owner's memories.

    Unless the scope is explicitly ``project``, results are restricted to the
    caller's ``owner_id``. A caller with no owner and no explicit scope only
    sees project memories.
    """
    flt = MemoryFilter()
    flt.add(Match("type", "memory"))
    flt.add(Match("project_id", project_id))

    if categories:
        flt.add(match_one_or_any("category", list(categories)))

    if scope:
        flt.add(Match("scope", scope))
        if scope == "conversation" and conversation_id:
            flt.add(Match("conversation_id", conversation_id))

    if scope != "project":
        if owner_id:
            flt.add(Match("owner_id", owner_id))
        else:
            flt.add(Match("scope", "project"))

    return flt


class ReadPipeline:
    def __init__(
        self,
        repo,
        embedder,
        index,
        policy_config: policy.PolicyConfig | None = None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.repo = repo
        self.embedder = embedder
        self.index = index
        self.policy_config = policy_config or policy.DEFAULT_POLICY
        self.clock = clock

    async def read(
        self,
        request: ReadRequest | Mapping[str, Any],
        project_id: str,
        owner_id: Optional[str],
    ) -> ReadResult:
        """Return memories ranked for ``request``.

        :raises ValidationError: bad categories or scope, out-of-range limit or
            recency weight, missing owner.
        :raises EmbeddingProviderError: query embedding failed.
        :raises IndexServiceError: the index is configured but failing.
        :raises DurableStoreError: the durable store failed.
        """
        if not isinstance(request, ReadRequest):
            request = ReadRequest.from_dict(request)
        self._validate(request, project_id, owner_id)

        limit = request.limit
        weight = float(request.recency_weight)
        now = self.clock()

        flt = build_read_filter(
            project_id,
            owner_id,
            categories=request.categories,
            scope=request.scope,
            conversation_id=request.conversation_id,
        )
        if request.max_age_ms is not None:
            flt.add(Range("created_at_ts", gte=now - request.max_age_ms))

        index_configured = bool(self.index.configured)
        if request.query and request.query.strip() and self.embedder.configured:
            records = await self._semantic(request, flt, limit, weight, now, index_configured)
            mode: ReadMode = "semantic"
        else:
            records = await self._recency(flt, limit, now, index_configured, request)
            mode = "recency"

        logger.info(
            "Read %d memories (project=%s mode=%s index=%s)",
            len(records),
            project_id,
            mode,
            "on" if index_configured else "off",
        )
        return ReadResult(memories=records, mode=mode, index_configured=index_configured)

    def _validate(self, request: ReadRequest, project_id: str, owner_id: Optional[str]) -> None:
        if not project_id:
            raise ValidationError("projectId is required")
        if request.categories:
            invalid = [c for c in request.categories if c not in VALID_CATEGORIES]
            if invalid:
                raise ValidationError(f"Invalid categories: {', '.join(map(str, invalid))}")
        limit = request.limit
        if isinstance(limit, bool) or not isinstance(limit, int) or not 1 <= limit <= MAX_LIMIT:
            raise ValidationError(f"limit must be an integer between 1 and {MAX_LIMIT}")
        weight = request.recency_weight
        if isinstance(weight, bool) or not isinstance(weight, (int, float)) or not 0 <= weight <= 1:
            raise ValidationError("recencyWeight must be between 0 and 1")
        if request.scope and request.scope not in VALID_SCOPES:
            raise ValidationError(f"Invalid scope. Must be one of: {', '.join(VALID_SCOPES)}")
        if request.scope == "conversation" and not request.conversation_id:
            raise ValidationError("conversationId is required for conversation scope")
        if request.scope and request.scope != "project" and not owner_id:
            raise ValidationError(
                "Owner identification required for user/conversation scoped memories"
            )

    def _visible(self, records: List[MemoryRecord], now: int, request: ReadRequest) -> List[MemoryRecord]:
        include_expired = request.include_expired
        include_redacted = request.include_redacted
        out = []
        for r in records:
            if not include_redacted and r.metadata.redacted:
                continue
            if not include_expired and policy.is_expired(
                r.created_at_ts,
                r.expires_at_ts,
                now,
                policy.policy_for(r.category, self.policy_config),
            ):
                continue
            out.append(r)
        return out

    async def _semantic(
        self,
        request: ReadRequest,
        flt: MemoryFilter,
        limit: int,
        weight: float,
        now: int,
        index_configured: bool,
    ) -> List[MemoryRecord]:
        qvec = await self.embedder.embed_one(request.query)

        if index_configured:
            hits = await self.index.search(qvec, limit * OVERFETCH, flt)
            candidates = [normalize(h.id, h.payload, h.score) for h in hits]
        else:
            logger.info("Index not configured; cosine search over durable store")
            rows = await self.repo.select(flt, with_embedding=True)
            rows = [r for r in rows if r.embedding is not None]
            sims = cosine_similarities(qvec, [r.embedding for r in rows])
            for r, sim in zip(rows, sims):
                r.score = float(sim)
                r.embedding = None
            rows.sort(key=lambda r: r.score, reverse=True)
            candidates = rows[: limit * OVERFETCH]

        visible = self._visible(candidates, now, request)
        for r in visible:
            r.score = blended_score(r.score or 0.0, now - r.created_at_ts, weight)
        visible.sort(key=lambda r: r.score, reverse=True)
        return visible[:limit]

    async def _recency(
        self,
        flt: MemoryFilter,
        limit: int,
        now: int,
        index_configured: bool,
        request: ReadRequest,
    ) -> List[MemoryRecord]:
        fetch = limit * OVERFETCH

        if index_configured:
            hits = await self.index.scroll(flt, fetch, order_by="created_at_ts")
            by_id = {r.id: r for r in (normalize(h.id, h.payload) for h in hits)}

            # Rows whose index write is still owed are only in the durable store.
            owed = MemoryFilter(must=list(flt.must), must_not=list(flt.must_not))
            owed.exclude(Match("sync_status", "synced"))
            for r in await self.repo.select(owed, fetch):
                by_id[r.id] = r
            candidates = list(by_id.values())
        else:
            candidates = await self.repo.select(flt, fetch)

        visible = self._visible(candidates, now, request)
        visible.sort(key=lambda r: r.created_at_ts, reverse=True)
        return visible[:limit]


__all__ = [
    "ReadPipeline",
    "ReadRequest",
    "ReadResult",
    "build_read_filter",
    "recency_score",
    "blended_score",
    "DEFAULT_LIMIT",
    "MAX_LIMIT",
    "DEFAULT_RECENCY_WEIGHT",
]
