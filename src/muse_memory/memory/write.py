"""
Write pipeline
==============

validate → resolve scope → owner isolation → resolve ids → load prior age →
redact → batch embed → durable upsert (required) → index upsert (best-effort)
→ record sync status.

The durable store is the source of truth. An index failure never fails the
batch; it is recorded on the rows as ``sync_status="error"`` for the
reconciliation sweep to retry.
"""

from __future__ import annotations

import logging
import uuid
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Union

from . import policy
from .errors import DurableStoreError, IndexServiceError, ValidationError
from .model import (
    MAX_CONTENT_LENGTH,
    REDACTED_CONTENT,
    VALID_CATEGORIES,
    VALID_SCOPES,
    VALID_SOURCES,
    MemoryRecord,
    MemoryWriteItem,
    WriteMetadata,
    default_scope,
    iso_to_ms,
    ms_to_iso,
    now_ms,
)
from .payload import build_payload
from .sql.repositories import SUPERSEDED_ERROR
from .vector.vector_index import IndexPoint

logger = logging.getLogger(__name__)

MAX_BATCH_SIZE = 32

WriteInput = Union[MemoryWriteItem, Mapping[str, Any]]


def parse_write_item(data: Mapping[str, Any]) -> MemoryWriteItem:
    """Build a :class:`MemoryWriteItem` from a request dict (camelCase accepted)."""
    raw_meta = dict(data.get("metadata") or {})
    meta = {
        "source": raw_meta.get("source"),
        "confidence": raw_meta.get("confidence"),
        "entity_ids": raw_meta.get("entity_ids", raw_meta.get("entityIds")),
        "document_id": raw_meta.get("document_id", raw_meta.get("documentId")),
        "tool_call_id": raw_meta.get("tool_call_id", raw_meta.get("toolCallId")),
        "tool_name": raw_meta.get("tool_name", raw_meta.get("toolName")),
        "pinned": raw_meta.get("pinned", False),
        "redacted": raw_meta.get("redacted", False),
        "redacted_at": raw_meta.get("redacted_at", raw_meta.get("redactedAt")),
        "redaction_reason": raw_meta.get("redaction_reason", raw_meta.get("redactionReason")),
        "expires_at": raw_meta.get("expires_at", raw_meta.get("expiresAt")),
        "ttl_minutes": raw_meta.get("ttl_minutes", raw_meta.get("ttlMinutes")),
    }
    return MemoryWriteItem(
        category=data.get("category"),
        content=data.get("content"),
        scope=data.get("scope"),
        conversation_id=data.get("conversation_id", data.get("conversationId")),
        metadata=WriteMetadata.from_dict(meta),
        id=data.get("id"),
    )


def validate_item(item: MemoryWriteItem, index: int) -> None:
    if item.category not in VALID_CATEGORIES:
        raise ValidationError(
            f"Invalid category at index {index}. Must be one of: {', '.join(VALID_CATEGORIES)}"
        )
    if item.scope is not None and item.scope not in VALID_SCOPES:
        raise ValidationError(
            f"Invalid scope at index {index}. Must be one of: {', '.join(VALID_SCOPES)}"
        )
    if not item.content or not isinstance(item.content, str) or not item.content.strip():
        raise ValidationError(f"Missing content at index {index}")
    if len(item.content) > MAX_CONTENT_LENGTH:
        raise ValidationError(
            f"Content too long at index {index}. Maximum {MAX_CONTENT_LENGTH} characters."
        )

    scope = item.scope or default_scope(item.category)
    if scope == "conversation" and not item.conversation_id:
        raise ValidationError(f"conversationId required for conversation scope at index {index}")

    meta = item.metadata
    if meta.source is not None and meta.source not in VALID_SOURCES:
        raise ValidationError(
            f"Invalid source at index {index}. Must be one of: {', '.join(VALID_SOURCES)}"
        )
    if meta.confidence is not None and not (
        isinstance(meta.confidence, (int, float)) and 0.0 <= meta.confidence <= 1.0
    ):
        raise ValidationError(f"confidence must be between 0 and 1 at index {index}")
    if meta.ttl_minutes is not None and not (
        isinstance(meta.ttl_minutes, (int, float)) and meta.ttl_minutes > 0
    ):
        raise ValidationError(f"ttl_minutes must be positive at index {index}")
    if meta.expires_at:
        try:
            iso_to_ms(meta.expires_at)
        except ValueError:
            raise ValidationError(f"expires_at must be an ISO timestamp at index {index}") from None


class WritePipeline:
    """Persist memories to the durable store, then best-effort to the index.

    :param repo: :class:`~muse_memory.memory.sql.repositories.MemoriesRepo`.
    :param embedder: :class:`~muse_memory.clients.embeddings.EmbeddingClient`.
    :param index: :class:`~muse_memory.memory.vector.vector_index.IndexClient`.
    :param clock: Returns "now" in epoch ms.
    """

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

    async def write(
        self,
        items: Sequence[WriteInput],
        project_id: str,
        owner_id: Optional[str],
    ) -> List[MemoryRecord]:
        """Write a batch; returns the canonical persisted records in input order.

        :raises ValidationError: bad input; nothing was written.
        :raises EmbeddingProviderError: embedding failed; nothing was written.
        :raises DurableStoreError: durable upsert failed; nothing was written.
        """
        batch = self._validate(items, project_id, owner_id)

        ids = [item.id or str(uuid.uuid4()) for item in batch]
        supplied = [item.id for item in batch if item.id]

        if supplied:
            foreign = await self.repo.foreign_ids(project_id, supplied)
            if foreign:
                raise ValidationError(
                    f"Memory ids belong to another project: {', '.join(sorted(foreign))}"
                )
        existing = await self.repo.existing_by_ids(project_id, supplied)

        contents = [REDACTED_CONTENT if item.metadata.redacted else item.content for item in batch]

        logger.info("Generating embeddings for %d memories (project=%s)", len(batch), project_id)
        result = await self.embedder.embed(contents)

        now = self.clock()
        records = [
            self._build_record(item, memory_id, content, vec, project_id, owner_id, existing.get(memory_id), now)
            for item, memory_id, content, vec in zip(batch, ids, contents, result.embeddings)
        ]

        # Step 1: durable store (required). Failure aborts the whole batch.
        logger.info("Upserting %d memories to durable store", len(records))
        try:
            await self.repo.upsert_many(records)
        except DurableStoreError:
            logger.error("Durable upsert failed; aborting batch of %d", len(records))
            raise

        # Step 2: index (best-effort) + sync status.
        await self._sync_to_index(records)

        logger.info(
            "Wrote %d memories (index: %s)", len(records), records[0].sync_status if records else "n/a"
        )
        return records

    def _validate(
        self,
        items: Sequence[WriteInput],
        project_id: str,
        owner_id: Optional[str],
    ) -> List[MemoryWriteItem]:
        if not project_id:
            raise ValidationError("projectId is required")
        if not items:
            raise ValidationError("Batch must contain at least one memory")
        if len(items) > MAX_BATCH_SIZE:
            raise ValidationError(f"Batch size exceeds maximum of {MAX_BATCH_SIZE}")

        batch = [item if isinstance(item, MemoryWriteItem) else parse_write_item(item) for item in items]
        for i, item in enumerate(batch):
            validate_item(item, i)

        # Owner isolation: fail the whole batch, never write a partial one.
        for item in batch:
            scope = item.scope or default_scope(item.category)
            if scope != "project" and not owner_id:
                raise ValidationError(
                    "Owner identification required for user/conversation scoped memories"
                )

        seen: set[str] = set()
        for item in batch:
            if item.id:
                if item.id in seen:
                    raise ValidationError(f"Duplicate memory id in batch: {item.id}")
                seen.add(item.id)
        return batch

    def _build_record(
        self,
        item: MemoryWriteItem,
        memory_id: str,
        content: str,
        embedding,
        project_id: str,
        owner_id: Optional[str],
        prior: Optional[Dict[str, Any]],
        now: int,
    ) -> MemoryRecord:
        scope = item.scope or default_scope(item.category)
        meta = item.metadata.stored()
        if meta.redacted:
            meta.redacted_at = meta.redacted_at or ms_to_iso(now)

        if prior:
            created_at, created_at_ts = prior["created_at"], int(prior["created_at_ts"])
        else:
            created_at, created_at_ts = ms_to_iso(now), now

        # explicit expires_at > previously stored > ttl_minutes / policy
        if item.metadata.expires_at:
            expires_at_ts: Optional[int] = iso_to_ms(item.metadata.expires_at)
        elif prior and prior.get("expires_at_ts") is not None:
            expires_at_ts = int(prior["expires_at_ts"])
        else:
            expires_at_ts = policy.calculate_expires_at(
                item.category, item.metadata.ttl_minutes, now_ms=now, config=self.policy_config
            )

        return MemoryRecord(
            id=memory_id,
            project_id=project_id,
            category=item.category,
            scope=scope,
            content=content,
            created_at=created_at,
            created_at_ts=created_at_ts,
            owner_id=None if scope == "project" else owner_id,
            conversation_id=item.conversation_id if scope == "conversation" else None,
            metadata=meta,
            updated_at=ms_to_iso(now),
            expires_at=ms_to_iso(expires_at_ts) if expires_at_ts is not None else None,
            expires_at_ts=expires_at_ts,
            embedding=embedding,
            sync_status="pending",
        )

    async def _sync_to_index(self, records: List[MemoryRecord]) -> None:
        points = [IndexPoint(id=r.id, vector=r.embedding, payload=build_payload(r)) for r in records]

        try:
            await self.index.upsert(points)
        except IndexServiceError as e:
            if e.configured:
                logger.warning("Index upsert failed (best-effort, %d rows): %s", len(records), e)
            else:
                logger.info("Index not configured; %d memories marked for reconciliation", len(records))
            await self._record_status(records, "error", error=e.message)
            return

        await self._record_status(records, "synced", synced_at=ms_to_iso(self.clock()))

    async def _record_status(
        self,
        records: List[MemoryRecord],
        status: str,
        *,
        synced_at: Optional[str] = None,
        error: Optional[str] = None,
    ) -> None:
        versions = {r.id: r.updated_at for r in records}
        stale: List[str] = []
        try:
            if status == "synced":
                stale = await self.repo.mark_synced(versions, synced_at)
            else:
                await self.repo.mark_error(versions, error or "unknown index error")
        except DurableStoreError as e:
            # Rows stay "pending" and are picked up by reconciliation.
            logger.error("Failed to record sync status %s for %d rows: %s", status, len(records), e)
            return

        if stale:
            logger.info("%d memories were rewritten during index sync; left pending", len(stale))
        for r in records:
            if r.id in stale:
                r.sync_status, r.synced_at, r.last_error = "pending", None, SUPERSEDED_ERROR
            else:
                r.sync_status, r.synced_at, r.last_error = status, synced_at, error
