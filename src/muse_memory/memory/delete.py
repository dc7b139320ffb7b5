"""
Delete pipeline
===============

Deletes by id list or by filter, always inside the caller's project.

- Id lists compile to ``project_id == p AND id in ids``; a guessed or leaked id
  from another project matches nothing.
- Count first, then delete, so the caller gets an accurate count even though
  the delete calls report none.
- Index first, durable store second: if the index is reachable but failing,
  nothing is removed and the caller may retry. An unconfigured index is
  skipped.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Mapping, Optional, Sequence, Union

from .errors import IndexNotConfiguredError, ValidationError
from .filters import HasId, Match, MemoryFilter, Range
from .model import VALID_CATEGORIES, VALID_SCOPES, iso_to_ms

logger = logging.getLogger(__name__)

MAX_DELETE_IDS = 100


@dataclass(slots=True)
class DeleteFilter:
    category: Optional[str] = None
    scope: Optional[str] = None
    conversation_id: Optional[str] = None
    older_than: Optional[Union[str, datetime, int]] = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "DeleteFilter":
        return cls(
            category=data.get("category"),
            scope=data.get("scope"),
            conversation_id=data.get("conversation_id", data.get("conversationId")),
            older_than=data.get("older_than", data.get("olderThan")),
        )

    def is_empty(self) -> bool:
        return not (self.category or self.scope or self.older_than is not None)


@dataclass(slots=True)
class DeleteResult:
    deleted_count: int

    def to_dict(self) -> Dict[str, Any]:
        return {"deletedCount": self.deleted_count}


def _older_than_ms(value: Union[str, datetime, int]) -> int:
    if isinstance(value, bool):
        raise ValidationError("olderThan must be a valid ISO timestamp")
    if isinstance(value, int):
        return value
    if isinstance(value, datetime):
        return iso_to_ms(value.isoformat())
    try:
        return iso_to_ms(str(value))
    except ValueError:
        raise ValidationError("olderThan must be a valid ISO timestamp") from None


def build_id_filter(project_id: str, ids: Sequence[str]) -> MemoryFilter:
    flt = MemoryFilter()
    flt.add(Match("type", "memory"))
    flt.add(Match("project_id", project_id))
    flt.add(HasId(tuple(str(i) for i in ids)))
    return flt


def build_delete_filter(project_id: str, owner_id: Optional[str], criteria: DeleteFilter) -> MemoryFilter:
    flt = MemoryFilter()
    flt.add(Match("type", "memory"))
    flt.add(Match("project_id", project_id))

    if criteria.category:
        flt.add(Match("category", criteria.category))

    if criteria.scope:
        flt.add(Match("scope", criteria.scope))
        if criteria.scope != "project" and owner_id:
            flt.add(Match("owner_id", owner_id))
        if criteria.scope == "conversation" and criteria.conversation_id:
            flt.add(Match("conversation_id", criteria.conversation_id))

    if criteria.older_than is not None:
        flt.add(Range("created_at_ts", lt=_older_than_ms(criteria.older_than)))

    return flt


class DeletePipeline:
    def __init__(self, repo, index) -> None:
        self.repo = repo
        self.index = index

    async def delete(
        self,
        project_id: str,
        owner_id: Optional[str],
        *,
        ids: Optional[Sequence[str]] = None,
        flt: DeleteFilter | Mapping[str, Any] | None = None,
    ) -> DeleteResult:
        """Delete memories by ``ids`` or by ``flt``; idempotent.

        :raises ValidationError: missing/invalid criteria.
        :raises IndexServiceError: the index is configured but failing; no rows
            were removed.
        :raises DurableStoreError: the durable store failed.
        """
        if not project_id:
            raise ValidationError("projectId is required")

        if flt is not None and not isinstance(flt, DeleteFilter):
            flt = DeleteFilter.from_dict(flt)

        if ids:
            if len(ids) > MAX_DELETE_IDS:
                raise ValidationError(f"Cannot delete more than {MAX_DELETE_IDS} memories at once")
            target = build_id_filter(project_id, ids)
            what = f"{len(ids)} ids"
        else:
            if flt is None or flt.is_empty():
                raise ValidationError(
                    "At least one of memoryIds, category, scope, or olderThan must be provided"
                )
            self._validate(flt, owner_id)
            target = build_delete_filter(project_id, owner_id, flt)
            what = "filter"

        count = await self.repo.count(target)
        if count == 0:
            logger.info("Delete by %s matched nothing (project=%s)", what, project_id)
            return DeleteResult(deleted_count=0)

        try:
            await self.index.delete_by_filter(target)
        except IndexNotConfiguredError:
            logger.info("Index not configured; deleting from durable store only")

        deleted = await self.repo.delete(target)
        if deleted != count:
            logger.warning("Delete count drifted (counted=%d deleted=%d)", count, deleted)
        logger.info("Deleted %d memories by %s (project=%s)", deleted, what, project_id)
        return DeleteResult(deleted_count=deleted)

    def _validate(self, flt: DeleteFilter, owner_id: Optional[str]) -> None:
        if flt.category and flt.category not in VALID_CATEGORIES:
            raise ValidationError(
                f"Invalid category. Must be one of: {', '.join(VALID_CATEGORIES)}"
            )
        if flt.scope and flt.scope not in VALID_SCOPES:
            raise ValidationError(f"Invalid scope. Must be one of: {', '.join(VALID_SCOPES)}")
        if flt.scope == "conversation" and not flt.conversation_id:
            raise ValidationError("conversationId is required for conversation scope")
        if flt.scope and flt.scope != "project" and not owner_id:
            raise ValidationError(
                "Owner identification required for user/conversation scoped memories"
            )
        if flt.older_than is not None:
            _older_than_ms(flt.older_than)


__all__ = [
    "DeletePipeline",
    "DeleteFilter",
    "DeleteResult",
    "build_id_filter",
    "build_delete_filter",
    "MAX_DELETE_IDS",
]
