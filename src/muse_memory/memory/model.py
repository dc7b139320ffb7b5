"""Dataclass models for memory records.

A :class:`MemoryRecord` is the canonical in-process shape. The durable store
row and the index payload are both derived from it, and both are parsed back
into it at the read boundary (see :mod:`muse_memory.memory.payload`).
"""

from __future__ import annotations

import hashlib
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional

import numpy as np

MemoryCategory = Literal["decision", "style", "preference", "session"]
MemoryScope = Literal["project", "user", "conversation"]
MemorySource = Literal["user", "ai", "system"]
SyncStatus = Literal["pending", "error", "synced"]

VALID_CATEGORIES: tuple[str, ...] = ("decision", "style", "preference", "session")
VALID_SCOPES: tuple[str, ...] = ("project", "user", "conversation")
VALID_SOURCES: tuple[str, ...] = ("user", "ai", "system")

DEFAULT_SCOPES: Dict[str, str] = {
    "decision": "project",
    "style": "user",
    "preference": "user",
    "session": "conversation",
}

MAX_CONTENT_LENGTH = 32_000
REDACTED_CONTENT = "[REDACTED]"


def default_scope(category: str) -> str:
    return DEFAULT_SCOPES.get(category, "user")


def now_ms() -> int:
    return int(datetime.now(timezone.utc).timestamp() * 1000)


def ms_to_iso(ts: int) -> str:
    return datetime.fromtimestamp(ts / 1000, tz=timezone.utc).isoformat().replace("+00:00", "Z")


def iso_to_ms(value: str) -> int:
    """Parse an ISO-8601 timestamp (``Z`` suffix allowed) into epoch ms."""
    dt = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp() * 1000)


def content_hash_id(project_id: str, category: str, content: str) -> str:
    """Deterministic id for callers that want content-based dedup."""
    digest = hashlib.blake2b(
        f"{project_id}\x1f{category}\x1f{content}".encode("utf-8"), digest_size=16
    ).hexdigest()
    return f"mem_{digest}"


def _drop_nones(d: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in d.items() if v is not None}


@dataclass(slots=True)
class MemoryMetadata:
    source: Optional[MemorySource] = None
    confidence: Optional[float] = None
    entity_ids: List[str] = field(default_factory=list)
    document_id: Optional[str] = None
    tool_call_id: Optional[str] = None
    tool_name: Optional[str] = None
    pinned: bool = False
    redacted: bool = False
    redacted_at: Optional[str] = None
    redaction_reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = _drop_nones(asdict(self))
        if not data.get("entity_ids"):
            data.pop("entity_ids", None)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any] | None) -> "MemoryMetadata":
        data = data or {}
        return cls(
            source=data.get("source"),
            confidence=data.get("confidence"),
            entity_ids=list(data.get("entity_ids") or []),
            document_id=data.get("document_id"),
            tool_call_id=data.get("tool_call_id"),
            tool_name=data.get("tool_name"),
            pinned=bool(data.get("pinned", False)),
            redacted=bool(data.get("redacted", False)),
            redacted_at=data.get("redacted_at"),
            redaction_reason=data.get("redaction_reason"),
        )


@dataclass(slots=True)
class WriteMetadata(MemoryMetadata):
    """Write-time metadata; adds the explicit expiry and TTL overrides."""

    expires_at: Optional[str] = None
    ttl_minutes: Optional[float] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any] | None) -> "WriteMetadata":
        base = MemoryMetadata.from_dict(data)
        data = data or {}
        return cls(
            **{name: getattr(base, name) for name in MemoryMetadata.__slots__},
            expires_at=data.get("expires_at"),
            ttl_minutes=data.get("ttl_minutes"),
        )

    def stored(self) -> MemoryMetadata:
        return MemoryMetadata(**{name: getattr(self, name) for name in MemoryMetadata.__slots__})


@dataclass(slots=True)
class MemoryWriteItem:
    category: str
    content: str
    scope: Optional[str] = None
    conversation_id: Optional[str] = None
    metadata: WriteMetadata = field(default_factory=WriteMetadata)
    id: Optional[str] = None


@dataclass(slots=True)
class MemoryRecord:
    id: str
    project_id: str
    category: str
    scope: str
    content: str
    created_at: str
    created_at_ts: int
    owner_id: Optional[str] = None
    conversation_id: Optional[str] = None
    metadata: MemoryMetadata = field(default_factory=MemoryMetadata)
    updated_at: Optional[str] = None
    expires_at: Optional[str] = None
    expires_at_ts: Optional[int] = None
    embedding: Optional[np.ndarray] = field(default=None, repr=False, compare=False)
    sync_status: SyncStatus = "pending"
    synced_at: Optional[str] = None
    last_error: Optional[str] = None
    score: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        """Caller-facing JSON shape (no embedding)."""
        return _drop_nones({
            "id": self.id,
            "projectId": self.project_id,
            "category": self.category,
            "scope": self.scope,
            "ownerId": self.owner_id,
            "conversationId": self.conversation_id,
            "content": self.content,
            "metadata": self.metadata.to_dict(),
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "expiresAt": self.expires_at,
            "syncStatus": self.sync_status,
            "score": self.score,
        })
