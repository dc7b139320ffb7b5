"""
Index payload schema
====================

``build_payload`` writes the canonical v2 payload stored next to each vector.
``normalize`` maps whatever the index hands back (including v1 payloads with
camelCase or ``content``/``content_preview`` keys) to the canonical shape in
one place, so pipelines never chase fallback keys.
"""

from __future__ import annotations

from typing import Any, Dict, Optional

from .model import MemoryMetadata, MemoryRecord, iso_to_ms, ms_to_iso

SCHEMA_VERSION = 2

# v1 key -> canonical key
_LEGACY_KEYS = {
    "projectId": "project_id",
    "memoryId": "memory_id",
    "ownerId": "owner_id",
    "conversationId": "conversation_id",
    "createdAt": "created_at",
    "createdAtTs": "created_at_ts",
    "updatedAt": "updated_at",
    "expiresAt": "expires_at",
    "entityIds": "entity_ids",
    "documentId": "document_id",
    "toolCallId": "tool_call_id",
    "toolName": "tool_name",
    "content": "text",
    "content_preview": "text",
}

_METADATA_KEYS = (
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
)


def build_payload(record: MemoryRecord) -> Dict[str, Any]:
    """Canonical index payload for ``record`` (``None`` fields omitted)."""
    payload: Dict[str, Any] = {
        "type": "memory",
        "schema_version": SCHEMA_VERSION,
        "memory_id": record.id,
        "project_id": record.project_id,
        "category": record.category,
        "scope": record.scope,
        "text": record.content,
        "created_at": record.created_at,
        "created_at_ts": int(record.created_at_ts),
        "updated_at": record.updated_at,
        "owner_id": record.owner_id,
        "conversation_id": record.conversation_id,
        "expires_at": record.expires_at,
        "expires_at_ts": record.expires_at_ts,
    }
    payload.update(record.metadata.to_dict())
    return {k: v for k, v in payload.items() if v is not None}


def _canonical_keys(payload: Dict[str, Any]) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    # Canonical keys win over legacy ones when both are present.
    for key, value in payload.items():
        target = _LEGACY_KEYS.get(key)
        if target is None:
            out[key] = value
        elif target not in payload and target not in out:
            out[target] = value
    return out


def normalize(point_id: Any, payload: Dict[str, Any], score: Optional[float] = None) -> MemoryRecord:
    """Parse an index hit into a :class:`MemoryRecord`."""
    data = _canonical_keys(dict(payload or {}))

    created_at_ts = data.get("created_at_ts")
    created_at = data.get("created_at")
    if created_at_ts is None and created_at:
        created_at_ts = iso_to_ms(str(created_at))
    created_at_ts = int(created_at_ts or 0)
    if not created_at:
        created_at = ms_to_iso(created_at_ts)

    expires_at = data.get("expires_at")
    expires_at_ts = data.get("expires_at_ts")
    if expires_at_ts is None and expires_at:
        expires_at_ts = iso_to_ms(str(expires_at))

    return MemoryRecord(
        id=str(data.get("memory_id") or point_id),
        project_id=str(data.get("project_id") or ""),
        category=str(data.get("category") or "preference"),
        scope=str(data.get("scope") or "user"),
        content=str(data.get("text") or ""),
        created_at=str(created_at),
        created_at_ts=created_at_ts,
        owner_id=data.get("owner_id"),
        conversation_id=data.get("conversation_id"),
        metadata=MemoryMetadata.from_dict({k: data[k] for k in _METADATA_KEYS if k in data}),
        updated_at=data.get("updated_at"),
        expires_at=expires_at,
        expires_at_ts=int(expires_at_ts) if expires_at_ts is not None else None,
        sync_status="synced",
        score=score,
    )


__all__ = ["SCHEMA_VERSION", "build_payload", "normalize"]
