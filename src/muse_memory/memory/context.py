"""Utilities for collecting memory context for LLM prompts."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Dict, List, Optional

from .model import MemoryRecord
from .read import ReadRequest

logger = logging.getLogger(__name__)

DAY_MS = 24 * 60 * 60 * 1000


@dataclass(frozen=True, slots=True)
class RetrievalLimits:
    decisions: int = 8
    style: int = 6
    preferences: int = 6
    session: int = 3


# Full context for the writing assistant, lighter context for plain chat.
DEFAULT_SAGA_LIMITS = RetrievalLimits()
DEFAULT_CHAT_LIMITS = RetrievalLimits(decisions=5, style=4, preferences=0, session=0)


@dataclass(slots=True)
class MemoryContext:
    """Memories retrieved for one turn, grouped by category."""

    decisions: List[MemoryRecord] = field(default_factory=list)
    style: List[MemoryRecord] = field(default_factory=list)
    preferences: List[MemoryRecord] = field(default_factory=list)
    session: List[MemoryRecord] = field(default_factory=list)

    def is_empty(self) -> bool:
        return not (self.decisions or self.style or self.preferences or self.session)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "decisions": [m.to_dict() for m in self.decisions],
            "style": [m.to_dict() for m in self.style],
            "preferences": [m.to_dict() for m in self.preferences],
            "session": [m.to_dict() for m in self.session],
        }


def _source_rank(source: Optional[str]) -> int:
    if source == "user":
        return 0
    if source == "ai":
        return 1
    return 2


def prioritize(memories: List[MemoryRecord]) -> List[MemoryRecord]:
    """Pinned first, then user-sourced before AI before system.

    The sort is stable, so the read pipeline's ranking holds within each tier.
    """
    return sorted(
        memories,
        key=lambda m: (not m.metadata.pinned, _source_rank(m.metadata.source)),
    )


async def retrieve_memory_context(
    service,
    query: Optional[str],
    project_id: str,
    owner_id: Optional[str],
    conversation_id: Optional[str] = None,
    limits: RetrievalLimits = DEFAULT_SAGA_LIMITS,
    *,
    recency_weight: Optional[float] = None,
    max_age_days: Optional[Dict[str, float]] = None,
) -> MemoryContext:
    """Fetch decisions, style, preferences and session notes concurrently.

    Decisions are project-wide. Style and preferences need an ``owner_id``;
    session notes also need a ``conversation_id``. A category whose read fails
    is logged and comes back empty.
    """

    max_age_days = max_age_days or {}

    def _request(key: str, category: str, scope: str, limit: int, conv: Optional[str] = None) -> ReadRequest:
        request = ReadRequest(
            query=query,
            categories=[category],
            scope=scope,
            conversation_id=conv,
            limit=limit,
        )
        if recency_weight is not None:
            request.recency_weight = recency_weight
        if key in max_age_days:
            request.max_age_ms = int(max_age_days[key] * DAY_MS)
        return request

    plan: Dict[str, ReadRequest] = {}
    if limits.decisions > 0:
        plan["decisions"] = _request("decisions", "decision", "project", limits.decisions)
    if owner_id:
        if limits.style > 0:
            plan["style"] = _request("style", "style", "user", limits.style)
        if limits.preferences > 0:
            plan["preferences"] = _request("preferences", "preference", "user", limits.preferences)
        if conversation_id and limits.session > 0:
            plan["session"] = _request(
                "session", "session", "conversation", limits.session, conversation_id
            )
    else:
        logger.info("No owner id, skipping user/conversation scoped memories")

    results = await asyncio.gather(
        *(service.read(req, project_id, owner_id) for req in plan.values()),
        return_exceptions=True,
    )

    context = MemoryContext()
    for key, result in zip(plan, results):
        if isinstance(result, BaseException):
            logger.warning("Memory retrieval for %s failed: %s", key, result)
            continue
        setattr(context, key, prioritize(result.memories))
    return context


async def gather_context(**sources: Awaitable[Any]) -> Dict[str, Any]:
    """Await named context sources concurrently.

    A failing source is logged and maps to ``None``; the others are kept.
    """

    names = list(sources)
    results = await asyncio.gather(*sources.values(), return_exceptions=True)

    out: Dict[str, Any] = {}
    for name, result in zip(names, results):
        if isinstance(result, BaseException):
            logger.warning("Context source %s failed: %s", name, result)
            out[name] = None
        else:
            out[name] = result
    return out


_SECTIONS = (
    ("decisions", "Canon Decisions (never contradict these)"),
    ("style", "Writer Style Preferences (try to match these)"),
    ("preferences", "Personal Preferences (avoid repeating rejected patterns)"),
    ("session", "Session Continuity (current focus)"),
)

EMPTY_SECTION = "None recorded."


def format_memory_context(context: MemoryContext) -> str:
    """Render ``context`` as a prompt section; empty string when there is nothing."""

    if context.is_empty():
        return ""

    parts = [
        "## Remembered Context",
        "",
        "When you rely on a remembered fact or canon decision, include its [M:...] tag in your response.",
    ]
    for key, title in _SECTIONS:
        memories = getattr(context, key)
        lines = [f"- [M:{m.id}] {m.content}" for m in memories] or [EMPTY_SECTION]
        parts.extend(["", f"### {title}", *lines])
    return "\n".join(parts)


__all__ = [
    "RetrievalLimits",
    "DEFAULT_SAGA_LIMITS",
    "DEFAULT_CHAT_LIMITS",
    "MemoryContext",
    "prioritize",
    "retrieve_memory_context",
    "gather_context",
    "format_memory_context",
]
