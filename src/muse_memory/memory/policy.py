"""
Memory policy: TTL and relevance decay
======================================

Pure functions computing expiry and decay from per-category configuration.
No I/O apart from reading the named duration settings handed in by callers.

Defaults:

- decision: 180 day half-life, no hard TTL
- style: 90 day half-life
- preference: 90 day half-life
- session: 6 hour half-life, 24 hour hard TTL

Each value can be overridden with ``MEMORY_<CATEGORY>_TTL`` or
``MEMORY_<CATEGORY>_HALF_LIFE`` (integer milliseconds, ``"24h"`` or ``"7d"``).
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, replace
from typing import Dict, Mapping, Optional

from .model import VALID_CATEGORIES, now_ms as _now_ms

logger = logging.getLogger(__name__)

MS_PER_MINUTE = 60 * 1000
MS_PER_HOUR = 60 * MS_PER_MINUTE
MS_PER_DAY = 24 * MS_PER_HOUR

_HOURS_RE = re.compile(r"^(\d+)h$")
_DAYS_RE = re.compile(r"^(\d+)d$")


@dataclass(frozen=True, slots=True)
class CategoryPolicy:
    ttl_ms: Optional[int] = None
    half_life_ms: Optional[int] = None


PolicyConfig = Dict[str, CategoryPolicy]

DEFAULT_POLICY: PolicyConfig = {
    "decision": CategoryPolicy(half_life_ms=180 * MS_PER_DAY),
    "style": CategoryPolicy(half_life_ms=90 * MS_PER_DAY),
    "preference": CategoryPolicy(half_life_ms=90 * MS_PER_DAY),
    "session": CategoryPolicy(ttl_ms=24 * MS_PER_HOUR, half_life_ms=6 * MS_PER_HOUR),
}


def parse_duration(value: str | int | None) -> Optional[int]:
    """Parse a duration setting into milliseconds.

    Accepts integer milliseconds (``86400000`` or ``"86400000"``), hours
    (``"24h"``) and days (``"90d"``). Anything else is logged and ignored.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        if value >= 0:
            return value
        logger.warning("Invalid duration value: %r", value)
        return None

    trimmed = str(value).strip().lower()
    if not trimmed:
        return None
    if trimmed.isdigit():
        return int(trimmed)

    match = _HOURS_RE.match(trimmed)
    if match:
        return int(match.group(1)) * MS_PER_HOUR

    match = _DAYS_RE.match(trimmed)
    if match:
        return int(match.group(1)) * MS_PER_DAY

    logger.warning("Invalid duration format: %s", value)
    return None


def load_policy_config(
    settings: Mapping[str, str | int | None] | None = None,
    overrides: Mapping[str, CategoryPolicy | Mapping[str, Optional[int]]] | None = None,
) -> PolicyConfig:
    """Build the effective policy from defaults, named settings and overrides.

    :param settings: Mapping of ``MEMORY_<CATEGORY>_TTL`` /
        ``MEMORY_<CATEGORY>_HALF_LIFE`` names to raw duration values.
    :param overrides: Per-category fields merged on top (keys ``ttl_ms`` /
        ``half_life_ms``), used by callers that need a one-off policy.
    """
    settings = settings or {}
    config: PolicyConfig = {}

    for category in VALID_CATEGORIES:
        default = DEFAULT_POLICY[category]
        prefix = f"MEMORY_{category.upper()}"
        ttl = parse_duration(settings.get(f"{prefix}_TTL"))
        half_life = parse_duration(settings.get(f"{prefix}_HALF_LIFE"))
        config[category] = CategoryPolicy(
            ttl_ms=ttl if ttl is not None else default.ttl_ms,
            half_life_ms=half_life if half_life is not None else default.half_life_ms,
        )

    for category, override in (overrides or {}).items():
        if category not in config:
            logger.warning("Ignoring policy override for unknown category %s", category)
            continue
        fields = override if isinstance(override, Mapping) else {
            "ttl_ms": override.ttl_ms,
            "half_life_ms": override.half_life_ms,
        }
        config[category] = replace(config[category], **dict(fields))

    return config


def policy_for(category: str, config: PolicyConfig | None = None) -> CategoryPolicy:
    config = config or DEFAULT_POLICY
    return config.get(category) or config.get("preference") or DEFAULT_POLICY["preference"]


# --- Expiration ---------------------------------------------------------------

def is_expired(
    created_at_ts: int,
    expires_at_ts: Optional[int],
    now_ms: int,
    policy: CategoryPolicy,
) -> bool:
    """Return True when a memory is past its explicit expiry or policy TTL."""
    if expires_at_ts is not None:
        return now_ms >= expires_at_ts
    if policy.ttl_ms and now_ms - created_at_ts >= policy.ttl_ms:
        return True
    return False


def calculate_expires_at(
    category: str,
    ttl_minutes_override: Optional[float] = None,
    *,
    now_ms: Optional[int] = None,
    config: PolicyConfig | None = None,
) -> Optional[int]:
    """Expiry timestamp (epoch ms) for a new memory, or ``None`` for no expiry."""
    now = _now_ms() if now_ms is None else now_ms
    if ttl_minutes_override is not None:
        return now + int(ttl_minutes_override * MS_PER_MINUTE)

    policy = policy_for(category, config)
    if policy.ttl_ms:
        return now + policy.ttl_ms
    return None


# --- Decay --------------------------------------------------------------------

def decay_factor(age_ms: float, half_life_ms: float) -> float:
    """Exponential decay: ``0.5 ** (age / half_life)``, clamped to 1.0."""
    if age_ms <= 0 or half_life_ms <= 0:
        return 1.0
    return 0.5 ** (age_ms / half_life_ms)


def decay_score(
    base_score: float,
    created_at_ts: int,
    now_ms: int,
    policy: CategoryPolicy,
) -> float:
    if not policy.half_life_ms:
        return base_score
    return base_score * decay_factor(now_ms - created_at_ts, policy.half_life_ms)


def combined_score(
    similarity: float,
    created_at_ts: int,
    category: str,
    similarity_weight: float = 0.8,
    now_ms: Optional[int] = None,
    config: PolicyConfig | None = None,
) -> float:
    """Blend semantic similarity with the category's half-life decay."""
    now = _now_ms() if now_ms is None else now_ms
    policy = policy_for(category, config)
    factor = decay_factor(now - created_at_ts, policy.half_life_ms) if policy.half_life_ms else 1.0
    return similarity * similarity_weight + factor * (1 - similarity_weight)


__all__ = [
    "CategoryPolicy",
    "PolicyConfig",
    "DEFAULT_POLICY",
    "parse_duration",
    "load_policy_config",
    "policy_for",
    "is_expired",
    "calculate_expires_at",
    "decay_factor",
    "decay_score",
    "combined_score",
]
