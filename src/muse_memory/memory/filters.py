"""
Filter vocabulary
=================

One conjunction-of-conditions model used by every pipeline to express
project / category / scope / owner / conversation / time constraints. The same
filter compiles to a Milvus boolean expression (vector index) and to a
parameterised SQL ``WHERE`` clause (durable store).
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, List, Optional, Sequence, Tuple, Union

# Payload fields that may appear in a filter. Doubles as the SQL column
# whitelist, so keys are never interpolated from user input.
FILTER_FIELDS = frozenset({
    "type",
    "project_id",
    "category",
    "scope",
    "owner_id",
    "conversation_id",
    "created_at_ts",
    "expires_at_ts",
    "sync_status",
})


@dataclass(frozen=True, slots=True)
class Match:
    key: str
    value: Union[str, int, float, bool]


@dataclass(frozen=True, slots=True)
class MatchAny:
    key: str
    values: Tuple[Union[str, int, float], ...]


@dataclass(frozen=True, slots=True)
class Range:
    key: str
    gt: Optional[float] = None
    gte: Optional[float] = None
    lt: Optional[float] = None
    lte: Optional[float] = None


@dataclass(frozen=True, slots=True)
class HasId:
    ids: Tuple[str, ...]


Condition = Union[Match, MatchAny, Range, HasId]


@dataclass(slots=True)
class MemoryFilter:
    must: List[Condition] = field(default_factory=list)
    must_not: List[Condition] = field(default_factory=list)

    def add(self, condition: Condition) -> "MemoryFilter":
        _check(condition)
        self.must.append(condition)
        return self

    def exclude(self, condition: Condition) -> "MemoryFilter":
        _check(condition)
        self.must_not.append(condition)
        return self

    def value_of(self, key: str) -> Any:
        """Return the exact-match value constrained for ``key``, if any."""
        for cond in self.must:
            if isinstance(cond, Match) and cond.key == key:
                return cond.value
        return None


def _check(condition: Condition) -> None:
    key = getattr(condition, "key", None)
    if key is not None and key not in FILTER_FIELDS:
        raise ValueError(f"Unsupported filter field: {key}")


def match_one_or_any(key: str, values: Sequence[str]) -> Condition:
    """``Match`` for a single value, ``MatchAny`` for several."""
    if len(values) == 1:
        return Match(key, values[0])
    return MatchAny(key, tuple(values))


# --- Milvus -------------------------------------------------------------------

def _literal(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return repr(value)
    return json.dumps(str(value))


def _milvus_condition(cond: Condition) -> str:
    if isinstance(cond, Match):
        return f"{cond.key} == {_literal(cond.value)}"
    if isinstance(cond, MatchAny):
        return f"{cond.key} in [{', '.join(_literal(v) for v in cond.values)}]"
    if isinstance(cond, HasId):
        return f"id in [{', '.join(_literal(v) for v in cond.ids)}]"
    if isinstance(cond, Range):
        parts = []
        for op, bound in ((">", cond.gt), (">=", cond.gte), ("<", cond.lt), ("<=", cond.lte)):
            if bound is not None:
                parts.append(f"{cond.key} {op} {_literal(bound)}")
        return " and ".join(parts) or "true"
    raise TypeError(f"Unknown condition: {cond!r}")


def to_milvus_expr(flt: MemoryFilter) -> str:
    """Compile a filter to a Milvus boolean expression."""
    clauses = [f"({_milvus_condition(c)})" for c in flt.must]
    clauses += [f"not ({_milvus_condition(c)})" for c in flt.must_not]
    return " and ".join(clauses)


# --- SQL ----------------------------------------------------------------------

def _sql_condition(cond: Condition) -> Tuple[str, List[Any]]:
    if isinstance(cond, Match):
        if cond.key == "type":
            # Every row in ``memories`` is a memory; the index tags it explicitly.
            return ("1=1", []) if cond.value == "memory" else ("1=0", [])
        return f"{cond.key} = ?", [cond.value]
    if isinstance(cond, MatchAny):
        if not cond.values:
            return "1=0", []
        ph = ",".join("?" * len(cond.values))
        return f"{cond.key} IN ({ph})", list(cond.values)
    if isinstance(cond, HasId):
        if not cond.ids:
            return "1=0", []
        ph = ",".join("?" * len(cond.ids))
        return f"id IN ({ph})", list(cond.ids)
    if isinstance(cond, Range):
        parts, params = [], []
        for op, bound in ((">", cond.gt), (">=", cond.gte), ("<", cond.lt), ("<=", cond.lte)):
            if bound is not None:
                parts.append(f"{cond.key} {op} ?")
                params.append(bound)
        return (" AND ".join(parts) or "1=1"), params
    raise TypeError(f"Unknown condition: {cond!r}")


def to_sql_where(flt: MemoryFilter) -> Tuple[str, List[Any]]:
    """Compile a filter to ``(where_clause, params)`` for the memories table."""
    clauses: List[str] = []
    params: List[Any] = []
    for cond in flt.must:
        sql, p = _sql_condition(cond)
        clauses.append(f"({sql})")
        params.extend(p)
    for cond in flt.must_not:
        sql, p = _sql_condition(cond)
        clauses.append(f"NOT ({sql})")
        params.extend(p)
    return (" AND ".join(clauses) or "1=1"), params


__all__ = [
    "FILTER_FIELDS",
    "Match",
    "MatchAny",
    "Range",
    "HasId",
    "Condition",
    "MemoryFilter",
    "match_one_or_any",
    "to_milvus_expr",
    "to_sql_where",
]
