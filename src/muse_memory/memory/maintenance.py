"""
Memory maintenance tasks
========================

The index drifts from the durable store whenever a best-effort index write
fails. One maintenance cycle:

- re-upserts rows still owed to the index (``pending`` / ``error``) and
  records the outcome on each row;
- hard-deletes expired memories, index first (best-effort) then the durable
  store;
- checkpoints the SQLite WAL.
"""

from __future__ import annotations

import logging
from typing import Dict, Optional

from . import policy
from .errors import IndexNotConfiguredError, IndexServiceError
from .filters import HasId, MemoryFilter
from .model import ms_to_iso, now_ms as _now_ms
from .payload import build_payload
from .vector.vector_index import IndexPoint

logger = logging.getLogger(__name__)


async def reconcile(repo, index, limit: int = 200) -> Dict[str, int]:
    """Push up to ``limit`` unsynced rows to the index.

    Sync marks are conditional on the ``updated_at`` read here: a row
    rewritten while its upsert was in flight stays ``pending`` for the next
    cycle. Returns counts ``{"synced": n, "failed": n, "skipped": n}``.
    """

    counts = {"synced": 0, "failed": 0, "skipped": 0}
    if not index.configured:
        logger.info("Index not configured; skipping reconciliation")
        return counts

    rows = await repo.unsynced(limit)
    if not rows:
        return counts

    ready = [r for r in rows if r.embedding is not None]
    missing = {r.id: r.updated_at for r in rows if r.embedding is None}
    if missing:
        # Nothing to push without a vector; leave them flagged.
        await repo.mark_error(missing, "missing embedding")
        counts["skipped"] = len(missing)

    if not ready:
        return counts

    versions = {r.id: r.updated_at for r in ready}
    points = [IndexPoint(id=r.id, vector=r.embedding, payload=build_payload(r)) for r in ready]
    try:
        await index.upsert(points)
    except IndexServiceError as e:
        logger.warning("Reconciliation upsert failed for %d rows: %s", len(ready), e)
        await repo.mark_error(versions, e.message)
        counts["failed"] = len(ready)
        return counts

    stale = await repo.mark_synced(versions, ms_to_iso(_now_ms()))
    if stale:
        logger.info("%d memories changed during reconciliation; retrying next cycle", len(stale))
    counts["synced"] = len(ready) - len(stale)
    counts["skipped"] += len(stale)
    logger.info("Reconciled %d memories to the index", counts["synced"])
    return counts


async def purge_expired(
    repo,
    index,
    now_ms: Optional[int] = None,
    policy_config: policy.PolicyConfig | None = None,
) -> int:
    """Hard-delete memories past their expiry; returns the durable delete count."""

    now = _now_ms() if now_ms is None else now_ms
    config = policy_config or policy.DEFAULT_POLICY
    ttls = {category: p.ttl_ms for category, p in config.items()}

    ids = await repo.expired_ids(now, ttls)
    if not ids:
        return 0

    try:
        await index.delete_by_ids(ids)
    except IndexNotConfiguredError:
        pass
    except IndexServiceError as e:
        # Expired points are filtered at read time; the next sweep retries.
        logger.warning("Index delete of %d expired memories failed: %s", len(ids), e)

    deleted = await repo.delete(MemoryFilter(must=[HasId(tuple(ids))]))
    logger.info("Purged %d expired memories", deleted)
    return deleted


async def run(
    repo,
    index,
    *,
    reconcile_limit: int = 200,
    policy_config: policy.PolicyConfig | None = None,
) -> None:
    """Perform one maintenance cycle."""

    await reconcile(repo, index, reconcile_limit)
    await purge_expired(repo, index, policy_config=policy_config)

    await repo.checkpoint()


__all__ = ["reconcile", "purge_expired", "run"]
