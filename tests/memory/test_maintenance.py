import asyncio

from muse_memory.memory import maintenance, scheduler
from muse_memory.memory.errors import IndexServiceError
from muse_memory.memory.filters import MemoryFilter
from muse_memory.memory.policy import MS_PER_HOUR
from muse_memory.memory.sql.repositories import SUPERSEDED_ERROR

from fakes import FakeIndex, make_service


def _write_failed(service, index, contents):
    async def run():
        index.fail_with = IndexServiceError("Milvus upsert failed: unavailable", status_code=503)
        records = await service.write([{"category": "decision", "content": c} for c in contents], "p1", None)
        index.fail_with = None
        return records

    return run()


def test_reconcile_moves_error_rows_to_synced():
    index = FakeIndex()
    service = make_service(index=index)

    async def run():
        records = await _write_failed(service, index, ["a", "b"])
        counts = await maintenance.reconcile(service.repo, index, limit=10)
        again = await maintenance.reconcile(service.repo, index, limit=10)
        return records, counts, again, await service.repo.stats()

    records, counts, again, stats = asyncio.run(run())
    assert {r.sync_status for r in records} == {"error"}
    assert counts == {"synced": 2, "failed": 0, "skipped": 0}
    assert again == {"synced": 0, "failed": 0, "skipped": 0}
    assert stats == {"synced": 2}
    assert sorted(p[1]["text"] for p in index.points.values()) == ["a", "b"]


def test_reconcile_records_repeated_failure():
    index = FakeIndex()
    service = make_service(index=index)

    async def run():
        await _write_failed(service, index, ["a"])
        index.fail_with = IndexServiceError("Milvus upsert failed: still down")
        counts = await maintenance.reconcile(service.repo, index)
        return counts, await service.repo.select(MemoryFilter())

    counts, rows = asyncio.run(run())
    assert counts["failed"] == 1
    assert rows[0].sync_status == "error"
    assert rows[0].last_error == "Milvus upsert failed: still down"


class _ParkedIndex(FakeIndex):
    """Holds the next upsert until ``release`` is set."""

    def __init__(self):
        super().__init__()
        self.parked = None
        self.release = None

    async def upsert(self, points):
        if self.release is not None:
            release, self.release = self.release, None
            self.parked.set()
            await release.wait()
        await super().upsert(points)


def test_reconcile_does_not_mark_rewritten_row_synced():
    index = _ParkedIndex()
    service = make_service(index=index)

    async def run():
        records = await _write_failed(service, index, ["old"])
        mid = records[0].id
        index.parked, index.release = asyncio.Event(), asyncio.Event()
        release = index.release

        sweep = asyncio.create_task(maintenance.reconcile(service.repo, index))
        await index.parked.wait()
        service.clock.advance(1000)
        await service.write([{"category": "decision", "content": "new", "id": mid}], "p1", None)
        release.set()
        counts = await sweep

        row = (await service.repo.get_many([mid]))[0]
        indexed = index.points[mid][1]["text"]
        again = await maintenance.reconcile(service.repo, index)
        final = (await service.repo.get_many([mid]))[0]
        return counts, row, indexed, again, final, index.points[mid][1]["text"]

    counts, row, indexed, again, final, healed = asyncio.run(run())
    # The sweep's older upsert landed last in the index.
    assert indexed == "old"
    assert counts == {"synced": 0, "failed": 0, "skipped": 1}
    assert row.content == "new"
    assert row.sync_status == "pending"
    assert row.last_error == SUPERSEDED_ERROR
    assert again["synced"] == 1
    assert final.sync_status == "synced"
    assert healed == "new"


def test_reconcile_skips_unconfigured_index():
    service = make_service(index=FakeIndex(configured=False))

    async def run():
        await service.write([{"category": "decision", "content": "a"}], "p1", None)
        return await maintenance.reconcile(service.repo, service.index)

    assert asyncio.run(run()) == {"synced": 0, "failed": 0, "skipped": 0}


def test_purge_expired_removes_from_store_and_index():
    service = make_service()

    async def run():
        await service.write(
            [
                {"category": "session", "content": "old session", "conversationId": "c1"},
                {"category": "decision", "content": "canon"},
            ],
            "p1",
            "alice",
        )
        service.clock.advance(25 * MS_PER_HOUR)
        purged = await maintenance.purge_expired(service.repo, service.index, service.clock())
        left = await service.repo.select(MemoryFilter())
        return purged, [r.content for r in left]

    purged, left = asyncio.run(run())
    assert purged == 1
    assert left == ["canon"]
    assert [p[1]["text"] for p in service.index.points.values()] == ["canon"]


def test_purge_expired_tolerates_index_failure():
    index = FakeIndex()
    service = make_service(index=index)

    async def run():
        await service.write(
            [{"category": "decision", "content": "brief", "metadata": {"ttlMinutes": 1}}], "p1", None
        )
        service.clock.advance(2 * 60 * 1000)
        index.fail_with = IndexServiceError("Milvus delete_by_ids failed: boom")
        return await maintenance.purge_expired(service.repo, index, service.clock())

    assert asyncio.run(run()) == 1


def test_scheduler_runs_startup_and_periodic_cycles():
    index = FakeIndex()
    service = make_service(index=index)

    async def run():
        await _write_failed(service, index, ["first"])
        await scheduler.start(service, interval=0.05)
        startup_stats = await service.repo.stats()
        await _write_failed(service, index, ["second"])
        await asyncio.sleep(0.15)
        await scheduler.stop()
        return startup_stats, await service.repo.stats()

    startup_stats, final_stats = asyncio.run(run())
    assert startup_stats == {"synced": 1}
    assert final_stats == {"synced": 2}
    assert scheduler._task is None
