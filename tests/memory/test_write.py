import asyncio

import pytest

from muse_memory.memory.errors import (
    DurableStoreError,
    EmbeddingProviderError,
    IndexServiceError,
    ValidationError,
)
from muse_memory.memory.filters import MemoryFilter
from muse_memory.memory.model import REDACTED_CONTENT, content_hash_id, ms_to_iso
from muse_memory.memory.policy import MS_PER_HOUR
from muse_memory.memory.write import MAX_BATCH_SIZE

from fakes import DAY_MS, T0, FakeIndex, make_service


def test_write_persists_and_syncs():
    service = make_service()

    async def run():
        records = await service.write(
            [{"category": "decision", "content": "The moon has two suns.", "metadata": {"source": "user"}}],
            "p1",
            "alice",
        )
        rows = await service.repo.get_many([records[0].id])
        return records, rows

    records, rows = asyncio.run(run())
    rec = records[0]
    assert rec.scope == "project"
    assert rec.owner_id is None  # project memories are not owned
    assert rec.sync_status == "synced"
    assert rec.created_at == ms_to_iso(T0)
    assert rec.expires_at is None  # decisions have no TTL
    assert rows[0].sync_status == "synced"
    assert rows[0].synced_at is not None
    assert rec.id in service.index.points
    assert service.index.points[rec.id][1]["project_id"] == "p1"


def test_default_scopes_and_session_expiry():
    service = make_service()

    async def run():
        return await service.write(
            [
                {"category": "style", "content": "Prefers second person."},
                {"category": "session", "content": "Working on chapter 3.", "conversationId": "c1"},
            ],
            "p1",
            "alice",
        )

    style, session = asyncio.run(run())
    assert (style.scope, style.owner_id) == ("user", "alice")
    assert (session.scope, session.conversation_id) == ("conversation", "c1")
    assert session.expires_at_ts == T0 + 24 * MS_PER_HOUR


def test_session_without_conversation_id_rejected():
    service = make_service()
    with pytest.raises(ValidationError):
        asyncio.run(service.write([{"category": "session", "content": "User prefers present tense"}], "p1", "alice"))
    assert service.provider.calls == []


@pytest.mark.parametrize(
    "item",
    [
        {"category": "lore", "content": "x"},
        {"category": "style", "content": "x", "scope": "world"},
        {"category": "style", "content": "   "},
        {"category": "style", "content": "x" * 32_001},
        {"category": "style", "content": "x", "metadata": {"source": "robot"}},
        {"category": "style", "content": "x", "metadata": {"confidence": 1.5}},
        {"category": "style", "content": "x", "metadata": {"ttlMinutes": 0}},
        {"category": "style", "content": "x", "metadata": {"expiresAt": "next tuesday"}},
    ],
)
def test_invalid_items_rejected(item):
    service = make_service()
    with pytest.raises(ValidationError):
        asyncio.run(service.write([item], "p1", "alice"))


def test_batch_limits():
    service = make_service()
    with pytest.raises(ValidationError):
        asyncio.run(service.write([], "p1", "alice"))
    too_many = [{"category": "decision", "content": f"d{i}"} for i in range(MAX_BATCH_SIZE + 1)]
    with pytest.raises(ValidationError):
        asyncio.run(service.write(too_many, "p1", "alice"))


def test_owner_required_fails_whole_batch():
    service = make_service()

    async def run():
        with pytest.raises(ValidationError):
            await service.write(
                [
                    {"category": "decision", "content": "Canon fact."},
                    {"category": "style", "content": "Personal style."},
                ],
                "p1",
                None,
            )
        return await service.repo.count(MemoryFilter())

    assert asyncio.run(run()) == 0
    assert service.index.points == {}


def test_reupsert_preserves_age_and_updates_content():
    service = make_service()
    mid = content_hash_id("p1", "decision", "The capital is Vell.")

    async def run():
        await service.write([{"id": mid, "category": "decision", "content": "The capital is Vell."}], "p1", "a")
        service.clock.advance(3 * DAY_MS)
        second = await service.write(
            [{"id": mid, "category": "decision", "content": "The capital is Vell, on the river."}], "p1", "a"
        )
        stored = await service.repo.get_many([mid])
        return second[0], stored[0]

    rec, stored = asyncio.run(run())
    assert rec.created_at_ts == stored.created_at_ts == T0
    assert rec.updated_at == ms_to_iso(T0 + 3 * DAY_MS)
    assert stored.content == "The capital is Vell, on the river."
    assert mid.startswith("mem_")


def test_reupsert_keeps_prior_expiry_unless_overridden():
    service = make_service()

    async def run():
        item = {"id": "s1", "category": "session", "content": "v1", "conversationId": "c1"}
        first = (await service.write([item], "p1", "a"))[0]
        service.clock.advance(MS_PER_HOUR)
        second = (await service.write([{**item, "content": "v2"}], "p1", "a"))[0]
        third = (await service.write([{**item, "metadata": {"expiresAt": "2030-01-01T00:00:00Z"}}], "p1", "a"))[0]
        return first, second, third

    first, second, third = asyncio.run(run())
    assert second.expires_at_ts == first.expires_at_ts
    assert third.expires_at == "2030-01-01T00:00:00Z"


def test_ttl_minutes_override():
    service = make_service()
    rec = asyncio.run(
        service.write([{"category": "decision", "content": "Temporary.", "metadata": {"ttlMinutes": 30}}], "p1", "a")
    )[0]
    assert rec.expires_at_ts == T0 + 30 * 60 * 1000


def test_redaction_never_persists_original_text():
    service = make_service()
    secret = "My home address is 12 Elm Street."

    async def run():
        rec = (await service.write(
            [{"category": "preference", "content": secret, "metadata": {"redacted": True, "redactionReason": "pii"}}],
            "p1",
            "alice",
        ))[0]
        read = await service.read({}, "p1", "alice")
        return rec, await service.repo.get_many([rec.id]), read

    rec, rows, read = asyncio.run(run())
    assert rec.content == REDACTED_CONTENT
    assert rows[0].content == REDACTED_CONTENT
    assert rows[0].metadata.redacted_at == ms_to_iso(T0)
    assert service.index.points[rec.id][1]["text"] == REDACTED_CONTENT
    assert all(secret not in call for calls in service.provider.calls for call in calls)
    assert [m.content for m in read.memories] == [REDACTED_CONTENT]


def test_durable_failure_aborts_fully(monkeypatch):
    service = make_service()

    async def broken_upsert(records):
        raise DurableStoreError("disk full")

    monkeypatch.setattr(service.repo, "upsert_many", broken_upsert)

    async def run():
        with pytest.raises(DurableStoreError):
            await service.write([{"category": "decision", "content": "Lost fact."}], "p1", "a")
        return await service.repo.count(MemoryFilter())

    assert asyncio.run(run()) == 0
    assert service.index.calls == []
    assert service.index.points == {}


def test_index_failure_is_non_fatal():
    index = FakeIndex()
    index.fail_with = IndexServiceError("Milvus upsert failed: unavailable", status_code=503)
    service = make_service(index=index)

    async def run():
        rec = (await service.write([{"category": "decision", "content": "Still saved."}], "p1", "a"))[0]
        index.fail_with = None
        listed = await service.read({"scope": "project"}, "p1", "a")
        return rec, (await service.repo.get_many([rec.id]))[0], listed

    rec, row, listed = asyncio.run(run())
    assert rec.sync_status == row.sync_status == "error"
    assert "unavailable" in row.last_error
    assert [m.id for m in listed.memories] == [rec.id]
    assert listed.memories[0].content == "Still saved."


def test_unconfigured_index_records_error():
    service = make_service(index=FakeIndex(configured=False))
    rec = asyncio.run(service.write([{"category": "decision", "content": "No index."}], "p1", "a"))[0]
    assert rec.sync_status == "error"
    assert rec.last_error == "Vector index is not configured"
    assert service.index.calls == ["upsert"]


def test_embedding_failure_writes_nothing():
    service = make_service(embed_fail=RuntimeError("provider down"))

    async def run():
        with pytest.raises(EmbeddingProviderError):
            await service.write([{"category": "decision", "content": "x"}], "p1", "a")
        return await service.repo.count(MemoryFilter())

    assert asyncio.run(run()) == 0


def test_ids_from_another_project_rejected():
    service = make_service()

    async def run():
        await service.write([{"id": "shared", "category": "decision", "content": "p1 fact"}], "p1", "a")
        with pytest.raises(ValidationError):
            await service.write([{"id": "shared", "category": "decision", "content": "p2 fact"}], "p2", "a")
        return await service.repo.get_many(["shared"])

    rows = asyncio.run(run())
    assert rows[0].project_id == "p1"
    assert rows[0].content == "p1 fact"


def test_duplicate_ids_in_batch_rejected():
    service = make_service()
    item = {"id": "dup", "category": "decision", "content": "x"}
    with pytest.raises(ValidationError):
        asyncio.run(service.write([item, item], "p1", "a"))


def test_one_embedding_call_per_batch():
    service = make_service()
    items = [{"category": "decision", "content": f"fact {i}"} for i in range(5)]
    records = asyncio.run(service.write(items, "p1", "a"))
    assert len(service.provider.calls) == 1
    assert [r.content for r in records] == [f"fact {i}" for i in range(5)]
