import asyncio

import numpy as np
import pytest

from muse_memory.memory.errors import IndexNotConfiguredError, IndexServiceError
from muse_memory.memory.filters import Match, MemoryFilter
from muse_memory.memory.vector.retry import RetryPolicy
from muse_memory.memory.vector.vector_index import IndexClient, IndexPoint

from fakes import DIM, vec


class Unavailable(Exception):
    status_code = 503


class _PagedRows:
    """Mimics ``QueryIterator``: storage-order pages of ``batch_size`` rows."""

    def __init__(self, rows, batch_size):
        self._rows = list(rows)
        self._batch = batch_size
        self.closed = False

    def next(self):
        page, self._rows = self._rows[: self._batch], self._rows[self._batch :]
        return page

    def close(self):
        self.closed = True


class FakeMilvusClient:
    """Records ``MilvusClient`` calls; canned responses for search/query."""

    def __init__(self, *, has_collection=False):
        self._has = has_collection
        self.created = []
        self.calls = []
        self.search_result = [[]]
        self.query_result = []
        self.fail_times = 0

    def _record(self, name, **kwargs):
        self.calls.append((name, kwargs))
        if self.fail_times:
            self.fail_times -= 1
            raise Unavailable("server unavailable")

    def has_collection(self, name):
        return self._has

    def create_collection(self, **kwargs):
        self.created.append(kwargs)
        self._has = True

    def upsert(self, **kwargs):
        self._record("upsert", **kwargs)
        return {"upsert_count": len(kwargs["data"])}

    def search(self, **kwargs):
        self._record("search", **kwargs)
        return self.search_result

    def query(self, **kwargs):
        self._record("query", **kwargs)
        return self.query_result

    def query_iterator(self, **kwargs):
        self._record("query_iterator", **kwargs)
        return _PagedRows(self.query_result, kwargs["batch_size"])

    def delete(self, **kwargs):
        self._record("delete", **kwargs)
        return {"delete_count": 0}

    def get_server_version(self):
        self._record("get_server_version")
        return "v2.4.0"


def _client(fake, **kwargs):
    kwargs.setdefault("retry_policy", RetryPolicy(max_retries=2, base_delay=0.0, max_delay=0.0))
    return IndexClient(uri="http://milvus:19530", collection="saga_vectors", dim=DIM,
                       client_factory=lambda: fake, **kwargs)


def _project_filter():
    return MemoryFilter().add(Match("project_id", "p1"))


def test_collection_created_lazily_once():
    fake = FakeMilvusClient()
    index = _client(fake)

    async def run():
        await index.upsert([IndexPoint(id="m1", vector=vec(3, 4), payload={"project_id": "p1"})])
        await index.upsert([IndexPoint(id="m2", vector=vec(1), payload={"project_id": "p1"})])

    asyncio.run(run())
    assert len(fake.created) == 1
    schema = fake.created[0]
    assert schema["collection_name"] == "saga_vectors"
    assert schema["dimension"] == DIM
    assert schema["metric_type"] == "COSINE"
    assert schema["enable_dynamic_field"] is True


def test_ensure_collection_creates_without_other_calls():
    fake = FakeMilvusClient()
    index = _client(fake)
    asyncio.run(index.ensure_collection())
    assert len(fake.created) == 1
    assert fake.calls == []

    with pytest.raises(IndexNotConfiguredError):
        asyncio.run(_client(fake, enabled=False).ensure_collection())


def test_upsert_normalizes_vectors_and_flattens_payload():
    fake = FakeMilvusClient(has_collection=True)
    index = _client(fake)
    asyncio.run(index.upsert([IndexPoint(id="m1", vector=vec(3, 4), payload={"project_id": "p1", "text": "hi"})]))

    name, kwargs = fake.calls[0]
    row = kwargs["data"][0]
    assert name == "upsert"
    assert row["id"] == "m1"
    assert row["project_id"] == "p1"
    assert np.allclose(row["vector"][:2], [0.6, 0.8])
    assert fake.created == []


def test_upsert_rejects_wrong_dimension():
    index = _client(FakeMilvusClient(has_collection=True))
    with pytest.raises(ValueError):
        asyncio.run(index.upsert([IndexPoint(id="m1", vector=[1.0, 2.0], payload={})]))


def test_search_parses_hits_and_compiles_filter():
    fake = FakeMilvusClient(has_collection=True)
    fake.search_result = [[
        {"id": "m1", "distance": 0.93, "entity": {"project_id": "p1", "text": "a"}},
        {"id": "m2", "distance": 0.41, "entity": {"$meta": {"project_id": "p1", "text": "b"}}},
    ]]
    hits = asyncio.run(_client(fake).search(vec(1), 4, _project_filter()))

    assert [(h.id, h.score, h.payload["text"]) for h in hits] == [("m1", 0.93, "a"), ("m2", 0.41, "b")]
    _, kwargs = fake.calls[0]
    assert kwargs["filter"] == '(project_id == "p1")'
    assert kwargs["limit"] == 4


def test_ordered_scroll_keeps_newest_across_pages():
    fake = FakeMilvusClient(has_collection=True)
    # Storage order is unrelated to age; the newest rows sit in the last page.
    fake.query_result = [{"id": f"m{ts}", "created_at_ts": ts} for ts in (5, 1, 4, 2, 9, 3, 8)]
    index = _client(fake, scroll_batch=2)

    hits = asyncio.run(index.scroll(_project_filter(), 3, order_by="created_at_ts"))
    assert [h.id for h in hits] == ["m9", "m8", "m5"]

    oldest = asyncio.run(index.scroll(_project_filter(), 2, order_by="created_at_ts", descending=False))
    assert [h.id for h in oldest] == ["m1", "m2"]

    name, kwargs = fake.calls[0]
    assert name == "query_iterator"
    assert kwargs["batch_size"] == 2
    assert kwargs["filter"] == '(project_id == "p1")'
    assert "limit" not in kwargs


def test_unordered_scroll_is_a_single_query():
    fake = FakeMilvusClient(has_collection=True)
    fake.query_result = [{"id": "a", "created_at_ts": 1}]
    hits = asyncio.run(_client(fake).scroll(_project_filter(), 5))
    assert [h.id for h in hits] == ["a"]
    assert fake.calls[0][0] == "query"
    assert fake.calls[0][1]["limit"] == 5


def test_count_and_delete_by_filter():
    fake = FakeMilvusClient(has_collection=True)
    fake.query_result = [{"count(*)": 7}]
    index = _client(fake)

    async def run():
        n = await index.count(_project_filter())
        await index.delete_by_filter(_project_filter())
        await index.delete_by_ids(["a", "b"])
        return n

    assert asyncio.run(run()) == 7
    assert fake.calls[1] == ("delete", {"collection_name": "saga_vectors", "filter": '(project_id == "p1")', "timeout": 10.0})
    assert fake.calls[2][1]["ids"] == ["a", "b"]


def test_delete_refuses_empty_filter():
    index = _client(FakeMilvusClient(has_collection=True))
    with pytest.raises(ValueError):
        asyncio.run(index.delete_by_filter(MemoryFilter()))


def test_transient_failures_are_retried():
    fake = FakeMilvusClient(has_collection=True)
    fake.fail_times = 2
    asyncio.run(_client(fake).count(_project_filter()))
    assert len(fake.calls) == 3


def test_exhausted_retries_raise_index_error():
    fake = FakeMilvusClient(has_collection=True)
    fake.fail_times = 10
    with pytest.raises(IndexServiceError) as err:
        asyncio.run(_client(fake).count(_project_filter()))
    assert err.value.status_code == 503
    assert err.value.configured is True
    assert len(fake.calls) == 3


def test_unconfigured_client():
    for index in (IndexClient(uri="", collection="c", dim=DIM), _client(FakeMilvusClient(), enabled=False)):
        assert index.configured is False
        with pytest.raises(IndexNotConfiguredError):
            asyncio.run(index.search(vec(1), 1))
        assert asyncio.run(index.health_check())["configured"] is False


def test_health_check_never_retries_or_raises():
    fake = FakeMilvusClient(has_collection=True)
    ok = asyncio.run(_client(fake).health_check())
    assert ok["ok"] is True and ok["server_version"] == "v2.4.0"

    fake.fail_times = 5
    down = asyncio.run(_client(fake).health_check())
    assert down["ok"] is False
    assert "unavailable" in down["error"]
    assert len(fake.calls) == 2


def test_from_settings():
    from muse_memory.config.milvus import Milvus

    settings = Milvus({"muse": {"milvus": {"uri": "http://m:19530", "collection": "mem", "max_retries": 1}}})
    index = IndexClient.from_settings(settings, dim=DIM, client_factory=FakeMilvusClient)
    assert index.configured
    assert index.collection == "mem"
    assert index.retry_policy.max_retries == 1
