import asyncio
import math
import uuid

import pytest

from shoaldb.conf import Conf, Resources
from shoaldb.errors import ShoalError
from shoaldb.messages import (
    LoadedPartition,
    MarkEvictable,
    MeshJoin,
    MeshQuery,
    MeshShutdown,
    QueryMetadata,
    ShardPartition,
    ShardQuery,
    ShardShutdown,
)
from shoaldb.ring import ShardInfo
from shoaldb.shard import LruTracker, MeshRelay, Shard, plan_evictions

ADDR = ("127.0.0.1", 40000)


class FakeTables:
    def __init__(self, flushed=None):
        self.calls = []
        self.pending_flushed = list(flushed or [])

    async def handle(self, meta, query):
        self.calls.append(("handle", query))
        if query == "silent":
            return None
        return meta.addr, f"resp-{query}"

    async def handle_flushed(self, flushed):
        flushed.extend(self.pending_flushed)
        self.pending_flushed.clear()

    async def load_partition(self, loaded, shard_local):
        self.calls.append(("load", loaded.table, loaded.loaded.partition_id))

    def mark_evictable(self, table, generation, partitions):
        self.calls.append(("mark", table, generation, tuple(partitions)))

    def evict(self, table, victims):
        self.calls.append(("evict", table, list(victims)))

    async def flush(self):
        self.calls.append(("flush",))

    async def shutdown(self):
        self.calls.append(("shutdown",))


def meta(index=0, end=True):
    return QueryMetadata(addr=ADDR, id=uuid.uuid4(), index=index, end=end)


def build_shard(tables, conf=None, **kwargs):
    replies = []

    async def reply(addr, response):
        replies.append((addr, response))

    mesh_tx = asyncio.Queue()
    mesh_rx = asyncio.Queue()
    shard = Shard(
        ShardInfo.local(1), conf or Conf(), tables, mesh_tx, mesh_rx, reply, **kwargs
    )
    return shard, mesh_tx, mesh_rx, replies


def test_lru_pops_least_recent_first():
    lru = LruTracker()
    lru.touch(("a", 1), 10)
    lru.touch(("b", 2), 20)
    lru.touch(("a", 1), 15)
    assert lru.pop_lru() == (("b", 2), 20)
    assert lru.pop_lru() == (("a", 1), 15)
    assert lru.pop_lru() is None


def test_lru_total_size_and_membership():
    lru = LruTracker()
    lru.touch(("t", 1), 7)
    lru.touch(("t", 2), 3)
    lru.touch(("t", 1), 5)
    assert lru.total_size == 5 + 3
    assert len(lru) == 2
    assert ("t", 2) in lru
    assert list(lru) == [("t", 2), ("t", 1)]


def test_lru_rejects_negative_size():
    with pytest.raises(ValueError):
        LruTracker().touch(("t", 1), -1)


def test_plan_evictions_empty():
    assert plan_evictions(LruTracker(), 1000) == {}


def test_plan_evictions_covers_needed_fraction():
    lru = LruTracker()
    sizes = {}
    for partition in range(10):
        lru.touch(("t", partition), 10)
        sizes[partition] = 10
    usage = 100
    plan = plan_evictions(lru, usage)
    evicted = plan["t"]
    need = math.ceil(usage * 0.40)
    total = sum(sizes[p] for p in evicted)
    assert total >= need
    assert total - sizes[evicted[-1]] < need
    assert evicted == sorted(evicted)
    assert len(lru) == 10 - len(evicted)


def test_plan_evictions_groups_by_table():
    lru = LruTracker()
    lru.touch(("a", 1), 1)
    lru.touch(("b", 2), 1)
    lru.touch(("a", 3), 1)
    plan = plan_evictions(lru, 1000)
    assert plan == {"a": [1, 3], "b": [2]}
    assert len(lru) == 0


def test_plan_evictions_pops_one_when_nothing_needed():
    lru = LruTracker()
    lru.touch(("a", 1), 5)
    lru.touch(("a", 2), 5)
    assert plan_evictions(lru, 0) == {"a": [1]}
    assert list(lru) == [("a", 2)]


@pytest.mark.asyncio
async def test_mesh_relay_forwards_queries_and_shutdown():
    mesh_rx, local = asyncio.Queue(), asyncio.Queue()
    m = meta()
    await mesh_rx.put(MeshQuery(meta=m, query="q"))
    await mesh_rx.put(MeshShutdown())
    await mesh_rx.put(MeshQuery(meta=m, query="late"))
    await MeshRelay(mesh_rx, local).run()
    assert local.get_nowait() == ShardQuery(meta=m, query="q")
    assert local.get_nowait() == ShardShutdown()
    assert local.empty()
    assert mesh_rx.qsize() == 1


@pytest.mark.asyncio
async def test_mesh_relay_rejects_join():
    mesh_rx, local = asyncio.Queue(), asyncio.Queue()
    await mesh_rx.put(MeshJoin(ShardInfo.local(3)))
    with pytest.raises(ShoalError):
        await MeshRelay(mesh_rx, local).run()


@pytest.mark.asyncio
async def test_mesh_relay_stops_on_closed_mesh():
    mesh_rx, local = asyncio.Queue(), asyncio.Queue()
    await mesh_rx.put(None)
    await MeshRelay(mesh_rx, local).run()
    assert local.empty()


@pytest.mark.asyncio
async def test_handle_query_replies():
    tables = FakeTables()
    shard, _, _, replies = build_shard(tables)
    await shard.handle_query(meta(), "x")
    await shard.handle_query(meta(), "silent")
    assert replies == [(ADDR, "resp-x")]
    assert tables.calls == [("handle", "x"), ("handle", "silent")]


@pytest.mark.asyncio
async def test_handle_flushed_replies_in_pop_order():
    tables = FakeTables(flushed=[(ADDR, "first"), (ADDR, "second")])
    shard, _, _, replies = build_shard(tables)
    await shard.handle_flushed()
    assert replies == [(ADDR, "second"), (ADDR, "first")]
    assert shard.flushed == []


@pytest.mark.asyncio
async def test_evict_data_calls_tables():
    tables = FakeTables()
    lru = LruTracker()
    lru.touch(("a", 1), 1)
    lru.touch(("b", 4), 1)
    shard, _, _, _ = build_shard(tables, lru=lru, memory_usage=lambda: 1000)
    await shard.evict_data()
    assert ("evict", "a", [1]) in tables.calls
    assert ("evict", "b", [4]) in tables.calls
    assert len(lru) == 0


@pytest.mark.asyncio
async def test_run_joins_handles_queries_and_shuts_down():
    tables = FakeTables()
    shard, mesh_tx, mesh_rx, replies = build_shard(tables)
    await mesh_rx.put(MeshQuery(meta=meta(), query="a"))
    await mesh_rx.put(MeshShutdown())
    await asyncio.wait_for(shard.run(), timeout=5)
    assert mesh_tx.get_nowait() == MeshJoin(ShardInfo.local(1))
    assert replies == [(ADDR, "resp-a")]
    assert ("handle", "a") in tables.calls
    assert tables.calls[-1] == ("shutdown",)


@pytest.mark.asyncio
async def test_run_handles_partitions_and_marks():
    tables = FakeTables()
    shard, _, mesh_rx, _ = build_shard(tables)
    await shard.shard_local.put(
        ShardPartition(table="t", loaded=LoadedPartition(partition_id=9, data=b"row"))
    )
    await shard.shard_local.put(MarkEvictable(generation=2, table="t", partitions=[1, 2]))
    await mesh_rx.put(MeshShutdown())
    await asyncio.wait_for(shard.run(), timeout=5)
    assert tables.calls.index(("load", "t", 9)) < tables.calls.index(("mark", "t", 2, (1, 2)))


@pytest.mark.asyncio
async def test_run_evicts_under_memory_pressure():
    tables = FakeTables()
    lru = LruTracker()
    lru.touch(("t", 1), 100)
    conf = Conf(resources=Resources(memory=50))
    shard, _, mesh_rx, _ = build_shard(tables, conf=conf, lru=lru)
    await shard.shard_local.put(MarkEvictable(generation=1, table="t", partitions=[1]))
    await mesh_rx.put(MeshShutdown())
    await asyncio.wait_for(shard.run(), timeout=5)
    assert ("evict", "t", [1]) in tables.calls
    assert len(lru) == 0


@pytest.mark.asyncio
async def test_run_propagates_relay_failure():
    tables = FakeTables()
    shard, _, mesh_rx, _ = build_shard(tables)
    await mesh_rx.put(MeshJoin(ShardInfo.local(2)))
    with pytest.raises(ShoalError):
        await asyncio.wait_for(shard.run(), timeout=5)
    assert ("shutdown",) not in tables.calls