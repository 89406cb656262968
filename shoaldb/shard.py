"""A single shard of a Shoal server and the helpers it runs on."""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import logging
import math
from collections import OrderedDict
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    Hashable,
    Iterator,
    List,
    Optional,
    Protocol,
    Tuple,
    Union,
)

from shoaldb.conf import Conf
from shoaldb.errors import ShoalError
from shoaldb.messages import (
    MarkEvictable,
    MeshJoin,
    MeshMsg,
    MeshQuery,
    MeshShutdown,
    QueryMetadata,
    ShardPartition,
    ShardQuery,
    ShardShutdown,
)
from shoaldb.ring import ShardInfo

logger = logging.getLogger(__name__)

EVICTION_FRACTION = 0.40

Address = Tuple[str, int]
LruKey = Tuple[Hashable, int]
Reply = Callable[[Address, Any], Union[Awaitable[None], None]]


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


class LruTracker:
    """Tracks how recently each ``(table, partition)`` was used and its size."""

    def __init__(self) -> None:
        self._entries: "OrderedDict[LruKey, int]" = OrderedDict()

    def touch(self, key: LruKey, size: int) -> None:
        """Record a use of ``key`` with its current size, making it most recent."""
        if size < 0:
            raise ValueError(f"size cannot be negative: {size}")
        self._entries[key] = size
        self._entries.move_to_end(key)

    def pop_lru(self) -> Optional[Tuple[LruKey, int]]:
        """Remove and return the least recently used ``(key, size)``, or None."""
        if not self._entries:
            return None
        return self._entries.popitem(last=False)

    @property
    def total_size(self) -> int:
        """The summed size of every tracked entry."""
        return sum(self._entries.values())

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def __iter__(self) -> Iterator[LruKey]:
        return iter(self._entries)


def plan_evictions(lru: LruTracker, memory_usage: int) -> Dict[Hashable, List[int]]:
    """Pop least recently used partitions until 40% of ``memory_usage`` is covered.

    At least one entry is popped whenever the tracker is not empty.
    Returns the partitions to evict grouped by table.
    """
    need = math.ceil(memory_usage * EVICTION_FRACTION)
    evictable: Dict[Hashable, List[int]] = {}
    while (popped := lru.pop_lru()) is not None:
        (table, partition), size = popped
        evictable.setdefault(table, []).append(partition)
        need = max(need - size, 0)
        if need == 0:
            break
    return evictable


class ShardTables(Protocol):
    """What a shard needs from the tables it serves."""

    def handle(
        self, meta: QueryMetadata, query: Any
    ) -> Awaitable[Optional[Tuple[Address, Any]]]: ...

    def handle_flushed(self, flushed: List[Tuple[Address, Any]]) -> Awaitable[None]: ...

    def load_partition(self, loaded: ShardPartition, shard_local: asyncio.Queue) -> Any: ...

    def mark_evictable(self, table: Hashable, generation: int, partitions: Any) -> Any: ...

    def evict(self, table: Hashable, victims: List[int]) -> Any: ...

    def flush(self) -> Any: ...

    def shutdown(self) -> Any: ...


class MeshRelay:
    """Forwards messages from the node mesh into a shard's local queue."""

    def __init__(self, mesh_rx: asyncio.Queue, shard_local: asyncio.Queue) -> None:
        self.mesh_rx = mesh_rx
        self.shard_local = shard_local

    async def run(self) -> None:
        """Relay until a shutdown is forwarded or the mesh yields None."""
        while (msg := await self.mesh_rx.get()) is not None:
            if isinstance(msg, MeshJoin):
                raise ShoalError("a shard received a join message")
            if isinstance(msg, MeshQuery):
                await self.shard_local.put(ShardQuery(meta=msg.meta, query=msg.query))
            elif isinstance(msg, MeshShutdown):
                await self.shard_local.put(ShardShutdown())
                break
            else:
                raise ShoalError(f"unknown mesh message: {msg!r}")


class Shard:
    """Executes queries against its tables and sends responses back to clients."""

    def __init__(
        self,
        info: ShardInfo,
        conf: Conf,
        tables: ShardTables,
        mesh_tx: asyncio.Queue,
        mesh_rx: asyncio.Queue,
        reply: Reply,
        *,
        lru: Optional[LruTracker] = None,
        memory_usage: Optional[Callable[[], int]] = None,
    ) -> None:
        self.info = info
        self.conf = conf
        self.tables = tables
        self.lru = lru if lru is not None else LruTracker()
        self.shard_local: asyncio.Queue = asyncio.Queue()
        self.flushed: List[Tuple[Address, Any]] = []
        self._mesh_tx = mesh_tx
        self._mesh_rx = mesh_rx
        self._reply_fn = reply
        self._memory_usage = memory_usage

    @property
    def memory_usage(self) -> int:
        """The total size of the data held by this shard."""
        if self._memory_usage is not None:
            return self._memory_usage()
        return self.lru.total_size

    async def _reply(self, addr: Address, response: Any) -> None:
        await _maybe_await(self._reply_fn(addr, response))

    async def handle_query(self, meta: QueryMetadata, query: Any) -> None:
        """Run a query and reply right away if it produced a response."""
        result = await _maybe_await(self.tables.handle(meta, query))
        if result is not None:
            addr, response = result
            await self._reply(addr, response)

    async def handle_flushed(self) -> None:
        """Send every response whose query has been flushed to storage."""
        await _maybe_await(self.tables.handle_flushed(self.flushed))
        while self.flushed:
            addr, response = self.flushed.pop()
            await self._reply(addr, response)

    async def evict_data(self) -> None:
        """Evict least recently used partitions to relieve memory pressure."""
        for table, victims in plan_evictions(self.lru, self.memory_usage).items():
            await _maybe_await(self.tables.evict(table, victims))

    async def _next_message(self, relay: asyncio.Task) -> Any:
        getter = asyncio.ensure_future(self.shard_local.get())
        done, _ = await asyncio.wait({getter, relay}, return_when=asyncio.FIRST_COMPLETED)
        if getter in done:
            return getter.result()
        getter.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await getter
        if not self.shard_local.empty():
            return self.shard_local.get_nowait()
        relay.result()
        logger.info("%s: mesh closed, shutting down", self.info.name)
        return ShardShutdown()

    async def run(self) -> None:
        """Join the ring and handle messages until told to shut down."""
        await self._mesh_tx.put(MeshJoin(self.info))
        relay = asyncio.create_task(MeshRelay(self._mesh_rx, self.shard_local).run())
        try:
            while True:
                msg = await self._next_message(relay)
                if isinstance(msg, ShardQuery):
                    await self.handle_query(msg.meta, msg.query)
                elif isinstance(msg, ShardPartition):
                    await _maybe_await(self.tables.load_partition(msg, self.shard_local))
                elif isinstance(msg, MarkEvictable):
                    await _maybe_await(
                        self.tables.mark_evictable(msg.table, msg.generation, msg.partitions)
                    )
                elif isinstance(msg, ShardShutdown):
                    break
                else:
                    raise ShoalError(f"unknown shard message: {msg!r}")
                if self.shard_local.empty():
                    await _maybe_await(self.tables.flush())
                await self.handle_flushed()
                if self.memory_usage > self.conf.resources.memory:
                    await self.evict_data()
        finally:
            if not relay.done():
                relay.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await relay
        await self.handle_flushed()
        await _maybe_await(self.tables.shutdown())
        logger.info("%s: shut down", self.info.name)