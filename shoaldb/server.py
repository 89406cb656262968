"""A pool of shards and their coordinator running on one node."""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import os
from typing import Any, Callable, List

from shoaldb.client import PickleCodec
from shoaldb.conf import Conf
from shoaldb.coordinator import Coordinator
from shoaldb.errors import ServerError
from shoaldb.messages import ShutdownMsg
from shoaldb.ring import ShardInfo
from shoaldb.shard import Shard

TablesFactory = Callable[[ShardInfo, Conf], Any]


class ShoalPool:
    """A running coordinator and its shards."""

    def __init__(
        self,
        coordinator: Coordinator,
        coordinator_task: asyncio.Task,
        shards: List[Shard],
        shard_tasks: List[asyncio.Task],
        transports: List[asyncio.DatagramTransport],
    ) -> None:
        self.coordinator = coordinator
        self.coordinator_task = coordinator_task
        self.shards = shards
        self.shard_tasks = shard_tasks
        self._transports = transports

    @classmethod
    async def start(cls, conf: Conf, tables_factory: TablesFactory) -> ShoalPool:
        """Start a coordinator and one shard per usable cpu.

        ``tables_factory(info, conf)`` builds the tables each shard serves and
        may be a coroutine function.
        """
        codec = PickleCodec()
        online = range(os.cpu_count() or 1)
        cpus = conf.resources.cpus(online)
        if not cpus:
            raise ServerError("no cpus are available to run shards on")
        mesh_ids = list(range(1, len(cpus) + 1))
        to_shards = {mesh_id: asyncio.Queue() for mesh_id in mesh_ids}
        from_shards = {mesh_id: asyncio.Queue() for mesh_id in mesh_ids}
        coordinator = Coordinator(conf, to_shards, from_shards, codec=codec)
        loop = asyncio.get_running_loop()
        transports: List[asyncio.DatagramTransport] = []
        shards: List[Shard] = []
        tasks: List[asyncio.Task] = []
        coordinator_task = asyncio.create_task(coordinator.run())
        try:
            for mesh_id in mesh_ids:
                info = ShardInfo.local(mesh_id)
                tables = tables_factory(info, conf)
                if inspect.isawaitable(tables):
                    tables = await tables
                transport, _ = await loop.create_datagram_endpoint(
                    asyncio.DatagramProtocol, local_addr=(conf.networking.interface, 0)
                )
                transports.append(transport)
                shard = Shard(
                    info,
                    conf,
                    tables,
                    from_shards[mesh_id],
                    to_shards[mesh_id],
                    _replier(transport, codec),
                )
                shards.append(shard)
                tasks.append(asyncio.create_task(shard.run()))
            await _wait_ready(coordinator, coordinator_task, len(shards))
        except BaseException:
            for task in [coordinator_task, *tasks]:
                task.cancel()
            for task in [coordinator_task, *tasks]:
                with contextlib.suppress(BaseException):
                    await task
            for transport in transports:
                transport.close()
            raise
        return cls(coordinator, coordinator_task, shards, tasks, transports)

    async def exit(self) -> None:
        """Signal the coordinator and every shard to exit and wait for them."""
        await self.coordinator.inbox.put(ShutdownMsg())
        try:
            await self.coordinator_task
            results = await asyncio.gather(*self.shard_tasks, return_exceptions=True)
        finally:
            for transport in self._transports:
                transport.close()
        errors = [result for result in results if isinstance(result, BaseException)]
        if errors:
            raise ServerError(f"{len(errors)} shard(s) failed") from errors[0]


def _replier(transport: asyncio.DatagramTransport, codec: Any) -> Callable[[Any, Any], None]:
    def reply(addr: Any, response: Any) -> None:
        transport.sendto(codec.encode(response), addr)

    return reply


async def _wait_ready(coordinator: Coordinator, task: asyncio.Task, shards: int) -> None:
    ready = asyncio.ensure_future(_ready(coordinator, shards))
    done, _ = await asyncio.wait({ready, task}, return_when=asyncio.FIRST_COMPLETED)
    if ready in done:
        ready.result()
        return
    ready.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await ready
    task.result()
    raise ServerError("coordinator exited before the shards joined")


async def _ready(coordinator: Coordinator, shards: int) -> None:
    await coordinator.listening.wait()
    await coordinator.wait_for_shards(shards)