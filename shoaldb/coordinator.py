"""Coordinates traffic between clients and the shards on this node."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple

from shoaldb.client import PickleCodec
from shoaldb.conf import Conf
from shoaldb.errors import ShoalError
from shoaldb.messages import (
    ClientMsg,
    MeshJoin,
    MeshMsg,
    MeshQuery,
    MeshShutdown,
    QueryMetadata,
    ShutdownMsg,
)
from shoaldb.ring import Ring, ShardInfo

logger = logging.getLogger(__name__)

INBOX_SIZE = 8192

Address = Tuple[str, int]
ShardFinder = Callable[[Any, Ring], Iterable[ShardInfo]]


def _default_find_shards(query: Any, ring: Ring) -> Iterable[ShardInfo]:
    return query.find_shard(ring)


@dataclass(frozen=True)
class _MeshEnvelope:
    shard: int
    msg: MeshMsg


class _ClientListener(asyncio.DatagramProtocol):
    """Forwards every client datagram into the coordinator's inbox."""

    def __init__(self, inbox: asyncio.Queue) -> None:
        self._inbox = inbox

    def datagram_received(self, data: bytes, addr: Any) -> None:
        try:
            self._inbox.put_nowait(ClientMsg(addr=tuple(addr[:2]), data=bytes(data)))
        except asyncio.QueueFull:
            logger.warning("coordinator inbox full, dropping datagram from %s", addr)

    def error_received(self, exc: Exception) -> None:
        logger.error("client socket error: %s", exc)


class Coordinator:
    """Routes client queries to shards and tracks the shards on the ring."""

    def __init__(
        self,
        conf: Conf,
        mesh_tx: Mapping[int, asyncio.Queue],
        mesh_rx: Optional[Mapping[int, asyncio.Queue]] = None,
        *,
        codec: Any = None,
        listen: bool = True,
        find_shards: Optional[ShardFinder] = None,
    ) -> None:
        self.conf = conf
        self.mesh_tx = dict(mesh_tx)
        self.mesh_rx = dict(mesh_rx or {})
        self.codec = codec if codec is not None else PickleCodec()
        self.listen = listen
        self.ring = Ring()
        self.inbox: asyncio.Queue = asyncio.Queue(maxsize=INBOX_SIZE)
        self.listening = asyncio.Event()
        self._find_shards = find_shards if find_shards is not None else _default_find_shards
        self._transport: Optional[asyncio.DatagramTransport] = None

    @property
    def local_addr(self) -> Address:
        """The address the coordinator listens for clients on."""
        if self._transport is None:
            raise ShoalError("coordinator is not listening")
        return tuple(self._transport.get_extra_info("sockname")[:2])

    def handle_mesh(self, shard: int, msg: MeshMsg) -> None:
        """Handle a message a shard sent over the mesh."""
        if isinstance(msg, MeshJoin):
            self.ring.add(msg.info)
            logger.info("shard %s joined from mesh peer %s", msg.info.name, shard)
        elif isinstance(msg, MeshQuery):
            logger.info("query %r from %s", msg.query, msg.meta.addr)
        elif isinstance(msg, MeshShutdown):
            raise ShoalError(f"coordinator received a shutdown from shard {shard}")
        else:
            raise ShoalError(f"unknown mesh message: {msg!r}")

    async def _send_to(self, info: ShardInfo, msg: MeshMsg) -> None:
        queue = self.mesh_tx.get(info.contact.local_id)
        if queue is None:
            raise ShoalError(f"no mesh channel for {info.name}")
        await queue.put(msg)

    async def route_queries(self, addr: Address, bundle: Any) -> None:
        """Send every query of a bundle to the shards that own its data."""
        queries: List[Any] = list(bundle.queries)
        if not queries:
            raise ValueError("cannot route an empty query bundle")
        end_index = len(queries) - 1
        for index, query in enumerate(queries):
            for info in self._find_shards(query, self.ring):
                meta = QueryMetadata(addr=addr, id=bundle.id, index=index, end=index == end_index)
                await self._send_to(info, MeshQuery(meta=meta, query=query))

    async def handle_client(self, addr: Address, data: bytes) -> None:
        """Decode a client datagram and route the queries it holds."""
        try:
            bundle = self.codec.decode(data)
        except Exception as error:
            raise ShoalError(f"undecodable query bundle from {addr}") from error
        if not hasattr(bundle, "id") or not hasattr(bundle, "queries"):
            raise ShoalError(f"message from {addr} is not a query bundle")
        await self.route_queries(addr, bundle)

    async def handle_shutdown(self) -> None:
        """Tell every shard on the ring to shut down."""
        for info in self.ring.shards:
            await self._send_to(info, MeshShutdown())
            logger.info("told %s (%s) to shut down", info.name, info.contact.local_id)

    async def wait_for_shards(self, count: int, interval: float = 0.01) -> None:
        """Wait until ``count`` shards have joined the ring."""
        while len(self.ring.shards) < count:
            await asyncio.sleep(interval)

    async def _mesh_listener(self, shard: int, queue: asyncio.Queue) -> None:
        while True:
            msg = await queue.get()
            if msg is not None:
                await self.inbox.put(_MeshEnvelope(shard=shard, msg=msg))

    async def _bind(self) -> None:
        net = self.conf.networking
        loop = asyncio.get_running_loop()
        transport, _ = await loop.create_datagram_endpoint(
            lambda: _ClientListener(self.inbox), local_addr=(net.interface, net.port)
        )
        self._transport = transport
        logger.info("listening on %s:%s", *self.local_addr)
        self.listening.set()

    async def run(self) -> None:
        """Handle mesh and client messages until told to shut down."""
        listeners = [
            asyncio.create_task(self._mesh_listener(shard, queue))
            for shard, queue in self.mesh_rx.items()
        ]
        try:
            if self.listen:
                await self._bind()
            while True:
                msg = await self.inbox.get()
                if isinstance(msg, _MeshEnvelope):
                    self.handle_mesh(msg.shard, msg.msg)
                elif isinstance(msg, ClientMsg):
                    try:
                        await self.handle_client(msg.addr, msg.data)
                    except (ShoalError, ValueError) as error:
                        logger.warning("dropping client message: %s", error)
                elif isinstance(msg, ShutdownMsg):
                    await self.handle_shutdown()
                    break
                else:
                    raise ShoalError(f"unknown coordinator message: {msg!r}")
        finally:
            for task in listeners:
                task.cancel()
            for task in listeners:
                with contextlib.suppress(asyncio.CancelledError):
                    await task
            if self._transport is not None:
                self._transport.close()
                self._transport = None
            self.listening.clear()
        logger.info("coordinator shutting down")