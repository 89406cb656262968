"""An asyncio UDP client for a Shoal server.

Responses from the server are any objects with three attributes:
``query_id`` (the :class:`uuid.UUID` of the bundle they answer),
``index`` (their position in the response stream) and ``end``
(true on the last response of the stream).
"""

from __future__ import annotations

import asyncio
import logging
import pickle
import uuid
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple

from shoaldb.errors import ClientError, StreamAlreadyTerminatedError

logger = logging.getLogger(__name__)

DEFAULT_SERVER: Tuple[str, int] = ("127.0.0.1", 12000)
MAX_SPARE_QUEUES = 8192

Address = Tuple[str, int]
Retriever = Callable[[Any], Optional[List[Any]]]


@dataclass
class QueryBundle:
    """A batch of queries sent to the server under one id."""

    id: uuid.UUID = field(default_factory=uuid.uuid4)
    queries: List[Any] = field(default_factory=list)

    def add(self, query: Any) -> QueryBundle:
        """Append a query and return the bundle for chaining."""
        self.queries.append(query)
        return self


class PickleCodec:
    """Encode and decode wire messages with :mod:`pickle`.

    Only use this with servers and clients that trust each other.
    """

    def encode(self, value: Any) -> bytes:
        """Serialize a value to bytes."""
        return pickle.dumps(value, protocol=pickle.HIGHEST_PROTOCOL)

    def decode(self, data: bytes) -> Any:
        """Deserialize bytes produced by :meth:`encode`."""
        return pickle.loads(data)


class ShoalStream:
    """The ordered stream of responses to one query bundle."""

    def __init__(
        self,
        id: uuid.UUID,
        channel_map: Optional[Dict[uuid.UUID, ShoalStream]] = None,
        spares: Optional[Deque[asyncio.Queue]] = None,
        queue: Optional[asyncio.Queue] = None,
    ) -> None:
        self.id = id
        self._channel_map = channel_map if channel_map is not None else {}
        self._spares = spares
        self._queue: Optional[asyncio.Queue] = queue if queue is not None else asyncio.Queue()
        self._next_index = 0
        self._pending: Dict[int, Any] = {}

    @property
    def finished(self) -> bool:
        """Whether the final response has been returned."""
        return self._queue is None

    def deliver(self, response: Any) -> None:
        """Hand a response received from the server to this stream."""
        if self._queue is None:
            raise StreamAlreadyTerminatedError()
        self._queue.put_nowait(response)

    async def _wait_for_next_response(self) -> Any:
        queue = self._queue
        if queue is None:
            raise StreamAlreadyTerminatedError()
        while True:
            if self._next_index in self._pending:
                self._next_index += 1
                return self._pending.pop(self._next_index - 1)
            response = await queue.get()
            index = response.index
            if index == self._next_index:
                self._next_index += 1
                return response
            self._pending[index] = response

    def _finish(self) -> None:
        self._channel_map.pop(self.id, None)
        queue, self._queue = self._queue, None
        if queue is None or self._spares is None:
            return
        while not queue.empty():
            queue.get_nowait()
        self._spares.append(queue)

    async def next(self) -> Any:
        """Return the next response in order, or None once the stream has ended."""
        if self._queue is None:
            return None
        response = await self._wait_for_next_response()
        if response.end:
            self._finish()
        return response

    async def skip(self, count: int) -> None:
        """Discard up to ``count`` responses, stopping early if the stream ends."""
        if count < 0:
            raise ValueError(f"cannot skip a negative number of responses: {count}")
        while count > 0 and await self.next() is not None:
            count -= 1

    async def next_typed(self, retrieve: Retriever) -> Optional[List[Any]]:
        """Return the rows ``retrieve`` extracts from the next response.

        Returns None once the stream has ended; ``retrieve`` may itself return
        None or raise :class:`~shoaldb.errors.WrongTypeError`.
        """
        response = await self.next()
        if response is None:
            return None
        return retrieve(response)

    async def next_typed_first(self, retrieve: Retriever) -> Any:
        """Return the first row of the next response, ignoring any others."""
        rows = await self.next_typed(retrieve)
        if not rows:
            return None
        return rows[0]


class _ResponseProxy(asyncio.DatagramProtocol):
    """Routes datagrams from the server to the stream waiting for them."""

    def __init__(self, channel_map: Dict[uuid.UUID, ShoalStream], codec: Any) -> None:
        self._channel_map = channel_map
        self._codec = codec

    def datagram_received(self, data: bytes, addr: Address) -> None:
        try:
            response = self._codec.decode(data)
            query_id = response.query_id
        except Exception:
            logger.exception("dropping undecodable response from %s", addr)
            return
        stream = self._channel_map.get(query_id)
        if stream is None:
            logger.warning("no stream waiting for response %s from %s", query_id, addr)
            return
        stream.deliver(response)

    def error_received(self, exc: Exception) -> None:
        logger.error("socket error: %s", exc)


class Shoal:
    """A client that sends query bundles to a Shoal server over UDP."""

    def __init__(self, server: Address = DEFAULT_SERVER, codec: Any = None) -> None:
        self.server = server
        self.codec = codec if codec is not None else PickleCodec()
        self.channel_map: Dict[uuid.UUID, ShoalStream] = {}
        self._spares: Deque[asyncio.Queue] = deque(maxlen=MAX_SPARE_QUEUES)
        self._transport: Optional[asyncio.DatagramTransport] = None

    @classmethod
    async def open(
        cls, addr: Address, server: Address = DEFAULT_SERVER, codec: Any = None
    ) -> Shoal:
        """Bind a client to ``addr`` and start routing responses."""
        shoal = cls(server, codec)
        loop = asyncio.get_running_loop()
        transport, _ = await loop.create_datagram_endpoint(
            lambda: _ResponseProxy(shoal.channel_map, shoal.codec), local_addr=addr
        )
        shoal._transport = transport
        return shoal

    @property
    def local_addr(self) -> Address:
        """The address this client is bound to."""
        if self._transport is None:
            raise ClientError("client is not open")
        return self._transport.get_extra_info("sockname")[:2]

    def query(self) -> QueryBundle:
        """Start a new, empty query bundle."""
        return QueryBundle()

    def _track_response(self, queries: QueryBundle) -> ShoalStream:
        queue = self._spares.pop() if self._spares else asyncio.Queue()
        while queries.id in self.channel_map:
            queries.id = uuid.uuid4()
        stream = ShoalStream(queries.id, self.channel_map, self._spares, queue)
        self.channel_map[queries.id] = stream
        return stream

    async def send(self, queries: QueryBundle) -> ShoalStream:
        """Send a bundle to the server and return the stream of its responses."""
        transport = self._transport
        if transport is None or transport.is_closing():
            raise ClientError("client is closed")
        stream = self._track_response(queries)
        try:
            transport.sendto(self.codec.encode(queries), self.server)
        except Exception:
            self.channel_map.pop(stream.id, None)
            raise
        return stream

    def close(self) -> None:
        """Stop receiving responses and release the socket."""
        if self._transport is not None:
            self._transport.close()
            self._transport = None

    async def __aenter__(self) -> Shoal:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        self.close()