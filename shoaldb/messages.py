"""Messages passed between the coordinator, shards and their workers."""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Any, Hashable, Sequence

from shoaldb.ring import ShardInfo


@dataclass(frozen=True)
class QueryMetadata:
    """Where a query came from and its place in a bundle."""

    addr: tuple[str, int]
    id: uuid.UUID
    index: int
    end: bool

    def __post_init__(self) -> None:
        if self.index < 0:
            raise ValueError(f"query index cannot be negative: {self.index}")


class MeshMsg:
    """Base of the messages sent over a node's local mesh."""


@dataclass(frozen=True)
class MeshJoin(MeshMsg):
    """A shard joining the node's token ring."""

    info: ShardInfo


@dataclass(frozen=True)
class MeshQuery(MeshMsg):
    """A query for a shard to execute."""

    meta: QueryMetadata
    query: Any


@dataclass(frozen=True)
class MeshShutdown(MeshMsg):
    """Tell a shard to shut down."""


@dataclass(frozen=True)
class ClientMsg:
    """A raw datagram received from a client."""

    addr: tuple[str, int]
    data: bytes


@dataclass(frozen=True)
class ShutdownMsg:
    """Tell the whole server to shut down."""


@dataclass(frozen=True)
class LoadedPartition:
    """A partition read back from storage."""

    partition_id: int
    data: bytes


@dataclass(frozen=True)
class ShardQuery:
    """A query handed to a shard's worker loop."""

    meta: QueryMetadata
    query: Any


@dataclass(frozen=True)
class ShardPartition:
    """A loaded partition for a specific table."""

    table: Hashable
    loaded: LoadedPartition


@dataclass(frozen=True)
class MarkEvictable:
    """Mark some of a table's partitions as evictable."""

    generation: int
    table: Hashable
    partitions: Sequence[int]

    def __post_init__(self) -> None:
        object.__setattr__(self, "partitions", tuple(self.partitions))


@dataclass(frozen=True)
class ShardShutdown:
    """Tell a shard's worker loop to shut down."""