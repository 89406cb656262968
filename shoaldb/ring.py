"""The token ring that decides which shard owns a partition."""

from __future__ import annotations

import bisect
import hashlib
from dataclasses import dataclass
from typing import Iterator

U64_MAX = 2**64 - 1
VNODES_PER_SHARD = 1000
RING_JUMP = U64_MAX // VNODES_PER_SHARD


@dataclass(frozen=True)
class ShardContact:
    """How to reach a shard; currently always a local mesh peer."""

    local_id: int


@dataclass(frozen=True)
class ShardInfo:
    """A shard's name and contact details."""

    name: str
    contact: ShardContact

    @classmethod
    def local(cls, mesh_id: int) -> ShardInfo:
        """Describe a shard on this node by its mesh peer id."""
        return cls(name=f"Shard-{mesh_id}", contact=ShardContact(mesh_id))


def _hash_name(name: str) -> int:
    digest = hashlib.blake2b(name.encode(), digest_size=8).digest()
    return int.from_bytes(digest, "little")


class Ring:
    """A consistent-hash ring with virtual nodes for every shard."""

    def __init__(self) -> None:
        self.shards: list[ShardInfo] = []
        self._owners: dict[int, int] = {}
        self._vnodes: list[int] = []

    def add(self, shard: ShardInfo) -> None:
        """Place a shard on the ring at evenly spaced virtual nodes."""
        vnode = _hash_name(shard.name)
        self.shards.append(shard)
        index = len(self.shards) - 1
        for _ in range(VNODES_PER_SHARD):
            vnode = (vnode + RING_JUMP) & U64_MAX
            if vnode not in self._owners:
                bisect.insort(self._vnodes, vnode)
            self._owners[vnode] = index

    def find_shard(self, partition: int) -> ShardInfo:
        """Return the shard owning the first virtual node at or after ``partition``."""
        if not 0 <= partition <= U64_MAX:
            raise ValueError(f"partition out of range: {partition}")
        if not self._vnodes:
            raise LookupError("ring has no shards")
        position = bisect.bisect_left(self._vnodes, partition)
        if position == len(self._vnodes):
            position = 0
        return self.shards[self._owners[self._vnodes[position]]]

    def vnodes(self) -> Iterator[tuple[int, int]]:
        """Yield ``(vnode, shard index)`` pairs in ring order."""
        for vnode in self._vnodes:
            yield vnode, self._owners[vnode]

    def __len__(self) -> int:
        return len(self._vnodes)