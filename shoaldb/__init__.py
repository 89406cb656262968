"""Sharded database plumbing: configuration, token ring, coordinator, shards and a UDP client."""

__version__ = "0.1.0"

__all__ = ["client", "conf", "coordinator", "cursor", "errors", "messages", "ring", "server", "shard"]