# shoaldb

The plumbing for a small sharded database. Data is spread over shards
through a token ring. A coordinator receives query bundles from clients
over UDP and routes each query to the shards that own it. The shards run
the queries against tables that you supply and answer the client directly.

Everything runs on `asyncio` inside one process: the coordinator and the
shards are tasks that talk over `asyncio.Queue`s.

## Modules

- `shoaldb.conf`: configuration. `Conf` holds `Resources` (`cores`,
  `memory`), `Networking` (`interface`, `port`), `Tracing` (a
  `TraceLevel`) and a free-form `storage` mapping. `load_conf(path, environ)`
  reads a YAML file if it exists and lays `SHOAL_*` environment variables
  over it, with `__` separating nested keys (`SHOAL_NETWORKING__PORT=13000`).
  `conf_from_dict` builds a `Conf` from plain data. `parse_bytes` turns sizes
  such as `512`, `"10 GB"` or `"4GiB"` into a byte count. `parse_args(argv)`
  reads a `-c/--conf` option that defaults to `shoal.yml`.
  `Resources.cpus(online)` drops cpu 0 and keeps at most `cores` of the rest.
  `TraceLevel.to_filter()` gives the matching `logging` level.
- `shoaldb.ring`: `Ring.add` places 1000 evenly spaced virtual nodes for
  each `ShardInfo`. `Ring.find_shard(partition)` returns the shard that owns
  the first virtual node at or after a 64-bit partition key, wrapping round
  to the start. `ShardInfo.local(mesh_id)` describes a shard named
  `Shard-<mesh_id>`.
- `shoaldb.messages`: the dataclasses passed between the coordinator,
  shards and clients (`QueryMetadata`, `MeshJoin`, `MeshQuery`,
  `MeshShutdown`, `ClientMsg`, `ShutdownMsg`, `ShardQuery`,
  `ShardPartition`, `LoadedPartition`, `MarkEvictable`, `ShardShutdown`).
- `shoaldb.coordinator`: `Coordinator` listens for client datagrams, adds
  joining shards to its ring, routes each query of a bundle to the shards
  its `find_shard(ring)` method names, and tells every shard to shut down
  when it receives a `ShutdownMsg`.
- `shoaldb.shard`: `Shard` runs queries against its tables, sends
  responses, flushes when its queue is empty and evicts data when memory use
  exceeds `resources.memory`. `LruTracker` and `plan_evictions` pick the
  least recently used partitions covering 40% of memory use. `MeshRelay`
  forwards mesh messages into a shard's queue.
- `shoaldb.server`: `await ShoalPool.start(conf, tables_factory)` starts a
  coordinator and one shard per usable cpu and waits until they are ready;
  `await pool.exit()` shuts them down.
- `shoaldb.client`: `Shoal`, the client, and `ShoalStream`, which returns
  responses in index order even when they arrive out of order.
- `shoaldb.cursor`: `table_cursor(data)` starts a `TableCursor` at the
  smallest key of a table's row data, or returns `None` when it is empty.
- `shoaldb.errors`: `ServerError` (with `ShoalError`,
  `NonBinaryMessageError`, `MapCorruptionError`) and `ClientError` (with
  `WrongTypeError`, `StreamAlreadyTerminatedError`).

## Configuration

```yaml
resources:
  cores: 4
  memory: 2 GiB
networking:
  interface: 127.0.0.1
  port: 12000
tracing:
  level: Info
```

If a `resources` section is given it must include `memory`. Trace levels
are `Trace`, `Debug`, `Info`, `Warn`, `Error` and `Off`.

```python
import os
from shoaldb.conf import load_conf, parse_args

args = parse_args(None)
conf = load_conf(args.conf, os.environ)
print(conf.networking.to_addr())
```

## Routing with the ring

```python
from shoaldb.ring import Ring, ShardInfo

ring = Ring()
for mesh_id in (1, 2, 3):
    ring.add(ShardInfo.local(mesh_id))

owner = ring.find_shard(0xDEADBEEF)
print(owner.name)
```

## Running a pool

```python
from shoaldb.server import ShoalPool

async def serve(conf, make_tables):
    pool = await ShoalPool.start(conf, make_tables)
    ...
    await pool.exit()
```

`make_tables(info, conf)` (plain or coroutine function) returns the tables a
shard serves. They must provide `handle(meta, query)`, returning
`(addr, response)` or `None`, and `handle_flushed`, `load_partition`,
`mark_evictable`, `evict`, `flush` and `shutdown`.

## Querying

Messages are encoded with `PickleCodec` unless you pass another codec with
`encode` and `decode` methods. Use pickle only between parties that trust
each other. Responses must carry `query_id`, `index` and `end` attributes.

```python
from shoaldb.client import Shoal

async def run(server, my_query):
    client = await Shoal.open(("127.0.0.1", 0), server)
    bundle = client.query()
    bundle.add(my_query)
    stream = await client.send(bundle)
    first = await stream.next()
    client.close()
    return first
```

`ShoalStream.next` returns `None` once the stream has delivered its last
response. `skip(count)` discards up to `count` responses. `next_typed` and
`next_typed_first` pass each response through a function you give them to
turn it into rows.

## What it does not do

- It ships no tables and no storage engine: query execution, persistence,
  partition loading and eviction are all left to the tables you supply.
- It has no command-line program; start a pool from your own code.
- Shards run as tasks in one process and one event loop, not on separate
  cpus or threads, and there is no communication between nodes.