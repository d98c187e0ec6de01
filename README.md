# lagwatch

`lagwatch` watches Kafka consumer groups and the clusters they read from. It
collects broker end offsets, consumer committed offsets and partition
ownership, and forwards everything as `StorageRequest` objects on a queue to
whatever component keeps the state and evaluates lag.

## Modules

- `lagwatch.app` – the application core: `Config` (a dotted, case-insensitive
  key store with defaults), `ApplicationContext` (config, logger, storage and
  evaluator queues, `configuration_valid`, `app_ready`), the `Module` and
  `Coordinator` interfaces, `StorageRequest` with its `RequestType`,
  `start_modules` / `stop_modules`, `send_storage_request` (a queue put with a
  timeout), `validate_host_list` and `validate_zookeeper_path`, and
  `start(app, coordinators, exit_event)`. `start` configures the coordinators
  in order, starts them (stopping the already started ones in reverse if one
  fails), blocks until `exit_event` is set, then stops them in reverse order.
  It returns 0 on a clean shutdown and 1 on any failure. Configuration
  problems raise `ConfigurationError`.
- `lagwatch.decoding` – a big-endian `Reader` and decoders for the binary
  records of Kafka's `__consumer_offsets` topic: offset keys, offset values
  (v0/v1 and v3), group metadata headers (v0/v1 and v2/v3), group members and
  their partition assignments. Truncated or malformed input raises
  `DecodeError`, whose `error_at` names the field that could not be read.
- `lagwatch.kafka_client` – `KafkaClient`, a consumer module that reads every
  partition of the offsets topic, filters groups through a regular-expression
  allowlist and denylist, and sends consumer offset, consumer owner, owner
  clearing and group deletion requests. It also reports its own progress as
  the group `burrow-<name>`, and with `start-latest` plus `backfill-earliest`
  it additionally reads each partition from the oldest offset up to the
  newest one present at start.
- `lagwatch.cluster` – `KafkaCluster`, which refreshes topic metadata,
  fetches the newest offset of every partition from its leader broker in
  parallel, reports deleted topics and, when `groups-reaper-refresh` is set,
  removes groups from storage that the cluster no longer lists; and
  `ClusterCoordinator`, which builds a `KafkaCluster` for every entry of the
  `cluster` section whose `class-name` is `kafka`.
- `lagwatch.zk_client` – `KafkaZkClient`, which follows the `/consumers` tree
  of a ZooKeeper ensemble with watches (groups, topics, partitions, offsets and
  owners) for old-style consumers, and sets the watches up again after a
  session expires and reconnects.
- `lagwatch.consumer_coordinator` – `ConsumerCoordinator`, which builds a
  `KafkaClient` (`class-name` `kafka`) or `KafkaZkClient` (`kafka_zk`) for every
  entry of the `consumer` section, checks that each refers to a configured
  cluster, and sets `app_ready` once all of them have started.

## Supplying network clients

The package contains no Kafka or ZooKeeper network code. Clients are
injected, so any client library wrapped to offer the methods below, or a test
double, will do.

- `KafkaCluster` and `ClusterCoordinator` take a factory called as
  `factory(servers, client_profile)`. The client it returns needs
  `refresh_metadata()`, `topics()`, `partitions(topic)`,
  `leader(topic, partition)`, `list_consumer_groups()` and `close()`. A
  broker has an `id`, `close()` and `get_available_offsets(request)`, which
  returns a mapping of topic to partition to the newest offset, or to an
  exception for a partition that failed.
- `KafkaClient` takes a factory of the same form. Its client needs
  `new_consumer()`, `partitions(topic)`, `get_offset(topic, partition, time)`
  and `close()`; a consumer needs `consume_partition(topic, partition,
  offset)`, returning a partition consumer with `messages()` and `errors()`
  (each a `queue.Queue` of `ConsumerMessage` / `ConsumerError`) and
  `async_close()`.
- `KafkaZkClient` takes `connect(servers, session_timeout_seconds, logger)`,
  returning the client and a `queue.Queue` of connection `ZkEvent`s. The
  client needs `children_w(path)`, `exists_w(path)`, `get_w(path)` and
  `close()`; each watch method returns its result, a `ZkStat` and a queue on
  which the watch's `ZkEvent` arrives. `None` on a queue means it was closed.

## Configuration

```python
from lagwatch.app import Config

config = Config()
config.set("cluster.local.class-name", "kafka")
config.set("cluster.local.servers", ["broker1.example.com:9092"])
config.set("consumer.local.class-name", "kafka")
config.set("consumer.local.cluster", "local")
config.set("consumer.local.servers", ["broker1.example.com:9092"])
config.set("consumer.local.group-allowlist", "orders-.*")

assert config.is_set("cluster.local")
assert config.get_string_list("cluster.local.servers") == ["broker1.example.com:9092"]
```

Defaults applied when a key is missing:

| Key | Default |
| --- | --- |
| `cluster.<name>.offset-refresh` | 10 seconds |
| `cluster.<name>.topic-refresh` | 60 seconds |
| `cluster.<name>.groups-reaper-refresh` | 0 (disabled) |
| `consumer.<name>.offsets-topic` | `__consumer_offsets` |
| `consumer.<name>.zookeeper-timeout` | 30 seconds |
| `consumer.<name>.zookeeper-path` | empty, so the tree is `/consumers` |

Other keys read: `client-profile` (passed to the client factory),
`start-latest`, `backfill-earliest`, `group-allowlist` and `group-denylist`.
Server lists must be `host:port` entries. The old `group-whitelist` and
`group-blacklist` keys are rejected with `ConfigurationError`.

## Decoding offsets-topic records

```python
from lagwatch.decoding import DecodeError, Reader, read_string

reader = Reader(b"\x00\x04test")
assert read_string(reader) == "test"

try:
    read_string(Reader(b"\x00\x05test"))
except DecodeError:
    pass
```

## What the package does not do

It only collects and forwards. It does not store offsets, evaluate lag, serve
an HTTP API or send notifications: those are left to whatever consumes the
storage queue. It has no command-line program, does not read configuration
files, and ships no Kafka or ZooKeeper client.

## Running the tests

The tests use pytest, available through the `test` extra.