"""Cluster module that tracks topics, partitions and broker end offsets of a Kafka cluster."""

from __future__ import annotations

import queue
import threading
import time
from collections.abc import Callable, Mapping, Sequence
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Protocol

from lagwatch.app import (
    ApplicationContext,
    ConfigurationError,
    Coordinator,
    Module,
    RequestType,
    StorageRequest,
    send_storage_request,
    start_modules,
    stop_modules,
    validate_host_list,
)
from lagwatch.kafka_client import OFFSET_NEWEST

_SEND_TIMEOUT = 1.0
_REAPER_SEND_TIMEOUT = 20.0
_REPLY_POLL = 0.1


class _Broker(Protocol):
    id: int

    def get_available_offsets(self, request: OffsetRequest) -> Mapping[str, Mapping[int, Any]]: ...

    def close(self) -> None: ...


class _Client(Protocol):
    def refresh_metadata(self) -> None: ...

    def topics(self) -> Sequence[str]: ...

    def partitions(self, topic: str) -> Sequence[int]: ...

    def leader(self, topic: str, partition: int) -> _Broker: ...

    def list_consumer_groups(self) -> Mapping[str, str]: ...

    def close(self) -> None: ...


ClientFactory = Callable[[list[str], str], Any]


@dataclass
class OffsetRequest:
    """A batch of partitions whose offsets are requested from a single broker."""

    blocks: dict[str, dict[int, tuple[int, int]]] = field(default_factory=dict)

    def add_block(self, topic: str, partition: int, time: int, max_offsets: int) -> None:
        """Request up to max_offsets offsets before time for topic:partition."""
        self.blocks.setdefault(topic, {})[partition] = (time, max_offsets)


class KafkaCluster(Module):
    """Periodically refreshes topic metadata and broker end offsets and sends them to storage.

    Brokers answer ``get_available_offsets`` with a mapping of topic to partition to
    either the newest offset or an exception describing a per-partition error.
    """

    def __init__(self, app: ApplicationContext, client_factory: ClientFactory) -> None:
        self.app = app
        self.client_factory = client_factory
        self._log = app.logger

        self.name = ""
        self.servers: list[str] = []
        self.client_profile = ""
        self.offset_refresh = 0
        self.topic_refresh = 0
        self.groups_reaper_refresh = 0

        self.fetch_metadata = False
        self.topic_partitions: dict[str, list[int]] | None = None
        self.partition_counts: dict[str, int] = {}

        self._quit = threading.Event()
        self._thread: threading.Thread | None = None
        self._client: Any = None

    def configure(self, name: str, config_root: str) -> None:
        """Read and validate the cluster configuration; raise ConfigurationError on problems."""
        self._log.info("configuring")
        cfg = self.app.config

        self.name = name
        self._quit = threading.Event()
        self._thread = None

        self.client_profile = cfg.get_string(f"{config_root}.client-profile")

        self.servers = cfg.get_string_list(f"{config_root}.servers")
        if not self.servers:
            raise ConfigurationError(f"No Kafka brokers specified for cluster {name}")
        if not validate_host_list(self.servers):
            raise ConfigurationError(
                f"Cluster '{name}' has one or more improperly formatted servers (must be host:port)"
            )

        cfg.set_default(f"{config_root}.offset-refresh", 10)
        cfg.set_default(f"{config_root}.topic-refresh", 60)
        cfg.set_default(f"{config_root}.groups-reaper-refresh", 0)
        self.offset_refresh = cfg.get_int(f"{config_root}.offset-refresh")
        self.topic_refresh = cfg.get_int(f"{config_root}.topic-refresh")
        self.groups_reaper_refresh = cfg.get_int(f"{config_root}.groups-reaper-refresh")

        if self.offset_refresh <= 0 or self.topic_refresh <= 0 or self.groups_reaper_refresh < 0:
            raise ConfigurationError(f"Cluster '{name}' has a non-positive refresh interval")

    def start(self) -> None:
        """Connect to the cluster, fetch offsets once and start the refresh loop."""
        self._log.info("starting")
        try:
            client = self.client_factory(list(self.servers), self.client_profile)
        except Exception:
            self._log.exception("failed to start client")
            raise
        self._client = client

        # Fetch once before the loop so consumers start with good data.
        self.fetch_metadata = True
        self.get_offsets(client)

        self._thread = threading.Thread(target=self._main_loop, args=(client,), daemon=True)
        self._thread.start()

    def stop(self) -> None:
        """Stop the refresh loop, wait for it and close the client."""
        self._log.info("stopping")
        self._quit.set()
        if self._thread is not None:
            self._thread.join()
            self._thread = None
        if self._client is not None:
            try:
                self._client.close()
            except Exception:  # noqa: BLE001
                self._log.exception("failed to close client")
            self._client = None

    def _main_loop(self, client: _Client) -> None:
        now = time.monotonic()
        next_offsets = now + self.offset_refresh
        next_metadata = now + self.topic_refresh
        next_reap = now + self.groups_reaper_refresh if self.groups_reaper_refresh else None

        while True:
            deadlines = [d for d in (next_offsets, next_metadata, next_reap) if d is not None]
            timeout = max(0.0, min(deadlines) - time.monotonic())
            if self._quit.wait(timeout):
                return
            now = time.monotonic()
            if now >= next_metadata:
                # Metadata is refreshed on the next offset fetch.
                self.fetch_metadata = True
                next_metadata = now + self.topic_refresh
            if now >= next_offsets:
                self.get_offsets(client)
                next_offsets = time.monotonic() + self.offset_refresh
            if next_reap is not None and now >= next_reap:
                self.reap_non_existing_groups(client)
                next_reap = time.monotonic() + self.groups_reaper_refresh

    def maybe_update_metadata_and_delete_topics(self, client: _Client) -> None:
        """Refresh the topic list when flagged, and tell storage about deleted topics."""
        if not self.fetch_metadata:
            return
        self.fetch_metadata = False
        try:
            client.refresh_metadata()
        except Exception as exc:  # noqa: BLE001
            self._log.warning("failed to refresh metadata: %s", exc)

        try:
            topic_list = list(client.topics())
        except Exception as exc:  # noqa: BLE001
            self._log.error("failed to fetch topic list: %s", exc)
            return

        topic_partitions: dict[str, list[int]] = {}
        partition_counts: dict[str, int] = {}
        for topic in topic_list:
            try:
                partitions = list(client.partitions(topic))
            except Exception as exc:  # noqa: BLE001
                self._log.error("failed to fetch partition list for %s: %s", topic, exc)
                return
            partition_counts[topic] = len(partitions)
            led: list[int] = []
            for partition in partitions:
                try:
                    client.leader(topic, partition)
                except Exception as exc:  # noqa: BLE001
                    self._log.warning(
                        "failed to fetch leader for partition %s:%d: %s", topic, partition, exc
                    )
                    continue
                led.append(partition)
            topic_partitions[topic] = led

        if self.topic_partitions is not None:
            for topic in self.topic_partitions:
                if topic not in topic_partitions:
                    self.app.storage_channel.put(StorageRequest(
                        request_type=RequestType.SET_DELETE_TOPIC,
                        cluster=self.name,
                        topic=topic,
                    ))

        self.topic_partitions = topic_partitions
        self.partition_counts = partition_counts

    def generate_offset_requests(
        self, client: _Client
    ) -> tuple[dict[int, OffsetRequest], dict[int, _Broker]]:
        """Bucket an offset request for every known partition by its leader broker."""
        requests: dict[int, OffsetRequest] = {}
        brokers: dict[int, _Broker] = {}
        for topic, partitions in (self.topic_partitions or {}).items():
            for partition in partitions:
                try:
                    broker = client.leader(topic, partition)
                except Exception as exc:  # noqa: BLE001
                    self._log.warning(
                        "failed to fetch leader for partition %s:%d: %s", topic, partition, exc
                    )
                    self.fetch_metadata = True
                    continue
                brokers[broker.id] = broker
                requests.setdefault(broker.id, OffsetRequest()).add_block(
                    topic, partition, OFFSET_NEWEST, 1
                )
        return requests, brokers

    def _partition_count(self, topic: str) -> int:
        if topic in self.partition_counts:
            return self.partition_counts[topic]
        return len((self.topic_partitions or {}).get(topic, []))

    def _fetch_broker_offsets(self, broker_id: int, broker: _Broker, request: OffsetRequest) -> bool:
        """Fetch offsets from one broker; return whether any partition reported an error."""
        try:
            response = broker.get_available_offsets(request)
        except Exception as exc:  # noqa: BLE001
            self._log.error("failed to fetch offsets from broker %d: %s", broker_id, exc)
            try:
                broker.close()
            except Exception:  # noqa: BLE001
                self._log.exception("failed to close broker %d", broker_id)
            return False

        timestamp = int(time.time()) * 1000
        had_errors = False
        for topic, partitions in response.items():
            for partition, result in partitions.items():
                if isinstance(result, Exception):
                    self._log.warning(
                        "error in offset response from broker %d for %s:%d: %s",
                        broker_id, topic, partition, result,
                    )
                    had_errors = True
                    continue
                send_storage_request(self.app.storage_channel, StorageRequest(
                    request_type=RequestType.SET_BROKER_OFFSET,
                    cluster=self.name,
                    topic=topic,
                    partition=partition,
                    offset=result,
                    timestamp=timestamp,
                    topic_partition_count=self._partition_count(topic),
                ), _SEND_TIMEOUT)
        return had_errors

    def get_offsets(self, client: _Client) -> None:
        """Fetch the newest offset of every partition from all leaders in parallel."""
        self.maybe_update_metadata_and_delete_topics(client)
        requests, brokers = self.generate_offset_requests(client)
        if not requests:
            return

        with ThreadPoolExecutor(max_workers=len(requests)) as pool:
            futures = [
                pool.submit(self._fetch_broker_offsets, broker_id, brokers[broker_id], request)
                for broker_id, request in requests.items()
            ]
            results = [future.result() for future in futures]

        # Topics with errors force a metadata refresh on the next run.
        if any(results):
            self.fetch_metadata = True

    def reap_non_existing_groups(self, client: _Client) -> None:
        """Delete groups from storage that the cluster no longer knows about."""
        try:
            kafka_groups = client.list_consumer_groups()
        except Exception as exc:  # noqa: BLE001
            self._log.error("failed to get the list of available consumer groups: %s", exc)
            return

        reply: queue.Queue = queue.Queue(maxsize=1)
        send_storage_request(self.app.storage_channel, StorageRequest(
            request_type=RequestType.FETCH_CONSUMERS,
            cluster=self.name,
            reply=reply,
        ), _REAPER_SEND_TIMEOUT)

        while True:
            try:
                result = reply.get(timeout=_REPLY_POLL)
                break
            except queue.Empty:
                if self._quit.is_set():
                    return

        if result is None:
            self._log.warning("groups reaper: couldn't get list of consumer groups from storage")
            return

        own_group = f"burrow-{self.name}"
        for group in result:
            if group == own_group or group in kafka_groups:
                continue
            self._log.info("groups reaper: removing non existing kafka consumer group (%s)", group)
            send_storage_request(self.app.storage_channel, StorageRequest(
                request_type=RequestType.SET_DELETE_GROUP,
                cluster=self.name,
                group=group,
            ), _SEND_TIMEOUT)


class ClusterCoordinator(Coordinator):
    """Creates, starts and stops the configured cluster modules."""

    def __init__(self, app: ApplicationContext, client_factory: ClientFactory) -> None:
        self.app = app
        self.client_factory = client_factory
        self._log = app.logger
        self.modules: dict[str, Module] = {}

    def _module_for_class(self, class_name: str) -> Module:
        if class_name == "kafka":
            return KafkaCluster(self.app, self.client_factory)
        raise ConfigurationError(f"Unknown cluster className provided: {class_name}")

    def configure(self) -> None:
        """Create and configure every module under the cluster section."""
        self._log.info("configuring")
        cfg = self.app.config
        self.modules = {}
        for name in cfg.get_string_map("cluster"):
            config_root = f"cluster.{name}"
            module = self._module_for_class(cfg.get_string(f"{config_root}.class-name"))
            module.configure(name, config_root)
            self.modules[name] = module

    def start(self) -> None:
        """Start all modules; the first failure is raised."""
        self._log.info("starting")
        try:
            start_modules(self.modules)
        except Exception as exc:
            raise RuntimeError(f"Error starting cluster module: {exc}") from exc

    def stop(self) -> None:
        """Stop all modules."""
        self._log.info("stopping")
        stop_modules(self.modules)