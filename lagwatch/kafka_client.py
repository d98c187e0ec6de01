"""Consumer module that reads group offsets and ownership from the Kafka offsets topic."""

from __future__ import annotations

import queue
import re
import threading
import time
from collections.abc import Callable, Sequence
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Any, Protocol

from lagwatch.app import (
    ApplicationContext,
    ConfigurationError,
    Module,
    RequestType,
    StorageRequest,
    send_storage_request,
    validate_host_list,
)
from lagwatch.decoding import (
    DecodeError,
    OffsetKey,
    OffsetValue,
    Reader,
    decode_metadata_member,
    decode_metadata_value_header,
    decode_metadata_value_header_v2,
    decode_offset_key_v0,
    decode_offset_value_v0,
    decode_offset_value_v3,
    read_string,
)

OFFSET_NEWEST = -1
OFFSET_OLDEST = -2

_POLL_INTERVAL = 0.05
_SEND_TIMEOUT = 1.0


@dataclass
class ConsumerMessage:
    """A message read from a partition of the offsets topic."""

    topic: str
    partition: int
    offset: int
    key: bytes = b""
    value: bytes = b""


@dataclass
class ConsumerError:
    """An error reported by a partition consumer."""

    topic: str
    partition: int
    err: Exception


class _PartitionConsumer(Protocol):
    def messages(self) -> queue.Queue: ...

    def errors(self) -> queue.Queue: ...

    def async_close(self) -> None: ...


class _Consumer(Protocol):
    def consume_partition(self, topic: str, partition: int, offset: int) -> _PartitionConsumer: ...


class _Client(Protocol):
    def new_consumer(self) -> _Consumer: ...

    def partitions(self, topic: str) -> Sequence[int]: ...

    def get_offset(self, topic: str, partition: int, time: int) -> int: ...

    def close(self) -> None: ...


ClientFactory = Callable[[list[str], str], Any]
OffsetDecoder = Callable[[Reader], OffsetValue]


class KafkaClient(Module):
    """Consumes the offsets topic of one cluster and forwards offsets and owners to storage."""

    def __init__(self, app: ApplicationContext, client_factory: ClientFactory) -> None:
        self.app = app
        self.client_factory = client_factory
        self._log = app.logger

        self.name = ""
        self.cluster = ""
        self.servers: list[str] = []
        self.client_profile = ""
        self.offsets_topic = ""
        self.start_latest = False
        self.backfill_earliest = False
        self.reported_consumer_group = ""
        self.group_allowlist: re.Pattern[str] | None = None
        self.group_denylist: re.Pattern[str] | None = None

        self._quit = threading.Event()
        self._threads: list[threading.Thread] = []
        self._lock = threading.Lock()

    def configure(self, name: str, config_root: str) -> None:
        """Read and validate the module configuration; raise ConfigurationError on problems."""
        self._log.info("configuring")
        cfg = self.app.config

        self.name = name
        self._quit = threading.Event()
        self._threads = []

        self.cluster = cfg.get_string(f"{config_root}.cluster")
        if not cfg.is_set(f"cluster.{self.cluster}"):
            raise ConfigurationError(
                f"Consumer '{name}' references an unknown cluster '{self.cluster}'"
            )

        self.client_profile = cfg.get_string(f"{config_root}.client-profile")

        self.servers = cfg.get_string_list(f"{config_root}.servers")
        if not self.servers:
            raise ConfigurationError(f"No Kafka brokers specified for consumer {name}")
        if not validate_host_list(self.servers):
            raise ConfigurationError(
                f"Consumer '{name}' has one or more improperly formatted servers (must be host:port)"
            )

        cfg.set_default(f"{config_root}.offsets-topic", "__consumer_offsets")
        self.offsets_topic = cfg.get_string(f"{config_root}.offsets-topic")
        self.start_latest = cfg.get_bool(f"{config_root}.start-latest")
        self.backfill_earliest = self.start_latest and cfg.get_bool(
            f"{config_root}.backfill-earliest"
        )
        self.reported_consumer_group = f"burrow-{name}"

        if cfg.is_set(f"{config_root}.group-whitelist") or cfg.is_set(
            f"{config_root}.group-blacklist"
        ):
            raise ConfigurationError("Please change configurations to allowlist and denylist")

        self.group_allowlist = self._compile(cfg.get_string(f"{config_root}.group-allowlist"), "allowlist")
        self.group_denylist = self._compile(cfg.get_string(f"{config_root}.group-denylist"), "denylist")

    @staticmethod
    def _compile(pattern: str, kind: str) -> re.Pattern[str] | None:
        if not pattern:
            return None
        try:
            return re.compile(pattern)
        except re.error as exc:
            raise ConfigurationError(f"Failed to compile group {kind}: {exc}") from exc

    def start(self) -> None:
        """Connect to the cluster and start consuming the offsets topic."""
        self._log.info("starting")
        try:
            client = self.client_factory(list(self.servers), self.client_profile)
        except Exception:
            self._log.exception("failed to start client")
            raise
        try:
            self.start_kafka_consumer(client)
        except Exception:
            self._log.exception("failed to start consumer")
            client.close()
            raise

    def stop(self) -> None:
        """Signal all partition consumers to finish and wait for them."""
        self._log.info("stopping")
        self._quit.set()
        while True:
            with self._lock:
                pending = [thread for thread in self._threads if thread.is_alive()]
            if not pending:
                return
            for thread in pending:
                thread.join()

    def _spawn(self, target: Callable[..., None], *args: Any) -> None:
        thread = threading.Thread(target=target, args=args, daemon=True)
        with self._lock:
            self._threads.append(thread)
            thread.start()

    def accept_consumer_group(self, group: str) -> bool:
        """Return whether group passes the allowlist and denylist."""
        if self.group_allowlist is not None and not self.group_allowlist.search(group):
            return False
        if self.group_denylist is not None and self.group_denylist.search(group):
            return False
        return True

    def _send(self, request: StorageRequest) -> None:
        send_storage_request(self.app.storage_channel, request, _SEND_TIMEOUT)

    def start_kafka_consumer(self, client: _Client) -> None:
        """Start a consumer for every partition of the offsets topic, plus backfill if configured."""
        try:
            consumer = client.new_consumer()
        except Exception:
            self._log.exception("failed to get new consumer")
            client.close()
            raise

        try:
            partitions = list(client.partitions(self.offsets_topic))
        except Exception:
            self._log.exception("failed to get partition count for %s", self.offsets_topic)
            client.close()
            raise

        start_from = OFFSET_NEWEST if self.start_latest else OFFSET_OLDEST
        self._log.info("starting %d consumers for %s", len(partitions), self.offsets_topic)
        for partition in partitions:
            try:
                pconsumer = consumer.consume_partition(self.offsets_topic, partition, start_from)
            except Exception:
                self._log.exception("failed to consume partition %s:%d", self.offsets_topic, partition)
                raise
            self._spawn(self.partition_consumer, pconsumer, None)

        if not self.backfill_earliest:
            return

        self._log.debug("backfilling consumer offsets")
        # Each partition is consumed twice, so the backfill needs its own consumer.
        try:
            backfill_consumer = client.new_consumer()
        except Exception:
            self._log.exception("failed to get new consumer")
            client.close()
            raise

        pool = ThreadPoolExecutor(max_workers=max(1, len(partitions)))
        try:
            pending = {
                pool.submit(self._start_backfill_partition_consumer, partition, client, backfill_consumer)
                for partition in partitions
            }
            while pending:
                if self._quit.is_set():
                    return
                done, pending = wait(pending, timeout=_POLL_INTERVAL, return_when=FIRST_COMPLETED)
                for future in done:
                    future.result()
        finally:
            pool.shutdown(wait=False)

    def _start_backfill_partition_consumer(
        self, partition: int, client: _Client, consumer: _Consumer
    ) -> None:
        topic = self.offsets_topic
        pconsumer = consumer.consume_partition(topic, partition, OFFSET_OLDEST)

        # Check for an empty partition only after the consumer exists, so that a segment
        # expiring in between cannot leave us waiting for messages that will never come.
        oldest = client.get_offset(topic, partition, OFFSET_OLDEST)
        newest = client.get_offset(topic, partition, OFFSET_NEWEST)
        if newest > 0:
            # The newest offset is the next one to be written; we want the last written one.
            newest -= 1

        if oldest >= newest:
            self._log.info(
                "not backfilling empty partition %s:%d (oldest %d, newest %d)",
                topic, partition, oldest, newest,
            )
            pconsumer.async_close()
            return

        self._log.debug("consuming backfill of partition %d from %d to %d", partition, oldest, newest)
        self._spawn(self.partition_consumer, pconsumer, newest)

    def partition_consumer(self, consumer: _PartitionConsumer, stop_at_offset: int | None = None) -> None:
        """Process messages from one partition until stopped or stop_at_offset is reached."""
        messages = consumer.messages()
        errors = consumer.errors()
        try:
            while not self._quit.is_set():
                self._drain_errors(errors)
                try:
                    msg = messages.get(timeout=_POLL_INTERVAL)
                except queue.Empty:
                    continue
                if msg is None:
                    continue

                if self.reported_consumer_group:
                    self._send(StorageRequest(
                        request_type=RequestType.SET_CONSUMER_OFFSET,
                        cluster=self.cluster,
                        topic=msg.topic,
                        partition=msg.partition,
                        group=self.reported_consumer_group,
                        timestamp=int(time.time()) * 1000,
                        # Behave like a consumer that commits the last seen offset plus one.
                        offset=msg.offset + 1,
                        order=msg.offset,
                    ))

                self.process_consumer_offsets_message(msg)

                if stop_at_offset is not None and msg.offset >= stop_at_offset:
                    self._log.debug(
                        "backfill consumer of partition %d reached offset %d",
                        msg.partition, stop_at_offset,
                    )
                    return
        finally:
            consumer.async_close()

    def _drain_errors(self, errors: queue.Queue) -> None:
        while True:
            try:
                err = errors.get_nowait()
            except queue.Empty:
                return
            if err is not None:
                self._log.error("consume error on %s:%d: %s", err.topic, err.partition, err.err)

    def process_consumer_offsets_message(self, msg: ConsumerMessage) -> None:
        """Decode one offsets-topic message and forward what it holds to storage."""
        key_reader = Reader(msg.key or b"")
        try:
            key_version = key_reader.read_int16()
        except DecodeError:
            self._log.warning("failed to decode message at offset %d: no key version", msg.offset)
            return

        if key_version in (0, 1):
            self.decode_key_and_offset(msg.offset, key_reader, msg.value or b"")
        elif key_version == 2:
            self.decode_group_metadata(key_reader, msg.value or b"")
        else:
            self._log.warning("failed to decode message: key version %d", key_version)

    def decode_key_and_offset(self, offset_order: int, key_reader: Reader, value: bytes) -> None:
        """Decode an offset commit record and send the offset to storage."""
        try:
            offset_key = decode_offset_key_v0(key_reader)
        except DecodeError as exc:
            partial = exc.partial if isinstance(exc.partial, OffsetKey) else OffsetKey()
            self._log.warning(
                "failed to decode offset key (group %r, topic %r, partition %d): %s",
                partial.group, partial.topic, partial.partition, exc.error_at,
            )
            return

        if not self.accept_consumer_group(offset_key.group):
            self._log.debug("dropped offset for group %s: allowlist", offset_key.group)
            return

        if not value:
            self._log.debug("dropped tombstone")
            return

        value_reader = Reader(value)
        try:
            value_version = value_reader.read_int16()
        except DecodeError:
            self._log.warning("failed to decode offset for group %s: no value version", offset_key.group)
            return

        if value_version in (0, 1):
            self.decode_and_send_offset(offset_order, offset_key, value_reader, decode_offset_value_v0)
        elif value_version == 3:
            self.decode_and_send_offset(offset_order, offset_key, value_reader, decode_offset_value_v3)
        else:
            self._log.warning(
                "failed to decode offset for group %s: value version %d", offset_key.group, value_version
            )

    def decode_and_send_offset(
        self,
        offset_order: int,
        offset_key: OffsetKey,
        value_reader: Reader,
        decoder: OffsetDecoder,
    ) -> None:
        """Decode an offset value with decoder and send it to storage."""
        try:
            offset_value = decoder(value_reader)
        except DecodeError as exc:
            self._log.warning("failed to decode offset for group %s: %s", offset_key.group, exc.error_at)
            return

        self._log.debug(
            "consumer offset %s %s:%d = %d",
            offset_key.group, offset_key.topic, offset_key.partition, offset_value.offset,
        )
        self._send(StorageRequest(
            request_type=RequestType.SET_CONSUMER_OFFSET,
            cluster=self.cluster,
            topic=offset_key.topic,
            partition=offset_key.partition,
            group=offset_key.group,
            timestamp=offset_value.timestamp,
            offset=offset_value.offset,
            order=offset_order,
        ))

    def decode_group_metadata(self, key_reader: Reader, value: bytes) -> None:
        """Decode a group metadata record; a tombstone deletes the group."""
        try:
            group = read_string(key_reader)
        except DecodeError:
            self._log.warning("failed to decode metadata: group")
            return

        if not value:
            self._log.debug("removing consumer group %s due to tombstone", group)
            self._send(StorageRequest(
                request_type=RequestType.SET_DELETE_GROUP,
                cluster=self.cluster,
                group=group,
            ))
            return

        value_reader = Reader(value)
        try:
            value_version = value_reader.read_int16()
        except DecodeError:
            self._log.warning("failed to decode metadata for group %s: no value version", group)
            return

        if value_version in (0, 1, 2, 3):
            self.decode_and_send_group_metadata(value_version, group, value_reader)
        else:
            self._log.warning("failed to decode metadata for group %s: value version %d", group, value_version)

    def decode_and_send_group_metadata(self, value_version: int, group: str, value_reader: Reader) -> None:
        """Decode group members and send partition ownership to storage."""
        try:
            if value_version in (2, 3):
                header = decode_metadata_value_header_v2(value_reader)
            else:
                header = decode_metadata_value_header(value_reader)
        except DecodeError as exc:
            self._log.warning("failed to decode metadata for group %s: %s", group, exc.error_at)
            return

        self._log.debug(
            "group metadata %s: protocol_type=%s generation=%d protocol=%s leader=%s",
            group, header.protocol_type, header.generation, header.protocol, header.leader,
        )
        if header.protocol_type != "consumer":
            self._log.debug("skipped metadata for group %s: unknown protocol type", group)
            return

        try:
            member_count = value_reader.read_int32()
        except DecodeError:
            self._log.warning("failed to decode metadata for group %s: no member size", group)
            return

        if member_count == 0:
            self._log.debug("clear owners of group %s", group)
            self._send(StorageRequest(
                request_type=RequestType.CLEAR_CONSUMER_OWNERS,
                cluster=self.cluster,
                group=group,
            ))
            return

        for _ in range(member_count):
            try:
                member = decode_metadata_member(value_reader, value_version)
            except DecodeError as exc:
                self._log.warning("failed to decode metadata for group %s: %s", group, exc.error_at)
                return
            for topic, partitions in member.assignment.items():
                for partition in partitions:
                    self._send(StorageRequest(
                        request_type=RequestType.SET_CONSUMER_OWNER,
                        cluster=self.cluster,
                        topic=topic,
                        partition=partition,
                        group=group,
                        owner=member.client_host,
                        client_id=member.client_id,
                    ))