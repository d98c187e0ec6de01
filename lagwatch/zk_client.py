"""Consumer module that follows the ZooKeeper /consumers tree used by old-style consumers."""

from __future__ import annotations

import enum
import queue
import re
import threading
from collections.abc import Callable, Sequence
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
    validate_zookeeper_path,
)

_POLL_INTERVAL = 0.05
_SEND_TIMEOUT = 1.0
_INT_RE = re.compile(r"[+-]?[0-9]+")
_INT64_MIN = -(2**63)
_INT64_MAX = 2**63 - 1


class EventType(enum.IntEnum):
    """Kinds of ZooKeeper events."""

    NODE_CREATED = 1
    NODE_DELETED = 2
    NODE_DATA_CHANGED = 3
    NODE_CHILDREN_CHANGED = 4
    SESSION = -1
    NOT_WATCHING = -2


class SessionState(enum.IntEnum):
    """ZooKeeper session states carried by session events."""

    UNKNOWN = -1
    DISCONNECTED = 0
    CONNECTING = 1
    AUTH_FAILED = 4
    CONNECTED_READ_ONLY = 5
    SASL_AUTHENTICATED = 6
    EXPIRED = -112
    CONNECTED = 100
    HAS_SESSION = 101


@dataclass
class ZkEvent:
    """An event delivered on a watch or on the connection event queue."""

    type: EventType
    state: SessionState = SessionState.UNKNOWN
    path: str = ""


@dataclass
class ZkStat:
    """The parts of a znode's stat that are used here."""

    mtime: int = 0
    mzxid: int = 0


class _Zookeeper(Protocol):
    def children_w(self, path: str) -> tuple[Sequence[str], ZkStat, queue.Queue]: ...

    def exists_w(self, path: str) -> tuple[bool, ZkStat | None, queue.Queue]: ...

    def get_w(self, path: str) -> tuple[bytes, ZkStat, queue.Queue]: ...

    def close(self) -> None: ...


# connect(servers, session_timeout_seconds, logger) -> (client, connection event queue)
ConnectFunc = Callable[[list[str], float, Any], tuple[Any, queue.Queue]]


class _WaitGroup:
    def __init__(self) -> None:
        self._count = 0
        self._cond = threading.Condition()

    def add(self) -> None:
        with self._cond:
            self._count += 1

    def done(self) -> None:
        with self._cond:
            self._count -= 1
            if self._count <= 0:
                self._cond.notify_all()

    def wait(self) -> None:
        with self._cond:
            self._cond.wait_for(lambda: self._count <= 0)


class KafkaZkClient(Module):
    """Watches every group, topic, partition and offset under /consumers and reports them.

    A ``None`` item on any event queue means the queue was closed.
    """

    def __init__(self, app: ApplicationContext, connect: ConnectFunc) -> None:
        self.app = app
        self.connect = connect
        self._log = app.logger

        self.name = ""
        self.cluster = ""
        self.servers: list[str] = []
        self.zookeeper_timeout = 0
        self.zookeeper_path = ""
        self.group_allowlist: re.Pattern[str] | None = None
        self.group_denylist: re.Pattern[str] | None = None

        self.zk: _Zookeeper | None = None
        self.are_watches_set = False
        self.group_list: dict[str, dict[str, int]] = {}

        self._group_lock = threading.RLock()
        self._running = _WaitGroup()
        self._closing = threading.Event()

    def configure(self, name: str, config_root: str) -> None:
        """Read and validate the module configuration; raise ConfigurationError on problems."""
        self._log.info("configuring")
        cfg = self.app.config

        self.name = name
        self._running = _WaitGroup()
        self._closing = threading.Event()
        with self._group_lock:
            self.group_list = {}

        self.servers = cfg.get_string_list(f"{config_root}.servers")
        if not self.servers:
            raise ConfigurationError(f"No Zookeeper servers specified for consumer {name}")
        if not validate_host_list(self.servers):
            raise ConfigurationError(
                f"Consumer '{name}' has one or more improperly formatted servers (must be host:port)"
            )

        cfg.set_default(f"{config_root}.zookeeper-timeout", 30)
        self.zookeeper_timeout = cfg.get_int(f"{config_root}.zookeeper-timeout")
        self.zookeeper_path = cfg.get_string(f"{config_root}.zookeeper-path") + "/consumers"
        self.cluster = cfg.get_string(f"{config_root}.cluster")

        if not validate_zookeeper_path(self.zookeeper_path):
            raise ConfigurationError(f"Consumer '{name}' has a bad zookeeper path configuration")

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
        """Connect to ZooKeeper, set up all watches and follow the connection state."""
        self._log.info("starting")
        zk, connection_events = self.connect(
            list(self.servers), float(self.zookeeper_timeout), self._log
        )
        self.zk = zk

        # The first CONNECTED event may already be gone, so set up everything now.
        self.reset_group_list_watch_and_add(False)
        self.are_watches_set = True

        self._spawn(self._connection_state_watcher, connection_events)

    def stop(self) -> None:
        """Close the ZooKeeper client and wait for every watcher to finish."""
        self._log.info("stopping")
        if self.zk is not None:
            self.zk.close()
        self._closing.set()
        self._running.wait()

    def _spawn(self, target: Callable[..., None], *args: Any) -> None:
        self._running.add()

        def run() -> None:
            try:
                target(*args)
            except Exception:  # noqa: BLE001
                self._log.exception("watcher failed")
            finally:
                self._running.done()

        threading.Thread(target=run, daemon=True).start()

    def _await_event(self, events: queue.Queue | None) -> ZkEvent | None:
        """Wait for the next event; None when the queue is closed or the module stops."""
        if events is None:
            return None
        while True:
            try:
                return events.get(timeout=_POLL_INTERVAL)
            except queue.Empty:
                if self._closing.is_set():
                    return None

    def _invalidated(self, event: ZkEvent | None) -> bool:
        return event is None or event.type == EventType.NOT_WATCHING

    def _connection_state_watcher(self, events: queue.Queue) -> None:
        while True:
            event = self._await_event(events)
            if event is None:
                return
            if event.type != EventType.SESSION:
                continue
            if event.state == SessionState.EXPIRED:
                self._log.error("session expired")
                self.are_watches_set = False
            elif event.state == SessionState.CONNECTED and not self.are_watches_set:
                self._log.info("reinitializing watches")
                with self._group_lock:
                    self.group_list = {}
                self._spawn(self.reset_group_list_watch_and_add, False)

    def accept_consumer_group(self, group: str) -> bool:
        """Return whether group passes the allowlist and denylist."""
        if self.group_allowlist is not None and not self.group_allowlist.search(group):
            return False
        if self.group_denylist is not None and self.group_denylist.search(group):
            return False
        return True

    def _send(self, request: StorageRequest) -> None:
        send_storage_request(self.app.storage_channel, request, _SEND_TIMEOUT)

    def wait_for_node_to_exist(self, path: str) -> bool:
        """Block until the znode at path exists; False if checking fails or the watch goes away."""
        try:
            exists, _stat, events = self.zk.exists_w(path)
        except Exception as exc:  # noqa: BLE001
            self._log.debug("failed to check existence of znode %s: %s", path, exc)
            return False
        if exists:
            # The watch set by the check is of no interest; drain it when it fires.
            threading.Thread(target=self._await_event, args=(events,), daemon=True).start()
            return True

        self._log.debug("waiting for node %s to exist", path)
        if self._invalidated(self._await_event(events)):
            self._log.debug("exists watch on %s invalidated", path)
            return False
        return True

    def watch_group_list(self, events: queue.Queue) -> None:
        """Wait for a change to the group list and reset the watch when it fires."""
        event = self._await_event(events)
        if self._invalidated(event):
            self._log.debug("group list watch invalidated")
            return
        self._log.debug("group list watch fired: %s", event.type)
        self._spawn(self.reset_group_list_watch_and_add, event.type != EventType.NODE_CHILDREN_CHANGED)

    def reset_group_list_watch_and_add(self, reset_only: bool) -> None:
        """Read the group list, re-arm its watch and start following new groups."""
        try:
            groups, _stat, events = self.zk.children_w(self.zookeeper_path)
        except Exception as exc:  # noqa: BLE001
            self._log.error("failed to list groups: %s", exc)
            return
        self._spawn(self.watch_group_list, events)
        if reset_only:
            return

        with self._group_lock:
            for group in groups:
                if not self.accept_consumer_group(group):
                    self._log.debug("skip group %s: allowlist", group)
                    continue
                if group not in self.group_list:
                    self.group_list[group] = {}
                    self._log.debug("add group %s", group)
                    self._spawn(self.reset_topic_list_watch_and_add, group, False)

    def watch_topic_list(self, group: str, events: queue.Queue) -> None:
        """Wait for a change to a group's topic list and reset the watch when it fires."""
        event = self._await_event(events)
        if self._invalidated(event):
            self._log.debug("topic list watch for group %s invalidated", group)
            return
        self._log.debug("topic list watch for group %s fired: %s", group, event.type)
        self._spawn(
            self.reset_topic_list_watch_and_add, group, event.type != EventType.NODE_CHILDREN_CHANGED
        )

    def reset_topic_list_watch_and_add(self, group: str, reset_only: bool) -> None:
        """Read a group's topic list, re-arm its watch and start following new topics."""
        # The group node can appear before its offsets node does.
        path = f"{self.zookeeper_path}/{group}/offsets"
        if not self.wait_for_node_to_exist(path):
            return

        try:
            topics, _stat, events = self.zk.children_w(path)
        except Exception as exc:  # noqa: BLE001
            self._log.debug("failed to read topic list of group %s: %s", group, exc)
            return
        self._spawn(self.watch_topic_list, group, events)
        if reset_only:
            return

        with self._group_lock:
            known = self.group_list.get(group)
            if known is None:
                return
            for topic in topics:
                if topic not in known:
                    known[topic] = 0
                    self._log.debug("add topic %s to group %s", topic, group)
                    self._spawn(self.reset_partition_list_watch_and_add, group, topic, False)

    def watch_partition_list(self, group: str, topic: str, events: queue.Queue) -> None:
        """Wait for a change to a topic's partition list and reset the watch when it fires."""
        event = self._await_event(events)
        if self._invalidated(event):
            self._log.debug("partition list watch for %s/%s invalidated", group, topic)
            return
        self._log.debug("partition list watch for %s/%s fired: %s", group, topic, event.type)
        self._spawn(
            self.reset_partition_list_watch_and_add,
            group,
            topic,
            event.type != EventType.NODE_CHILDREN_CHANGED,
        )

    def reset_partition_list_watch_and_add(self, group: str, topic: str, reset_only: bool) -> None:
        """Read a topic's partition list, re-arm its watch and report new partitions."""
        try:
            partitions, _stat, events = self.zk.children_w(
                f"{self.zookeeper_path}/{group}/offsets/{topic}"
            )
        except Exception as exc:  # noqa: BLE001
            self._log.warning("failed to read partitions of %s/%s: %s", group, topic, exc)
            return
        self._spawn(self.watch_partition_list, group, topic, events)
        if reset_only:
            return

        with self._group_lock:
            topics = self.group_list.get(group)
            if topics is None or topic not in topics:
                return
            known = topics[topic]
            total = len(partitions)
            if total < known:
                return
            topics[topic] = total

        for partition in range(known, total):
            self._log.debug("add partition %s/%s:%d", group, topic, partition)
            self.reset_offset_watch_and_send(group, topic, partition, False)

    def watch_offset(self, group: str, topic: str, partition: int, events: queue.Queue) -> None:
        """Wait for a change to a partition offset and reset the watch when it fires."""
        event = self._await_event(events)
        if self._invalidated(event):
            self._log.debug("offset watch for %s/%s:%d invalidated", group, topic, partition)
            return
        self._log.debug("offset watch for %s/%s:%d fired: %s", group, topic, partition, event.type)
        self._spawn(
            self.reset_offset_watch_and_send,
            group,
            topic,
            partition,
            event.type != EventType.NODE_DATA_CHANGED,
        )

    def reset_offset_watch_and_send(
        self, group: str, topic: str, partition: int, reset_only: bool
    ) -> None:
        """Read a partition offset and its owner, re-arm the watch and send both to storage."""
        base = f"{self.zookeeper_path}/{group}"
        read_error: Exception | None = None
        data: Any = b""
        stat = ZkStat()
        events: queue.Queue | None = None
        try:
            data, stat, events = self.zk.get_w(f"{base}/offsets/{topic}/{partition}")
        except Exception as exc:  # noqa: BLE001
            read_error = exc

        try:
            owner, _owner_stat, _owner_events = self.zk.get_w(f"{base}/owners/{topic}/{partition}")
        except Exception:  # noqa: BLE001
            owner = b""

        if read_error is not None:
            self._log.warning(
                "failed to read offset of %s/%s:%d: %s", group, topic, partition, read_error
            )
            return
        self._spawn(self.watch_offset, group, topic, partition, events)
        if reset_only:
            return

        text = data.decode("utf-8", errors="replace") if isinstance(data, (bytes, bytearray)) else str(data)
        offset = int(text) if _INT_RE.fullmatch(text) else None
        if offset is None or not _INT64_MIN <= offset <= _INT64_MAX:
            self._log.error("badly formatted offset for %s/%s:%d: %r", group, topic, partition, text)
            return

        self._log.debug("consumer offset %s/%s:%d = %d", group, topic, partition, offset)
        self._send(StorageRequest(
            request_type=RequestType.SET_CONSUMER_OFFSET,
            cluster=self.cluster,
            topic=topic,
            partition=partition,
            group=group,
            timestamp=stat.mtime,
            offset=offset,
            order=stat.mzxid,
        ))

        owner_text = owner.decode("utf-8", errors="replace") if isinstance(owner, (bytes, bytearray)) else str(owner or "")
        self._send(StorageRequest(
            request_type=RequestType.SET_CONSUMER_OWNER,
            cluster=self.cluster,
            topic=topic,
            partition=partition,
            group=group,
            owner=owner_text,
        ))