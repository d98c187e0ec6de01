"""Application context, configuration and the top-level start/stop sequence."""

from __future__ import annotations

import abc
import copy
import enum
import ipaddress
import logging
import queue
import re
import threading
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

_log = logging.getLogger("lagwatch")

_MISSING = object()

_HOSTNAME_RE = re.compile(
    r"^(([a-zA-Z0-9]|[a-zA-Z0-9][a-zA-Z0-9\-]*[a-zA-Z0-9])\.)*"
    r"([A-Za-z0-9]|[A-Za-z0-9][A-Za-z0-9\-]*[A-Za-z0-9])$"
)
_ZK_NODE_RE = re.compile(r"^[a-zA-Z0-9_\-][a-zA-Z0-9_\-.]*$")


class ConfigurationError(Exception):
    """Raised when a configuration cannot be used; such errors are not recoverable."""


class RequestType(enum.Enum):
    """Kinds of requests sent to the storage subsystem."""

    SET_BROKER_OFFSET = "set_broker_offset"
    SET_CONSUMER_OFFSET = "set_consumer_offset"
    SET_CONSUMER_OWNER = "set_consumer_owner"
    SET_DELETE_TOPIC = "set_delete_topic"
    SET_DELETE_GROUP = "set_delete_group"
    CLEAR_CONSUMER_OWNERS = "clear_consumer_owners"
    FETCH_CONSUMERS = "fetch_consumers"


@dataclass
class StorageRequest:
    """A single request to the storage subsystem."""

    request_type: RequestType
    cluster: str = ""
    topic: str = ""
    partition: int = 0
    group: str = ""
    offset: int = 0
    timestamp: int = 0
    order: int = 0
    owner: str = ""
    client_id: str = ""
    topic_partition_count: int = 0
    reply: queue.Queue | None = None


def _split_key(key: str) -> list[str]:
    return key.lower().split(".")


def _lookup(tree: Mapping[str, Any], parts: Sequence[str]) -> Any:
    node: Any = tree
    for part in parts:
        if not isinstance(node, Mapping) or part not in node:
            return _MISSING
        node = node[part]
    return node


def _lower_keys(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {str(k).lower(): _lower_keys(v) for k, v in value.items()}
    return value


def _merge(base: Mapping[str, Any], over: Mapping[str, Any]) -> dict[str, Any]:
    merged = copy.deepcopy(dict(base))
    for key, value in over.items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), Mapping):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


class Config:
    """Hierarchical configuration with dotted, case-insensitive keys and defaults."""

    def __init__(self, values: Mapping[str, Any] | None = None) -> None:
        self._values: dict[str, Any] = _lower_keys(values) if values else {}
        self._defaults: dict[str, Any] = {}
        self._lock = threading.RLock()

    @staticmethod
    def _assign(tree: dict[str, Any], key: str, value: Any) -> None:
        *parents, leaf = _split_key(key)
        node = tree
        for part in parents:
            child = node.get(part)
            if not isinstance(child, dict):
                child = {}
                node[part] = child
            node = child
        node[leaf] = _lower_keys(value)

    def set(self, key: str, value: Any) -> None:
        """Set an explicit value for key."""
        with self._lock:
            self._assign(self._values, key, value)

    def set_default(self, key: str, value: Any) -> None:
        """Set the value used for key when nothing explicit is set."""
        with self._lock:
            self._assign(self._defaults, key, value)

    def get(self, key: str) -> Any:
        """Return the value for key, falling back to defaults, or None."""
        parts = _split_key(key)
        with self._lock:
            value = _lookup(self._values, parts)
            default = _lookup(self._defaults, parts)
            if isinstance(value, Mapping) and isinstance(default, Mapping):
                return _merge(default, value)
            if value is not _MISSING:
                return copy.deepcopy(value)
            if default is not _MISSING:
                return copy.deepcopy(default)
            return None

    def is_set(self, key: str) -> bool:
        """Return whether key has a value, explicit or default."""
        return self.get(key) is not None

    def get_string(self, key: str) -> str:
        value = self.get(key)
        if value is None:
            return ""
        if isinstance(value, bool):
            return "true" if value else "false"
        return str(value)

    def get_int(self, key: str) -> int:
        value = self.get(key)
        if value is None:
            return 0
        if isinstance(value, str):
            try:
                return int(value.strip(), 0)
            except ValueError:
                return 0
        try:
            return int(value)
        except (TypeError, ValueError):
            return 0

    def get_bool(self, key: str) -> bool:
        value = self.get(key)
        if isinstance(value, str):
            return value.strip().lower() in {"1", "t", "true"}
        return bool(value)

    def get_string_list(self, key: str) -> list[str]:
        value = self.get(key)
        if value is None:
            return []
        if isinstance(value, str):
            return value.split()
        if isinstance(value, Iterable) and not isinstance(value, Mapping):
            return [str(item) for item in value]
        return [str(value)]

    def get_string_map(self, key: str) -> dict[str, Any]:
        value = self.get(key)
        return dict(value) if isinstance(value, Mapping) else {}


@dataclass
class ApplicationContext:
    """Shared state handed to every coordinator and module."""

    config: Config = field(default_factory=Config)
    logger: logging.Logger = field(default_factory=lambda: _log)
    storage_channel: queue.Queue = field(default_factory=queue.Queue)
    evaluator_channel: queue.Queue = field(default_factory=queue.Queue)
    configuration_valid: bool = False
    app_ready: bool = False


class Module(abc.ABC):
    """A unit of work owned by a coordinator."""

    @abc.abstractmethod
    def configure(self, name: str, config_root: str) -> None:
        """Validate configuration; raise ConfigurationError on failure."""

    @abc.abstractmethod
    def start(self) -> None:
        """Start the module; raise on failure."""

    @abc.abstractmethod
    def stop(self) -> None:
        """Stop the module, waiting until it has stopped."""


class Coordinator(abc.ABC):
    """Manages a set of modules of one subsystem."""

    @abc.abstractmethod
    def configure(self) -> None:
        """Create and configure modules; raise ConfigurationError on failure."""

    @abc.abstractmethod
    def start(self) -> None:
        """Start all modules; raise on failure."""

    @abc.abstractmethod
    def stop(self) -> None:
        """Stop all modules."""


def start_modules(modules: Mapping[str, Module]) -> None:
    """Start every module in order; the first failure propagates and stops the sequence."""
    for module in modules.values():
        module.start()


def stop_modules(modules: Mapping[str, Module]) -> None:
    """Stop every module; failures are logged and do not interrupt the others."""
    for name, module in modules.items():
        try:
            module.stop()
        except Exception:  # noqa: BLE001
            _log.exception("failed to stop module %s", name)


def send_storage_request(channel: queue.Queue, request: StorageRequest, timeout: float) -> bool:
    """Put request on channel, giving up after timeout seconds. Returns whether it was sent."""
    try:
        channel.put(request, timeout=timeout)
    except queue.Full:
        _log.debug("storage request dropped after timeout: %s", request.request_type)
        return False
    return True


def _valid_host(host: str) -> bool:
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
        try:
            return ipaddress.ip_address(host).version == 6
        except ValueError:
            return False
    try:
        ipaddress.ip_address(host)
        return True
    except ValueError:
        return bool(_HOSTNAME_RE.match(host))


def validate_host_list(hosts: Iterable[str]) -> bool:
    """Return whether every entry has the form host:port with a valid host and port."""
    for entry in hosts:
        host, sep, port = entry.rpartition(":")
        if not sep or not host or not port.isdigit():
            return False
        if not 0 < int(port) < 65536:
            return False
        if not _valid_host(host):
            return False
    return True


def validate_zookeeper_path(path: str) -> bool:
    """Return whether path is an absolute znode path with well-formed node names."""
    parts = path.split("/")
    if len(parts) < 2 or parts[0] != "":
        return False
    if len(parts) == 2 and parts[1] == "":
        return True
    return all(_ZK_NODE_RE.match(node) for node in parts[1:])


def configure_coordinators(app: ApplicationContext, coordinators: Sequence[Coordinator]) -> bool:
    """Configure coordinators in order, recording and returning whether all succeeded."""
    try:
        for coordinator in coordinators:
            coordinator.configure()
    except Exception as exc:  # noqa: BLE001
        app.logger.error("configuration failed: %s", exc)
        app.configuration_valid = False
        return False
    app.configuration_valid = True
    return True


def start(
    app: ApplicationContext | None,
    coordinators: Sequence[Coordinator],
    exit_event: threading.Event,
) -> int:
    """Configure and start coordinators, block until exit_event is set, then stop them.

    Returns 0 on a clean shutdown and 1 on any configuration or start failure.
    """
    if app is None:
        app = ApplicationContext()
    app.logger.info("started")

    if not configure_coordinators(app, coordinators):
        return 1

    for index, coordinator in enumerate(coordinators):
        try:
            coordinator.start()
        except Exception as exc:  # noqa: BLE001
            app.logger.error("failed to start coordinator: %s", exc)
            for started in reversed(coordinators[:index]):
                _stop_quietly(app, started)
            return 1

    exit_event.wait()
    app.logger.info("shutdown triggered")

    for coordinator in reversed(coordinators):
        _stop_quietly(app, coordinator)
    return 0


def _stop_quietly(app: ApplicationContext, coordinator: Coordinator) -> None:
    try:
        coordinator.stop()
    except Exception:  # noqa: BLE001
        app.logger.exception("failed to stop coordinator")