"""Coordinator that creates, starts and stops the configured consumer modules."""

from __future__ import annotations

from typing import Any

from lagwatch.app import (
    ApplicationContext,
    ConfigurationError,
    Coordinator,
    Module,
    start_modules,
    stop_modules,
)
from lagwatch.kafka_client import ClientFactory, KafkaClient
from lagwatch.zk_client import ConnectFunc, KafkaZkClient


class ConsumerCoordinator(Coordinator):
    """Manages every consumer module, each of which reports the groups of one cluster."""

    def __init__(
        self,
        app: ApplicationContext,
        client_factory: ClientFactory,
        zookeeper_connect: ConnectFunc,
    ) -> None:
        self.app = app
        self.client_factory = client_factory
        self.zookeeper_connect = zookeeper_connect
        self._log = app.logger
        self.modules: dict[str, Module] = {}

    def _module_for_class(self, class_name: str) -> Module:
        if class_name == "kafka":
            return KafkaClient(self.app, self.client_factory)
        if class_name == "kafka_zk":
            return KafkaZkClient(self.app, self.zookeeper_connect)
        raise ConfigurationError(f"Unknown consumer className provided: {class_name}")

    def configure(self) -> None:
        """Create and configure every module under the consumer section."""
        self._log.info("configuring")
        cfg = self.app.config
        modules: dict[str, Any] = {}
        for name in cfg.get_string_map("consumer"):
            config_root = f"consumer.{name}"
            cluster = cfg.get_string(f"{config_root}.cluster")
            if not cfg.is_set(f"cluster.{cluster}"):
                raise ConfigurationError(
                    f"Consumer '{name}' references an unknown cluster '{cluster}'"
                )
            module = self._module_for_class(cfg.get_string(f"{config_root}.class-name"))
            module.configure(name, config_root)
            modules[name] = module
        self.modules = modules

    def start(self) -> None:
        """Start all modules and mark the application ready; the first failure is raised."""
        self._log.info("starting")
        try:
            start_modules(self.modules)
        except Exception as exc:
            raise RuntimeError(f"Error starting consumer module: {exc}") from exc
        # Every consumer is running, so requests can now be served.
        self.app.app_ready = True

    def stop(self) -> None:
        """Stop all modules."""
        self._log.info("stopping")
        stop_modules(self.modules)