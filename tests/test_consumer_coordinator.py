import logging
import queue
from types import SimpleNamespace

import pytest

from lagwatch.app import Config, ConfigurationError, Module
from lagwatch.consumer_coordinator import ConsumerCoordinator
from lagwatch.kafka_client import KafkaClient
from lagwatch.zk_client import KafkaZkClient


def _unused_factory(*args):
    raise AssertionError("client factory must not be called")


def _unused_connect(*args):
    raise AssertionError("zookeeper connect must not be called")


@pytest.fixture
def coordinator():
    config = Config()
    config.set("cluster.test.class-name", "kafka")
    config.set("cluster.test.servers", ["broker1.example.com:1234"])
    config.set("consumer.test.class-name", "kafka")
    config.set("consumer.test.servers", ["broker1.example.com:1234"])
    config.set("consumer.test.cluster", "test")
    app = SimpleNamespace(
        config=config,
        logger=logging.getLogger("lagwatch.tests.consumer_coordinator"),
        storage_channel=queue.Queue(),
        app_ready=False,
    )
    return ConsumerCoordinator(app, _unused_factory, _unused_connect)


class _RecordingModule(Module):
    def __init__(self, fail_start=False):
        self.calls = []
        self.fail_start = fail_start

    def configure(self, name, config_root):
        self.calls.append("configure")

    def start(self):
        self.calls.append("start")
        if self.fail_start:
            raise RuntimeError("boom")

    def stop(self):
        self.calls.append("stop")


def test_configure(coordinator):
    coordinator.configure()
    assert len(coordinator.modules) == 1
    assert isinstance(coordinator.modules["test"], KafkaClient)


def test_configure_bad_cluster(coordinator):
    coordinator.app.config.set("consumer.test.cluster", "nocluster")
    with pytest.raises(ConfigurationError, match="unknown cluster 'nocluster'"):
        coordinator.configure()


def test_configure_two_modules(coordinator):
    cfg = coordinator.app.config
    cfg.set("consumer.anothertest.class-name", "kafka")
    cfg.set("consumer.anothertest.servers", ["broker1.example.com:1234"])
    cfg.set("consumer.anothertest.cluster", "test")
    coordinator.configure()
    assert sorted(coordinator.modules) == ["anothertest", "test"]


def test_configure_unknown_class(coordinator):
    coordinator.app.config.set("consumer.test.class-name", "nosuchclass")
    with pytest.raises(ConfigurationError, match="nosuchclass"):
        coordinator.configure()


def test_configure_zookeeper_module(coordinator):
    coordinator.app.config.set("consumer.test.class-name", "kafka_zk")
    coordinator.configure()
    module = coordinator.modules["test"]
    assert isinstance(module, KafkaZkClient)
    assert module.zookeeper_path == "/consumers"


def test_start_stop(coordinator):
    coordinator.configure()
    mock_module = _RecordingModule()
    coordinator.modules["test"] = mock_module

    coordinator.start()
    assert mock_module.calls == ["start"]
    assert coordinator.app.app_ready is True

    coordinator.stop()
    assert mock_module.calls == ["start", "stop"]


def test_start_failure(coordinator):
    coordinator.configure()
    coordinator.modules["test"] = _RecordingModule(fail_start=True)

    with pytest.raises(RuntimeError, match="Error starting consumer module"):
        coordinator.start()
    assert coordinator.app.app_ready is False