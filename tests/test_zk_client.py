import queue
import time

import pytest

from lagwatch.app import ApplicationContext, Config, ConfigurationError, RequestType
from lagwatch.zk_client import (
    EventType,
    KafkaZkClient,
    SessionState,
    ZkEvent,
    ZkStat,
)


class FakeZk:
    def __init__(self):
        self.children = {}
        self.exists = {}
        self.data = {}
        self.calls = []
        self.closed = False

    @staticmethod
    def _answer(value):
        if isinstance(value, Exception):
            raise value
        return value

    def children_w(self, path):
        self.calls.append(("children_w", path))
        return self._answer(self.children[path])

    def exists_w(self, path):
        self.calls.append(("exists_w", path))
        return self._answer(self.exists[path])

    def get_w(self, path):
        self.calls.append(("get_w", path))
        return self._answer(self.data[path])

    def close(self):
        self.closed = True


def make_module(**settings):
    config = Config()
    config.set("cluster.test.class-name", "kafka")
    config.set("cluster.test.servers", ["broker1.example.com:1234"])
    config.set("consumer.test.class-name", "kafka_zk")
    config.set("consumer.test.servers", ["broker1.example.com:1234"])
    config.set("consumer.test.cluster", "test")
    for key, value in settings.items():
        config.set(key, value)
    app = ApplicationContext(config=config)
    return KafkaZkClient(app, connect=None), app


def configured(**settings):
    module, app = make_module(**settings)
    module.configure("test", "consumer.test")
    return module, app


def drain(channel):
    items = []
    while True:
        try:
            items.append(channel.get_nowait())
        except queue.Empty:
            return items


def test_configure_defaults():
    module, _ = configured()
    assert module.zookeeper_path == "/consumers"
    assert module.zookeeper_timeout == 30
    assert module.cluster == "test"


def test_configure_bad_regexp():
    module, _ = make_module(**{"consumer.test.group-allowlist": "["})
    with pytest.raises(ConfigurationError):
        module.configure("test", "consumer.test")


def test_configure_no_servers():
    module, app = make_module()
    app.config.set("consumer.test.servers", [])
    with pytest.raises(ConfigurationError, match="No Zookeeper servers"):
        module.configure("test", "consumer.test")


def test_configure_bad_path():
    module, _ = make_module(**{"consumer.test.zookeeper-path": "nopath"})
    with pytest.raises(ConfigurationError, match="bad zookeeper path"):
        module.configure("test", "consumer.test")


def test_configure_whitelist_rejected():
    module, _ = make_module(**{"consumer.test.group-whitelist": "test.*"})
    with pytest.raises(ConfigurationError, match="allowlist and denylist"):
        module.configure("test", "consumer.test")


def test_accept_consumer_group():
    module, _ = configured(**{
        "consumer.test.group-allowlist": "test.*",
        "consumer.test.group-denylist": ".*bad",
    })
    assert module.accept_consumer_group("testgroup") is True
    assert module.accept_consumer_group("dropthisgroup") is False
    assert module.accept_consumer_group("testbad") is False


def test_start_and_stop():
    fake = FakeZk()
    fake.children["/consumers"] = ([], ZkStat(), queue.Queue())
    connection_events = queue.Queue()
    seen = {}

    def connect(servers, timeout, logger):
        seen["servers"] = servers
        seen["timeout"] = timeout
        return fake, connection_events

    module, _ = make_module()
    module.connect = connect
    module.configure("test", "consumer.test")
    module.start()
    connection_events.put(ZkEvent(type=EventType.NODE_CREATED))
    module.stop()

    assert seen["servers"] == ["broker1.example.com:1234"]
    assert seen["timeout"] == 30.0
    assert fake.closed is True
    assert module.are_watches_set is True
    assert ("children_w", "/consumers") in fake.calls


def test_start_connect_failure():
    def connect(servers, timeout, logger):
        raise ConnectionError("no ensemble")

    module, _ = make_module()
    module.connect = connect
    module.configure("test", "consumer.test")
    with pytest.raises(ConnectionError):
        module.start()


def test_session_expiry_reinitializes_watches():
    fake = FakeZk()
    fake.children["/consumers"] = ([], ZkStat(), queue.Queue())
    connection_events = queue.Queue()
    module, _ = make_module()
    module.connect = lambda servers, timeout, logger: (fake, connection_events)
    module.configure("test", "consumer.test")
    module.start()

    connection_events.put(ZkEvent(type=EventType.SESSION, state=SessionState.EXPIRED))
    connection_events.put(ZkEvent(type=EventType.SESSION, state=SessionState.CONNECTED))
    deadline = time.monotonic() + 5
    while fake.calls.count(("children_w", "/consumers")) < 2 and time.monotonic() < deadline:
        time.sleep(0.01)
    module.stop()

    assert fake.calls.count(("children_w", "/consumers")) == 2
    assert module.are_watches_set is False


def test_watch_group_list_follows_whole_tree():
    module, app = configured(**{"consumer.test.group-allowlist": "test.*"})
    fake = FakeZk()
    module.zk = fake

    stat = ZkStat(mtime=894859, mzxid=17)
    new_group = queue.Queue()
    topic_exists = queue.Queue()
    new_topic = queue.Queue()
    new_partition = queue.Queue()
    new_offset = queue.Queue()
    fake.children["/consumers"] = (["testgroup"], stat, new_group)
    fake.children["/consumers/testgroup/offsets"] = (["testtopic"], stat, new_topic)
    fake.exists["/consumers/testgroup/offsets"] = (True, stat, topic_exists)
    fake.children["/consumers/testgroup/offsets/testtopic"] = (["0"], stat, new_partition)
    fake.data["/consumers/testgroup/offsets/testtopic/0"] = (b"81234", stat, new_offset)
    fake.data["/consumers/testgroup/owners/testtopic/0"] = (b"testowner", stat, queue.Queue())

    watch_events = queue.Queue()
    watch_events.put(ZkEvent(
        type=EventType.NODE_CHILDREN_CHANGED, state=SessionState.CONNECTED, path="/consumers"
    ))
    module.watch_group_list(watch_events)

    request = app.storage_channel.get(timeout=5)
    assert request.request_type == RequestType.SET_CONSUMER_OFFSET
    assert request.cluster == "test"
    assert request.topic == "testtopic"
    assert request.partition == 0
    assert request.group == "testgroup"
    assert request.offset == 81234
    assert request.timestamp == 894859
    assert request.order == 17

    second = app.storage_channel.get(timeout=5)
    assert second.request_type == RequestType.SET_CONSUMER_OWNER
    assert second.owner == "testowner"

    for events in (new_group, new_topic, topic_exists, new_partition, new_offset):
        events.put(ZkEvent(type=EventType.NOT_WATCHING, state=SessionState.CONNECTED))
    module.stop()

    assert module.group_list["testgroup"]["testtopic"] == 1
    assert fake.calls.count(("children_w", "/consumers")) == 1


def test_watch_offset_data_changed_resends():
    module, app = configured()
    fake = FakeZk()
    module.zk = fake
    stat = ZkStat(mtime=1000, mzxid=5)
    fake.data["/consumers/g/offsets/t/3"] = (b"42", stat, queue.Queue())
    fake.data["/consumers/g/owners/t/3"] = (b"host", stat, queue.Queue())

    events = queue.Queue()
    events.put(ZkEvent(type=EventType.NODE_DATA_CHANGED))
    module.watch_offset("g", "t", 3, events)

    request = app.storage_channel.get(timeout=5)
    owner = app.storage_channel.get(timeout=5)
    module.stop()

    assert request.offset == 42
    assert request.partition == 3
    assert owner.owner == "host"


def test_watch_offset_not_watching_does_nothing():
    module, app = configured()
    fake = FakeZk()
    module.zk = fake
    events = queue.Queue()
    events.put(ZkEvent(type=EventType.NOT_WATCHING))
    module.watch_offset("g", "t", 0, events)
    module.stop()
    assert fake.calls == []
    assert drain(app.storage_channel) == []


def test_reset_offset_watch_and_send_bad_path():
    module, app = configured()
    fake = FakeZk()
    module.zk = fake
    fake.data["/consumers/testgroup/offsets/testtopic/0"] = RuntimeError("badpath")
    fake.data["/consumers/testgroup/owners/testtopic/0"] = (b"testowner", None, None)

    module.reset_offset_watch_and_send("testgroup", "testtopic", 0, False)
    module.stop()

    assert fake.calls == [
        ("get_w", "/consumers/testgroup/offsets/testtopic/0"),
        ("get_w", "/consumers/testgroup/owners/testtopic/0"),
    ]
    assert drain(app.storage_channel) == []


def test_reset_offset_watch_and_send_bad_offset():
    module, app = configured()
    fake = FakeZk()
    module.zk = fake
    watch = queue.Queue()
    fake.data["/consumers/testgroup/offsets/testtopic/0"] = (b"notanumber", ZkStat(mtime=894859), watch)
    fake.data["/consumers/testgroup/owners/testtopic/0"] = (b"testowner", None, None)

    module.reset_offset_watch_and_send("testgroup", "testtopic", 0, False)
    watch.put(ZkEvent(type=EventType.NOT_WATCHING, state=SessionState.CONNECTED))
    module.stop()

    assert drain(app.storage_channel) == []
    assert watch.empty()
    assert len(fake.calls) == 2


def test_reset_partition_list_watch_and_add_bad_path():
    module, app = configured()
    fake = FakeZk()
    module.zk = fake
    fake.children["/consumers/testgroup/offsets/testtopic"] = RuntimeError("badpath")

    module.reset_partition_list_watch_and_add("testgroup", "testtopic", False)
    module.stop()

    assert fake.calls == [("children_w", "/consumers/testgroup/offsets/testtopic")]
    assert drain(app.storage_channel) == []


def test_reset_topic_list_watch_and_add_bad_path():
    module, _ = configured()
    fake = FakeZk()
    module.zk = fake
    exists_events = queue.Queue()
    exists_events.put(ZkEvent(type=EventType.NOT_WATCHING, state=SessionState.CONNECTED))
    fake.exists["/consumers/testgroup/offsets"] = (False, None, exists_events)

    module.reset_topic_list_watch_and_add("testgroup", False)
    module.stop()

    assert fake.calls == [("exists_w", "/consumers/testgroup/offsets")]


def test_wait_for_node_to_exist_error():
    module, _ = configured()
    fake = FakeZk()
    module.zk = fake
    fake.exists["/consumers/x"] = RuntimeError("connection lost")
    assert module.wait_for_node_to_exist("/consumers/x") is False


def test_wait_for_node_to_exist_created():
    module, _ = configured()
    fake = FakeZk()
    module.zk = fake
    events = queue.Queue()
    events.put(ZkEvent(type=EventType.NODE_CREATED))
    fake.exists["/consumers/x"] = (False, None, events)
    assert module.wait_for_node_to_exist("/consumers/x") is True


def test_reset_group_list_watch_and_add_bad_path():
    module, _ = configured()
    fake = FakeZk()
    module.zk = fake
    fake.children["/consumers"] = RuntimeError("badpath")

    module.reset_group_list_watch_and_add(False)
    module.stop()

    assert fake.calls == [("children_w", "/consumers")]
    assert module.group_list == {}


def test_reset_group_list_watch_and_add_allowlist():
    module, _ = configured(**{"consumer.test.group-allowlist": "test.*"})
    fake = FakeZk()
    module.zk = fake
    new_group = queue.Queue()
    fake.children["/consumers"] = (["dropthisgroup"], ZkStat(mtime=894859), new_group)

    module.reset_group_list_watch_and_add(False)
    new_group.put(ZkEvent(type=EventType.NOT_WATCHING, state=SessionState.CONNECTED))
    module.stop()

    assert "dropthisgroup" not in module.group_list
    assert fake.calls == [("children_w", "/consumers")]


def test_reset_group_list_watch_reset_only_adds_nothing():
    module, _ = configured()
    fake = FakeZk()
    module.zk = fake
    fake.children["/consumers"] = (["testgroup"], ZkStat(), queue.Queue())

    module.reset_group_list_watch_and_add(True)
    module.stop()

    assert module.group_list == {}