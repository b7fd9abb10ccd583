import time
from types import SimpleNamespace

import pytest

from mirrorbits.cluster import (
    Cluster,
    Node,
    add_mirror_id_to_slice,
    remove_mirror_id_from_slice,
)
from mirrorbits.config import Configuration, set_configuration
from mirrorbits.pubsub import Pubsub, PubsubEvent


class FakeConnection:
    def __init__(self, commands):
        self.commands = commands

    def execute_command(self, *args):
        self.commands.append(args)
        return 1

    def close(self):
        pass


class FakeDB:
    def __init__(self):
        self.commands = []
        self.pubsub = Pubsub(self, start=False)

    def get(self):
        return FakeConnection(self.commands)

    def unblocked_get(self):
        return FakeConnection(self.commands)


def _wait_for(predicate, timeout=3.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return predicate()


def _mirror(mirror_id, name=""):
    return SimpleNamespace(id=mirror_id, name=name)


@pytest.fixture(autouse=True)
def configuration():
    set_configuration(Configuration(redis_db=42))
    yield
    set_configuration(None)


@pytest.fixture
def db():
    return FakeDB()


def test_announce_text_uses_redis_db(db):
    c = Cluster(db)
    assert c.announce_text == "HELLO42"


def test_start(db):
    c = Cluster(db)
    c.start()
    try:
        assert c.running is True
    finally:
        c.stop()


def test_stop(db):
    c = Cluster(db)
    c.start()
    c.stop()
    assert c.running is False
    c.stop()
    assert c.running is False


def test_cluster_loop_announces(db):
    c = Cluster(db)
    expected = ("PUBLISH", PubsubEvent.CLUSTER.value, f"{c.announce_text} {c.node_id}")
    c.start()
    try:
        _wait_for(lambda: expected in db.commands)
        published = [cmd for cmd in db.commands if cmd[0] == "PUBLISH"]
        assert published
        assert published[0] == expected
        assert [n.id for n in c.nodes] == [c.node_id]
    finally:
        c.stop()


def test_cluster_loop_joins_announced_nodes(db):
    c = Cluster(db)
    c.start()
    try:
        assert _wait_for(lambda: any(n.id == c.node_id for n in c.nodes))
        db.pubsub.handle_message(PubsubEvent.CLUSTER, "garbage")
        db.pubsub.handle_message(PubsubEvent.CLUSTER, f"{c.announce_text} other-00001")
        assert _wait_for(lambda: any(n.id == "other-00001" for n in c.nodes))
        ids = [n.id for n in c.nodes]
        assert "garbage" not in ids
        assert ids == sorted(ids)
        assert c.node_total == len(ids)
    finally:
        c.stop()


def test_refresh_node_list(db):
    c = Cluster(db)
    c.nodes.append(Node(id="test-4242", last_announce=int(time.time())))
    c.nodes.append(Node(id="meh-4242", last_announce=int(time.time()) - 6))
    c.nodes.sort(key=lambda n: n.id)

    c.refresh_node_list("test-4242", "test-4242")
    assert len(c.nodes) == 1

    c.refresh_node_list("meh-4242", "test-4242")
    assert len(c.nodes) == 2
    assert [n.id for n in c.nodes] == ["meh-4242", "test-4242"]
    assert c.node_index == 1
    assert c.node_total == 2


def test_add_mirror(db):
    c = Cluster(db)
    c.add_mirror(_mirror(2, "bbb"))
    assert c.mirrors_index == [2]
    c.add_mirror(_mirror(1, "aaa"))
    assert c.mirrors_index == [1, 2]
    c.add_mirror(_mirror(3, "ccc"))
    assert c.mirrors_index == [1, 2, 3]


def test_remove_mirror(db):
    c = Cluster(db)
    c.add_mirror(_mirror(1, "aaa"))
    c.add_mirror(_mirror(2, "bbb"))
    c.add_mirror(_mirror(3, "ccc"))

    c.remove_mirror(_mirror(4))
    assert c.mirrors_index == [1, 2, 3]
    c.remove_mirror(_mirror(1))
    assert c.mirrors_index == [2, 3]
    c.remove_mirror(_mirror(3))
    assert c.mirrors_index == [2]
    c.remove_mirror_id(2)
    assert c.mirrors_index == []


def test_is_handled(db):
    c = Cluster(db)
    c.refresh_node_list(c.node_id, c.node_id)
    for mirror_id, name in ((1, "aaa"), (2, "bbb"), (3, "ccc"), (4, "ddd")):
        c.add_mirror(_mirror(mirror_id, name))

    c.node_total = 1
    assert all(c.is_handled(i) for i in (1, 2, 3, 4))

    c.node_total = 2
    handled = sum(1 for i in (1, 2, 3, 4) if c.is_handled(i))
    assert handled == 2


def test_is_handled_without_nodes(db):
    c = Cluster(db)
    c.add_mirror(_mirror(1))
    assert c.is_handled(1) is False


@pytest.mark.parametrize(
    "ids, mirror_id, expected",
    [
        ([1, 2, 3, 4, 5], 3, [1, 2, 4, 5]),
        ([1, 2, 3, 4, 5], 1, [2, 3, 4, 5]),
        ([1, 2, 3, 4, 5], 5, [1, 2, 3, 4]),
        ([1, 2, 3, 4, 5], 6, [1, 2, 3, 4, 5]),
    ],
)
def test_remove_mirror_id_from_slice(ids, mirror_id, expected):
    assert remove_mirror_id_from_slice(ids, mirror_id) == expected


@pytest.mark.parametrize(
    "ids, mirror_id, expected",
    [
        ([1, 3], 2, [1, 2, 3]),
        ([2, 3, 4], 1, [1, 2, 3, 4]),
        ([1, 2, 3], 4, [1, 2, 3, 4]),
        ([1, 2, 3], 2, [1, 2, 3]),
    ],
)
def test_add_mirror_id_to_slice(ids, mirror_id, expected):
    assert add_mirror_id_to_slice(ids, mirror_id) == expected