import threading
import time
from dataclasses import dataclass
from types import SimpleNamespace
from typing import Any

from nodefeat.topology_gc import TopologyGC


class FakeTopoClient:
    def __init__(self, *names):
        self.objects = {name: SimpleNamespace(name=name) for name in names}
        self.lock = threading.Lock()
        self.fail_list = False

    def list(self):
        if self.fail_list:
            raise RuntimeError("list failed")
        with self.lock:
            return list(self.objects.values())

    def delete(self, name):
        with self.lock:
            if name not in self.objects:
                raise KeyError(name)
            del self.objects[name]

    def create(self, name):
        with self.lock:
            self.objects[name] = SimpleNamespace(name=name)

    def names(self):
        with self.lock:
            return sorted(self.objects)


@dataclass
class Tombstone:
    key: str
    obj: Any


def make_nodes(*names):
    return lambda: [SimpleNamespace(name=n) for n in names]


def test_old_nrt_without_node_is_removed():
    client = FakeTopoClient("node1")
    gc = TopologyGC(client, make_nodes(), gc_period=600)
    gc.start()
    assert client.names() == []
    gc.stop()


def test_one_old_and_one_up_to_date():
    client = FakeTopoClient("node1", "node2")
    gc = TopologyGC(client, make_nodes("node1"), gc_period=600)
    gc.start()
    assert client.names() == ["node1"]


def test_react_to_delete_event():
    client = FakeTopoClient("node1", "node2")
    nodes = ["node1", "node2"]
    gc = TopologyGC(client, lambda: list(nodes), gc_period=600)
    gc.start()
    assert client.names() == ["node1", "node2"]

    nodes.remove("node1")
    gc.delete_node_handler(SimpleNamespace(name="node1"))
    assert client.names() == ["node2"]


def test_delete_handler_unwraps_tombstone():
    client = FakeTopoClient("node1", "node2")
    gc = TopologyGC(client, make_nodes("node1", "node2"))
    gc.delete_node_handler(Tombstone(key="node2", obj=SimpleNamespace(name="node2")))
    assert client.names() == ["node1"]


def test_delete_handler_ignores_non_node():
    client = FakeTopoClient("node1")
    gc = TopologyGC(client, make_nodes("node1"))
    gc.delete_node_handler(object())
    assert client.names() == ["node1"]


def test_delete_missing_nrt_is_tolerated():
    client = FakeTopoClient("node1")
    gc = TopologyGC(client, make_nodes("node1"))
    gc.delete_nrt("absent")
    assert client.names() == ["node1"]


def test_list_failure_deletes_nothing():
    client = FakeTopoClient("node1", "node2")
    client.fail_list = True
    gc = TopologyGC(client, make_nodes())
    gc.run_gc()
    client.fail_list = False
    assert client.names() == ["node1", "node2"]


def test_periodic_gc_removes_obsolete_nrt():
    client = FakeTopoClient("node1", "node2")
    gc = TopologyGC(client, make_nodes("node1", "node2"), gc_period=0.05)
    gc.start()
    assert client.names() == ["node1", "node2"]

    worker = threading.Thread(target=gc.periodic_gc, args=(0.05,), daemon=True)
    worker.start()
    client.create("not-existing")

    deleted = False
    for _ in range(50):
        if client.names() == ["node1", "node2"]:
            deleted = True
            break
        time.sleep(0.1)
    gc.stop()
    worker.join(timeout=5)
    assert deleted
    assert not worker.is_alive()


def test_run_returns_after_stop():
    client = FakeTopoClient("stale")
    gc = TopologyGC(client, make_nodes(), gc_period=0.05)
    worker = threading.Thread(target=gc.run, daemon=True)
    worker.start()
    time.sleep(0.2)
    gc.stop()
    worker.join(timeout=5)
    assert not worker.is_alive()
    assert client.names() == []