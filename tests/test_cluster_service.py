import pytest

from sandstore.cluster_service import (
    InMemoryClusterService,
    InvalidNodeAddressError,
    InvalidNodeIDError,
    NoHealthyNodesError,
    Node,
    NodeAlreadyExistsError,
    NodeNotFoundError,
)
from sandstore.log_service import LogService


class RecordingLog(LogService):
    def __init__(self):
        self.events = []

    def debug(self, event):
        self.events.append(("DEBUG", event.message))

    def info(self, event):
        self.events.append(("INFO", event.message))

    def warn(self, event):
        self.events.append(("WARN", event.message))

    def error(self, event):
        self.events.append(("ERROR", event.message))


@pytest.fixture
def log():
    return RecordingLog()


def test_register_then_healthy_nodes_in_order(log):
    cluster = InMemoryClusterService([], log)
    cluster.register_node(Node("a", "localhost:8081"))
    cluster.register_node(Node("b", "localhost:8082"))
    assert [n.id for n in cluster.get_healthy_nodes()] == ["a", "b"]


def test_register_rejects_empty_id(log):
    cluster = InMemoryClusterService([], log)
    with pytest.raises(InvalidNodeIDError):
        cluster.register_node(Node("", "localhost:8081"))
    assert ("ERROR", "Invalid node ID") in log.events


def test_register_rejects_empty_address(log):
    cluster = InMemoryClusterService([], log)
    with pytest.raises(InvalidNodeAddressError):
        cluster.register_node(Node("a", ""))


def test_register_rejects_duplicate_id(log):
    cluster = InMemoryClusterService([Node("a", "localhost:8081")], log)
    with pytest.raises(NodeAlreadyExistsError):
        cluster.register_node(Node("a", "localhost:9999"))
    assert len(cluster.nodes) == 1


def test_deregister_removes_node(log):
    cluster = InMemoryClusterService(
        [Node("a", "localhost:8081"), Node("b", "localhost:8082")], log
    )
    cluster.deregister_node(Node("a", "localhost:8081"))
    assert [n.id for n in cluster.nodes] == ["b"]


def test_deregister_unknown_node(log):
    cluster = InMemoryClusterService([Node("a", "localhost:8081")], log)
    with pytest.raises(NodeNotFoundError):
        cluster.deregister_node(Node("z", "localhost:1"))


def test_unhealthy_nodes_are_filtered(log):
    cluster = InMemoryClusterService(
        [Node("a", "localhost:8081", False), Node("b", "localhost:8082", True)], log
    )
    assert [n.id for n in cluster.get_healthy_nodes()] == ["b"]


def test_no_healthy_nodes_raises(log):
    cluster = InMemoryClusterService([Node("a", "localhost:8081", False)], log)
    with pytest.raises(NoHealthyNodesError) as info:
        cluster.get_healthy_nodes()
    assert str(info.value) == "no healthy nodes available"


def test_initial_list_is_not_shared(log):
    nodes = [Node("a", "localhost:8081")]
    cluster = InMemoryClusterService(nodes, log)
    cluster.register_node(Node("b", "localhost:8082"))
    assert len(nodes) == 1