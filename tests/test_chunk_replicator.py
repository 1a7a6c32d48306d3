import pytest

from sandstore.chunk_replicator import (
    DefaultChunkReplicator,
    DeletionFailedError,
    InsufficientNodesError,
    ReplicatedChunkNotFoundError,
    ReplicationFailedError,
)
from sandstore.chunk_service import ChunkReplica
from sandstore.cluster_service import InMemoryClusterService, NoHealthyNodesError, Node
from sandstore.communication import (
    Communicator,
    DeleteChunkRequest,
    MessageSendError,
    MessageType,
    ReadChunkRequest,
    Response,
    SandCode,
    StoreChunkRequest,
)
from sandstore.log_service import LogService


class NullLog(LogService):
    def debug(self, event):
        pass

    def info(self, event):
        pass

    def warn(self, event):
        pass

    def error(self, event):
        pass


class FakeComm(Communicator):
    def __init__(self, own=":8080", responses=None, failing=()):
        self.own = own
        self.responses = responses or {}
        self.failing = set(failing)
        self.sent = []

    def start(self, handler):
        pass

    def stop(self):
        pass

    def address(self):
        return self.own

    def send(self, to, msg, timeout=None):
        self.sent.append((to, msg, timeout))
        if to in self.failing:
            raise MessageSendError()
        return self.responses.get(to, Response(SandCode.OK, b""))


def make(nodes, **kwargs):
    comm = FakeComm(**kwargs)
    cluster = InMemoryClusterService(nodes, NullLog())
    return DefaultChunkReplicator(cluster, comm, NullLog()), comm


PEERS = [Node("8081", "localhost:8081"), Node("8082", "localhost:8082")]


def test_replicate_returns_local_then_peer_replicas():
    replicator, comm = make(PEERS)
    replicas = replicator.replicate_chunk("c1", b"data", 2)
    assert [r.node_id for r in replicas] == ["8080", "8081", "8082"]
    assert replicas[0].address == ":8080"
    assert all(r.chunk_id == "c1" for r in replicas)
    assert [to for to, _, _ in comm.sent] == ["localhost:8081", "localhost:8082"]


def test_replicate_sends_store_chunk_payload():
    replicator, comm = make(PEERS)
    replicator.replicate_chunk("c1", b"data", 1)
    to, msg, timeout = comm.sent[0]
    assert msg.type == MessageType.STORE_CHUNK.value
    assert msg.payload == StoreChunkRequest(chunk_id="c1", data=b"data")
    assert msg.sender == ":8080"
    assert timeout == 30.0
    assert len(comm.sent) == 1


def test_replicate_insufficient_nodes():
    replicator, comm = make(PEERS)
    with pytest.raises(InsufficientNodesError):
        replicator.replicate_chunk("c1", b"data", 3)
    assert comm.sent == []


def test_replicate_without_healthy_nodes():
    replicator, _ = make([Node("x", "localhost:9", False)])
    with pytest.raises(NoHealthyNodesError):
        replicator.replicate_chunk("c1", b"data", 1)


def test_replicate_bad_response_fails():
    replicator, _ = make(PEERS, responses={"localhost:8082": Response(SandCode.INTERNAL)})
    with pytest.raises(ReplicationFailedError):
        replicator.replicate_chunk("c1", b"data", 2)


def test_replicate_send_error_propagates():
    replicator, _ = make(PEERS, failing={"localhost:8081"})
    with pytest.raises(MessageSendError):
        replicator.replicate_chunk("c1", b"data", 2)


def replicas_for(*addresses):
    return [ChunkReplica(a.rpartition(":")[2], a, "c1") for a in addresses]


def test_fetch_skips_failing_replicas():
    replicator, comm = make(
        PEERS,
        failing={"localhost:8081"},
        responses={
            "localhost:8082": Response(SandCode.NOT_FOUND),
            "localhost:8083": Response(SandCode.OK, b"chunk-bytes"),
        },
    )
    data = replicator.fetch_replicated_chunk(
        "c1", replicas_for("localhost:8081", "localhost:8082", "localhost:8083")
    )
    assert data == b"chunk-bytes"
    assert comm.sent[-1][1].payload == ReadChunkRequest(chunk_id="c1")


def test_fetch_not_found_anywhere():
    replicator, _ = make(PEERS, responses={"localhost:8081": Response(SandCode.INTERNAL)})
    with pytest.raises(ReplicatedChunkNotFoundError):
        replicator.fetch_replicated_chunk("c1", replicas_for("localhost:8081"))


def test_fetch_with_no_replicas():
    replicator, _ = make(PEERS)
    with pytest.raises(ReplicatedChunkNotFoundError):
        replicator.fetch_replicated_chunk("c1", [])


def test_delete_contacts_every_replica():
    replicator, comm = make(PEERS)
    replicator.delete_replicated_chunk("c1", replicas_for("localhost:8081", "localhost:8082"))
    assert [to for to, _, _ in comm.sent] == ["localhost:8081", "localhost:8082"]
    assert all(msg.payload == DeleteChunkRequest(chunk_id="c1") for _, msg, _ in comm.sent)


def test_delete_stops_on_bad_response():
    replicator, comm = make(PEERS, responses={"localhost:8081": Response(SandCode.INTERNAL)})
    with pytest.raises(DeletionFailedError):
        replicator.delete_replicated_chunk("c1", replicas_for("localhost:8081", "localhost:8082"))
    assert len(comm.sent) == 1


def test_delete_send_error_propagates():
    replicator, _ = make(PEERS, failing={"localhost:8081"})
    with pytest.raises(MessageSendError):
        replicator.delete_replicated_chunk("c1", replicas_for("localhost:8081"))