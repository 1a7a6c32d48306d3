from pathlib import Path

import pytest

from sandstore.cli import create_raft_server
from sandstore.cluster_service import Node
from sandstore.communication import (
    Message,
    MessageType,
    ReadChunkRequest,
    RequestVoteRequest,
    SandCode,
    StoreChunkRequest,
    StoreFileRequest,
)


@pytest.fixture
def server(tmp_path):
    srv = create_raft_server(
        ":9181", "n1", [Node("n2", "localhost:9182", True), Node("n3", "localhost:9183", True)], str(tmp_path)
    )
    yield srv
    srv.ls.close()


def test_all_raft_handlers_registered(server):
    expected = {t.value for t in MessageType} - {
        MessageType.STORE_METADATA.value, MessageType.DELETE_METADATA.value,
    }
    assert set(server.typed_handlers) == expected


def test_chunks_live_under_base_dir(server, tmp_path):
    path = Path(server.cs.chunk_path("c1")).resolve()
    assert (tmp_path / "chunks" / "n1").resolve() in path.parents


def test_log_file_created(tmp_path):
    srv = create_raft_server(":9184", "n9", [Node("n8", "localhost:9185", True)], str(tmp_path))
    try:
        assert (tmp_path / "logs" / "n9.log").exists()
    finally:
        srv.ls.close()


def test_chunk_round_trip_through_dispatch(server):
    data = b"some chunk bytes"
    stored = server.handle_message(Message("c", MessageType.STORE_CHUNK, StoreChunkRequest("c1", data)))
    assert stored.code == SandCode.OK
    read = server.handle_message(Message("c", MessageType.READ_CHUNK, ReadChunkRequest("c1")))
    assert (read.code, read.body) == (SandCode.OK, data)


def test_missing_chunk_read_is_internal(server):
    resp = server.handle_message(Message("c", MessageType.READ_CHUNK, ReadChunkRequest("absent")))
    assert resp.code == SandCode.INTERNAL


def test_new_node_grants_vote(server):
    resp = server.handle_message(
        Message("n2", MessageType.REQUEST_VOTE, RequestVoteRequest(term=1, candidate_id="n2"))
    )
    assert resp.code == SandCode.OK


def test_new_node_is_follower_without_leader(server):
    resp = server.handle_message(Message("c", MessageType.STORE_FILE, StoreFileRequest("f", b"x")))
    assert resp.code == SandCode.UNAVAILABLE