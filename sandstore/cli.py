"""Run a three-node Raft storage cluster in one process."""

from __future__ import annotations

import argparse
import logging
import os
import signal
import threading

from .chunk_replicator import DefaultChunkReplicator
from .chunk_service import LocalDiscChunkService
from .cluster_service import Node
from .communication import (
    AppendEntriesRequest,
    DeleteChunkRequest,
    DeleteFileRequest,
    MessageType,
    ReadChunkRequest,
    ReadFileRequest,
    RequestVoteRequest,
    StopServerRequest,
    StoreChunkRequest,
    StoreFileRequest,
)
from .file_service import RaftFileService
from .http_communicator import HTTPCommunicator
from .log_service import LocalDiscLogService
from .metadata_service import InMemoryMetadataService
from .raft_cluster import RaftClusterService
from .raft_metadata_replicator import RaftMetadataReplicator
from .server import RaftServer, ServerError

CHUNK_SIZE = 8 * 1024 * 1024
NODE_IDS = ("8080", "8081", "8082")

log = logging.getLogger("sandstore")


def create_raft_server(port: str, node_id: str, other_nodes: list[Node], base_dir: str = ".") -> RaftServer:
    """Build a fully wired Raft node listening on ``port``."""
    ls = LocalDiscLogService(os.path.join(base_dir, "logs"), node_id, "INFO")
    ms = InMemoryMetadataService(ls)
    cs = LocalDiscChunkService(os.path.join(base_dir, "chunks", node_id), ls)
    comm = HTTPCommunicator(port, ls)
    raft = RaftClusterService(node_id, other_nodes, comm, ls)
    cr = DefaultChunkReplicator(raft, comm, ls)
    mr = RaftMetadataReplicator(raft, ls, ms)
    fs = RaftFileService(ls, mr, cs, ms, cr, CHUNK_SIZE)
    srv = RaftServer(comm, fs, cs, ms, ls, raft)

    for msg_type, payload_type, handler in (
        (MessageType.REQUEST_VOTE, RequestVoteRequest, srv.handle_request_vote_message),
        (MessageType.STORE_FILE, StoreFileRequest, srv.handle_store_file_message),
        (MessageType.READ_FILE, ReadFileRequest, srv.handle_read_file_message),
        (MessageType.DELETE_FILE, DeleteFileRequest, srv.handle_delete_file_message),
        (MessageType.STORE_CHUNK, StoreChunkRequest, srv.handle_store_chunk_message),
        (MessageType.READ_CHUNK, ReadChunkRequest, srv.handle_read_chunk_message),
        (MessageType.DELETE_CHUNK, DeleteChunkRequest, srv.handle_delete_chunk_message),
        (MessageType.STOP_SERVER, StopServerRequest, srv.handle_stop_server_message),
        (MessageType.APPEND_ENTRIES, AppendEntriesRequest, srv.handle_append_entries_message),
    ):
        srv.register_typed_handler(msg_type, payload_type, handler)
    return srv


def _run_all(action, servers: list[RaftServer], what: str) -> None:
    def run(index: int, srv: RaftServer) -> None:
        try:
            action(srv)
        except ServerError as err:
            log.error("Failed to %s server %d: %s", what, index, err)

    threads = [threading.Thread(target=run, args=(i, s), daemon=True) for i, s in enumerate(servers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(
        prog="sandstore", description="Run a three-node Raft storage cluster on ports 8080-8082."
    )
    parser.add_argument("--base-dir", default=".", help="directory for logs and chunks")
    args = parser.parse_args(argv)
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(message)s")

    servers = [
        create_raft_server(
            f":{node_id}",
            node_id,
            [Node(other, f"localhost:{other}", True) for other in NODE_IDS if other != node_id],
            args.base_dir,
        )
        for node_id in NODE_IDS
    ]

    for node_id in NODE_IDS:
        log.info("Starting Raft server on :%s", node_id)
    _run_all(RaftServer.start, servers, "start")
    log.info("All Raft servers started - leader election should begin automatically")

    stop_requested = threading.Event()
    previous = {sig: signal.signal(sig, lambda *_: stop_requested.set())
                for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        while not stop_requested.wait(0.5):
            pass
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)

    log.info("Shutting down servers...")
    _run_all(RaftServer.stop, servers, "stop")
    log.info("All servers stopped")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())