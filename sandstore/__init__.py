"""Distributed file store with local chunk storage, chunk replication over HTTP
and Raft-replicated file metadata."""

__version__ = "0.1.0"

__all__ = [
    "chunk_replicator",
    "chunk_service",
    "cli",
    "cluster_service",
    "communication",
    "file_service",
    "http_communicator",
    "log_service",
    "metadata_log",
    "metadata_service",
    "raft_cluster",
    "raft_metadata_replicator",
    "server",
]