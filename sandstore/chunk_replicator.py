"""Copying chunks to, reading them from and deleting them on other nodes."""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime, timezone

from .chunk_service import ChunkReplica
from .cluster_service import ClusterService
from .communication import (
    CommunicationError,
    Communicator,
    DeleteChunkRequest,
    Message,
    MessageType,
    ReadChunkRequest,
    SandCode,
    StoreChunkRequest,
)
from .log_service import LogEvent, LogService

REQUEST_TIMEOUT = 30.0


class ChunkReplicationError(Exception):
    """Base error of chunk replication."""

    default_message = "chunk replication error"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.default_message)


class InsufficientNodesError(ChunkReplicationError):
    default_message = "insufficient healthy nodes for replication"


class ReplicationFailedError(ChunkReplicationError):
    default_message = "replication failed on one or more nodes"


class DeletionFailedError(ChunkReplicationError):
    default_message = "deletion of replicated chunk failed on one or more nodes"


class ReplicatedChunkNotFoundError(ChunkReplicationError):
    default_message = "replicated chunk not found on any node"


class ChunkReplicator(ABC):
    """Places chunk copies on peer nodes."""

    @abstractmethod
    def replicate_chunk(self, chunk_id: str, data: bytes, replication_factor: int) -> list[ChunkReplica]: ...

    @abstractmethod
    def delete_replicated_chunk(self, chunk_id: str, replicas: list[ChunkReplica]) -> None: ...

    @abstractmethod
    def fetch_replicated_chunk(self, chunk_id: str, replicas: list[ChunkReplica]) -> bytes: ...


def _port_of(address: str) -> str:
    _, sep, port = address.rpartition(":")
    return port if sep else ""


class DefaultChunkReplicator(ChunkReplicator):
    """Sends chunk requests to healthy peers one after another."""

    def __init__(self, cluster_service: ClusterService, comm: Communicator, ls: LogService) -> None:
        self.cluster_service = cluster_service
        self.comm = comm
        self.ls = ls

    def replicate_chunk(self, chunk_id: str, data: bytes, replication_factor: int) -> list[ChunkReplica]:
        """Store the chunk on the first ``replication_factor`` healthy peers.

        The returned replicas start with this node's own copy.
        """
        self.ls.info(LogEvent("Replicating chunk", {
            "chunkID": chunk_id, "size": len(data), "replicationFactor": replication_factor,
        }))
        try:
            nodes = self.cluster_service.get_healthy_nodes()
        except Exception as err:
            self.ls.error(LogEvent("Failed to get healthy nodes", {"chunkID": chunk_id, "error": str(err)}))
            raise

        if len(nodes) < replication_factor:
            self.ls.warn(LogEvent("Insufficient nodes for replication", {
                "chunkID": chunk_id, "availableNodes": len(nodes), "required": replication_factor,
            }))
            raise InsufficientNodesError()

        targets = nodes[:replication_factor]
        self.ls.debug(LogEvent("Selected target nodes for replication", {
            "chunkID": chunk_id, "targetNodes": len(targets),
        }))

        own_address = self.comm.address()
        replicas = [ChunkReplica(
            node_id=_port_of(own_address),
            address=own_address,
            chunk_id=chunk_id,
            created_at=datetime.now(timezone.utc),
        )]

        for node in targets:
            where = {"chunkID": chunk_id, "nodeID": node.id, "address": node.address}
            self.ls.debug(LogEvent("Replicating chunk to node", dict(where)))
            msg = Message(own_address, MessageType.STORE_CHUNK, StoreChunkRequest(chunk_id=chunk_id, data=data))
            try:
                resp = self.comm.send(node.address, msg, timeout=REQUEST_TIMEOUT)
            except CommunicationError as err:
                self.ls.error(LogEvent("Failed to send chunk to node", {**where, "error": str(err)}))
                raise
            if resp.code != SandCode.OK:
                self.ls.error(LogEvent("Chunk replication failed", {**where, "responseCode": resp.code}))
                raise ReplicationFailedError()
            self.ls.debug(LogEvent("Chunk replicated successfully to node", dict(where)))
            replicas.append(ChunkReplica(
                node_id=node.id,
                address=node.address,
                chunk_id=chunk_id,
                created_at=datetime.now(timezone.utc),
            ))

        self.ls.info(LogEvent("Chunk replication completed", {"chunkID": chunk_id, "replicas": len(replicas)}))
        return replicas

    def fetch_replicated_chunk(self, chunk_id: str, replicas: list[ChunkReplica]) -> bytes:
        """Return the chunk from the first replica that serves it."""
        self.ls.info(LogEvent("Fetching replicated chunk", {"chunkID": chunk_id, "replicas": len(replicas)}))
        for replica in replicas:
            where = {"chunkID": chunk_id, "nodeID": replica.node_id, "address": replica.address}
            self.ls.debug(LogEvent("Attempting to fetch chunk from replica", dict(where)))
            msg = Message(self.comm.address(), MessageType.READ_CHUNK, ReadChunkRequest(chunk_id=chunk_id))
            try:
                resp = self.comm.send(replica.address, msg, timeout=REQUEST_TIMEOUT)
            except CommunicationError as err:
                self.ls.warn(LogEvent("Failed to fetch chunk from replica", {**where, "error": str(err)}))
                continue
            if resp.code == SandCode.OK:
                self.ls.info(LogEvent("Chunk fetched successfully from replica", {**where, "size": len(resp.body)}))
                return resp.body
            self.ls.warn(LogEvent("Failed to fetch chunk from replica", {**where, "responseCode": resp.code}))

        self.ls.error(LogEvent("Replicated chunk not found in any replica", {
            "chunkID": chunk_id, "replicas": len(replicas),
        }))
        raise ReplicatedChunkNotFoundError()

    def delete_replicated_chunk(self, chunk_id: str, replicas: list[ChunkReplica]) -> None:
        """Delete the chunk on every replica, stopping at the first failure."""
        self.ls.info(LogEvent("Deleting replicated chunk", {"chunkID": chunk_id, "replicas": len(replicas)}))
        for replica in replicas:
            where = {"chunkID": chunk_id, "nodeID": replica.node_id, "address": replica.address}
            self.ls.debug(LogEvent("Deleting chunk from replica", dict(where)))
            msg = Message(self.comm.address(), MessageType.DELETE_CHUNK, DeleteChunkRequest(chunk_id=chunk_id))
            try:
                resp = self.comm.send(replica.address, msg, timeout=REQUEST_TIMEOUT)
            except CommunicationError as err:
                self.ls.error(LogEvent("Failed to delete chunk from replica", {**where, "error": str(err)}))
                raise
            if resp.code != SandCode.OK:
                self.ls.error(LogEvent("Failed to delete chunk from replica", {**where, "responseCode": resp.code}))
                raise DeletionFailedError()
            self.ls.debug(LogEvent("Chunk deleted successfully from replica", dict(where)))

        self.ls.info(LogEvent("Replicated chunk deletion completed", {
            "chunkID": chunk_id, "replicas": len(replicas),
        }))