"""Message dispatch for a storage node that takes part in a Raft cluster."""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Callable

from .chunk_service import ChunkService, ChunkServiceError
from .cluster_service import ClusterService
from .communication import (
    AppendEntriesRequest,
    CommunicationError,
    Communicator,
    DeleteChunkRequest,
    DeleteFileRequest,
    Message,
    ReadChunkRequest,
    ReadFileRequest,
    RequestVoteRequest,
    Response,
    SandCode,
    StoreChunkRequest,
    StoreFileRequest,
)
from .file_service import FileService
from .log_service import LogEvent, LogService
from .metadata_service import MetadataService
from .raft_cluster import RaftClusterService


class ServerError(Exception):
    """Base error of the server lifecycle."""

    default_message = "server error"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.default_message)


class ServerStartFailedError(ServerError):
    default_message = "failed to start server"


class ServerStopFailedError(ServerError):
    default_message = "failed to stop server"


INVALID_PAYLOAD_TYPE = b"invalid payload type for message"
HANDLER_NOT_REGISTERED = b"no handler registered for message type"
FILE_STORE_FAILED = b"failed to store file"
FILE_READ_FAILED = b"failed to read file"
FILE_DELETE_FAILED = b"failed to delete file"
CHUNK_STORE_FAILED = b"failed to store chunk"
CHUNK_READ_FAILED = b"failed to read chunk"
CHUNK_DELETE_FAILED = b"failed to delete chunk"
CLUSTER_UNAVAILABLE = b"cluster service not available"
NO_LEADER = b"no leader available"
REDIRECT_FAILED = b"failed to redirect to leader"

Handler = Callable[[Message], Response]


@dataclass(frozen=True)
class TypedHandler:
    """A message handler together with the payload class it expects."""

    handler: Handler
    payload_type: type


def _type_key(msg_type) -> str:
    return msg_type.value if isinstance(msg_type, Enum) else str(msg_type)


class Server(ABC):
    """A node that serves messages arriving through a communicator."""

    @abstractmethod
    def start(self) -> None: ...

    @abstractmethod
    def stop(self) -> None: ...

    @abstractmethod
    def register_typed_handler(self, msg_type, payload_type: type, handler: Handler) -> None: ...


class RaftServer(Server):
    """Serves file, chunk and Raft messages; file writes go through the leader."""

    def __init__(self, comm: Communicator, fs: FileService, cs: ChunkService, ms: MetadataService,
                 ls: LogService, cluster_service: ClusterService) -> None:
        self.comm = comm
        self.fs = fs
        self.cs = cs
        self.ms = ms
        self.ls = ls
        self.cluster_service = cluster_service
        self.typed_handlers: dict[str, TypedHandler] = {}
        self._stop_lock = threading.Lock()
        self._stopped = False

    @property
    def _raft(self) -> RaftClusterService | None:
        cluster = self.cluster_service
        return cluster if isinstance(cluster, RaftClusterService) else None

    # lifecycle

    def start(self) -> None:
        """Start serving messages and, for a Raft cluster, its election timer."""
        self.ls.info(LogEvent("Starting raft server"))
        try:
            self.comm.start(self.handle_message)
        except (CommunicationError, OSError) as err:
            self.ls.error(LogEvent("Failed to start server", {"error": str(err)}))
            raise ServerStartFailedError() from err
        raft = self._raft
        if raft is not None:
            raft.start()
        self.ls.info(LogEvent("Raft server started successfully"))

    def stop(self) -> None:
        """Stop serving; a second call does nothing."""
        with self._stop_lock:
            if self._stopped:
                self.ls.debug(LogEvent("Server already stopped, skipping"))
                return
            self.ls.info(LogEvent("Stopping raft server"))
            raft = self._raft
            if raft is not None:
                raft.stop()
            try:
                self.comm.stop()
            except (CommunicationError, OSError) as err:
                self.ls.error(LogEvent("Failed to stop server", {"error": str(err)}))
                raise ServerStopFailedError() from err
            self._stopped = True
            self.ls.info(LogEvent("raft server stopped successfully"))

    # dispatch

    def register_typed_handler(self, msg_type, payload_type: type, handler: Handler) -> None:
        key = _type_key(msg_type)
        self.ls.debug(LogEvent("Registering typed handler", {
            "messageType": key, "payloadType": payload_type.__name__,
        }))
        self.typed_handlers[key] = TypedHandler(handler, payload_type)

    def handle_message(self, msg: Message) -> Response:
        """Route a message to its handler after checking the payload's type."""
        key = _type_key(msg.type)
        self.ls.debug(LogEvent("Processing message", {"type": key}))
        typed = self.typed_handlers.get(key)
        if typed is None:
            self.ls.warn(LogEvent("No handler registered for message type", {"type": key}))
            return Response(SandCode.BAD_REQUEST, HANDLER_NOT_REGISTERED)
        if msg.payload is not None and type(msg.payload) is not typed.payload_type:
            self.ls.warn(LogEvent("Invalid payload type", {
                "messageType": key,
                "expected": typed.payload_type.__name__,
                "actual": type(msg.payload).__name__,
            }))
            return Response(SandCode.BAD_REQUEST, INVALID_PAYLOAD_TYPE)
        return typed.handler(msg)

    # file messages

    def handle_store_file_message(self, msg: Message) -> Response:
        request: StoreFileRequest = msg.payload or StoreFileRequest()
        raft = self._raft
        if raft is not None and not raft.is_leader():
            self.ls.info(LogEvent("Store file request received by non-leader, redirecting", {
                "path": request.path, "size": len(request.data),
            }))
            return self._redirect_to_leader(msg)

        self.ls.info(LogEvent("Processing store file as leader", {
            "path": request.path, "size": len(request.data),
        }))
        try:
            self.fs.store_file(request.path, request.data)
        except Exception as err:  # any storage failure becomes an internal-error reply
            self.ls.error(LogEvent("Failed to store file", {"path": request.path, "error": str(err)}))
            return Response(SandCode.INTERNAL, FILE_STORE_FAILED)
        return Response(SandCode.OK)

    def handle_read_file_message(self, msg: Message) -> Response:
        request: ReadFileRequest = msg.payload or ReadFileRequest()
        self.ls.info(LogEvent("Reading file", {"path": request.path}))
        try:
            data = self.fs.read_file(request.path)
        except Exception as err:  # any storage failure becomes an internal-error reply
            self.ls.error(LogEvent("Failed to read file", {"path": request.path, "error": str(err)}))
            return Response(SandCode.INTERNAL, FILE_READ_FAILED)
        self.ls.info(LogEvent("File read successfully", {"path": request.path, "size": len(data)}))
        return Response(SandCode.OK, data)

    def handle_delete_file_message(self, msg: Message) -> Response:
        request: DeleteFileRequest = msg.payload or DeleteFileRequest()
        raft = self._raft
        if raft is not None and not raft.is_leader():
            self.ls.info(LogEvent("Delete file request received by non-leader, redirecting", {
                "path": request.path,
            }))
            return self._redirect_to_leader(msg)

        self.ls.info(LogEvent("Processing delete file as leader", {"path": request.path}))
        try:
            self.fs.delete_file(request.path)
        except Exception as err:  # any storage failure becomes an internal-error reply
            self.ls.error(LogEvent("Failed to delete file", {"path": request.path, "error": str(err)}))
            return Response(SandCode.INTERNAL, FILE_DELETE_FAILED)
        return Response(SandCode.OK)

    # chunk messages

    def handle_store_chunk_message(self, msg: Message) -> Response:
        request: StoreChunkRequest = msg.payload or StoreChunkRequest()
        self.ls.info(LogEvent("Storing chunk", {"chunkID": request.chunk_id, "size": len(request.data)}))
        try:
            self.cs.write_chunk(request.chunk_id, request.data)
        except (ChunkServiceError, OSError) as err:
            self.ls.error(LogEvent("Failed to store chunk", {"chunkID": request.chunk_id, "error": str(err)}))
            return Response(SandCode.INTERNAL, CHUNK_STORE_FAILED)
        self.ls.info(LogEvent("Chunk stored successfully", {"chunkID": request.chunk_id}))
        return Response(SandCode.OK)

    def handle_read_chunk_message(self, msg: Message) -> Response:
        request: ReadChunkRequest = msg.payload or ReadChunkRequest()
        self.ls.info(LogEvent("Reading chunk", {"chunkID": request.chunk_id}))
        try:
            data = self.cs.read_chunk(request.chunk_id)
        except (ChunkServiceError, OSError) as err:
            self.ls.error(LogEvent("Failed to read chunk", {"chunkID": request.chunk_id, "error": str(err)}))
            return Response(SandCode.INTERNAL, CHUNK_READ_FAILED)
        self.ls.info(LogEvent("Chunk read successfully", {"chunkID": request.chunk_id, "size": len(data)}))
        return Response(SandCode.OK, data)

    def handle_delete_chunk_message(self, msg: Message) -> Response:
        request: DeleteChunkRequest = msg.payload or DeleteChunkRequest()
        self.ls.info(LogEvent("Deleting chunk", {"chunkID": request.chunk_id}))
        try:
            self.cs.delete_chunk(request.chunk_id)
        except (ChunkServiceError, OSError) as err:
            self.ls.error(LogEvent("Failed to delete chunk", {"chunkID": request.chunk_id, "error": str(err)}))
            return Response(SandCode.INTERNAL, CHUNK_DELETE_FAILED)
        self.ls.info(LogEvent("Chunk deleted successfully", {"chunkID": request.chunk_id}))
        return Response(SandCode.OK)

    # control and Raft messages

    def handle_stop_server_message(self, msg: Message) -> Response:
        """Reply at once and stop the server in the background."""
        self.ls.info(LogEvent("Received stop server message"))

        def stop_in_background() -> None:
            try:
                self.stop()
            except ServerError as err:
                self.ls.error(LogEvent("Failed to stop server via message", {"error": str(err)}))

        threading.Thread(target=stop_in_background, daemon=True).start()
        return Response(SandCode.OK)

    def handle_request_vote_message(self, msg: Message) -> Response:
        request: RequestVoteRequest = msg.payload or RequestVoteRequest()
        self.ls.info(LogEvent("Handling request vote", {
            "term": request.term, "candidateID": request.candidate_id,
        }))
        raft = self._raft
        if raft is None:
            return Response(SandCode.INTERNAL, CLUSTER_UNAVAILABLE)
        granted = raft.handle_request_vote(request)
        return Response(SandCode.OK if granted else SandCode.BAD_REQUEST)

    def handle_append_entries_message(self, msg: Message) -> Response:
        request: AppendEntriesRequest = msg.payload or AppendEntriesRequest()
        self.ls.debug(LogEvent("Handling append entries message", {
            "term": request.term, "leaderID": request.leader_id,
        }))
        raft = self._raft
        if raft is None:
            return Response(SandCode.INTERNAL, CLUSTER_UNAVAILABLE)
        success = raft.handle_append_entries(request)
        return Response(SandCode.OK if success else SandCode.BAD_REQUEST)

    def _redirect_to_leader(self, msg: Message) -> Response:
        raft = self._raft
        if raft is None:
            return Response(SandCode.INTERNAL, CLUSTER_UNAVAILABLE)
        leader = raft.leader_address()
        if not leader:
            self.ls.error(LogEvent("No known leader to redirect request", {"messageType": msg.type}))
            return Response(SandCode.UNAVAILABLE, NO_LEADER)
        self.ls.info(LogEvent("Redirecting request to leader", {
            "messageType": msg.type, "leaderAddress": leader, "originalFrom": msg.sender,
        }))
        try:
            return self.comm.send(leader, msg)
        except (CommunicationError, OSError) as err:
            self.ls.error(LogEvent("Failed to redirect request to leader", {
                "messageType": msg.type, "leaderAddress": leader, "error": str(err),
            }))
            return Response(SandCode.INTERNAL, REDIRECT_FAILED)