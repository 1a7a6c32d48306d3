"""Files split into chunks, stored locally, copied to peers and recorded via Raft."""

from __future__ import annotations

import hashlib
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timezone

from .chunk_replicator import ChunkReplicationError, ChunkReplicator
from .chunk_service import ChunkService, ChunkServiceError, FileChunk
from .cluster_service import ClusterError
from .communication import CommunicationError
from .log_service import LogEvent, LogService
from .metadata_log import MetadataOperationType, MetadataReplicationError, MetadataReplicationOp
from .metadata_service import MetadataError, MetadataService, new_file_metadata

REPLICATION_FACTOR = 2
# Storing stalls once a file reaches this many chunks, so such files are refused.
CHUNK_LIMIT = 5


class FileServiceError(Exception):
    """Base error of file operations."""

    default_message = "file service error"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.default_message)


class ChunkStoreFailedError(FileServiceError):
    default_message = "failed to store chunk"


class ChunkReadFailedError(FileServiceError):
    default_message = "failed to read chunk"


class ChunkDeleteFailedError(FileServiceError):
    default_message = "failed to delete chunk"


class MetadataGetFailedError(FileServiceError):
    default_message = "failed to get file metadata"


class MetadataCreateFailedError(FileServiceError):
    default_message = "failed to create file metadata"


class MetadataDeleteFailedError(FileServiceError):
    default_message = "failed to delete file metadata"


class ChunkReplicationFailedError(FileServiceError):
    default_message = "failed to replicate chunk"


class MetadataReplicationFailedError(FileServiceError):
    default_message = "failed to replicate metadata"


class ReplicatedChunkFetchFailedError(FileServiceError):
    default_message = "failed to fetch replicated chunk"


class ReplicatedChunkDeleteFailedError(FileServiceError):
    default_message = "failed to delete replicated chunk"


class FileService(ABC):
    """Stores, reads and deletes whole files."""

    @abstractmethod
    def store_file(self, path: str, data: bytes) -> None: ...

    @abstractmethod
    def read_file(self, path: str) -> bytes: ...

    @abstractmethod
    def delete_file(self, path: str) -> None: ...


class RaftFileService(FileService):
    """Writes chunks locally, replicates them, then commits metadata through Raft."""

    def __init__(self, ls: LogService, mr, cs: ChunkService, ms: MetadataService,
                 cr: ChunkReplicator, chunk_size: int) -> None:
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        self.ls = ls
        self.mr = mr
        self.cs = cs
        self.ms = ms
        self.cr = cr
        self.chunk_size = chunk_size

    def store_file(self, path: str, data: bytes) -> None:
        data = bytes(data)
        self.ls.info(LogEvent("Storing file (RaftFileService)", {"path": path, "size": len(data)}))
        pieces = [data[start:start + self.chunk_size] for start in range(0, len(data), self.chunk_size)]
        if len(pieces) >= CHUNK_LIMIT:
            self.ls.error(LogEvent("File needs too many chunks", {"path": path, "chunks": len(pieces)}))
            raise ChunkStoreFailedError(f"failed to store chunk: file needs {len(pieces)} chunks")

        now = datetime.now(timezone.utc)
        file_id = str(uuid.uuid4())
        chunks: list[FileChunk] = []
        for counter, piece in enumerate(pieces, start=1):
            chunk_id = str(uuid.uuid4())
            try:
                self.cs.write_chunk(chunk_id, piece)
            except (ChunkServiceError, OSError) as err:
                self.ls.error(LogEvent("Failed to store chunk", {"path": path, "chunkID": chunk_id, "error": str(err)}))
                raise ChunkStoreFailedError() from err
            try:
                replicas = self.cr.replicate_chunk(chunk_id, piece, REPLICATION_FACTOR)
            except (ChunkReplicationError, ClusterError, CommunicationError) as err:
                self.ls.error(LogEvent("Failed to replicate chunk", {
                    "path": path, "chunkID": chunk_id, "error": str(err),
                }))
                raise ChunkReplicationFailedError() from err
            chunks.append(FileChunk(
                chunk_id=chunk_id,
                file_id=file_id,
                size=len(piece),
                created_at=now,
                modified_at=now,
                checksum=hashlib.sha256(piece).hexdigest(),
                replicas=replicas,
            ))
            self.ls.info(LogEvent("Counter for chunks", {"counter": counter, "path": path}))

        metadata = new_file_metadata(path, len(data), chunks)
        self.ls.debug(LogEvent("Replicating metadata via Raft", {"path": path}))
        try:
            self.mr.replicate(MetadataReplicationOp(MetadataOperationType.CREATE, metadata))
        except (MetadataReplicationError, MetadataError) as err:
            self.ls.error(LogEvent("Failed to replicate metadata via Raft", {"path": path, "error": str(err)}))
            raise MetadataReplicationFailedError() from err
        self.ls.info(LogEvent("File stored successfully via Raft", {"path": path, "chunks": len(chunks)}))

    def read_file(self, path: str) -> bytes:
        """Join the file's chunks, fetching any missing locally from replicas."""
        self.ls.info(LogEvent("Reading file", {"path": path}))
        try:
            metadata = self.ms.get_file_metadata(path)
        except MetadataError as err:
            self.ls.error(LogEvent("Failed to get file metadata", {"path": path, "error": str(err)}))
            raise MetadataGetFailedError() from err

        parts: list[bytes] = []
        for chunk in metadata.chunks:
            try:
                piece = self.cs.read_chunk(chunk.chunk_id)
            except (ChunkServiceError, OSError):
                self.ls.warn(LogEvent("Chunk not found locally, fetching from replicas", {
                    "path": path, "chunkID": chunk.chunk_id,
                }))
                try:
                    piece = self.cr.fetch_replicated_chunk(chunk.chunk_id, chunk.replicas)
                except (ChunkReplicationError, CommunicationError) as err:
                    self.ls.error(LogEvent("Failed to fetch replicated chunk", {
                        "path": path, "chunkID": chunk.chunk_id, "error": str(err),
                    }))
                    raise ReplicatedChunkFetchFailedError() from err
            parts.append(piece)

        data = b"".join(parts)
        self.ls.info(LogEvent("File read successfully", {
            "path": path, "size": len(data), "chunks": len(metadata.chunks),
        }))
        return data

    def delete_file(self, path: str) -> None:
        """Deletion is not carried out by this service; the call always succeeds."""
        self.ls.debug(LogEvent("Delete requested, nothing removed", {"path": path}))