"""Chunk records and storage of chunk bytes on local disc."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

from .log_service import LogEvent, LogService


class ChunkServiceError(Exception):
    """Base error of chunk storage."""

    default_message = "chunk service error"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.default_message)


class ChunkWriteError(ChunkServiceError):
    default_message = "failed to write chunk"


class ChunkReadError(ChunkServiceError):
    default_message = "failed to read chunk"


class ChunkDeleteError(ChunkServiceError):
    default_message = "failed to delete chunk"


class ChunkNotFoundError(ChunkServiceError):
    default_message = "chunk not found"


def _encode_time(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _decode_time(value: Any) -> datetime | None:
    if not value:
        return None
    if isinstance(value, datetime):
        return value
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    return datetime.fromisoformat(value)


@dataclass
class ChunkReplica:
    """A copy of a chunk held by one node."""

    node_id: str
    address: str
    chunk_id: str
    created_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "NodeID": self.node_id,
            "Address": self.address,
            "ChunkID": self.chunk_id,
            "CreatedAt": _encode_time(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ChunkReplica":
        return cls(
            node_id=data.get("NodeID", ""),
            address=data.get("Address", ""),
            chunk_id=data.get("ChunkID", ""),
            created_at=_decode_time(data.get("CreatedAt")),
        )


@dataclass
class FileChunk:
    """One fixed-size piece of a file."""

    chunk_id: str
    file_id: str = ""
    size: int = 0
    created_at: datetime | None = None
    modified_at: datetime | None = None
    checksum: str = ""
    replicas: list[ChunkReplica] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "ChunkID": self.chunk_id,
            "FileID": self.file_id,
            "Size": self.size,
            "CreatedAt": _encode_time(self.created_at),
            "ModifiedAt": _encode_time(self.modified_at),
            "Checksum": self.checksum,
            "Replicas": [replica.to_dict() for replica in self.replicas],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "FileChunk":
        return cls(
            chunk_id=data.get("ChunkID", ""),
            file_id=data.get("FileID", ""),
            size=int(data.get("Size", 0) or 0),
            created_at=_decode_time(data.get("CreatedAt")),
            modified_at=_decode_time(data.get("ModifiedAt")),
            checksum=data.get("Checksum", ""),
            replicas=[ChunkReplica.from_dict(r) for r in data.get("Replicas") or []],
        )


class ChunkService(ABC):
    """Stores, reads and removes chunk bytes by id."""

    @abstractmethod
    def write_chunk(self, chunk_id: str, data: bytes) -> None: ...

    @abstractmethod
    def read_chunk(self, chunk_id: str) -> bytes: ...

    @abstractmethod
    def delete_chunk(self, chunk_id: str) -> None: ...


class LocalDiscChunkService(ChunkService):
    """Keeps each chunk as ``<base_dir>/<chunk_id>.chunk``."""

    def __init__(self, base_dir, ls: LogService) -> None:
        self.base_dir = Path(base_dir)
        self.base_dir.mkdir(parents=True, exist_ok=True)
        self.ls = ls

    def chunk_path(self, chunk_id: str) -> Path:
        return self.base_dir / f"{chunk_id}.chunk"

    def write_chunk(self, chunk_id: str, data: bytes) -> None:
        self.ls.info(LogEvent("Writing chunk", {"chunkID": chunk_id, "size": len(data)}))
        try:
            self.chunk_path(chunk_id).write_bytes(data)
        except OSError as err:
            self.ls.error(LogEvent("Failed to write chunk", {"chunkID": chunk_id, "error": str(err)}))
            raise ChunkWriteError() from err
        self.ls.info(LogEvent("Chunk written successfully", {"chunkID": chunk_id}))

    def read_chunk(self, chunk_id: str) -> bytes:
        self.ls.info(LogEvent("Reading chunk", {"chunkID": chunk_id}))
        try:
            data = self.chunk_path(chunk_id).read_bytes()
        except OSError as err:
            self.ls.error(LogEvent("Failed to read chunk", {"chunkID": chunk_id, "error": str(err)}))
            raise ChunkReadError() from err
        self.ls.info(LogEvent("Chunk read successfully", {"chunkID": chunk_id, "size": len(data)}))
        return data

    def delete_chunk(self, chunk_id: str) -> None:
        self.ls.info(LogEvent("Deleting chunk", {"chunkID": chunk_id}))
        try:
            self.chunk_path(chunk_id).unlink()
        except OSError as err:
            self.ls.error(LogEvent("Failed to delete chunk", {"chunkID": chunk_id, "error": str(err)}))
            raise ChunkDeleteError() from err
        self.ls.info(LogEvent("Chunk deleted successfully", {"chunkID": chunk_id}))