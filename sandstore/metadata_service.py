"""File metadata records and an in-memory metadata store."""

from __future__ import annotations

import hashlib
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any

from .chunk_service import FileChunk
from .log_service import LogEvent, LogService

DEFAULT_PERMISSIONS = "rw-r--r--"


class MetadataError(Exception):
    """Base error of the metadata service."""

    default_message = "metadata error"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.default_message)


class FileAlreadyExistsError(MetadataError):
    default_message = "file already exists"


class MetadataNotFoundError(MetadataError):
    default_message = "file not found"


class InvalidPathError(MetadataError):
    default_message = "invalid file path"


class MissingFileIDError(MetadataError):
    default_message = "file ID is required"


class InvalidSizeError(MetadataError):
    default_message = "file size cannot be negative"


class MissingCreatedAtError(MetadataError):
    default_message = "created at timestamp is required"


class MissingModifiedAtError(MetadataError):
    default_message = "modified at timestamp is required"


class MissingPermissionsError(MetadataError):
    default_message = "permissions are required"


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
class FileMetadata:
    """Everything the store knows about one file."""

    file_id: str = ""
    path: str = ""
    size: int = 0
    created_at: datetime | None = None
    modified_at: datetime | None = None
    permissions: str = ""
    chunks: list[FileChunk] = field(default_factory=list)

    def validate(self) -> None:
        """Raise the first problem found with this record."""
        if not self.path:
            raise InvalidPathError()
        if not self.file_id:
            raise MissingFileIDError()
        if self.size < 0:
            raise InvalidSizeError()
        if self.created_at is None:
            raise MissingCreatedAtError()
        if self.modified_at is None:
            raise MissingModifiedAtError()
        if not self.permissions:
            raise MissingPermissionsError()

    def to_dict(self) -> dict[str, Any]:
        return {
            "FileID": self.file_id,
            "Path": self.path,
            "Size": self.size,
            "CreatedAt": _encode_time(self.created_at),
            "ModifiedAt": _encode_time(self.modified_at),
            "Permissions": self.permissions,
            "Chunks": [chunk.to_dict() for chunk in self.chunks],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "FileMetadata":
        return cls(
            file_id=data.get("FileID", ""),
            path=data.get("Path", ""),
            size=int(data.get("Size", 0) or 0),
            created_at=_decode_time(data.get("CreatedAt")),
            modified_at=_decode_time(data.get("ModifiedAt")),
            permissions=data.get("Permissions", ""),
            chunks=[FileChunk.from_dict(c) for c in data.get("Chunks") or []],
        )


def generate_file_id(path: str) -> str:
    """Hex of the first 8 bytes of a hash of the path and the current time."""
    digest = hashlib.sha256(f"{path}_{time.time_ns()}".encode()).digest()
    return digest[:8].hex()


def new_file_metadata(path: str, size: int, chunks: list[FileChunk]) -> FileMetadata:
    """Build a fresh record with a new id, current timestamps and default permissions."""
    now = datetime.now(timezone.utc)
    return FileMetadata(
        file_id=generate_file_id(path),
        path=path,
        size=size,
        created_at=now,
        modified_at=now,
        permissions=DEFAULT_PERMISSIONS,
        chunks=list(chunks),
    )


class MetadataService(ABC):
    """Keeps file metadata by path."""

    @abstractmethod
    def create_file_metadata(self, metadata: FileMetadata) -> None: ...

    @abstractmethod
    def get_file_metadata(self, path: str) -> FileMetadata: ...

    @abstractmethod
    def delete_file_metadata(self, path: str) -> None: ...

    @abstractmethod
    def list_directory(self, path: str) -> list[FileMetadata]: ...

    @abstractmethod
    def update_file_metadata(self, path: str, metadata: FileMetadata) -> None: ...


class InMemoryMetadataService(MetadataService):
    """Metadata kept in a dictionary guarded by a lock."""

    def __init__(self, ls: LogService) -> None:
        self.ls = ls
        self._files: dict[str, FileMetadata] = {}
        self._lock = threading.Lock()

    def create_file_metadata(self, metadata: FileMetadata) -> None:
        self.ls.info(LogEvent("Creating file metadata from struct", {
            "path": metadata.path,
            "fileID": metadata.file_id,
            "size": metadata.size,
            "chunks": len(metadata.chunks),
        }))
        try:
            metadata.validate()
        except MetadataError as err:
            self.ls.error(LogEvent("Invalid metadata provided", {"path": metadata.path, "error": str(err)}))
            raise
        with self._lock:
            if metadata.path in self._files:
                self.ls.error(LogEvent("File metadata already exists", {"path": metadata.path}))
                raise FileAlreadyExistsError()
            self._files[metadata.path] = replace(metadata, chunks=list(metadata.chunks))
        self.ls.info(LogEvent("File metadata created successfully", {
            "path": metadata.path,
            "fileID": metadata.file_id,
            "chunks": len(metadata.chunks),
        }))

    def create_from_parts(self, path: str, size: int, chunks: list[FileChunk]) -> None:
        """Create a record from its parts, without an id and without validation."""
        self.ls.info(LogEvent("Creating file metadata", {"path": path, "size": size, "chunks": len(chunks)}))
        with self._lock:
            if path in self._files:
                self.ls.warn(LogEvent("File metadata already exists", {"path": path}))
                raise FileAlreadyExistsError()
            now = datetime.now(timezone.utc)
            self._files[path] = FileMetadata(
                path=path,
                size=size,
                created_at=now,
                modified_at=now,
                permissions=DEFAULT_PERMISSIONS,
                chunks=chunks,
            )
        self.ls.info(LogEvent("File metadata created successfully", {"path": path, "chunks": len(chunks)}))

    def get_file_metadata(self, path: str) -> FileMetadata:
        self.ls.debug(LogEvent("Getting file metadata", {"path": path}))
        with self._lock:
            file = self._files.get(path)
        if file is None:
            self.ls.warn(LogEvent("File metadata not found", {"path": path}))
            raise MetadataNotFoundError()
        self.ls.debug(LogEvent("File metadata retrieved successfully", {
            "path": path, "size": file.size, "chunks": len(file.chunks),
        }))
        return file

    def delete_file_metadata(self, path: str) -> None:
        self.ls.info(LogEvent("Deleting file metadata", {"path": path}))
        with self._lock:
            if self._files.pop(path, None) is None:
                self.ls.warn(LogEvent("File metadata not found for deletion", {"path": path}))
                raise MetadataNotFoundError()
        self.ls.info(LogEvent("File metadata deleted successfully", {"path": path}))

    def list_directory(self, path: str) -> list[FileMetadata]:
        self.ls.debug(LogEvent("Listing directory", {"path": path}))
        prefix = path + "/"
        with self._lock:
            files = [
                replace(file, chunks=list(file.chunks))
                for file in self._files.values()
                if path == "/" or file.path == path or file.path.startswith(prefix)
            ]
        self.ls.debug(LogEvent("Directory listed successfully", {"path": path, "files": len(files)}))
        return files

    def update_file_metadata(self, path: str, metadata: FileMetadata) -> None:
        self.ls.info(LogEvent("Updating file metadata", {
            "path": path, "size": metadata.size, "chunks": len(metadata.chunks),
        }))
        with self._lock:
            file = self._files.get(path)
            if file is None:
                self.ls.warn(LogEvent("File metadata not found for update", {"path": path}))
                raise MetadataNotFoundError()
            file.size = metadata.size
            file.modified_at = datetime.now(timezone.utc)
            file.permissions = metadata.permissions
            file.chunks = metadata.chunks
        self.ls.info(LogEvent("File metadata updated successfully", {
            "path": path, "chunks": len(metadata.chunks),
        }))