"""Metadata replication operations and the replicated metadata log."""

from __future__ import annotations

import json
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import IntEnum
from typing import Any

from .metadata_service import FileMetadata


class MetadataReplicationError(Exception):
    """Base error of metadata replication."""

    default_message = "metadata replication error"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.default_message)


class HealthyNodesGetError(MetadataReplicationError):
    default_message = "failed to get healthy nodes for replication"


class MetadataReplicationFailedError(MetadataReplicationError):
    default_message = "failed to replicate metadata to node"


class MetadataSendError(MetadataReplicationError):
    default_message = "failed to send metadata to node"


class NotLeaderError(MetadataReplicationError):
    default_message = "only leader can replicate entries"


class ReplicationTimeoutError(MetadataReplicationError):
    default_message = "replication timeout - failed to achieve quorum"


class MetadataOperationType(IntEnum):
    CREATE = 0
    DELETE = 1


@dataclass
class MetadataReplicationOp:
    """A metadata change to be copied to other nodes."""

    type: MetadataOperationType = MetadataOperationType.CREATE
    metadata: FileMetadata = field(default_factory=FileMetadata)


class MetadataReplicator(ABC):
    """Applies a metadata change across the cluster."""

    @abstractmethod
    def replicate(self, op: MetadataReplicationOp) -> None: ...


@dataclass
class CreateMetadataOp:
    metadata: FileMetadata = field(default_factory=FileMetadata)


@dataclass
class DeleteMetadataOp:
    path: str = ""


@dataclass
class MetadataOperation:
    """The body of a log entry: a create or a delete."""

    create_op: CreateMetadataOp | None = None
    delete_op: DeleteMetadataOp | None = None

    def to_dict(self) -> dict[str, Any]:
        obj: dict[str, Any] = {}
        if self.create_op is not None:
            obj["create_op"] = {"metadata": self.create_op.metadata.to_dict()}
        if self.delete_op is not None:
            obj["delete_op"] = {"path": self.delete_op.path}
        return obj

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "MetadataOperation":
        data = data or {}
        create = data.get("create_op")
        delete = data.get("delete_op")
        return cls(
            create_op=CreateMetadataOp(FileMetadata.from_dict(create.get("metadata") or {}))
            if create is not None else None,
            delete_op=DeleteMetadataOp(delete.get("path", "")) if delete is not None else None,
        )


def _encode_time(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _decode_time(value: Any) -> datetime | None:
    if not value:
        return None
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    return datetime.fromisoformat(value)


@dataclass
class MetadataLogEntry:
    """One entry of the replicated metadata log."""

    index: int = 0
    term: int = 0
    type: MetadataOperationType = MetadataOperationType.CREATE
    operation: MetadataOperation = field(default_factory=MetadataOperation)
    timestamp: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "index": self.index,
            "term": self.term,
            "type": int(self.type),
            "operation": self.operation.to_dict(),
            "timestamp": _encode_time(self.timestamp),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "MetadataLogEntry":
        return cls(
            index=int(data.get("index", 0) or 0),
            term=int(data.get("term", 0) or 0),
            type=MetadataOperationType(int(data.get("type", 0) or 0)),
            operation=MetadataOperation.from_dict(data.get("operation")),
            timestamp=_decode_time(data.get("timestamp")),
        )


def encode_entries(entries: list[MetadataLogEntry]) -> bytes:
    """Serialise log entries to a JSON array."""
    return json.dumps([entry.to_dict() for entry in entries]).encode("utf-8")


def decode_entries(data) -> list[MetadataLogEntry]:
    """Parse a JSON array of log entries; malformed input raises ValueError."""
    try:
        raw = json.loads(data)
        if raw is None:
            return []
        if not isinstance(raw, list):
            raise ValueError(f"expected array, got {type(raw).__name__}")
        return [MetadataLogEntry.from_dict(item) for item in raw]
    except (TypeError, AttributeError, KeyError) as err:
        raise ValueError(f"malformed log entries: {err}") from err


class MetadataLog:
    """An append-only, 1-indexed log with commit and apply positions."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._entries: list[MetadataLogEntry] = []
        self._commit_index = 0
        self._last_applied = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def append_entry(self, entry: MetadataLogEntry) -> int:
        """Append a copy of ``entry`` at the next index and return that index."""
        with self._lock:
            index = len(self._entries) + 1
            self._entries.append(replace(entry, index=index))
            return index

    def get_entries(self, start_index: int) -> list[MetadataLogEntry]:
        """Entries from ``start_index`` to the end; empty when out of range."""
        with self._lock:
            if start_index <= 0 or start_index > len(self._entries):
                return []
            return self._entries[start_index - 1:]

    def last_log_index(self) -> int:
        with self._lock:
            return len(self._entries)

    def last_log_term(self) -> int:
        with self._lock:
            return self._entries[-1].term if self._entries else 0

    def entry_at(self, index: int) -> MetadataLogEntry | None:
        """The entry stored at ``index``, or None when there is none."""
        with self._lock:
            if index <= 0 or index > len(self._entries):
                return None
            return self._entries[index - 1]

    @property
    def commit_index(self) -> int:
        with self._lock:
            return self._commit_index

    @commit_index.setter
    def commit_index(self, index: int) -> None:
        with self._lock:
            self._commit_index = index

    @property
    def last_applied(self) -> int:
        with self._lock:
            return self._last_applied

    @last_applied.setter
    def last_applied(self, index: int) -> None:
        with self._lock:
            self._last_applied = index

    def uncommitted_entries(self) -> list[MetadataLogEntry]:
        """Entries committed but not yet applied."""
        with self._lock:
            if self._last_applied >= self._commit_index:
                return []
            start = max(self._last_applied, 0)
            end = min(self._commit_index, len(self._entries))
            return self._entries[start:end]

    def truncate_after(self, index: int) -> None:
        """Drop every entry after ``index``; a negative index empties the log."""
        with self._lock:
            if index < 0:
                self._entries = []
            elif index < len(self._entries):
                del self._entries[index:]