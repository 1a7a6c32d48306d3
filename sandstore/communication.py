"""Messages, payloads, response codes and the communicator interface."""

from __future__ import annotations

import base64
import binascii
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, fields, is_dataclass
from enum import Enum
from typing import Any, Callable, Optional

from .metadata_service import FileMetadata


class CommunicationError(Exception):
    """Base error of the communication layer."""

    default_message = "communication error"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.default_message)


class ServerStartError(CommunicationError):
    default_message = "failed to start server"


class ServerStopError(CommunicationError):
    default_message = "failed to stop server"


class HandlerNotSetError(CommunicationError):
    default_message = "message handler not set"


class MessageSendError(CommunicationError):
    default_message = "failed to send message"


class PayloadMarshalError(CommunicationError):
    default_message = "failed to marshal payload"


class PayloadUnmarshalError(CommunicationError):
    default_message = "failed to unmarshal payload"


class MessageMarshalError(CommunicationError):
    default_message = "failed to marshal message"


class InvalidJSONError(CommunicationError):
    default_message = "invalid JSON in request"


class MissingRequiredFieldsError(CommunicationError):
    default_message = "missing required fields in request"


class MessageType(str, Enum):
    """Kinds of message exchanged between nodes and clients."""

    STORE_FILE = "store_file"
    READ_FILE = "read_file"
    DELETE_FILE = "delete_file"
    STORE_CHUNK = "store_chunk"
    READ_CHUNK = "read_chunk"
    DELETE_CHUNK = "delete_chunk"
    STORE_METADATA = "store_metadata"
    DELETE_METADATA = "delete_metadata"
    STOP_SERVER = "stop_server"
    REQUEST_VOTE = "request_vote"
    APPEND_ENTRIES = "append_entries"


class SandCode(str, Enum):
    """Transport-independent result codes."""

    OK = "OK"
    BAD_REQUEST = "BAD_REQUEST"
    NOT_FOUND = "NOT_FOUND"
    INTERNAL = "INTERNAL"
    UNAVAILABLE = "UNAVAILABLE"


@dataclass
class Message:
    """A typed message with an optional payload."""

    sender: str = ""
    type: str = ""
    payload: Any = None

    def __post_init__(self) -> None:
        if isinstance(self.type, MessageType):
            self.type = self.type.value


_ZERO = {"str": "", "int": 0, "bytes": b""}


def _wire(name: str, kind: str):
    meta = {"wire": name, "kind": kind}
    if kind == "metadata":
        return field(default_factory=FileMetadata, metadata=meta)
    return field(default=_ZERO[kind], metadata=meta)


@dataclass
class StoreFileRequest:
    path: str = _wire("Path", "str")
    data: bytes = _wire("Data", "bytes")


@dataclass
class ReadFileRequest:
    path: str = _wire("Path", "str")


@dataclass
class DeleteFileRequest:
    path: str = _wire("Path", "str")


@dataclass
class StoreChunkRequest:
    chunk_id: str = _wire("ChunkID", "str")
    data: bytes = _wire("Data", "bytes")


@dataclass
class ReadChunkRequest:
    chunk_id: str = _wire("ChunkID", "str")


@dataclass
class DeleteChunkRequest:
    chunk_id: str = _wire("ChunkID", "str")


@dataclass
class StoreMetadataRequest:
    metadata: FileMetadata = _wire("Metadata", "metadata")


@dataclass
class DeleteMetadataRequest:
    path: str = _wire("Path", "str")


@dataclass
class StopServerRequest:
    pass


@dataclass
class RequestVoteRequest:
    term: int = _wire("Term", "int")
    candidate_id: str = _wire("CandidateID", "str")
    last_log_index: int = _wire("LastLogIndex", "int")
    last_log_term: int = _wire("LastLogTerm", "int")


@dataclass
class AppendEntriesRequest:
    term: int = _wire("Term", "int")
    leader_id: str = _wire("LeaderID", "str")
    prev_log_index: int = _wire("PrevLogIndex", "int")
    prev_log_term: int = _wire("PrevLogTerm", "int")
    entries: bytes = _wire("Entries", "bytes")
    leader_commit: int = _wire("LeaderCommit", "int")


@dataclass
class Response:
    """Result of handling a message."""

    code: SandCode = SandCode.OK
    body: bytes = b""
    headers: dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not isinstance(self.code, SandCode):
            try:
                self.code = SandCode(self.code)
            except ValueError:
                pass
        if self.body is None:
            self.body = b""
        if self.headers is None:
            self.headers = {}


MessageHandler = Callable[[Message], Optional[Response]]

_PAYLOAD_TYPES: dict[MessageType, type] = {
    MessageType.STORE_FILE: StoreFileRequest,
    MessageType.READ_FILE: ReadFileRequest,
    MessageType.DELETE_FILE: DeleteFileRequest,
    MessageType.STORE_CHUNK: StoreChunkRequest,
    MessageType.READ_CHUNK: ReadChunkRequest,
    MessageType.DELETE_CHUNK: DeleteChunkRequest,
    MessageType.STORE_METADATA: StoreMetadataRequest,
    MessageType.DELETE_METADATA: DeleteMetadataRequest,
    MessageType.STOP_SERVER: StopServerRequest,
    MessageType.REQUEST_VOTE: RequestVoteRequest,
    MessageType.APPEND_ENTRIES: AppendEntriesRequest,
}
_PAYLOAD_CLASSES = frozenset(_PAYLOAD_TYPES.values())


def payload_type_for(message_type) -> type | None:
    """Return the payload class registered for a message type, or None."""
    try:
        return _PAYLOAD_TYPES[MessageType(message_type)]
    except ValueError:
        return None


def _encode_value(kind: str, value: Any) -> Any:
    if kind == "bytes":
        return base64.b64encode(bytes(value or b"")).decode("ascii")
    if kind == "metadata":
        return value.to_dict()
    return value


def _decode_value(kind: str, value: Any) -> Any:
    if value is None:
        return FileMetadata() if kind == "metadata" else _ZERO[kind]
    if kind == "str":
        if not isinstance(value, str):
            raise TypeError(f"expected string, got {type(value).__name__}")
        return value
    if kind == "int":
        if isinstance(value, bool) or not isinstance(value, int):
            raise TypeError(f"expected integer, got {type(value).__name__}")
        return value
    if kind == "bytes":
        if not isinstance(value, str):
            raise TypeError(f"expected base64 string, got {type(value).__name__}")
        return base64.b64decode(value, validate=True)
    if not isinstance(value, dict):
        raise TypeError(f"expected object, got {type(value).__name__}")
    return FileMetadata.from_dict(value)


def encode_payload(payload: Any) -> bytes:
    """Serialise a payload to JSON bytes; an absent payload gives empty bytes."""
    if payload is None:
        return b""
    if is_dataclass(payload) and type(payload) in _PAYLOAD_CLASSES:
        obj = {f.metadata["wire"]: _encode_value(f.metadata["kind"], getattr(payload, f.name))
               for f in fields(payload)}
    elif isinstance(payload, dict):
        obj = payload
    else:
        raise PayloadMarshalError(f"failed to marshal payload: unsupported type {type(payload).__name__}")
    try:
        return json.dumps(obj).encode("utf-8")
    except (TypeError, ValueError) as err:
        raise PayloadMarshalError(f"failed to marshal payload: {err}") from err


def decode_payload(message_type, raw) -> Any:
    """Build the registered payload of ``message_type`` from JSON text.

    Unregistered types give None; an empty or null payload gives the zero value.
    """
    cls = payload_type_for(message_type)
    if cls is None:
        return None
    if not raw:
        return cls()
    try:
        obj = json.loads(raw)
    except ValueError as err:
        raise PayloadUnmarshalError(f"failed to unmarshal payload: {err}") from err
    if obj is None:
        return cls()
    if not isinstance(obj, dict):
        raise PayloadUnmarshalError(
            f"failed to unmarshal payload: expected object, got {type(obj).__name__}"
        )
    kwargs = {}
    for f in fields(cls):
        wire = f.metadata["wire"]
        if wire not in obj:
            continue
        try:
            kwargs[f.name] = _decode_value(f.metadata["kind"], obj[wire])
        except (TypeError, ValueError, AttributeError, binascii.Error) as err:
            raise PayloadUnmarshalError(f"failed to unmarshal payload: field {wire}: {err}") from err
    return cls(**kwargs)


class Communicator(ABC):
    """Sends messages to peers and serves incoming ones."""

    @abstractmethod
    def start(self, handler: MessageHandler | None) -> None: ...

    @abstractmethod
    def send(self, to: str, msg: Message, timeout: float | None = None) -> Response: ...

    @abstractmethod
    def stop(self) -> None: ...

    @abstractmethod
    def address(self) -> str: ...