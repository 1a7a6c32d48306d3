import json
from datetime import datetime, timezone

import pytest

from sandstore.chunk_service import (
    ChunkDeleteError,
    ChunkReadError,
    ChunkReplica,
    ChunkServiceError,
    ChunkWriteError,
    FileChunk,
    LocalDiscChunkService,
)
from sandstore.log_service import LogService


class RecordingLog(LogService):
    def __init__(self):
        self.events = []

    def debug(self, event):
        self.events.append(("DEBUG", event.message))

    def info(self, event):
        self.events.append(("INFO", event.message))

    def warn(self, event):
        self.events.append(("WARN", event.message))

    def error(self, event):
        self.events.append(("ERROR", event.message))


@pytest.fixture
def log():
    return RecordingLog()


@pytest.fixture
def service(tmp_path, log):
    return LocalDiscChunkService(tmp_path / "chunks" / "node", log)


def test_init_creates_nested_directory(tmp_path, log):
    LocalDiscChunkService(tmp_path / "a" / "b", log)
    assert (tmp_path / "a" / "b").is_dir()


def test_chunk_path(service):
    path = service.chunk_path("abc")
    assert path.name == "abc.chunk"
    assert path.parent == service.base_dir


def test_write_read_round_trip(service):
    service.write_chunk("c1", b"payload bytes")
    assert service.read_chunk("c1") == b"payload bytes"
    assert service.chunk_path("c1").read_bytes() == b"payload bytes"


def test_read_missing_raises(service, log):
    with pytest.raises(ChunkReadError, match="failed to read chunk"):
        service.read_chunk("nope")
    assert ("ERROR", "Failed to read chunk") in log.events


def test_delete_missing_raises(service):
    with pytest.raises(ChunkDeleteError, match="failed to delete chunk"):
        service.delete_chunk("nope")


def test_delete_removes_chunk(service):
    service.write_chunk("c2", b"x")
    service.delete_chunk("c2")
    assert not service.chunk_path("c2").exists()
    with pytest.raises(ChunkServiceError):
        service.read_chunk("c2")


def test_write_failure_raises(service):
    with pytest.raises(ChunkWriteError, match="failed to write chunk"):
        service.write_chunk("missing-dir/c3", b"x")


def test_file_chunk_dict_round_trip():
    now = datetime(2024, 5, 6, 7, 8, 9, tzinfo=timezone.utc)
    chunk = FileChunk(
        chunk_id="c1",
        file_id="f1",
        size=3,
        created_at=now,
        modified_at=now,
        checksum="abc",
        replicas=[ChunkReplica("8081", "localhost:8081", "c1", now)],
    )
    encoded = json.loads(json.dumps(chunk.to_dict()))
    assert encoded["ChunkID"] == "c1"
    assert encoded["Replicas"][0]["Address"] == "localhost:8081"
    assert FileChunk.from_dict(encoded) == chunk


def test_file_chunk_from_dict_accepts_null_replicas():
    chunk = FileChunk.from_dict({"ChunkID": "c9", "Size": 4, "Replicas": None})
    assert chunk.replicas == []
    assert chunk.size == 4