import json
from datetime import datetime, timezone

import pytest

from sandstore.metadata_log import (
    CreateMetadataOp,
    DeleteMetadataOp,
    MetadataLog,
    MetadataLogEntry,
    MetadataOperation,
    MetadataOperationType,
    NotLeaderError,
    decode_entries,
    encode_entries,
)
from sandstore.metadata_service import new_file_metadata


def entry(term, op_type=MetadataOperationType.CREATE):
    return MetadataLogEntry(term=term, type=op_type, operation=MetadataOperation())


def test_append_assigns_consecutive_indices():
    log = MetadataLog()
    original = entry(1)
    assert log.append_entry(original) == 1
    assert log.append_entry(entry(2)) == 2
    assert log.entry_at(1).index == 1
    assert original.index == 0
    assert log.last_log_index() == 2
    assert log.last_log_term() == 2


def test_empty_log_positions():
    log = MetadataLog()
    assert log.last_log_index() == 0
    assert log.last_log_term() == 0
    assert log.entry_at(1) is None
    assert log.get_entries(1) == []


def test_entry_at_out_of_range():
    log = MetadataLog()
    log.append_entry(entry(1))
    assert log.entry_at(0) is None
    assert log.entry_at(2) is None


def test_get_entries_from_index():
    log = MetadataLog()
    for term in (1, 1, 2):
        log.append_entry(entry(term))
    assert [e.index for e in log.get_entries(2)] == [2, 3]
    assert log.get_entries(4) == []


def test_truncate_after():
    log = MetadataLog()
    for term in (1, 1, 2):
        log.append_entry(entry(term))
    log.truncate_after(1)
    assert log.last_log_index() == 1
    log.truncate_after(5)
    assert log.last_log_index() == 1
    log.truncate_after(-1)
    assert log.last_log_index() == 0


def test_uncommitted_entries_between_applied_and_commit():
    log = MetadataLog()
    for term in (1, 1, 1):
        log.append_entry(entry(term))
    assert log.uncommitted_entries() == []
    log.commit_index = 3
    log.last_applied = 1
    assert [e.index for e in log.uncommitted_entries()] == [2, 3]
    log.commit_index = 10
    assert [e.index for e in log.uncommitted_entries()] == [2, 3]
    log.last_applied = 10
    assert log.uncommitted_entries() == []


def test_encode_decode_round_trip():
    metadata = new_file_metadata("/a.txt", 4, [])
    stamp = datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
    entries = [
        MetadataLogEntry(1, 3, MetadataOperationType.CREATE,
                         MetadataOperation(create_op=CreateMetadataOp(metadata)), stamp),
        MetadataLogEntry(2, 3, MetadataOperationType.DELETE,
                         MetadataOperation(delete_op=DeleteMetadataOp("/a.txt")), stamp),
    ]
    assert decode_entries(encode_entries(entries)) == entries


def test_wire_keys_and_omitted_ops():
    entries = [MetadataLogEntry(1, 2, MetadataOperationType.DELETE,
                                MetadataOperation(delete_op=DeleteMetadataOp("/x")))]
    raw = json.loads(encode_entries(entries))
    assert set(raw[0]) == {"index", "term", "type", "operation", "timestamp"}
    assert raw[0]["operation"] == {"delete_op": {"path": "/x"}}
    assert raw[0]["type"] == 1


def test_decode_rejects_malformed():
    with pytest.raises(ValueError):
        decode_entries(b"not json")
    with pytest.raises(ValueError):
        decode_entries(b'{"index": 1}')


def test_error_message():
    assert str(NotLeaderError()) == "only leader can replicate entries"