import pytest

from sandstore.communication import Communicator, Response, SandCode
from sandstore.log_service import LogService
from sandstore.metadata_log import (
    CreateMetadataOp,
    DeleteMetadataOp,
    MetadataLogEntry,
    MetadataOperation,
    MetadataOperationType,
    MetadataReplicationFailedError,
    MetadataReplicationOp,
    NotLeaderError,
    ReplicationTimeoutError,
    decode_entries,
    encode_entries,
)
from sandstore.metadata_service import InMemoryMetadataService, MetadataError, new_file_metadata
from sandstore.raft_cluster import RaftClusterService
from sandstore.raft_metadata_replicator import RaftMetadataReplicator


class _NullLog(LogService):
    def debug(self, event):
        pass

    def info(self, event):
        pass

    def warn(self, event):
        pass

    def error(self, event):
        pass


class _OkComm(Communicator):
    def start(self, handler):
        pass

    def send(self, to, msg, timeout=None):
        return Response(SandCode.OK)

    def stop(self):
        pass

    def address(self):
        return "localhost:9999"


class _FakeCluster:
    def __init__(self, leader=True, outcome=True, follower=None, answer=True):
        self.log_processor = None
        self.leader = leader
        self.outcome = outcome
        self.follower = follower
        self.answer = answer
        self.calls = []

    def is_leader(self):
        return self.leader

    def current_term(self):
        return 3

    def replicate_entries(self, entries_data, log_index, metadata_log, callback):
        self.calls.append((entries_data, log_index, metadata_log))
        if not self.answer:
            return
        ok = self.outcome
        if self.follower is not None:
            ok = self.follower.process_received_entries(entries_data, 0, 0, 0)
        callback(log_index, ok)


def _replicator(cluster=None, timeout=5.0):
    ls = _NullLog()
    ms = InMemoryMetadataService(ls)
    cluster = cluster or _FakeCluster()
    return RaftMetadataReplicator(cluster, ls, ms, timeout), ms, cluster


def _create_entry(path, term=1):
    return MetadataLogEntry(
        term=term,
        type=MetadataOperationType.CREATE,
        operation=MetadataOperation(create_op=CreateMetadataOp(new_file_metadata(path, 3, []))),
    )


def test_registers_with_real_cluster_and_rejects_when_follower():
    ls = _NullLog()
    cluster = RaftClusterService("a", [], _OkComm(), ls)
    replicator = RaftMetadataReplicator(cluster, ls, InMemoryMetadataService(ls))
    assert cluster.log_processor is replicator
    with pytest.raises(NotLeaderError):
        replicator.replicate(MetadataReplicationOp(MetadataOperationType.CREATE, new_file_metadata("/x", 1, [])))
    assert replicator.metadata_log.last_log_index() == 0


def test_leader_replicate_create_applies_and_sends_entry():
    replicator, ms, cluster = _replicator()
    replicator.replicate(MetadataReplicationOp(MetadataOperationType.CREATE, new_file_metadata("/a.txt", 3, [])))
    assert ms.get_file_metadata("/a.txt").path == "/a.txt"
    assert replicator.metadata_log.commit_index == 1
    assert replicator.metadata_log.last_applied == 1
    data, index, log = cluster.calls[0]
    assert index == 1
    assert log is replicator.metadata_log
    sent = decode_entries(data)
    assert len(sent) == 1
    assert sent[0].term == 3
    assert sent[0].operation.create_op.metadata.path == "/a.txt"


def test_leader_replicate_delete_removes_metadata():
    replicator, ms, _ = _replicator()
    meta = new_file_metadata("/d.txt", 3, [])
    replicator.replicate(MetadataReplicationOp(MetadataOperationType.CREATE, meta))
    replicator.replicate(MetadataReplicationOp(MetadataOperationType.DELETE, meta))
    with pytest.raises(MetadataError):
        ms.get_file_metadata("/d.txt")
    assert replicator.metadata_log.last_log_index() == 2


def test_failed_quorum_raises_and_does_not_apply():
    replicator, ms, _ = _replicator(_FakeCluster(outcome=False))
    with pytest.raises(MetadataReplicationFailedError):
        replicator.replicate(MetadataReplicationOp(MetadataOperationType.CREATE, new_file_metadata("/f", 1, [])))
    with pytest.raises(MetadataError):
        ms.get_file_metadata("/f")
    assert replicator.metadata_log.commit_index == 0


def test_no_answer_times_out():
    replicator, _, _ = _replicator(_FakeCluster(answer=False), timeout=0.05)
    with pytest.raises(ReplicationTimeoutError):
        replicator.replicate(MetadataReplicationOp(MetadataOperationType.CREATE, new_file_metadata("/t", 1, [])))


def test_follower_appends_and_applies_committed_entries():
    replicator, ms, _ = _replicator(_FakeCluster(leader=False))
    assert replicator.process_received_entries(encode_entries([_create_entry("/p")]), 0, 0, 1) is True
    assert replicator.metadata_log.last_log_index() == 1
    assert ms.get_file_metadata("/p").path == "/p"


def test_follower_heartbeat_applies_later_commit():
    replicator, ms, _ = _replicator(_FakeCluster(leader=False))
    assert replicator.process_received_entries(encode_entries([_create_entry("/h")]), 0, 0, 0)
    with pytest.raises(MetadataError):
        ms.get_file_metadata("/h")
    assert replicator.process_received_entries(b"", 0, 0, 1)
    assert ms.get_file_metadata("/h").path == "/h"


def test_commit_index_capped_at_last_log_index():
    replicator, _, _ = _replicator(_FakeCluster(leader=False))
    replicator.process_received_entries(encode_entries([_create_entry("/c")]), 0, 0, 7)
    assert replicator.metadata_log.commit_index == 1


def test_missing_previous_entry_rejected():
    replicator, _, _ = _replicator(_FakeCluster(leader=False))
    assert replicator.process_received_entries(encode_entries([_create_entry("/m")]), 2, 1, 0) is False
    assert replicator.metadata_log.last_log_index() == 0


def test_term_mismatch_rejected_and_truncated():
    replicator, _, _ = _replicator(_FakeCluster(leader=False))
    data = encode_entries([_create_entry("/1"), _create_entry("/2")])
    assert replicator.process_received_entries(data, 0, 0, 0)
    assert replicator.process_received_entries(b"", 1, 5, 0) is False
    assert replicator.metadata_log.last_log_index() == 1


def test_matching_previous_term_accepted():
    replicator, _, _ = _replicator(_FakeCluster(leader=False))
    replicator.process_received_entries(encode_entries([_create_entry("/1", term=2)]), 0, 0, 0)
    assert replicator.process_received_entries(encode_entries([_create_entry("/2", term=2)]), 1, 2, 0)
    assert replicator.metadata_log.last_log_index() == 2


def test_malformed_entries_rejected():
    replicator, _, _ = _replicator(_FakeCluster(leader=False))
    assert replicator.process_received_entries(b"not json", 0, 0, 0) is False
    assert replicator.metadata_log.last_log_index() == 0


def test_apply_is_idempotent_for_existing_and_missing():
    replicator, ms, _ = _replicator(_FakeCluster(leader=False))
    delete_missing = MetadataLogEntry(
        term=1, type=MetadataOperationType.DELETE,
        operation=MetadataOperation(delete_op=DeleteMetadataOp("/none")),
    )
    data = encode_entries([_create_entry("/i"), _create_entry("/i"), delete_missing])
    assert replicator.process_received_entries(data, 0, 0, 3)
    assert ms.get_file_metadata("/i").path == "/i"
    assert replicator.metadata_log.last_applied == 3


def test_leader_to_follower_round_trip():
    follower, follower_ms, _ = _replicator(_FakeCluster(leader=False))
    leader, leader_ms, _ = _replicator(_FakeCluster(follower=follower))
    leader.replicate(MetadataReplicationOp(MetadataOperationType.CREATE, new_file_metadata("/r", 5, [])))
    follower.process_received_entries(b"", 0, 0, 1)
    assert follower_ms.get_file_metadata("/r").size == leader_ms.get_file_metadata("/r").size
    assert follower.metadata_log.last_log_index() == 1