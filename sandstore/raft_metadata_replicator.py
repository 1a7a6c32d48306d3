"""Metadata replication through the Raft log, applied to a metadata store."""

from __future__ import annotations

import queue
import threading
from datetime import datetime, timezone

from .log_service import LogEvent, LogService
from .metadata_log import (
    CreateMetadataOp,
    DeleteMetadataOp,
    MetadataLog,
    MetadataLogEntry,
    MetadataOperation,
    MetadataOperationType,
    MetadataReplicationFailedError,
    MetadataReplicationOp,
    MetadataReplicator,
    NotLeaderError,
    ReplicationTimeoutError,
    decode_entries,
    encode_entries,
)
from .metadata_service import MetadataError, MetadataService
from .raft_cluster import LogEntryProcessor, term_of

DEFAULT_REPLICATION_TIMEOUT = 5.0


class RaftMetadataReplicator(MetadataReplicator, LogEntryProcessor):
    """Appends metadata operations to a Raft log and applies committed ones.

    On the leader, ``replicate`` waits for a quorum; on followers, the cluster
    service hands received entries to ``process_received_entries``.
    """

    def __init__(self, cluster_service, ls: LogService, ms: MetadataService,
                 timeout: float = DEFAULT_REPLICATION_TIMEOUT) -> None:
        self.cluster_service = cluster_service
        self.metadata_log = MetadataLog()
        self.ls = ls
        self.ms = ms
        self.timeout = timeout
        self._pending_lock = threading.Lock()
        self._pending: dict[int, queue.Queue] = {}
        self._apply_lock = threading.RLock()
        cluster_service.log_processor = self

    def replicate(self, op: MetadataReplicationOp) -> None:
        """Replicate ``op`` to a quorum; raises if not leader, on failure or timeout."""
        if not self.cluster_service.is_leader():
            self.ls.info(LogEvent("Replication failed - not leader", {"operation": op.type}))
            raise NotLeaderError()

        entry = MetadataLogEntry(
            term=self.cluster_service.current_term(),
            type=op.type,
            operation=self._to_operation(op),
            timestamp=datetime.now(timezone.utc),
        )
        log_index = self.metadata_log.append_entry(entry)

        results: queue.Queue = queue.Queue(maxsize=1)
        with self._pending_lock:
            self._pending[log_index] = results

        try:
            self.cluster_service.replicate_entries(
                encode_entries([entry]), log_index, self.metadata_log, self._on_replication_complete
            )
            try:
                success = results.get(timeout=self.timeout)
            except queue.Empty:
                self.ls.info(LogEvent("Replication timeout", {"logIndex": log_index}))
                raise ReplicationTimeoutError() from None
        finally:
            with self._pending_lock:
                self._pending.pop(log_index, None)

        if not success:
            raise MetadataReplicationFailedError()

    @staticmethod
    def _to_operation(op: MetadataReplicationOp) -> MetadataOperation:
        if op.type == MetadataOperationType.CREATE:
            return MetadataOperation(create_op=CreateMetadataOp(op.metadata))
        if op.type == MetadataOperationType.DELETE:
            return MetadataOperation(delete_op=DeleteMetadataOp(op.metadata.path))
        return MetadataOperation()

    def process_received_entries(self, entries_data: bytes, prev_log_index: int,
                                 prev_log_term: int, leader_commit: int) -> bool:
        """Check consistency, append entries, advance the commit index and apply."""
        self.ls.info(LogEvent("Processing received log entries", {
            "prevLogIndex": prev_log_index,
            "prevLogTerm": prev_log_term,
            "leaderCommit": leader_commit,
            "entriesSize": len(entries_data or b""),
        }))
        log = self.metadata_log

        if prev_log_index > 0:
            if prev_log_index > log.last_log_index():
                self.ls.warn(LogEvent("Log consistency check failed - missing entries", {
                    "prevLogIndex": prev_log_index, "lastLogIndex": log.last_log_index(),
                }))
                return False
            prev_entry = log.entry_at(prev_log_index)
            if prev_entry is not None and term_of(prev_entry) != prev_log_term:
                self.ls.warn(LogEvent("Log consistency check failed - term mismatch", {
                    "prevLogIndex": prev_log_index,
                    "expectedTerm": prev_log_term,
                    "actualTerm": term_of(prev_entry),
                }))
                log.truncate_after(prev_log_index)
                return False

        if entries_data:
            try:
                entries = decode_entries(entries_data)
            except ValueError as err:
                self.ls.error(LogEvent("Failed to deserialize log entries", {"error": str(err)}))
                return False
            for entry in entries:
                index = log.append_entry(entry)
                self.ls.debug(LogEvent("Appended log entry", {
                    "index": index, "term": entry.term, "type": entry.type,
                }))

        if leader_commit > log.commit_index:
            old_commit = log.commit_index
            new_commit = min(leader_commit, log.last_log_index())
            log.commit_index = new_commit
            self.ls.info(LogEvent("Updated commit index", {
                "oldCommitIndex": old_commit, "newCommitIndex": new_commit,
            }))
            self._apply_committed_entries()

        return True

    def _apply_committed_entries(self) -> None:
        with self._apply_lock:
            log = self.metadata_log
            commit_index = log.commit_index
            last_applied = log.last_applied
            if last_applied >= commit_index:
                return
            self.ls.info(LogEvent("Applying committed entries to state machine", {
                "lastApplied": last_applied, "commitIndex": commit_index,
            }))
            for index in range(last_applied + 1, commit_index + 1):
                entry = log.entry_at(index)
                if entry is None:
                    self.ls.error(LogEvent("Missing log entry during application", {"index": index}))
                    continue
                try:
                    self._apply_entry(entry)
                except MetadataError as err:
                    self.ls.error(LogEvent("Failed to apply log entry", {"index": index, "error": str(err)}))
                    continue
                self.ls.debug(LogEvent("Applied log entry to state machine", {
                    "index": index, "type": entry.type,
                }))
            log.last_applied = commit_index

    def _exists(self, path: str) -> bool:
        try:
            self.ms.get_file_metadata(path)
        except MetadataError:
            return False
        return True

    def _apply_entry(self, entry: MetadataLogEntry) -> None:
        op = entry.operation
        if entry.type == MetadataOperationType.CREATE and op.create_op is not None:
            path = op.create_op.metadata.path
            if self._exists(path):
                self.ls.debug(LogEvent("Metadata already exists, skipping create operation", {"path": path}))
                return
            self.ms.create_file_metadata(op.create_op.metadata)
        elif entry.type == MetadataOperationType.DELETE and op.delete_op is not None:
            path = op.delete_op.path
            if not self._exists(path):
                self.ls.debug(LogEvent("Metadata doesn't exist, skipping delete operation", {"path": path}))
                return
            self.ms.delete_file_metadata(path)

    def _on_replication_complete(self, log_index: int, success: bool) -> None:
        if success:
            self.metadata_log.commit_index = log_index
            self._apply_committed_entries()
        with self._pending_lock:
            results = self._pending.get(log_index)
            if results is not None:
                try:
                    results.put_nowait(success)
                except queue.Full:
                    pass