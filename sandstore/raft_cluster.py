"""Raft leader election and log replication over the cluster's nodes."""

from __future__ import annotations

import random
import threading
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from enum import IntEnum
from typing import Any, Callable

from .cluster_service import ClusterError, InMemoryClusterService, Node
from .communication import (
    AppendEntriesRequest,
    Communicator,
    Message,
    MessageType,
    RequestVoteRequest,
    SandCode,
)
from .log_service import LogEvent, LogService

HEARTBEAT_INTERVAL = 0.1
ELECTION_TIMEOUT_MIN = 0.150
ELECTION_TIMEOUT_SPREAD = 0.150
ELECTION_WAIT = 0.5


class RaftState(IntEnum):
    LEADER = 0
    FOLLOWER = 1
    CANDIDATE = 2


def term_of(entry: Any) -> int:
    """Return the integer ``term`` of a log entry, or 0 when it has none."""
    if entry is None:
        return 0
    term = getattr(entry, "term", None)
    if isinstance(term, int) and not isinstance(term, bool):
        return term
    return 0


class LogEntryProcessor(ABC):
    """Receives log entries that a leader sends to this node."""

    @abstractmethod
    def process_received_entries(
        self, entries_data: bytes, prev_log_index: int, prev_log_term: int, leader_commit: int
    ) -> bool: ...


class RaftClusterService(InMemoryClusterService):
    """Cluster membership plus Raft elections, heartbeats and entry replication.

    ``nodes`` are the other members of the cluster; this node is ``node_id``.
    Set ``log_processor`` to receive entries sent by the leader.
    """

    def __init__(self, node_id: str, nodes: list[Node] | None, comm: Communicator, ls: LogService) -> None:
        super().__init__(nodes, ls)
        self.node_id = node_id
        self.comm = comm
        self.log_processor: LogEntryProcessor | None = None
        self._lock = threading.RLock()
        self._state = RaftState.FOLLOWER
        self._current_term = 0
        self._voted_for = ""
        self._vote_count = 0
        self._leader_id = ""
        self._election_timer: threading.Timer | None = None
        self._stopped = threading.Event()
        self._next_index: dict[str, int] = {}
        self._match_index: dict[str, int] = {}
        self._commit_index = 0

    # lifecycle

    def start(self) -> None:
        """Arm the election timer."""
        self.ls.info(LogEvent("Starting Raft cluster service", {"nodeID": self.node_id}))
        self._stopped.clear()
        with self._lock:
            self._reset_election_timer()

    def stop(self) -> None:
        """Cancel the election timer and end heartbeats."""
        self._stopped.set()
        with self._lock:
            if self._election_timer is not None:
                self._election_timer.cancel()
                self._election_timer = None

    # membership

    def register_node(self, node: Node) -> None:
        with self._lock:
            super().register_node(node)

    def deregister_node(self, node: Node) -> None:
        with self._lock:
            super().deregister_node(node)

    def get_healthy_nodes(self) -> list[Node]:
        with self._lock:
            return super().get_healthy_nodes()

    # elections

    def _reset_election_timer(self) -> None:
        if self._election_timer is not None:
            self._election_timer.cancel()
            self._election_timer = None
        if self._stopped.is_set():
            return
        timeout = ELECTION_TIMEOUT_MIN + random.random() * ELECTION_TIMEOUT_SPREAD
        self.ls.debug(LogEvent("Resetting election timer", {"timeout": timeout}))
        timer = threading.Timer(timeout, self._start_election)
        timer.daemon = True
        self._election_timer = timer
        timer.start()

    def _start_election(self) -> None:
        if self._stopped.is_set():
            return
        with self._lock:
            self._state = RaftState.CANDIDATE
            self._current_term += 1
            self._voted_for = self.node_id
            self._vote_count = 1
            term = self._current_term

        self.ls.info(LogEvent("Starting election", {"term": term, "candidateID": self.node_id}))
        try:
            nodes = self.get_healthy_nodes()
        except ClusterError as err:
            self.ls.error(LogEvent("Failed to get healthy nodes", {"error": str(err)}))
            return

        threading.Thread(target=self._election_timeout, args=(term,), daemon=True).start()
        for node in nodes:
            if node.id == self.node_id:
                continue
            threading.Thread(target=self._request_vote_from, args=(node.address, term), daemon=True).start()

    def _request_vote_from(self, address: str, term: int) -> None:
        if self._send_request_vote(address, term):
            self._register_vote()

    def _send_request_vote(self, address: str, term: int) -> bool:
        self.ls.debug(LogEvent("Sending request vote", {"nodeAddress": address, "term": term}))
        request = RequestVoteRequest(term=term, candidate_id=self.node_id, last_log_index=0, last_log_term=0)
        msg = Message(self.comm.address(), MessageType.REQUEST_VOTE, request)
        try:
            resp = self.comm.send(address, msg)
        except Exception as err:  # any transport failure counts as a refused vote
            self.ls.error(LogEvent("Failed to send request vote", {"nodeAddress": address, "error": str(err)}))
            return False
        granted = resp.code == SandCode.OK
        self.ls.debug(LogEvent("Received request vote response", {"nodeAddress": address, "voteGranted": granted}))
        return granted

    def _register_vote(self) -> None:
        with self._lock:
            self._vote_count += 1
            self.ls.debug(LogEvent("Registered vote", {"voteCount": self._vote_count}))
            try:
                nodes = self.get_healthy_nodes()
            except ClusterError:
                nodes = []
            if self._state == RaftState.CANDIDATE and self._vote_count > len(nodes) // 2:
                self._become_leader()
                self.ls.info(LogEvent("Became leader", {"term": self._current_term, "leaderID": self._leader_id}))

    def _become_leader(self) -> None:
        self._state = RaftState.LEADER
        self._leader_id = self.node_id
        if self._election_timer is not None:
            self._election_timer.cancel()
            self._election_timer = None
        self._start_heartbeats()

    def _election_timeout(self, term: int) -> None:
        if self._stopped.wait(ELECTION_WAIT):
            return
        with self._lock:
            if self._current_term == term and self._state == RaftState.CANDIDATE:
                self.ls.debug(LogEvent("Election timeout - restarting election", {"term": term}))
                self._reset_election_timer()

    def handle_request_vote(self, req: RequestVoteRequest) -> bool:
        """Decide whether to grant a candidate's vote request."""
        with self._lock:
            if req.term < self._current_term:
                return False
            if req.term > self._current_term:
                self._state = RaftState.FOLLOWER
                self._current_term = req.term
                self._voted_for = ""
                self._vote_count = 0
            if self._voted_for in ("", req.candidate_id):
                self._voted_for = req.candidate_id
                return True
            return False

    # heartbeats and entries

    def handle_append_entries(self, req: AppendEntriesRequest) -> bool:
        """Accept a heartbeat or entries from a leader; False rejects them."""
        with self._lock:
            self.ls.debug(LogEvent("Handling append entries", {
                "term": req.term, "leaderID": req.leader_id, "currentTerm": self._current_term,
            }))
            if req.term < self._current_term:
                self.ls.debug(LogEvent("Rejecting append entries - stale term", {
                    "requestTerm": req.term, "currentTerm": self._current_term,
                }))
                return False

            if req.term > self._current_term:
                self.ls.info(LogEvent("Received higher term, converting to follower", {
                    "oldTerm": self._current_term, "newTerm": req.term,
                }))
                self._current_term = req.term
                self._voted_for = ""
                self._vote_count = 0
                self._state = RaftState.FOLLOWER

            if self._state in (RaftState.FOLLOWER, RaftState.CANDIDATE):
                self._state = RaftState.FOLLOWER
                self._leader_id = req.leader_id
                self._reset_election_timer()

            if not req.entries:
                self.ls.debug(LogEvent("Heartbeat received", {
                    "leaderID": req.leader_id, "term": req.term, "leaderCommit": req.leader_commit,
                }))
                if self.log_processor is not None and req.leader_commit > self._commit_index:
                    self._commit_index = req.leader_commit
                    self.log_processor.process_received_entries(b"", 0, 0, req.leader_commit)
                return True

            return self._process_log_entries(req)

    def _process_log_entries(self, req: AppendEntriesRequest) -> bool:
        self.ls.info(LogEvent("Processing log entries", {
            "prevLogIndex": req.prev_log_index,
            "prevLogTerm": req.prev_log_term,
            "entriesSize": len(req.entries),
            "leaderCommit": req.leader_commit,
        }))
        if self.log_processor is None:
            self.ls.warn(LogEvent("No log processor set, cannot process entries"))
            return False
        success = self.log_processor.process_received_entries(
            req.entries, req.prev_log_index, req.prev_log_term, req.leader_commit
        )
        if success:
            self.ls.info(LogEvent("Log entries processed successfully"))
        else:
            self.ls.warn(LogEvent("Failed to process log entries"))
        return success

    def _start_heartbeats(self) -> None:
        self.ls.info(LogEvent("Starting heartbeats", {"term": self._current_term, "leaderID": self._leader_id}))
        threading.Thread(target=self._heartbeat_loop, name=f"heartbeat-{self.node_id}", daemon=True).start()

    def _heartbeat_loop(self) -> None:
        while not self._stopped.wait(HEARTBEAT_INTERVAL):
            with self._lock:
                if self._state != RaftState.LEADER:
                    return
            self._send_heartbeats()

    def _send_heartbeats(self) -> None:
        try:
            nodes = self.get_healthy_nodes()
        except ClusterError as err:
            self.ls.error(LogEvent("Failed to get healthy nodes", {"error": str(err)}))
            return
        for node in nodes:
            if node.id == self.node_id:
                continue
            threading.Thread(
                target=self._send_append_entries, args=(node.address, b"", None), daemon=True
            ).start()

    def _send_append_entries(self, address: str, entries_data: bytes, metadata_log: Any) -> bool:
        prev_log_index = prev_log_term = 0
        if metadata_log is not None:
            with self._lock:
                peer_next = self._next_index.get(address, 0) or 1
            prev_log_index = peer_next - 1
            if prev_log_index > 0:
                prev_log_term = term_of(metadata_log.entry_at(prev_log_index))

        with self._lock:
            request = AppendEntriesRequest(
                term=self._current_term,
                leader_id=self.node_id,
                prev_log_index=prev_log_index,
                prev_log_term=prev_log_term,
                entries=entries_data,
                leader_commit=self._commit_index,
            )
        msg = Message(self.comm.address(), MessageType.APPEND_ENTRIES, request)
        try:
            resp = self.comm.send(address, msg)
        except Exception:  # an unreachable peer simply does not acknowledge
            return False
        return resp.code == SandCode.OK

    def replicate_entries(
        self,
        entries_data: bytes,
        log_index: int,
        metadata_log: Any,
        callback: Callable[[int, bool], None],
    ) -> None:
        """Send entries to every peer, then report whether a quorum acknowledged."""
        with self._lock:
            term = self._current_term
        self.ls.info(LogEvent("Starting entry replication", {
            "logIndex": log_index, "entriesSize": len(entries_data), "currentTerm": term,
        }))
        try:
            nodes = self.get_healthy_nodes()
        except ClusterError as err:
            self.ls.info(LogEvent("Replication failed - no healthy nodes", {"error": str(err), "logIndex": log_index}))
            callback(log_index, False)
            return

        quorum = len(nodes) // 2 + 1
        self.ls.info(LogEvent("Replication cluster info", {
            "totalNodes": len(nodes), "quorumSize": quorum, "logIndex": log_index,
        }))
        peers = [node for node in nodes if node.id != self.node_id]
        with self._lock:
            for node in peers:
                if node.id not in self._next_index:
                    self._next_index[node.id] = 1
                    self._match_index[node.id] = 0

        acks = 1

        def replicate_to(node: Node) -> None:
            nonlocal acks
            where = {"nodeID": node.id, "nodeAddress": node.address, "logIndex": log_index}
            self.ls.info(LogEvent("Sending append entries to node", dict(where)))
            if self._send_append_entries(node.address, entries_data, metadata_log):
                with self._lock:
                    self._match_index[node.id] = log_index
                    self._next_index[node.id] = log_index + 1
                    acks += 1
                    self.ls.info(LogEvent("Received acknowledgment from node", {
                        "nodeID": node.id, "ackCount": acks, "quorumSize": quorum, "logIndex": log_index,
                    }))
            else:
                self.ls.info(LogEvent("Failed to get acknowledgment from node", dict(where)))

        if peers:
            with ThreadPoolExecutor(max_workers=len(peers)) as pool:
                list(pool.map(replicate_to, peers))

        reached = acks >= quorum
        with self._lock:
            self.ls.info(LogEvent("Replication completed", {
                "ackCount": acks,
                "quorumSize": quorum,
                "quorumReached": reached,
                "logIndex": log_index,
                "commitIndex": self._commit_index,
            }))
            if reached:
                self._commit_index = log_index
        callback(log_index, reached)

    # queries

    def is_leader(self) -> bool:
        with self._lock:
            return self._state == RaftState.LEADER

    def leader_address(self) -> str:
        """Address of the known leader, or an empty string when none is known."""
        with self._lock:
            if self._state == RaftState.LEADER:
                return self.comm.address()
            for node in self.nodes:
                if node.id == self._leader_id:
                    return node.address
            return ""

    def current_term(self) -> int:
        with self._lock:
            return self._current_term