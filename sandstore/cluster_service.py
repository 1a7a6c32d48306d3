"""Cluster membership: nodes and an in-memory node registry."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass

from .log_service import LogEvent, LogService


class ClusterError(Exception):
    """Base error of cluster membership."""

    default_message = "cluster error"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.default_message)


class NodeAlreadyExistsError(ClusterError):
    default_message = "node already exists"


class NodeNotFoundError(ClusterError):
    default_message = "node not found"


class InvalidNodeIDError(ClusterError):
    default_message = "invalid node ID"


class InvalidNodeAddressError(ClusterError):
    default_message = "invalid node address"


class NoHealthyNodesError(ClusterError):
    default_message = "no healthy nodes available"


@dataclass
class Node:
    """A member of the cluster."""

    id: str
    address: str
    healthy: bool = True


class ClusterService(ABC):
    """Tracks the nodes of a cluster."""

    @abstractmethod
    def register_node(self, node: Node) -> None: ...

    @abstractmethod
    def deregister_node(self, node: Node) -> None: ...

    @abstractmethod
    def get_healthy_nodes(self) -> list[Node]: ...


class InMemoryClusterService(ClusterService):
    """Keeps the node list in memory, in registration order."""

    def __init__(self, nodes: list[Node] | None, ls: LogService) -> None:
        self.nodes: list[Node] = list(nodes or [])
        self.ls = ls

    def register_node(self, node: Node) -> None:
        self.ls.info(LogEvent("Registering node", {
            "nodeID": node.id, "address": node.address, "healthy": node.healthy,
        }))
        if not node.id:
            self.ls.error(LogEvent("Invalid node ID", {"nodeID": node.id}))
            raise InvalidNodeIDError()
        if not node.address:
            self.ls.error(LogEvent("Invalid node address", {"nodeID": node.id, "address": node.address}))
            raise InvalidNodeAddressError()
        if any(existing.id == node.id for existing in self.nodes):
            self.ls.error(LogEvent("Node already exists", {"nodeID": node.id}))
            raise NodeAlreadyExistsError()
        self.nodes.append(node)
        self.ls.info(LogEvent("Node registered successfully", {
            "nodeID": node.id, "totalNodes": len(self.nodes),
        }))

    def deregister_node(self, node: Node) -> None:
        self.ls.info(LogEvent("Deregistering node", {"nodeID": node.id, "address": node.address}))
        for position, existing in enumerate(self.nodes):
            if existing.id == node.id:
                del self.nodes[position]
                self.ls.info(LogEvent("Node deregistered successfully", {
                    "nodeID": node.id, "totalNodes": len(self.nodes),
                }))
                return
        self.ls.error(LogEvent("Node not found for deregistration", {
            "nodeID": node.id, "address": node.address,
        }))
        raise NodeNotFoundError()

    def get_healthy_nodes(self) -> list[Node]:
        self.ls.debug(LogEvent("Getting healthy nodes", {"totalNodes": len(self.nodes)}))
        healthy = [node for node in self.nodes if node.healthy]
        if not healthy:
            self.ls.warn(LogEvent("No healthy nodes available", {"totalNodes": len(self.nodes)}))
            raise NoHealthyNodesError()
        self.ls.debug(LogEvent("Healthy nodes retrieved", {
            "healthyNodes": len(healthy), "totalNodes": len(self.nodes),
        }))
        return healthy