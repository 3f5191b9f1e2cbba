"""Workflow graph: nodes, edges and ordering helpers."""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

from models.node_types import NodeType


class GraphCycleError(Exception):
    """Raised when the workflow graph contains a cycle."""

    def __init__(self, node_ids: list[str]):
        self.node_ids = node_ids
        super().__init__(f"Workflow contains a cycle involving: {', '.join(node_ids)}")


class WorkflowNode(BaseModel):
    """A node as authored in the editor."""

    id: str
    type: str
    data: dict[str, Any] = {}

    @property
    def node_type(self) -> NodeType:
        return NodeType.parse(self.type)


class WorkflowEdge(BaseModel):
    """Directed edge, optionally between named handles."""

    model_config = ConfigDict(populate_by_name=True)

    source: str
    target: str
    source_handle: str | None = Field(default=None, alias="sourceHandle")
    target_handle: str | None = Field(default=None, alias="targetHandle")


class WorkflowGraph(BaseModel):
    """Static node/edge graph of a workflow."""

    nodes: list[WorkflowNode] = []
    edges: list[WorkflowEdge] = []

    @model_validator(mode="after")
    def check_references(self) -> "WorkflowGraph":
        ids = [node.id for node in self.nodes]
        if len(ids) != len(set(ids)):
            raise ValueError("node ids must be unique")
        known = set(ids)
        for edge in self.edges:
            if edge.source not in known:
                raise ValueError(f"edge source not found: {edge.source}")
            if edge.target not in known:
                raise ValueError(f"edge target not found: {edge.target}")
        return self

    def node(self, node_id: str) -> WorkflowNode | None:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def incoming_edges(self, node_id: str) -> list[WorkflowEdge]:
        return [edge for edge in self.edges if edge.target == node_id]

    def validate_node_types(self) -> None:
        """Raise UnknownNodeTypeError for the first unrecognised node type."""
        for node in self.nodes:
            NodeType.parse(node.type)

    def dependency_map(self) -> dict[str, list[str]]:
        """Map each node id to its distinct upstream node ids, in edge order."""
        deps: dict[str, list[str]] = {node.id: [] for node in self.nodes}
        for edge in self.edges:
            upstream = deps[edge.target]
            if edge.source not in upstream:
                upstream.append(edge.source)
        return deps

    def topological_order(self) -> list[str]:
        """Return node ids in dependency order.

        Ties are broken by declaration order so the result is stable across
        runs. Raises GraphCycleError if some nodes can never become ready.
        """
        deps = self.dependency_map()
        remaining = {node_id: set(upstream) for node_id, upstream in deps.items()}
        order: list[str] = []

        while remaining:
            ready = [
                node.id
                for node in self.nodes
                if node.id in remaining and not remaining[node.id]
            ]
            if not ready:
                raise GraphCycleError(sorted(remaining))
            for node_id in ready:
                order.append(node_id)
                del remaining[node_id]
            for upstream in remaining.values():
                upstream.difference_update(ready)

        return order
