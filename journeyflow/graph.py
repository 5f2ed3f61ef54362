"""Flat node/edge representation of a journey graph."""

from __future__ import annotations

from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from .contracts import Journey, JourneyEdge, JourneyNode


class JourneyGraph(BaseModel):
    """A journey together with its node and edge tables."""

    journey: Journey
    nodes: List[JourneyNode] = Field(default_factory=list)
    edges: List[JourneyEdge] = Field(default_factory=list)

    def node(self, node_id: str) -> Optional[JourneyNode]:
        return next((n for n in self.nodes if n.id == node_id), None)

    def start_nodes(self) -> List[JourneyNode]:
        """Return nodes without an incoming edge, in table order."""
        targets = {edge.to_node_id for edge in self.edges}
        return [node for node in self.nodes if node.id not in targets]

    def outgoing(self, node_id: str) -> List[JourneyEdge]:
        return [edge for edge in self.edges if edge.from_node_id == node_id]

    def find_cycle(self) -> Optional[List[str]]:
        """Return the node ids of one cycle, or ``None`` for a DAG."""
        adjacency: Dict[str, List[str]] = {node.id: [] for node in self.nodes}
        for edge in self.edges:
            adjacency.setdefault(edge.from_node_id, []).append(edge.to_node_id)

        visiting: List[str] = []
        done: set[str] = set()

        def visit(node_id: str) -> Optional[List[str]]:
            if node_id in done:
                return None
            if node_id in visiting:
                return visiting[visiting.index(node_id):] + [node_id]
            visiting.append(node_id)
            for target in adjacency.get(node_id, []):
                cycle = visit(target)
                if cycle:
                    return cycle
            visiting.pop()
            done.add(node_id)
            return None

        for node_id in list(adjacency):
            cycle = visit(node_id)
            if cycle:
                return cycle
        return None


def validate_graph(graph: JourneyGraph) -> List[str]:
    """Return human readable warnings about ``graph``.

    The engine itself never rejects a graph; these warnings are meant for the
    authoring layer.
    """

    warnings: List[str] = []
    if not graph.nodes:
        warnings.append("journey has no nodes")
        return warnings

    if not graph.start_nodes():
        warnings.append("journey has no start node (every node has an incoming edge)")

    node_ids = {node.id for node in graph.nodes}
    for edge in graph.edges:
        if edge.from_node_id not in node_ids or edge.to_node_id not in node_ids:
            warnings.append(
                f"edge {edge.id} references unknown node "
                f"({edge.from_node_id} -> {edge.to_node_id})"
            )

    cycle = graph.find_cycle()
    if cycle:
        warnings.append(f"journey contains a cycle: {' -> '.join(cycle)}")
    return warnings
