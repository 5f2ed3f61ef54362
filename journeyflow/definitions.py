"""YAML journey definitions for the command line."""

from __future__ import annotations

from pathlib import Path
from typing import Annotated, Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, BeforeValidator, ConfigDict, Field

from .contracts import (
    Journey,
    JourneyEdge,
    JourneyNode,
    JourneyStatus,
    JourneyTrigger,
    NodeType,
    TriggerType,
    new_id,
)
from .graph import JourneyGraph
from .persistence import JourneyRepository


def _edge_label(value: Any) -> Optional[str]:
    # YAML reads unquoted true/false as booleans
    if isinstance(value, bool):
        return "true" if value else "false"
    return value


class TriggerDefinition(BaseModel):
    type: TriggerType
    enabled: bool = True
    config: Optional[Dict[str, Any]] = None


class NodeDefinition(BaseModel):
    key: str
    type: NodeType
    label: Optional[str] = None
    config: Optional[Dict[str, Any]] = None
    position: Optional[Dict[str, Any]] = None


class EdgeDefinition(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    from_key: str = Field(alias="from")
    to_key: str = Field(alias="to")
    label: Annotated[Optional[str], BeforeValidator(_edge_label)] = None


class JourneyDefinition(BaseModel):
    """A journey with its triggers, nodes and edges.

    Nodes are referenced by a ``key`` local to the file; ids are assigned
    when the definition is built.
    """

    organization_id: str
    name: str
    status: JourneyStatus = "draft"
    triggers: List[TriggerDefinition] = Field(default_factory=list)
    nodes: List[NodeDefinition] = Field(default_factory=list)
    edges: List[EdgeDefinition] = Field(default_factory=list)

    @classmethod
    def from_yaml(cls, path: str | Path) -> "JourneyDefinition":
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        return cls.model_validate(data)

    def build(self) -> tuple[JourneyGraph, List[JourneyTrigger]]:
        """Return the graph and triggers with freshly assigned ids.

        Edges naming an unknown key keep the key as node id, so graph
        validation reports them.
        """

        journey = Journey(organization_id=self.organization_id, name=self.name, status=self.status)
        ids = {node.key: new_id() for node in self.nodes}
        nodes = [
            JourneyNode(
                id=ids[node.key],
                organization_id=self.organization_id,
                journey_id=journey.id,
                type=node.type,
                label=node.label or node.key,
                config=node.config,
                position=node.position,
            )
            for node in self.nodes
        ]
        edges = [
            JourneyEdge(
                organization_id=self.organization_id,
                journey_id=journey.id,
                from_node_id=ids.get(edge.from_key, edge.from_key),
                to_node_id=ids.get(edge.to_key, edge.to_key),
                label=edge.label,
            )
            for edge in self.edges
        ]
        triggers = [
            JourneyTrigger(
                organization_id=self.organization_id,
                journey_id=journey.id,
                type=trigger.type,
                enabled=trigger.enabled,
                config=trigger.config,
            )
            for trigger in self.triggers
        ]
        return JourneyGraph(journey=journey, nodes=nodes, edges=edges), triggers


async def install_definition(
    repository: JourneyRepository, definition: JourneyDefinition
) -> JourneyGraph:
    """Persist a definition as a new journey."""
    graph, triggers = definition.build()
    await repository.create_journey(graph.journey)
    for node in graph.nodes:
        await repository.save_node(node)
    for edge in graph.edges:
        await repository.save_edge(edge)
    for trigger in triggers:
        await repository.save_trigger(trigger)
    return graph
