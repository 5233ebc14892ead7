from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Iterable

from ..gateway.base import KeyTerm, NodeBucket


@dataclass(frozen=True)
class KeywordRelationship:
    source: str
    dest: str
    weight: int

    def to_dict(self) -> dict[str, Any]:
        return {"source": self.source, "dest": self.dest, "weight": self.weight}


@dataclass(frozen=True)
class KeywordNetwork:
    nodes: list[KeyTerm]
    relationships: list[KeywordRelationship]

    def to_dict(self) -> dict[str, Any]:
        return {
            "nodes": [{"term": n.term, "score": n.score} for n in self.nodes],
            "relationships": [r.to_dict() for r in self.relationships],
        }


@dataclass(frozen=True)
class GraphState:
    """Entity nodes currently shown in one exploration session."""

    nodes: tuple[NodeBucket, ...] = field(default=())

    @property
    def entity_ids(self) -> list[int]:
        return [n.id for n in self.nodes]

    def with_nodes(self, nodes: Iterable[NodeBucket]) -> "GraphState":
        return replace(self, nodes=tuple(nodes))
