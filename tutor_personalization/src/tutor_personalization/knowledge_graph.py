"""
Per-User Knowledge Graph

Concept nodes with clamped mastery scores and an append-only change history,
plus builds_upon / is_related_to relationships between concepts.

KnowledgeGraphManager is stateless: every mutation takes a graph value and
returns a new one, leaving the input untouched.
"""

import copy
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from tutor_personalization.facts import Clock, system_clock_ms

logger = logging.getLogger(__name__)

DEFAULT_INITIAL_MASTERY = 0.1
MASTERED_THRESHOLD = 0.8
STRUGGLING_THRESHOLD = 0.3


class RelationshipType(str, Enum):
    BUILDS_UPON = "builds_upon"
    IS_RELATED_TO = "is_related_to"


class ChangeKind(str, Enum):
    INTRODUCED = "introduced"
    MASTERY_UPDATED = "mastery_updated"


@dataclass
class HistoryEntry:
    """One structured change to a concept's mastery."""
    timestamp: int
    kind: ChangeKind
    mastery: float
    previous_mastery: Optional[float] = None
    reason: Optional[str] = None


@dataclass
class ConceptNode:
    name: str
    mastery: float = DEFAULT_INITIAL_MASTERY
    history: List[HistoryEntry] = field(default_factory=list)


@dataclass
class Relationship:
    """Directed edge; is_related_to is read from either endpoint."""
    source: str
    target: str
    type: RelationshipType


@dataclass
class KnowledgeGraph:
    user_id: str
    nodes: Dict[str, ConceptNode] = field(default_factory=dict)
    edges: List[Relationship] = field(default_factory=list)
    last_updated: int = 0


@dataclass
class RelatedConcepts:
    prerequisites: List[str] = field(default_factory=list)
    follow_ups: List[str] = field(default_factory=list)
    similar: List[str] = field(default_factory=list)


@dataclass
class KnowledgeGaps:
    mastered: List[str] = field(default_factory=list)
    struggling: List[str] = field(default_factory=list)


def clamp_mastery(value: float) -> float:
    return max(0.0, min(1.0, float(value)))


def canonical_concept_name(text: str) -> str:
    """Collapse whitespace and capitalize each word: 'gravity' -> 'Gravity'."""
    words = re.sub(r"\s+", " ", str(text or "")).strip().split(" ")
    return " ".join(w[:1].upper() + w[1:] for w in words if w)


class KnowledgeGraphManager:
    """
    Pure operations over KnowledgeGraph values.

    Args:
        clock: Epoch-milliseconds clock used for history and lastUpdated stamps
    """

    def __init__(self, clock: Clock = system_clock_ms):
        self.clock = clock

    def initialize_graph(self, user_id: str) -> KnowledgeGraph:
        logger.debug(f"🌱 [KnowledgeGraph] New graph for user {user_id[:20]}")
        return KnowledgeGraph(user_id=user_id, last_updated=self.clock())

    def add_concept(self, graph: KnowledgeGraph, name: str, initial_mastery: float = DEFAULT_INITIAL_MASTERY) -> KnowledgeGraph:
        """Create a concept node; no-op if it already exists."""
        if name in graph.nodes:
            return graph

        updated = copy.deepcopy(graph)
        now = self.clock()
        mastery = clamp_mastery(initial_mastery)
        updated.nodes[name] = ConceptNode(
            name=name,
            mastery=mastery,
            history=[HistoryEntry(timestamp=now, kind=ChangeKind.INTRODUCED, mastery=mastery)],
        )
        updated.last_updated = now
        logger.debug(f"🔵 [KnowledgeGraph] Added concept '{name}' (mastery {mastery:.2f})")
        return updated

    def update_mastery(self, graph: KnowledgeGraph, name: str, new_mastery: float, reason: str) -> KnowledgeGraph:
        """
        Set a concept's mastery, clamped to [0, 1].

        A concept that does not exist yet is created with the clamped value
        as its initial mastery.
        """
        mastery = clamp_mastery(new_mastery)
        if name not in graph.nodes:
            return self.add_concept(graph, name, mastery)

        updated = copy.deepcopy(graph)
        now = self.clock()
        node = updated.nodes[name]
        node.history.append(HistoryEntry(
            timestamp=now,
            kind=ChangeKind.MASTERY_UPDATED,
            mastery=mastery,
            previous_mastery=node.mastery,
            reason=reason,
        ))
        node.mastery = mastery
        updated.last_updated = now
        logger.debug(f"📈 [KnowledgeGraph] '{name}' mastery -> {mastery:.2f} ({reason})")
        return updated

    def nudge_mastery(self, graph: KnowledgeGraph, name: str, delta: float, reason: str) -> KnowledgeGraph:
        """Shift mastery by delta from its prior value (the default for a new concept)."""
        node = graph.nodes.get(name)
        prior = node.mastery if node else DEFAULT_INITIAL_MASTERY
        return self.update_mastery(graph, name, prior + delta, reason)

    def add_relationship(self, graph: KnowledgeGraph, source: str, target: str, relationship_type) -> KnowledgeGraph:
        """Insert an edge unless the identical (source, target, type) triple exists."""
        rel_type = RelationshipType(relationship_type)
        for edge in graph.edges:
            if edge.source == source and edge.target == target and edge.type == rel_type:
                return graph

        updated = copy.deepcopy(graph)
        updated.edges.append(Relationship(source=source, target=target, type=rel_type))
        updated.last_updated = self.clock()
        logger.debug(f"🔗 [KnowledgeGraph] {source} -> {target} ({rel_type.value})")
        return updated

    def get_related_concepts(self, graph: KnowledgeGraph, name: str) -> RelatedConcepts:
        related = RelatedConcepts()
        for edge in graph.edges:
            if edge.type == RelationshipType.BUILDS_UPON:
                if edge.target == name:
                    related.prerequisites.append(edge.source)
                if edge.source == name:
                    related.follow_ups.append(edge.target)
            elif name in (edge.source, edge.target):
                other = edge.target if edge.source == name else edge.source
                if other not in related.similar:
                    related.similar.append(other)
        return related

    def get_all_prerequisites(self, graph: KnowledgeGraph, name: str) -> List[str]:
        """
        Transitive builds_upon prerequisites of a concept.

        Returns:
            Prerequisite names ordered foundations first
        """
        direct: Dict[str, List[str]] = {}
        for edge in graph.edges:
            if edge.type == RelationshipType.BUILDS_UPON:
                direct.setdefault(edge.target, []).append(edge.source)

        visited = set()
        result: List[str] = []

        def dfs(concept_name: str):
            if concept_name in visited:
                return
            visited.add(concept_name)
            for prereq in direct.get(concept_name, []):
                dfs(prereq)
            if concept_name != name:
                result.append(concept_name)

        dfs(name)
        return result

    def get_knowledge_gaps(self, graph: KnowledgeGraph) -> KnowledgeGaps:
        """Mastery above 0.8 is mastered, below 0.3 is struggling; the band between is neither."""
        gaps = KnowledgeGaps()
        for name, node in graph.nodes.items():
            if node.mastery > MASTERED_THRESHOLD:
                gaps.mastered.append(name)
            elif node.mastery < STRUGGLING_THRESHOLD:
                gaps.struggling.append(name)
        return gaps


def graph_to_dict(graph: KnowledgeGraph) -> Dict[str, Any]:
    """Convert a graph to a JSON-compatible dict."""
    return {
        "user_id": graph.user_id,
        "nodes": {
            name: {
                "name": node.name,
                "mastery": node.mastery,
                "history": [
                    {
                        "timestamp": h.timestamp,
                        "kind": h.kind.value,
                        "mastery": h.mastery,
                        "previous_mastery": h.previous_mastery,
                        "reason": h.reason,
                    }
                    for h in node.history
                ],
            }
            for name, node in graph.nodes.items()
        },
        "edges": [{"source": e.source, "target": e.target, "type": e.type.value} for e in graph.edges],
        "last_updated": graph.last_updated,
    }


def graph_from_dict(data: Optional[Dict[str, Any]], user_id: str = "") -> KnowledgeGraph:
    """Rebuild a graph from graph_to_dict output; missing data yields an empty graph."""
    if not data:
        return KnowledgeGraph(user_id=user_id)

    nodes = {}
    for name, node in (data.get("nodes") or {}).items():
        nodes[name] = ConceptNode(
            name=node.get("name", name),
            mastery=clamp_mastery(node.get("mastery", DEFAULT_INITIAL_MASTERY)),
            history=[
                HistoryEntry(
                    timestamp=int(h.get("timestamp", 0)),
                    kind=ChangeKind(h.get("kind", ChangeKind.MASTERY_UPDATED.value)),
                    mastery=float(h.get("mastery", 0.0)),
                    previous_mastery=h.get("previous_mastery"),
                    reason=h.get("reason"),
                )
                for h in node.get("history", [])
            ],
        )

    edges = [
        Relationship(source=e["source"], target=e["target"], type=RelationshipType(e["type"]))
        for e in data.get("edges", [])
    ]

    return KnowledgeGraph(
        user_id=data.get("user_id", user_id),
        nodes=nodes,
        edges=edges,
        last_updated=int(data.get("last_updated", 0)),
    )
