"""Relationship classification: structural references and adjacency heuristics."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from itertools import combinations
from typing import Any, Callable, Iterable

from infragraph.core.references import (
    NodeIndex,
    ReferenceCandidate,
    find_references,
    iter_string_leaves,
)
from infragraph.core.registry import ClassificationRegistry
from infragraph.core.schema import Relationship, RelationshipKind

logger = logging.getLogger(__name__)

GROUPING_ANNOTATION_PREFIX = "grouping."

SYMMETRIC_KINDS = frozenset({RelationshipKind.NETWORK_CONNECTED})


def normalize_value(value: str) -> str:
    """Reduce a reference expression to its `type.name` address; keep plain text."""
    refs = find_references(value)
    if refs:
        return refs[0].address
    return value.strip()


def structural_edges(
    typed: Iterable[tuple[ReferenceCandidate, RelationshipKind]],
) -> list[Relationship]:
    """Collapse typed candidates into one edge per `(source, target, kind)`."""
    grouped: dict[tuple[str, str, RelationshipKind], list[ReferenceCandidate]] = {}
    for candidate, kind in typed:
        grouped.setdefault((candidate.source_id, candidate.target_id, kind), []).append(candidate)

    edges = []
    for (source_id, target_id, kind), group in grouped.items():
        group.sort(key=lambda c: c.path)
        attribute = next((c.attribute for c in group if c.attribute), None)
        properties: dict[str, Any] = {"path": group[0].path, "reference_count": len(group)}
        if attribute:
            properties["attribute"] = attribute
        edges.append(Relationship(source_id=source_id, target_id=target_id, kind=kind, properties=properties))
    return edges


def suppress_inferred(
    explicit: Iterable[Relationship],
    inferred: Iterable[Relationship],
) -> list[Relationship]:
    """
    Drop heuristic edges wherever an explicit edge links the same ordered pair.

    Symmetric heuristic kinds are suppressed by an explicit edge in either
    direction. Different heuristic kinds on one pair do not suppress each other.
    """
    pairs = {(r.source_id, r.target_id) for r in explicit}
    kept = []
    for rel in inferred:
        if (rel.source_id, rel.target_id) in pairs:
            continue
        if rel.kind in SYMMETRIC_KINDS and (rel.target_id, rel.source_id) in pairs:
            continue
        kept.append(rel)
    return kept


@dataclass
class ClassifiedRelationships:
    """Output of the relationship classifier."""

    explicit: list[Relationship] = field(default_factory=list)
    inferred: list[Relationship] = field(default_factory=list)
    # node id -> grouping properties with no grouping node to point at
    annotations: dict[str, dict[str, Any]] = field(default_factory=dict)

    @property
    def relationships(self) -> list[Relationship]:
        return [*self.explicit, *self.inferred]


class RelationshipClassifier:
    """
    Turns reference candidates into typed edges and infers adjacency.

    Priority per candidate: dependency field, then identity specializations
    (left to the identity tracker via `claimed`), then data source, then
    plain reference. Reads the shared index and trees, never writes them.
    """

    def __init__(
        self,
        index: NodeIndex,
        registry: ClassificationRegistry,
        claimed: Callable[[ReferenceCandidate], bool] | None = None,
    ) -> None:
        self._index = index
        self._registry = registry
        self._claimed = claimed or (lambda candidate: False)

    def kind_for(self, candidate: ReferenceCandidate) -> RelationshipKind | None:
        """Edge kind for a candidate, or None when another stage owns it."""
        if candidate.field in self._registry.dependency_fields:
            return RelationshipKind.DEPENDS_ON
        if self._claimed(candidate):
            return None
        target = self._index.get(candidate.target_id)
        if target is not None and target.is_data_source:
            return RelationshipKind.DATA_SOURCE
        return RelationshipKind.REFERENCES

    def classify(
        self,
        candidates: list[ReferenceCandidate],
        trees: dict[str, dict[str, Any]],
    ) -> ClassifiedRelationships:
        typed = [(c, kind) for c in candidates if (kind := self.kind_for(c)) is not None]
        explicit = structural_edges(typed)

        annotations: dict[str, dict[str, Any]] = {}
        inferred = [*self.network_edges(trees), *self.grouping_edges(annotations)]

        # Claimed candidates are explicit edges too, only typed elsewhere
        structural_pairs = [
            Relationship(source_id=c.source_id, target_id=c.target_id, kind=RelationshipKind.REFERENCES)
            for c in candidates
        ]
        inferred = suppress_inferred([*explicit, *structural_pairs], inferred)

        logger.info(
            "Classified %d explicit and %d inferred relationships",
            len(explicit),
            len(inferred),
        )
        return ClassifiedRelationships(explicit=explicit, inferred=inferred, annotations=annotations)

    def network_values(self, arguments: dict[str, Any]) -> list[tuple[str, str]]:
        """`(field, value)` pairs for every network-identifying leaf."""
        fields = self._registry.network_fields
        found = []
        for path, value in iter_string_leaves(arguments):
            named = [s for s in path.split(".") if not s.isdigit()]
            hit = next((s for s in reversed(named) if s in fields), None)
            if hit and value.strip():
                found.append((hit, normalize_value(value)))
        return found

    def network_edges(self, trees: dict[str, dict[str, Any]]) -> list[Relationship]:
        members: dict[str, dict[str, str]] = {}
        for node_id in sorted(trees):
            for field_name, value in self.network_values(trees[node_id]):
                members.setdefault(value, {}).setdefault(node_id, field_name)

        edges: dict[tuple[str, str], Relationship] = {}
        for value in sorted(members):
            node_ids = sorted(members[value])
            for a, b in combinations(node_ids, 2):
                if (a, b) in edges:
                    continue
                edges[(a, b)] = Relationship(
                    source_id=a,
                    target_id=b,
                    kind=RelationshipKind.NETWORK_CONNECTED,
                    properties={"via": value, "field": members[value][a]},
                )
        return list(edges.values())

    def _grouping_nodes(self) -> dict[str, str]:
        """Group value -> id of the node that is that group."""
        nodes: dict[str, str] = {}
        for node in sorted(self._index, key=lambda n: n.id):
            for prop in self._registry.grouping_properties(node.type):
                value = node.properties.get(prop)
                if isinstance(value, str) and value.strip():
                    nodes.setdefault(value.strip(), node.id)
        return nodes

    def grouping_edges(self, annotations: dict[str, dict[str, Any]]) -> list[Relationship]:
        group_nodes = self._grouping_nodes()
        edges = []
        for node in sorted(self._index, key=lambda n: n.id):
            for field_name in self._registry.grouping_fields:
                value = node.properties.get(field_name)
                if not isinstance(value, str) or not value.strip():
                    continue
                value = normalize_value(value)
                group_id = value if value in self._index else group_nodes.get(value)
                if group_id == node.id:
                    continue
                if group_id is None:
                    annotations.setdefault(node.id, {})[f"{GROUPING_ANNOTATION_PREFIX}{field_name}"] = value
                    continue
                edges.append(
                    Relationship(
                        source_id=node.id,
                        target_id=group_id,
                        kind=RelationshipKind.BELONGS_TO,
                        properties={"field": field_name, "value": value},
                    )
                )
        return edges
