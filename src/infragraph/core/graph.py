"""In-memory configuration graph derived from one batch."""

from __future__ import annotations

from collections import Counter
from typing import Any, Iterable, Iterator

from infragraph.core.schema import (
    ComponentNode,
    Diagnostic,
    DiagnosticKind,
    IdentityClass,
    Provider,
    Relationship,
    RelationshipKind,
)


class RelationshipSet:
    """
    Collection of relationships keyed by `(source_id, target_id, kind)`.

    Adding an edge whose key is already present updates its properties in
    place; the set never holds two edges with the same key.
    """

    def __init__(self, relationships: Iterable[Relationship] = ()) -> None:
        self._edges: dict[tuple[str, str, RelationshipKind], Relationship] = {}
        self._kind_index: dict[RelationshipKind, list[tuple[str, str, RelationshipKind]]] = {}
        for rel in relationships:
            self.add(rel)

    def add(self, relationship: Relationship) -> Relationship:
        existing = self._edges.get(relationship.key)
        if existing is not None:
            existing.properties.update(relationship.properties)
            return existing
        self._edges[relationship.key] = relationship
        self._kind_index.setdefault(relationship.kind, []).append(relationship.key)
        return relationship

    def get(
        self, source_id: str, target_id: str, kind: RelationshipKind
    ) -> Relationship | None:
        return self._edges.get((source_id, target_id, kind))

    def by_kind(self, kind: RelationshipKind) -> list[Relationship]:
        return [self._edges[key] for key in self._kind_index.get(kind, [])]

    def from_node(self, node_id: str) -> list[Relationship]:
        return [r for r in self._edges.values() if r.source_id == node_id]

    def targeting_node(self, node_id: str) -> list[Relationship]:
        return [r for r in self._edges.values() if r.target_id == node_id]

    def between(self, source_id: str, target_id: str) -> list[Relationship]:
        return [
            r for r in self._edges.values() if r.source_id == source_id and r.target_id == target_id
        ]

    def __len__(self) -> int:
        return len(self._edges)

    def __iter__(self) -> Iterator[Relationship]:
        return iter(self._edges.values())

    def __contains__(self, key: tuple[str, str, RelationshipKind]) -> bool:
        return key in self._edges


class ConfigurationGraph:
    """
    Nodes, relationships and diagnostics derived from one batch.

    Transient: it is handed to the upsert engine and then discarded.
    """

    def __init__(
        self,
        nodes: Iterable[ComponentNode] = (),
        relationships: Iterable[Relationship] = (),
        diagnostics: Iterable[Diagnostic] = (),
    ) -> None:
        self._nodes: dict[str, ComponentNode] = {n.id: n for n in nodes}
        self.relationships = RelationshipSet(relationships)
        self.diagnostics: list[Diagnostic] = list(diagnostics)

    @property
    def nodes(self) -> list[ComponentNode]:
        return list(self._nodes.values())

    def get(self, node_id: str) -> ComponentNode | None:
        return self._nodes.get(node_id)

    def identity_nodes(self) -> list[ComponentNode]:
        return [n for n in self._nodes.values() if n.is_identity]

    def by_provider(self, provider: Provider) -> list[ComponentNode]:
        return [n for n in self._nodes.values() if n.provider == provider]

    def diagnostics_of(self, kind: DiagnosticKind) -> list[Diagnostic]:
        return [d for d in self.diagnostics if d.kind == kind]

    def summary(self) -> dict[str, Any]:
        """Counts by provider, identity class, edge kind and diagnostic kind."""
        return {
            "nodes": len(self._nodes),
            "relationships": len(self.relationships),
            "providers": dict(Counter(n.provider.value for n in self._nodes.values())),
            "identity_classes": {
                cls.value: sum(1 for n in self._nodes.values() if n.identity_class == cls)
                for cls in IdentityClass
            },
            "relationship_kinds": dict(Counter(r.kind.value for r in self.relationships)),
            "diagnostics": dict(Counter(d.kind.value for d in self.diagnostics)),
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "nodes": [n.model_dump(mode="json") for n in self._nodes.values()],
            "relationships": [r.model_dump(mode="json") for r in self.relationships],
            "diagnostics": [d.model_dump(mode="json") for d in self.diagnostics],
        }

    def __len__(self) -> int:
        return len(self._nodes)

    def __iter__(self) -> Iterator[ComponentNode]:
        return iter(self._nodes.values())

    def __contains__(self, node_id: str) -> bool:
        return node_id in self._nodes

    def __repr__(self) -> str:
        return (
            f"ConfigurationGraph({len(self._nodes)} nodes, "
            f"{len(self.relationships)} relationships, {len(self.diagnostics)} diagnostics)"
        )
