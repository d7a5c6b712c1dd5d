"""Thread-safe in-memory graph store."""

from __future__ import annotations

import copy
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Iterator

from infragraph.core.codec import decode_properties
from infragraph.store.base import SOURCE_PROPERTY, check_identity


@dataclass
class StoredNode:
    id: str
    labels: list[str]
    properties: dict[str, Any]


@dataclass
class StoredEdge:
    source_id: str
    target_id: str
    kind: str
    properties: dict[str, Any]


@dataclass
class _State:
    nodes: dict[str, StoredNode] = field(default_factory=dict)
    edges: dict[tuple[str, str, str], StoredEdge] = field(default_factory=dict)


class _Writer:
    """
    Stages store operations over a base state.

    Reads see the staged changes; `commit` applies them. Only touched keys
    are held, so a transaction costs what it writes rather than the size of
    the store.
    """

    def __init__(self, state: _State) -> None:
        self._state = state
        # None marks a deletion
        self._nodes: dict[str, StoredNode | None] = {}
        self._edges: dict[tuple[str, str, str], StoredEdge | None] = {}

    def _node(self, node_id: str) -> StoredNode | None:
        if node_id in self._nodes:
            return self._nodes[node_id]
        return self._state.nodes.get(node_id)

    def _live_edges(self) -> list[StoredEdge]:
        live = [e for k, e in self._state.edges.items() if k not in self._edges]
        live.extend(e for e in self._edges.values() if e is not None)
        return live

    def upsert_node(self, node_id: str, labels: list[str], properties: dict[str, Any]) -> None:
        existing = self._node(node_id)
        if existing is not None:
            check_identity(node_id, existing.properties, properties)
        self._nodes[node_id] = StoredNode(node_id, list(labels), dict(properties))

    def upsert_edge(
        self,
        source_id: str,
        target_id: str,
        kind: str,
        properties: dict[str, Any],
    ) -> bool:
        if self._node(source_id) is None or self._node(target_id) is None:
            return False
        self._edges[(source_id, target_id, kind)] = StoredEdge(
            source_id, target_id, kind, dict(properties)
        )
        return True

    def clear_source(self, source_tag: str) -> None:
        doomed = {
            node_id
            for node_id in {*self._state.nodes, *self._nodes}
            if (node := self._node(node_id)) is not None
            and node.properties.get(SOURCE_PROPERTY) == source_tag
        }
        for node_id in doomed:
            self._nodes[node_id] = None
        for edge in self._live_edges():
            if (
                edge.properties.get(SOURCE_PROPERTY) == source_tag
                or edge.source_id in doomed
                or edge.target_id in doomed
            ):
                self._edges[(edge.source_id, edge.target_id, edge.kind)] = None

    def node_exists(self, node_id: str) -> bool:
        return self._node(node_id) is not None

    def delete_node(self, node_id: str) -> None:
        self._nodes[node_id] = None
        for edge in self._live_edges():
            if node_id in (edge.source_id, edge.target_id):
                self._edges[(edge.source_id, edge.target_id, edge.kind)] = None

    def commit(self) -> None:
        for node_id, node in self._nodes.items():
            if node is None:
                self._state.nodes.pop(node_id, None)
            else:
                self._state.nodes[node_id] = node
        for key, edge in self._edges.items():
            if edge is None:
                self._state.edges.pop(key, None)
            else:
                self._state.edges[key] = edge
        self._nodes.clear()
        self._edges.clear()


class InMemoryGraphStore:
    """
    Graph store kept in process memory.

    Every operation holds one lock. `transaction()` stages its writes and
    applies them on success, so a failed transaction leaves no trace.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._state = _State()

    def ensure_schema(self) -> None:
        pass

    def close(self) -> None:
        pass

    @contextmanager
    def _staged(self) -> Iterator[_Writer]:
        with self._lock:
            writer = _Writer(self._state)
            yield writer
            writer.commit()

    @contextmanager
    def transaction(self) -> Iterator[_Writer]:
        with self._staged() as writer:
            yield writer

    def upsert_node(self, node_id: str, labels: list[str], properties: dict[str, Any]) -> None:
        with self._staged() as writer:
            writer.upsert_node(node_id, labels, properties)

    def upsert_edge(
        self,
        source_id: str,
        target_id: str,
        kind: str,
        properties: dict[str, Any],
    ) -> bool:
        with self._staged() as writer:
            return writer.upsert_edge(source_id, target_id, kind, properties)

    def clear_source(self, source_tag: str) -> None:
        with self._staged() as writer:
            writer.clear_source(source_tag)

    def node_exists(self, node_id: str) -> bool:
        with self._lock:
            return node_id in self._state.nodes

    def delete_node(self, node_id: str) -> None:
        with self._staged() as writer:
            writer.delete_node(node_id)

    # --- Reads ---

    def get_node(self, node_id: str) -> StoredNode | None:
        with self._lock:
            node = self._state.nodes.get(node_id)
            return copy.deepcopy(node) if node else None

    def node_properties(self, node_id: str) -> dict[str, Any] | None:
        """Stored properties with JSON-encoded values decoded."""
        node = self.get_node(node_id)
        return decode_properties(node.properties) if node else None

    def get_edge(self, source_id: str, target_id: str, kind: str) -> StoredEdge | None:
        with self._lock:
            edge = self._state.edges.get((source_id, target_id, kind))
            return copy.deepcopy(edge) if edge else None

    def nodes(self) -> list[StoredNode]:
        with self._lock:
            return copy.deepcopy(list(self._state.nodes.values()))

    def edges(self) -> list[StoredEdge]:
        with self._lock:
            return copy.deepcopy(list(self._state.edges.values()))

    def snapshot(self) -> dict[str, Any]:
        """Plain-data copy of the whole store, for comparisons."""
        with self._lock:
            return {
                "nodes": {k: (sorted(v.labels), dict(v.properties)) for k, v in self._state.nodes.items()},
                "edges": {k: dict(v.properties) for k, v in self._state.edges.items()},
            }

    def __len__(self) -> int:
        with self._lock:
            return len(self._state.nodes)

    def __repr__(self) -> str:
        with self._lock:
            return f"InMemoryGraphStore({len(self._state.nodes)} nodes, {len(self._state.edges)} edges)"
