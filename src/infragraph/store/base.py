from __future__ import annotations

from contextlib import AbstractContextManager
from typing import Any, Mapping, Protocol

from infragraph.errors import StoreConflictError

SOURCE_PROPERTY = "sourceTag"

# Properties that identify what a node is; a change means two resources
# were given the same id.
IDENTITY_PROPERTIES = ("resourceType", "resourceMode")


def check_identity(node_id: str, stored: Mapping[str, Any], properties: Mapping[str, Any]) -> None:
    """Refuse an upsert that would turn `node_id` into another kind of resource."""
    for prop in IDENTITY_PROPERTIES:
        old, new = stored.get(prop), properties.get(prop)
        if old is not None and new is not None and old != new:
            raise StoreConflictError(
                f"Node id {node_id} already holds {prop}={old!r}, refusing {prop}={new!r}"
            )


class GraphWriter(Protocol):
    """Operations the upsert engine needs from a store or an open transaction."""

    def upsert_node(self, node_id: str, labels: list[str], properties: dict[str, Any]) -> None: ...

    def upsert_edge(
        self,
        source_id: str,
        target_id: str,
        kind: str,
        properties: dict[str, Any],
    ) -> bool: ...

    def clear_source(self, source_tag: str) -> None: ...

    def node_exists(self, node_id: str) -> bool: ...

    def delete_node(self, node_id: str) -> None: ...


class GraphStore(GraphWriter, Protocol):
    """Abstraction for the backing graph database.

    `upsert_node` replaces the stored properties and labels of `node_id`;
    `upsert_edge` replaces the properties of the `(source, target, kind)`
    edge and returns False when an endpoint is missing. Property values are
    scalars; composite values arrive already JSON-encoded.
    """

    def ensure_schema(self) -> None: ...

    def transaction(self) -> AbstractContextManager[GraphWriter]: ...

    def close(self) -> None: ...
