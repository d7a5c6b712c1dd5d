from __future__ import annotations

import re
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Iterator

from infragraph.errors import StoreConflictError, StoreUnavailableError
from infragraph.store.base import IDENTITY_PROPERTIES, check_identity

# Identity-class labels a node may carry; replaced wholesale on upsert
MANAGED_LABELS = ("IdentityResource", "RegularResource")


@dataclass(slots=True)
class Neo4jConfig:
    uri: str
    user: str
    password: str
    database: str = "neo4j"
    connection_timeout: float = 30.0


def sanitize_identifier(value: str, fallback: str = "RELATED_TO") -> str:
    """Labels and relationship types cannot be parameterized; keep them to [A-Z0-9_]."""
    cleaned = re.sub(r"[^A-Za-z0-9_]", "_", (value or "").strip())
    cleaned = re.sub(r"_{2,}", "_", cleaned).strip("_")
    return cleaned or fallback


@contextmanager
def translated_errors() -> Iterator[None]:
    """Map driver exceptions onto the store error hierarchy."""
    from neo4j.exceptions import (  # type: ignore
        ConstraintError,
        ServiceUnavailable,
        SessionExpired,
        TransientError,
    )

    try:
        yield
    except ConstraintError as e:
        raise StoreConflictError(str(e)) from e
    except (ServiceUnavailable, SessionExpired, TransientError) as e:
        raise StoreUnavailableError(str(e)) from e


class _Neo4jWriter:
    """Store operations against one open transaction."""

    def __init__(self, tx: Any) -> None:
        self._tx = tx

    def upsert_node(self, node_id: str, labels: list[str], properties: dict[str, Any]) -> None:
        extra = [sanitize_identifier(label) for label in labels if label != "Resource"]
        stored = self._tx.run(
            "MATCH (n:Resource {id: $id}) RETURN "
            + ", ".join(f"n.{p} AS {p}" for p in IDENTITY_PROPERTIES),
            id=node_id,
        ).single()
        if stored is not None:
            check_identity(node_id, stored, properties)
        props = {**properties, "id": node_id}
        q = f"""
        MERGE (n:Resource {{id: $id}})
        SET n = $props
        REMOVE n:{':'.join(MANAGED_LABELS)}
        {"SET n:" + ":".join(extra) if extra else ""}
        """
        self._tx.run(q, id=node_id, props=props)

    def upsert_edge(
        self,
        source_id: str,
        target_id: str,
        kind: str,
        properties: dict[str, Any],
    ) -> bool:
        rel_type = sanitize_identifier(kind.upper())
        q = f"""
        MATCH (a:Resource {{id: $src}})
        MATCH (b:Resource {{id: $dst}})
        MERGE (a)-[r:{rel_type}]->(b)
        SET r = $props
        RETURN count(r) AS n
        """
        record = self._tx.run(q, src=source_id, dst=target_id, props=properties).single()
        return bool(record and record["n"])

    def clear_source(self, source_tag: str) -> None:
        self._tx.run("MATCH ()-[r {sourceTag: $tag}]->() DELETE r", tag=source_tag)
        self._tx.run("MATCH (n:Resource {sourceTag: $tag}) DETACH DELETE n", tag=source_tag)

    def node_exists(self, node_id: str) -> bool:
        record = self._tx.run(
            "MATCH (n:Resource {id: $id}) RETURN count(n) > 0 AS found", id=node_id
        ).single()
        return bool(record and record["found"])

    def delete_node(self, node_id: str) -> None:
        self._tx.run("MATCH (n:Resource {id: $id}) DETACH DELETE n", id=node_id)


class Neo4jGraphStore:
    """Neo4j-backed graph store.

    Nodes carry the `Resource` label plus their identity-class label and are
    keyed by a unique `id` constraint. Edges are merged per relationship
    type, so one `(source, target, kind)` never yields two relationships.

    Dependency: neo4j>=5 (optional extra).
    """

    def __init__(self, cfg: Neo4jConfig, driver: Any = None):
        self.cfg = cfg
        if driver is None:
            from neo4j import GraphDatabase  # type: ignore

            # Driver is thread-safe; sessions are lightweight.
            driver = GraphDatabase.driver(
                cfg.uri,
                auth=(cfg.user, cfg.password),
                connection_timeout=cfg.connection_timeout,
            )
        self._driver = driver

    def close(self) -> None:
        self._driver.close()

    def ensure_schema(self) -> None:
        stmts = [
            # Stable node key
            "CREATE CONSTRAINT resource_id IF NOT EXISTS FOR (n:Resource) REQUIRE n.id IS UNIQUE",
            "CREATE INDEX resource_type IF NOT EXISTS FOR (n:Resource) ON (n.resourceType)",
            "CREATE INDEX resource_provider IF NOT EXISTS FOR (n:Resource) ON (n.provider)",
            "CREATE INDEX resource_source IF NOT EXISTS FOR (n:Resource) ON (n.sourceTag)",
        ]
        with translated_errors(), self._driver.session(database=self.cfg.database) as s:
            for q in stmts:
                s.run(q)

    @contextmanager
    def transaction(self) -> Iterator[_Neo4jWriter]:
        with translated_errors():
            with self._driver.session(database=self.cfg.database) as session:
                with session.begin_transaction() as tx:
                    yield _Neo4jWriter(tx)
                    tx.commit()

    def _write(self, op: str, *args: Any) -> Any:
        with translated_errors(), self._driver.session(database=self.cfg.database) as s:
            return s.execute_write(lambda tx: getattr(_Neo4jWriter(tx), op)(*args))

    def upsert_node(self, node_id: str, labels: list[str], properties: dict[str, Any]) -> None:
        self._write("upsert_node", node_id, labels, properties)

    def upsert_edge(
        self,
        source_id: str,
        target_id: str,
        kind: str,
        properties: dict[str, Any],
    ) -> bool:
        return self._write("upsert_edge", source_id, target_id, kind, properties)

    def clear_source(self, source_tag: str) -> None:
        self._write("clear_source", source_tag)

    def delete_node(self, node_id: str) -> None:
        self._write("delete_node", node_id)

    def node_exists(self, node_id: str) -> bool:
        with translated_errors(), self._driver.session(database=self.cfg.database) as s:
            return s.execute_read(lambda tx: _Neo4jWriter(tx).node_exists(node_id))
