"""Tests for the Neo4j store adapter, against a mocked driver."""

from unittest.mock import MagicMock

import pytest

neo4j_exceptions = pytest.importorskip("neo4j.exceptions")

from infragraph.core.builder import build_graph
from infragraph.core.schema import ResourceDefinition
from infragraph.errors import StoreConflictError, StoreUnavailableError
from infragraph.store.neo4j import Neo4jConfig, Neo4jGraphStore, sanitize_identifier
from infragraph.store.upsert import GraphUpsertEngine, RetryPolicy


@pytest.fixture
def tx():
    tx = MagicMock()
    tx.run.return_value.single.return_value = None
    return tx


@pytest.fixture
def session(tx):
    session = MagicMock()
    session.begin_transaction.return_value.__enter__.return_value = tx
    session.execute_write.side_effect = lambda fn: fn(tx)
    session.execute_read.side_effect = lambda fn: fn(tx)
    return session


@pytest.fixture
def store(session):
    driver = MagicMock()
    driver.session.return_value.__enter__.return_value = session
    return Neo4jGraphStore(Neo4jConfig(uri="bolt://test", user="neo4j", password="pw"), driver=driver)


def _queries(tx):
    return [c.args[0] for c in tx.run.call_args_list]


class TestNeo4jGraphStore:
    """Tests for Neo4jGraphStore."""

    @pytest.mark.parametrize(
        "value,expected",
        [("HAS_PERMISSION", "HAS_PERMISSION"), ("bad label!", "bad_label"), ("", "RELATED_TO")],
    )
    def test_sanitize_identifier(self, value, expected):
        """Test labels and types are reduced to safe identifiers."""
        assert sanitize_identifier(value) == expected

    def test_ensure_schema(self, store, session):
        """Test the unique id constraint is created."""
        store.ensure_schema()
        statements = [c.args[0] for c in session.run.call_args_list]
        assert any("REQUIRE n.id IS UNIQUE" in s for s in statements)

    def test_upsert_node(self, store, tx):
        """Test node upsert merges on id and sets the identity label."""
        store.upsert_node("aws_iam_role.app", ["Resource", "IdentityResource"], {"resourceType": "aws_iam_role"})
        lookup, query = _queries(tx)
        assert "RETURN n.resourceType AS resourceType" in lookup
        assert "MERGE (n:Resource {id: $id})" in query
        assert "SET n:IdentityResource" in query
        kwargs = tx.run.call_args.kwargs
        assert kwargs["props"] == {"resourceType": "aws_iam_role", "id": "aws_iam_role.app"}

    def test_type_change_is_conflict(self, store, tx):
        """Test an id already holding another resource type is refused."""
        tx.run.return_value.single.return_value = {"resourceType": "aws_vpc", "resourceMode": "managed"}
        with pytest.raises(StoreConflictError):
            with store.transaction() as writer:
                writer.upsert_node("x", ["Resource"], {"resourceType": "aws_instance"})
        tx.commit.assert_not_called()
        assert not any("MERGE" in q for q in _queries(tx))

    def test_same_type_is_not_conflict(self, store, tx):
        """Test re-upserting the same resource type goes through."""
        tx.run.return_value.single.return_value = {"resourceType": "aws_vpc", "resourceMode": "managed"}
        store.upsert_node("x", ["Resource"], {"resourceType": "aws_vpc", "resourceMode": "managed"})
        assert "MERGE (n:Resource" in _queries(tx)[-1]

    def test_upsert_edge_reports_missing_endpoint(self, store, tx):
        """Test a match with no row means an endpoint is missing."""
        tx.run.return_value.single.return_value = None
        assert store.upsert_edge("a", "b", "REFERENCES", {}) is False
        tx.run.return_value.single.return_value = {"n": 1}
        assert store.upsert_edge("a", "b", "REFERENCES", {}) is True
        assert "[r:REFERENCES]" in _queries(tx)[-1]

    def test_transaction_commits(self, store, tx):
        """Test writes inside a transaction commit once."""
        with store.transaction() as writer:
            writer.delete_node("x")
        tx.commit.assert_called_once()

    def test_unavailable_is_translated(self, store, tx):
        """Test driver connectivity errors map to StoreUnavailableError."""
        tx.run.side_effect = neo4j_exceptions.ServiceUnavailable("down")
        with pytest.raises(StoreUnavailableError):
            store.node_exists("x")

    def test_constraint_is_translated(self, store, tx):
        """Test constraint violations map to StoreConflictError."""
        tx.run.side_effect = neo4j_exceptions.ConstraintError("duplicate id")
        with pytest.raises(StoreConflictError):
            with store.transaction() as writer:
                writer.upsert_node("x", ["Resource"], {})
        tx.commit.assert_not_called()

    def test_engine_over_neo4j(self, store, tx):
        """Test the upsert engine drives the adapter."""
        tx.run.return_value.single.return_value = {"n": 1}
        graph = build_graph(
            [
                ResourceDefinition(type="aws_vpc", name="main"),
                ResourceDefinition(type="aws_subnet", name="a", arguments={"vpc_id": "${aws_vpc.main.id}"}),
            ]
        )
        report = GraphUpsertEngine(store, RetryPolicy(timeout=None)).merge(graph)
        assert report.succeeded
        assert len(report.edges_written) == 1
        assert sum("MERGE (n:Resource" in q for q in _queries(tx)) == 2
