"""Tests for the graph upsert engine."""

import threading
import time
from collections import Counter
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager

import pytest

from infragraph.core.builder import GraphBuilder, build_graph
from infragraph.core.graph import ConfigurationGraph
from infragraph.core.schema import DiagnosticKind, Relationship, RelationshipKind, ResourceDefinition
from infragraph.errors import MergeError, StoreUnavailableError
from infragraph.store.memory import InMemoryGraphStore
from infragraph.store.upsert import GraphUpsertEngine, MergeMode, MergeStatus, RetryPolicy


class FlakyStore(InMemoryGraphStore):
    """In-memory store whose transactions fail after the first `succeed_first`."""

    def __init__(self, failures=0, succeed_first=0):
        super().__init__()
        self.failures = failures
        self.succeed_first = succeed_first
        self.attempts = 0

    @contextmanager
    def transaction(self):
        self.attempts += 1
        if self.attempts > self.succeed_first and self.failures > 0:
            self.failures -= 1
            raise StoreUnavailableError("connection refused")
        with super().transaction() as tx:
            yield tx


class SlowStore(InMemoryGraphStore):
    @contextmanager
    def transaction(self):
        time.sleep(0.3)
        with super().transaction() as tx:
            yield tx


class _RecordingWriter:
    def __init__(self, store, touched):
        self._store = store
        self._touched = touched

    def upsert_node(self, node_id, labels, properties):
        self._store.enter(node_id)
        self._touched.append(node_id)
        time.sleep(0.002)
        self._store.upsert_node(node_id, labels, properties)

    def upsert_edge(self, source_id, target_id, kind, properties):
        return self._store.upsert_edge(source_id, target_id, kind, properties)

    def clear_source(self, source_tag):
        self._store.clear_source(source_tag)

    def node_exists(self, node_id):
        return self._store.node_exists(node_id)

    def delete_node(self, node_id):
        self._store.delete_node(node_id)


class OverlapStore(InMemoryGraphStore):
    """Unlocked transactions that record writes to a node id already held by another one."""

    def __init__(self):
        super().__init__()
        self.overlaps = []
        self._active = Counter()
        self._guard = threading.Lock()

    def enter(self, node_id):
        with self._guard:
            if self._active[node_id]:
                self.overlaps.append(node_id)
            self._active[node_id] += 1

    @contextmanager
    def transaction(self):
        touched = []
        try:
            yield _RecordingWriter(self, touched)
        finally:
            with self._guard:
                for node_id in touched:
                    self._active[node_id] -= 1


def _batch(*names, tags=("prod",)):
    definitions = [ResourceDefinition(type="aws_vpc", name="main", arguments={"tags": list(tags)})]
    for name in names:
        definitions.append(
            ResourceDefinition(type="aws_subnet", name=name, arguments={"vpc_id": "${aws_vpc.main.id}"})
        )
    return build_graph(definitions)


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def engine_for(sleeps):
    def make(store, source_tag="s1", **retry):
        return GraphUpsertEngine(store, RetryPolicy(**retry), source_tag=source_tag, sleep=sleeps.append)

    return make


class TestIncrementalMerge:
    """Tests for incremental merges."""

    def test_writes_nodes_and_edges(self, engine_for):
        """Test nodes and edges land in the store with their source tag."""
        store = InMemoryGraphStore()
        report = engine_for(store).merge(_batch("a"))
        assert report.succeeded
        assert sorted(report.nodes_written) == ["aws_subnet.a", "aws_vpc.main"]
        assert report.edges_written == [("aws_subnet.a", "aws_vpc.main", "REFERENCES")]

        props = store.node_properties("aws_vpc.main")
        assert props["tags"] == ["prod"]
        assert props["sourceTag"] == "s1"
        assert props["provider"] == "AWS"
        assert store.get_node("aws_vpc.main").labels == ["Resource", "RegularResource"]
        edge = store.get_edge("aws_subnet.a", "aws_vpc.main", "REFERENCES")
        assert edge.properties["path"] == "vpc_id"

    def test_double_merge_is_idempotent(self, engine_for):
        """Test merging the same graph twice leaves the store unchanged."""
        store = InMemoryGraphStore()
        engine = engine_for(store)
        engine.merge(_batch("a", "b"))
        first = store.snapshot()
        engine.merge(_batch("a", "b"))
        assert store.snapshot() == first

    def test_absent_nodes_are_kept(self, engine_for):
        """Test an incremental merge never deletes."""
        store = InMemoryGraphStore()
        engine = engine_for(store)
        engine.merge(_batch("a", "b"))
        engine.merge(_batch("a", tags=("staging",)))
        assert store.node_exists("aws_subnet.b")
        assert store.node_properties("aws_vpc.main")["tags"] == ["staging"]

    def test_missing_endpoint_is_diagnosed(self, engine_for):
        """Test an edge to an unknown node is skipped with a diagnostic."""
        node, _ = GraphBuilder().build_node(ResourceDefinition(type="aws_vpc", name="main"))
        graph = ConfigurationGraph(
            [node],
            [Relationship(source_id="aws_vpc.main", target_id="aws_vpc.ghost", kind=RelationshipKind.REFERENCES)],
        )
        report = engine_for(InMemoryGraphStore()).merge(graph)
        assert report.succeeded
        assert report.edges_written == []
        [diag] = report.diagnostics
        assert diag.kind == DiagnosticKind.EDGE_ENDPOINT_MISSING

    def test_graph_diagnostics_are_reported(self, engine_for):
        """Test the report carries the graph's diagnostics."""
        graph = build_graph(
            [ResourceDefinition(type="aws_subnet", name="a", arguments={"vpc_id": "aws_vpc.gone.id"})]
        )
        report = engine_for(InMemoryGraphStore()).merge(graph)
        assert [d.kind for d in report.diagnostics] == [DiagnosticKind.DANGLING_REFERENCE]


class TestRebuild:
    """Tests for full rebuilds."""

    def test_rebuild_replaces_own_source_only(self, engine_for):
        """Test a rebuild drops stale items of its source and keeps other sources."""
        store = InMemoryGraphStore()
        engine_for(store, "s1").merge(_batch("a", "b"))
        other = build_graph([ResourceDefinition(type="aws_s3_bucket", name="logs")])
        engine_for(store, "s2").merge(other)

        report = engine_for(store, "s1").merge(_batch("a"), MergeMode.REBUILD)
        assert report.mode == MergeMode.REBUILD
        assert not store.node_exists("aws_subnet.b")
        assert store.node_exists("aws_subnet.a")
        assert store.node_exists("aws_s3_bucket.logs")

    def test_mode_from_string(self, engine_for):
        """Test the mode may be given by value."""
        report = engine_for(InMemoryGraphStore()).merge(_batch(), "rebuild")
        assert report.mode == MergeMode.REBUILD

    def test_failed_rebuild_leaves_store_untouched(self, engine_for):
        """Test a rebuild is all or nothing."""
        store = FlakyStore()
        engine_for(store).merge(_batch("a"))
        before = store.snapshot()
        store.failures = 10
        with pytest.raises(MergeError) as exc:
            engine_for(store, max_attempts=2).merge(_batch(), MergeMode.REBUILD)
        assert store.snapshot() == before
        assert exc.value.report.nodes_written == []


class TestRetry:
    """Tests for retry, timeout and conflict handling."""

    def test_transient_failures_are_retried(self, engine_for, sleeps):
        """Test unavailability is retried with growing backoff."""
        store = FlakyStore(failures=2)
        report = engine_for(store, max_attempts=3).merge(_batch())
        assert report.succeeded
        assert store.node_exists("aws_vpc.main")
        assert len(sleeps) == 2
        assert 0.1 <= sleeps[0] <= 0.15
        assert 0.2 <= sleeps[1] <= 0.3

    def test_exhaustion_fails_whole_merge(self, engine_for):
        """Test exhausted retries raise with committed ids and diagnostics."""
        store = FlakyStore(failures=100, succeed_first=1)
        with pytest.raises(MergeError) as exc:
            engine_for(store, max_attempts=2).merge(_batch("a"))
        report = exc.value.report
        assert report.status == MergeStatus.FAILED
        assert report.nodes_written == ["aws_vpc.main"]
        assert report.diagnostics[-1].kind == DiagnosticKind.STORE_UNAVAILABLE

    def test_conflict_is_not_retried(self, engine_for, sleeps):
        """Test a constraint conflict fails immediately."""
        store = FlakyStore()
        store.upsert_node("aws_vpc.main", ["Resource"], {"resourceType": "aws_instance"})
        with pytest.raises(MergeError) as exc:
            engine_for(store).merge(_batch())
        assert store.attempts == 1
        assert sleeps == []
        assert exc.value.report.diagnostics[-1].kind == DiagnosticKind.STORE_CONFLICT

    def test_timeout_counts_as_unavailable(self, engine_for):
        """Test an operation exceeding its timeout fails the merge."""
        with pytest.raises(MergeError) as exc:
            engine_for(SlowStore(), max_attempts=1, timeout=0.05).merge(_batch())
        [diag] = exc.value.report.diagnostics
        assert diag.kind == DiagnosticKind.STORE_UNAVAILABLE
        assert "timed out" in diag.message


class TestDelete:
    """Tests for explicit deletion."""

    def test_delete_existing(self, engine_for):
        """Test only existing ids are reported deleted."""
        store = InMemoryGraphStore()
        engine = engine_for(store)
        engine.merge(_batch("a"))
        assert engine.delete(["aws_subnet.a", "aws_subnet.nope"]) == ["aws_subnet.a"]
        assert not store.node_exists("aws_subnet.a")
        assert store.get_edge("aws_subnet.a", "aws_vpc.main", "REFERENCES") is None


class TestConcurrency:
    """Tests for merges running at the same time on one engine."""

    def test_writes_to_one_id_are_serialized(self, engine_for):
        """Test rebuilds and incremental merges over the same ids never overlap."""
        store = OverlapStore()
        engine = engine_for(store, timeout=None)
        graph = _batch("a", "b", "c")
        modes = [MergeMode.REBUILD, MergeMode.INCREMENTAL] * 4

        with ThreadPoolExecutor(max_workers=len(modes)) as pool:
            reports = list(pool.map(lambda mode: engine.merge(graph, mode), modes))

        assert store.overlaps == []
        assert all(r.succeeded for r in reports)
        assert sorted(n.id for n in store.nodes()) == sorted(n.id for n in graph.nodes)

    def test_concurrent_incremental_merges(self, engine_for):
        """Test overlapping incremental merges each write every node once."""
        store = OverlapStore()
        engine = engine_for(store, timeout=None)
        graphs = [_batch("a", "b"), _batch("b", "c"), _batch("a", "c")]

        with ThreadPoolExecutor(max_workers=len(graphs)) as pool:
            reports = list(pool.map(engine.merge, graphs))

        assert store.overlaps == []
        assert [len(r.nodes_written) for r in reports] == [3, 3, 3]
        assert len(store) == 4
