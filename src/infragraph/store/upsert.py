"""Merges a derived configuration graph into a persistent graph store."""

from __future__ import annotations

import concurrent.futures
import logging
import random
import threading
import time
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Iterable, Iterator, TypeVar

from infragraph.core.codec import encode_properties
from infragraph.core.graph import ConfigurationGraph
from infragraph.core.schema import ComponentNode, Diagnostic, DiagnosticKind, Relationship
from infragraph.errors import MergeError, StoreConflictError, StoreUnavailableError
from infragraph.store.base import SOURCE_PROPERTY, GraphStore, GraphWriter

logger = logging.getLogger(__name__)

T = TypeVar("T")


class MergeMode(str, Enum):
    INCREMENTAL = "incremental"
    REBUILD = "rebuild"


class MergeStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass
class RetryPolicy:
    """Bounded retry with exponential backoff and jitter."""

    max_attempts: int = 3
    base_delay: float = 0.1
    max_delay: float = 2.0
    timeout: float | None = 30.0

    def delay(self, attempt: int) -> float:
        base = min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)
        return base + random.uniform(0, base * 0.5)


@dataclass
class MergeReport:
    """Outcome of one merge.

    `nodes_written` and `edges_written` list what the store acknowledged,
    which on failure is the part of the batch already committed.
    """

    mode: MergeMode
    source_tag: str
    status: MergeStatus = MergeStatus.SUCCEEDED
    nodes_written: list[str] = field(default_factory=list)
    edges_written: list[tuple[str, str, str]] = field(default_factory=list)
    diagnostics: list[Diagnostic] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.status == MergeStatus.SUCCEEDED

    def summary(self) -> dict[str, Any]:
        return {
            "mode": self.mode.value,
            "source_tag": self.source_tag,
            "status": self.status.value,
            "nodes_written": len(self.nodes_written),
            "edges_written": len(self.edges_written),
            "diagnostics": len(self.diagnostics),
        }


class GraphUpsertEngine:
    """
    Writes graphs into a `GraphStore` without ever assuming it is empty.

    A rebuild replaces everything tagged with the engine's source tag in a
    single transaction. An incremental merge upserts each node in its own
    transaction and then each source node's outgoing edges in one, deleting
    nothing. Store operations are retried on `StoreUnavailableError` or
    timeout; `StoreConflictError` fails the merge at once. Writes touching
    the same node id or the same source node's edges are serialized across
    concurrent merges on one engine; a rebuild holds the locks of every id
    it writes for the length of its transaction.
    """

    def __init__(
        self,
        store: GraphStore,
        retry: RetryPolicy | None = None,
        source_tag: str = "default",
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.store = store
        self.retry = retry or RetryPolicy()
        self.source_tag = source_tag
        self._sleep = sleep
        self._locks: dict[tuple[str, str], threading.Lock] = {}
        self._locks_guard = threading.Lock()

    # --- Public API ---

    def merge(
        self, graph: ConfigurationGraph, mode: MergeMode | str = MergeMode.INCREMENTAL
    ) -> MergeReport:
        mode = MergeMode(mode)
        if mode == MergeMode.REBUILD:
            return self.rebuild(graph)
        return self.incremental(graph)

    def rebuild(self, graph: ConfigurationGraph) -> MergeReport:
        report = self._new_report(MergeMode.REBUILD, graph)
        nodes = graph.nodes
        relationships = list(graph.relationships)

        def write_all(writer: GraphWriter) -> tuple[list[str], list[tuple[str, str, str]], list[Diagnostic]]:
            writer.clear_source(self.source_tag)
            for node in nodes:
                self._write_node(writer, node)
            edges, missing = self._write_edges(writer, relationships)
            return [n.id for n in nodes], edges, missing

        logger.info(
            "Rebuilding source %r with %d nodes and %d relationships",
            self.source_tag,
            len(nodes),
            len(relationships),
        )
        with self._failures_reported(report, "rebuild"):
            keys = [("source", self.source_tag)]
            keys.extend(("node", n.id) for n in nodes)
            keys.extend(("edges", r.source_id) for r in relationships)
            with self._locked(*keys):
                written, edges, missing = self._with_retry(
                    lambda: self._in_transaction(write_all), f"rebuild {self.source_tag}"
                )
            report.nodes_written.extend(written)
            report.edges_written.extend(edges)
            report.diagnostics.extend(missing)
        return self._finish(report)

    def incremental(self, graph: ConfigurationGraph) -> MergeReport:
        report = self._new_report(MergeMode.INCREMENTAL, graph)
        by_source: dict[str, list[Relationship]] = {}
        for rel in graph.relationships:
            by_source.setdefault(rel.source_id, []).append(rel)

        logger.info(
            "Incremental merge of %d nodes and %d relationships into source %r",
            len(graph),
            len(graph.relationships),
            self.source_tag,
        )
        with self._failures_reported(report, "incremental merge"):
            for node in graph.nodes:
                with self._locked(("node", node.id)):
                    self._with_retry(
                        lambda node=node: self._in_transaction(
                            lambda w: self._write_node(w, node)
                        ),
                        f"upsert node {node.id}",
                    )
                report.nodes_written.append(node.id)

            for source_id, rels in by_source.items():
                with self._locked(("edges", source_id)):
                    edges, missing = self._with_retry(
                        lambda rels=rels: self._in_transaction(
                            lambda w: self._write_edges(w, rels)
                        ),
                        f"upsert edges from {source_id}",
                    )
                report.edges_written.extend(edges)
                report.diagnostics.extend(missing)
        return self._finish(report)

    def delete(self, node_ids: Iterable[str]) -> list[str]:
        """Remove nodes and their edges. Returns the ids that existed."""
        deleted: list[str] = []
        for node_id in node_ids:

            def remove(writer: GraphWriter, node_id: str = node_id) -> bool:
                if not writer.node_exists(node_id):
                    return False
                writer.delete_node(node_id)
                return True

            with self._locked(("node", node_id)):
                existed = self._with_retry(
                    lambda remove=remove: self._in_transaction(remove),
                    f"delete node {node_id}",
                )
            if existed:
                deleted.append(node_id)
        logger.info("Deleted %d node(s)", len(deleted))
        return deleted

    # --- Writes ---

    def _write_node(self, writer: GraphWriter, node: ComponentNode) -> None:
        props = node.store_properties()
        props[SOURCE_PROPERTY] = self.source_tag
        writer.upsert_node(node.id, node.labels, props)

    def _write_edges(
        self, writer: GraphWriter, relationships: Iterable[Relationship]
    ) -> tuple[list[tuple[str, str, str]], list[Diagnostic]]:
        written: list[tuple[str, str, str]] = []
        missing: list[Diagnostic] = []
        for rel in relationships:
            props = encode_properties(rel.properties)
            props[SOURCE_PROPERTY] = self.source_tag
            key = (rel.source_id, rel.target_id, rel.kind.value)
            if writer.upsert_edge(rel.source_id, rel.target_id, rel.kind.value, props):
                written.append(key)
            else:
                missing.append(
                    Diagnostic(
                        kind=DiagnosticKind.EDGE_ENDPOINT_MISSING,
                        message=f"Endpoint missing for {rel!r}; edge skipped",
                        resource_id=rel.source_id,
                        detail={"target_id": rel.target_id, "kind": rel.kind.value},
                    )
                )
        return written, missing

    def _in_transaction(self, fn: Callable[[GraphWriter], T]) -> T:
        with self.store.transaction() as writer:
            return fn(writer)

    # --- Retry, timeout, locking ---

    def _with_retry(self, operation: Callable[[], T], name: str) -> T:
        policy = self.retry
        for attempt in range(1, policy.max_attempts + 1):
            try:
                return self._with_timeout(operation, name)
            except StoreConflictError:
                logger.error("Store conflict in %s, not retrying", name)
                raise
            except StoreUnavailableError as e:
                if attempt >= policy.max_attempts:
                    logger.error("All %d attempts exhausted for %s", policy.max_attempts, name)
                    raise
                delay = policy.delay(attempt)
                logger.warning(
                    "Store unavailable in %s (attempt %d/%d: %s), retrying in %.3fs",
                    name,
                    attempt,
                    policy.max_attempts,
                    e,
                    delay,
                )
                self._sleep(delay)
        raise StoreUnavailableError(f"{name}: no attempts made")

    def _with_timeout(self, operation: Callable[[], T], name: str) -> T:
        if self.retry.timeout is None:
            return operation()
        pool = concurrent.futures.ThreadPoolExecutor(max_workers=1)
        try:
            future = pool.submit(operation)
            try:
                return future.result(timeout=self.retry.timeout)
            except concurrent.futures.TimeoutError as e:
                raise StoreUnavailableError(
                    f"{name} timed out after {self.retry.timeout}s"
                ) from e
        finally:
            pool.shutdown(wait=False)

    @contextmanager
    def _locked(self, *keys: tuple[str, str]) -> Iterator[None]:
        """Hold the locks for `keys`, always taken in sorted order."""
        with self._locks_guard:
            locks = [self._locks.setdefault(key, threading.Lock()) for key in sorted(set(keys))]
        with ExitStack() as stack:
            for lock in locks:
                stack.enter_context(lock)
            yield

    # --- Reporting ---

    def _new_report(self, mode: MergeMode, graph: ConfigurationGraph) -> MergeReport:
        return MergeReport(mode=mode, source_tag=self.source_tag, diagnostics=list(graph.diagnostics))

    @contextmanager
    def _failures_reported(self, report: MergeReport, what: str) -> Iterator[None]:
        try:
            yield
        except StoreConflictError as e:
            self._fail(report, DiagnosticKind.STORE_CONFLICT, f"{what} failed: {e}", e)
        except StoreUnavailableError as e:
            self._fail(report, DiagnosticKind.STORE_UNAVAILABLE, f"{what} failed: {e}", e)

    def _fail(
        self, report: MergeReport, kind: DiagnosticKind, message: str, cause: Exception
    ) -> None:
        report.status = MergeStatus.FAILED
        report.diagnostics.append(Diagnostic(kind=kind, message=message))
        logger.error(
            "%s (%d nodes and %d edges already committed)",
            message,
            len(report.nodes_written),
            len(report.edges_written),
        )
        raise MergeError(message, report) from cause

    def _finish(self, report: MergeReport) -> MergeReport:
        logger.info("Merge finished: %s", report.summary())
        return report
