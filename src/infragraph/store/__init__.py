"""Graph store adapters and the upsert engine."""

from infragraph.store.base import GraphStore, GraphWriter
from infragraph.store.memory import InMemoryGraphStore
from infragraph.store.upsert import GraphUpsertEngine, MergeMode, MergeReport, RetryPolicy

__all__ = [
    "GraphStore",
    "GraphWriter",
    "InMemoryGraphStore",
    "GraphUpsertEngine",
    "MergeMode",
    "MergeReport",
    "RetryPolicy",
]
