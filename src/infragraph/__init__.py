"""
Infragraph - Property graphs from infrastructure-as-code resource blocks.

This package provides tools for:
- Classifying resource types by provider and identity class
- Flattening argument trees into store-safe property bags
- Resolving cross-resource references into typed edges
- Inferring network, grouping and identity/permission relationships
- Merging the derived graph into an in-memory or Neo4j graph store
"""

__version__ = "0.1.0"

from infragraph.core.builder import GraphBuilder, build_graph
from infragraph.core.graph import ConfigurationGraph
from infragraph.core.registry import ClassificationRegistry
from infragraph.store.upsert import GraphUpsertEngine

__all__ = [
    "__version__",
    "GraphBuilder",
    "build_graph",
    "ConfigurationGraph",
    "ClassificationRegistry",
    "GraphUpsertEngine",
]
