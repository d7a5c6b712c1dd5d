"""Core pipeline: classification, flattening, reference and relationship inference."""

from infragraph.core.builder import GraphBuilder, build_graph
from infragraph.core.flatten import Flattener, flatten, unflatten
from infragraph.core.graph import ConfigurationGraph, RelationshipSet
from infragraph.core.identity import IdentityTracker
from infragraph.core.references import NodeIndex, ReferenceResolver
from infragraph.core.registry import ClassificationRegistry, classify
from infragraph.core.relationships import RelationshipClassifier
from infragraph.core.schema import (
    ComponentNode,
    Diagnostic,
    DiagnosticKind,
    IdentityClass,
    Provider,
    Relationship,
    RelationshipKind,
    ResourceDefinition,
    ResourceMode,
)

__all__ = [
    "GraphBuilder",
    "build_graph",
    "Flattener",
    "flatten",
    "unflatten",
    "ConfigurationGraph",
    "RelationshipSet",
    "IdentityTracker",
    "NodeIndex",
    "ReferenceResolver",
    "ClassificationRegistry",
    "classify",
    "RelationshipClassifier",
    "ComponentNode",
    "Diagnostic",
    "DiagnosticKind",
    "IdentityClass",
    "Provider",
    "Relationship",
    "RelationshipKind",
    "ResourceDefinition",
    "ResourceMode",
]
