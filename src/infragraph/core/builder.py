"""Two-phase pipeline turning a batch of resource definitions into a graph."""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Iterable

from infragraph.core.flatten import Flattener
from infragraph.core.graph import ConfigurationGraph
from infragraph.core.identity import IdentityTracker
from infragraph.core.references import NodeIndex, ReferenceResolver
from infragraph.core.registry import ClassificationRegistry, default_registry
from infragraph.core.relationships import RelationshipClassifier, suppress_inferred
from infragraph.core.schema import (
    ComponentNode,
    Diagnostic,
    DiagnosticKind,
    ResourceDefinition,
)

logger = logging.getLogger(__name__)


class GraphBuilder:
    """
    Builds a `ConfigurationGraph` from an ordered batch of definitions.

    Phase one classifies and flattens every definition in a worker pool.
    The node index is only built once all of them are done; phase two then
    resolves references and runs the relationship classifier and identity
    tracker side by side. Inferred edges are pruned against the full
    explicit edge set at the end.
    """

    def __init__(
        self,
        registry: ClassificationRegistry | None = None,
        flattener: Flattener | None = None,
        max_workers: int | None = None,
    ) -> None:
        self._registry = registry or default_registry()
        self._flattener = flattener or Flattener()
        self._max_workers = max_workers

    def build_node(self, definition: ResourceDefinition) -> tuple[ComponentNode, list[Diagnostic]]:
        """Classify and flatten one definition. Pure; safe to run concurrently."""
        classification = self._registry.classify(definition.type)
        node_id = definition.address
        flat = self._flattener.flatten(definition.arguments, resource_id=node_id)
        node = ComponentNode(
            id=node_id,
            type=definition.type,
            local_name=definition.local_name,
            mode=definition.mode,
            provider=classification.provider,
            identity_class=classification.identity_class,
            properties=flat.properties,
            json_keys=flat.json_keys,
        )
        return node, flat.diagnostics

    def build(
        self,
        definitions: Iterable[ResourceDefinition],
        diagnostics: Iterable[Diagnostic] = (),
    ) -> ConfigurationGraph:
        definitions = list(definitions)
        collected: list[Diagnostic] = list(diagnostics)
        logger.info("Building graph from %d resource definitions", len(definitions))

        with ThreadPoolExecutor(max_workers=self._max_workers) as pool:
            built = list(pool.map(self.build_node, definitions))

            nodes: dict[str, ComponentNode] = {}
            trees: dict[str, dict[str, Any]] = {}
            node_diagnostics: dict[str, list[Diagnostic]] = {}
            for definition, (node, flat_diagnostics) in zip(definitions, built):
                if node.id in nodes:
                    collected.append(
                        Diagnostic(
                            kind=DiagnosticKind.DUPLICATE_IDENTITY,
                            message=f"Duplicate definition of {node.id}; last one wins",
                            resource_id=node.id,
                            detail={"source_file": definition.source_file},
                        )
                    )
                nodes[node.id] = node
                trees[node.id] = definition.arguments
                node_diagnostics[node.id] = flat_diagnostics
            for flat_diagnostics in node_diagnostics.values():
                collected.extend(flat_diagnostics)

            # Barrier: every node is known before any reference is resolved
            index = NodeIndex(nodes.values())
            resolver = ReferenceResolver(index, self._registry)
            resolved = list(pool.map(lambda item: resolver.resolve(*item), trees.items()))
            candidates = [c for r in resolved for c in r.candidates]
            for result in resolved:
                collected.extend(result.diagnostics)

            tracker = IdentityTracker(index, self._registry)
            classifier = RelationshipClassifier(index, self._registry, claimed=tracker.claims)
            classified_future = pool.submit(classifier.classify, candidates, trees)
            tracked_future = pool.submit(tracker.track, candidates, trees)
            classified = classified_future.result()
            tracked = tracked_future.result()

        for node_id, annotations in classified.annotations.items():
            nodes[node_id].properties.update(annotations)

        explicit = [*classified.explicit, *tracked.relationships]
        inferred = suppress_inferred(explicit, classified.inferred)

        graph = ConfigurationGraph(nodes.values(), [*explicit, *inferred], collected)
        logger.info("Built %r", graph)
        return graph


def build_graph(
    definitions: Iterable[ResourceDefinition],
    registry: ClassificationRegistry | None = None,
    sensitive_tokens: Iterable[str] | None = None,
    max_workers: int | None = None,
) -> ConfigurationGraph:
    """Build a graph with a one-off `GraphBuilder`."""
    builder = GraphBuilder(registry, Flattener(sensitive_tokens), max_workers)
    return builder.build(definitions)
