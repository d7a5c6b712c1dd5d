"""Identity usage, permission and impersonation tracking."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any

from infragraph.core.references import (
    NodeIndex,
    ReferenceCandidate,
    find_references,
    iter_string_leaves,
)
from infragraph.core.registry import ClassificationRegistry
from infragraph.core.relationships import structural_edges
from infragraph.core.schema import ComponentNode, Provider, Relationship, RelationshipKind

logger = logging.getLogger(__name__)

# `serviceAccount:sa@...`, `user:alice@...` style IAM member strings
MEMBER_PREFIX = re.compile(r"^(?:serviceAccount|user|group|principal|principalSet|domain):")

GCP_SERVICE_ACCOUNT_DOMAIN = "iam.gserviceaccount.com"


def normalize_identifier(value: str) -> str:
    return MEMBER_PREFIX.sub("", value.strip())


@dataclass(frozen=True)
class IdentityMatch:
    """A leaf whose value equals an identity's externally visible identifier."""

    source_id: str
    target_id: str
    path: str
    value: str

    @property
    def segments(self) -> list[str]:
        return [s for s in self.path.split(".") if not s.isdigit()]


@dataclass
class TrackingResult:
    relationships: list[Relationship] = field(default_factory=list)

    def by_kind(self, kind: RelationshipKind) -> list[Relationship]:
        return [r for r in self.relationships if r.kind == kind]


class IdentityTracker:
    """
    Derives USES_IDENTITY, HAS_PERMISSION and IMPERSONATES edges.

    Identity links are found two ways: structural references to identity
    nodes, and value equality between leaves in identity-bearing fields and
    the identifiers registered per provider (an email, an ARN, a principal
    id). Read-only over the index and trees, so it can run alongside the
    relationship classifier.
    """

    def __init__(self, index: NodeIndex, registry: ClassificationRegistry) -> None:
        self._index = index
        self._registry = registry
        self._identifiers = self._build_identifier_index()

    def _identifiers_of(self, node: ComponentNode) -> set[str]:
        values = set()
        for prop in self._registry.identity_identifiers(node.provider):
            value = node.properties.get(prop)
            if isinstance(value, str) and value.strip() and not find_references(value):
                values.add(value.strip())
        if node.provider == Provider.GCP and node.type.endswith("service_account"):
            account_id = node.properties.get("account_id")
            project = node.properties.get("project")
            if isinstance(account_id, str) and isinstance(project, str):
                if not find_references(account_id) and not find_references(project):
                    values.add(f"{account_id}@{project}.{GCP_SERVICE_ACCOUNT_DOMAIN}")
        return values

    def _build_identifier_index(self) -> dict[str, set[str]]:
        index: dict[str, set[str]] = {}
        for node in self._index:
            if not node.is_identity or self._is_binding(node):
                continue
            for value in self._identifiers_of(node):
                index.setdefault(value, set()).add(node.id)
        return index

    def _is_binding(self, node: ComponentNode) -> bool:
        return self._registry.is_permission_binding(node.type)

    def _kind_for_path(
        self,
        source: ComponentNode,
        segments: list[str],
        *,
        structural: bool,
    ) -> RelationshipKind | None:
        """Identity edge kind for a link found at `segments` inside `source`."""
        named = set(segments)
        if named & self._registry.impersonation_fields:
            return RelationshipKind.IMPERSONATES
        if self._is_binding(source):
            if named & self._registry.principal_fields:
                return RelationshipKind.HAS_PERMISSION
            return None
        if source.is_identity:
            return None
        if structural or named & self._registry.identity_reference_fields:
            return RelationshipKind.USES_IDENTITY
        return None

    def claim_kind(self, candidate: ReferenceCandidate) -> RelationshipKind | None:
        """Kind this tracker assigns to a structural candidate, if it owns it."""
        if candidate.field in self._registry.dependency_fields:
            return None
        source = self._index.get(candidate.source_id)
        target = self._index.get(candidate.target_id)
        if source is None or target is None or not target.is_identity:
            return None
        return self._kind_for_path(source, candidate.segments, structural=True)

    def claims(self, candidate: ReferenceCandidate) -> bool:
        return self.claim_kind(candidate) is not None

    def value_matches(self, source_id: str, arguments: dict[str, Any]) -> list[IdentityMatch]:
        """Leaves that name an identity by value rather than by reference."""
        matches = []
        for path, value in iter_string_leaves(arguments):
            if find_references(value):
                continue
            for target_id in sorted(self._identifiers.get(normalize_identifier(value), ())):
                if target_id != source_id:
                    matches.append(IdentityMatch(source_id, target_id, path, value))
        return matches

    def track(
        self,
        candidates: list[ReferenceCandidate],
        trees: dict[str, dict[str, Any]],
    ) -> TrackingResult:
        typed = [(c, kind) for c in candidates if (kind := self.claim_kind(c)) is not None]
        links = structural_edges(typed)
        for rel in links:
            rel.properties["match"] = "reference"

        for source_id in sorted(trees):
            source = self._index.get(source_id)
            if source is None:
                continue
            for match in self.value_matches(source_id, trees[source_id]):
                kind = self._kind_for_path(source, match.segments, structural=False)
                if kind is None:
                    continue
                links.append(
                    Relationship(
                        source_id=source_id,
                        target_id=match.target_id,
                        kind=kind,
                        properties={"path": match.path, "match": "value", "value": match.value},
                    )
                )

        relationships = [r for r in links if r.kind != RelationshipKind.HAS_PERMISSION]
        relationships.extend(self._permission_edges(links, candidates))

        logger.info("Tracked %d identity relationships", len(relationships))
        return TrackingResult(relationships=relationships)

    def _permission_edges(
        self,
        links: list[Relationship],
        candidates: list[ReferenceCandidate],
    ) -> list[Relationship]:
        """
        Reorient binding -> principal links into principal -> binding grants.

        A binding without a resolvable principal grants on every resource
        it references instead, identities included: a binding scoped to a
        service account grants on that account.
        """
        principals: dict[str, dict[str, str]] = {}
        for rel in links:
            if rel.kind == RelationshipKind.HAS_PERMISSION:
                principal_field = str(rel.properties.get("path", "")).split(".", 1)[0]
                principals.setdefault(rel.source_id, {}).setdefault(rel.target_id, principal_field)

        edges: dict[tuple[str, str], Relationship] = {}
        for binding in sorted(self._index, key=lambda n: n.id):
            if not self._is_binding(binding):
                continue
            granted = principals.get(binding.id, {})
            properties = self._grant_properties(binding, exclude=set(granted.values()))
            if granted:
                for principal_id in sorted(granted):
                    edges[(principal_id, binding.id)] = Relationship(
                        source_id=principal_id,
                        target_id=binding.id,
                        kind=RelationshipKind.HAS_PERMISSION,
                        properties=dict(properties),
                    )
                continue
            for candidate in candidates:
                if candidate.source_id != binding.id:
                    continue
                target = self._index.get(candidate.target_id)
                if target is None or target.id == binding.id:
                    continue
                edges.setdefault(
                    (binding.id, target.id),
                    Relationship(
                        source_id=binding.id,
                        target_id=target.id,
                        kind=RelationshipKind.HAS_PERMISSION,
                        properties=dict(properties),
                    ),
                )
        return list(edges.values())

    def _grant_properties(self, binding: ComponentNode, exclude: set[str]) -> dict[str, Any]:
        properties: dict[str, Any] = {"binding": binding.id}
        role = self._first_property(binding, self._registry.role_fields, exclude)
        if role is not None:
            properties["role"] = role
        scope = self._first_property(binding, self._registry.scope_fields, exclude)
        if scope is not None:
            properties["scope"] = scope
        return properties

    @staticmethod
    def _first_property(node: ComponentNode, names: list[str], exclude: set[str]) -> Any:
        for name in names:
            if name in exclude:
                continue
            value = node.properties.get(name)
            if value is not None:
                return value
        return None
