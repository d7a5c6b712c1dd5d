"""Classification registry: provider prefixes, identity tokens and field names."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field

from infragraph.core.schema import IdentityClass, Provider


class ProviderRule(BaseModel):
    """A type prefix and the provider it implies."""

    prefix: str
    provider: Provider


class RegistrySchema(BaseModel):
    """
    Schema for the classification registry.

    Every list is matched as data; adding a provider or an identity token
    never requires touching the matching code. Rule order is significant for
    `providers` only (first match wins).
    """

    providers: list[ProviderRule] = Field(default_factory=list)
    identity_tokens: list[str] = Field(default_factory=list)
    permission_tokens: list[str] = Field(default_factory=list)

    # Argument field names driving relationship inference
    dependency_fields: list[str] = Field(default_factory=list)
    network_fields: list[str] = Field(default_factory=list)
    grouping_fields: list[str] = Field(default_factory=list)
    # grouping resource type -> properties holding its group value
    grouping_types: dict[str, list[str]] = Field(default_factory=dict)

    identity_reference_fields: list[str] = Field(default_factory=list)
    principal_fields: list[str] = Field(default_factory=list)
    impersonation_fields: list[str] = Field(default_factory=list)
    role_fields: list[str] = Field(default_factory=list)
    scope_fields: list[str] = Field(default_factory=list)
    # provider -> identity properties compared by value
    identity_identifiers: dict[Provider, list[str]] = Field(default_factory=dict)


DEFAULT_REGISTRY: dict[str, Any] = {
    "providers": [
        {"prefix": "google_", "provider": "GCP"},
        {"prefix": "gcp_", "provider": "GCP"},
        {"prefix": "aws_", "provider": "AWS"},
        {"prefix": "azurerm_", "provider": "AZURE"},
        {"prefix": "azuread_", "provider": "AZURE"},
        {"prefix": "azure_", "provider": "AZURE"},
    ],
    "identity_tokens": [
        "service_account",
        "iam_role",
        "iam_user",
        "iam_group",
        "iam_policy",
        "iam_access_key",
        "iam_instance_profile",
        "user_assigned_identity",
        "service_principal",
        "role_assignment",
        "role_definition",
    ],
    "permission_tokens": [
        "iam_member",
        "iam_binding",
        "role_assignment",
        "policy_attachment",
    ],
    "dependency_fields": ["depends_on"],
    "network_fields": [
        "network",
        "subnetwork",
        "vpc_id",
        "subnet_id",
        "subnet_ids",
        "virtual_network_name",
        "vpc_security_group_ids",
    ],
    "grouping_fields": ["project", "resource_group_name"],
    "grouping_types": {
        "google_project": ["project_id", "name"],
        "azurerm_resource_group": ["name"],
    },
    "identity_reference_fields": [
        "service_account",
        "service_account_email",
        "service_account_name",
        "identity",
        "identity_ids",
        "iam_instance_profile",
        "role_arn",
        "execution_role_arn",
        "task_role_arn",
        "user_assigned_identity_id",
    ],
    "principal_fields": [
        "member",
        "members",
        "principal_id",
        "role",
        "user",
        "users",
        "group",
        "groups",
    ],
    "impersonation_fields": [
        "impersonate_service_account",
        "target_service_account",
        "service_account_impersonation",
        "assume_role_arn",
    ],
    "role_fields": ["role", "role_definition_name", "role_definition_id", "policy_arn"],
    "scope_fields": [
        "scope",
        "bucket",
        "resource",
        "service_account_id",
        "project",
        "resource_group_name",
    ],
    "identity_identifiers": {
        "GCP": ["email"],
        "AWS": ["arn", "name"],
        "AZURE": ["principal_id", "client_id", "id"],
        "UNKNOWN": ["email"],
    },
}


@dataclass(frozen=True)
class Classification:
    """Result of classifying a resource type."""

    provider: Provider
    identity_class: IdentityClass

    @property
    def is_identity(self) -> bool:
        return self.identity_class == IdentityClass.IDENTITY_RESOURCE


class ClassificationRegistry:
    """
    Registry of ordered pattern rules used by every classification stage.

    Loaded from YAML or a dictionary; additions are merged on top of the
    built-in defaults so a config file only lists what it adds.
    """

    def __init__(self, schema: RegistrySchema) -> None:
        self._schema = schema
        self._providers = [(r.prefix.lower(), r.provider) for r in schema.providers]
        self._identity_tokens = tuple(t.lower() for t in schema.identity_tokens)
        self._permission_tokens = tuple(t.lower() for t in schema.permission_tokens)

    @classmethod
    def default(cls) -> ClassificationRegistry:
        return cls(RegistrySchema(**DEFAULT_REGISTRY))

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None, *, extend: bool = True) -> ClassificationRegistry:
        """Create a registry from a dictionary, extending the defaults unless told not to."""
        data = data or {}
        if not extend:
            return cls(RegistrySchema(**data))

        merged: dict[str, Any] = {}
        for key, default in DEFAULT_REGISTRY.items():
            extra = data.get(key)
            if extra is None:
                merged[key] = default
            elif isinstance(default, dict):
                combined = {k: list(v) for k, v in default.items()}
                for k, v in extra.items():
                    combined[k] = list(dict.fromkeys([*v, *combined.get(k, [])]))
                merged[key] = combined
            elif key == "providers":
                # Additions take precedence over the built-in prefixes
                merged[key] = [*extra, *default]
            else:
                merged[key] = list(dict.fromkeys([*default, *extra]))
        return cls(RegistrySchema(**merged))

    @classmethod
    def load(cls, path: str | Path) -> ClassificationRegistry:
        """Load registry additions from a YAML file."""
        path = Path(path)
        with path.open() as f:
            data = yaml.safe_load(f) or {}
        return cls.from_dict(data.get("classification", data))

    def provider_for(self, resource_type: str) -> Provider:
        lowered = resource_type.lower()
        for prefix, provider in self._providers:
            if lowered.startswith(prefix):
                return provider
        return Provider.UNKNOWN

    def identity_class_for(self, resource_type: str) -> IdentityClass:
        lowered = resource_type.lower()
        if any(token in lowered for token in self._identity_tokens):
            return IdentityClass.IDENTITY_RESOURCE
        return IdentityClass.REGULAR_RESOURCE

    def classify(self, resource_type: str) -> Classification:
        """Classify a resource type. Total: never raises."""
        return Classification(
            provider=self.provider_for(resource_type or ""),
            identity_class=self.identity_class_for(resource_type or ""),
        )

    def is_permission_binding(self, resource_type: str) -> bool:
        lowered = resource_type.lower()
        return any(token in lowered for token in self._permission_tokens)

    def grouping_properties(self, resource_type: str) -> list[str]:
        return self._schema.grouping_types.get(resource_type, [])

    def identity_identifiers(self, provider: Provider) -> list[str]:
        return self._schema.identity_identifiers.get(provider, [])

    @property
    def dependency_fields(self) -> frozenset[str]:
        return frozenset(self._schema.dependency_fields)

    @property
    def network_fields(self) -> frozenset[str]:
        return frozenset(self._schema.network_fields)

    @property
    def grouping_fields(self) -> list[str]:
        return list(self._schema.grouping_fields)

    @property
    def identity_reference_fields(self) -> frozenset[str]:
        return frozenset(self._schema.identity_reference_fields)

    @property
    def principal_fields(self) -> frozenset[str]:
        return frozenset(self._schema.principal_fields)

    @property
    def impersonation_fields(self) -> frozenset[str]:
        return frozenset(self._schema.impersonation_fields)

    @property
    def role_fields(self) -> list[str]:
        return list(self._schema.role_fields)

    @property
    def scope_fields(self) -> list[str]:
        return list(self._schema.scope_fields)

    def to_dict(self) -> dict[str, Any]:
        return self._schema.model_dump(mode="json")

    def __repr__(self) -> str:
        return (
            f"ClassificationRegistry({len(self._providers)} provider rules, "
            f"{len(self._identity_tokens)} identity tokens)"
        )


_default_registry: ClassificationRegistry | None = None


def default_registry() -> ClassificationRegistry:
    global _default_registry
    if _default_registry is None:
        _default_registry = ClassificationRegistry.default()
    return _default_registry


def classify(resource_type: str, registry: ClassificationRegistry | None = None) -> Classification:
    """Classify `resource_type` against `registry` (the defaults when omitted)."""
    return (registry or default_registry()).classify(resource_type)
