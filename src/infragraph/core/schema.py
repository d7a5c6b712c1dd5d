"""Pydantic schemas for resource definitions, graph nodes and edges."""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from infragraph.core.codec import JSON_KEYS_PROPERTY, dumps


class Provider(str, Enum):
    """Cloud provider a resource type belongs to."""

    GCP = "GCP"
    AWS = "AWS"
    AZURE = "AZURE"
    UNKNOWN = "UNKNOWN"


class IdentityClass(str, Enum):
    """Whether a resource is a principal or plain infrastructure."""

    IDENTITY_RESOURCE = "IDENTITY_RESOURCE"
    REGULAR_RESOURCE = "REGULAR_RESOURCE"


class ResourceMode(str, Enum):
    """Managed resource block or data source block."""

    MANAGED = "managed"
    DATA = "data"


class RelationshipKind(str, Enum):
    """Types of edges between resource nodes."""

    REFERENCES = "REFERENCES"
    DEPENDS_ON = "DEPENDS_ON"
    NETWORK_CONNECTED = "NETWORK_CONNECTED"
    BELONGS_TO = "BELONGS_TO"
    DATA_SOURCE = "DATA_SOURCE"
    USES_IDENTITY = "USES_IDENTITY"
    HAS_PERMISSION = "HAS_PERMISSION"
    IMPERSONATES = "IMPERSONATES"

    @property
    def is_inferred(self) -> bool:
        """Heuristic kinds, derived from shared property values."""
        return self in (RelationshipKind.NETWORK_CONNECTED, RelationshipKind.BELONGS_TO)


class DiagnosticKind(str, Enum):
    """Kinds of diagnostics accumulated while building a graph."""

    SYNTAX_DIAGNOSTIC = "SYNTAX_DIAGNOSTIC"
    DANGLING_REFERENCE = "DANGLING_REFERENCE"
    SELF_REFERENCE = "SELF_REFERENCE"
    DUPLICATE_IDENTITY = "DUPLICATE_IDENTITY"
    SENSITIVE_VALUE_REDACTED = "SENSITIVE_VALUE_REDACTED"
    COMPUTED_VALUE = "COMPUTED_VALUE"
    UNFLATTENABLE_VALUE = "UNFLATTENABLE_VALUE"
    EDGE_ENDPOINT_MISSING = "EDGE_ENDPOINT_MISSING"
    STORE_UNAVAILABLE = "STORE_UNAVAILABLE"
    STORE_CONFLICT = "STORE_CONFLICT"


class Severity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


SEVERITIES: dict[DiagnosticKind, Severity] = {
    DiagnosticKind.SYNTAX_DIAGNOSTIC: Severity.ERROR,
    DiagnosticKind.DANGLING_REFERENCE: Severity.WARNING,
    DiagnosticKind.SELF_REFERENCE: Severity.INFO,
    DiagnosticKind.DUPLICATE_IDENTITY: Severity.WARNING,
    DiagnosticKind.SENSITIVE_VALUE_REDACTED: Severity.INFO,
    DiagnosticKind.COMPUTED_VALUE: Severity.INFO,
    DiagnosticKind.UNFLATTENABLE_VALUE: Severity.WARNING,
    DiagnosticKind.EDGE_ENDPOINT_MISSING: Severity.WARNING,
    DiagnosticKind.STORE_UNAVAILABLE: Severity.ERROR,
    DiagnosticKind.STORE_CONFLICT: Severity.ERROR,
}


class Diagnostic(BaseModel):
    """A recoverable finding reported alongside a result."""

    kind: DiagnosticKind
    message: str
    resource_id: str | None = None
    path: str | None = None
    detail: dict[str, Any] = Field(default_factory=dict)

    model_config = {"frozen": True}

    @property
    def severity(self) -> Severity:
        return SEVERITIES[self.kind]

    def __str__(self) -> str:
        where = self.resource_id or "-"
        if self.path:
            where = f"{where}:{self.path}"
        return f"[{self.kind.value}] {where}: {self.message}"


class ResourceDefinition(BaseModel):
    """
    One declared resource block, as produced by the syntax parser.

    The `(mode, type, local_name)` triple identifies the block within a
    batch. Arguments are kept as the parser emitted them.
    """

    type: str
    local_name: str = Field(alias="name")
    arguments: dict[str, Any] = Field(default_factory=dict)
    mode: ResourceMode = ResourceMode.MANAGED
    source_file: str | None = None

    model_config = {"populate_by_name": True, "frozen": True}

    @property
    def key(self) -> tuple[ResourceMode, str, str]:
        return (self.mode, self.type, self.local_name)

    @property
    def address(self) -> str:
        """Deterministic node id: `type.name`, or `data.type.name`."""
        if self.mode == ResourceMode.DATA:
            return f"data.{self.type}.{self.local_name}"
        return f"{self.type}.{self.local_name}"


class ComponentNode(BaseModel):
    """
    Graph vertex for one resource.

    `properties` is the flattened argument tree. Keys listed in `json_keys`
    hold JSON-encoded list values.
    """

    id: str
    type: str
    local_name: str
    mode: ResourceMode = ResourceMode.MANAGED
    provider: Provider = Provider.UNKNOWN
    identity_class: IdentityClass = IdentityClass.REGULAR_RESOURCE
    properties: dict[str, Any] = Field(default_factory=dict)
    json_keys: list[str] = Field(default_factory=list)

    @property
    def is_identity(self) -> bool:
        return self.identity_class == IdentityClass.IDENTITY_RESOURCE

    @property
    def is_data_source(self) -> bool:
        return self.mode == ResourceMode.DATA

    @property
    def labels(self) -> list[str]:
        """Store labels: the common `Resource` label plus the identity class."""
        if self.is_identity:
            return ["Resource", "IdentityResource"]
        return ["Resource", "RegularResource"]

    def store_properties(self) -> dict[str, Any]:
        """Properties as written to the store, including the node's own fields."""
        props = dict(self.properties)
        props.update(
            {
                "id": self.id,
                "resourceType": self.type,
                "localName": self.local_name,
                "resourceMode": self.mode.value,
                "provider": self.provider.value,
                "identityClass": self.identity_class.value,
            }
        )
        if self.json_keys:
            props[JSON_KEYS_PROPERTY] = dumps(sorted(self.json_keys))
        return props


class Relationship(BaseModel):
    """Directed typed edge between two nodes."""

    source_id: str
    target_id: str
    kind: RelationshipKind
    properties: dict[str, Any] = Field(default_factory=dict)

    @property
    def key(self) -> tuple[str, str, RelationshipKind]:
        return (self.source_id, self.target_id, self.kind)

    def __repr__(self) -> str:
        return f"Relationship({self.source_id} -[{self.kind.value}]-> {self.target_id})"
