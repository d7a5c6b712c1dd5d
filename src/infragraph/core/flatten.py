"""Flattening of nested argument trees into dot-path property bags."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Iterable

from infragraph.core.codec import dumps
from infragraph.core.schema import Diagnostic, DiagnosticKind

logger = logging.getLogger(__name__)

REDACTED = "***REDACTED***"
UNFLATTENABLE = "<unflattenable>"
COMPUTED_SUFFIX = ":computed"
UNKNOWN_MARKERS = frozenset({"(known after apply)", "<computed>"})

DEFAULT_SENSITIVE_TOKENS = (
    "password",
    "secret",
    "private_key",
    "token",
    "access_key",
    "credentials",
)

_SCALARS = (str, int, float, bool)


def escape_segment(key: Any) -> str:
    """Escape a mapping key for use as one path segment."""
    return str(key).replace("\\", "\\\\").replace(".", "\\.")


def split_path(path: str) -> list[str]:
    """Split a flattened path on unescaped dots, unescaping each segment."""
    parts: list[str] = []
    current: list[str] = []
    escaped = False
    for ch in path:
        if escaped:
            current.append(ch)
            escaped = False
        elif ch == "\\":
            escaped = True
        elif ch == ".":
            parts.append("".join(current))
            current = []
        else:
            current.append(ch)
    parts.append("".join(current))
    return parts


@dataclass
class FlattenResult:
    """Flat property bag plus what happened while producing it."""

    properties: dict[str, Any] = field(default_factory=dict)
    json_keys: list[str] = field(default_factory=list)
    diagnostics: list[Diagnostic] = field(default_factory=list)

    @property
    def redacted_keys(self) -> list[str]:
        return [k for k, v in self.properties.items() if v == REDACTED]

    @property
    def computed_keys(self) -> list[str]:
        return [k[: -len(COMPUTED_SUFFIX)] for k in self.properties if k.endswith(COMPUTED_SUFFIX)]


class Flattener:
    """
    Depth-first flattener for argument trees.

    Scalars keep their type under their dot-joined path; dots and
    backslashes inside keys are backslash-escaped. Lists and empty mappings
    are stored as canonical JSON strings and their keys reported in
    `json_keys`.
    Sensitive keys are masked, computed values are tagged with a
    `<path>:computed` sibling. Never raises.
    """

    def __init__(self, sensitive_tokens: Iterable[str] | None = None) -> None:
        tokens = DEFAULT_SENSITIVE_TOKENS if sensitive_tokens is None else sensitive_tokens
        self._sensitive = tuple(t.lower() for t in tokens)

    def is_sensitive(self, path: str) -> bool:
        lowered = path.lower()
        return any(token in lowered for token in self._sensitive)

    def flatten(self, tree: dict[str, Any], resource_id: str | None = None) -> FlattenResult:
        result = FlattenResult()
        self._walk(tree, "", result, resource_id, active=set())
        if result.diagnostics:
            logger.debug("Flattened %s with %d diagnostics", resource_id, len(result.diagnostics))
        return result

    def _walk(
        self,
        value: Any,
        path: str,
        result: FlattenResult,
        resource_id: str | None,
        active: set[int],
    ) -> None:
        if path and self.is_sensitive(path):
            result.properties[path] = REDACTED
            result.diagnostics.append(
                Diagnostic(
                    kind=DiagnosticKind.SENSITIVE_VALUE_REDACTED,
                    message="Sensitive value masked",
                    resource_id=resource_id,
                    path=path,
                )
            )
            return

        if isinstance(value, dict):
            if id(value) in active:
                self._placeholder(path, result, resource_id, "cyclic mapping")
                return
            if not value and path:
                result.properties[path] = dumps(value)
                result.json_keys.append(path)
                return
            active.add(id(value))
            for key, child in value.items():
                segment = escape_segment(key)
                child_path = f"{path}.{segment}" if path else segment
                self._walk(child, child_path, result, resource_id, active)
            active.discard(id(value))
            return

        if value is None or (isinstance(value, str) and value in UNKNOWN_MARKERS):
            result.properties[f"{path}{COMPUTED_SUFFIX}"] = True
            result.diagnostics.append(
                Diagnostic(
                    kind=DiagnosticKind.COMPUTED_VALUE,
                    message="Value unknown until apply",
                    resource_id=resource_id,
                    path=path,
                )
            )
            return

        if isinstance(value, (list, tuple)):
            computed: list[str] = []
            scrubbed = self._scrub(value, path, result, resource_id, active, computed)
            try:
                result.properties[path] = dumps(scrubbed)
            except (TypeError, ValueError) as e:
                self._placeholder(path, result, resource_id, str(e))
                return
            result.json_keys.append(path)
            if computed:
                # Unknowns inside a list cannot carry their own sibling marker
                result.properties[f"{path}{COMPUTED_SUFFIX}"] = True
                result.diagnostics.append(
                    Diagnostic(
                        kind=DiagnosticKind.COMPUTED_VALUE,
                        message=f"List holds {len(computed)} value(s) unknown until apply",
                        resource_id=resource_id,
                        path=path,
                        detail={"elements": computed},
                    )
                )
            return

        if isinstance(value, _SCALARS):
            result.properties[path] = value
            return

        self._placeholder(path, result, resource_id, f"unsupported type {type(value).__name__}")

    def _scrub(
        self,
        value: Any,
        path: str,
        result: FlattenResult,
        resource_id: str | None,
        active: set[int],
        computed: list[str],
    ) -> Any:
        """Copy a list element tree, masking sensitive keys and noting unknowns."""
        if isinstance(value, (dict, list, tuple)):
            if id(value) in active:
                self._placeholder(path, result, resource_id, "cyclic structure")
                return UNFLATTENABLE
            active.add(id(value))
            try:
                if isinstance(value, dict):
                    scrubbed: dict[str, Any] = {}
                    for key, child in value.items():
                        child_path = f"{path}.{escape_segment(key)}"
                        if self.is_sensitive(str(key)):
                            scrubbed[str(key)] = REDACTED
                            result.diagnostics.append(
                                Diagnostic(
                                    kind=DiagnosticKind.SENSITIVE_VALUE_REDACTED,
                                    message="Sensitive value masked",
                                    resource_id=resource_id,
                                    path=child_path,
                                )
                            )
                        else:
                            scrubbed[str(key)] = self._scrub(
                                child, child_path, result, resource_id, active, computed
                            )
                    return scrubbed
                return [
                    self._scrub(item, f"{path}.{i}", result, resource_id, active, computed)
                    for i, item in enumerate(value)
                ]
            finally:
                active.discard(id(value))

        if value is None or (isinstance(value, str) and value in UNKNOWN_MARKERS):
            computed.append(path)
            return None
        return value

    @staticmethod
    def _placeholder(path: str, result: FlattenResult, resource_id: str | None, reason: str) -> None:
        result.properties[path] = UNFLATTENABLE
        result.diagnostics.append(
            Diagnostic(
                kind=DiagnosticKind.UNFLATTENABLE_VALUE,
                message=f"Replaced with placeholder: {reason}",
                resource_id=resource_id,
                path=path,
            )
        )


def flatten(
    tree: dict[str, Any],
    sensitive_tokens: Iterable[str] | None = None,
    resource_id: str | None = None,
) -> FlattenResult:
    """Flatten `tree` with a one-off `Flattener`."""
    return Flattener(sensitive_tokens).flatten(tree, resource_id)


def unflatten(properties: dict[str, Any], json_keys: Iterable[str] = ()) -> dict[str, Any]:
    """
    Rebuild a tree from a flat bag.

    Redacted values and computed markers are skipped. Keys listed in
    `json_keys` are decoded back into lists or empty mappings.
    """
    decode = set(json_keys)
    tree: dict[str, Any] = {}
    for key, value in properties.items():
        if key.endswith(COMPUTED_SUFFIX) or value == REDACTED:
            continue
        if key in decode and isinstance(value, str):
            value = json.loads(value)
        node = tree
        *parents, leaf = split_path(key)
        for part in parents:
            node = node.setdefault(part, {})
        node[leaf] = value
    return tree
