"""Structural reference resolution between resources of one batch."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Iterable, Iterator

from infragraph.core.registry import ClassificationRegistry, default_registry
from infragraph.core.schema import (
    ComponentNode,
    Diagnostic,
    DiagnosticKind,
    Provider,
    ResourceMode,
)

logger = logging.getLogger(__name__)

# `type.name` with an optional `data.` prefix, index/splat and attribute.
# Resource types always carry a provider prefix, so they contain an underscore;
# `var.x`, `local.x`, `module.x`, `each.key`, ... never match.
REFERENCE_PATTERN = re.compile(
    r"(?<![\w.\-/@:])"
    r"(?P<data>data\.)?"
    r"(?P<type>[a-z][a-z0-9]*_[a-z0-9_]+)"
    r"\.(?P<name>[A-Za-z_][\w-]*)"
    r"(?:\[[^\]]*\])?"
    r"(?:\.\*)?"
    r"(?:\.(?P<attr>[A-Za-z_][\w-]*))?"
)
# What may follow a bare reference expression for it to still count as one
TRAILER_PATTERN = re.compile(r"(?:\.[\w*-]+|\[[^\]]*\])*\s*")


@dataclass(frozen=True)
class ReferenceExpression:
    """A `type.name[.attr]` expression found in a string leaf."""

    mode: ResourceMode
    type: str
    name: str
    attribute: str | None
    text: str

    @property
    def address(self) -> str:
        if self.mode == ResourceMode.DATA:
            return f"data.{self.type}.{self.name}"
        return f"{self.type}.{self.name}"


@dataclass(frozen=True)
class ReferenceCandidate:
    """A resolved structural pointer from one node to another."""

    source_id: str
    target_id: str
    path: str
    attribute: str | None = None
    expression: str = ""

    @property
    def segments(self) -> list[str]:
        """Named path segments; list indexes are skipped."""
        return [s for s in self.path.split(".") if not s.isdigit()]

    @property
    def field(self) -> str:
        return self.path.split(".", 1)[0]

    def under_any(self, fields: Iterable[str]) -> bool:
        wanted = set(fields)
        return any(s in wanted for s in self.segments)


def _interpolations(text: str) -> Iterator[str]:
    """Yield the bodies of `${...}` interpolations, honouring nested braces."""
    start = text.find("${")
    while start != -1:
        depth = 0
        i = start + 2
        body_start = i
        while i < len(text):
            ch = text[i]
            if ch == "{":
                depth += 1
            elif ch == "}":
                if depth == 0:
                    yield text[body_start:i]
                    break
                depth -= 1
            i += 1
        else:
            # Unterminated interpolation: scan the remainder
            yield text[body_start:]
            return
        start = text.find("${", i + 1)


def _to_expression(match: re.Match[str]) -> ReferenceExpression:
    mode = ResourceMode.DATA if match.group("data") else ResourceMode.MANAGED
    return ReferenceExpression(
        mode=mode,
        type=match.group("type"),
        name=match.group("name"),
        attribute=match.group("attr"),
        text=match.group(0),
    )


def find_references(text: str) -> list[ReferenceExpression]:
    """
    Find reference expressions in a string leaf.

    A leaf either is a bare expression (`aws_vpc.main.id`) or carries
    expressions inside `${...}` interpolations. Anything else is plain text.
    """
    stripped = text.strip()
    if not stripped:
        return []

    if "${" not in stripped:
        match = REFERENCE_PATTERN.match(stripped)
        if match and TRAILER_PATTERN.fullmatch(stripped, match.end()):
            return [_to_expression(match)]
        return []

    found: list[ReferenceExpression] = []
    for body in _interpolations(stripped):
        for match in REFERENCE_PATTERN.finditer(body):
            found.append(_to_expression(match))
    return found


def iter_string_leaves(tree: Any, path: str = "") -> Iterator[tuple[str, str]]:
    """Yield `(path, value)` for every string leaf; list items get index segments."""
    if isinstance(tree, dict):
        for key, child in tree.items():
            yield from iter_string_leaves(child, f"{path}.{key}" if path else str(key))
    elif isinstance(tree, (list, tuple)):
        for i, child in enumerate(tree):
            yield from iter_string_leaves(child, f"{path}.{i}" if path else str(i))
    elif isinstance(tree, str):
        yield path, tree


class NodeIndex:
    """
    Batch-wide `(mode, type, name) -> id` index.

    Must be complete before any resolution starts.
    """

    def __init__(self, nodes: Iterable[ComponentNode]) -> None:
        self._nodes: dict[str, ComponentNode] = {}
        self._keys: dict[tuple[ResourceMode, str, str], str] = {}
        for node in nodes:
            self._nodes[node.id] = node
            self._keys[(node.mode, node.type, node.local_name)] = node.id

    def lookup(self, expression: ReferenceExpression) -> str | None:
        return self._keys.get((expression.mode, expression.type, expression.name))

    def get(self, node_id: str) -> ComponentNode | None:
        return self._nodes.get(node_id)

    def __len__(self) -> int:
        return len(self._nodes)

    def __contains__(self, node_id: str) -> bool:
        return node_id in self._nodes

    def __iter__(self) -> Iterator[ComponentNode]:
        return iter(self._nodes.values())


@dataclass
class ResolutionResult:
    candidates: list[ReferenceCandidate]
    diagnostics: list[Diagnostic]


class ReferenceResolver:
    """
    Resolves structural references against a complete node index.

    Dangling and self references are reported as diagnostics; they never
    abort resolution. A bare leaf such as `lambda_function.handler` only
    counts as a reference when its type has a known provider prefix or
    names a resource in the batch.
    """

    def __init__(self, index: NodeIndex, registry: ClassificationRegistry | None = None) -> None:
        self._index = index
        self._registry = registry or default_registry()

    def resolve(self, source_id: str, arguments: dict[str, Any]) -> ResolutionResult:
        """Resolve every reference in one node's argument tree."""
        candidates: dict[tuple[str, str, str | None], ReferenceCandidate] = {}
        diagnostics: list[Diagnostic] = []

        for path, value in iter_string_leaves(arguments):
            bare = "${" not in value
            for expr in find_references(value):
                target_id = self._index.lookup(expr)
                if target_id is None:
                    if bare and self._registry.provider_for(expr.type) == Provider.UNKNOWN:
                        continue
                    diagnostics.append(
                        Diagnostic(
                            kind=DiagnosticKind.DANGLING_REFERENCE,
                            message=f"Reference to unknown resource {expr.address}",
                            resource_id=source_id,
                            path=path,
                            detail={"target": expr.address, "expression": expr.text},
                        )
                    )
                    continue
                if target_id == source_id:
                    diagnostics.append(
                        Diagnostic(
                            kind=DiagnosticKind.SELF_REFERENCE,
                            message="Self reference dropped",
                            resource_id=source_id,
                            path=path,
                            detail={"expression": expr.text},
                        )
                    )
                    continue
                key = (target_id, path, expr.attribute)
                if key not in candidates:
                    candidates[key] = ReferenceCandidate(
                        source_id=source_id,
                        target_id=target_id,
                        path=path,
                        attribute=expr.attribute,
                        expression=expr.text,
                    )

        return ResolutionResult(list(candidates.values()), diagnostics)

    def resolve_all(self, trees: dict[str, dict[str, Any]]) -> ResolutionResult:
        """Resolve references for every `node_id -> arguments` entry."""
        candidates: list[ReferenceCandidate] = []
        diagnostics: list[Diagnostic] = []
        for source_id, arguments in trees.items():
            result = self.resolve(source_id, arguments)
            candidates.extend(result.candidates)
            diagnostics.extend(result.diagnostics)
        logger.info(
            "Resolved %d references across %d resources (%d diagnostics)",
            len(candidates),
            len(trees),
            len(diagnostics),
        )
        return ResolutionResult(candidates, diagnostics)
