"""Loading resource definitions from parser output documents.

Two document shapes are accepted, in JSON or YAML:

- Terraform JSON syntax, or python-hcl2 output: top-level `resource` and
  `data` blocks, each either a mapping `{type: {name: body}}` or a list of
  such mappings. A body may itself be a list of bodies.
- An explicit list under `resources:`, each entry carrying `type`, `name`,
  `arguments` and optionally `mode`.

Parser diagnostics under a top-level `diagnostics` list are passed through
as `SYNTAX_DIAGNOSTIC` entries.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterator

import yaml
from pydantic import ValidationError

from infragraph.core.schema import Diagnostic, DiagnosticKind, ResourceDefinition, ResourceMode

logger = logging.getLogger(__name__)

DOCUMENT_SUFFIXES = (".json", ".yaml", ".yml")


@dataclass
class IngestResult:
    definitions: list[ResourceDefinition] = field(default_factory=list)
    diagnostics: list[Diagnostic] = field(default_factory=list)

    def extend(self, other: IngestResult) -> None:
        self.definitions.extend(other.definitions)
        self.diagnostics.extend(other.diagnostics)


def _syntax(message: str, source_file: str | None, **detail: Any) -> Diagnostic:
    if source_file:
        detail["source_file"] = source_file
    return Diagnostic(kind=DiagnosticKind.SYNTAX_DIAGNOSTIC, message=message, detail=detail)


def _blocks(section: Any) -> Iterator[tuple[str, str, Any]]:
    """Yield `(type, name, body)` from a `resource` or `data` section."""
    mappings = section if isinstance(section, list) else [section]
    for mapping in mappings:
        if not isinstance(mapping, dict):
            continue
        for rtype, named in mapping.items():
            named_list = named if isinstance(named, list) else [named]
            for entry in named_list:
                if not isinstance(entry, dict):
                    continue
                for name, body in entry.items():
                    bodies = body if isinstance(body, list) else [body]
                    for b in bodies:
                        yield rtype, name, b


def parse_document(data: Any, source_file: str | None = None) -> IngestResult:
    """Extract definitions and syntax diagnostics from one parsed document."""
    result = IngestResult()
    if data is None:
        return result
    if not isinstance(data, dict):
        result.diagnostics.append(
            _syntax(f"Expected a mapping at document root, got {type(data).__name__}", source_file)
        )
        return result

    for raw in data.get("diagnostics") or []:
        if isinstance(raw, dict):
            result.diagnostics.append(
                Diagnostic(
                    kind=DiagnosticKind.SYNTAX_DIAGNOSTIC,
                    message=str(raw.get("message", raw)),
                    resource_id=raw.get("resource_id"),
                    path=raw.get("path"),
                    detail={k: v for k, v in raw.items() if k not in ("message", "resource_id", "path")},
                )
            )
        else:
            result.diagnostics.append(_syntax(str(raw), source_file))

    for mode, key in ((ResourceMode.MANAGED, "resource"), (ResourceMode.DATA, "data")):
        if key not in data:
            continue
        for rtype, name, body in _blocks(data[key]):
            _append(result, source_file, type=rtype, name=name, arguments=body, mode=mode)

    for entry in data.get("resources") or []:
        if not isinstance(entry, dict):
            result.diagnostics.append(_syntax(f"Resource entry is not a mapping: {entry!r}", source_file))
            continue
        _append(
            result,
            source_file,
            type=entry.get("type"),
            name=entry.get("name"),
            arguments=entry.get("arguments") or {},
            mode=entry.get("mode", ResourceMode.MANAGED),
        )
    return result


def _append(result: IngestResult, source_file: str | None, **fields: Any) -> None:
    try:
        definition = ResourceDefinition(source_file=source_file, **fields)
    except ValidationError as e:
        result.diagnostics.append(
            _syntax(
                f"Invalid resource block {fields.get('type')}.{fields.get('name')}: "
                f"{e.error_count()} validation error(s)",
                source_file,
                errors=[err["msg"] for err in e.errors()],
            )
        )
        return
    result.definitions.append(definition)


def load_document(path: str | Path) -> IngestResult:
    """Parse one JSON or YAML file. Malformed files become diagnostics."""
    path = Path(path)
    try:
        text = path.read_text()
        data = json.loads(text) if path.suffix == ".json" else yaml.safe_load(text)
    except (OSError, ValueError, yaml.YAMLError) as e:
        logger.warning("Could not read %s: %s", path, e)
        return IngestResult(diagnostics=[_syntax(f"Could not parse document: {e}", str(path))])
    return parse_document(data, source_file=str(path))


def load_definitions(path: str | Path) -> IngestResult:
    """Load a file, or every JSON/YAML file under a directory in sorted order."""
    path = Path(path)
    if not path.is_dir():
        return load_document(path)

    result = IngestResult()
    files = sorted(p for p in path.rglob("*") if p.is_file() and p.suffix in DOCUMENT_SUFFIXES)
    for file in files:
        result.extend(load_document(file))
    logger.info(
        "Loaded %d definitions from %d files under %s", len(result.definitions), len(files), path
    )
    return result
