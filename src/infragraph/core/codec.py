"""Canonical JSON encoding for composite property values.

Stores only hold scalar properties, so every list or mapping value is written
as a canonical JSON string. The names of the encoded keys travel with the
properties under `_json_keys` (itself a JSON string) so reads decode
losslessly.
"""

from __future__ import annotations

import json
from typing import Any

JSON_KEYS_PROPERTY = "_json_keys"


def dumps(value: Any) -> str:
    """Deterministic JSON: sorted keys, compact separators."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def is_composite(value: Any) -> bool:
    return isinstance(value, (list, tuple, dict))


def encode_properties(properties: dict[str, Any]) -> dict[str, Any]:
    """Return a store-safe copy of `properties`."""
    encoded: dict[str, Any] = {}
    json_keys: list[str] = []
    if JSON_KEYS_PROPERTY in properties:
        json_keys.extend(json.loads(properties[JSON_KEYS_PROPERTY]))
    for key, value in properties.items():
        if key == JSON_KEYS_PROPERTY:
            continue
        if is_composite(value):
            encoded[key] = dumps(value)
            json_keys.append(key)
        else:
            encoded[key] = value
    if json_keys:
        encoded[JSON_KEYS_PROPERTY] = dumps(sorted(set(json_keys)))
    return encoded


def decode_properties(properties: dict[str, Any]) -> dict[str, Any]:
    """Inverse of `encode_properties`."""
    decoded = dict(properties)
    raw_keys = decoded.pop(JSON_KEYS_PROPERTY, None)
    if not raw_keys:
        return decoded
    for key in json.loads(raw_keys):
        if isinstance(decoded.get(key), str):
            decoded[key] = json.loads(decoded[key])
    return decoded
