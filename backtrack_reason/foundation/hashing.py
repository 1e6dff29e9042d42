"""Stable content hashing for reasoning states.

Two equal states always hash identically, across processes and runs.

Values are normalised before serialising:
    - mappings with only string keys  → JSON objects, keys sorted
    - any other mapping               → {"__items__": [[key, value], ...]},
                                        pairs sorted by their serialised key
    - lists and tuples                → JSON arrays
    - sets                            → arrays sorted by serialised element
    - pydantic models                 → their JSON-mode dump
    - anything else JSON can't hold   → repr()
"""

from __future__ import annotations

import hashlib
import json
from typing import Any, Mapping

_SCALARS = (str, int, float, bool, type(None))


def _dump(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"))


def _normalise(value: Any) -> Any:
    if isinstance(value, _SCALARS):
        return value
    if isinstance(value, Mapping):
        if all(isinstance(k, str) for k in value):
            return {k: _normalise(v) for k, v in value.items()}
        pairs = [[_normalise(k), _normalise(v)] for k, v in value.items()]
        pairs.sort(key=lambda pair: (_dump(pair[0]), _dump(pair[1])))
        return {"__items__": pairs}
    if isinstance(value, (list, tuple)):
        return [_normalise(v) for v in value]
    if isinstance(value, (set, frozenset)):
        return sorted((_normalise(v) for v in value), key=_dump)
    if hasattr(value, "model_dump"):
        return _normalise(value.model_dump(mode="json"))
    return repr(value)


def canonical_json(value: Any) -> str:
    """Serialise *value* to a canonical JSON string."""
    return _dump(_normalise(value))


def state_hash(value: Any) -> str:
    """Return a hex digest identifying *value* by content."""
    return hashlib.blake2b(canonical_json(value).encode("utf-8"), digest_size=16).hexdigest()
