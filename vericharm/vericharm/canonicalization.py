"""
Veri-Charm Canonical JSON Encoding (CJE)

Every hash in the attestation ledger is taken over canonical bytes, so
semantically identical events always produce identical byte representations.

Rules:
- Object keys are strings, sorted by Unicode code point
- Arrays (lists and tuples) keep their order
- Compact separators, UTF-8 output, no ASCII escaping
- Enum members are encoded by value
- NaN and infinities are rejected
"""

import json
import math
from enum import Enum
from typing import Any

_SCALARS = (str, int, bool, type(None))


def canonicalize(obj: Any) -> bytes:
    """Canonical UTF-8 bytes for a JSON-compatible value. Raises ValueError otherwise."""
    return canonicalize_str(obj).encode('utf-8')


def canonicalize_str(obj: Any) -> str:
    return json.dumps(_normalize(obj), separators=(',', ':'), ensure_ascii=False, allow_nan=False)


def _normalize(value: Any, path: str = "$") -> Any:
    if isinstance(value, Enum):
        value = value.value
    if isinstance(value, _SCALARS):
        return value
    if isinstance(value, float):
        if not math.isfinite(value):
            raise ValueError(f"{path}: non-finite number")
        return value
    if isinstance(value, dict):
        bad = [k for k in value if not isinstance(k, str)]
        if bad:
            raise ValueError(f"{path}: object keys must be strings, got {type(bad[0]).__name__}")
        return {k: _normalize(value[k], f"{path}.{k}") for k in sorted(value)}
    if isinstance(value, (list, tuple)):
        return [_normalize(item, f"{path}[{i}]") for i, item in enumerate(value)]
    raise ValueError(f"{path}: cannot canonicalize {type(value).__name__}")
