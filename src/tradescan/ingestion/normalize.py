"""Normalization helpers.

Centralizes lenient number parsing and the strict coercions used by the
payload models. The reconciliation core never sees raw values.
"""

from __future__ import annotations

import math
from typing import Any


def safe_float(value: Any) -> float | None:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        return None
    try:
        result = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(result) or math.isinf(result):
        return None
    return result


def safe_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text if text else None


def require_float(value: Any, label: str) -> float | None:
    """Parse an optional numeric field; present-but-garbage is an error."""
    if value is None:
        return None
    parsed = safe_float(value)
    if parsed is None:
        raise ValueError(f"{label} must be numeric when provided")
    return parsed


def require_int(value: Any, label: str) -> int | None:
    """Like :func:`require_float` but truncates toward zero."""
    parsed = require_float(value, label)
    if parsed is None:
        return None
    return math.trunc(parsed)


def parse_block_position(value: Any) -> tuple[int, int, int]:
    """Parse ``[x, y, z]`` into integer block coordinates.

    Fractional coordinates (entity positions) are floored onto the block
    that contains them.
    """
    if not isinstance(value, (list, tuple)) or len(value) != 3:
        raise ValueError("position must be [x,y,z]")
    coords: list[int] = []
    for raw in value:
        parsed = safe_float(raw)
        if parsed is None:
            raise ValueError("position must contain numbers")
        coords.append(math.floor(parsed))
    return coords[0], coords[1], coords[2]
