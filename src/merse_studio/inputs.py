"""Lenient parsing of loosely-typed JSON request bodies."""

from __future__ import annotations

import math
import re
from typing import Any, Sequence, TypeVar

T = TypeVar("T", bound=str)

_WS = re.compile(r"\s+")


def sanitize_text(value: Any, max_length: int) -> str:
    if not isinstance(value, str):
        return ""
    return _WS.sub(" ", value.strip())[:max_length]


def _as_float(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        numeric = float(value)
    elif isinstance(value, str):
        try:
            numeric = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    return numeric if math.isfinite(numeric) else None


def parse_number(value: Any, fallback: float, lo: float, hi: float, step: float | None = None) -> float:
    """Clamp into [lo, hi] and snap to `lo + k*step`; non-numeric input yields the fallback."""
    raw = _as_float(value)
    if raw is None:
        return fallback
    clamped = min(hi, max(lo, raw))
    if not step or step <= 0:
        return clamped
    steps = round((clamped - lo) / step)
    return round(lo + steps * step, 6)


def parse_integer(value: Any, fallback: int, lo: int, hi: int) -> int:
    return int(round(parse_number(value, fallback, lo, hi)))


def normalize_stepped(value: Any, lo: int, hi: int, step: int, fallback: int) -> int:
    raw = _as_float(value)
    base = raw if raw is not None else float(fallback)
    clamped = min(max(base, lo), hi)
    return int(lo + round((clamped - lo) / step) * step)


def parse_bool(value: Any, fallback: bool) -> bool:
    return value if isinstance(value, bool) else fallback


def parse_string(value: Any, fallback: str, max_length: int = 120) -> str:
    if not isinstance(value, str):
        return fallback
    normalized = value.strip()
    if not normalized:
        return fallback
    return normalized[:max_length]


def parse_optional_string(value: Any) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def parse_enum(value: Any, fallback: T, allowed: Sequence[T]) -> T:
    if not isinstance(value, str):
        return fallback
    normalized = value.strip()
    for option in allowed:
        if option == normalized:
            return option
    return fallback


def normalize_reference_image(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    trimmed = value.strip()
    if trimmed.startswith("data:image/"):
        return trimmed
    if trimmed.startswith(("http://", "https://")):
        return trimmed
    return None
