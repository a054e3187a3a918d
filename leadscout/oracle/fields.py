"""Coercion helpers for loosely-typed LLM JSON."""

from __future__ import annotations

from typing import Any, List, Optional, Sequence


def clamp_score(value: Any, default: int = 50) -> int:
    try:
        num = float(value)
    except (TypeError, ValueError):
        return default
    if num != num:  # NaN
        return default
    return int(round(max(0.0, min(100.0, num))))


def str_list(value: Any, limit: int = 20) -> List[str]:
    if not isinstance(value, list):
        return []
    out: List[str] = []
    for v in value:
        if isinstance(v, (str, int, float)) and not isinstance(v, bool):
            s = str(v).strip()
            if s and s not in out:
                out.append(s)
        if len(out) >= limit:
            break
    return out


def opt_str(value: Any, max_len: int = 2000) -> Optional[str]:
    if not isinstance(value, str):
        return None
    s = value.strip()
    return s[:max_len] if s else None


def choice(value: Any, valid: Sequence[str], default: str) -> str:
    return value if isinstance(value, str) and value in valid else default


def dedupe(values: List[str]) -> List[str]:
    out: List[str] = []
    for v in values:
        if v not in out:
            out.append(v)
    return out
