from __future__ import annotations

from typing import Any

PRIORITY_KEYS: tuple[str, ...] = (
    "text",
    "content",
    "output_text",
    "output",
    "result",
    "response",
    "completion",
    "answer",
    "value",
    "parts",
    "data",
    "message",
)

MAX_DEPTH = 64


def extract_text(value: Any) -> str:
    """
    Best-effort conversion of an arbitrary JSON-like value into text.

    Objects are scanned by PRIORITY_KEYS first and then by their remaining keys
    in insertion order; non-empty fragments are joined with newlines. Containers
    are tracked by identity, so a container already seen anywhere in the current
    call contributes nothing the second time. Never raises.
    """
    return _extract(value, set(), 0)


def _extract(value: Any, seen: set[int], depth: int) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    if depth >= MAX_DEPTH:
        return ""

    if isinstance(value, (list, tuple)):
        if id(value) in seen:
            return ""
        seen.add(id(value))
        pieces = (_extract(item, seen, depth + 1) for item in value)
        return "\n".join(p for p in pieces if p)

    if isinstance(value, dict):
        if id(value) in seen:
            return ""
        seen.add(id(value))
        fragments: list[str] = []
        for key in PRIORITY_KEYS:
            if key in value:
                text = _extract(value[key], seen, depth + 1)
                if text:
                    fragments.append(text)
        for key, item in value.items():
            if key in PRIORITY_KEYS:
                continue
            text = _extract(item, seen, depth + 1)
            if text:
                fragments.append(text)
        return "\n".join(fragments)

    try:
        return str(value)
    except Exception:
        return ""
