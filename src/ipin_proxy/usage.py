from __future__ import annotations

from typing import Any

from .openai_compat import Usage

PROMPT_ALIASES = ("prompt_tokens", "promptTokens", "input_tokens", "inputTokens", "prompt", "promptTokenCount")
COMPLETION_ALIASES = (
    "completion_tokens",
    "completionTokens",
    "output_tokens",
    "outputTokens",
    "completion",
    "candidatesTokenCount",
)
TOTAL_ALIASES = ("total_tokens", "totalTokens", "total", "totalTokenCount")


def _first_present(usage: dict[str, Any], aliases: tuple[str, ...]) -> Any:
    for key in aliases:
        if usage.get(key) is not None:
            return usage[key]
    return None


def _to_count(value: Any) -> int:
    if not value or isinstance(value, bool):
        return 0
    try:
        count = int(float(value))
    except (TypeError, ValueError, OverflowError):
        return 0
    return max(0, count)


def normalize_usage(usage: Any) -> Usage:
    """Map any provider's token-count naming onto prompt/completion/total."""
    if not isinstance(usage, dict):
        usage = {}
    prompt = _to_count(_first_present(usage, PROMPT_ALIASES))
    completion = _to_count(_first_present(usage, COMPLETION_ALIASES))
    total = _to_count(_first_present(usage, TOTAL_ALIASES)) or prompt + completion
    return Usage(prompt_tokens=prompt, completion_tokens=completion, total_tokens=total)
