from __future__ import annotations

import math
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from .openai_compat import ChatCompletionAssistantMessage, ChatCompletionChoice, ChatCompletionResponse
from .text_extraction import extract_text
from .usage import normalize_usage

ASSISTANT_ROLES = frozenset({"assistant", "model", "ai", "bot"})

FLAT_FIELDS: tuple[str, ...] = (
    "output_text",
    "output",
    "result",
    "text",
    "message",
    "content",
    "response",
    "completion",
    "answer",
)

_CANDIDATE_FINISH_REASONS = {
    "STOP": "stop",
    "MAX_TOKENS": "length",
    "SAFETY": "content_filter",
    "RECITATION": "content_filter",
}


@dataclass
class Resolution:
    """Choices resolved from one upstream value plus the envelope fields they travel with."""

    shape: str
    choices: list[ChatCompletionChoice]
    response_id: Any = None
    created: Any = None
    model: Any = None
    usage: Any = None


def _choice(
    index: int,
    content: str,
    *,
    role: Any = None,
    finish_reason: Any = None,
    tool_calls: Any = None,
    logprobs: Any = None,
) -> ChatCompletionChoice:
    message = ChatCompletionAssistantMessage(
        role=role if isinstance(role, str) and role else "assistant",
        content=content,
        tool_calls=tool_calls,
    )
    return ChatCompletionChoice(
        index=index,
        message=message,
        finish_reason=finish_reason if isinstance(finish_reason, str) and finish_reason else "stop",
        logprobs=logprobs,
    )


def _has_choices(raw: Any) -> bool:
    return isinstance(raw, dict) and isinstance(raw.get("choices"), list) and bool(raw["choices"])


def _has_data(raw: Any) -> bool:
    return isinstance(raw, dict) and isinstance(raw.get("data"), dict)


def _has_candidates(raw: Any) -> bool:
    return isinstance(raw, dict) and isinstance(raw.get("candidates"), list) and bool(_candidate_choices(raw))


def _has_fields(raw: Any) -> bool:
    return isinstance(raw, dict) and bool(_field_choices(raw))


def _always(_raw: Any) -> bool:
    return True


def _choices_from_choices(raw: dict[str, Any]) -> list[ChatCompletionChoice]:
    out: list[ChatCompletionChoice] = []
    for position, item in enumerate(raw["choices"]):
        index = position
        if isinstance(item, dict):
            upstream_index = item.get("index")
            if isinstance(upstream_index, int) and not isinstance(upstream_index, bool) and upstream_index >= 0:
                index = upstream_index
        message = item.get("message") if isinstance(item, dict) else None
        if isinstance(message, dict):
            content = message.get("content")
            out.append(
                _choice(
                    index,
                    content if isinstance(content, str) else extract_text(content),
                    role=message.get("role"),
                    finish_reason=item.get("finish_reason"),
                    tool_calls=message.get("tool_calls"),
                    logprobs=item.get("logprobs"),
                )
            )
        else:
            finish_reason = item.get("finish_reason") if isinstance(item, dict) else None
            out.append(_choice(index, extract_text(item), finish_reason=finish_reason))
    return out


def _candidate_choices(raw: dict[str, Any]) -> list[ChatCompletionChoice]:
    out: list[ChatCompletionChoice] = []
    for candidate in raw["candidates"]:
        source = candidate.get("content", candidate) if isinstance(candidate, dict) else candidate
        text = extract_text(source)
        if not text:
            continue
        reason = candidate.get("finishReason") if isinstance(candidate, dict) else None
        out.append(
            _choice(
                len(out),
                text,
                finish_reason=_CANDIDATE_FINISH_REASONS.get(str(reason).upper(), "stop") if reason else None,
            )
        )
    return out


def _latest_assistant_fragment(messages: Any) -> tuple[str, str] | None:
    if not isinstance(messages, list):
        return None
    for item in reversed(messages):
        if not isinstance(item, dict):
            continue
        role = item.get("role") or item.get("type")
        if role not in ASSISTANT_ROLES:
            continue
        if "content" in item:
            text = extract_text(item["content"])
        else:
            text = extract_text({k: v for k, v in item.items() if k not in ("role", "type")})
        return "assistant", text
    return None


def _field_choices(raw: dict[str, Any]) -> list[ChatCompletionChoice]:
    fragments: list[tuple[str, str]] = []
    latest = _latest_assistant_fragment(raw.get("messages"))
    if latest is not None:
        fragments.append(latest)
    for name in FLAT_FIELDS:
        if name not in raw:
            continue
        value = raw[name]
        if name == "message" and isinstance(value, dict):
            # Treated as a single message, not recursed into generically.
            role = value.get("role")
            role = role if isinstance(role, str) and role else "assistant"
            fragments.append((role, extract_text(value.get("content"))))
        else:
            fragments.append(("assistant", extract_text(value)))
    kept = [(role, text) for role, text in fragments if text]
    return [_choice(i, text, role=role) for i, (role, text) in enumerate(kept)]


def _whole_response_choices(raw: Any) -> list[ChatCompletionChoice]:
    text = raw if isinstance(raw, str) else extract_text(raw)
    return [_choice(0, text)] if text else []


def _unwrapped_elsewhere(_raw: Any) -> list[ChatCompletionChoice]:
    # `data` envelopes are recursed into by resolve().
    return []


@dataclass(frozen=True)
class ResponseShape:
    name: str
    matches: Callable[[Any], bool]
    choices: Callable[[Any], list[ChatCompletionChoice]]


# Resolution order; the first shape whose matcher accepts the value wins.
RESPONSE_SHAPES: tuple[ResponseShape, ...] = (
    ResponseShape("choices", _has_choices, _choices_from_choices),
    ResponseShape("data", _has_data, _unwrapped_elsewhere),
    ResponseShape("candidates", _has_candidates, _candidate_choices),
    ResponseShape("fields", _has_fields, _field_choices),
    ResponseShape("string", lambda raw: isinstance(raw, str), _whole_response_choices),
    ResponseShape("fallback", _always, _whole_response_choices),
)


def _match(raw: Any) -> ResponseShape:
    for shape in RESPONSE_SHAPES:
        if shape.matches(raw):
            return shape
    return RESPONSE_SHAPES[-1]  # pragma: no cover


def response_shape(raw: Any) -> str:
    return _match(raw).name


def _envelope(raw: Any, shape: str, choices: list[ChatCompletionChoice]) -> Resolution:
    if not isinstance(raw, dict):
        return Resolution(shape=shape, choices=choices)
    return Resolution(
        shape=shape,
        choices=choices,
        response_id=raw.get("id"),
        created=raw.get("created"),
        model=raw.get("model"),
        usage=raw.get("usage") if raw.get("usage") is not None else raw.get("usageMetadata"),
    )


def resolve(raw: Any, _seen: set[int] | None = None) -> Resolution:
    seen = _seen if _seen is not None else set()
    shape = _match(raw)

    if shape.name == "data":
        if id(raw) in seen:
            return _envelope(raw, "fallback", [])
        seen.add(id(raw))
        resolution = resolve(raw["data"], seen)
        if not resolution.response_id:
            resolution.response_id = raw.get("id")
        if resolution.usage is None:
            resolution.usage = raw.get("usage")
        return resolution

    return _envelope(raw, shape.name, shape.choices(raw))


def _created(value: Any) -> int:
    if isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value):
        return int(value)
    return int(time.time())


def build_response(
    choices: list[ChatCompletionChoice],
    model: str,
    *,
    response_id: Any = None,
    created: Any = None,
    upstream_model: Any = None,
    usage: Any = None,
) -> ChatCompletionResponse:
    if not choices:
        choices = [_choice(0, "")]
    return ChatCompletionResponse(
        id=response_id if isinstance(response_id, str) and response_id else f"chatcmpl-{uuid.uuid4().hex}",
        created=_created(created),
        model=upstream_model if isinstance(upstream_model, str) and upstream_model else model,
        choices=choices,
        usage=normalize_usage(usage),
    )


def normalize_response(raw: Any, model: str) -> ChatCompletionResponse:
    """
    Convert any upstream JSON value or bare string into a canonical chat completion.

    Never raises on unfamiliar shapes and always returns at least one choice.
    """
    resolution = resolve(raw)
    return build_response(
        resolution.choices,
        model,
        response_id=resolution.response_id,
        created=resolution.created,
        upstream_model=resolution.model,
        usage=resolution.usage,
    )
