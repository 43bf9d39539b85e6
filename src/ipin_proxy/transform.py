from __future__ import annotations

import base64
from dataclasses import dataclass, field
from typing import Any, Literal

from .errors import ImageValidationError, MissingFieldError, TransformationError
from .media import MAX_IMAGE_MB, block_url, extract_image_data, validate_image_size
from .multipart import MultipartPart, encode, text_part
from .normalizer import build_response
from .openai_compat import ChatCompletionAssistantMessage, ChatCompletionChoice, ChatCompletionResponse
from .routing import ModelRoute, ProviderKind, ProviderRoute

HF_ROLE_LABELS = {"system": "System", "user": "User", "assistant": "Assistant"}
HF_DEFAULT_MAX_NEW_TOKENS = 1024
HF_DEFAULT_TEMPERATURE = 0.7
HF_DEFAULT_TOP_P = 0.9

CHUTES_TRANSCRIBE_PATH = "transcribe"
CHUTES_OCR_PATH = "ocr"


@dataclass(frozen=True)
class UpstreamRequest:
    """A provider-bound HTTP request, ready for dispatch."""

    url: str
    headers: dict[str, str] = field(default_factory=dict)
    json: Any = None
    content: bytes | None = None
    timeout: Literal["json", "media"] = "json"


def provider_headers(provider: ProviderRoute, content_type: str = "application/json") -> dict[str, str]:
    return {"Authorization": f"Bearer {provider.api_key}", "Content-Type": content_type}


def message_text(content: Any) -> str:
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        texts = [b.get("text", "") for b in content if isinstance(b, dict) and b.get("type") == "text"]
        return "\n".join(t for t in texts if t)
    return str(content)


def fold_messages_to_prompt(messages: list[dict[str, Any]]) -> str:
    prompt = ""
    for msg in messages:
        label = HF_ROLE_LABELS.get(msg.get("role", ""))
        if label is None:
            continue
        prompt += f"{label}: {message_text(msg.get('content'))}\n\n"
    return prompt + "Assistant:"


def build_huggingface_payload(messages: list[dict[str, Any]], params: dict[str, Any]) -> dict[str, Any]:
    return {
        "inputs": fold_messages_to_prompt(messages),
        "parameters": {
            "max_new_tokens": params.get("max_tokens") or HF_DEFAULT_MAX_NEW_TOKENS,
            "temperature": params.get("temperature") or HF_DEFAULT_TEMPERATURE,
            "top_p": params.get("top_p") or HF_DEFAULT_TOP_P,
            "return_full_text": False,
        },
    }


def build_openai_payload(
    model: str, messages: list[dict[str, Any]], stream: bool, params: dict[str, Any]
) -> dict[str, Any]:
    return {"model": model, "messages": messages, "stream": stream, **params}


def build_chat_request(
    provider: ProviderRoute,
    model: ModelRoute,
    messages: list[dict[str, Any]],
    *,
    stream: bool = False,
    params: dict[str, Any] | None = None,
) -> UpstreamRequest:
    params = params or {}
    if provider.kind is ProviderKind.HUGGINGFACE:
        return UpstreamRequest(
            url=provider.url(model.id),
            headers=provider_headers(provider),
            json=build_huggingface_payload(messages, params),
        )
    # Chutes-style providers only differ on media endpoints; chat is openai-compatible.
    return UpstreamRequest(
        url=provider.url("chat/completions"),
        headers=provider_headers(provider),
        json=build_openai_payload(model.id, messages, stream, params),
    )


def build_passthrough_request(provider: ProviderRoute, path: str, body: dict[str, Any]) -> UpstreamRequest:
    """Embeddings and rerank bodies are forwarded as sent."""
    return UpstreamRequest(url=provider.url(path), headers=provider_headers(provider), json=body)


def rewrite_vision_content(
    messages: list[dict[str, Any]], max_image_mb: float = MAX_IMAGE_MB
) -> list[dict[str, Any]]:
    """
    Rewrite image blocks for a vision-capable model.

    Inline `data:image/...;base64,` payloads are size checked and re-emitted in
    canonical form, remote http(s) URLs are kept, anything else is dropped.
    Video carried in an image block was already gated as video and is left
    as is. One oversized image fails the whole request.
    """
    rewritten: list[dict[str, Any]] = []
    for msg in messages:
        content = msg.get("content")
        if not isinstance(content, list):
            rewritten.append(msg)
            continue
        blocks: list[Any] = []
        for block in content:
            if not isinstance(block, dict) or block.get("type") != "image_url":
                blocks.append(block)
                continue
            url = block_url(block)
            if url.startswith("data:video/"):
                blocks.append(block)
                continue
            image = extract_image_data(url)
            if image is None:
                continue
            if image.base64_payload is not None:
                check = validate_image_size(image.base64_payload, max_image_mb)
                if not check.valid:
                    raise ImageValidationError(
                        f"Image too large ({check.size_mb}MB). Maximum size is {check.max_mb}MB.",
                        size_mb=check.size_mb,
                        max_mb=check.max_mb,
                    )
                url = f"data:image/{image.media_type};base64,{image.base64_payload}"
            image_url = dict(block["image_url"]) if isinstance(block.get("image_url"), dict) else {}
            image_url["url"] = url
            blocks.append({**block, "image_url": image_url})
        rewritten.append({**msg, "content": blocks})
    return rewritten


def _require_file(form: dict[str, MultipartPart], name: str = "file") -> MultipartPart:
    part = form.get(name)
    if part is None or not part.is_file:
        raise MissingFieldError(f"Missing required file field '{name}'.")
    return part


def _optional_values(form: dict[str, MultipartPart], names: tuple[str, ...]) -> dict[str, str]:
    return {name: form[name].value for name in names if name in form and form[name].value}


def _multipart_request(
    provider: ProviderRoute, path: str, model: ModelRoute, form: dict[str, MultipartPart]
) -> UpstreamRequest:
    parts = [p for name, p in form.items() if name != "model"]
    encoded = encode([text_part("model", model.id), *parts])
    return UpstreamRequest(
        url=provider.url(path),
        headers=provider_headers(provider, encoded.content_type),
        content=encoded.body,
        timeout="media",
    )


def build_transcription_request(
    provider: ProviderRoute, model: ModelRoute, form: dict[str, MultipartPart]
) -> UpstreamRequest:
    audio = _require_file(form)
    if provider.kind is ProviderKind.CHUTES:
        payload: dict[str, Any] = {"audio_b64": base64.b64encode(audio.data).decode("ascii")}
        payload.update(_optional_values(form, ("language", "prompt")))
        return UpstreamRequest(
            url=provider.url(CHUTES_TRANSCRIBE_PATH),
            headers=provider_headers(provider),
            json=payload,
            timeout="media",
        )
    return _multipart_request(provider, "audio/transcriptions", model, form)


def build_ocr_request(provider: ProviderRoute, model: ModelRoute, form: dict[str, MultipartPart]) -> UpstreamRequest:
    image = _require_file(form)
    if provider.kind is ProviderKind.CHUTES:
        return UpstreamRequest(
            url=provider.url(CHUTES_OCR_PATH),
            headers=provider_headers(provider),
            json={"image_b64": base64.b64encode(image.data).decode("ascii")},
            timeout="media",
        )
    return _multipart_request(provider, "ocr", model, form)


def transform_huggingface_response(data: Any, model: str) -> ChatCompletionResponse:
    """huggingface text-generation answers with a non-empty array of {generated_text}."""
    if not isinstance(data, list) or not data:
        raise TransformationError("Invalid HuggingFace response format: expected non-empty array")
    first = data[0]
    text = first.get("generated_text") if isinstance(first, dict) else None
    content = text.strip() if isinstance(text, str) else ""
    choice = ChatCompletionChoice(index=0, message=ChatCompletionAssistantMessage(content=content))
    return build_response([choice], model)
