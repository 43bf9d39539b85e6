from __future__ import annotations

from collections.abc import AsyncIterator
from typing import Any

import structlog

from .config import ProxyConfig
from .errors import CapabilityError, ImageValidationError, MissingFieldError, ValidationError
from .media import check_media_capability, is_image_content
from .metrics import media_rejections_total, response_shapes_total
from .multipart import MultipartPart
from .normalizer import normalize_response, response_shape
from .openai_compat import ChatCompletionRequest, ChatCompletionResponse
from .routing import ApiKeyGrant, ProviderKind, ResolvedRoute, RouteSnapshot
from .streaming import sse_from_completion
from .text_extraction import extract_text
from .transform import (
    build_chat_request,
    build_ocr_request,
    build_passthrough_request,
    build_transcription_request,
    rewrite_vision_content,
    transform_huggingface_response,
)
from .upstream import UpstreamClient

log = structlog.get_logger()


class Gateway:
    """
    Per-request pipeline: route, classify and gate media, shape the provider
    request, dispatch it and normalize whatever comes back.

    The route snapshot is passed in on every call; the gateway itself only
    holds configuration and the HTTP client.
    """

    def __init__(self, cfg: ProxyConfig, *, client: UpstreamClient | None = None):
        self.cfg = cfg
        self.client = client or UpstreamClient(
            json_timeout_seconds=cfg.json_timeout_seconds,
            media_timeout_seconds=cfg.media_timeout_seconds,
        )

    async def close(self) -> None:
        await self.client.close()

    def _prepare_messages(self, req: ChatCompletionRequest, route: ResolvedRoute) -> list[dict[str, Any]]:
        messages = req.message_dicts()
        try:
            check_media_capability(messages, route.model)
            if route.model.supports_image_upload and any(is_image_content(m.get("content")) for m in messages):
                messages = rewrite_vision_content(messages, self.cfg.max_image_mb)
        except (CapabilityError, ImageValidationError) as e:
            media_rejections_total.labels(code=e.code).inc()
            log.info("media_rejected", model=route.model.id, code=e.code)
            raise
        return messages

    async def _complete(self, req: ChatCompletionRequest, route: ResolvedRoute) -> ChatCompletionResponse:
        messages = self._prepare_messages(req, route)
        upstream = build_chat_request(
            route.provider, route.model, messages, stream=False, params=req.params()
        )
        resp = await self.client.send(upstream, provider=route.provider.id)
        if route.provider.kind is ProviderKind.HUGGINGFACE:
            return transform_huggingface_response(resp.data, req.model)
        shape = response_shape(resp.data)
        response_shapes_total.labels(shape=shape).inc()
        log.debug("response_normalized", model=req.model, shape=shape)
        return normalize_response(resp.data, req.model)

    async def chat_completion(
        self, req: ChatCompletionRequest, *, routes: RouteSnapshot, grant: ApiKeyGrant
    ) -> ChatCompletionResponse:
        if len(req.messages) > self.cfg.max_messages:
            raise ValidationError("Too many messages.")
        route = routes.resolve(req.model, grant)
        log.info("chat_route", model=req.model, provider=route.provider.id, kind=route.provider.kind.value)
        return await self._complete(req, route)

    async def stream_chat_completion(
        self, req: ChatCompletionRequest, *, routes: RouteSnapshot, grant: ApiKeyGrant
    ) -> AsyncIterator[bytes]:
        """
        Stream a chat completion as SSE bytes.

        openai-compatible providers stream natively and their events are relayed
        untouched; other providers are completed first and replayed as SSE.
        """
        if len(req.messages) > self.cfg.max_messages:
            raise ValidationError("Too many messages.")
        route = routes.resolve(req.model, grant)
        log.info("chat_route", model=req.model, provider=route.provider.id, stream=True)
        if route.provider.kind is ProviderKind.HUGGINGFACE:
            return sse_from_completion(await self._complete(req, route))
        messages = self._prepare_messages(req, route)
        upstream = build_chat_request(route.provider, route.model, messages, stream=True, params=req.params())
        return await self.client.open_stream(upstream, provider=route.provider.id)

    async def passthrough(
        self, path: str, body: dict[str, Any], *, routes: RouteSnapshot, grant: ApiKeyGrant
    ) -> Any:
        """Embeddings and rerank: JSON in, provider JSON out."""
        model_id = body.get("model")
        if not isinstance(model_id, str) or not model_id:
            raise MissingFieldError("Missing required field 'model'.")
        route = routes.resolve(model_id, grant)
        if route.provider.kind is ProviderKind.HUGGINGFACE:
            raise ValidationError(
                f"Provider '{route.provider.id}' does not support /v1/{path}.", code="unsupported_endpoint"
            )
        log.info("passthrough_route", path=path, model=model_id, provider=route.provider.id)
        resp = await self.client.send(
            build_passthrough_request(route.provider, path, body), provider=route.provider.id
        )
        return resp.data

    def _media_route(
        self, form: dict[str, MultipartPart], routes: RouteSnapshot, grant: ApiKeyGrant
    ) -> ResolvedRoute:
        model = form.get("model")
        if model is None or not model.value.strip():
            raise MissingFieldError("Missing required field 'model'.")
        return routes.resolve(model.value.strip(), grant)

    async def transcribe(
        self, form: dict[str, MultipartPart], *, routes: RouteSnapshot, grant: ApiKeyGrant
    ) -> dict[str, Any]:
        route = self._media_route(form, routes, grant)
        log.info("media_route", endpoint="transcription", model=route.model.id, provider=route.provider.id)
        resp = await self.client.send(
            build_transcription_request(route.provider, route.model, form), provider=route.provider.id
        )
        return media_result(resp.data)

    async def ocr(
        self, form: dict[str, MultipartPart], *, routes: RouteSnapshot, grant: ApiKeyGrant
    ) -> dict[str, Any]:
        route = self._media_route(form, routes, grant)
        if not route.model.supports_image_upload:
            media_rejections_total.labels(code="image_upload_not_supported").inc()
            raise CapabilityError(
                f"Model '{route.model.id}' does not support image uploads.",
                code="image_upload_not_supported",
            )
        log.info("media_route", endpoint="ocr", model=route.model.id, provider=route.provider.id)
        resp = await self.client.send(build_ocr_request(route.provider, route.model, form), provider=route.provider.id)
        return media_result(resp.data)


def media_result(data: Any) -> dict[str, Any]:
    """Media endpoints answer `{text, ...}`; other shapes are reduced to their text."""
    if isinstance(data, dict) and isinstance(data.get("text"), str):
        return data
    return {"text": extract_text(data)}
