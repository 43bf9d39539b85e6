import json

import httpx
import pytest

from ipin_proxy.config import ProxyConfig
from ipin_proxy.errors import CapabilityError, ImageValidationError, MissingFieldError, ValidationError
from ipin_proxy.gateway import Gateway, media_result
from ipin_proxy.multipart import MultipartPart, text_part
from ipin_proxy.openai_compat import ChatCompletionRequest
from ipin_proxy.routing import MASTER_GRANT_NAME, ApiKeyGrant, snapshot_from_payload
from ipin_proxy.upstream import UpstreamClient

ROUTES = snapshot_from_payload(
    {
        "providers": [
            {"id": "oa", "type": "openai", "baseUrl": "https://oa.test/v1", "apiKey": "sk-oa"},
            {"id": "hf", "type": "huggingface", "baseUrl": "https://hf.test/models", "apiKey": "hf-key"},
            {"id": "ch", "type": "chutes", "baseUrl": "https://ch.test", "apiKey": "ch-key"},
        ],
        "models": [
            {"id": "gpt", "providerId": "oa"},
            {"id": "vision", "providerId": "oa", "supportsImageUpload": True},
            {"id": "llama", "providerId": "hf"},
            {"id": "whisper", "providerId": "ch"},
        ],
    }
)
MASTER = ApiKeyGrant(key="", name=MASTER_GRANT_NAME)


def _gateway(handler, **cfg) -> Gateway:
    client = UpstreamClient(client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
    return Gateway(ProxyConfig(master_api_key=None, **cfg), client=client)


def _chat(model: str, content, **extra) -> ChatCompletionRequest:
    return ChatCompletionRequest(model=model, messages=[{"role": "user", "content": content}], **extra)


@pytest.mark.asyncio
async def test_chat_completion_normalizes_openai_response():
    def handler(request: httpx.Request) -> httpx.Response:
        assert str(request.url) == "https://oa.test/v1/chat/completions"
        body = json.loads(request.content)
        assert body["model"] == "gpt"
        assert body["temperature"] == 0.2
        assert body["stream"] is False
        return httpx.Response(200, json={"output_text": "hi there", "usage": {"input_tokens": 1, "output_tokens": 2}})

    g = _gateway(handler)
    try:
        out = await g.chat_completion(_chat("gpt", "hi", temperature=0.2), routes=ROUTES, grant=MASTER)
    finally:
        await g.close()
    assert out.content == "hi there"
    assert out.model == "gpt"
    assert out.usage.total_tokens == 3


@pytest.mark.asyncio
async def test_chat_completion_for_huggingface_folds_prompt():
    def handler(request: httpx.Request) -> httpx.Response:
        assert str(request.url) == "https://hf.test/models/llama"
        assert json.loads(request.content)["inputs"].endswith("User: hi\n\nAssistant:")
        return httpx.Response(200, json=[{"generated_text": " Hello!"}])

    g = _gateway(handler)
    try:
        out = await g.chat_completion(_chat("llama", "hi"), routes=ROUTES, grant=MASTER)
    finally:
        await g.close()
    assert out.content == "Hello!"


@pytest.mark.asyncio
async def test_media_is_gated_before_any_upstream_call():
    def handler(_: httpx.Request) -> httpx.Response:
        raise AssertionError("upstream must not be called")

    image = [{"type": "image_url", "image_url": {"url": "https://x.test/a.png"}}]
    big = [{"type": "image_url", "image_url": {"url": "data:image/png;base64," + "A" * 4096}}]
    g = _gateway(handler, max_image_mb=0.001)
    try:
        with pytest.raises(CapabilityError):
            await g.chat_completion(_chat("gpt", image), routes=ROUTES, grant=MASTER)
        with pytest.raises(ImageValidationError):
            await g.chat_completion(_chat("vision", big), routes=ROUTES, grant=MASTER)
    finally:
        await g.close()


@pytest.mark.asyncio
async def test_too_many_messages_rejected():
    g = _gateway(lambda _: httpx.Response(200, json={}), max_messages=1)
    req = ChatCompletionRequest(
        model="gpt", messages=[{"role": "user", "content": "a"}, {"role": "user", "content": "b"}]
    )
    try:
        with pytest.raises(ValidationError):
            await g.chat_completion(req, routes=ROUTES, grant=MASTER)
    finally:
        await g.close()


@pytest.mark.asyncio
async def test_stream_relays_upstream_events_for_openai_providers():
    events = b'data: {"id":"x"}\n\ndata: [DONE]\n\n'

    def handler(request: httpx.Request) -> httpx.Response:
        assert json.loads(request.content)["stream"] is True
        return httpx.Response(200, content=events)

    g = _gateway(handler)
    try:
        stream = await g.stream_chat_completion(_chat("gpt", "hi", stream=True), routes=ROUTES, grant=MASTER)
        assert b"".join([chunk async for chunk in stream]) == events
    finally:
        await g.close()


@pytest.mark.asyncio
async def test_stream_is_synthesized_for_huggingface():
    g = _gateway(lambda _: httpx.Response(200, json=[{"generated_text": "yo"}]))
    try:
        stream = await g.stream_chat_completion(_chat("llama", "hi", stream=True), routes=ROUTES, grant=MASTER)
        body = b"".join([chunk async for chunk in stream]).decode()
    finally:
        await g.close()
    assert '"content": "yo"' in body
    assert body.endswith("data: [DONE]\n\n")


@pytest.mark.asyncio
async def test_passthrough_requires_model_and_rejects_huggingface():
    g = _gateway(lambda _: httpx.Response(200, json={"data": [{"embedding": [0.1]}]}))
    try:
        out = await g.passthrough("embeddings", {"model": "gpt", "input": "x"}, routes=ROUTES, grant=MASTER)
        assert out == {"data": [{"embedding": [0.1]}]}
        with pytest.raises(MissingFieldError):
            await g.passthrough("embeddings", {"input": "x"}, routes=ROUTES, grant=MASTER)
        with pytest.raises(ValidationError) as e:
            await g.passthrough("rerank", {"model": "llama"}, routes=ROUTES, grant=MASTER)
        assert e.value.code == "unsupported_endpoint"
    finally:
        await g.close()


@pytest.mark.asyncio
async def test_transcribe_routes_by_form_model():
    def handler(request: httpx.Request) -> httpx.Response:
        assert str(request.url) == "https://ch.test/transcribe"
        assert json.loads(request.content)["audio_b64"] == "UklGRg=="
        return httpx.Response(200, json={"segments": [{"text": "hello"}, {"text": "world"}]})

    form = {
        "model": text_part("model", " whisper "),
        "file": MultipartPart(name="file", data=b"RIFF", filename="a.wav"),
    }
    g = _gateway(handler)
    try:
        out = await g.transcribe(form, routes=ROUTES, grant=MASTER)
        with pytest.raises(MissingFieldError):
            await g.ocr({"file": form["file"]}, routes=ROUTES, grant=MASTER)
    finally:
        await g.close()
    assert out == {"text": "hello\nworld"}


@pytest.mark.asyncio
async def test_ocr_requires_image_capable_model():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200, json={"text": "scanned"})

    scan = MultipartPart(name="file", data=b"\x89PNG", filename="p.png", content_type="image/png")
    g = _gateway(handler)
    try:
        with pytest.raises(CapabilityError) as e:
            await g.ocr({"model": text_part("model", "gpt"), "file": scan}, routes=ROUTES, grant=MASTER)
        assert e.value.code == "image_upload_not_supported"
        assert calls == []

        out = await g.ocr({"model": text_part("model", "vision"), "file": scan}, routes=ROUTES, grant=MASTER)
    finally:
        await g.close()
    assert out == {"text": "scanned"}
    assert str(calls[0].url) == "https://oa.test/v1/ocr"


@pytest.mark.asyncio
async def test_one_oversized_image_aborts_the_whole_chat_request():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200, json={"output_text": "unreachable"})

    content = [
        {"type": "text", "text": "compare these"},
        {"type": "image_url", "image_url": {"url": "data:image/png;base64,iVBORw0KGgo="}},
        {"type": "image_url", "image_url": {"url": "data:image/png;base64," + "A" * 8192}},
    ]
    g = _gateway(handler, max_image_mb=0.001)
    try:
        with pytest.raises(ImageValidationError) as e:
            await g.chat_completion(_chat("vision", content), routes=ROUTES, grant=MASTER)
    finally:
        await g.close()
    assert e.value.code == "image_validation_failed"
    assert calls == []


def test_media_result_keeps_text_objects():
    assert media_result({"text": "ok", "language": "en"}) == {"text": "ok", "language": "en"}
    assert media_result("raw") == {"text": "raw"}
