import json

import httpx
import pytest

from ipin_proxy.config import ProxyConfig
from ipin_proxy.multipart import MultipartPart, encode, text_part
from ipin_proxy.routing import snapshot_from_payload


CHAT = {"model": "gpt", "messages": [{"role": "user", "content": "hi"}]}
ROUTES_PAYLOAD = {
    "providers": [
        {"id": "oa", "type": "openai", "baseUrl": "https://oa.test/v1", "apiKey": "sk-oa"},
        {"id": "ch", "type": "chutes", "baseUrl": "https://ch.test", "apiKey": "ch-key"},
    ],
    "models": [
        {"id": "gpt", "providerId": "oa"},
        {"id": "ocr-1", "providerId": "oa", "supportsImageUpload": True},
        {"id": "whisper", "providerId": "ch"},
    ],
}


def _app(handler, routes_payload=None, **cfg):
    pytest.importorskip("fastapi")
    from ipin_proxy.gateway import Gateway
    from ipin_proxy.server import create_app
    from ipin_proxy.upstream import UpstreamClient

    config = ProxyConfig(master_api_key=None, enable_metrics=False, **cfg)
    client = UpstreamClient(client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
    routes = snapshot_from_payload(routes_payload or ROUTES_PAYLOAD)
    return create_app(cfg=config, gateway=Gateway(config, client=client), routes=routes)


def _client(app) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test")


@pytest.mark.asyncio
async def test_chat_completion_returns_canonical_response():
    def handler(_: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"candidates": [{"content": {"parts": [{"text": "hola"}]}}]})

    async with _client(_app(handler)) as client:
        resp = await client.post("/v1/chat/completions", json=CHAT)
    assert resp.status_code == 200
    body = resp.json()
    assert body["object"] == "chat.completion"
    assert body["choices"][0]["message"] == {"role": "assistant", "content": "hola"}
    assert "logprobs" not in body["choices"][0]


@pytest.mark.asyncio
async def test_unknown_model_and_invalid_body_use_error_envelope():
    async with _client(_app(lambda _: httpx.Response(200, json={}))) as client:
        resp = await client.post("/v1/chat/completions", json={"model": "nope", "messages": []})
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "model_not_found"

        resp = await client.post("/v1/chat/completions", json={"model": "gpt", "messages": [{"role": "robot"}]})
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "invalid_request"


@pytest.mark.asyncio
async def test_capability_error_maps_to_400():
    image = [{"type": "image_url", "image_url": {"url": "https://x.test/a.png"}}]
    async with _client(_app(lambda _: httpx.Response(200, json={}))) as client:
        messages = [{"role": "user", "content": image}]
        resp = await client.post("/v1/chat/completions", json={**CHAT, "messages": messages})
    assert resp.status_code == 400
    assert resp.json()["error"] == {
        "message": "Model 'gpt' does not support image uploads.",
        "type": "invalid_request_error",
        "code": "image_upload_not_supported",
    }


@pytest.mark.asyncio
async def test_upstream_error_passes_status_and_body_through():
    upstream = {"error": {"message": "quota exceeded", "type": "insufficient_quota", "code": "quota"}}

    async with _client(_app(lambda _: httpx.Response(429, json=upstream))) as client:
        resp = await client.post("/v1/chat/completions", json=CHAT)
    assert resp.status_code == 429
    assert resp.json() == upstream


@pytest.mark.asyncio
async def test_upstream_timeout_maps_to_504():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("slow", request=request)

    async with _client(_app(handler)) as client:
        resp = await client.post("/v1/embeddings", json={"model": "gpt", "input": "x"})
    assert resp.status_code == 504
    assert resp.json()["error"]["code"] == "upstream_timeout"


@pytest.mark.asyncio
async def test_streaming_relays_sse():
    events = b'data: {"id":"c1","choices":[{"delta":{"content":"a"}}]}\n\ndata: [DONE]\n\n'

    async with _client(_app(lambda _: httpx.Response(200, content=events))) as client:
        async with client.stream(
            "POST",
            "/v1/chat/completions",
            json={"model": "gpt", "stream": True, "messages": [{"role": "user", "content": "hi"}]},
        ) as resp:
            assert resp.status_code == 200
            assert resp.headers["content-type"].startswith("text/event-stream")
            body = b"".join([chunk async for chunk in resp.aiter_bytes()])
    assert body == events


@pytest.mark.asyncio
async def test_streaming_can_be_disabled():
    async with _client(_app(lambda _: httpx.Response(200), enable_streaming=False)) as client:
        resp = await client.post(
            "/v1/chat/completions",
            json={"model": "gpt", "stream": True, "messages": [{"role": "user", "content": "hi"}]},
        )
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "unsupported_endpoint"


@pytest.mark.asyncio
async def test_models_lists_routes():
    async with _client(_app(lambda _: httpx.Response(200))) as client:
        resp = await client.get("/v1/models")
    assert resp.status_code == 200
    body = resp.json()
    assert body["object"] == "list"
    assert {m["id"]: m["owned_by"] for m in body["data"]} == {"gpt": "oa", "ocr-1": "oa", "whisper": "ch"}


@pytest.mark.asyncio
async def test_transcription_decodes_multipart_and_forwards_base64():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen.update(json.loads(request.content))
        return httpx.Response(200, json={"text": "bonjour"})

    encoded = encode(
        [
            text_part("model", "whisper"),
            text_part("language", "fr"),
            MultipartPart(name="file", data=b"\x00\xffaudio", filename="clip.wav", content_type="audio/wav"),
        ]
    )
    async with _client(_app(handler)) as client:
        resp = await client.post(
            "/v1/audio/transcriptions", content=encoded.body, headers={"Content-Type": encoded.content_type}
        )
    assert resp.status_code == 200
    assert resp.json() == {"text": "bonjour"}
    assert seen == {"audio_b64": "AP9hdWRpbw==", "language": "fr"}


@pytest.mark.asyncio
async def test_ocr_reencodes_multipart_for_openai_providers():
    def handler(request: httpx.Request) -> httpx.Response:
        assert str(request.url) == "https://oa.test/v1/ocr"
        assert request.headers["content-type"].startswith("multipart/form-data; boundary=")
        assert b'name="model"\r\n\r\nocr-1\r\n' in request.content
        assert b"\x89PNG" in request.content
        return httpx.Response(200, json={"pages": [{"markdown": "# Title"}]})

    encoded = encode(
        [text_part("model", "ocr-1"), MultipartPart(name="file", data=b"\x89PNG", filename="p.png")]
    )
    async with _client(_app(handler)) as client:
        resp = await client.post("/v1/ocr", content=encoded.body, headers={"Content-Type": encoded.content_type})
    assert resp.status_code == 200
    assert resp.json() == {"text": "# Title"}


@pytest.mark.asyncio
async def test_malformed_multipart_is_rejected():
    async with _client(_app(lambda _: httpx.Response(200))) as client:
        resp = await client.post(
            "/v1/ocr", content=b"garbage", headers={"Content-Type": "multipart/form-data; boundary=zzz"}
        )
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "invalid_multipart_data"

        resp = await client.post("/v1/ocr", json={"model": "ocr-1"})
        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "invalid_multipart_data"


@pytest.mark.asyncio
async def test_ocr_on_text_only_model_is_rejected():
    def handler(_: httpx.Request) -> httpx.Response:
        raise AssertionError("upstream must not be called")

    encoded = encode([text_part("model", "gpt"), MultipartPart(name="file", data=b"\x89PNG", filename="p.png")])
    async with _client(_app(handler)) as client:
        resp = await client.post("/v1/ocr", content=encoded.body, headers={"Content-Type": encoded.content_type})
    assert resp.status_code == 400
    assert resp.json()["error"]["code"] == "image_upload_not_supported"


@pytest.mark.asyncio
async def test_routes_read_the_request_without_query_parameters():
    async with _client(_app(lambda _: httpx.Response(200, json={"data": []}))) as client:
        models = await client.get("/v1/models")
        embeddings = await client.post("/v1/embeddings", json={"model": "gpt", "input": "x"})
    assert models.status_code == 200
    assert embeddings.status_code == 200
    assert embeddings.json() == {"data": []}
