from __future__ import annotations

import os
import time
from contextlib import asynccontextmanager

import structlog

try:
    from fastapi import FastAPI, Request
    from fastapi.exceptions import RequestValidationError
    from fastapi.responses import JSONResponse, StreamingResponse
except ImportError as e:  # pragma: no cover
    raise RuntimeError('Install the "server" extra: pip install -e ".[server]"') from e

from .config import ProxyConfig
from .errors import GatewayError, ValidationError
from .gateway import Gateway
from .http_security import install_middlewares
from .logging import configure_logging
from .metrics import maybe_start_metrics, server_errors_total, server_request_latency_seconds, server_requests_total
from .multipart import decode, parse_boundary
from .openai_compat import (
    ChatCompletionRequest,
    ChatCompletionResponse,
    ModelCard,
    ModelList,
    make_openai_error_response,
)
from .routing import MASTER_GRANT_NAME, ApiKeyGrant, RouteSnapshot, load_route_snapshot

log = structlog.get_logger()


def create_app(
    cfg: ProxyConfig | None = None,
    gateway: Gateway | None = None,
    routes: RouteSnapshot | None = None,
):
    cfg = cfg or ProxyConfig()
    snapshot = routes if routes is not None else load_route_snapshot(cfg.routes_path)
    configure_logging(
        level=cfg.log_level,
        fmt=cfg.log_format,
        secrets=[
            s
            for s in (cfg.master_api_key, *(p.api_key for p in snapshot.providers.values()))
            if s
        ],
    )
    gateway = gateway or Gateway(cfg)

    def _routes() -> RouteSnapshot:
        return snapshot

    def _grant(request) -> ApiKeyGrant:
        grant = getattr(request.state, "grant", None)
        return grant or ApiKeyGrant(key="", name=MASTER_GRANT_NAME)

    def _observe(path: str, status_code: int, started_at: float) -> None:
        server_requests_total.labels(path=path, status=str(status_code)).inc()
        server_request_latency_seconds.labels(path=path).observe(max(0.0, time.monotonic() - started_at))

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        maybe_start_metrics(enable=cfg.enable_metrics, bind=cfg.metrics_bind, port=cfg.metrics_port)
        log.info(
            "routes_loaded",
            providers=len(snapshot.providers),
            models=len(snapshot.models),
            api_keys=len(snapshot.api_keys),
        )
        try:
            yield
        finally:
            await gateway.close()

    app = FastAPI(
        title="ipin-proxy",
        version="0.1.0",
        lifespan=lifespan,
        docs_url="/docs" if cfg.enable_api_docs else None,
        redoc_url="/redoc" if cfg.enable_api_docs else None,
        openapi_url="/openapi.json" if cfg.enable_api_docs else None,
    )
    install_middlewares(app, cfg=cfg, routes=_routes)

    @app.exception_handler(GatewayError)
    async def _gateway_error_handler(request: Request, exc: GatewayError):
        server_errors_total.labels(code=exc.code).inc()
        if exc.status_code >= 500:
            log.warning("request_failed", path=request.url.path, code=exc.code, status_code=exc.status_code)
        else:
            log.info("request_rejected", path=request.url.path, code=exc.code, status_code=exc.status_code)
        return JSONResponse(status_code=exc.status_code, content=exc.to_payload())

    @app.exception_handler(RequestValidationError)
    async def _request_validation_handler(_request: Request, exc: RequestValidationError):
        server_errors_total.labels(code="invalid_request").inc()
        errors = exc.errors()
        first = errors[0] if errors else {}
        loc = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
        message = f"{loc}: {first.get('msg')}" if loc else str(first.get("msg") or "Invalid request.")
        return JSONResponse(
            status_code=400,
            content=make_openai_error_response(
                message=message,
                type="invalid_request_error",
                param=loc or None,
                code="invalid_request",
            ).model_dump(),
        )

    async def _json_body(request: Request) -> dict:
        try:
            body = await request.json()
        except ValueError as e:
            raise ValidationError("Request body must be valid JSON.") from e
        if not isinstance(body, dict):
            raise ValidationError("Request body must be a JSON object.")
        return body

    async def _form(request: Request):
        boundary = parse_boundary(request.headers.get("content-type"))
        return decode(await request.body(), boundary)

    @app.get("/healthz")
    async def healthz() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/v1/models", response_model=ModelList)
    async def list_models(request: Request):
        cards = [ModelCard(id=m.id, owned_by=m.provider_id) for m in snapshot.visible_models(_grant(request))]
        return ModelList(data=cards)

    @app.post("/v1/chat/completions", response_model=ChatCompletionResponse, response_model_exclude_none=True)
    async def chat_completions(req: ChatCompletionRequest, request: Request):
        started_at = time.monotonic()
        if req.stream:
            if not cfg.enable_streaming:
                raise ValidationError(
                    "Streaming is disabled (set ENABLE_STREAMING=true).", code="unsupported_endpoint"
                )
            byte_stream = await gateway.stream_chat_completion(req, routes=snapshot, grant=_grant(request))
            _observe("/v1/chat/completions", 200, started_at)
            return StreamingResponse(byte_stream, media_type="text/event-stream")

        resp = await gateway.chat_completion(req, routes=snapshot, grant=_grant(request))
        _observe("/v1/chat/completions", 200, started_at)
        return resp

    @app.post("/v1/embeddings")
    async def embeddings(request: Request):
        started_at = time.monotonic()
        data = await gateway.passthrough("embeddings", await _json_body(request), routes=snapshot, grant=_grant(request))
        _observe("/v1/embeddings", 200, started_at)
        return data

    @app.post("/v1/rerank")
    async def rerank(request: Request):
        started_at = time.monotonic()
        data = await gateway.passthrough("rerank", await _json_body(request), routes=snapshot, grant=_grant(request))
        _observe("/v1/rerank", 200, started_at)
        return data

    @app.post("/v1/audio/transcriptions")
    async def transcriptions(request: Request):
        started_at = time.monotonic()
        data = await gateway.transcribe(await _form(request), routes=snapshot, grant=_grant(request))
        _observe("/v1/audio/transcriptions", 200, started_at)
        return data

    @app.post("/v1/ocr")
    async def ocr(request: Request):
        started_at = time.monotonic()
        data = await gateway.ocr(await _form(request), routes=snapshot, grant=_grant(request))
        _observe("/v1/ocr", 200, started_at)
        return data

    return app


app = create_app()


def main() -> None:  # pragma: no cover
    try:
        import uvicorn
    except ImportError as e:
        raise RuntimeError('Install the "server" extra: pip install -e ".[server]"') from e

    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", "8000"))
    uvicorn.run("ipin_proxy.server:app", host=host, port=port)


if __name__ == "__main__":  # pragma: no cover
    main()
