from __future__ import annotations

import asyncio
import re
import secrets as secrets_module
import uuid
from collections.abc import Callable

import structlog.contextvars as structlog_contextvars

from .errors import AuthenticationError
from .routing import MASTER_GRANT_NAME, ApiKeyGrant, RouteSnapshot


_REQUEST_ID_RE = re.compile(r"^[A-Za-z0-9._:-]{8,128}$")


def coerce_request_id(value: str | None) -> str:
    if value and _REQUEST_ID_RE.fullmatch(value):
        return value
    return uuid.uuid4().hex


def parse_bearer_token(authorization: str | None) -> str | None:
    if not authorization:
        return None
    parts = authorization.split(" ", 1)
    if len(parts) != 2:
        return None
    scheme, token = parts[0].strip(), parts[1].strip()
    if scheme.lower() != "bearer" or not token:
        return None
    return token


def constant_time_equals(a: str, b: str) -> bool:
    return secrets_module.compare_digest(a.encode("utf-8"), b.encode("utf-8"))


def authenticate(token: str | None, *, master_key: str | None, routes: RouteSnapshot) -> ApiKeyGrant | None:
    """Master key first (unrestricted), then the snapshot's API keys."""
    if not token:
        return None
    if master_key and constant_time_equals(token, master_key):
        return ApiKeyGrant(key=master_key, name=MASTER_GRANT_NAME)
    return routes.find_grant(token)


def _is_protected_path(path: str) -> bool:
    return path.startswith("/v1/")


def _should_set_no_store(path: str) -> bool:
    return path.startswith("/v1/")


def install_middlewares(app, *, cfg, routes: Callable[[], RouteSnapshot]) -> None:
    """
    Install security middleware and optional hardening based on cfg.

    `routes` returns the current route snapshot; API keys are looked up there.
    """
    from fastapi.responses import JSONResponse
    from starlette.middleware.base import BaseHTTPMiddleware
    from starlette.requests import Request

    from .openai_compat import make_openai_error_response

    class RequestIdMiddleware(BaseHTTPMiddleware):
        async def dispatch(self, request: Request, call_next):
            request_id = coerce_request_id(request.headers.get("x-request-id"))
            request.state.request_id = request_id
            structlog_contextvars.bind_contextvars(request_id=request_id)
            response = None
            try:
                response = await call_next(request)
            finally:
                structlog_contextvars.clear_contextvars()
            if response is not None:
                response.headers.setdefault("X-Request-Id", request_id)
            return response

    class SecurityHeadersMiddleware(BaseHTTPMiddleware):
        async def dispatch(self, request: Request, call_next):
            response = await call_next(request)
            response.headers.setdefault("X-Content-Type-Options", "nosniff")
            response.headers.setdefault("X-Frame-Options", "DENY")
            response.headers.setdefault("Referrer-Policy", "no-referrer")
            response.headers.setdefault("Cross-Origin-Resource-Policy", "same-site")
            if getattr(cfg, "enable_api_docs", True) is False:
                response.headers.setdefault("X-Robots-Tag", "noindex, nofollow")
            if _should_set_no_store(request.url.path):
                response.headers.setdefault("Cache-Control", "no-store")
                response.headers.setdefault("Pragma", "no-cache")
            return response

    class MaxBodySizeMiddleware(BaseHTTPMiddleware):
        async def dispatch(self, request: Request, call_next):
            limit = int(getattr(cfg, "max_request_body_bytes", 0) or 0)
            if limit > 0 and request.method in ("POST", "PUT", "PATCH") and _is_protected_path(
                request.url.path
            ):
                content_length = request.headers.get("content-length")
                too_large = bool(content_length and content_length.isdigit() and int(content_length) > limit)
                if not too_large:
                    too_large = len(await request.body()) > limit
                if too_large:
                    return JSONResponse(
                        status_code=413,
                        content=make_openai_error_response(
                            message="Request body too large.",
                            type="invalid_request_error",
                            code="request_too_large",
                        ).model_dump(),
                    )
            return await call_next(request)

    class ConcurrencyLimitMiddleware(BaseHTTPMiddleware):
        def __init__(self, app_):
            super().__init__(app_)
            self._sem = asyncio.Semaphore(max(1, int(getattr(cfg, "max_inflight_requests", 1) or 1)))

        async def dispatch(self, request: Request, call_next):
            if not _is_protected_path(request.url.path):
                return await call_next(request)
            if self._sem.locked():
                return JSONResponse(
                    status_code=429,
                    content=make_openai_error_response(
                        message="Server is busy. Try again later.",
                        type="rate_limit_error",
                        code="server_busy",
                    ).model_dump(),
                )
            await self._sem.acquire()
            try:
                return await call_next(request)
            finally:
                self._sem.release()

    class ApiKeyAuthMiddleware(BaseHTTPMiddleware):
        async def dispatch(self, request: Request, call_next):
            if not _is_protected_path(request.url.path) or request.method == "OPTIONS":
                return await call_next(request)

            snapshot = routes()
            if not cfg.auth_enabled(bool(snapshot.api_keys)):
                request.state.grant = ApiKeyGrant(key="", name=MASTER_GRANT_NAME)
                return await call_next(request)

            token = parse_bearer_token(request.headers.get("authorization")) or request.headers.get("x-api-key")
            grant = authenticate(token, master_key=cfg.master_api_key, routes=snapshot)
            if grant is None:
                err = AuthenticationError("Invalid authentication credentials")
                return JSONResponse(
                    status_code=err.status_code,
                    headers={"WWW-Authenticate": 'Bearer realm="ipin-proxy"'},
                    content=err.to_payload(),
                )
            request.state.grant = grant
            return await call_next(request)

    app.add_middleware(MaxBodySizeMiddleware)
    app.add_middleware(ConcurrencyLimitMiddleware)
    app.add_middleware(ApiKeyAuthMiddleware)
    app.add_middleware(SecurityHeadersMiddleware)
    # Must be outermost to ensure `X-Request-Id` is set even when inner middleware short-circuits.
    app.add_middleware(RequestIdMiddleware)

    allowed_hosts: list[str] = list(getattr(cfg, "allowed_hosts", []) or [])
    if allowed_hosts:
        from starlette.middleware.trustedhost import TrustedHostMiddleware

        app.add_middleware(TrustedHostMiddleware, allowed_hosts=allowed_hosts)

    cors_allow_origins: list[str] = list(getattr(cfg, "cors_allow_origins", []) or [])
    if cors_allow_origins:
        from fastapi.middleware.cors import CORSMiddleware

        allow_credentials = bool(getattr(cfg, "cors_allow_credentials", False))
        if allow_credentials and "*" in cors_allow_origins:
            raise ValueError("CORS_ALLOW_ORIGINS cannot include '*' when CORS_ALLOW_CREDENTIALS=true.")
        app.add_middleware(
            CORSMiddleware,
            allow_origins=cors_allow_origins,
            allow_credentials=allow_credentials,
            allow_methods=["GET", "POST", "OPTIONS"],
            allow_headers=["Authorization", "Content-Type", "X-Request-Id", "X-API-Key"],
            max_age=600,
        )
