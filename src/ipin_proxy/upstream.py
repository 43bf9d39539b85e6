from __future__ import annotations

import time
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any

import httpx
import structlog

from .errors import RequestTimeoutError, UpstreamError
from .metrics import upstream_latency_seconds, upstream_requests_total
from .transform import UpstreamRequest

log = structlog.get_logger()


@dataclass(frozen=True)
class UpstreamResponse:
    status_code: int
    data: Any


def _decode_body(resp: httpx.Response) -> Any:
    try:
        return resp.json()
    except ValueError:
        return resp.text


class UpstreamClient:
    """
    Dispatches provider-bound requests with a bounded deadline.

    No retries: a timeout surfaces as RequestTimeoutError and a non-2xx answer
    as UpstreamError carrying the provider's status and body.
    """

    def __init__(
        self,
        *,
        client: httpx.AsyncClient | None = None,
        json_timeout_seconds: float = 60,
        media_timeout_seconds: float = 300,
    ):
        self._client = client or httpx.AsyncClient()
        self._timeouts = {"json": json_timeout_seconds, "media": media_timeout_seconds}

    async def close(self) -> None:
        await self._client.aclose()

    def _timeout(self, request: UpstreamRequest) -> float:
        return self._timeouts.get(request.timeout, self._timeouts["json"])

    def _build(self, request: UpstreamRequest) -> httpx.Request:
        timeout = self._timeout(request)
        if request.content is not None:
            return self._client.build_request(
                "POST", request.url, headers=request.headers, content=request.content, timeout=timeout
            )
        return self._client.build_request(
            "POST", request.url, headers=request.headers, json=request.json, timeout=timeout
        )

    async def send(self, request: UpstreamRequest, *, provider: str = "unknown") -> UpstreamResponse:
        started = time.monotonic()
        try:
            resp = await self._client.send(self._build(request))
        except httpx.TimeoutException as e:
            upstream_requests_total.labels(provider=provider, status="timeout").inc()
            raise RequestTimeoutError(f"Request timeout after {self._timeout(request):g}s.") from e
        except httpx.HTTPError as e:
            upstream_requests_total.labels(provider=provider, status="error").inc()
            raise UpstreamError(502, None, message="Upstream request failed.") from e
        finally:
            upstream_latency_seconds.labels(provider=provider).observe(max(0.0, time.monotonic() - started))

        data = _decode_body(resp)
        upstream_requests_total.labels(provider=provider, status=str(resp.status_code)).inc()
        log.info("upstream_response", provider=provider, status_code=resp.status_code)
        if not resp.is_success:
            log.warning("upstream_error", provider=provider, status_code=resp.status_code, body=resp.text[:500])
            raise UpstreamError(resp.status_code, data)
        return UpstreamResponse(status_code=resp.status_code, data=data)

    async def open_stream(self, request: UpstreamRequest, *, provider: str = "unknown") -> AsyncIterator[bytes]:
        """
        Start a streaming call and return its decoded byte iterator.

        The status is checked before returning, so errors still reach the
        caller as exceptions rather than as a broken event stream.
        """
        try:
            resp = await self._client.send(self._build(request), stream=True)
        except httpx.TimeoutException as e:
            upstream_requests_total.labels(provider=provider, status="timeout").inc()
            raise RequestTimeoutError(f"Request timeout after {self._timeout(request):g}s.") from e
        except httpx.HTTPError as e:
            upstream_requests_total.labels(provider=provider, status="error").inc()
            raise UpstreamError(502, None, message="Upstream request failed.") from e

        upstream_requests_total.labels(provider=provider, status=str(resp.status_code)).inc()
        if not resp.is_success:
            try:
                await resp.aread()
            finally:
                await resp.aclose()
            raise UpstreamError(resp.status_code, _decode_body(resp))

        async def _relay() -> AsyncIterator[bytes]:
            try:
                async for chunk in resp.aiter_bytes():
                    yield chunk
            except httpx.TimeoutException as e:
                raise RequestTimeoutError("Streaming request timed out.") from e
            finally:
                await resp.aclose()

        return _relay()
