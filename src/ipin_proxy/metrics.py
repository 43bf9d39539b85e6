from __future__ import annotations

from prometheus_client import Counter, Histogram, start_http_server

server_requests_total = Counter(
    "server_requests_total",
    "Total HTTP requests handled by server",
    labelnames=["path", "status"],
)

server_request_latency_seconds = Histogram(
    "server_request_latency_seconds",
    "HTTP request latency (seconds)",
    buckets=[0.05, 0.1, 0.3, 0.5, 1, 2, 5, 10, 30, 60, 120, 300],
    labelnames=["path"],
)

server_errors_total = Counter(
    "server_errors_total",
    "Total errors returned by server",
    labelnames=["code"],
)

upstream_requests_total = Counter(
    "upstream_requests_total",
    "Total upstream provider calls",
    labelnames=["provider", "status"],
)

upstream_latency_seconds = Histogram(
    "upstream_latency_seconds",
    "Upstream provider call latency",
    buckets=[0.1, 0.3, 0.5, 1, 2, 5, 10, 30, 60, 120, 300],
    labelnames=["provider"],
)

response_shapes_total = Counter(
    "response_shapes_total",
    "Upstream chat responses by resolved shape",
    labelnames=["shape"],
)

media_rejections_total = Counter(
    "media_rejections_total",
    "Requests rejected by media validation or capability gating",
    labelnames=["code"],
)


def maybe_start_metrics(*, enable: bool, bind: str, port: int) -> None:
    if not enable:
        return
    start_http_server(port, addr=bind)
