from __future__ import annotations

import os

from pydantic import BaseModel, Field


def _parse_csv(value: str | None) -> list[str]:
    if not value:
        return []
    return [v.strip() for v in value.split(",") if v.strip()]


class ProxyConfig(BaseModel):
    # Access
    master_api_key: str | None = Field(default_factory=lambda: os.getenv("MASTER_API_KEY"))

    # Provider/model/API-key tables written by the admin layer
    routes_path: str = Field(default_factory=lambda: os.getenv("ROUTES_PATH", "ipin-proxy.json"))

    # Observability
    enable_metrics: bool = Field(
        default_factory=lambda: os.getenv("ENABLE_METRICS", "false").lower() == "true"
    )
    metrics_bind: str = Field(default_factory=lambda: os.getenv("METRICS_BIND", "127.0.0.1"))
    metrics_port: int = Field(default_factory=lambda: int(os.getenv("METRICS_PORT", "9109")))
    log_level: str = Field(default_factory=lambda: os.getenv("LOG_LEVEL", "INFO"))
    log_format: str = Field(default_factory=lambda: os.getenv("LOG_FORMAT", "json"))
    enable_streaming: bool = Field(
        default_factory=lambda: os.getenv("ENABLE_STREAMING", "true").lower() == "true"
    )

    # Server hardening
    enable_api_docs: bool = Field(
        default_factory=lambda: os.getenv("ENABLE_API_DOCS", "false").lower() == "true"
    )
    allowed_hosts: list[str] = Field(default_factory=lambda: _parse_csv(os.getenv("ALLOWED_HOSTS")))
    cors_allow_origins: list[str] = Field(default_factory=lambda: _parse_csv(os.getenv("CORS_ALLOW_ORIGINS")))
    cors_allow_credentials: bool = Field(
        default_factory=lambda: os.getenv("CORS_ALLOW_CREDENTIALS", "false").lower() == "true"
    )
    # Inline images are up to 20 MB decoded, roughly 27 MB once base64 encoded.
    max_request_body_bytes: int = Field(
        default_factory=lambda: int(os.getenv("MAX_REQUEST_BODY_BYTES", str(32 * 1024 * 1024)))
    )
    max_inflight_requests: int = Field(default_factory=lambda: int(os.getenv("MAX_INFLIGHT_REQUESTS", "32")))
    max_messages: int = Field(default_factory=lambda: int(os.getenv("MAX_MESSAGES", "256")))

    # Media limits
    max_image_mb: float = Field(default_factory=lambda: float(os.getenv("MAX_IMAGE_MB", "20")))

    # Upstream deadlines; no retries are attempted
    json_timeout_seconds: float = Field(
        default_factory=lambda: float(os.getenv("JSON_TIMEOUT_SECONDS", "60"))
    )
    media_timeout_seconds: float = Field(
        default_factory=lambda: float(os.getenv("MEDIA_TIMEOUT_SECONDS", "300"))
    )

    def auth_enabled(self, has_api_keys: bool) -> bool:
        return bool(self.master_api_key) or has_api_keys
