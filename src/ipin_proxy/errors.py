from __future__ import annotations

from typing import Any


class GatewayError(Exception):
    """Base error for gateway failures, rendered as an OpenAI-style error object."""

    status_code: int = 500
    error_type: str = "server_error"
    code: str = "internal_error"

    def __init__(self, message: str, *, code: str | None = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code

    def to_payload(self) -> dict[str, Any]:
        return {"error": {"message": self.message, "type": self.error_type, "code": self.code}}


class ValidationError(GatewayError):
    status_code = 400
    error_type = "invalid_request_error"
    code = "invalid_request"


class ImageValidationError(ValidationError):
    code = "image_validation_failed"

    def __init__(self, message: str, *, size_mb: float | None = None, max_mb: float | None = None):
        super().__init__(message)
        self.size_mb = size_mb
        self.max_mb = max_mb


class CapabilityError(ValidationError):
    """Model is not configured for the uploaded media type."""


class MissingFieldError(ValidationError):
    code = "missing_required_field"


class MultipartError(GatewayError):
    status_code = 400
    error_type = "invalid_request_error"
    code = "invalid_multipart_data"


class AuthenticationError(GatewayError):
    status_code = 401
    error_type = "invalid_request_error"
    code = "invalid_api_key"


class ModelNotFoundError(GatewayError):
    status_code = 400
    error_type = "invalid_request_error"
    code = "model_not_found"


class ModelNotAllowedError(GatewayError):
    status_code = 403
    error_type = "permission_error"
    code = "model_not_allowed"


class ConfigurationError(GatewayError):
    code = "provider_not_configured"


class UpstreamError(GatewayError):
    """Provider answered with a non-success status."""

    error_type = "api_error"
    code = "provider_error"

    def __init__(self, status_code: int, body: Any, message: str | None = None):
        if message is None and isinstance(body, dict) and isinstance(body.get("error"), str):
            message = body["error"]
        super().__init__(message or f"Upstream error {status_code}.")
        self.status_code = status_code
        self.body = body

    def to_payload(self) -> dict[str, Any]:
        if isinstance(self.body, dict) and isinstance(self.body.get("error"), dict):
            return self.body
        return super().to_payload()


class TransformationError(GatewayError):
    """Upstream broke a documented response contract."""

    status_code = 502
    error_type = "api_error"
    code = "invalid_provider_response"


class RequestTimeoutError(GatewayError):
    status_code = 504
    error_type = "api_error"
    code = "upstream_timeout"
