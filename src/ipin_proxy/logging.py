from __future__ import annotations

import logging
import re
from collections.abc import Callable, Iterable, MutableMapping
from typing import Any, TypeAlias, cast

import structlog

EventDict: TypeAlias = MutableMapping[str, Any]
Processor: TypeAlias = Callable[[Any, str, EventDict], Any]

# Header and field names whose values are credentials for us or a provider.
CREDENTIAL_FIELDS = frozenset(
    {
        "authorization",
        "proxy-authorization",
        "x-api-key",
        "api_key",
        "apikey",
        "master_api_key",
        "cookie",
        "set-cookie",
    }
)
CREDENTIAL_MARKERS = ("key", "token", "secret", "password")

# Base64 media bodies sent to chutes-style providers or returned by image models.
MEDIA_FIELDS = frozenset({"audio_b64", "image_b64", "b64_json"})

_BEARER = re.compile(r"(?i)\bBearer\s+[A-Za-z0-9._-]{6,}")
_DATA_URL = re.compile(r"data:([\w.+-]+/[\w.+-]+);base64,[A-Za-z0-9+/=\s]+")


def _walk(value: Any, on_str: Callable[[str], str], on_key: Callable[[str, Any], Any]) -> Any:
    if isinstance(value, str):
        return on_str(value)
    if isinstance(value, (bytes, bytearray)):
        return f"<{len(value)} bytes>"
    if isinstance(value, dict):
        return {k: on_key(str(k).lower(), v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        items = [_walk(v, on_str, on_key) for v in value]
        return tuple(items) if isinstance(value, tuple) else items
    return value


class SecretScrubber:
    """
    structlog processor that masks credentials anywhere in an event.

    Known secret values (the master key and provider keys from the route
    file) are replaced wherever they occur inside strings; credential-named
    fields are masked whole.
    """

    def __init__(self, secrets: Iterable[str | None] = ()):
        self.secrets = sorted({s for s in secrets if isinstance(s, str) and s}, key=len, reverse=True)

    def scrub_text(self, text: str) -> str:
        for secret in self.secrets:
            text = text.replace(secret, "[REDACTED]")
        return _BEARER.sub("Bearer [REDACTED]", text)

    def _field(self, name: str, value: Any) -> Any:
        if name in CREDENTIAL_FIELDS or any(marker in name for marker in CREDENTIAL_MARKERS):
            return "[REDACTED]"
        return _walk(value, self.scrub_text, self._field)

    def __call__(self, _logger: Any, _method_name: str, event_dict: EventDict) -> EventDict:
        return cast(EventDict, _walk(dict(event_dict), self.scrub_text, self._field))


def _elide_text(text: str) -> str:
    return _DATA_URL.sub(lambda m: f"data:{m.group(1)};base64,[ELIDED]", text)


def _elide_field(name: str, value: Any) -> Any:
    if name in MEDIA_FIELDS and value:
        return "[ELIDED]"
    return _walk(value, _elide_text, _elide_field)


def elide_media(_logger: Any, _method_name: str, event_dict: EventDict) -> EventDict:
    """Replace base64 media, data URLs and raw upload bytes with short placeholders."""
    return cast(EventDict, _walk(dict(event_dict), _elide_text, _elide_field))


def configure_logging(level: str = "INFO", fmt: str = "json", *, secrets: Iterable[str | None] = ()) -> None:
    log_level = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(level=log_level)

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        elide_media,
        SecretScrubber(secrets),
        structlog.processors.JSONRenderer() if fmt == "json" else structlog.dev.ConsoleRenderer(),
    ]
    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        cache_logger_on_first_use=True,
    )
