from __future__ import annotations

import re
import secrets
from dataclasses import dataclass
from typing import Iterable
from urllib.parse import unquote

from .errors import MultipartError

CRLF = b"\r\n"
_HEADER_BREAK = b"\r\n\r\n"

_BOUNDARY_PARAM_RE = re.compile(r'boundary=(?:"([^"]+)"|([^;\s]+))', re.IGNORECASE)
_NAME_RE = re.compile(r'(?:^|;)\s*name="([^"]*)"', re.IGNORECASE)
_FILENAME_RE = re.compile(r'(?:^|;)\s*filename="([^"]*)"', re.IGNORECASE)
_FILENAME_EXT_RE = re.compile(r"(?:^|;)\s*filename\*=([\w-]+)'[^']*'([^;]+)", re.IGNORECASE)


@dataclass(frozen=True)
class MultipartPart:
    name: str
    data: bytes
    filename: str | None = None
    content_type: str | None = None

    @property
    def is_file(self) -> bool:
        return self.filename is not None

    @property
    def value(self) -> str:
        return self.data.decode("utf-8", errors="replace")


@dataclass(frozen=True)
class EncodedMultipart:
    body: bytes
    boundary: str

    @property
    def content_type(self) -> str:
        return f"multipart/form-data; boundary={self.boundary}"


def parse_boundary(content_type: str | None) -> str:
    if not content_type or "multipart/form-data" not in content_type.lower():
        raise MultipartError("Expected a multipart/form-data request body.")
    match = _BOUNDARY_PARAM_RE.search(content_type)
    if not match:
        raise MultipartError("Missing multipart boundary.")
    return match.group(1) or match.group(2)


def generate_boundary() -> str:
    return f"----ipinproxy{secrets.token_hex(16)}"


def _parse_headers(raw: bytes) -> dict[str, str]:
    headers: dict[str, str] = {}
    for line in raw.split(CRLF):
        if not line.strip():
            continue
        name, sep, value = line.decode("utf-8", errors="replace").partition(":")
        if not sep:
            raise MultipartError("Malformed multipart header line.")
        headers[name.strip().lower()] = value.strip()
    return headers


def _disposition_filename(disposition: str) -> str | None:
    extended = _FILENAME_EXT_RE.search(disposition)
    if extended:
        return unquote(extended.group(2).strip(), encoding=extended.group(1), errors="replace")
    plain = _FILENAME_RE.search(disposition)
    return plain.group(1) if plain else None


def decode(body: bytes, boundary: str) -> dict[str, MultipartPart]:
    """
    Decode a multipart/form-data body into parts keyed by field name.

    Works on bytes end to end so binary payloads are never re-encoded. Only
    CRLF-prefixed delimiters split the body; the boundary text appearing inside
    a payload is left alone. When a field name repeats, the last part wins.
    """
    if not boundary:
        raise MultipartError("Missing multipart boundary.")
    try:
        marker = b"--" + boundary.encode("latin-1")
    except UnicodeEncodeError as e:
        raise MultipartError("Malformed multipart boundary.") from e
    if marker not in body:
        raise MultipartError("Multipart boundary not found in request body.")

    # The opening delimiter may sit at offset 0 without a preceding CRLF.
    sections = (CRLF + body).split(CRLF + marker)
    if len(sections) < 2:
        raise MultipartError("Multipart boundary not found in request body.")

    parts: dict[str, MultipartPart] = {}
    closed = False
    for section in sections[1:]:
        if section.startswith(b"--"):
            closed = True
            break
        line_end = section.find(CRLF)
        if line_end == -1 or section[:line_end].strip(b" \t"):
            raise MultipartError("Malformed multipart delimiter.")
        section = section[line_end + len(CRLF) :]

        if section.startswith(CRLF):
            raw_headers, payload = b"", section[len(CRLF) :]
        else:
            raw_headers, sep, payload = section.partition(_HEADER_BREAK)
            if not sep:
                raise MultipartError("Multipart section is missing its header terminator.")

        headers = _parse_headers(raw_headers)
        disposition = headers.get("content-disposition", "")
        name_match = _NAME_RE.search(disposition)
        if not name_match:
            continue
        name = name_match.group(1)
        filename = _disposition_filename(disposition)
        if filename is None:
            parts[name] = MultipartPart(name=name, data=payload.strip())
        else:
            parts[name] = MultipartPart(
                name=name,
                data=payload,
                filename=filename,
                content_type=headers.get("content-type"),
            )

    if not closed:
        raise MultipartError("Multipart body is missing its closing boundary.")
    return parts


def _quote(value: str) -> str:
    return value.replace('"', "%22").replace("\r", "%0D").replace("\n", "%0A")


def _collides(boundary: str, parts: list[MultipartPart]) -> bool:
    # Every payload follows a CRLF, so only a CRLF-prefixed marker can split it.
    delimiter = CRLF + b"--" + boundary.encode("latin-1")
    return any(delimiter in CRLF + p.data for p in parts)


def encode(parts: Iterable[MultipartPart], boundary: str | None = None) -> EncodedMultipart:
    """Serialize parts as multipart/form-data, generating a non-colliding boundary when none is given."""
    parts = list(parts)
    if boundary is None:
        boundary = generate_boundary()
        while _collides(boundary, parts):
            boundary = generate_boundary()
    elif _collides(boundary, parts):
        raise MultipartError("Multipart boundary occurs inside a part payload.")

    marker = b"--" + boundary.encode("latin-1")
    chunks: list[bytes] = []
    for part in parts:
        disposition = f'form-data; name="{_quote(part.name)}"'
        if part.is_file:
            disposition += f'; filename="{_quote(part.filename or "")}"'
        chunks.append(marker + CRLF)
        chunks.append(f"Content-Disposition: {disposition}".encode("utf-8") + CRLF)
        if part.is_file:
            content_type = part.content_type or "application/octet-stream"
            chunks.append(f"Content-Type: {content_type}".encode("utf-8") + CRLF)
        chunks.append(CRLF)
        chunks.append(part.data)
        chunks.append(CRLF)
    chunks.append(marker + b"--" + CRLF)
    return EncodedMultipart(body=b"".join(chunks), boundary=boundary)


def text_part(name: str, value: str) -> MultipartPart:
    return MultipartPart(name=name, data=value.encode("utf-8"))
