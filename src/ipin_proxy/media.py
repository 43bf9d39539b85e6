from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Iterable

from .errors import CapabilityError
from .routing import ModelRoute

# Server-side ceiling; browser UIs usually stop at 10 MB before uploading.
MAX_IMAGE_MB = 20

_DATA_IMAGE_RE = re.compile(r"^data:image/(\w+);base64,(.+)$")


@dataclass(frozen=True)
class ImageData:
    url: str
    media_type: str | None = None
    base64_payload: str | None = None


@dataclass(frozen=True)
class ImageSizeCheck:
    valid: bool
    size_mb: float
    max_mb: float


def _blocks(content: Any) -> list[dict[str, Any]]:
    if not isinstance(content, list):
        return []
    return [b for b in content if isinstance(b, dict)]


def block_url(block: dict[str, Any]) -> str:
    """URL carried by an image_url/video_url block, in either object or bare-string form."""
    for key in ("image_url", "video_url"):
        ref = block.get(key)
        if isinstance(ref, dict) and isinstance(ref.get("url"), str):
            return ref["url"]
        if isinstance(ref, str):
            return ref
    return ""


def _is_smuggled_video(block: dict[str, Any]) -> bool:
    return block.get("type") == "image_url" and block_url(block).startswith("data:video/")


def is_image_content(content: Any) -> bool:
    return any(b.get("type") == "image_url" and not _is_smuggled_video(b) for b in _blocks(content))


def is_video_content(content: Any) -> bool:
    """True for video_url blocks and for data:video URLs sent through an image_url block."""
    return any(b.get("type") == "video_url" or _is_smuggled_video(b) for b in _blocks(content))


def extract_image_data(url: Any) -> ImageData | None:
    if not isinstance(url, str):
        return None
    match = _DATA_IMAGE_RE.match(url)
    if match:
        return ImageData(url=url, media_type=match.group(1), base64_payload=match.group(2))
    if url.startswith("http://") or url.startswith("https://"):
        # Remote images cannot be verified without fetching them.
        return ImageData(url=url)
    return None


def validate_image_size(base64_payload: str, max_mb: float = MAX_IMAGE_MB) -> ImageSizeCheck:
    """
    Estimate the decoded size of a base64 payload as len * 3 / 4.

    Padding and embedded whitespace are counted, so the estimate is slightly
    above the true size; fine for a soft ceiling.
    """
    size_bytes = len(base64_payload) * 3 / 4
    return ImageSizeCheck(
        valid=size_bytes <= max_mb * 1024 * 1024,
        size_mb=round(size_bytes / (1024 * 1024), 2),
        max_mb=max_mb,
    )


def check_media_capability(messages: Iterable[dict[str, Any]], model: ModelRoute) -> None:
    has_image = False
    has_video = False
    for message in messages:
        content = message.get("content")
        has_image = has_image or is_image_content(content)
        has_video = has_video or is_video_content(content)

    if has_image and not model.supports_image_upload:
        raise CapabilityError(
            f"Model '{model.id}' does not support image uploads.",
            code="image_upload_not_supported",
        )
    if has_video and not model.supports_video_upload:
        raise CapabilityError(
            f"Model '{model.id}' does not support video uploads.",
            code="video_upload_not_supported",
        )
