from __future__ import annotations

import time
import uuid
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ImageUrl(BaseModel):
    model_config = ConfigDict(extra="allow")

    url: str
    detail: str | None = None


class VideoUrl(BaseModel):
    model_config = ConfigDict(extra="allow")

    url: str


class TextBlock(BaseModel):
    type: Literal["text"] = "text"
    text: str


class ImageUrlBlock(BaseModel):
    type: Literal["image_url"] = "image_url"
    image_url: ImageUrl


class VideoUrlBlock(BaseModel):
    type: Literal["video_url"] = "video_url"
    video_url: VideoUrl | str


ContentBlock = Annotated[Union[TextBlock, ImageUrlBlock, VideoUrlBlock], Field(discriminator="type")]


class ChatCompletionMessage(BaseModel):
    model_config = ConfigDict(extra="allow")

    role: Literal["system", "user", "assistant", "tool"]
    content: str | list[ContentBlock] | None = None


_CANONICAL_FIELDS = {"model", "messages", "stream"}


class ChatCompletionRequest(BaseModel):
    """Canonical chat request; any field beyond model/messages/stream is a passthrough parameter."""

    model_config = ConfigDict(extra="allow")

    model: str
    messages: list[ChatCompletionMessage]
    stream: bool = False

    temperature: float | None = None
    max_tokens: int | None = None
    top_p: float | None = None

    @field_validator("temperature")
    @classmethod
    def _validate_temperature(cls, v: float | None) -> float | None:
        if v is None:
            return None
        if not (0.0 <= v <= 2.0):
            raise ValueError("temperature must be between 0 and 2.")
        return v

    @field_validator("top_p")
    @classmethod
    def _validate_top_p(cls, v: float | None) -> float | None:
        if v is None:
            return None
        if not (0.0 < v <= 1.0):
            raise ValueError("top_p must be > 0 and <= 1.")
        return v

    @field_validator("max_tokens")
    @classmethod
    def _validate_max_tokens(cls, v: int | None) -> int | None:
        if v is None:
            return None
        if v <= 0:
            raise ValueError("max_tokens must be > 0.")
        return v

    def message_dicts(self) -> list[dict[str, Any]]:
        return [m.model_dump(exclude_none=True) for m in self.messages]

    def params(self) -> dict[str, Any]:
        dumped = self.model_dump(exclude_none=True)
        return {k: v for k, v in dumped.items() if k not in _CANONICAL_FIELDS}


class ChatCompletionAssistantMessage(BaseModel):
    model_config = ConfigDict(extra="allow")

    role: str = "assistant"
    content: str = ""
    tool_calls: Any | None = None


class ChatCompletionChoice(BaseModel):
    index: int = Field(default=0, ge=0)
    message: ChatCompletionAssistantMessage
    finish_reason: str = "stop"
    logprobs: Any | None = None


class Usage(BaseModel):
    prompt_tokens: int = Field(default=0, ge=0)
    completion_tokens: int = Field(default=0, ge=0)
    total_tokens: int = Field(default=0, ge=0)


class ChatCompletionResponse(BaseModel):
    id: str = Field(default_factory=lambda: f"chatcmpl-{uuid.uuid4().hex}")
    object: Literal["chat.completion"] = "chat.completion"
    created: int = Field(default_factory=lambda: int(time.time()))
    model: str
    choices: list[ChatCompletionChoice] = Field(min_length=1)
    usage: Usage = Field(default_factory=Usage)

    @property
    def content(self) -> str:
        return self.choices[0].message.content


class ModelCard(BaseModel):
    id: str
    object: Literal["model"] = "model"
    created: int = Field(default_factory=lambda: int(time.time()))
    owned_by: str


class ModelList(BaseModel):
    object: Literal["list"] = "list"
    data: list[ModelCard]


class OpenAIError(BaseModel):
    message: str
    type: str = "api_error"
    param: str | None = None
    code: str | None = None


class OpenAIErrorResponse(BaseModel):
    error: OpenAIError


def make_openai_error_response(
    *,
    message: str,
    type: str = "api_error",
    param: str | None = None,
    code: str | None = None,
) -> OpenAIErrorResponse:
    return OpenAIErrorResponse(error=OpenAIError(message=message, type=type, param=param, code=code))
