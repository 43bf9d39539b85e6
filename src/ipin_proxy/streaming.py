from __future__ import annotations

import json
from typing import Any, AsyncIterator

from .openai_compat import ChatCompletionResponse


def sse_encode(data: str) -> bytes:
    return f"data: {data}\n\n".encode("utf-8")


def openai_chunk(
    *,
    response: ChatCompletionResponse,
    index: int,
    delta: dict[str, Any],
    finish_reason: str | None = None,
) -> dict[str, Any]:
    return {
        "id": response.id,
        "object": "chat.completion.chunk",
        "created": response.created,
        "model": response.model,
        "choices": [{"index": index, "delta": delta, "finish_reason": finish_reason}],
    }


async def sse_from_completion(response: ChatCompletionResponse) -> AsyncIterator[bytes]:
    """
    Replay a complete chat completion as an OpenAI-style SSE stream.

    Used for providers that cannot stream; every choice is sent as one role
    chunk, one content chunk and one finish chunk, all under the response id.
    """
    for choice in response.choices:
        role = {"role": choice.message.role}
        yield sse_encode(json.dumps(openai_chunk(response=response, index=choice.index, delta=role)))
        if choice.message.content:
            delta = {"content": choice.message.content}
            yield sse_encode(json.dumps(openai_chunk(response=response, index=choice.index, delta=delta)))
        yield sse_encode(
            json.dumps(
                openai_chunk(response=response, index=choice.index, delta={}, finish_reason=choice.finish_reason)
            )
        )
    yield sse_encode("[DONE]")
