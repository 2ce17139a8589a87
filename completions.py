"""
Request and response shaping for the non-streaming path.

- build_upstream_request: OpenAI chat request -> NIM chat request
- map_completion: NIM chat response -> OpenAI chat response
"""

from __future__ import annotations

import time
import uuid
from typing import Any

from transcoder import DEFAULT_MARKERS

DEFAULT_TEMPERATURE = 0.6
DEFAULT_MAX_TOKENS = 9024

# OpenAI sampling fields forwarded as-is when the caller sets them
PASSTHROUGH_PARAMS = (
    "top_p",
    "stop",
    "presence_penalty",
    "frequency_penalty",
    "seed",
    "n",
)

ZERO_USAGE = {"prompt_tokens": 0, "completion_tokens": 0, "total_tokens": 0}


def build_upstream_request(
    body: dict[str, Any],
    upstream_model: str,
    messages: list[dict[str, Any]],
    default_temperature: float = DEFAULT_TEMPERATURE,
    default_max_tokens: int = DEFAULT_MAX_TOKENS,
    thinking_mode: bool = False,
) -> dict[str, Any]:
    """Build the upstream request body. Prompt selection fields are never forwarded."""
    temperature = body.get("temperature")
    max_tokens = body.get("max_tokens")

    request: dict[str, Any] = {
        "model": upstream_model,
        "messages": messages,
        "temperature": default_temperature if temperature is None else temperature,
        "max_tokens": max_tokens or default_max_tokens,
        "stream": bool(body.get("stream", False)),
    }
    for param in PASSTHROUGH_PARAMS:
        if body.get(param) is not None:
            request[param] = body[param]

    if thinking_mode:
        request["chat_template_kwargs"] = {"thinking": True}

    return request


def generate_completion_id() -> str:
    return f"chatcmpl-{uuid.uuid4().hex}"


def _merge_reasoning(content: str, reasoning: Any) -> str:
    if not isinstance(reasoning, str) or not reasoning:
        return content
    # Non-streaming output closes the block on its own line
    return f"{DEFAULT_MARKERS.open}{reasoning}\n{DEFAULT_MARKERS.close}{content}"


def map_completion(
    upstream: dict[str, Any], requested_model: str, show_reasoning: bool = False
) -> dict[str, Any]:
    """
    Translate a complete upstream response into the OpenAI response shape.

    The caller's requested model name is reported, not the upstream one.
    Reasoning is prefixed to content in a <think> block when show_reasoning
    is set and otherwise dropped.

    Raises:
        ValueError: If the upstream body is not a chat completion object
    """
    if not isinstance(upstream, dict):
        raise ValueError(f"expected a JSON object, got {type(upstream).__name__}")
    upstream_choices = upstream.get("choices") or []
    if not isinstance(upstream_choices, list):
        raise ValueError("'choices' is not a list")

    choices = []
    for position, choice in enumerate(upstream_choices):
        if not isinstance(choice, dict):
            raise ValueError(f"choice {position} is not an object")
        message = choice.get("message") or {}
        if not isinstance(message, dict):
            raise ValueError(f"choice {position} message is not an object")
        content = message.get("content") or ""
        if show_reasoning and isinstance(content, str):
            content = _merge_reasoning(content, message.get("reasoning_content"))

        choices.append(
            {
                "index": choice.get("index", position),
                "message": {
                    "role": message.get("role", "assistant"),
                    "content": content,
                },
                "finish_reason": choice.get("finish_reason"),
            }
        )

    return {
        "id": generate_completion_id(),
        "object": "chat.completion",
        "created": int(time.time()),
        "model": requested_model,
        "choices": choices,
        "usage": upstream.get("usage") or dict(ZERO_USAGE),
    }
