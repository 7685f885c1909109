"""Context-window helpers: request windowing, token estimates, model metadata."""

from __future__ import annotations

import re
from typing import Any, Sequence

from .models import ChatTurn, ContextInfo, Message

_NUM_CTX_RE = re.compile(r"num_ctx\s+(\d+)")


def window_messages(messages: Sequence[Message], window: int = 0) -> list[Message]:
    """Return the most recent *window* messages (0 means all of them)."""
    if window > 0:
        return list(messages[-window:])
    return list(messages)


def build_chat_messages(
    messages: Sequence[Message],
    system_prompt: str | None = None,
    window: int = 0,
) -> list[ChatTurn]:
    """Build the backend message list: system prompt + the recent turns."""
    turns = [ChatTurn(role=m.role, content=m.content) for m in window_messages(messages, window)]
    system = (system_prompt or "").strip()
    if system:
        turns.insert(0, ChatTurn(role="system", content=system))
    return turns


def estimate_tokens(
    messages: Sequence[Message],
    system_prompt: str | None = None,
    window: int = 0,
) -> int:
    """Rough token count: characters / 4, rounded half up."""
    chars = len(system_prompt or "")
    for m in window_messages(messages, window):
        chars += len(m.content or "")
    return (chars + 2) // 4


def parse_context_length(show: dict[str, Any]) -> ContextInfo:
    """Pull the context window size out of an Ollama /api/show response.

    An explicit num_ctx (top level or in the model parameters) is the
    configured size; otherwise fall back to the architecture maximum.
    """
    num_ctx = show.get("num_ctx")
    params = show.get("parameters")
    if num_ctx is None and isinstance(params, dict):
        value = params.get("num_ctx")
        if isinstance(value, (int, float)):
            num_ctx = value
    elif num_ctx is None and isinstance(params, str):
        match = _NUM_CTX_RE.search(params)
        if match:
            num_ctx = int(match.group(1))

    if num_ctx is not None:
        try:
            return ContextInfo(context_length=int(num_ctx), context_length_type="configured")
        except (TypeError, ValueError):
            pass

    model_info = show.get("model_info")
    if isinstance(model_info, dict):
        for key, value in model_info.items():
            if key.endswith(".context_length") and isinstance(value, (int, float)):
                return ContextInfo(context_length=int(value), context_length_type="maximum")

    return ContextInfo()
