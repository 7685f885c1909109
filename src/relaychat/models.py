"""Data models for conversations, chat requests and extracted artifacts."""

from __future__ import annotations

import random
import string
import time
from datetime import datetime, timezone
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

_BASE36 = string.digits + string.ascii_lowercase


def _base36(n: int) -> str:
    if n == 0:
        return "0"
    digits = []
    while n:
        n, rem = divmod(n, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def _random_base36(length: int) -> str:
    return "".join(random.choices(_BASE36, k=length))


def new_message_id() -> str:
    return f"{_base36(int(time.time() * 1000))}_{_random_base36(8)}"


def new_conversation_id() -> str:
    return f"chat_{int(time.time() * 1000)}_{_random_base36(7)}"


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class WireModel(BaseModel):
    """Snake_case in Python, camelCase on the wire; both accepted on input."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)


class Message(WireModel):
    id: str = Field(default_factory=new_message_id)
    role: Literal["user", "assistant"]
    content: str = ""
    created_at: str = Field(default_factory=utc_now_iso)
    model: str | None = None
    gen_seconds: float | None = None
    partial: bool = False


class Conversation(WireModel):
    id: str | None = None
    model: str | None = None
    system_prompt: str | None = None
    messages: list[Message] = []


class ConversationSummary(WireModel):
    id: str
    title: str


class ChatTurn(BaseModel):
    role: str
    content: str


class ChatRequest(BaseModel):
    """Body of POST /api/chat; unknown backend options pass through untouched."""

    model_config = ConfigDict(extra="allow")

    model: str
    messages: list[ChatTurn]
    stream: bool = True


class ModelInfo(WireModel):
    name: str
    modified: str | None = None


class ContextInfo(WireModel):
    context_length: int | None = None
    context_length_type: Literal["configured", "maximum"] | None = None


class VirtualFile(BaseModel):
    path: str
    content: str


class TreeNode(BaseModel):
    name: str
    type: Literal["file", "folder"]
    path: str = ""
    children: list[TreeNode] | None = None


TreeNode.model_rebuild()
