"""Async client for a running relaychat server."""

from __future__ import annotations

import json
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

import httpx

from .config import SERVER_URL
from .errors import ConversationNotFound
from .models import (
    ChatRequest,
    ContextInfo,
    Conversation,
    ConversationSummary,
    ModelInfo,
)

logger = logging.getLogger(__name__)

TRANSPORT_HINT = "Check that the relaychat server is running and try again."


def describe_chat_failure(status_code: int, body: bytes, reason: str = "") -> str:
    """Human-readable text for a /api/chat response that is not a stream."""
    try:
        data = json.loads(body.decode("utf-8", errors="replace") or "null")
    except ValueError:
        data = None
    error = data.get("error") if isinstance(data, dict) else None
    kind = data.get("kind") if isinstance(data, dict) else None

    if kind == "crashed" and error:
        return error
    if kind == "rejected" and error:
        return f"Error from model: {error}"
    if kind == "transport" and error:
        return f"Error: {error}. {TRANSPORT_HINT}"
    if error:
        return f"Error: {error}"
    return f"Error: {reason or f'Request failed ({status_code})'}"


class RelayClient:
    """HTTP client for the chat stream, model metadata and history API.

    Implements the transcript store interface used by StreamSession, so a
    session persists through the same server that relays its stream.
    """

    def __init__(self, base_url: str = SERVER_URL, client: httpx.AsyncClient | None = None):
        self.base_url = base_url.rstrip("/")
        self._client = client
        self._owns_client = client is None
        self._context_cache: dict[str, ContextInfo] = {}

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(10.0, read=None))
        return self._client

    def _url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    # -- chat ---------------------------------------------------------------

    @asynccontextmanager
    async def stream_chat(self, request: ChatRequest) -> AsyncIterator[httpx.Response]:
        """Open the chat stream; the response body is left unread for the caller."""
        req = self.client.build_request("POST", self._url("/api/chat"), json=request.model_dump())
        response = await self.client.send(req, stream=True)
        try:
            yield response
        finally:
            await response.aclose()

    # -- models -------------------------------------------------------------

    async def get_config(self) -> dict:
        response = await self.client.get(self._url("/api/config"))
        response.raise_for_status()
        return response.json()

    async def list_models(self) -> list[ModelInfo]:
        response = await self.client.get(self._url("/api/models"))
        response.raise_for_status()
        return [ModelInfo.model_validate(m) for m in response.json()]

    async def model_info(self, model: str) -> ContextInfo:
        """Context window of *model*, cached until clear_model_cache()."""
        if model in self._context_cache:
            return self._context_cache[model]
        try:
            response = await self.client.get(self._url("/api/model-info"), params={"model": model})
            info = ContextInfo.model_validate(response.json()) if response.is_success else ContextInfo()
        except (httpx.HTTPError, ValueError) as e:
            logger.debug("model-info for %s failed: %s", model, e)
            info = ContextInfo()
        self._context_cache[model] = info
        return info

    def clear_model_cache(self, model: str | None = None):
        if model is None:
            self._context_cache.clear()
        else:
            self._context_cache.pop(model, None)

    # -- history ------------------------------------------------------------

    async def list(self) -> list[ConversationSummary]:
        response = await self.client.get(self._url("/api/history"))
        response.raise_for_status()
        return [ConversationSummary.model_validate(s) for s in response.json()]

    async def get(self, conversation_id: str) -> Conversation | None:
        response = await self.client.get(self._url(f"/api/history/{conversation_id}"))
        if response.status_code == 404:
            return None
        response.raise_for_status()
        return Conversation.model_validate(response.json())

    async def create(self, conv: Conversation) -> str:
        response = await self.client.post(self._url("/api/history"), json=conv.to_wire())
        response.raise_for_status()
        return response.json()["id"]

    async def update(self, conversation_id: str, conv: Conversation):
        response = await self.client.put(
            self._url(f"/api/history/{conversation_id}"), json=conv.to_wire()
        )
        if response.status_code == 404:
            raise ConversationNotFound(conversation_id)
        response.raise_for_status()

    async def delete(self, conversation_id: str):
        response = await self.client.delete(self._url(f"/api/history/{conversation_id}"))
        if response.status_code == 404:
            raise ConversationNotFound(conversation_id)
        response.raise_for_status()

    async def aclose(self):
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None
