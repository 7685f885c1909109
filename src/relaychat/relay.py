"""Streaming pass-through to the Ollama inference backend."""

from __future__ import annotations

import json
import logging
from typing import Any, AsyncIterator

import httpx

from .config import OLLAMA_URL
from .context import parse_context_length
from .errors import BackendCrashed, BackendRejected, RelayChatError, UpstreamUnavailable
from .models import ContextInfo, ModelInfo

logger = logging.getLogger(__name__)

# No read timeout: a stalled generation stalls until the transport errors
# or the client goes away.
DEFAULT_TIMEOUT = httpx.Timeout(10.0, read=None)


def classify_failure(status_code: int, body: bytes) -> RelayChatError:
    """Turn a non-success backend response into a rejection or a crash."""
    text = body.decode("utf-8", errors="replace").strip()
    if not text:
        return BackendCrashed(status_code)
    try:
        parsed = json.loads(text)
    except ValueError:
        return BackendRejected(text, status_code)
    if isinstance(parsed, dict):
        err = parsed.get("error")
        if isinstance(err, str) and err:
            return BackendRejected(err, status_code)
    return BackendCrashed(status_code)


class RelayStream:
    """An open, successful backend response whose body has not been read."""

    def __init__(self, response: httpx.Response):
        self.response = response

    async def iter_bytes(self) -> AsyncIterator[bytes]:
        async for chunk in self.response.aiter_raw():
            if chunk:
                yield chunk

    async def aclose(self):
        await self.response.aclose()


class UpstreamRelay:
    """Client for the backend's chat, tags and show endpoints."""

    def __init__(
        self,
        base_url: str = OLLAMA_URL,
        client: httpx.AsyncClient | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._client = client
        self._owns_client = client is None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=DEFAULT_TIMEOUT)
        return self._client

    async def open(self, payload: dict[str, Any]) -> RelayStream:
        """Start a streaming chat call; raises before any byte is relayed on failure."""
        body = {**payload, "stream": True}
        request = self.client.build_request("POST", f"{self.base_url}/api/chat", json=body)
        try:
            response = await self.client.send(request, stream=True)
        except httpx.HTTPError as e:
            logger.warning("Cannot reach Ollama at %s: %s", self.base_url, e)
            raise UpstreamUnavailable(
                f"Cannot reach Ollama at {self.base_url}: {str(e) or type(e).__name__}"
            ) from e

        if response.is_success:
            return RelayStream(response)

        try:
            raw = await response.aread()
        except httpx.HTTPError:
            raw = b""
        finally:
            await response.aclose()
        error = classify_failure(response.status_code, raw)
        logger.warning(
            "Ollama rejected chat request (%s, %s): %s",
            response.status_code, error.kind, error.message,
        )
        raise error

    async def list_models(self) -> list[ModelInfo]:
        try:
            response = await self.client.get(f"{self.base_url}/api/tags")
        except httpx.HTTPError as e:
            raise UpstreamUnavailable(f"Cannot reach Ollama at {self.base_url}: {e}") from e
        if not response.is_success:
            raise UpstreamUnavailable(response.reason_phrase or "Cannot reach Ollama")
        data = response.json()
        return [
            ModelInfo(name=m["name"], modified=m.get("modified_at"))
            for m in data.get("models") or []
            if isinstance(m, dict) and m.get("name")
        ]

    async def show_model(self, model: str) -> ContextInfo:
        try:
            response = await self.client.post(f"{self.base_url}/api/show", json={"model": model})
        except httpx.HTTPError as e:
            raise UpstreamUnavailable(f"Cannot reach Ollama at {self.base_url}: {e}") from e
        if not response.is_success:
            error = classify_failure(response.status_code, response.content)
            if isinstance(error, BackendCrashed):
                error = BackendRejected(response.reason_phrase or "Request failed", response.status_code)
            raise error
        return parse_context_length(response.json())

    async def aclose(self):
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None
