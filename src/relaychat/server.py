"""FastAPI server: chat relay, model metadata and conversation history."""

from __future__ import annotations

import logging
import sqlite3
from contextlib import asynccontextmanager
from typing import AsyncIterator

import httpx
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, StreamingResponse
from starlette.background import BackgroundTask

from . import __version__
from .config import (
    DEFAULT_MODEL,
    DEFAULT_SYSTEM_PROMPT,
    MAX_MESSAGES_IN_CONTEXT,
    OLLAMA_URL,
    SQLITE_PATH,
)
from .errors import ConversationNotFound, RelayChatError
from .models import ChatRequest, Conversation
from .relay import RelayStream, UpstreamRelay
from .storage import ConversationStore

logger = logging.getLogger(__name__)


async def _forward(stream: RelayStream) -> AsyncIterator[bytes]:
    """Pass backend bytes through as they arrive.

    Headers are already committed here, so a backend failure just ends the
    stream. Client disconnects cancel this generator and close the backend call.
    """
    try:
        async for chunk in stream.iter_bytes():
            yield chunk
    except httpx.HTTPError as e:
        logger.warning("Ollama stream broke after headers were sent: %s", e)
    finally:
        await stream.aclose()


def create_app(
    store: ConversationStore | None = None,
    relay: UpstreamRelay | None = None,
) -> FastAPI:
    owns_store = store is None
    store = store if store is not None else ConversationStore(SQLITE_PATH)
    relay = relay if relay is not None else UpstreamRelay(OLLAMA_URL)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("relaychat relaying to %s", relay.base_url)
        yield
        await relay.aclose()
        if owns_store:
            store.close()

    app = FastAPI(title="relaychat", version=__version__, lifespan=lifespan)
    app.state.store = store
    app.state.relay = relay

    @app.exception_handler(RelayChatError)
    async def relaychat_error_handler(request: Request, exc: RelayChatError):
        return JSONResponse(exc.to_dict(), status_code=exc.status_code)

    @app.exception_handler(sqlite3.Error)
    async def storage_error_handler(request: Request, exc: sqlite3.Error):
        logger.error("Storage error on %s: %s", request.url.path, exc)
        return JSONResponse({"error": str(exc), "kind": "storage"}, status_code=500)

    @app.get("/api/config")
    async def get_config():
        return {
            "ollamaUrl": relay.base_url,
            "defaultSystemPrompt": DEFAULT_SYSTEM_PROMPT,
            "defaultModel": DEFAULT_MODEL,
            "maxMessagesInContext": max(MAX_MESSAGES_IN_CONTEXT, 0),
        }

    @app.get("/api/models")
    async def list_models():
        models = await relay.list_models()
        return [m.to_wire() for m in models]

    @app.get("/api/model-info")
    async def model_info(model: str | None = None):
        if not model:
            return JSONResponse({"error": "Missing model"}, status_code=400)
        info = await relay.show_model(model)
        return info.model_dump(by_alias=True)

    @app.post("/api/chat")
    async def chat(body: ChatRequest):
        stream = await relay.open(body.model_dump())
        return StreamingResponse(
            _forward(stream),
            media_type="application/x-ndjson",
            headers={"Cache-Control": "no-cache"},
            background=BackgroundTask(stream.aclose),
        )

    @app.get("/api/history")
    def list_history():
        return [s.to_wire() for s in store.list()]

    @app.get("/api/history/{conversation_id}")
    def get_history(conversation_id: str):
        conv = store.get(conversation_id)
        if conv is None:
            raise ConversationNotFound(conversation_id)
        return conv.to_wire()

    @app.post("/api/history")
    def create_history(conv: Conversation):
        return {"id": store.create(conv)}

    @app.put("/api/history/{conversation_id}")
    def update_history(conversation_id: str, conv: Conversation):
        store.update(conversation_id, conv)
        return {"ok": True}

    @app.delete("/api/history/{conversation_id}")
    def delete_history(conversation_id: str):
        store.delete(conversation_id)
        return {"ok": True}

    return app
