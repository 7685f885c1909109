"""
Shared pytest fixtures for relaychat tests.

Provides:
- A temporary SQLite conversation store
- An in-memory async transcript store for session tests
- Helpers for building mocked Ollama / relaychat HTTP backends
"""

import json

import httpx
import pytest

from relaychat.client import RelayClient
from relaychat.models import Conversation, new_conversation_id
from relaychat.relay import UpstreamRelay
from relaychat.storage import ConversationStore


# ============================================================================
# Stores
# ============================================================================

@pytest.fixture
def store(tmp_path):
    s = ConversationStore(tmp_path / "conversations.db")
    yield s
    s.close()


class MemoryStore:
    """Async transcript store keeping deep copies, like a real round trip would."""

    def __init__(self):
        self.docs: dict[str, Conversation] = {}
        self.creates = 0
        self.updates = 0
        self.fail_updates = 0

    async def create(self, conv: Conversation) -> str:
        self.creates += 1
        conv_id = conv.id or new_conversation_id()
        self.docs[conv_id] = conv.model_copy(update={"id": conv_id}, deep=True)
        return conv_id

    async def update(self, conversation_id: str, conv: Conversation):
        self.updates += 1
        if self.fail_updates:
            self.fail_updates -= 1
            raise OSError("disk full")
        self.docs[conversation_id] = conv.model_copy(update={"id": conversation_id}, deep=True)

    async def get(self, conversation_id: str):
        conv = self.docs.get(conversation_id)
        return conv.model_copy(deep=True) if conv is not None else None

    async def delete(self, conversation_id: str):
        del self.docs[conversation_id]


@pytest.fixture
def memory_store():
    return MemoryStore()


# ============================================================================
# HTTP backends
# ============================================================================

def encode_frames(*frames: dict) -> bytes:
    return b"".join(json.dumps(f).encode("utf-8") + b"\n" for f in frames)


def content_frame(text: str) -> dict:
    return {"message": {"role": "assistant", "content": text}, "done": False}


@pytest.fixture
def ndjson():
    return encode_frames


@pytest.fixture
def chunk():
    """One stream line carrying an answer fragment."""
    return lambda text: encode_frames(content_frame(text))


@pytest.fixture
def mock_relay():
    """Build an UpstreamRelay talking to a MockTransport handler."""

    def _make(handler) -> UpstreamRelay:
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        return UpstreamRelay("http://ollama.test", client=client)

    return _make


@pytest.fixture
def mock_client():
    """Build a RelayClient talking to a MockTransport handler."""

    def _make(handler) -> RelayClient:
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        return RelayClient("http://relay.test", client=client)

    return _make
