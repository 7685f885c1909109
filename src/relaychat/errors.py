"""Exception hierarchy shared by the relay, the storage layer and the HTTP API."""

from __future__ import annotations

CRASH_HINT = (
    "The model backend returned {status} without an error message. It likely "
    "crashed (e.g. a CUDA error). Restart Ollama (`ollama serve` or "
    "`systemctl restart ollama`) and try again."
)


class RelayChatError(Exception):
    """Base exception for relaychat."""

    kind = "internal"
    status_code = 500

    def __init__(self, message: str, status_code: int | None = None):
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        super().__init__(message)

    def to_dict(self) -> dict:
        return {"error": self.message, "kind": self.kind}


class UpstreamUnavailable(RelayChatError):
    """The inference backend could not be reached at all."""

    kind = "transport"
    status_code = 502


class BackendRejected(RelayChatError):
    """The backend answered with a structured error payload."""

    kind = "rejected"


class BackendCrashed(RelayChatError):
    """The backend failed with a non-success status and no usable body."""

    kind = "crashed"

    def __init__(self, status_code: int):
        super().__init__(CRASH_HINT.format(status=status_code), status_code)

    def to_dict(self) -> dict:
        return {**super().to_dict(), "hint": True}


class ConversationNotFound(RelayChatError):
    kind = "not_found"
    status_code = 404

    def __init__(self, conversation_id: str):
        self.conversation_id = conversation_id
        super().__init__(f"Conversation not found: {conversation_id}")
