"""Client-side generation sessions.

A StreamSession owns one in-flight generation: it reads the relayed stream,
rebuilds the assistant draft in the conversation's shared message list and
persists it with a debounced writer. ChatState is the single-view front end
state that sessions are attached to and detached from.
"""

from __future__ import annotations

import asyncio
import logging
import time
from enum import Enum
from typing import Awaitable, Callable, Protocol

import httpx

from .artifacts import ArtifactExtractor, extract_files
from .channels import join_channels, split_channels
from .client import TRANSPORT_HINT, RelayClient, describe_chat_failure
from .config import SAVE_DEBOUNCE_SECONDS, STOP_MARKER
from .context import build_chat_messages, estimate_tokens
from .framing import Frame, LineFrameDecoder
from .models import ChatRequest, Conversation, Message

logger = logging.getLogger(__name__)


class TranscriptStore(Protocol):
    async def create(self, conv: Conversation) -> str: ...

    async def update(self, conversation_id: str, conv: Conversation) -> None: ...

    async def get(self, conversation_id: str) -> Conversation | None: ...

    async def delete(self, conversation_id: str) -> None: ...


class SessionStatus(str, Enum):
    IDLE = "idle"
    SENDING = "sending"
    WAITING = "waiting"
    STREAMING = "streaming"
    COMPLETED = "completed"
    STOPPED = "stopped"
    ERRORED = "errored"

    @property
    def terminal(self) -> bool:
        return self in (SessionStatus.COMPLETED, SessionStatus.STOPPED, SessionStatus.ERRORED)


class CancellationToken:
    """One-shot cancellation; cancelling twice has no further effect."""

    def __init__(self):
        self._cancelled = False
        self._task: asyncio.Future | None = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def bind(self, task: asyncio.Future):
        self._task = task
        if self._cancelled:
            task.cancel()

    def cancel(self) -> bool:
        if self._cancelled:
            return False
        self._cancelled = True
        if self._task is not None and not self._task.done():
            self._task.cancel()
        return True


class Debouncer:
    """Coalesce triggers into one call after *delay* seconds.

    At most one timer is pending; triggers while it waits are absorbed.
    """

    def __init__(self, delay: float, callback: Callable[[], Awaitable[None]]):
        self.delay = delay
        self.callback = callback
        self._timer: asyncio.Task | None = None

    @property
    def pending(self) -> bool:
        return self._timer is not None

    def schedule(self):
        if self._timer is not None:
            return
        self._timer = asyncio.get_running_loop().create_task(self._fire())

    async def _fire(self):
        await asyncio.sleep(self.delay)
        self._timer = None
        await self.callback()

    def cancel(self):
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None


class StreamSession:
    """One generation, from submit to a finalized, persisted assistant message."""

    def __init__(
        self,
        client: RelayClient,
        store: TranscriptStore,
        messages: list[Message],
        model: str,
        system_prompt: str = "",
        chat_id: str | None = None,
        window: int = 0,
        save_delay: float = SAVE_DEBOUNCE_SECONDS,
        on_update: Callable[[StreamSession], None] | None = None,
        on_persist_failed: Callable[[StreamSession], None] | None = None,
    ):
        self.client = client
        self.store = store
        self.messages = messages
        self.model = model
        self.system_prompt = system_prompt
        self.chat_id = chat_id
        self.window = window
        self.on_update = on_update
        self.on_persist_failed = on_persist_failed

        self.status = SessionStatus.IDLE
        self.token = CancellationToken()
        self.draft: Message | None = None
        self.request: ChatRequest | None = None
        self.accumulated_answer = ""
        self.accumulated_reasoning = ""
        self.started_at: float | None = None
        self.error: str | None = None
        self.persist_error: str | None = None
        self.artifacts = ArtifactExtractor()

        self._raw_answer = ""
        self._raw_reasoning = ""
        self._saver = Debouncer(save_delay, self._save_quietly)
        self._save_lock = asyncio.Lock()

    # -- state --------------------------------------------------------------

    @property
    def assistant_msg_id(self) -> str | None:
        return self.draft.id if self.draft else None

    @property
    def finished(self) -> bool:
        return self.status.terminal

    def _set_status(self, status: SessionStatus):
        logger.debug("session %s: %s -> %s", self.assistant_msg_id, self.status.value, status.value)
        self.status = status
        self._notify()

    def _notify(self):
        if self.on_update is not None:
            self.on_update(self)

    def snapshot(self) -> Conversation:
        return Conversation(
            id=self.chat_id,
            model=self.model,
            system_prompt=self.system_prompt,
            messages=list(self.messages),
        )

    # -- lifecycle ----------------------------------------------------------

    def begin(self, text: str):
        """Append the user turn and an empty assistant draft; IDLE -> SENDING."""
        if self.status is not SessionStatus.IDLE:
            raise RuntimeError("session already started")
        self.artifacts = extract_files(self.messages)
        self.messages.append(Message(role="user", content=text))
        self.request = ChatRequest(
            model=self.model,
            messages=build_chat_messages(self.messages, self.system_prompt, self.window),
        )
        self.draft = Message(role="assistant", content="", model=self.model, partial=True)
        self.messages.append(self.draft)
        self._set_status(SessionStatus.SENDING)

    async def run(self) -> SessionStatus:
        """Drive the session to a terminal state and persist the result."""
        if self.draft is None:
            raise RuntimeError("begin() must be called before run()")
        reader = asyncio.ensure_future(self._generate())
        self.token.bind(reader)
        try:
            failure = await reader
        except asyncio.CancelledError:
            if not self.token.cancelled:
                reader.cancel()
                raise
            self._finalize(SessionStatus.STOPPED, self._stopped_content())
        except httpx.HTTPError as e:
            logger.warning("Chat stream failed: %s", e)
            self.error = f"Error: {str(e) or type(e).__name__}. {TRANSPORT_HINT}"
            self._finalize(SessionStatus.ERRORED, self.error)
        except Exception as e:
            logger.exception("Unexpected failure while streaming")
            self.error = f"Error: {e}"
            self._finalize(SessionStatus.ERRORED, self.error)
        else:
            if failure is not None:
                self.error = failure
                self._finalize(SessionStatus.ERRORED, failure)
            else:
                self._finalize(SessionStatus.COMPLETED, self._composed())
        await self._persist_final()
        return self.status

    def stop(self) -> bool:
        """Cancel the generation; safe to call any number of times."""
        if self.finished:
            return False
        return self.token.cancel()

    async def _generate(self) -> str | None:
        """Stream until the end; returns an error message, or None on success."""
        if self.chat_id is None:
            await self._create_conversation()

        self.started_at = time.monotonic()
        self._set_status(SessionStatus.WAITING)
        async with self.client.stream_chat(self.request) as response:
            if not response.is_success:
                body = await response.aread()
                return describe_chat_failure(response.status_code, body, response.reason_phrase)

            decoder = LineFrameDecoder()
            async for chunk in response.aiter_bytes():
                failure = self._apply(decoder.feed(chunk))
                if failure is not None:
                    return failure
            return self._apply(decoder.finish())

    def _apply(self, frames: list[Frame]) -> str | None:
        for frame in frames:
            if self.status is SessionStatus.WAITING:
                self._set_status(SessionStatus.STREAMING)
            if frame.error is not None:
                return f"Error from model: {frame.error}"
            if not frame.content and not frame.reasoning:
                continue
            self._raw_reasoning += frame.reasoning
            self._raw_answer += frame.content
            channels = split_channels(join_channels(self._raw_answer, self._raw_reasoning))
            self.accumulated_answer = channels.answer
            self.accumulated_reasoning = channels.reasoning
            self.artifacts.update(self.accumulated_answer)
            composed = self._composed()
            if composed:
                self.draft.content = composed
                self.draft.partial = True
                self._saver.schedule()
            self._notify()
        return None

    def _composed(self) -> str:
        return join_channels(self.accumulated_answer, self.accumulated_reasoning)

    def _stopped_content(self) -> str:
        composed = self._composed()
        return f"{composed}\n\n{STOP_MARKER}" if composed else STOP_MARKER

    def _finalize(self, status: SessionStatus, content: str):
        self._saver.cancel()
        self.draft.content = content
        self.artifacts.settle(split_channels(content).answer)
        self.draft.partial = False
        if self.started_at is not None:
            self.draft.gen_seconds = round(time.monotonic() - self.started_at, 3)
        self._set_status(status)

    # -- persistence --------------------------------------------------------

    async def _create_conversation(self):
        try:
            self.chat_id = await self.store.create(self.snapshot())
            logger.debug("Conversation %s created for new chat", self.chat_id)
        except Exception:
            logger.warning("Could not create conversation; streaming unsaved", exc_info=True)

    async def _save(self):
        async with self._save_lock:
            conv = self.snapshot()
            if self.chat_id is None:
                self.chat_id = await self.store.create(conv)
            else:
                await self.store.update(self.chat_id, conv)

    async def _save_quietly(self):
        try:
            await self._save()
        except Exception:
            # The in-memory draft stays authoritative; the next write retries.
            logger.warning("Streaming save of %s failed", self.chat_id, exc_info=True)

    async def _persist_final(self):
        last_error: Exception | None = None
        for attempt in range(2):
            try:
                await self._save()
                self.persist_error = None
                return
            except Exception as e:
                last_error = e
                logger.warning("Final save of %s failed (attempt %d): %s", self.chat_id, attempt + 1, e)
        self.persist_error = f"Could not save the conversation: {last_error}"
        if self.on_persist_failed is not None:
            self.on_persist_failed(self)


class ChatState:
    """The current conversation view plus the one active session.

    Switching conversations detaches the view from a running session but
    never stops it; opening that conversation again re-attaches the view to
    the session's own message list.
    """

    def __init__(
        self,
        client: RelayClient,
        store: TranscriptStore | None = None,
        model: str = "",
        system_prompt: str = "",
        window: int = 0,
        save_delay: float = SAVE_DEBOUNCE_SECONDS,
        on_update: Callable[[StreamSession], None] | None = None,
        on_persist_failed: Callable[[StreamSession], None] | None = None,
    ):
        self.client = client
        self.store = store if store is not None else client
        self.model = model
        self.system_prompt = system_prompt
        self.window = window
        self.save_delay = save_delay
        self.on_update = on_update
        self.on_persist_failed = on_persist_failed
        self.messages: list[Message] = []
        self._current_id: str | None = None
        self._session: StreamSession | None = None

    @property
    def active(self) -> StreamSession | None:
        """The most recent session while it is still running."""
        if self._session is not None and not self._session.finished:
            return self._session
        return None

    @property
    def streaming(self) -> bool:
        return self.active is not None

    @property
    def current_id(self) -> str | None:
        # A new chat learns its id once the session has created it.
        session = self._session
        if self._current_id is None and session is not None and session.messages is self.messages:
            self._current_id = session.chat_id
        return self._current_id

    def attached(self, session: StreamSession) -> bool:
        """Whether the view currently shows *session*'s conversation."""
        return session.messages is self.messages

    def new_chat(self):
        self._current_id = None
        self.messages = []

    def open(self, conv: Conversation):
        active = self.active
        self._current_id = conv.id
        if active is not None and active.chat_id is not None and active.chat_id == conv.id:
            self.messages = active.messages
            self.model = active.model or conv.model or ""
            self.system_prompt = active.system_prompt
            return
        for m in conv.messages:
            if m.partial:
                logger.info("Clearing stale draft %s in %s", m.id, conv.id)
                m.partial = False
        self.messages = conv.messages
        self.model = conv.model or ""
        if conv.system_prompt:
            self.system_prompt = conv.system_prompt

    async def load(self, conversation_id: str) -> Conversation | None:
        conv = await self.store.get(conversation_id)
        if conv is not None:
            self.open(conv)
        return conv

    async def delete(self, conversation_id: str) -> bool:
        """Delete a stored conversation unless a running session writes to it."""
        active = self.active
        if active is not None and active.chat_id == conversation_id:
            logger.warning("Refusing to delete %s while it is streaming", conversation_id)
            return False
        await self.store.delete(conversation_id)
        if self._current_id == conversation_id:
            self.new_chat()
        return True

    def submit(self, text: str) -> StreamSession | None:
        """Start a session for *text*; None when there is nothing to send."""
        text = (text or "").strip()
        if not text or self.streaming:
            return None
        if not self.model:
            logger.info("Select a model first")
            return None
        session = StreamSession(
            client=self.client,
            store=self.store,
            messages=self.messages,
            model=self.model,
            system_prompt=self.system_prompt.strip(),
            chat_id=self.current_id,
            window=self.window,
            save_delay=self.save_delay,
            on_update=self.on_update,
            on_persist_failed=self.on_persist_failed,
        )
        session.begin(text)
        self._session = session
        return session

    def stop(self) -> bool:
        active = self.active
        return active.stop() if active is not None else False

    @property
    def artifacts(self) -> ArtifactExtractor:
        """Files of the shown conversation; live while its session streams."""
        session = self._session
        if session is not None and self.attached(session):
            return session.artifacts
        return extract_files(self.messages)

    def context_estimate(self) -> int:
        return estimate_tokens(self.messages, self.system_prompt.strip(), self.window)
