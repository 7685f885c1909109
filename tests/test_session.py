"""Tests for streaming sessions, the debounced saver and the chat view state."""

import asyncio

import httpx
import pytest

from relaychat.models import Conversation, Message
from relaychat.session import (
    CancellationToken,
    ChatState,
    Debouncer,
    SessionStatus,
    StreamSession,
)


def _streaming(*chunks: bytes, hang: asyncio.Event | None = None):
    """Handler serving *chunks*; with *hang*, sets it and then never finishes."""

    def handler(request):
        async def body():
            for c in chunks:
                yield c
            if hang is not None:
                hang.set()
                await asyncio.Event().wait()

        return httpx.Response(200, content=body(), headers={"content-type": "application/x-ndjson"})

    return handler


def _partials(messages):
    return sum(1 for m in messages if m.partial)


# ============================================================================
# Primitives
# ============================================================================

class TestCancellationToken:
    async def test_cancel_is_idempotent(self):
        token = CancellationToken()
        assert token.cancel() is True
        assert token.cancel() is False
        assert token.cancelled

    async def test_bind_after_cancel_cancels_task(self):
        token = CancellationToken()
        token.cancel()
        task = asyncio.ensure_future(asyncio.sleep(10))
        token.bind(task)
        with pytest.raises(asyncio.CancelledError):
            await task


class TestDebouncer:
    async def test_coalesces_bursts(self):
        calls = []

        async def save():
            calls.append(1)

        saver = Debouncer(0.02, save)
        for _ in range(5):
            saver.schedule()
        assert saver.pending
        await asyncio.sleep(0.1)
        assert calls == [1]
        assert not saver.pending

        saver.schedule()
        await asyncio.sleep(0.1)
        assert calls == [1, 1]

    async def test_cancel(self):
        calls = []

        async def save():
            calls.append(1)

        saver = Debouncer(0.02, save)
        saver.schedule()
        saver.cancel()
        await asyncio.sleep(0.05)
        assert calls == []


# ============================================================================
# StreamSession
# ============================================================================

class TestStreamSession:
    async def test_stop_keeps_partial_answer(self, mock_client, memory_store, chunk):
        hang = asyncio.Event()
        client = mock_client(_streaming(chunk("Hel"), chunk("lo wor"), chunk("ld"), hang=hang))
        session = StreamSession(client, memory_store, [], model="llama3", save_delay=60)
        session.begin("hi")
        task = asyncio.create_task(session.run())

        await hang.wait()
        assert session.status is SessionStatus.STREAMING
        assert session.draft.content == "Hello world"
        assert session.stop() is True
        assert session.stop() is False

        assert await task is SessionStatus.STOPPED
        assert session.draft.content == "Hello world\n\n_Stopped_"
        assert session.draft.partial is False
        assert session.draft.gen_seconds is not None

        saved = memory_store.docs[session.chat_id]
        assert saved.messages[-1].content == "Hello world\n\n_Stopped_"
        assert saved.messages[-1].partial is False
        assert _partials(saved.messages) == 0

    async def test_stop_before_any_content(self, mock_client, memory_store):
        hang = asyncio.Event()
        session = StreamSession(mock_client(_streaming(hang=hang)), memory_store, [], model="m", save_delay=60)
        session.begin("hi")
        task = asyncio.create_task(session.run())
        await hang.wait()
        session.stop()
        await task
        assert session.draft.content == "_Stopped_"

    async def test_completes_with_reasoning(self, mock_client, memory_store, ndjson):
        body = ndjson(
            {"message": {"content": "", "thinking": "plan "}},
            {"message": {"content": "", "thinking": "it"}},
            {"message": {"content": "Hello"}},
            {"message": {"content": "!"}, "done": True},
        )
        seen = []
        session = StreamSession(
            mock_client(_streaming(body)), memory_store, [], model="qwen3",
            system_prompt="be brief", save_delay=60,
            on_update=lambda s: seen.append((s.status, _partials(s.messages))),
        )
        session.begin("hi")
        assert await session.run() is SessionStatus.COMPLETED

        assert session.draft.content == "<think>plan it</think>\n\nHello!"
        assert session.accumulated_answer == "Hello!"
        assert session.accumulated_reasoning == "plan it"
        assert session.draft.partial is False
        assert session.draft.model == "qwen3"
        assert session.draft.gen_seconds >= 0

        statuses = [s for s, _ in seen]
        assert statuses[0] is SessionStatus.SENDING
        assert SessionStatus.WAITING in statuses
        assert SessionStatus.STREAMING in statuses
        assert statuses[-1] is SessionStatus.COMPLETED
        assert all(p <= 1 for _, p in seen)

        saved = memory_store.docs[session.chat_id]
        assert [m.role for m in saved.messages] == ["user", "assistant"]
        assert saved.system_prompt == "be brief"

    async def test_request_carries_system_prompt_and_window(self, mock_client, memory_store, ndjson):
        history = [
            Message(role="user", content="old"),
            Message(role="assistant", content="older reply"),
        ]
        session = StreamSession(
            mock_client(_streaming(ndjson({"done": True}))), memory_store, history,
            model="m", system_prompt="sys", window=2, save_delay=60,
        )
        session.begin("new question")
        assert [(t.role, t.content) for t in session.request.messages] == [
            ("system", "sys"),
            ("assistant", "older reply"),
            ("user", "new question"),
        ]
        await session.run()

    async def test_error_frame(self, mock_client, memory_store, chunk, ndjson):
        body = chunk("partial") + ndjson({"error": "out of memory"})
        session = StreamSession(mock_client(_streaming(body)), memory_store, [], model="m", save_delay=60)
        session.begin("hi")
        assert await session.run() is SessionStatus.ERRORED
        assert session.draft.content == "Error from model: out of memory"
        assert session.draft.partial is False

    async def test_rejected_request(self, mock_client, memory_store):
        handler = lambda r: httpx.Response(404, json={"error": "model 'x' not found", "kind": "rejected"})
        session = StreamSession(mock_client(handler), memory_store, [], model="x", save_delay=60)
        session.begin("hi")
        assert await session.run() is SessionStatus.ERRORED
        assert session.draft.content == "Error from model: model 'x' not found"

    async def test_crashed_backend_shows_hint(self, mock_client, memory_store):
        hint = "The model backend returned 500 without an error message."
        handler = lambda r: httpx.Response(500, json={"error": hint, "kind": "crashed", "hint": True})
        session = StreamSession(mock_client(handler), memory_store, [], model="m", save_delay=60)
        session.begin("hi")
        await session.run()
        assert session.draft.content == hint

    async def test_transport_failure(self, mock_client, memory_store):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        session = StreamSession(mock_client(refuse), memory_store, [], model="m", save_delay=60)
        session.begin("hi")
        assert await session.run() is SessionStatus.ERRORED
        assert session.draft.content.startswith("Error: connection refused.")
        assert "relaychat server" in session.draft.content

    async def test_partial_draft_is_saved_while_streaming(self, mock_client, memory_store, chunk):
        hang = asyncio.Event()
        client = mock_client(_streaming(chunk("Hello"), chunk(" there"), hang=hang))
        session = StreamSession(client, memory_store, [], model="m", save_delay=0.01)
        session.begin("hi")
        task = asyncio.create_task(session.run())
        await hang.wait()
        await asyncio.sleep(0.05)

        saved = memory_store.docs[session.chat_id].messages[-1]
        assert saved.content == "Hello there"
        assert saved.partial is True

        session.stop()
        await task
        assert memory_store.docs[session.chat_id].messages[-1].partial is False

    async def test_final_save_is_retried(self, mock_client, memory_store, ndjson):
        memory_store.fail_updates = 1
        failed = []
        session = StreamSession(
            mock_client(_streaming(ndjson({"response": "ok", "done": True}))), memory_store, [],
            model="m", save_delay=60, on_persist_failed=failed.append,
        )
        session.begin("hi")
        await session.run()
        assert failed == []
        assert session.persist_error is None
        assert memory_store.docs[session.chat_id].messages[-1].content == "ok"

    async def test_persist_failure_is_reported(self, mock_client, memory_store, ndjson):
        memory_store.fail_updates = 10
        failed = []
        session = StreamSession(
            mock_client(_streaming(ndjson({"response": "ok", "done": True}))), memory_store, [],
            model="m", save_delay=60, on_persist_failed=failed.append,
        )
        session.begin("hi")
        assert await session.run() is SessionStatus.COMPLETED
        assert failed == [session]
        assert "disk full" in session.persist_error
        assert session.draft.content == "ok"


# ============================================================================
# ChatState
# ============================================================================

    async def test_file_tree_fills_in_while_streaming(self, mock_client, memory_store, chunk):
        hang = asyncio.Event()
        seen = []
        client = mock_client(_streaming(
            chunk("Here:\n\n`src/app.py`\n```python\nprint("), chunk("1)\n```"), hang=hang,
        ))
        session = StreamSession(
            client, memory_store, [], model="m", save_delay=60,
            on_update=lambda s: seen.append((s.artifacts.paths, s.artifacts.get("src/app.py"))),
        )
        session.begin("write it")
        task = asyncio.create_task(session.run())

        await hang.wait()
        assert (["src/app.py"], "print(") in seen
        assert session.artifacts.get("src/app.py") == "print(1)"

        session.stop()
        await task
        assert session.artifacts.paths == ["src/app.py"]

    async def test_file_tree_includes_earlier_answers(self, mock_client, memory_store, ndjson):
        history = [
            Message(role="user", content="first"),
            Message(role="assistant", content="`a.py`\n```\nx = 1\n```"),
        ]
        body = ndjson({"message": {"content": "`b.py`\n```\ny = 2\n```"}, "done": True})
        session = StreamSession(mock_client(_streaming(body)), memory_store, history, model="m", save_delay=60)
        session.begin("more")
        await session.run()
        assert sorted(session.artifacts.paths) == ["a.py", "b.py"]

    async def test_error_replaces_streamed_files(self, mock_client, memory_store, chunk, ndjson):
        body = chunk("`a.py`\n```\nx") + ndjson({"error": "out of memory"})
        session = StreamSession(mock_client(_streaming(body)), memory_store, [], model="m", save_delay=60)
        session.begin("hi")
        assert await session.run() is SessionStatus.ERRORED
        assert session.artifacts.paths == []


class TestChatState:
    async def test_submit_guards(self, mock_client, memory_store):
        state = ChatState(mock_client(_streaming()), memory_store, model="")
        assert state.submit("hello") is None
        state.model = "m"
        assert state.submit("   ") is None
        assert state.messages == []

    async def test_one_session_at_a_time(self, mock_client, memory_store, chunk):
        hang = asyncio.Event()
        state = ChatState(mock_client(_streaming(chunk("x"), hang=hang)), memory_store, model="m", save_delay=60)
        session = state.submit("first")
        task = asyncio.create_task(session.run())
        await hang.wait()

        assert state.streaming
        assert state.submit("second") is None
        assert state.stop() is True
        await task
        assert not state.streaming
        assert state.stop() is False

    async def test_new_chat_learns_its_id(self, mock_client, memory_store, ndjson):
        state = ChatState(mock_client(_streaming(ndjson({"response": "a", "done": True}))),
                          memory_store, model="m", save_delay=60)
        session = state.submit("hello")
        await session.run()
        assert state.current_id == session.chat_id
        assert state.current_id in memory_store.docs

        follow_up = state.submit("again")
        assert follow_up.chat_id == session.chat_id
        await follow_up.run()
        assert len(memory_store.docs) == 1
        assert len(memory_store.docs[session.chat_id].messages) == 4

    async def test_switching_away_and_back_reattaches(self, mock_client, memory_store, chunk):
        hang = asyncio.Event()
        state = ChatState(mock_client(_streaming(chunk("Hel"), chunk("lo"), hang=hang)),
                          memory_store, model="m", save_delay=60)
        session = state.submit("hi")
        task = asyncio.create_task(session.run())
        await hang.wait()
        chat_id = session.chat_id

        state.new_chat()
        assert not state.attached(session)
        assert state.streaming

        await state.load(chat_id)
        assert state.messages is session.messages
        assert state.attached(session)
        assert state.messages[-1].content == "Hello"

        assert await state.delete(chat_id) is False
        session.stop()
        await task
        assert state.messages[-1].content == "Hello\n\n_Stopped_"

    async def test_opening_clears_stale_partial(self, mock_client, memory_store):
        conv_id = await memory_store.create(
            Conversation(
                model="m",
                messages=[Message(role="user", content="q"), Message(role="assistant", content="a", partial=True)],
            )
        )
        state = ChatState(mock_client(_streaming()), memory_store)
        await state.load(conv_id)
        assert _partials(state.messages) == 0
        assert state.model == "m"
        assert state.current_id == conv_id

    async def test_delete_current(self, mock_client, memory_store, ndjson):
        state = ChatState(mock_client(_streaming(ndjson({"response": "a"}))), memory_store, model="m", save_delay=60)
        await state.submit("hello").run()
        conv_id = state.current_id
        assert await state.delete(conv_id) is True
        assert state.messages == []
        assert state.current_id is None

    async def test_artifacts_follow_the_attached_session(self, mock_client, memory_store, chunk):
        hang = asyncio.Event()
        state = ChatState(mock_client(_streaming(chunk("`a.py`\n```\nx = 1"), hang=hang)),
                          memory_store, model="m", save_delay=60)
        session = state.submit("hi")
        task = asyncio.create_task(session.run())
        await hang.wait()

        assert state.artifacts is session.artifacts
        assert state.artifacts.get("a.py") == "x = 1"

        state.new_chat()
        assert state.artifacts.paths == []

        session.stop()
        await task

    async def test_context_estimate(self, mock_client, memory_store):
        state = ChatState(mock_client(_streaming()), memory_store, system_prompt="s" * 60)
        state.messages = [Message(role="user", content="x" * 40), Message(role="assistant", content="y" * 100)]
        assert state.context_estimate() == 50
