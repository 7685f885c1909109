"""CLI interface for relaychat."""

from __future__ import annotations

import asyncio
import logging
import shutil
import signal
import sys

import click
import httpx

from . import __version__
from .artifacts import extract_files
from .channels import split_channels
from .config import DATA_DIR, HOST, OLLAMA_URL, PORT, SERVER_URL, SQLITE_PATH
from .errors import RelayChatError
from .render import (
    STATUS_TEXT,
    format_context_usage,
    format_file_summary,
    format_meta,
    render_conversation,
    render_tree,
)
from .session import ChatState, SessionStatus, StreamSession

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


@click.group()
@click.version_option(version=__version__, prog_name="relaychat")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
)
def cli(log_level: str):
    """relaychat: chat with local Ollama models and keep the transcripts.

    Run `relaychat serve` to start the relay and history server, then
    `relaychat chat` to talk to a model through it.
    """
    logging.basicConfig(level=log_level.upper(), format=LOG_FORMAT, stream=sys.stderr)


@cli.command()
@click.option("--host", default=HOST, show_default=True)
@click.option("--port", default=PORT, show_default=True, type=int)
def serve(host: str, port: int):
    """Start the HTTP server (chat relay + history API)."""
    import uvicorn

    from .server import create_app

    click.echo(f"relaychat running at http://{host}:{port} (Ollama: {OLLAMA_URL})")
    uvicorn.run(create_app(), host=host, port=port, log_level="warning")


class _StreamPrinter:
    """Echo a session's answer to the terminal as it grows."""

    def __init__(self):
        self._printed = ""
        self._status: SessionStatus | None = None

    def start(self):
        self._printed = ""
        self._status = None
        click.echo(click.style("Assistant", bold=True))

    def update(self, session: StreamSession):
        if session.finished:
            return
        answer = session.accumulated_answer
        if not answer and session.status is not self._status:
            self._status = session.status
            text = STATUS_TEXT.get(session.status.value)
            if text:
                click.echo(click.style(text, dim=True))
            return
        if answer.startswith(self._printed):
            click.echo(answer[len(self._printed):], nl=False)
        else:
            click.echo("\n" + answer, nl=False)
        self._printed = answer

    def finish(self, session: StreamSession):
        final = split_channels(session.draft.content).answer
        if session.status is SessionStatus.ERRORED:
            if self._printed:
                click.echo()
            click.echo(click.style(final, fg="red"))
        elif final.startswith(self._printed):
            click.echo(final[len(self._printed):])
        else:
            click.echo("\n" + final)
        click.echo(click.style(format_meta(session.draft), dim=True))
        summary = format_file_summary(session.artifacts.paths)
        if summary:
            click.echo(click.style(summary, dim=True))


def _warn_persist_failed(session: StreamSession):
    click.echo(click.style(session.persist_error or "Could not save the conversation.", fg="yellow"), err=True)


async def _run_session(session: StreamSession):
    """Run a session with Ctrl-C mapped to stop()."""
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, session.stop)
        installed = True
    except (NotImplementedError, RuntimeError):
        installed = False
    try:
        await session.run()
    finally:
        if installed:
            loop.remove_signal_handler(signal.SIGINT)


async def _chat_loop(server: str, model: str | None, system_prompt: str | None, conversation_id: str | None):
    from .client import RelayClient

    client = RelayClient(server)
    try:
        try:
            config = await client.get_config()
        except httpx.HTTPError as e:
            raise click.ClickException(f"Cannot reach the relaychat server at {server}: {e}")

        printer = _StreamPrinter()
        state = ChatState(
            client,
            model=model or config.get("defaultModel") or "",
            system_prompt=system_prompt if system_prompt is not None else config.get("defaultSystemPrompt") or "",
            window=int(config.get("maxMessagesInContext") or 0),
            on_update=printer.update,
            on_persist_failed=_warn_persist_failed,
        )

        if conversation_id:
            if await state.load(conversation_id) is None:
                raise click.ClickException(f"Conversation not found: {conversation_id}")
            click.echo(render_conversation(state.messages))
        if not state.model:
            click.echo("No model selected. Use /model <name> (see `relaychat models`).")

        while True:
            try:
                text = click.prompt(">", default="", show_default=False)
            except click.exceptions.Abort:
                click.echo()
                break
            text = text.strip()
            if not text:
                continue
            if text.startswith("/"):
                if not await _chat_command(state, client, text):
                    break
                continue

            session = state.submit(text)
            if session is None:
                click.echo("Select a model first (/model <name>).")
                continue
            printer.start()
            await _run_session(session)
            printer.finish(session)
            info = await client.model_info(state.model)
            click.echo(click.style(
                format_context_usage(state.context_estimate(), info.context_length), dim=True
            ))
    finally:
        await client.aclose()


async def _chat_command(state: ChatState, client, text: str) -> bool:
    """Handle a /command; returns False to leave the chat."""
    command, _, arg = text.partition(" ")
    arg = arg.strip()
    if command in ("/quit", "/exit"):
        return False
    if command == "/new":
        state.new_chat()
        click.echo("New chat.")
    elif command == "/open" and arg:
        if await state.load(arg) is None:
            click.echo(f"Conversation not found: {arg}")
        else:
            click.echo(render_conversation(state.messages))
    elif command == "/history":
        for item in await client.list():
            marker = "*" if item.id == state.current_id else " "
            click.echo(f"{marker} {item.id}  {item.title}")
    elif command == "/model":
        if arg:
            state.model = arg
            client.clear_model_cache(arg)
        click.echo(f"Model: {state.model or '(none)'}")
    elif command == "/system":
        state.system_prompt = arg
        click.echo("System prompt set." if arg else "System prompt cleared.")
    elif command == "/files":
        extractor = state.artifacts
        content = extractor.get(arg) if arg else None
        if content is not None:
            click.echo(content)
        elif extractor.paths:
            click.echo(render_tree(extractor.tree))
        else:
            click.echo("No files found in this conversation.")
    else:
        click.echo("Commands: /new /open ID /history /model NAME /system TEXT /files [PATH] /quit")
    return True


@cli.command()
@click.option("--model", "-m", default=None, help="Model to chat with")
@click.option("--system", "-s", "system_prompt", default=None, help="System prompt")
@click.option("--conversation", "-c", "conversation_id", default=None, help="Continue a stored conversation")
@click.option("--server", default=SERVER_URL, show_default=True, help="relaychat server URL")
def chat(model: str | None, system_prompt: str | None, conversation_id: str | None, server: str):
    """Chat interactively through a running relaychat server.

    Press Ctrl-C while an answer streams to stop it; the partial answer is kept.
    """
    asyncio.run(_chat_loop(server, model, system_prompt, conversation_id))


def _open_store():
    if not SQLITE_PATH.exists():
        click.echo("No conversations yet. Start the server and chat first:")
        click.echo("  relaychat serve")
        return None

    from .storage import ConversationStore

    return ConversationStore(SQLITE_PATH)


@cli.command()
@click.option("--limit", default=20, show_default=True, type=int)
def history(limit: int):
    """List stored conversations, most recent first."""
    store = _open_store()
    if store is None:
        return
    items = store.list(limit=limit)
    store.close()
    if not items:
        click.echo("No conversations found.")
    for item in items:
        click.echo(f"{item.id}  {item.title}")


@cli.command()
@click.argument("conversation_id")
@click.option("--reasoning", is_flag=True, help="Show the full reasoning text")
def show(conversation_id: str, reasoning: bool):
    """Print a stored conversation."""
    store = _open_store()
    if store is None:
        return
    conv = store.get(conversation_id)
    store.close()
    if conv is None:
        raise click.ClickException(f"Conversation not found: {conversation_id}")
    click.echo(render_conversation(conv.messages, show_reasoning=reasoning))


@cli.command()
@click.argument("conversation_id")
@click.option("--path", "file_path", default=None, help="Print one extracted file")
def files(conversation_id: str, file_path: str | None):
    """Show the file tree extracted from a conversation's code blocks."""
    store = _open_store()
    if store is None:
        return
    conv = store.get(conversation_id)
    store.close()
    if conv is None:
        raise click.ClickException(f"Conversation not found: {conversation_id}")

    extractor = extract_files(conv.messages)
    if file_path:
        content = extractor.get(file_path)
        if content is None:
            raise click.ClickException(f"No file {file_path} in {conversation_id}")
        click.echo(content)
        return
    if not extractor.paths:
        click.echo("No files found in this conversation.")
        return
    click.echo(render_tree(extractor.tree))


@cli.command()
@click.argument("conversation_id")
def delete(conversation_id: str):
    """Delete a stored conversation."""
    store = _open_store()
    if store is None:
        return
    try:
        store.delete(conversation_id)
    except RelayChatError as e:
        raise click.ClickException(e.message)
    finally:
        store.close()
    click.echo(f"Deleted {conversation_id}")


@cli.command()
def models():
    """List the models available on the Ollama backend."""
    from .models import ContextInfo
    from .relay import UpstreamRelay

    async def _list():
        relay = UpstreamRelay(OLLAMA_URL)
        try:
            found = await relay.list_models()
            sizes = {}
            for m in found:
                try:
                    sizes[m.name] = await relay.show_model(m.name)
                except RelayChatError as e:
                    logger.warning("No details for %s: %s", m.name, e.message)
                    sizes[m.name] = ContextInfo()
        finally:
            await relay.aclose()
        return found, sizes

    try:
        found, sizes = asyncio.run(_list())
    except RelayChatError as e:
        raise click.ClickException(e.message)

    if not found:
        click.echo("No models installed. Pull one with `ollama pull <model>`.")
    for m in found:
        ctx = sizes[m.name].context_length
        click.echo(f"{m.name}" + (f"  (context {ctx:,})" if ctx else ""))


@cli.command()
def stats():
    """Show statistics about your stored conversations."""
    store = _open_store()
    if store is None:
        return
    s = store.get_stats()
    store.close()

    click.echo()
    click.echo(click.style("relaychat statistics", bold=True))
    click.echo(f"  Conversations:  {s['total_conversations']:,}")
    click.echo(f"  Messages:       {s['total_messages']:,}")
    click.echo(f"  Avg msgs/conv:  {s['avg_messages_per_conversation']}")
    if s["avg_gen_seconds"] is not None:
        click.echo(f"  Avg gen time:   {s['avg_gen_seconds']}s")
    if s["top_models"]:
        click.echo("  Models used:")
        for m in s["top_models"]:
            click.echo(f"    {m['model']}: {m['count']:,}")

    db_size = SQLITE_PATH.stat().st_size if SQLITE_PATH.exists() else 0
    click.echo(f"  Storage:        {db_size / (1024 * 1024):.1f} MB")
    click.echo(f"  Location:       {DATA_DIR}")
    click.echo()


@cli.command()
@click.confirmation_option(prompt="This will delete all stored conversations. Are you sure?")
def reset():
    """Delete all stored data and start fresh."""
    if DATA_DIR.exists():
        shutil.rmtree(DATA_DIR)
        click.echo(f"Deleted {DATA_DIR}")
    else:
        click.echo("No data to delete.")
