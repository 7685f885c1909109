"""Terminal rendering: pure functions from state to text."""

from __future__ import annotations

from datetime import datetime

import click

from .channels import split_channels
from .models import Message, TreeNode

STATUS_TEXT = {
    "sending": "Sending…",
    "waiting": "Waiting for response…",
    "streaming": "Thinking…",
}


def format_message_date(iso: str | None) -> str:
    if not iso:
        return ""
    try:
        dt = datetime.fromisoformat(iso.replace("Z", "+00:00"))
    except ValueError:
        return ""
    return dt.astimezone().strftime("%b %d, %Y %H:%M")


def format_duration(seconds: float | None) -> str:
    if seconds is None or seconds <= 0:
        return ""
    return f"{seconds:.1f}s"


def format_meta(msg: Message) -> str:
    parts = [format_message_date(msg.created_at)]
    if msg.role == "assistant":
        parts += [msg.model or "", format_duration(msg.gen_seconds)]
    return " · ".join(p for p in parts if p)


def last_lines(text: str, count: int = 5) -> str:
    if not text:
        return ""
    lines = text.replace("\r\n", "\n").replace("\r", "\n").split("\n")
    return "\n".join(lines[-count:]).strip()


def format_context_usage(estimate: int, context_length: int | None = None) -> str:
    if context_length is not None:
        return f"Context: ~{estimate:,} / {context_length:,} tokens"
    return f"Context: ~{estimate:,} tokens"


def render_message(msg: Message, show_reasoning: bool = False) -> str:
    """One message as terminal text; reasoning is folded to a short preview."""
    header = click.style("You" if msg.role == "user" else "Assistant", bold=True)
    meta = format_meta(msg)
    lines = [f"{header}  {click.style(meta, dim=True)}" if meta else header]

    if msg.role == "user":
        lines.append(msg.content)
        return "\n".join(lines)

    channels = split_channels(msg.content)
    if channels.reasoning:
        shown = channels.reasoning if show_reasoning else last_lines(channels.reasoning)
        lines.append(click.style("Thinking", italic=True))
        lines.extend(click.style(f"  {line}", dim=True) for line in shown.split("\n"))
    lines.append(channels.answer)
    if msg.partial:
        lines.append(click.style("…", dim=True))
    return "\n".join(lines)


def render_conversation(messages: list[Message], show_reasoning: bool = False) -> str:
    if not messages:
        return "Start a conversation or pick one from history."
    return "\n\n".join(render_message(m, show_reasoning) for m in messages)


def render_tree(node: TreeNode) -> str:
    lines = [f"{node.name}/" if node.type == "folder" else node.name]
    _render_children(node, "", lines)
    return "\n".join(lines)


def _render_children(node: TreeNode, indent: str, lines: list[str]):
    children = node.children or []
    for i, child in enumerate(children):
        last = i == len(children) - 1
        label = f"{child.name}/" if child.type == "folder" else child.name
        lines.append(f"{indent}{'└── ' if last else '├── '}{label}")
        _render_children(child, indent + ("    " if last else "│   "), lines)


def format_file_summary(paths: list[str], limit: int = 5) -> str:
    if not paths:
        return ""
    shown = ", ".join(paths[:limit])
    more = len(paths) - limit
    return f"Files: {shown}" + (f" (+{more} more, /files)" if more > 0 else " (/files)")
