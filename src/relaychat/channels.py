"""Separate the reasoning channel from the answer channel of assistant text."""

from __future__ import annotations

import re
from typing import NamedTuple

THINK_OPEN = "<think>"
THINK_CLOSE = "</think>"

_THINK_RE = re.compile(r"<think>([\s\S]*?)</think>", re.IGNORECASE)


class Channels(NamedTuple):
    answer: str
    reasoning: str


def split_channels(text: str | None) -> Channels:
    """Split the full accumulated text, never a delta.

    Only a complete tag pair counts; until the closing tag arrives the whole
    text is treated as answer.
    """
    s = text or ""
    match = _THINK_RE.search(s)
    if match is None:
        return Channels(answer=s, reasoning="")
    reasoning = match.group(1).strip()
    answer = (s[: match.start()] + s[match.end() :]).strip()
    return Channels(answer=answer, reasoning=reasoning)


def join_channels(answer: str, reasoning: str = "") -> str:
    reasoning = (reasoning or "").strip()
    if not reasoning:
        return answer
    return f"{THINK_OPEN}{reasoning}{THINK_CLOSE}\n\n{answer}"
