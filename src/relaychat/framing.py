"""Newline-delimited JSON framing for the chat stream."""

from __future__ import annotations

import codecs
import json
import logging
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)


def _first_str(*values: Any) -> str:
    for value in values:
        if isinstance(value, str):
            return value
    return ""


@dataclass
class Frame:
    """One parsed record of the stream."""

    raw: dict[str, Any] = field(default_factory=dict)

    @property
    def _message(self) -> dict[str, Any]:
        msg = self.raw.get("message")
        return msg if isinstance(msg, dict) else {}

    @property
    def content(self) -> str:
        return _first_str(self._message.get("content"), self.raw.get("response"))

    @property
    def reasoning(self) -> str:
        return _first_str(
            self._message.get("thinking"),
            self.raw.get("thinking"),
            self.raw.get("reasoning"),
        )

    @property
    def error(self) -> str | None:
        err = self.raw.get("error")
        if err is None or err == "":
            return None
        return err if isinstance(err, str) else json.dumps(err)

    @property
    def done(self) -> bool:
        return bool(self.raw.get("done"))


def parse_frame(line: str) -> Frame | None:
    """Parse one line; returns None for blank or malformed input."""
    text = line.strip()
    if not text:
        return None
    try:
        data = json.loads(text)
    except ValueError:
        logger.debug("Dropping malformed frame: %.80r", text)
        return None
    if not isinstance(data, dict):
        logger.debug("Dropping non-object frame: %.80r", text)
        return None
    return Frame(data)


class LineFrameDecoder:
    """Split an arbitrarily chunked stream into parsed frames.

    Bytes are decoded incrementally, so a UTF-8 sequence split across two
    chunks is carried over along with the trailing partial line.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""

    def feed(self, chunk: bytes | str) -> list[Frame]:
        if isinstance(chunk, bytes):
            chunk = self._decoder.decode(chunk)
        self._buffer += chunk
        *lines, self._buffer = self._buffer.split("\n")
        return self._parse_lines(lines)

    def finish(self) -> list[Frame]:
        rest = self._buffer + self._decoder.decode(b"", final=True)
        self._buffer = ""
        self._decoder.reset()
        return self._parse_lines([rest])

    @staticmethod
    def _parse_lines(lines: list[str]) -> list[Frame]:
        frames = []
        for line in lines:
            frame = parse_frame(line)
            if frame is not None:
                frames.append(frame)
        return frames
