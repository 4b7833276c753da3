"""Incremental server-sent-event framing.

``SSEDecoder`` accepts arbitrary byte chunks, so a frame (or a multi-byte UTF-8
character) may be split across reads. Complete events are returned in arrival
order; the trailing partial frame stays buffered until more bytes arrive or
``flush`` is called at end of stream.
"""

from __future__ import annotations

import codecs
import json
from dataclasses import dataclass
from typing import Any

DONE_FRAME = b"data: [DONE]\n\n"


@dataclass(slots=True)
class SSEEvent:
    data: str
    event: str | None = None


class SSEDecoder:
    __slots__ = ("_decoder", "_pending", "_data", "_event")

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._pending = ""
        self._data: list[str] = []
        self._event: str | None = None

    def feed(self, chunk: bytes) -> list[SSEEvent]:
        text = self._pending + self._decoder.decode(chunk)
        held = ""
        if text.endswith("\r"):
            # may be the first half of a CRLF pair
            text, held = text[:-1], "\r"
        text = text.replace("\r\n", "\n").replace("\r", "\n")
        lines = text.split("\n")
        self._pending = lines.pop() + held
        events: list[SSEEvent] = []
        for line in lines:
            event = self._consume_line(line)
            if event is not None:
                events.append(event)
        return events

    def flush(self) -> list[SSEEvent]:
        tail = self._pending + self._decoder.decode(b"", final=True)
        self._pending = ""
        events: list[SSEEvent] = []
        for line in tail.replace("\r\n", "\n").replace("\r", "\n").split("\n"):
            if not line:
                continue
            event = self._consume_line(line)
            if event is not None:
                events.append(event)
        event = self._dispatch()
        if event is not None:
            events.append(event)
        return events

    def _consume_line(self, line: str) -> SSEEvent | None:
        if not line:
            return self._dispatch()
        if line.startswith(":"):
            return None
        name, sep, value = line.partition(":")
        if not sep:
            value = ""
        elif value.startswith(" "):
            value = value[1:]
        if name == "data":
            self._data.append(value)
        elif name == "event":
            self._event = value or None
        return None

    def _dispatch(self) -> SSEEvent | None:
        if not self._data:
            self._event = None
            return None
        event = SSEEvent(data="\n".join(self._data), event=self._event)
        self._data = []
        self._event = None
        return event


def encode_frame(payload: Any) -> bytes:
    if isinstance(payload, bytes):
        data_text = payload.decode("utf-8", errors="ignore")
    elif isinstance(payload, str):
        data_text = payload
    else:
        data_text = json.dumps(payload, ensure_ascii=False, separators=(",", ":"))
    return f"data: {data_text}\n\n".encode("utf-8")
