"""Server-Sent-Events framing for chat-completion streams.

The endpoint answers a streaming request with newline-delimited frames::

    data: {"choices":[{"delta":{"content":"Hel"}}]}
    data: {"choices":[{"delta":{"content":"lo"}}]}
    data: [DONE]

``LineDecoder`` turns raw body bytes into lines as they arrive and
``parse_frame`` turns one line into an ``SSEFrame``.
"""

from __future__ import annotations

import codecs
from dataclasses import dataclass
import json
from typing import Any, Literal

DATA_PREFIX = "data: "
DONE_MARKER = "[DONE]"


@dataclass(frozen=True)
class SSEFrame:
    """One meaningful frame of a completion stream.

    ``delta`` frames carry an incremental chunk, ``message`` frames carry a
    complete reply that replaces anything accumulated so far, and ``done``
    marks the end of the stream.
    """

    kind: Literal["delta", "message", "done"]
    text: str = ""


class LineDecoder:
    """Incrementally split a UTF-8 byte stream into lines.

    Raises ``UnicodeDecodeError`` as soon as the bytes cannot be decoded.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="strict")
        self._buffer = ""

    def feed(self, data: bytes) -> list[str]:
        self._buffer += self._decoder.decode(data)
        *lines, self._buffer = self._buffer.split("\n")
        return [line.removesuffix("\r") for line in lines]

    def close(self) -> list[str]:
        """Flush the trailing partial line, if any."""
        self._buffer += self._decoder.decode(b"", final=True)
        tail, self._buffer = self._buffer, ""
        tail = tail.removesuffix("\r")
        return [tail] if tail else []


def _first_choice(payload: Any) -> dict[str, Any] | None:
    if not isinstance(payload, dict):
        return None
    choices = payload.get("choices")
    if not isinstance(choices, list) or not choices:
        return None
    first = choices[0]
    return first if isinstance(first, dict) else None


def parse_frame(line: str) -> SSEFrame | None:
    """Parse one body line.

    Returns ``None`` for lines that are not data frames or carry no text
    (role-only deltas, keep-alives). Raises ``ValueError`` when a data frame
    is not valid JSON.
    """
    if not line.startswith(DATA_PREFIX):
        return None
    data = line[len(DATA_PREFIX) :]
    if data == DONE_MARKER:
        return SSEFrame(kind="done")

    choice = _first_choice(json.loads(data))
    if choice is None:
        return None

    delta = choice.get("delta")
    if isinstance(delta, dict) and isinstance(delta.get("content"), str):
        return SSEFrame(kind="delta", text=delta["content"])

    message = choice.get("message")
    if isinstance(message, dict) and isinstance(message.get("content"), str):
        return SSEFrame(kind="message", text=message["content"])
    return None
