"""Data stream encoding and the turn sink.

The chat response body is a sequence of ``<code>:<json>\\n`` lines that the
web client decodes incrementally:

    2:[{"type":"user-message-id","content":"<turn id>"}]   first line
    0:"<text delta>"                                       one per delta
    d:{"finishReason":"stop"}                              success terminator
    3:"<error message>"                                    error terminator

Exactly one terminator ends every stream.
"""
import json
from typing import List

MEDIA_TYPE = "text/plain; charset=utf-8"

TEXT_PART = "0"
DATA_PART = "2"
ERROR_PART = "3"
FINISH_PART = "d"


def _line(code: str, value) -> str:
    return f"{code}:{json.dumps(value, separators=(',', ':'))}\n"


def encode_text(delta: str) -> str:
    return _line(TEXT_PART, delta)


def encode_user_message_id(turn_id: str) -> str:
    return _line(DATA_PART, [{"type": "user-message-id", "content": turn_id}])


def encode_finish(reason: str = "stop") -> str:
    return _line(FINISH_PART, {"finishReason": reason})


def encode_error(message: str) -> str:
    return _line(ERROR_PART, message)


class TurnSink:
    """Forwards deltas to the caller while accumulating the full text.

    Every delta passes through ``write`` exactly once, so the accumulated
    text is always the concatenation of what was forwarded, in order.
    """

    def __init__(self) -> None:
        self._parts: List[str] = []

    def write(self, delta: str) -> str:
        """Record ``delta`` and return its encoded line for the caller."""
        self._parts.append(delta)
        return encode_text(delta)

    @property
    def text(self) -> str:
        return "".join(self._parts)

    @property
    def delta_count(self) -> int:
        return len(self._parts)
