"""Server-sent event framing and decoding.

Shared by the upstream completion client (decoding OpenAI-style token
chunks), the server transport (framing outbound events) and the chat session
client (decoding named events).
"""

import codecs
import json

from thinking_chat.core.exceptions import StreamDecodeError

DONE_SENTINEL = "[DONE]"


class SSEBuffer:
    """Incrementally decodes a UTF-8 byte stream into blank-line-delimited blocks.

    Multi-byte characters and block separators may be split across any
    number of ``feed`` calls.
    """

    def __init__(self):
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""

    def feed(self, data: bytes) -> list[str]:
        self._buffer += self._decoder.decode(data)
        # A trailing "\r" stays in the buffer until its "\n" arrives
        self._buffer = self._buffer.replace("\r\n", "\n")
        blocks = []
        index = self._buffer.find("\n\n")
        while index != -1:
            blocks.append(self._buffer[:index])
            self._buffer = self._buffer[index + 2:]
            index = self._buffer.find("\n\n")
        return blocks

    def flush(self) -> list[str]:
        """Return whatever is left once the byte stream has ended."""
        tail = (self._buffer + self._decoder.decode(b"", final=True)).replace("\r\n", "\n")
        self._buffer = ""
        return [tail] if tail.strip() else []


def _field_value(line: str, field: str) -> str | None:
    prefix = f"{field}:"
    if not line.startswith(prefix):
        return None
    value = line[len(prefix):]
    return value[1:] if value.startswith(" ") else value


def extract_stream_token(block: str) -> str | None:
    """Pull the incremental token out of one upstream completion chunk.

    Returns None for chunks that carry no text (role-only deltas, finish
    markers, ``[DONE]``). Raises StreamDecodeError for malformed payloads.
    """
    payload_lines = []
    for line in block.split("\n"):
        value = _field_value(line, "data")
        if value is None:
            continue
        if value.strip() == DONE_SENTINEL:
            break
        payload_lines.append(value)

    if not payload_lines:
        return None

    try:
        data = json.loads("".join(payload_lines))
    except json.JSONDecodeError as exc:
        raise StreamDecodeError(f"Invalid JSON in stream chunk: {exc}") from exc
    if not isinstance(data, dict):
        raise StreamDecodeError("Stream chunk payload is not an object")

    choices = data.get("choices") or []
    if not choices or not isinstance(choices[0], dict):
        return None
    choice = choices[0]

    delta = choice.get("delta")
    token = delta.get("content") if isinstance(delta, dict) else None
    if not isinstance(token, str):
        token = choice.get("text")
    if isinstance(token, str) and token:
        return token
    return None


def parse_event_block(block: str) -> tuple[str, dict] | None:
    """Parse one named event block into ``(event, data)``.

    The first ``event:`` line names the event (default ``"message"``); all
    ``data:`` lines are joined by newlines and decoded as JSON, falling back
    to an empty object.
    """
    if not block.strip():
        return None

    event_name = None
    data_lines = []
    for line in block.split("\n"):
        name = _field_value(line, "event")
        if name is not None:
            if event_name is None:
                event_name = name.strip()
            continue
        value = _field_value(line, "data")
        if value is not None:
            data_lines.append(value)

    if not data_lines:
        return event_name or "message", {}

    try:
        data = json.loads("\n".join(data_lines))
    except json.JSONDecodeError:
        data = {}
    if not isinstance(data, dict):
        data = {}
    return event_name or "message", data


def format_event(event: str, payload: dict) -> bytes:
    """Frame one outbound event as ``event: <name>\\ndata: <json>\\n\\n``."""
    return f"event: {event}\ndata: {json.dumps(payload, ensure_ascii=False)}\n\n".encode("utf-8")
