"""Content-Length framing for the language server pipe.

Each message on the subprocess's stdin/stdout is a header block followed
by a UTF-8 JSON body:

    Content-Length: <byte count>\\r\\n
    [Content-Type: <type>]\\r\\n
    \\r\\n
    <json body>

Only Content-Length is required. Header names are matched
case-insensitively; unknown headers are kept but ignored.
"""

from __future__ import annotations

import asyncio
import json
from typing import Any

from lsptop.errors import FramingError

HEADER_ENCODING = "ascii"
BODY_ENCODING = "utf-8"
CRLF = b"\r\n"
MAX_MESSAGE_SIZE = 64 * 1024 * 1024


def parse_headers(block: bytes) -> dict[str, str]:
    """Parse a header block (without the blank separator line).

    Returns:
        Header names lowercased, mapped to stripped values.

    Raises:
        FramingError: On non-ASCII input, a line without a colon, or a
            missing/invalid Content-Length.
    """
    if not block:
        raise FramingError("Empty header block")

    try:
        text = block.decode(HEADER_ENCODING)
    except UnicodeDecodeError as e:
        raise FramingError(f"Header contains non-ASCII characters: {e}") from e

    headers: dict[str, str] = {}
    for line in text.split("\r\n"):
        if not line:
            continue
        name, sep, value = line.partition(":")
        if not sep:
            raise FramingError(f"Malformed header line (no colon): {line!r}")
        name = name.strip().lower()
        if not name:
            raise FramingError(f"Empty header name in line: {line!r}")
        headers[name] = value.strip()

    content_length(headers)
    return headers


def content_length(headers: dict[str, str]) -> int:
    raw = headers.get("content-length")
    if raw is None:
        raise FramingError("Missing required Content-Length header")
    try:
        length = int(raw)
    except ValueError as e:
        raise FramingError(f"Invalid Content-Length value: {raw!r}") from e
    if length < 0:
        raise FramingError(f"Negative Content-Length: {length}")
    return length


def encode_message(message: dict[str, Any]) -> bytes:
    """Serialize ``message`` into one framed byte string."""
    try:
        body = json.dumps(message, separators=(",", ":"), ensure_ascii=False).encode(
            BODY_ENCODING
        )
    except (TypeError, ValueError) as e:
        raise FramingError(f"Message cannot be serialized to JSON: {e}") from e
    header = f"Content-Length: {len(body)}\r\n\r\n".encode(HEADER_ENCODING)
    return header + body


async def read_message(
    reader: asyncio.StreamReader,
    *,
    max_message_size: int = MAX_MESSAGE_SIZE,
) -> dict[str, Any] | None:
    """Read one framed message.

    Returns:
        The decoded JSON object, or None on a clean EOF between messages.

    Raises:
        FramingError: If the stream ends mid-message or the frame is invalid.
    """
    block = b""
    while True:
        try:
            line = await reader.readuntil(CRLF)
        except asyncio.IncompleteReadError as e:
            if not block and not e.partial:
                return None
            raise FramingError("Unexpected EOF while reading headers") from e
        except asyncio.LimitOverrunError as e:
            raise FramingError(f"Header line too long: {e}") from e

        if line == CRLF:
            if not block:
                # Tolerate stray blank lines between messages.
                continue
            break
        block += line

    length = content_length(parse_headers(block[: -len(CRLF)]))
    if length > max_message_size:
        raise FramingError(f"Message size {length} exceeds maximum {max_message_size}")

    try:
        body = await reader.readexactly(length)
    except asyncio.IncompleteReadError as e:
        raise FramingError(
            f"Incomplete message body: expected {length} bytes, got {len(e.partial)}"
        ) from e

    try:
        message = json.loads(body.decode(BODY_ENCODING))
    except UnicodeDecodeError as e:
        raise FramingError(f"Invalid UTF-8 in message body: {e}") from e
    except json.JSONDecodeError as e:
        raise FramingError(f"Invalid JSON in message body: {e}") from e

    if not isinstance(message, dict):
        raise FramingError(f"JSON-RPC message must be an object, got {type(message).__name__}")
    return message


async def write_message(
    writer: asyncio.StreamWriter,
    message: dict[str, Any],
    *,
    drain: bool = True,
) -> None:
    """Frame and write ``message``; header and body go out in one write."""
    writer.write(encode_message(message))
    if drain:
        await writer.drain()
