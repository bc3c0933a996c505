"""Content-Length message framing for the daemon's JSON-RPC stream.

Each message on the wire is:

    Content-Length: <length>\\r\\n
    [Content-Type: <type>]\\r\\n
    \\r\\n
    <utf-8 json body>

Content-Length is required and counts the bytes of the body. Other headers
are accepted and ignored.
"""

from __future__ import annotations

import asyncio
import json
from typing import Any

CONTENT_LENGTH = "Content-Length"
HEADER_ENCODING = "ascii"
CONTENT_ENCODING = "utf-8"
CRLF = b"\r\n"
DEFAULT_MAX_MESSAGE_SIZE = 10 * 1024 * 1024


class FramingError(Exception):
    """The byte stream does not contain a well-formed message.

    Raised for a missing or invalid Content-Length, malformed header lines,
    truncated bodies, and bodies that are not a JSON object.
    """


def parse_header(header_bytes: bytes) -> dict[str, str]:
    """Parse a header block (without the blank separator line).

    Returns:
        Header names mapped to their stripped values.

    Raises:
        FramingError: If the block is empty or malformed, or Content-Length
            is missing, non-numeric or negative.

    Example:
        >>> parse_header(b"Content-Length: 42\\r\\nContent-Type: application/json")
        {'Content-Length': '42', 'Content-Type': 'application/json'}
    """
    if not header_bytes:
        raise FramingError("Empty header block")

    try:
        header_text = header_bytes.decode(HEADER_ENCODING)
    except UnicodeDecodeError as e:
        raise FramingError(f"Header contains non-ASCII characters: {e}") from e

    headers: dict[str, str] = {}
    for line in header_text.split("\r\n"):
        if not line:
            continue

        name, sep, value = line.partition(":")
        if not sep:
            raise FramingError(f"Malformed header line (no colon): {line!r}")
        name = name.strip()
        if not name:
            raise FramingError(f"Empty header name in line: {line!r}")
        headers[name] = value.strip()

    if CONTENT_LENGTH not in headers:
        raise FramingError("Missing required Content-Length header")

    try:
        length = int(headers[CONTENT_LENGTH])
    except ValueError as e:
        raise FramingError(f"Invalid Content-Length value: {headers[CONTENT_LENGTH]!r}") from e

    if length < 0:
        raise FramingError(f"Negative Content-Length: {length}")

    return headers


async def read_message(
    reader: asyncio.StreamReader,
    *,
    max_message_size: int = DEFAULT_MAX_MESSAGE_SIZE,
) -> dict[str, Any] | None:
    """Read one framed message.

    Returns:
        The decoded JSON object, or None on a clean EOF between messages.

    Raises:
        FramingError: If the framing is invalid, the stream ends mid-message,
            or the body is not a JSON object.
    """
    header_bytes = b""

    while True:
        try:
            line = await reader.readuntil(CRLF)
        except asyncio.IncompleteReadError as e:
            if header_bytes == b"" and not e.partial:
                return None
            raise FramingError("Unexpected EOF while reading headers") from e
        except asyncio.LimitOverrunError as e:
            raise FramingError(f"Header line too long: {e}") from e

        if line == CRLF:
            break
        header_bytes += line

    headers = parse_header(header_bytes.removesuffix(CRLF))
    content_length = int(headers[CONTENT_LENGTH])

    if content_length > max_message_size:
        raise FramingError(f"Message size {content_length} exceeds maximum {max_message_size}")

    try:
        body_bytes = await reader.readexactly(content_length)
    except asyncio.IncompleteReadError as e:
        raise FramingError(
            f"Incomplete message body: expected {content_length} bytes, got {len(e.partial)}"
        ) from e

    try:
        message = json.loads(body_bytes.decode(CONTENT_ENCODING))
    except UnicodeDecodeError as e:
        raise FramingError(f"Invalid UTF-8 in message body: {e}") from e
    except json.JSONDecodeError as e:
        raise FramingError(f"Invalid JSON in message body: {e}") from e

    if not isinstance(message, dict):
        raise FramingError(f"JSON-RPC message must be an object, got {type(message).__name__}")

    return message


def encode_message(msg: dict[str, Any]) -> bytes:
    """Serialize a message to header + body bytes.

    Raises:
        FramingError: If the message is not JSON-serializable.
    """
    try:
        body_bytes = json.dumps(msg, separators=(",", ":")).encode(CONTENT_ENCODING)
    except (TypeError, ValueError) as e:
        raise FramingError(f"Message cannot be serialized to JSON: {e}") from e

    header = f"{CONTENT_LENGTH}: {len(body_bytes)}\r\n\r\n".encode(HEADER_ENCODING)
    return header + body_bytes


async def write_message(
    writer: asyncio.StreamWriter,
    msg: dict[str, Any],
    *,
    drain: bool = True,
) -> None:
    """Write one framed message.

    Header and body go out in a single write call so that a message is never
    split by another writer's bytes.
    """
    writer.write(encode_message(msg))
    if drain:
        await writer.drain()
