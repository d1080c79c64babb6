"""
LSP Transport Framing

This module frames JSON-RPC 2.0 messages for the Language Server Protocol's
stdio transport: every message is a block of ``Name: value`` header lines,
a blank ``\\r\\n`` separator and a body of exactly ``Content-Length`` bytes.

Encoding uses python-lsp-jsonrpc's stream writer. Decoding reads from an
``asyncio.StreamReader`` and is strict: the declared length is read in full
or the stream is considered broken.
"""

import asyncio
import io
import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any

from pylsp_jsonrpc.streams import JsonRpcStreamWriter

from errors import FramingError

logger = logging.getLogger(__name__)

CONTENT_LENGTH_HEADER = "content-length"


class MessageKind(Enum):
    """Kinds of JSON-RPC messages."""

    REQUEST = "request"
    RESPONSE = "response"
    NOTIFICATION = "notification"
    INVALID = "invalid"


@dataclass
class LSPMessage:
    """Represents an LSP message with proper typing."""

    content: dict[str, Any]

    @property
    def id(self) -> int | str | None:
        """Get message ID."""
        return self.content.get("id")

    @property
    def method(self) -> str | None:
        """Get message method."""
        return self.content.get("method")

    @property
    def params(self) -> Any:
        """Get message params."""
        return self.content.get("params")

    @property
    def result(self) -> Any:
        """Get message result."""
        return self.content.get("result")

    @property
    def error(self) -> dict[str, Any] | None:
        """Get message error."""
        return self.content.get("error")

    @property
    def kind(self) -> MessageKind:
        """Classify the message by the members it carries."""
        has_id = "id" in self.content
        has_method = "method" in self.content
        if has_method and has_id:
            return MessageKind.REQUEST
        if has_method:
            return MessageKind.NOTIFICATION
        if has_id and ("result" in self.content or "error" in self.content):
            return MessageKind.RESPONSE
        return MessageKind.INVALID

    @property
    def is_request(self) -> bool:
        """Check if this is a request message."""
        return self.kind == MessageKind.REQUEST

    @property
    def is_response(self) -> bool:
        """Check if this is a response message.

        A ``null`` result is still a response; servers answer
        ``prepareCallHierarchy`` with ``null`` when nothing is callable.
        """
        return self.kind == MessageKind.RESPONSE

    @property
    def is_notification(self) -> bool:
        """Check if this is a notification message."""
        return self.kind == MessageKind.NOTIFICATION


class LSPProtocol:
    """Handles LSP protocol message serialization and message construction."""

    def __init__(self, logger: logging.Logger | None = None):
        self.logger = logger or logging.getLogger(__name__)
        self._stream_buffer = io.BytesIO()
        self._stream_writer = JsonRpcStreamWriter(self._stream_buffer)

    def serialize_message(self, content: dict[str, Any]) -> bytes:
        """
        Serialize a message to LSP wire format.

        Args:
            content: Plain dictionary representing the JSON-RPC message

        Returns:
            Header block plus UTF-8 JSON body

        Raises:
            FramingError: If the message cannot be serialized
        """
        self._stream_buffer.seek(0)
        self._stream_buffer.truncate()

        # The writer logs and swallows serialization failures
        self._stream_writer.write(content)

        data = self._stream_buffer.getvalue()
        if not data:
            raise FramingError(
                f"Failed to serialize message: {content.get('method', 'response')}",
                {"id": content.get("id")},
            )

        self.logger.debug(
            f"Serialized message: {content.get('method', 'response')} "
            f"(ID: {content.get('id', 'N/A')}) - {len(data)} bytes"
        )
        return data

    def create_request(
        self, method: str, params: Any = None, request_id: int | str = 0
    ) -> dict[str, Any]:
        """Create a JSON-RPC request."""
        request: dict[str, Any] = {"jsonrpc": "2.0", "id": request_id, "method": method}

        if params is not None:
            request["params"] = params

        return request

    def create_notification(self, method: str, params: Any = None) -> dict[str, Any]:
        """Create a JSON-RPC notification."""
        notification: dict[str, Any] = {"jsonrpc": "2.0", "method": method}

        if params is not None:
            notification["params"] = params

        return notification

    def create_response(self, message_id: int | str | None, result: Any) -> dict[str, Any]:
        """Create a successful JSON-RPC response."""
        return {"jsonrpc": "2.0", "id": message_id, "result": result}

    def create_error_response(
        self,
        message_id: int | str | None,
        code: int,
        message: str,
        data: Any | None = None,
    ) -> dict[str, Any]:
        """Create an error JSON-RPC response."""
        error: dict[str, Any] = {"code": code, "message": message}

        if data is not None:
            error["data"] = data

        return {"jsonrpc": "2.0", "id": message_id, "error": error}


def encode_message(content: dict[str, Any]) -> bytes:
    """Frame a single message with a fresh protocol instance."""
    return LSPProtocol(logger).serialize_message(content)


def _parse_header_line(raw: bytes) -> tuple[str, str]:
    try:
        text = raw.decode("ascii")
    except UnicodeDecodeError as e:
        raise FramingError(f"Non-ASCII header line: {raw!r}") from e

    name, separator, value = text.partition(":")
    if not separator or not name.strip():
        raise FramingError(f"Malformed header line: {text!r}")
    return name.strip().lower(), value.strip()


async def _read_headers(reader: asyncio.StreamReader) -> dict[str, str] | None:
    headers: dict[str, str] = {}
    while True:
        try:
            line = await reader.readline()
        except ValueError as e:
            # StreamReader raises ValueError when a line exceeds its buffer limit
            raise FramingError(f"Header line too long: {e}") from e

        if not line:
            if headers:
                raise FramingError("Stream ended inside message headers")
            return None

        if not line.endswith(b"\n"):
            raise FramingError(f"Stream ended inside header line: {line!r}")

        stripped = line.rstrip(b"\r\n")
        if not stripped:
            if headers:
                return headers
            # Blank line between messages
            continue

        name, value = _parse_header_line(stripped)
        headers[name] = value


async def read_message(reader: asyncio.StreamReader) -> LSPMessage | None:
    """
    Read exactly one framed message from the stream.

    Args:
        reader: Stream connected to the server's stdout

    Returns:
        The decoded message, or None on a clean end of stream between messages

    Raises:
        FramingError: On malformed headers, a bad length, a truncated body or
            a body that is not a JSON object
    """
    headers = await _read_headers(reader)
    if headers is None:
        return None

    raw_length = headers.get(CONTENT_LENGTH_HEADER)
    if raw_length is None:
        raise FramingError(f"Missing Content-Length header: {headers}")
    try:
        content_length = int(raw_length)
    except ValueError as e:
        raise FramingError(f"Non-numeric Content-Length: {raw_length!r}") from e
    if content_length < 0:
        raise FramingError(f"Negative Content-Length: {content_length}")

    try:
        body = await reader.readexactly(content_length)
    except asyncio.IncompleteReadError as e:
        raise FramingError(
            f"Stream ended after {len(e.partial)} of {content_length} body bytes",
            {"expected": content_length, "received": len(e.partial)},
        ) from e

    try:
        content = json.loads(body.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise FramingError(f"Failed to parse message content: {e}") from e

    if not isinstance(content, dict):
        raise FramingError(f"Message must be a JSON object, got {type(content).__name__}")

    message = LSPMessage(content)
    logger.debug(
        f"Decoded message: {message.method or 'response'} "
        f"(ID: {message.id if message.id is not None else 'N/A'}) - {content_length} bytes"
    )
    return message
