"""Typed message routing for events posted by the automated page.

The page posts UTF-8 text over a single channel. Structured messages are
JSON objects of the form ``{"type", "payload", "id"?, "timestamp"?}``;
anything that is not JSON (intercepted wire data, bare log strings) is
wrapped as a RAW_STRING message so it is never dropped.
"""

from __future__ import annotations

import json
import logging
import secrets
import string
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Union

# Logger for IPC debugging
logger = logging.getLogger("streamkey.ipc")

_ID_ALPHABET = string.ascii_lowercase + string.digits
_ID_SUFFIX_LENGTH = 7
_LOG_PREVIEW_LENGTH = 200


class IPCMessageType(str, Enum):
    """The closed set of message variants the page may send."""

    WINDOW_CONTEXT = "WINDOW_CONTEXT"
    USER_ACTION = "USER_ACTION"
    LOG_EVENT = "LOG_EVENT"
    RAW_STRING = "RAW_STRING"


class RouterParseError(Exception):
    """A JSON message did not have a valid IPC message structure."""

    def __init__(self, message: str, raw_message: str) -> None:
        super().__init__(message)
        self.raw_message = raw_message


def now_ms() -> int:
    """Current time in milliseconds since the epoch."""
    return int(time.time() * 1000)


def generate_message_id() -> str:
    """Generate a message id of the form "<ms>-<7 random chars>"."""
    suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(_ID_SUFFIX_LENGTH))
    return f"{now_ms()}-{suffix}"


@dataclass
class UrlInfo:
    """Location snapshot from the page."""

    full: str = ""
    protocol: str = ""
    host: str = ""
    pathname: str = ""
    hash: str = ""
    origin: str = ""
    params: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Any) -> UrlInfo:
        if not isinstance(data, dict):
            return cls()
        params = data.get("params")
        return cls(
            full=str(data.get("full", "")),
            protocol=str(data.get("protocol", "")),
            host=str(data.get("host", "")),
            pathname=str(data.get("pathname", "")),
            hash=str(data.get("hash", "")),
            origin=str(data.get("origin", "")),
            params={str(k): str(v) for k, v in params.items()} if isinstance(params, dict) else {},
        )


@dataclass
class WindowContextPayload:
    """Snapshot of the page's location and document."""

    url: UrlInfo = field(default_factory=UrlInfo)
    title: str = ""
    referrer: str = ""
    language: str = ""
    user_agent: str = ""
    timestamp: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WindowContextPayload:
        document = data.get("document")
        if not isinstance(document, dict):
            document = {}
        return cls(
            url=UrlInfo.from_dict(data.get("url")),
            title=str(document.get("title", "")),
            referrer=str(document.get("referrer", "")),
            language=str(document.get("language", "")),
            user_agent=str(data.get("userAgent", "")),
            timestamp=str(data.get("timestamp", "")),
        )


@dataclass
class UserActionPayload:
    """An action the user triggered from injected page controls."""

    action: str = ""
    timestamp: int | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> UserActionPayload:
        timestamp = data.get("timestamp")
        return cls(
            action=str(data.get("action", "")),
            timestamp=int(timestamp) if isinstance(timestamp, (int, float)) else None,
        )


@dataclass
class LogEventPayload:
    """A log line forwarded from the page."""

    level: str = "info"
    message: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LogEventPayload:
        metadata = data.get("metadata")
        return cls(
            level=str(data.get("level", "info")),
            message=str(data.get("message", "")),
            metadata=metadata if isinstance(metadata, dict) else {},
        )


@dataclass
class RawStringPayload:
    """Unstructured text received on the channel."""

    data: str
    received_at: int = field(default_factory=now_ms)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RawStringPayload:
        received_at = data.get("receivedAt")
        return cls(
            data=str(data.get("data", "")),
            received_at=int(received_at) if isinstance(received_at, (int, float)) else now_ms(),
        )


Payload = Union[WindowContextPayload, UserActionPayload, LogEventPayload, RawStringPayload]

# Type alias for message handlers: (payload, full message) -> None
MessageHandler = Callable[[Any, "IPCMessage"], None]


def parse_payload(message_type: IPCMessageType, data: Any) -> Payload:
    """Build the typed payload for a message variant.

    Raises:
        ValueError: If the payload is not a JSON object
    """
    if not isinstance(data, dict):
        raise ValueError(f"{message_type.value} payload must be an object, got {type(data).__name__}")

    match message_type:
        case IPCMessageType.WINDOW_CONTEXT:
            return WindowContextPayload.from_dict(data)
        case IPCMessageType.USER_ACTION:
            return UserActionPayload.from_dict(data)
        case IPCMessageType.LOG_EVENT:
            return LogEventPayload.from_dict(data)
        case IPCMessageType.RAW_STRING:
            return RawStringPayload.from_dict(data)
        case _:
            raise ValueError(f"Unsupported message type: {message_type!r}")


@dataclass
class IPCMessage:
    """A message posted by the automated page."""

    type: IPCMessageType
    payload: Payload
    id: str | None = None
    timestamp: int | None = None


def create_message(message_type: IPCMessageType, payload: Payload) -> IPCMessage:
    """Create a fully populated message."""
    return IPCMessage(
        type=message_type,
        payload=payload,
        id=generate_message_id(),
        timestamp=now_ms(),
    )


def _default_parse_error(error: RouterParseError, raw_message: str) -> None:
    logger.error(f"Error parsing IPC message: {error} (raw: {raw_message[:_LOG_PREVIEW_LENGTH]})")


def _default_unhandled(message: IPCMessage) -> None:
    logger.debug(f"No handler registered for type: {message.type.value}")


class MessageRouter:
    """Parses raw page messages and dispatches them by type.

    ``dispatch`` never raises: malformed messages go to ``on_parse_error``,
    unknown-but-valid types go to ``on_unhandled_message``, and handler
    exceptions are logged and swallowed so one bad message cannot end the
    browser session.

    Usage:
        router = MessageRouter()
        router.register(IPCMessageType.USER_ACTION, on_action)
        router.dispatch('{"type": "USER_ACTION", "payload": {"action": "x"}}')
    """

    def __init__(
        self,
        on_unhandled_message: Callable[[IPCMessage], None] | None = None,
        on_parse_error: Callable[[RouterParseError, str], None] | None = None,
        enable_logging: bool = False,
        auto_generate_id: bool = True,
        auto_timestamp: bool = True,
    ) -> None:
        self.on_unhandled_message = on_unhandled_message or _default_unhandled
        self.on_parse_error = on_parse_error or _default_parse_error
        self.enable_logging = enable_logging
        self.auto_generate_id = auto_generate_id
        self.auto_timestamp = auto_timestamp
        self._handlers: dict[IPCMessageType, MessageHandler] = {}

    def register(self, message_type: IPCMessageType, handler: MessageHandler) -> MessageRouter:
        """Register the handler for a message type, replacing any previous one."""
        self._handlers[IPCMessageType(message_type)] = handler
        return self

    def register_handlers(self, handlers: dict[IPCMessageType, MessageHandler]) -> MessageRouter:
        """Register several handlers at once."""
        for message_type, handler in handlers.items():
            self.register(message_type, handler)
        return self

    def unregister(self, message_type: IPCMessageType) -> MessageRouter:
        """Remove the handler for a message type, if any."""
        self._handlers.pop(IPCMessageType(message_type), None)
        return self

    def has_handler(self, message_type: IPCMessageType) -> bool:
        return IPCMessageType(message_type) in self._handlers

    def dispatch(self, raw_message: str | bytes) -> None:
        """Parse and dispatch one raw message.

        JSON that fails to parse is delivered as RAW_STRING. JSON that parses
        but is not a valid message is reported via ``on_parse_error``.
        """
        if isinstance(raw_message, (bytes, bytearray)):
            text = bytes(raw_message).decode("utf-8", errors="replace")
        else:
            text = raw_message

        if self.enable_logging:
            logger.debug(f"Received: {text[:_LOG_PREVIEW_LENGTH]}")

        try:
            parsed = json.loads(text)
        except (json.JSONDecodeError, RecursionError):
            self._deliver(
                IPCMessage(
                    type=IPCMessageType.RAW_STRING,
                    payload=RawStringPayload(data=text),
                    id=generate_message_id(),
                    timestamp=now_ms(),
                )
            )
            return

        try:
            message = self._build_message(parsed)
        except RouterParseError as e:
            self._report_parse_error(e, text)
            return

        self._deliver(message)

    def handle_multiple(self, raw_messages: str, delimiter: str = "\n") -> None:
        """Dispatch each non-blank delimited segment independently."""
        for segment in raw_messages.split(delimiter):
            if segment.strip():
                self.dispatch(segment)

    def _build_message(self, parsed: Any) -> IPCMessage:
        """Validate parsed JSON and build a typed, enriched message.

        Raises:
            RouterParseError: If the structure is not a valid message
        """
        raw = json.dumps(parsed, default=str)

        if not isinstance(parsed, dict):
            raise RouterParseError("Invalid IPC message structure: not an object", raw)

        type_value = parsed.get("type")
        if not isinstance(type_value, str) or not type_value:
            raise RouterParseError("Invalid IPC message structure: missing type", raw)

        try:
            message_type = IPCMessageType(type_value)
        except ValueError:
            raise RouterParseError(
                f"Invalid IPC message structure: unknown type {type_value!r}", raw
            ) from None

        if "payload" not in parsed:
            raise RouterParseError("Invalid IPC message structure: missing payload", raw)

        try:
            payload = parse_payload(message_type, parsed["payload"])
        except ValueError as e:
            raise RouterParseError(f"Invalid IPC message structure: {e}", raw) from e

        message_id = parsed.get("id")
        timestamp = parsed.get("timestamp")
        if not isinstance(timestamp, (int, float)) or isinstance(timestamp, bool):
            timestamp = None

        if self.auto_generate_id and not message_id:
            message_id = generate_message_id()
        if self.auto_timestamp and not timestamp:
            timestamp = now_ms()

        return IPCMessage(
            type=message_type,
            payload=payload,
            id=str(message_id) if message_id else None,
            timestamp=int(timestamp) if timestamp else None,
        )

    def _report_parse_error(self, error: RouterParseError, raw_message: str) -> None:
        try:
            self.on_parse_error(error, raw_message)
        except Exception:
            logger.exception("Error in IPC parse error callback")

    def _deliver(self, message: IPCMessage) -> None:
        """Invoke the registered handler for a validated message."""
        handler = self._handlers.get(message.type)

        if handler is None:
            try:
                self.on_unhandled_message(message)
            except Exception:
                logger.exception("Error in IPC unhandled message callback")
            return

        try:
            handler(message.payload, message)
        except Exception as e:
            logger.exception(f"Error handling message type {message.type.value}: {e}")
            return

        if self.enable_logging:
            logger.debug(f"Handled type: {message.type.value}")
