"""
uiembed RPC Protocol - Message Types and msgpack framing

Wire format (msgpack-rpc, one msgpack array per message):
- Request:      [0, msgid, method, params]
- Response:     [1, msgid, error, result]
- Notification: [2, method, params]

Error payloads are ``[kind, message]`` (see ``uiembed.errors.ErrorKind``).
Frames are self-delimiting; the decoder is a streaming state machine that
accepts arbitrary read boundaries.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Iterator, List, Optional, Union

import msgpack

from uiembed.errors import DecodeError

# Largest msgid the wire format carries (uint32)
MAX_MSGID = 0xFFFFFFFF


class MessageType(IntEnum):
    """RPC message type tags."""
    REQUEST = 0
    RESPONSE = 1
    NOTIFICATION = 2


@dataclass(frozen=True)
class Request:
    """Peer → us: call ``method`` and answer with a Response of the same id."""
    msgid: int
    method: str
    args: List[Any] = field(default_factory=list)

    def to_wire(self) -> list:
        return [MessageType.REQUEST.value, self.msgid, self.method, list(self.args)]


@dataclass(frozen=True)
class Response:
    """Answer to a Request; exactly one of ``error``/``result`` is meaningful."""
    msgid: int
    error: Any = None
    result: Any = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_wire(self) -> list:
        return [MessageType.RESPONSE.value, self.msgid, self.error, self.result]


@dataclass(frozen=True)
class Notification:
    """Fire-and-forget message; no Response is expected."""
    method: str
    args: List[Any] = field(default_factory=list)

    def to_wire(self) -> list:
        return [MessageType.NOTIFICATION.value, self.method, list(self.args)]


# Type alias for all message types
RPCMessage = Union[Request, Response, Notification]


def encode_message(msg: RPCMessage) -> bytes:
    """
    Encode a message to its msgpack frame.

    Returns bytes ready to send over a byte channel.
    """
    return msgpack.packb(msg.to_wire(), use_bin_type=True)


def _method_name(value: Any) -> str:
    if isinstance(value, bytes):
        try:
            return value.decode("utf-8")
        except UnicodeDecodeError as e:
            raise DecodeError(f"method name is not valid UTF-8: {e}") from e
    if isinstance(value, str):
        return value
    raise DecodeError(f"method name must be a string, got {type(value).__name__}")


def _msgid(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or not 0 <= value <= MAX_MSGID:
        raise DecodeError(f"invalid message id: {value!r}")
    return value


def _params(value: Any) -> List[Any]:
    if not isinstance(value, list):
        raise DecodeError(f"params must be an array, got {type(value).__name__}")
    return value


def parse_message(obj: Any) -> RPCMessage:
    """
    Parse one decoded msgpack object into a typed message.

    Raises:
        DecodeError: the object is not a well-formed RPC message
    """
    if not isinstance(obj, list) or not obj:
        raise DecodeError(f"message must be a non-empty array, got {type(obj).__name__}")

    tag = obj[0]
    if tag == MessageType.REQUEST:
        if len(obj) != 4:
            raise DecodeError(f"request must have 4 elements, got {len(obj)}")
        return Request(msgid=_msgid(obj[1]), method=_method_name(obj[2]), args=_params(obj[3]))
    if tag == MessageType.RESPONSE:
        if len(obj) != 4:
            raise DecodeError(f"response must have 4 elements, got {len(obj)}")
        return Response(msgid=_msgid(obj[1]), error=obj[2], result=obj[3])
    if tag == MessageType.NOTIFICATION:
        if len(obj) != 3:
            raise DecodeError(f"notification must have 3 elements, got {len(obj)}")
        return Notification(method=_method_name(obj[1]), args=_params(obj[2]))
    raise DecodeError(f"unknown message type: {tag!r}")


class MessageDecoder:
    """
    Streaming decoder.

    Feed raw bytes as they arrive and iterate to drain complete messages.
    Incomplete trailing data stays buffered until the next ``feed``.
    Any malformed input raises :class:`DecodeError`; the decoder must not be
    reused afterwards.
    """

    def __init__(self, max_buffer_size: int = 64 * 1024 * 1024):
        self._unpacker = msgpack.Unpacker(
            raw=False,
            use_list=True,
            strict_map_key=False,
            max_buffer_size=max_buffer_size,
        )
        self._failed: Optional[DecodeError] = None

    def feed(self, data: bytes) -> None:
        """Buffer more bytes from the channel."""
        if self._failed is not None:
            raise self._failed
        try:
            self._unpacker.feed(data)
        except msgpack.BufferFull as e:
            self._failed = DecodeError(f"frame exceeds buffer limit: {e}")
            raise self._failed from e

    def __iter__(self) -> Iterator[RPCMessage]:
        return self

    def __next__(self) -> RPCMessage:
        if self._failed is not None:
            raise self._failed
        try:
            obj = next(self._unpacker)
        except (msgpack.FormatError, msgpack.StackError, ValueError, TypeError) as e:
            self._failed = DecodeError(f"invalid msgpack data: {e}")
            raise self._failed from e
        try:
            return parse_message(obj)
        except DecodeError as e:
            self._failed = e
            raise

    def decode_all(self, data: bytes) -> List[RPCMessage]:
        """Feed ``data`` and return every message that became complete."""
        self.feed(data)
        return list(self)
