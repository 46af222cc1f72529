"""
uiembed RPC Module - byte channels, msgpack-rpc framing and sessions
v0.1.0

Transport: spawned child pipes, Unix domain sockets / TCP, inherited fds.
Framing: msgpack-rpc arrays.
"""

from .protocol import (
    MAX_MSGID,
    MessageType,
    Request,
    Response,
    Notification,
    RPCMessage,
    MessageDecoder,
    encode_message,
    parse_message,
)
from .stream import (
    Address,
    ByteStream,
    ChannelKind,
    Listener,
    new_address,
    open_connect,
    open_inherited,
    open_spawn,
    parse_address,
)
from .session import Session

__all__ = [
    "MAX_MSGID",
    "MessageType",
    "Request",
    "Response",
    "Notification",
    "RPCMessage",
    "MessageDecoder",
    "encode_message",
    "parse_message",
    "Address",
    "ByteStream",
    "ChannelKind",
    "Listener",
    "new_address",
    "open_connect",
    "open_inherited",
    "open_spawn",
    "parse_address",
    "Session",
]
