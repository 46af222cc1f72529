"""Typed exceptions for the UI embedding layer.

Exception hierarchy::

    EmbedError
    ├── SpawnError        — child process could not be launched
    ├── BindError         — listen address unusable
    ├── ConnectError      — connecting to a listen address failed
    ├── DecodeError       — malformed frame, fatal to the owning channel
    ├── ChannelClosed     — request issued on (or pending on) a closed channel
    └── RpcError          — error result carried back over the wire
        ├── AttachError   — invalid ui_attach parameters, channel stays unattached
        ├── MethodNotFound
        └── InvalidArgs

Transport and decode errors terminate only the affected channel.
``RpcError`` subclasses are ordinary error results: the channel stays
healthy and the caller may retry.

Usage::

    from uiembed.errors import AttachError, ChannelClosed

    try:
        await session.request("ui_attach", 80, 24, {"ext_linegrid": True})
    except AttachError as e:
        print(e.kind, e.embed_message)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Sequence

logger = logging.getLogger(__name__)

__all__ = [
    "ErrorKind",
    "ErrorContext",
    "EmbedError",
    "SpawnError",
    "BindError",
    "ConnectError",
    "DecodeError",
    "ChannelClosed",
    "RpcError",
    "AttachError",
    "MethodNotFound",
    "InvalidArgs",
    "error_from_payload",
]


class ErrorKind(str, Enum):
    """Error kinds as they appear in a Response error payload."""

    EXCEPTION = "Exception"
    ATTACH = "AttachError"
    METHOD_NOT_FOUND = "MethodNotFound"
    INVALID_ARGS = "InvalidArgs"


# ── Error context ─────────────────────────────────────────────

@dataclass
class ErrorContext:
    """Structured context attached to every embedding exception."""

    channel_id: Optional[int] = None
    phase: str = ""          # "transport" | "codec" | "session" | "attach" | "rpc"
    component: str = ""
    timestamp: str = field(default_factory=lambda: datetime.now().isoformat())
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_log_dict(self) -> Dict[str, Any]:
        """Flatten to dict for structured logging."""
        d: Dict[str, Any] = {
            "channel_id": self.channel_id,
            "phase": self.phase,
            "component": self.component,
            "timestamp": self.timestamp,
        }
        d.update(self.metadata)
        return d


# ── Base exception ────────────────────────────────────────────

class EmbedError(Exception):
    """Base exception for all embedding-layer errors."""

    phase = ""

    def __init__(
        self,
        message: str = "",
        *,
        channel_id: Optional[int] = None,
        component: str = "",
        context: Optional[ErrorContext] = None,
        **metadata: Any,
    ) -> None:
        self.embed_message = message
        self.context = context or ErrorContext(
            channel_id=channel_id,
            phase=self.phase,
            component=component,
            metadata=metadata,
        )
        super().__init__(self._format_message())

    @property
    def channel_id(self) -> Optional[int]:
        return self.context.channel_id

    def _format_message(self) -> str:
        parts = []
        if self.context.channel_id is not None:
            parts.append(f"[chan:{self.context.channel_id}]")
        parts.append(self.embed_message)
        return " ".join(parts)

    def log(self, level: int = logging.WARNING) -> None:
        """Emit a structured log line for this error."""
        logger.log(
            level,
            "%s: %s | context=%s",
            type(self).__name__,
            self.embed_message,
            self.context.to_log_dict(),
            exc_info=(level >= logging.ERROR),
        )


# ── Transport / codec errors ──────────────────────────────────

class SpawnError(EmbedError):
    """The executable for a spawn transport could not be launched.

    Attributes
    ----------
    executable:
        The program that failed to start.
    """

    phase = "transport"

    def __init__(self, message: str = "spawn failed", *, executable: str = "", **kwargs: Any) -> None:
        super().__init__(message, component="stream.open_spawn", executable=executable, **kwargs)
        self.executable = executable


class BindError(EmbedError):
    """A listen address could not be bound."""

    phase = "transport"

    def __init__(self, message: str = "bind failed", *, address: str = "", **kwargs: Any) -> None:
        super().__init__(message, component="stream.Listener", address=address, **kwargs)
        self.address = address


class ConnectError(EmbedError):
    """Connecting to a listen address failed."""

    phase = "transport"

    def __init__(self, message: str = "connect failed", *, address: str = "", **kwargs: Any) -> None:
        super().__init__(message, component="stream.open_connect", address=address, **kwargs)
        self.address = address


class DecodeError(EmbedError):
    """Malformed frame on the wire. The owning channel is torn down."""

    phase = "codec"

    def __init__(self, message: str = "malformed frame", **kwargs: Any) -> None:
        super().__init__(message, component="protocol.MessageDecoder", **kwargs)


class ChannelClosed(EmbedError):
    """The channel closed before (or while) a request could complete."""

    phase = "session"

    def __init__(self, message: str = "channel closed", **kwargs: Any) -> None:
        super().__init__(message, component="session.Session", **kwargs)


# ── RPC-level errors ──────────────────────────────────────────

class RpcError(EmbedError):
    """Error result of a single request. The channel stays healthy."""

    phase = "rpc"
    kind = ErrorKind.EXCEPTION

    def to_payload(self) -> list:
        """Wire form: ``[kind, message]``."""
        return [self.kind.value, self.embed_message]


class AttachError(RpcError):
    """Invalid ui_attach parameters; the channel remains unattached."""

    phase = "attach"
    kind = ErrorKind.ATTACH


class MethodNotFound(RpcError):
    """No request handler is registered for the method."""

    kind = ErrorKind.METHOD_NOT_FOUND


class InvalidArgs(RpcError):
    """Arguments do not match what the method expects."""

    kind = ErrorKind.INVALID_ARGS


_KIND_TO_CLASS = {
    ErrorKind.EXCEPTION.value: RpcError,
    ErrorKind.ATTACH.value: AttachError,
    ErrorKind.METHOD_NOT_FOUND.value: MethodNotFound,
    ErrorKind.INVALID_ARGS.value: InvalidArgs,
}


def error_from_payload(payload: Any, *, channel_id: Optional[int] = None) -> RpcError:
    """Map a Response error payload back to a typed exception.

    Accepts ``[kind, message]`` as produced by :meth:`RpcError.to_payload`;
    anything else becomes a generic :class:`RpcError` carrying its repr.
    """
    if isinstance(payload, Sequence) and not isinstance(payload, (str, bytes)) and len(payload) == 2:
        kind, message = payload
        cls = _KIND_TO_CLASS.get(kind if isinstance(kind, str) else "", RpcError)
        return cls(str(message), channel_id=channel_id)
    return RpcError(repr(payload), channel_id=channel_id)
