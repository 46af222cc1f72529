"""
uiembed Channel Manager - numbered channels over every transport
v0.1.0

Handles:
- Channel id allocation (one strictly increasing counter, ids never reused)
- Opening channels: spawn, listen/accept, connect, stdio, any ByteStream
- Registry lookups (id -> Session)
- Teardown bookkeeping when a stream ends

Reserved ids: 0 (internal), 1 (stdio of an embedded process), 2 (stderr).
Dynamic ids start at 3.
"""

from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Sequence

from uiembed.config import EmbedConfig
from uiembed.core.events import LifecycleBus, LifecycleEvent
from uiembed.errors import ChannelClosed, EmbedError
from uiembed.logs.logger import TraceLogger
from uiembed.rpc.session import Session
from uiembed.rpc.stream import (
    ByteStream,
    ChannelKind,
    Listener,
    new_address,
    open_connect,
    open_inherited,
    open_spawn,
)
from uiembed.ui.attach import UiOptions, UiState

logger = logging.getLogger(__name__)

INTERNAL_CHANNEL_ID = 0
STDIO_CHANNEL_ID = 1
STDERR_CHANNEL_ID = 2
FIRST_DYNAMIC_ID = 3


@dataclass
class Channel:
    """A registered channel and the session that owns its stream."""
    channel_id: int
    kind: ChannelKind
    session: Session
    label: str = ""
    ui_state: UiState = UiState.UNATTACHED
    capabilities: Optional[UiOptions] = None
    opened_at: float = field(default_factory=time.time)
    close_reason: Optional[str] = None

    @property
    def closed(self) -> bool:
        return self.session.closed

    def to_dict(self) -> dict:
        return {
            "id": self.channel_id,
            "kind": self.kind.value,
            "label": self.label,
            "ui_state": self.ui_state.value,
        }


ChannelCallback = Callable[[Channel], None]


class ChannelManager:
    """
    Owns every open channel of the process.

    Open callbacks run before the channel's session starts reading, so they
    can register request handlers without racing the first message.
    """

    def __init__(
        self,
        config: Optional[EmbedConfig] = None,
        *,
        bus: Optional[LifecycleBus] = None,
        trace: Optional[TraceLogger] = None,
    ):
        self.config = config or EmbedConfig()
        self.bus = bus
        self.trace = trace
        self._next_id = FIRST_DYNAMIC_ID
        self._channels: Dict[int, Channel] = {}
        self._listeners: Dict[str, Listener] = {}
        self._stdio_opened = False
        self._open_callbacks: List[ChannelCallback] = []
        self._close_callbacks: List[ChannelCallback] = []

    # --- Observers ---

    def on_open(self, callback: ChannelCallback) -> None:
        self._open_callbacks.append(callback)

    def on_close(self, callback: ChannelCallback) -> None:
        self._close_callbacks.append(callback)

    # --- Lookups ---

    def channel_for(self, channel_id: int) -> Session:
        """
        Session of an open channel.

        Raises:
            ChannelClosed: unknown id, or the channel already closed
        """
        channel = self._channels.get(channel_id)
        if channel is None or channel.closed:
            raise ChannelClosed(f"no open channel {channel_id}", channel_id=channel_id)
        return channel.session

    def get(self, channel_id: int) -> Optional[Channel]:
        return self._channels.get(channel_id)

    def channels(self) -> List[Channel]:
        """Open channels in id order."""
        return [self._channels[cid] for cid in sorted(self._channels)]

    @property
    def next_id(self) -> int:
        return self._next_id

    def generate_address(self) -> str:
        """Fresh Unix socket path under ``config.socket_dir``."""
        return new_address(self.config.socket_dir)

    # --- Opening ---

    async def spawn_channel(
        self,
        executable: str,
        args: Iterable[str] = (),
        *,
        env: Optional[Mapping[str, str]] = None,
        pass_fds: Sequence[int] = (),
        cwd: Optional[str] = None,
    ) -> int:
        """
        Launch a child and speak RPC over its stdin/stdout.

        Raises:
            SpawnError: the executable cannot be launched (no id is consumed)
        """
        stream = await open_spawn(
            executable,
            args,
            env=env,
            pass_fds=pass_fds,
            cwd=cwd,
            terminate_timeout=self.config.terminate_timeout,
        )
        return await self.adopt_stream(stream, ChannelKind.SPAWNED)

    async def listen(self, address: str) -> Listener:
        """
        Bind ``address`` (once) and return its listener.

        Raises:
            BindError: the address is in use or cannot be bound
        """
        listener = self._listeners.get(address)
        if listener is None:
            listener = Listener(address)
            await listener.start()
            self._listeners[address] = listener
        return listener

    async def listen_channel(self, address: str) -> int:
        """
        Wait for the next peer on ``address`` and register it.

        The address is bound on first use and kept for later calls.
        Suspends only the caller.
        """
        listener = await self.listen(address)
        stream = await listener.accept()
        return await self.adopt_stream(stream, ChannelKind.LISTENED)

    async def connect_channel(self, address: str) -> int:
        """
        Connect to a listening address.

        Raises:
            ConnectError: nothing is listening there
        """
        stream = await open_connect(address)
        return await self.adopt_stream(stream, ChannelKind.CONNECTED)

    async def stdio_channel(self, read_fd: int = 0, write_fd: int = 1) -> int:
        """
        Adopt the process' standard streams as channel 1.

        The descriptors are duplicated; when the channel writes to fd 1,
        fd 1 itself is pointed at stderr so stray output cannot corrupt it.
        """
        if self._stdio_opened:
            raise EmbedError("stdio channel already opened", channel_id=STDIO_CHANNEL_ID)
        self._stdio_opened = True

        rfd = os.dup(read_fd)
        wfd = os.dup(write_fd)
        if write_fd == 1:
            os.dup2(2, 1)
        stream = await open_inherited(rfd, wfd, kind=ChannelKind.STDIO)
        return await self.adopt_stream(stream, ChannelKind.STDIO, channel_id=STDIO_CHANNEL_ID)

    async def inherited_channel(self, read_fd: int, write_fd: int) -> int:
        """Adopt two already-open descriptors as a new channel."""
        stream = await open_inherited(read_fd, write_fd)
        return await self.adopt_stream(stream, ChannelKind.INHERITED)

    async def adopt_stream(
        self,
        stream: ByteStream,
        kind: Optional[ChannelKind] = None,
        *,
        channel_id: Optional[int] = None,
    ) -> int:
        """Register ``stream`` under a fresh id and start its session."""
        if channel_id is None:
            channel_id = self._allocate_id()
        kind = kind or stream.kind

        session = Session(
            stream,
            channel_id=channel_id,
            read_chunk_size=self.config.read_chunk_size,
            max_buffer_size=self.config.max_buffer_size,
        )
        channel = Channel(channel_id=channel_id, kind=kind, session=session, label=stream.label)
        self._channels[channel_id] = channel
        session.on_close(lambda reason, cid=channel_id: self._on_session_closed(cid, reason))

        logger.info(f"[Channels] Opened channel {channel_id} ({kind.value}: {stream.label})")
        if self.trace:
            self.trace.log("channel.open", channel_id, kind=kind.value, label=stream.label)
        if self.bus:
            self.bus.publish(LifecycleEvent.CHANNEL_OPEN, {"channel_id": channel_id, "kind": kind.value})

        for callback in list(self._open_callbacks):
            try:
                callback(channel)
            except Exception:
                logger.exception(f"[Channels] Open callback failed for channel {channel_id}")

        session.start()
        return channel_id

    def _allocate_id(self) -> int:
        channel_id = self._next_id
        self._next_id += 1
        return channel_id

    # --- Teardown ---

    def _on_session_closed(self, channel_id: int, reason: str) -> None:
        channel = self._channels.pop(channel_id, None)
        if channel is None:
            return
        channel.ui_state = UiState.CLOSED
        channel.close_reason = reason

        logger.info(f"[Channels] Closed channel {channel_id} ({reason})")
        if self.trace:
            self.trace.log("channel.close", channel_id, reason=reason)
        if self.bus:
            self.bus.publish(LifecycleEvent.CHANNEL_CLOSE, {"channel_id": channel_id, "reason": reason})

        for callback in list(self._close_callbacks):
            try:
                callback(channel)
            except Exception:
                logger.exception(f"[Channels] Close callback failed for channel {channel_id}")

    async def close_channel(self, channel_id: int, reason: str = "closed by host") -> None:
        """Close one channel. Unknown or closed ids are ignored."""
        channel = self._channels.get(channel_id)
        if channel is None:
            return
        await channel.session.close(reason)

    async def close_listeners(self) -> None:
        listeners, self._listeners = list(self._listeners.values()), {}
        for listener in listeners:
            await listener.close()

    async def close_all(self) -> None:
        """Stop listening and close every channel."""
        await self.close_listeners()
        for channel in self.channels():
            await channel.session.close("shutdown")
