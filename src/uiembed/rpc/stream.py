"""
uiembed Byte Channels - transports under the RPC layer
v0.1.0

Handles:
- Spawned child processes (stdin/stdout become the stream, stderr is inherited)
- Listening on a Unix socket path or host:port and accepting peers one at a time
- Connecting to a listening address (client side)
- Wrapping descriptors already open in this process (pipes set up by a launcher)

Every transport yields a :class:`ByteStream`: byte-oriented send, and a
receive that returns ``b""`` at end of stream.
"""

from __future__ import annotations

import asyncio
import logging
import os
import uuid
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Iterable, List, Mapping, Optional, Sequence

from uiembed.errors import BindError, ChannelClosed, ConnectError, SpawnError

logger = logging.getLogger(__name__)


class ChannelKind(str, Enum):
    """Where a byte stream came from."""
    SPAWNED = "spawned"
    LISTENED = "listened"
    CONNECTED = "connected"
    INHERITED = "inherited"
    STDIO = "stdio"


@dataclass(frozen=True)
class Address:
    """Parsed listen/connect address."""
    raw: str
    path: Optional[str] = None
    host: Optional[str] = None
    port: Optional[int] = None

    @property
    def is_tcp(self) -> bool:
        return self.port is not None


def parse_address(address: str) -> Address:
    """
    Split an address into a Unix socket path or a TCP host/port.

    ``host:port`` with a numeric port (``[::1]:6666`` for IPv6) is TCP;
    anything else, including anything containing a path separator, is a
    filesystem path.
    """
    address = str(address).strip()
    if not address:
        raise BindError("empty address", address=address)
    host, sep, port = address.rpartition(":")
    if sep and host and port.isdigit() and "/" not in address and "\\" not in address:
        if host.startswith("[") and host.endswith("]"):
            host = host[1:-1]
        return Address(raw=address, host=host, port=int(port))
    return Address(raw=address, path=address)


def new_address(socket_dir: str) -> str:
    """Unique Unix socket path under ``socket_dir``."""
    return str(Path(socket_dir) / f"uiembed.{os.getpid()}.{uuid.uuid4().hex[:8]}.sock")


class ByteStream:
    """
    Bidirectional byte stream over asyncio streams.

    A stream without a writer is read-only (an inherited input descriptor).
    ``close()`` is idempotent; for a spawned child it also reaps the process.
    """

    def __init__(
        self,
        reader: Optional[asyncio.StreamReader],
        writer: Optional[asyncio.StreamWriter],
        *,
        kind: ChannelKind,
        process: Optional[asyncio.subprocess.Process] = None,
        transports: Sequence[asyncio.BaseTransport] = (),
        label: str = "",
        terminate_timeout: float = 2.0,
    ):
        self._reader = reader
        self._writer = writer
        self._process = process
        self._transports: List[asyncio.BaseTransport] = list(transports)
        self._terminate_timeout = terminate_timeout
        self._closed = False
        self.kind = kind
        self.label = label or kind.value

    def __repr__(self) -> str:
        return f"ByteStream({self.kind.value}, {self.label!r})"

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def writable(self) -> bool:
        return self._writer is not None and not self._closed and not self._writer.is_closing()

    @property
    def process(self) -> Optional[asyncio.subprocess.Process]:
        return self._process

    async def receive(self, size: int = 65536) -> bytes:
        """Read up to ``size`` bytes; ``b""`` means the peer closed its side."""
        if self._reader is None or self._closed:
            return b""
        try:
            return await self._reader.read(size)
        except (ConnectionError, OSError) as e:
            logger.debug(f"[Stream] {self.label}: read failed: {e}")
            return b""

    def send(self, data: bytes) -> None:
        """Queue bytes for the peer."""
        if not data:
            return
        if not self.writable:
            raise ChannelClosed(f"{self.label}: stream is not writable")
        self._writer.write(data)

    async def drain(self) -> None:
        """Wait until the write buffer is flushed to the OS."""
        if self._writer is None:
            return
        try:
            await self._writer.drain()
        except (ConnectionError, OSError) as e:
            raise ChannelClosed(f"{self.label}: write failed: {e}") from e

    def close_write(self) -> None:
        """Half-close: the peer observes end of stream, reads stay open."""
        if self._writer is None or self._writer.is_closing():
            return
        if self._writer.can_write_eof():
            self._writer.write_eof()
        else:
            self._writer.close()

    async def close(self) -> None:
        """Close both directions and reap a spawned child."""
        if self._closed:
            return
        self._closed = True

        if self._writer is not None:
            self._writer.close()
            try:
                await self._writer.wait_closed()
            except (ConnectionError, OSError) as e:
                logger.debug(f"[Stream] {self.label}: close error: {e}")

        for transport in self._transports:
            transport.close()

        if self._process is not None:
            await self._reap()

    async def _reap(self) -> None:
        proc = self._process
        if proc is None or proc.returncode is not None:
            return
        try:
            await asyncio.wait_for(proc.wait(), timeout=self._terminate_timeout)
            return
        except asyncio.TimeoutError:
            logger.warning(f"[Stream] {self.label} not exiting, sending SIGTERM")
        try:
            proc.terminate()
            await asyncio.wait_for(proc.wait(), timeout=self._terminate_timeout)
        except ProcessLookupError:
            return
        except asyncio.TimeoutError:
            logger.warning(f"[Stream] {self.label} not responding, sending SIGKILL")
            try:
                proc.kill()
            except ProcessLookupError:
                return
            await proc.wait()


# --- Transports ---

async def open_spawn(
    executable: str,
    args: Iterable[str] = (),
    *,
    env: Optional[Mapping[str, str]] = None,
    pass_fds: Sequence[int] = (),
    cwd: Optional[str] = None,
    terminate_timeout: float = 2.0,
) -> ByteStream:
    """
    Launch ``executable`` and bind its stdin/stdout as a stream.

    Args:
        executable: Program to run
        args: Argument list (without argv[0])
        env: Entries overriding the parent environment
        pass_fds: Extra descriptors the child inherits
        cwd: Working directory

    Raises:
        SpawnError: the executable cannot be launched
    """
    merged_env = None
    if env:
        merged_env = os.environ.copy()
        merged_env.update({str(k): str(v) for k, v in env.items()})

    argv = [str(a) for a in args]
    try:
        proc = await asyncio.create_subprocess_exec(
            executable,
            *argv,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=None,
            env=merged_env,
            cwd=cwd,
            pass_fds=tuple(pass_fds),
        )
    except (OSError, ValueError) as e:
        raise SpawnError(f"cannot launch {executable}: {e}", executable=executable) from e

    logger.info(f"[Stream] Spawned {executable} (PID: {proc.pid})")
    return ByteStream(
        proc.stdout,
        proc.stdin,
        kind=ChannelKind.SPAWNED,
        process=proc,
        label=f"{Path(executable).name}[{proc.pid}]",
        terminate_timeout=terminate_timeout,
    )


async def open_connect(address: str) -> ByteStream:
    """
    Connect to a listening address.

    Raises:
        ConnectError: nothing accepts connections at ``address``
    """
    parsed = parse_address(address)
    try:
        if parsed.is_tcp:
            reader, writer = await asyncio.open_connection(parsed.host, parsed.port)
        else:
            reader, writer = await asyncio.open_unix_connection(parsed.path)
    except OSError as e:
        raise ConnectError(f"cannot connect to {address}: {e}", address=address) from e

    logger.debug(f"[Stream] Connected to {address}")
    return ByteStream(reader, writer, kind=ChannelKind.CONNECTED, label=address)


async def open_inherited(
    read_fd: int,
    write_fd: Optional[int] = None,
    *,
    kind: ChannelKind = ChannelKind.INHERITED,
) -> ByteStream:
    """
    Wrap descriptors already open in this process.

    The descriptors are owned by the stream afterwards and closed with it.
    ``read_fd`` must be a pipe, socket or character device.

    Raises:
        OSError: a descriptor is not open
        ValueError: a descriptor is a regular file
    """
    loop = asyncio.get_running_loop()

    reader = asyncio.StreamReader()
    read_transport, _ = await loop.connect_read_pipe(
        lambda: asyncio.StreamReaderProtocol(reader),
        os.fdopen(read_fd, "rb", 0),
    )

    writer = None
    if write_fd is not None:
        write_transport, write_protocol = await loop.connect_write_pipe(
            lambda: asyncio.StreamReaderProtocol(asyncio.StreamReader()),
            os.fdopen(write_fd, "wb", 0),
        )
        writer = asyncio.StreamWriter(write_transport, write_protocol, None, loop)

    label = f"fd:{read_fd}" if write_fd is None else f"fd:{read_fd},{write_fd}"
    return ByteStream(reader, writer, kind=kind, transports=[read_transport], label=label)


class Listener:
    """
    Accepts peers on one address.

    Connections are handed out by :meth:`accept` in connection order, one
    peer per call (first-connect-wins). The socket path exists and accepts
    connections once :meth:`start` returns.
    """

    def __init__(self, address: str):
        self.address = address
        self._parsed = parse_address(address)
        self._server: Optional[asyncio.AbstractServer] = None
        self._pending: Optional[asyncio.Queue] = None
        self._closing = False

    @property
    def started(self) -> bool:
        return self._server is not None

    @property
    def bound_address(self) -> str:
        """Actual address, with the real port when bound to port 0."""
        if self._parsed.is_tcp and self._server is not None and self._server.sockets:
            host, port = self._server.sockets[0].getsockname()[:2]
            return f"{host}:{port}"
        return self.address

    async def start(self) -> None:
        """
        Bind the address.

        Raises:
            BindError: the address is in use or cannot be bound
        """
        if self._server is not None:
            return
        if self._closing:
            raise BindError("listener is closed", address=self.address)

        self._pending = asyncio.Queue()
        try:
            if self._parsed.is_tcp:
                self._server = await asyncio.start_server(
                    self._on_connect, self._parsed.host, self._parsed.port
                )
            else:
                path = Path(self._parsed.path)
                if path.exists():
                    raise BindError(f"address already in use: {self.address}", address=self.address)
                self._server = await asyncio.start_unix_server(self._on_connect, str(path))
        except OSError as e:
            raise BindError(f"cannot listen on {self.address}: {e}", address=self.address) from e

        logger.info(f"[Listener] Listening on {self.bound_address}")

    def _on_connect(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        if self._closing or self._pending is None:
            writer.close()
            return
        peer = writer.get_extra_info("peername") or self.address
        logger.debug(f"[Listener] Peer connected on {self.address}: {peer}")
        self._pending.put_nowait(
            ByteStream(reader, writer, kind=ChannelKind.LISTENED, label=f"{self.address}<-{peer}")
        )

    async def accept(self) -> ByteStream:
        """
        Wait for the next peer and return its stream.

        Raises:
            BindError: the listener is closed, or closes while waiting
        """
        await self.start()
        if self._pending is None:
            raise BindError("listener is closed", address=self.address)
        stream = await self._pending.get()
        if stream is None:
            # wake the next waiter too
            self._pending.put_nowait(None)
            raise BindError("listener is closed", address=self.address)
        return stream

    async def close(self) -> None:
        """Stop accepting; already accepted streams stay open."""
        if self._closing:
            return
        self._closing = True
        if self._server is not None:
            # Server.wait_closed() would also wait for accepted connections.
            self._server.close()
        if self._pending is not None:
            while not self._pending.empty():
                stream = self._pending.get_nowait()
                if stream is not None:
                    await stream.close()
            self._pending.put_nowait(None)
        if not self._parsed.is_tcp and self._server is not None:
            try:
                Path(self._parsed.path).unlink()
            except FileNotFoundError:
                pass
        logger.info(f"[Listener] Stopped listening on {self.address}")
