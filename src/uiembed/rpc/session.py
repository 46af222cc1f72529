"""
uiembed RPC Session - request/response correlation over one byte stream
v0.1.0

Handles:
- Outgoing requests with distinct ids, demultiplexing out-of-order responses
- Fire-and-forget notifications
- Dispatch of incoming requests/notifications to registered handlers
- Teardown: outstanding requests fail with ChannelClosed

Incoming messages are dispatched one at a time, in arrival order, from the
receive task. A request handler must therefore not issue a request on its
own session and wait for the answer; schedule follow-up work with
:meth:`Session.after_response` instead.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Callable, Dict, List, Optional, Set

from uiembed.errors import ChannelClosed, DecodeError, MethodNotFound, RpcError, error_from_payload
from uiembed.rpc.protocol import (
    MAX_MSGID,
    MessageDecoder,
    Notification,
    Request,
    Response,
    RPCMessage,
    encode_message,
)
from uiembed.rpc.stream import ByteStream

logger = logging.getLogger(__name__)

Handler = Callable[..., Any]
CloseCallback = Callable[[str], Any]


async def _call(handler: Handler, args: List[Any]) -> Any:
    result = handler(*args)
    if inspect.isawaitable(result):
        result = await result
    return result


class Session:
    """
    One RPC peer on a :class:`ByteStream`.

    Usage::

        session = Session(stream, channel_id=3)
        session.on_request("ping", lambda: "pong")
        session.start()
        info = await session.request("get_api_info")
    """

    def __init__(
        self,
        stream: ByteStream,
        *,
        channel_id: int = 0,
        read_chunk_size: int = 65536,
        max_buffer_size: int = 64 * 1024 * 1024,
    ):
        self.channel_id = channel_id
        self.close_reason: Optional[str] = None
        self._stream = stream
        self._read_chunk_size = read_chunk_size
        self._decoder = MessageDecoder(max_buffer_size=max_buffer_size)

        self._next_id = 0
        self._pending: Dict[int, asyncio.Future] = {}

        self._request_handlers: Dict[str, Handler] = {}
        self._notification_handlers: Dict[str, Handler] = {}
        self._close_callbacks: List[CloseCallback] = []
        self._after_response: Optional[List[Callable[[], Any]]] = None
        self._tasks: Set[asyncio.Task] = set()

        self._receive_task: Optional[asyncio.Task] = None
        self._closed = False
        self._closed_event = asyncio.Event()

    def __repr__(self) -> str:
        state = "closed" if self._closed else "open"
        return f"Session(chan={self.channel_id}, {self._stream!r}, {state})"

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending_count(self) -> int:
        """Outstanding outgoing requests."""
        return len(self._pending)

    @property
    def stream(self) -> ByteStream:
        return self._stream

    # --- Registration ---

    def on_request(self, method: str, handler: Handler) -> None:
        """
        Register the handler for incoming requests named ``method``.

        The handler gets the request params as positional arguments and may
        be sync or async. Its return value is the result; raising an
        :class:`RpcError` subclass produces an error response of that kind.
        A later registration for the same method replaces the earlier one.
        """
        self._request_handlers[method] = handler

    def on_notification(self, method: str, handler: Handler) -> None:
        """Register the handler for notifications named ``method`` (last wins)."""
        self._notification_handlers[method] = handler

    def on_close(self, callback: CloseCallback) -> None:
        """Call ``callback(reason)`` once when the session closes."""
        if self._closed:
            self._run_close_callback(callback)
            return
        self._close_callbacks.append(callback)

    def after_response(self, callback: Callable[[], Any]) -> None:
        """
        Run ``callback`` once the response to the current request is written.

        Only valid inside a request handler. Coroutine callbacks run as
        tasks. Callbacks are dropped if the response cannot be written.
        """
        if self._after_response is None:
            raise RuntimeError("after_response() called outside a request handler")
        self._after_response.append(callback)

    # --- Lifecycle ---

    def start(self) -> None:
        """Start the receive task."""
        if self._receive_task is not None or self._closed:
            return
        self._receive_task = asyncio.get_running_loop().create_task(
            self._receive_loop(), name=f"uiembed-session-{self.channel_id}"
        )

    async def wait_closed(self) -> None:
        await self._closed_event.wait()

    async def close(self, reason: str = "closed") -> None:
        """Close the session and its stream. Idempotent."""
        await self._shutdown(reason)

    # --- Outgoing ---

    async def request(self, method: str, *args: Any) -> Any:
        """
        Send a request and wait for its response.

        Raises:
            RpcError: (or a subclass) the peer answered with an error
            ChannelClosed: the channel closed before the response arrived
        """
        if self._closed:
            raise ChannelClosed(f"request {method!r} on closed channel", channel_id=self.channel_id)

        msgid = self._allocate_msgid()
        future = asyncio.get_running_loop().create_future()
        self._pending[msgid] = future
        try:
            self._send(Request(msgid=msgid, method=method, args=list(args)))
            await self._stream.drain()
            return await future
        finally:
            self._pending.pop(msgid, None)

    def notify(self, method: str, *args: Any) -> None:
        """
        Send a notification.

        Raises:
            ChannelClosed: the channel is closed
        """
        if self._closed:
            raise ChannelClosed(f"notify {method!r} on closed channel", channel_id=self.channel_id)
        self._send(Notification(method=method, args=list(args)))

    def _allocate_msgid(self) -> int:
        while True:
            msgid = self._next_id
            self._next_id = 0 if self._next_id >= MAX_MSGID else self._next_id + 1
            if msgid not in self._pending:
                return msgid

    def _send(self, msg: RPCMessage) -> None:
        try:
            self._stream.send(encode_message(msg))
        except ChannelClosed as e:
            raise ChannelClosed(e.embed_message, channel_id=self.channel_id) from e

    # --- Incoming ---

    async def _receive_loop(self) -> None:
        reason = "end of stream"
        try:
            while not self._closed:
                data = await self._stream.receive(self._read_chunk_size)
                if not data:
                    break
                self._decoder.feed(data)
                for msg in self._decoder:
                    if self._closed:
                        break
                    await self._dispatch(msg)
        except DecodeError as e:
            logger.warning(f"[Session] chan {self.channel_id}: {e.embed_message}, closing")
            reason = f"decode error: {e.embed_message}"
        except Exception as e:
            logger.exception(f"[Session] chan {self.channel_id}: receive loop failed")
            reason = f"receive error: {e}"

        await self._shutdown(reason)

    async def _dispatch(self, msg: RPCMessage) -> None:
        if isinstance(msg, Response):
            self._handle_response(msg)
        elif isinstance(msg, Request):
            await self._handle_request(msg)
        elif isinstance(msg, Notification):
            await self._handle_notification(msg)
        else:
            raise TypeError(f"unexpected message: {msg!r}")

    def _handle_response(self, msg: Response) -> None:
        future = self._pending.get(msg.msgid)
        if future is None:
            logger.warning(f"[Session] chan {self.channel_id}: response for unknown id {msg.msgid}")
            return
        if future.done():
            return
        if msg.error is not None:
            future.set_exception(error_from_payload(msg.error, channel_id=self.channel_id))
        else:
            future.set_result(msg.result)

    async def _handle_request(self, msg: Request) -> None:
        self._after_response = []
        handler = self._request_handlers.get(msg.method)
        error: Any = None
        result: Any = None
        try:
            if handler is None:
                raise MethodNotFound(f"method not found: {msg.method}")
            result = await _call(handler, msg.args)
        except RpcError as e:
            logger.debug(f"[Session] chan {self.channel_id}: {msg.method} -> {e.kind.value}: {e.embed_message}")
            error = e.to_payload()
        except Exception as e:
            logger.exception(f"[Session] chan {self.channel_id}: handler for {msg.method} failed")
            error = RpcError(str(e) or type(e).__name__).to_payload()
        finally:
            callbacks, self._after_response = self._after_response, None

        try:
            self._send(Response(msgid=msg.msgid, error=error, result=result))
        except ChannelClosed:
            logger.debug(f"[Session] chan {self.channel_id}: closed before response to {msg.method}")
            return
        except (TypeError, ValueError) as e:
            logger.error(f"[Session] chan {self.channel_id}: cannot encode result of {msg.method}: {e}")
            self._send(Response(msgid=msg.msgid, error=RpcError(f"unencodable result: {e}").to_payload()))
            return

        loop = asyncio.get_running_loop()
        for callback in callbacks:
            loop.call_soon(self._run_deferred, callback)

    async def _handle_notification(self, msg: Notification) -> None:
        handler = self._notification_handlers.get(msg.method)
        if handler is None:
            logger.debug(f"[Session] chan {self.channel_id}: unhandled notification {msg.method}")
            return
        try:
            await _call(handler, msg.args)
        except Exception:
            logger.exception(f"[Session] chan {self.channel_id}: notification handler for {msg.method} failed")

    def _run_deferred(self, callback: Callable[[], Any]) -> None:
        try:
            result = callback()
        except Exception:
            logger.exception(f"[Session] chan {self.channel_id}: after-response callback failed")
            return
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._tasks.add(task)
            task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                f"[Session] chan {self.channel_id}: after-response task failed: {exc}",
                exc_info=exc,
            )

    # --- Teardown ---

    async def _shutdown(self, reason: str) -> None:
        if self._closed:
            return
        self._closed = True
        self.close_reason = reason
        logger.debug(f"[Session] chan {self.channel_id}: closing ({reason})")

        for future in self._pending.values():
            if not future.done():
                future.set_exception(
                    ChannelClosed(f"channel closed: {reason}", channel_id=self.channel_id)
                )

        task = self._receive_task
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        await self._stream.close()
        self._closed_event.set()

        callbacks, self._close_callbacks = self._close_callbacks, []
        for callback in callbacks:
            self._run_close_callback(callback)

    def _run_close_callback(self, callback: CloseCallback) -> None:
        try:
            result = callback(self.close_reason or "closed")
        except Exception:
            logger.exception(f"[Session] chan {self.channel_id}: close callback failed")
            return
        if inspect.isawaitable(result):
            task = asyncio.ensure_future(result)
            self._tasks.add(task)
            task.add_done_callback(self._task_done)
