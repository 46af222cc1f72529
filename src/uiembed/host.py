"""uiembed Host — the editor process side of UI embedding.

Ties together the channel manager, the startup buffer, the lifecycle bus
and the minimal editor core, and serves the RPC API on every channel:

    get_api_info, ui_attach, ui_detach, ui_try_resize, input,
    lifecycle_log, subscribe, unsubscribe

Everything here runs on the event loop thread, which plays the role of the
editor's single main loop: no locks, one writer for all shared state.
"""
from __future__ import annotations

import asyncio
import functools
import logging
import os
import stat
import sys
from typing import Any, Dict, List, Optional, Sequence, Set

from uiembed.config import EmbedConfig
from uiembed.core.channels import INTERNAL_CHANNEL_ID, Channel, ChannelManager
from uiembed.core.commands import SOURCE_COMMAND_LINE, SOURCE_PRE_CONFIG, run_startup_commands
from uiembed.core.editor import EditorCore
from uiembed.core.events import Event, LifecycleBus, LifecycleEvent
from uiembed.core.startup import ColorAssignment, DiagnosticLine, Entry, StartupBuffer
from uiembed.errors import AttachError, ChannelClosed, InvalidArgs
from uiembed.logs.logger import TraceLogger
from uiembed.rpc.stream import open_inherited
from uiembed.ui.attach import UiChannel, UiOptions, UiState, validate_dimensions
from uiembed.ui.grid import HighlightTable
from uiembed.ui.pager import Pager, split_at_continue

logger = logging.getLogger(__name__)

API_LEVEL = 1
API_VERSION = {"major": 0, "minor": 1, "patch": 0, "api_level": API_LEVEL}

HOST_METHODS = (
    "get_api_info",
    "ui_attach",
    "ui_detach",
    "ui_try_resize",
    "input",
    "lifecycle_log",
    "subscribe",
    "unsubscribe",
)


def _expect_args(method: str, args: Sequence[Any], low: int, high: Optional[int] = None) -> List[Any]:
    high = low if high is None else high
    if not low <= len(args) <= high:
        expected = str(low) if low == high else f"{low}-{high}"
        raise InvalidArgs(f"{method}: expected {expected} argument(s), got {len(args)}")
    return list(args) + [None] * (high - len(args))


def _read_regular_file(fd: int) -> bytes:
    chunks = []
    try:
        while True:
            chunk = os.read(fd, 65536)
            if not chunk:
                break
            chunks.append(chunk)
    finally:
        os.close(fd)
    return b"".join(chunks)


class EditorHost:
    """
    Embeddable editor host.

    Usage::

        host = EditorHost(config, wait_for_ui=True)
        await host.run(pre_commands=['echoerr "oops"'])
        await host.channels.stdio_channel()

    Args:
        config: Host configuration
        wait_for_ui: ``editor-ready`` waits for the first attached UI
            (``--embed``) instead of firing after startup (``--headless``)
    """

    def __init__(self, config: Optional[EmbedConfig] = None, *, wait_for_ui: bool = True):
        self.config = config or EmbedConfig()
        self.wait_for_ui = wait_for_ui
        self.trace = TraceLogger(self.config.trace_path) if self.config.trace_path else None
        self.bus = LifecycleBus()
        self.channels = ChannelManager(self.config, bus=self.bus, trace=self.trace)
        self.startup = StartupBuffer()
        self.editor = EditorCore()
        # colors before any startup command, the base the replay is applied to
        self._startup_base = ColorAssignment(*self.editor.colors)
        self.highlights = HighlightTable()

        self._uis: Dict[int, UiChannel] = {}
        self._subscriptions: Dict[int, Set[str]] = {}
        self._lifecycle_log: List[str] = []
        self._ready = False
        self._started = False
        self._closed = False

        self.channels.on_open(self._register_channel)
        self.channels.on_close(self._channel_closed)
        self.bus.subscribe(LifecycleEvent.EDITOR_READY, self._record_lifecycle)
        self.bus.subscribe(LifecycleEvent.UI_ENTERED, self._record_lifecycle)
        self.bus.subscribe_all(self._forward_event)

    # ── State ────────────────────────────────────────────────────

    @property
    def ready(self) -> bool:
        return self._ready

    @property
    def started(self) -> bool:
        return self._started

    def lifecycle_log(self) -> List[str]:
        """``["editor-ready", "ui-entered:<id>", ...]`` in firing order."""
        return list(self._lifecycle_log)

    def ui(self, channel_id: int) -> Optional[UiChannel]:
        return self._uis.get(channel_id)

    def uis(self) -> List[UiChannel]:
        return [self._uis[cid] for cid in sorted(self._uis)]

    # ── Startup ──────────────────────────────────────────────────

    async def run(self, pre_commands: Sequence[str] = (), commands: Sequence[str] = ()) -> int:
        """
        Run startup commands; returns how many failed.

        ``pre_commands`` run first (``--cmd``), then ``commands`` (``-c``).
        Without ``wait_for_ui``, ``editor-ready`` fires here and captured
        diagnostics are written to stderr.
        """
        failures = run_startup_commands(self, pre_commands, SOURCE_PRE_CONFIG)
        failures += run_startup_commands(self, commands, SOURCE_COMMAND_LINE)
        self._started = True
        logger.info(f"[Host] Startup finished ({failures} failed command(s))")

        if not self.wait_for_ui:
            self._flush_startup_to_stderr()
            self._fire_ready()
        return failures

    def _flush_startup_to_stderr(self) -> None:
        replay = self.startup.claim(INTERNAL_CHANNEL_ID, self._apply_live)
        self.startup.freeze()
        if replay is None:
            return
        for line in replay.lines:
            self.editor.add_message(line)
            print(line.text, file=sys.stderr)

    def _fire_ready(self) -> None:
        if self._ready:
            return
        self._ready = True
        self.bus.publish(LifecycleEvent.EDITOR_READY)

    # ── Editor-side operations ───────────────────────────────────

    def report_error(self, text: str, hl_group: str = "ErrorMsg") -> None:
        """Emit a diagnostic line (captured before attach, live after)."""
        line = DiagnosticLine(text, hl_group)
        logger.debug(f"[Host] Diagnostic: {text}")
        if self.startup.append_diagnostic(line):
            return
        self._apply_live(line)

    def set_default_colors(self, fg: Optional[int] = None, bg: Optional[int] = None, sp: Optional[int] = None) -> None:
        changed = self.editor.set_colors(fg=fg, bg=bg, sp=sp)
        if self.startup.append_colors(ColorAssignment(fg, bg, sp)):
            return
        if changed:
            self._broadcast_colors()

    def set_colorscheme(self, name: str) -> None:
        """
        Raises:
            KeyError: unknown scheme
        """
        before = self.editor.colors
        self.editor.set_colorscheme(name)
        fg, bg, sp = self.editor.colors
        if self.startup.append_colors(ColorAssignment(fg, bg, sp)):
            return
        if self.editor.colors != before:
            self._broadcast_colors()

    def _apply_live(self, entry: Entry) -> None:
        if isinstance(entry, ColorAssignment):
            self._broadcast_colors()
            return
        self.editor.add_message(entry)
        for ui in self.uis():
            if ui.in_pager:
                ui.pager.append(entry)
                if ui.sent_colors is not None:
                    self._draw_pager(ui)
            elif ui.attached:
                self._draw_editor(ui)

    def _to_claimant(self, ui: UiChannel, entry: Entry) -> None:
        if isinstance(entry, ColorAssignment):
            self._broadcast_colors()
            return
        if ui.pager_dismissed:
            self.editor.add_message(entry)
            return
        if ui.pager is None:
            ui.pager = Pager()
        ui.pager.append(entry)
        if ui.sent_colors is not None:
            self._draw_pager(ui)

    def _broadcast_colors(self) -> None:
        colors = self.editor.colors
        for ui in self.uis():
            if ui.attached:
                ui.send([ui.colors_event(colors)] + ui.screen(self._editor_rows(ui), self.editor.cursor))
            elif ui.state is UiState.ATTACHING:
                ui.defer_colors(colors)

    # ── Drawing ──────────────────────────────────────────────────

    def _editor_rows(self, ui: UiChannel):
        return self.editor.render(ui.width, ui.height)

    def _first_colors(self, ui: UiChannel):
        if ui.replay_colors is not None:
            return ui.replay_colors
        return self.editor.colors

    def _draw_editor(self, ui: UiChannel) -> None:
        ui.send(ui.screen(self._editor_rows(ui), self.editor.cursor))

    def _draw_pager(self, ui: UiChannel, initial: bool = False) -> None:
        events = ui.initial_events(self._first_colors(ui)) if initial else []
        events += ui.screen(ui.pager.rows(ui.width, ui.height), ui.pager.cursor(ui.width, ui.height))
        ui.send(events)

    # ── Channels ─────────────────────────────────────────────────

    def _register_channel(self, channel: Channel) -> None:
        for method in HOST_METHODS:
            handler = getattr(self, f"_rpc_{method}")
            channel.session.on_request(method, functools.partial(handler, channel.channel_id))

    def _channel_closed(self, channel: Channel) -> None:
        cid = channel.channel_id
        self._subscriptions.pop(cid, None)
        ui = self._uis.pop(cid, None)
        if ui is not None:
            self._retire_ui(ui, "stream_end")

    def _retire_ui(self, ui: UiChannel, trigger: str) -> None:
        was_attached = ui.attached
        ui.transition(UiState.CLOSED, trigger)
        ui.continued.set()
        if self.startup.claimant == ui.channel_id and not self.startup.frozen:
            self.startup.freeze()
        if was_attached:
            self.bus.publish(LifecycleEvent.UI_LEFT, {"channel_id": ui.channel_id})

    def _on_ui_transition(self, ui: UiChannel, from_state: UiState, to_state: UiState, trigger: str) -> None:
        channel = self.channels.get(ui.channel_id)
        if channel is not None:
            channel.ui_state = to_state
        if self.trace:
            self.trace.log_transition(ui.channel_id, from_state.value, to_state.value, trigger)

    # ── Attach flow ──────────────────────────────────────────────

    def _rpc_ui_attach(self, channel_id: int, *args: Any) -> None:
        width, height, options = _expect_args("ui_attach", args, 2, 3)
        existing = self._uis.get(channel_id)
        if existing is not None and existing.state is not UiState.CLOSED:
            raise AttachError(f"UI already attached to channel: {channel_id}", channel_id=channel_id)

        width, height = validate_dimensions(width, height)
        opts = UiOptions.parse(options)
        if opts.stdin_fd is not None:
            try:
                os.fstat(opts.stdin_fd)
            except OSError as e:
                raise AttachError(f"stdin_fd {opts.stdin_fd} is not open: {e}", channel_id=channel_id) from e

        session = self.channels.channel_for(channel_id)
        ui = UiChannel(
            channel_id,
            session,
            opts,
            width,
            height,
            highlights=self.highlights,
            on_transition=self._on_ui_transition,
        )
        self._uis[channel_id] = ui
        channel = self.channels.get(channel_id)
        if channel is not None:
            channel.capabilities = opts

        replay = self.startup.claim(channel_id, functools.partial(self._to_claimant, ui))
        if replay is not None and replay.colors:
            resolved = replay.final_colors(self._startup_base)
            ui.replay_colors = (resolved.fg, resolved.bg, resolved.sp)
        if replay is not None and replay.lines:
            ui.pager = Pager(replay.lines)

        logger.info(
            f"[Attach] chan {channel_id}: {width}x{height} "
            f"{'linegrid' if opts.linegrid else 'legacy'}{' +pager' if ui.pager else ''}"
        )
        session.after_response(functools.partial(self._complete_attach, ui))

    async def _complete_attach(self, ui: UiChannel) -> None:
        if ui.options.stdin_fd is not None:
            text = await self._read_stdin_fd(ui.options.stdin_fd)
            if ui.state is not UiState.ATTACHING:
                return
            if text is not None:
                self.editor.load_text(text)

        if ui.state is not UiState.ATTACHING:
            return

        if ui.pager is not None:
            self._draw_pager(ui, initial=True)
            await ui.continued.wait()
            if ui.state is not UiState.ATTACHING:
                return
            self._finish_attach(ui, "pager_continue", [])
        else:
            self._finish_attach(ui, "ui_attach", ui.initial_events(self._first_colors(ui)))

    def _finish_attach(self, ui: UiChannel, trigger: str, events: list) -> None:
        ui.pager = None
        self.startup.freeze()
        ui.transition(UiState.ATTACHED, trigger)

        deferred = ui.take_deferred_colors()
        if deferred is not None:
            events.append(ui.colors_event(deferred))
        events.extend(ui.screen(self._editor_rows(ui), self.editor.cursor))
        ui.send(events)

        self._fire_ready()
        self.bus.publish(LifecycleEvent.UI_ENTERED, {"channel_id": ui.channel_id})

    async def _read_stdin_fd(self, fd: int) -> Optional[str]:
        """Read ``fd`` to end of stream; the descriptor is closed afterwards."""
        try:
            regular = stat.S_ISREG(os.fstat(fd).st_mode)
            if regular:
                data = await asyncio.to_thread(_read_regular_file, fd)
            else:
                data = await self._read_stream_fd(fd)
        except OSError as e:
            logger.warning(f"[Host] Cannot read stdin_fd {fd}: {e}")
            self.report_error(f"E5010: Cannot read from stdin_fd {fd}")
            return None
        return data.decode("utf-8", errors="replace")

    async def _read_stream_fd(self, fd: int) -> bytes:
        stream = await open_inherited(fd)
        chunks = []
        try:
            while True:
                chunk = await stream.receive(self.config.read_chunk_size)
                if not chunk:
                    break
                chunks.append(chunk)
        finally:
            await stream.close()
        return b"".join(chunks)

    # ── RPC methods ──────────────────────────────────────────────

    def _rpc_get_api_info(self, channel_id: int, *args: Any) -> list:
        _expect_args("get_api_info", args, 0)
        return [
            channel_id,
            {
                "version": dict(API_VERSION),
                "functions": [{"name": name} for name in HOST_METHODS],
                "ui_options": UiOptions.names(),
            },
        ]

    def _rpc_ui_detach(self, channel_id: int, *args: Any) -> None:
        _expect_args("ui_detach", args, 0)
        ui = self._uis.get(channel_id)
        if ui is None or ui.state is UiState.CLOSED:
            raise InvalidArgs(f"UI not attached to channel: {channel_id}", channel_id=channel_id)
        del self._uis[channel_id]
        self._retire_ui(ui, "ui_detach")

    def _rpc_ui_try_resize(self, channel_id: int, *args: Any) -> None:
        width, height = _expect_args("ui_try_resize", args, 2)
        ui = self._uis.get(channel_id)
        if ui is None or ui.state is UiState.CLOSED:
            raise InvalidArgs(f"UI not attached to channel: {channel_id}", channel_id=channel_id)
        try:
            width, height = validate_dimensions(width, height)
        except AttachError as e:
            raise InvalidArgs(e.embed_message, channel_id=channel_id) from e

        if ui.sent_colors is None:
            # nothing drawn yet, the first draw uses the new size
            ui.width, ui.height = width, height
            return
        events = ui.resize(width, height)
        if ui.in_pager:
            events += ui.screen(ui.pager.rows(width, height), ui.pager.cursor(width, height))
        else:
            events += ui.screen(self._editor_rows(ui), self.editor.cursor)
        ui.send(events)

    def _rpc_input(self, channel_id: int, *args: Any) -> int:
        (keys,) = _expect_args("input", args, 1)
        if isinstance(keys, bytes):
            keys = keys.decode("utf-8", errors="replace")
        if not isinstance(keys, str):
            raise InvalidArgs("input: keys must be a String", channel_id=channel_id)

        ui = self._uis.get(channel_id)
        if ui is None or not (ui.attached or ui.in_pager or ui.pager_dismissed):
            raise InvalidArgs(f"UI not attached to channel: {channel_id}", channel_id=channel_id)

        accepted = len(keys.encode("utf-8"))
        if ui.in_pager:
            dismissed, rest = split_at_continue(keys)
            if dismissed:
                # later input goes straight to typeahead
                ui.pager = None
                ui.continued.set()
                self.editor.feed_keys(rest)
            return accepted
        return self.editor.feed_keys(keys)

    def _rpc_lifecycle_log(self, channel_id: int, *args: Any) -> List[str]:
        _expect_args("lifecycle_log", args, 0)
        return self.lifecycle_log()

    def _rpc_subscribe(self, channel_id: int, *args: Any) -> None:
        (event,) = _expect_args("subscribe", args, 1)
        self._subscriptions.setdefault(channel_id, set()).add(self._event_name(event))

    def _rpc_unsubscribe(self, channel_id: int, *args: Any) -> None:
        (event,) = _expect_args("unsubscribe", args, 1)
        self._subscriptions.get(channel_id, set()).discard(self._event_name(event))

    @staticmethod
    def _event_name(event: Any) -> str:
        try:
            return LifecycleEvent(event).value
        except ValueError as e:
            raise InvalidArgs(f"unknown event: {event!r}") from e

    # ── Lifecycle bookkeeping ────────────────────────────────────

    def _record_lifecycle(self, event: Event) -> None:
        self._lifecycle_log.append(event.label())
        logger.info(f"[Host] {event.label()}")

    def _forward_event(self, event: Event) -> None:
        if self.trace:
            self.trace.log("lifecycle", event.channel_id, name=event.event.value)
        for cid, names in list(self._subscriptions.items()):
            if event.event.value not in names:
                continue
            channel = self.channels.get(cid)
            if channel is None or channel.closed:
                continue
            try:
                channel.session.notify(event.event.value, dict(event.data))
            except ChannelClosed:
                logger.debug(f"[Host] chan {cid}: dropped {event.event.value} notification")

    # ── Shutdown ─────────────────────────────────────────────────

    async def close(self) -> None:
        """Detach every UI and close all channels. Idempotent."""
        if self._closed:
            return
        self._closed = True
        await self.channels.close_all()
        logger.info("[Host] Closed")
