"""
UI attach state machine and capability negotiation.

States::

    unattached --ui_attach--> attaching --(no pager | pager dismissed)--> attached
         ^                        |                                          |
         +------ AttachError -----+                                          |
    attaching | attached --stream end | ui_detach--> closed

An invalid ``ui_attach`` never leaves ``unattached``; the UI may retry.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass, fields
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from uiembed.errors import AttachError, ChannelClosed
from uiembed.rpc.session import Session
from uiembed.ui.events import DefaultColorsSet, Flush, GridClear, GridResize, RedrawEncoder, ScreenEvent
from uiembed.ui.grid import DEFAULT_GRID, HighlightTable, Row, screen_events

logger = logging.getLogger(__name__)

UI_OPTIONS_VERSION = 1


class UiState(str, Enum):
    UNATTACHED = "unattached"
    ATTACHING = "attaching"
    ATTACHED = "attached"
    CLOSED = "closed"


_TRANSITIONS = {
    UiState.UNATTACHED: {UiState.ATTACHING, UiState.CLOSED},
    UiState.ATTACHING: {UiState.ATTACHED, UiState.CLOSED},
    UiState.ATTACHED: {UiState.CLOSED},
    UiState.CLOSED: set(),
}


@dataclass(frozen=True)
class UiOptions:
    """Capabilities a UI requests at attach. Closed set, see ``UI_OPTIONS_VERSION``."""

    rgb: bool = True
    ext_linegrid: bool = False
    ext_multigrid: bool = False
    ext_hlstate: bool = False
    ext_termcolors: bool = False
    ext_cmdline: bool = False
    ext_popupmenu: bool = False
    ext_tabline: bool = False
    ext_wildmenu: bool = False
    ext_messages: bool = False
    stdin_fd: Optional[int] = None
    term_name: Optional[str] = None

    @property
    def linegrid(self) -> bool:
        """Cell-grid encoding; multigrid implies it."""
        return self.ext_linegrid or self.ext_multigrid

    @classmethod
    def names(cls) -> List[str]:
        return [f.name for f in fields(cls)]

    @classmethod
    def parse(cls, options: Any) -> "UiOptions":
        """
        Validate a ``ui_attach`` options map.

        Raises:
            AttachError: not a map, unknown name, or wrong value type
        """
        if options is None:
            return cls()
        if not isinstance(options, Mapping):
            raise AttachError(f"options must be a map, got {type(options).__name__}")

        known = set(cls.names())
        values: Dict[str, Any] = {}
        for name, value in options.items():
            if not isinstance(name, str) or name not in known:
                raise AttachError(f"No such UI option: {name}")
            if name == "stdin_fd":
                if isinstance(value, bool) or not isinstance(value, int) or value < 0:
                    raise AttachError("stdin_fd must be a non-negative Integer")
            elif name == "term_name":
                if not isinstance(value, str):
                    raise AttachError("term_name must be a String")
            elif not isinstance(value, bool):
                raise AttachError(f"{name} must be a Boolean")
            values[name] = value
        return cls(**values)

    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}


def validate_dimensions(width: Any, height: Any) -> Tuple[int, int]:
    """
    Raises:
        AttachError: width/height not positive integers
    """
    for value in (width, height):
        if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
            raise AttachError("Expected width > 0 and height > 0")
    return width, height


TransitionCallback = Callable[["UiChannel", UiState, UiState, str], None]


class UiChannel:
    """
    Attach state and redraw output of one channel.

    Created when ``ui_attach`` is accepted (state ``attaching``). Holds the
    negotiated options, the grid size, the pager shown to the startup
    buffer claimant, and colors deferred while attaching.
    """

    def __init__(
        self,
        channel_id: int,
        session: Session,
        options: UiOptions,
        width: int,
        height: int,
        *,
        highlights: Optional[HighlightTable] = None,
        on_transition: Optional[TransitionCallback] = None,
    ):
        self.channel_id = channel_id
        self.session = session
        self.options = options
        self.width = width
        self.height = height
        self.highlights = highlights or HighlightTable()
        self.encoder = RedrawEncoder(linegrid=options.linegrid, rgb=options.rgb)
        self.state = UiState.UNATTACHED
        self.pager = None
        self.sent_colors: Optional[Tuple[int, int, int]] = None
        self.deferred_colors: Optional[Tuple[int, int, int]] = None
        self.replay_colors: Optional[Tuple[int, int, int]] = None
        self.continued = asyncio.Event()
        self._on_transition = on_transition
        self.transition(UiState.ATTACHING, "ui_attach")

    def __repr__(self) -> str:
        return f"UiChannel(chan={self.channel_id}, {self.state.value}, {self.width}x{self.height})"

    @property
    def attached(self) -> bool:
        return self.state is UiState.ATTACHED

    @property
    def in_pager(self) -> bool:
        return self.state is UiState.ATTACHING and self.pager is not None

    @property
    def pager_dismissed(self) -> bool:
        """A continue key arrived; the attach completes on the next loop turn."""
        return self.state is UiState.ATTACHING and self.continued.is_set()

    def transition(self, to_state: UiState, trigger: str) -> UiState:
        """Move to ``to_state``; returns the previous state."""
        from_state = self.state
        if to_state is from_state:
            return from_state
        if to_state not in _TRANSITIONS[from_state]:
            raise ValueError(f"invalid UI transition {from_state.value} -> {to_state.value}")
        self.state = to_state
        logger.debug(f"[Attach] chan {self.channel_id}: {from_state.value} -> {to_state.value} ({trigger})")
        if self._on_transition is not None:
            self._on_transition(self, from_state, to_state, trigger)
        return from_state

    # --- Output ---

    def send(self, events: Sequence[ScreenEvent]) -> bool:
        """Encode ``events`` as one redraw batch. False if the channel is gone."""
        if self.state is UiState.CLOSED:
            return False
        entries = self.encoder.encode(events)
        if not entries:
            return True
        try:
            self.session.notify("redraw", *entries)
        except ChannelClosed:
            logger.debug(f"[Attach] chan {self.channel_id}: redraw dropped, channel closed")
            return False
        return True

    def colors_event(self, colors: Tuple[int, int, int]) -> DefaultColorsSet:
        self.sent_colors = tuple(colors)
        self.deferred_colors = None
        fg, bg, sp = colors
        return DefaultColorsSet(fg=fg, bg=bg, sp=sp)

    def defer_colors(self, colors: Tuple[int, int, int]) -> None:
        self.deferred_colors = tuple(colors)

    def take_deferred_colors(self) -> Optional[Tuple[int, int, int]]:
        """Deferred colors if they differ from what was already sent."""
        colors, self.deferred_colors = self.deferred_colors, None
        if colors is None or colors == self.sent_colors:
            return None
        return colors

    def initial_events(self, colors: Tuple[int, int, int]) -> List[ScreenEvent]:
        """Colors, highlight table and grid size sent first after attach."""
        events: List[ScreenEvent] = [self.colors_event(colors)]
        events.extend(self.highlights.define_events())
        events.append(GridResize(DEFAULT_GRID, self.width, self.height))
        events.append(GridClear(DEFAULT_GRID))
        return events

    def screen(self, rows: Iterable[Row], cursor: Tuple[int, int]) -> List[ScreenEvent]:
        events = screen_events(list(rows), self.width, self.height, self.highlights, cursor)
        events.append(Flush())
        return events

    def resize(self, width: int, height: int) -> List[ScreenEvent]:
        self.width, self.height = width, height
        return [GridResize(DEFAULT_GRID, width, height), GridClear(DEFAULT_GRID)]
