"""Startup Buffer — editor output produced before any UI is attached.

Diagnostics and color assignments emitted during startup are captured
here instead of being lost. The first UI to attach claims the buffer and
receives the replay exactly once; afterwards entries go straight to that
claimant until the buffer is frozen, and once frozen the editor emits
them live.

States::

    OPEN ──claim (non-empty)──▶ CLAIMED ──freeze──▶ FROZEN
      └──claim (empty) / freeze──────────────────────▲

All methods must be called from the event loop thread.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional, Union

logger = logging.getLogger(__name__)


class BufferState(str, Enum):
    OPEN = "open"
    CLAIMED = "claimed"
    FROZEN = "frozen"


@dataclass(frozen=True)
class DiagnosticLine:
    """One message line, drawn with ``hl_group``."""
    text: str
    hl_group: str = "ErrorMsg"


@dataclass(frozen=True)
class ColorAssignment:
    """Partial default-color change; ``None`` fields are left unchanged."""
    fg: Optional[int] = None
    bg: Optional[int] = None
    sp: Optional[int] = None

    def apply(self, base: "ColorAssignment") -> "ColorAssignment":
        return ColorAssignment(
            fg=self.fg if self.fg is not None else base.fg,
            bg=self.bg if self.bg is not None else base.bg,
            sp=self.sp if self.sp is not None else base.sp,
        )


Entry = Union[DiagnosticLine, ColorAssignment]
EntrySink = Callable[[Entry], None]


@dataclass
class StartupReplay:
    """What the claimant receives."""
    channel_id: int
    lines: List[DiagnosticLine] = field(default_factory=list)
    colors: List[ColorAssignment] = field(default_factory=list)

    def final_colors(self, base: ColorAssignment) -> ColorAssignment:
        result = base
        for assignment in self.colors:
            result = assignment.apply(result)
        return result


class StartupBuffer:
    """Ordered pre-attach output, replayed to exactly one channel."""

    def __init__(self) -> None:
        self._state = BufferState.OPEN
        self._lines: List[DiagnosticLine] = []
        self._colors: List[ColorAssignment] = []
        self._claimant: Optional[int] = None
        self._sink: Optional[EntrySink] = None

    @property
    def state(self) -> BufferState:
        return self._state

    @property
    def claimant(self) -> Optional[int]:
        return self._claimant

    @property
    def frozen(self) -> bool:
        return self._state is BufferState.FROZEN

    def is_empty(self) -> bool:
        return not self._lines and not self._colors

    @property
    def lines(self) -> List[DiagnosticLine]:
        return list(self._lines)

    # ── Append ───────────────────────────────────────────────────

    def append_diagnostic(self, line: DiagnosticLine) -> bool:
        """Capture a diagnostic. False means frozen: emit it live."""
        return self._append(line)

    def append_colors(self, assignment: ColorAssignment) -> bool:
        """Capture a color change. False means frozen: emit it live."""
        return self._append(assignment)

    def _append(self, entry: Entry) -> bool:
        if self._state is BufferState.FROZEN:
            return False
        if self._state is BufferState.CLAIMED:
            assert self._sink is not None
            self._sink(entry)
            return True
        if isinstance(entry, DiagnosticLine):
            self._lines.append(entry)
        else:
            self._colors.append(entry)
        return True

    # ── Claim / freeze ───────────────────────────────────────────

    def claim(self, channel_id: int, sink: EntrySink) -> Optional[StartupReplay]:
        """
        Take the buffered output for ``channel_id``.

        Only the first claim of a non-empty open buffer gets a replay; later
        entries are passed to ``sink`` until :meth:`freeze`. Claiming an
        empty buffer freezes it and returns ``None``.
        """
        if self._state is not BufferState.OPEN:
            return None
        if self.is_empty():
            logger.debug("[Startup] Channel %s found the startup buffer empty", channel_id)
            self.freeze()
            return None

        replay = StartupReplay(channel_id=channel_id, lines=self._lines, colors=self._colors)
        self._lines, self._colors = [], []
        self._state = BufferState.CLAIMED
        self._claimant = channel_id
        self._sink = sink
        logger.info(
            "[Startup] Channel %s claimed %d line(s), %d color change(s)",
            channel_id,
            len(replay.lines),
            len(replay.colors),
        )
        return replay

    def freeze(self) -> None:
        """Stop capturing. Idempotent."""
        if self._state is BufferState.FROZEN:
            return
        self._state = BufferState.FROZEN
        self._sink = None
        self._lines, self._colors = [], []
        logger.debug("[Startup] Startup buffer frozen")
