"""
Screen update events and their redraw encodings.

Events are typed, immutable values. A :class:`RedrawEncoder` turns a batch
of them into the entries of one ``redraw`` notification, either as
cell-grid events (``ext_linegrid``) or as the legacy cursor/put events.
Consecutive entries with the same name share one ``[name, args...]``
entry; consumers apply them in order.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Union


@dataclass(frozen=True)
class Cell:
    """A run of ``repeat`` identical cells."""
    text: str
    hl_id: int = 0
    repeat: int = 1


@dataclass(frozen=True)
class GridResize:
    grid: int
    width: int
    height: int


@dataclass(frozen=True)
class GridLine:
    grid: int
    row: int
    col_start: int
    cells: Tuple[Cell, ...]


@dataclass(frozen=True)
class GridCursorGoto:
    grid: int
    row: int
    col: int


@dataclass(frozen=True)
class GridClear:
    grid: int


@dataclass(frozen=True)
class GridScroll:
    """Scroll region ``[top, bot) x [left, right)`` by ``rows`` (positive = up)."""
    grid: int
    top: int
    bot: int
    left: int
    right: int
    rows: int
    cols: int = 0


@dataclass(frozen=True)
class HlAttrDefine:
    hl_id: int
    rgb_attrs: Mapping[str, Any] = field(default_factory=dict)
    cterm_attrs: Mapping[str, Any] = field(default_factory=dict)
    info: Tuple[Mapping[str, Any], ...] = ()


@dataclass(frozen=True)
class DefaultColorsSet:
    fg: int
    bg: int
    sp: int
    cterm_fg: int = 0
    cterm_bg: int = 0


@dataclass(frozen=True)
class Flush:
    pass


ScreenEvent = Union[
    GridResize,
    GridLine,
    GridCursorGoto,
    GridClear,
    GridScroll,
    HlAttrDefine,
    DefaultColorsSet,
    Flush,
]


def _linegrid_cells(cells: Iterable[Cell]) -> List[list]:
    """``[text]`` / ``[text, hl_id]`` / ``[text, hl_id, repeat]``; an omitted
    hl_id means the previous cell's."""
    out: List[list] = []
    prev_hl: Optional[int] = None
    for cell in cells:
        if cell.repeat > 1:
            out.append([cell.text, cell.hl_id, cell.repeat])
        elif cell.hl_id != prev_hl:
            out.append([cell.text, cell.hl_id])
        else:
            out.append([cell.text])
        prev_hl = cell.hl_id
    return out


class RedrawEncoder:
    """
    Per-channel encoder for ``redraw`` batches.

    The legacy encoding has no highlight table, so attributes seen in
    ``HlAttrDefine`` are remembered and inlined into ``highlight_set``.
    """

    def __init__(self, *, linegrid: bool, rgb: bool = True):
        self.linegrid = linegrid
        self.rgb = rgb
        self._hl_attrs: Dict[int, Dict[str, Any]] = {0: {}}
        self._current_hl: Optional[int] = None

    def encode(self, events: Iterable[ScreenEvent]) -> List[list]:
        """Encode a batch into redraw entries (``[name, args, args, ...]``)."""
        entries: List[list] = []

        def emit(name: str, args: list) -> None:
            if entries and entries[-1][0] == name:
                entries[-1].append(args)
            else:
                entries.append([name, args])

        for event in events:
            if self.linegrid:
                self._encode_linegrid(event, emit)
            else:
                self._encode_legacy(event, emit)
        return entries

    def _encode_linegrid(self, event: ScreenEvent, emit) -> None:
        if isinstance(event, GridResize):
            emit("grid_resize", [event.grid, event.width, event.height])
        elif isinstance(event, GridLine):
            emit("grid_line", [event.grid, event.row, event.col_start, _linegrid_cells(event.cells)])
        elif isinstance(event, GridCursorGoto):
            emit("grid_cursor_goto", [event.grid, event.row, event.col])
        elif isinstance(event, GridClear):
            emit("grid_clear", [event.grid])
        elif isinstance(event, GridScroll):
            emit(
                "grid_scroll",
                [event.grid, event.top, event.bot, event.left, event.right, event.rows, event.cols],
            )
        elif isinstance(event, HlAttrDefine):
            emit(
                "hl_attr_define",
                [event.hl_id, dict(event.rgb_attrs), dict(event.cterm_attrs), [dict(i) for i in event.info]],
            )
        elif isinstance(event, DefaultColorsSet):
            emit("default_colors_set", [event.fg, event.bg, event.sp, event.cterm_fg, event.cterm_bg])
        elif isinstance(event, Flush):
            emit("flush", [])
        else:
            raise TypeError(f"unknown screen event: {event!r}")

    def _encode_legacy(self, event: ScreenEvent, emit) -> None:
        if isinstance(event, GridResize):
            emit("resize", [event.width, event.height])
        elif isinstance(event, GridLine):
            emit("cursor_goto", [event.row, event.col_start])
            for cell in event.cells:
                if cell.hl_id != self._current_hl:
                    emit("highlight_set", [self._legacy_attrs(cell.hl_id)])
                    self._current_hl = cell.hl_id
                for _ in range(cell.repeat):
                    emit("put", [cell.text])
        elif isinstance(event, GridCursorGoto):
            emit("cursor_goto", [event.row, event.col])
        elif isinstance(event, GridClear):
            emit("clear", [])
        elif isinstance(event, GridScroll):
            emit("set_scroll_region", [event.top, event.bot - 1, event.left, event.right - 1])
            emit("scroll", [event.rows])
        elif isinstance(event, HlAttrDefine):
            self._hl_attrs[event.hl_id] = dict(event.rgb_attrs if self.rgb else event.cterm_attrs)
            self._current_hl = None
        elif isinstance(event, DefaultColorsSet):
            emit("update_fg", [event.fg])
            emit("update_bg", [event.bg])
            emit("update_sp", [event.sp])
            emit("default_colors_set", [event.fg, event.bg, event.sp, event.cterm_fg, event.cterm_bg])
        elif isinstance(event, Flush):
            emit("flush", [])
        else:
            raise TypeError(f"unknown screen event: {event!r}")

    def _legacy_attrs(self, hl_id: int) -> Dict[str, Any]:
        return dict(self._hl_attrs.get(hl_id, {}))
