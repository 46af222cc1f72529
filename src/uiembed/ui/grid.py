"""
Turning rendered rows into screen update events.

A screen is a list of rows; each row is a list of :class:`Segment` (text
plus highlight group name). :class:`HighlightTable` assigns stable ids to
the groups and produces their ``HlAttrDefine`` events.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

from uiembed.ui.events import Cell, GridCursorGoto, GridLine, GridResize, HlAttrDefine, ScreenEvent

DEFAULT_GRID = 1


@dataclass(frozen=True)
class Segment:
    text: str
    hl_group: str = "Normal"


Row = List[Segment]

# group -> (rgb attrs, cterm attrs); id order is the table order, Normal is 0
HIGHLIGHT_GROUPS: Dict[str, Tuple[dict, dict]] = {
    "Normal": ({}, {}),
    "NonText": ({"foreground": 0x4F5258}, {"foreground": 8}),
    "ErrorMsg": ({"foreground": 0xFF0000}, {"foreground": 9}),
    "MoreMsg": ({"foreground": 0x2E8B57, "bold": True}, {"foreground": 10, "bold": True}),
    "MsgSeparator": ({"reverse": True}, {"reverse": True}),
    "StatusLine": ({"reverse": True, "bold": True}, {"reverse": True, "bold": True}),
    "ModeMsg": ({"bold": True}, {"bold": True}),
}


class HighlightTable:
    """Stable group-name to hl_id mapping."""

    def __init__(self, groups: Optional[Dict[str, Tuple[dict, dict]]] = None):
        self._groups = dict(groups or HIGHLIGHT_GROUPS)
        self._ids = {name: i for i, name in enumerate(self._groups)}

    def id_of(self, group: str) -> int:
        """Unknown groups fall back to Normal."""
        return self._ids.get(group, 0)

    def name_of(self, hl_id: int) -> str:
        for name, i in self._ids.items():
            if i == hl_id:
                return name
        return "Normal"

    def define_events(self) -> List[HlAttrDefine]:
        events = []
        for name, (rgb, cterm) in self._groups.items():
            hl_id = self._ids[name]
            if hl_id == 0:
                continue
            events.append(
                HlAttrDefine(
                    hl_id=hl_id,
                    rgb_attrs=dict(rgb),
                    cterm_attrs=dict(cterm),
                    info=({"kind": "ui", "ui_name": name, "hi_name": name},),
                )
            )
        return events


def row_cells(row: Sequence[Segment], width: int, table: HighlightTable) -> Tuple[Cell, ...]:
    """
    Cells for one row, padded with Normal blanks (or cut) to ``width``.

    Adjacent identical cells are merged into a single run.
    """
    flat: List[Tuple[str, int]] = []
    for segment in row:
        hl_id = table.id_of(segment.hl_group)
        for ch in segment.text:
            if len(flat) >= width:
                break
            flat.append((ch, hl_id))
    while len(flat) < width:
        flat.append((" ", 0))

    cells: List[Cell] = []
    for ch, hl_id in flat:
        if cells and cells[-1].text == ch and cells[-1].hl_id == hl_id:
            last = cells[-1]
            cells[-1] = Cell(ch, hl_id, last.repeat + 1)
        else:
            cells.append(Cell(ch, hl_id))
    return tuple(cells)


def screen_events(
    rows: Sequence[Row],
    width: int,
    height: int,
    table: HighlightTable,
    cursor: Tuple[int, int] = (0, 0),
    *,
    resize: bool = False,
) -> List[ScreenEvent]:
    """Full redraw of ``height`` rows followed by the cursor position."""
    events: List[ScreenEvent] = []
    if resize:
        events.append(GridResize(DEFAULT_GRID, width, height))
    for index in range(height):
        row = rows[index] if index < len(rows) else []
        events.append(GridLine(DEFAULT_GRID, index, 0, row_cells(row, width, table)))
    events.append(GridCursorGoto(DEFAULT_GRID, cursor[0], cursor[1]))
    return events


def wrap_text(text: str, width: int) -> List[str]:
    """Split ``text`` into screen lines of at most ``width`` columns."""
    width = max(1, width)
    out: List[str] = []
    for line in text.split("\n") or [""]:
        if not line:
            out.append("")
            continue
        out.extend(line[i:i + width] for i in range(0, len(line), width))
    return out
