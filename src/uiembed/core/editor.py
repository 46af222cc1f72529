"""Minimal editor core: one text buffer, default colors and a message line.

Enough state for attached UIs to render something real. There is no
editing: input is queued as typeahead.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from uiembed.core.startup import DiagnosticLine
from uiembed.ui.grid import Row, Segment

logger = logging.getLogger(__name__)

Colors = Tuple[int, int, int]


@dataclass(frozen=True)
class ColorScheme:
    name: str
    fg: int
    bg: int
    sp: int = 0xFF0000

    @property
    def colors(self) -> Colors:
        return (self.fg, self.bg, self.sp)


COLOR_SCHEMES: Dict[str, ColorScheme] = {
    "default": ColorScheme("default", fg=0xE0E2EA, bg=0x14161B),
    "vim": ColorScheme("vim", fg=0x000000, bg=0xFFFFFF),
}

# Names accepted by `:highlight guifg=` (lower-cased)
COLOR_NAMES: Dict[str, int] = {
    "black": 0x000000,
    "white": 0xFFFFFF,
    "red": 0xFF0000,
    "green": 0x00FF00,
    "blue": 0x0000FF,
    "yellow": 0xFFFF00,
    "cyan": 0x00FFFF,
    "magenta": 0xFF00FF,
    "gray": 0xBEBEBE,
    "grey": 0xBEBEBE,
    "lightgray": 0xD3D3D3,
    "lightgrey": 0xD3D3D3,
    "darkgray": 0xA9A9A9,
    "darkgrey": 0xA9A9A9,
    "darkred": 0x8B0000,
    "darkgreen": 0x006400,
    "darkblue": 0x00008B,
    "darkyellow": 0xBBBB00,
    "darkcyan": 0x008B8B,
    "darkmagenta": 0x8B008B,
    "lightred": 0xFFBBBB,
    "lightgreen": 0x90EE90,
    "lightblue": 0xADD8E6,
    "lightyellow": 0xFFFFE0,
    "lightcyan": 0xE0FFFF,
    "lightmagenta": 0xFFBBFF,
    "orange": 0xFFA500,
    "brown": 0xA52A2A,
    "purple": 0xA020F0,
    "seagreen": 0x2E8B57,
    "slateblue": 0x6A5ACD,
}


def parse_color(value: str) -> Optional[int]:
    """``#RRGGBB`` or a color name; ``None`` if neither."""
    value = value.strip()
    if value.startswith("#") and len(value) == 7:
        try:
            return int(value[1:], 16)
        except ValueError:
            return None
    return COLOR_NAMES.get(value.lower())


class EditorCore:
    """Buffer, colors, messages and typeahead of the embedded editor."""

    def __init__(self, scheme: str = "default") -> None:
        self.lines: List[str] = [""]
        self.colorscheme = scheme
        self.colors: Colors = COLOR_SCHEMES[scheme].colors
        self.messages: List[DiagnosticLine] = []
        self.typeahead: List[str] = []
        self.cursor: Tuple[int, int] = (0, 0)

    def load_text(self, text: str) -> None:
        """Replace the buffer; a trailing newline does not add a line."""
        text = text.replace("\r\n", "\n")
        if text.endswith("\n"):
            text = text[:-1]
        self.lines = text.split("\n") if text else [""]
        self.cursor = (0, 0)
        logger.debug("[Editor] Loaded %d line(s)", len(self.lines))

    def add_message(self, line: DiagnosticLine) -> None:
        self.messages.append(line)

    @property
    def last_message(self) -> Optional[DiagnosticLine]:
        return self.messages[-1] if self.messages else None

    def set_colors(self, fg: Optional[int] = None, bg: Optional[int] = None, sp: Optional[int] = None) -> bool:
        """Update default colors; True if anything changed."""
        cur_fg, cur_bg, cur_sp = self.colors
        new = (
            cur_fg if fg is None else fg,
            cur_bg if bg is None else bg,
            cur_sp if sp is None else sp,
        )
        changed = new != self.colors
        self.colors = new
        return changed

    def set_colorscheme(self, name: str) -> None:
        """
        Raises:
            KeyError: unknown scheme
        """
        scheme = COLOR_SCHEMES[name]
        self.colorscheme = name
        self.colors = scheme.colors

    def render(self, width: int, height: int) -> List[Row]:
        """Buffer rows, ``~`` filler rows, and the message line last."""
        rows: List[Row] = []
        for index in range(max(0, height - 1)):
            if index < len(self.lines):
                rows.append([Segment(self.lines[index][:width])])
            else:
                rows.append([Segment("~", "NonText")])

        message = self.last_message
        if height > 0:
            rows.append([Segment(message.text[:width], message.hl_group)] if message else [])
        return rows

    def feed_keys(self, keys: str) -> int:
        """Queue input; returns bytes accepted."""
        if keys:
            self.typeahead.append(keys)
        return len(keys.encode("utf-8"))
