"""uiembed UI protocol - attach state machine and screen update events.

- ``attach``: capability negotiation, per-channel UI state
- ``events``: typed screen events, linegrid/legacy redraw encodings
- ``grid``: rows of highlighted text to grid events
- ``pager``: press-enter prompt for startup diagnostics
"""

from .events import (
    Cell,
    GridResize,
    GridLine,
    GridCursorGoto,
    GridClear,
    GridScroll,
    HlAttrDefine,
    DefaultColorsSet,
    Flush,
    ScreenEvent,
    RedrawEncoder,
)
from .grid import HighlightTable, Segment
from .attach import UI_OPTIONS_VERSION, UiChannel, UiOptions, UiState, validate_dimensions

__all__ = [
    "Cell",
    "GridResize",
    "GridLine",
    "GridCursorGoto",
    "GridClear",
    "GridScroll",
    "HlAttrDefine",
    "DefaultColorsSet",
    "Flush",
    "ScreenEvent",
    "RedrawEncoder",
    "HighlightTable",
    "Segment",
    "UI_OPTIONS_VERSION",
    "UiChannel",
    "UiOptions",
    "UiState",
    "validate_dimensions",
]
