"""uiembed Core - channels, startup buffer, lifecycle events, editor state.

Note:
Only the dependency-free modules are re-exported here. ``channels`` and
``editor`` import from ``uiembed.ui``, which imports back into this
package; import them by module path.
"""

from uiembed.core.events import Event, LifecycleBus, LifecycleEvent
from uiembed.core.startup import (
    BufferState,
    ColorAssignment,
    DiagnosticLine,
    StartupBuffer,
    StartupReplay,
)

__all__ = [
    "Event",
    "LifecycleBus",
    "LifecycleEvent",
    "BufferState",
    "ColorAssignment",
    "DiagnosticLine",
    "StartupBuffer",
    "StartupReplay",
]
