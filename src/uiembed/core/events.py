"""uiembed lifecycle bus — sync pub/sub for editor lifecycle events.

Features:
- Exact-match subscribe per event name
- Catch-all subscribe
- Fire-and-forget: subscriber errors are logged, never raised to the publisher
- Bounded history, used to answer ``lifecycle_log`` and to check ordering

Events flow:
- startup finished / first UI attached → publish(EDITOR_READY)
- attach completed → publish(UI_ENTERED, {"channel_id": 3})
- channel manager → publish(CHANNEL_OPEN / CHANNEL_CLOSE, {...})
"""
from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union

logger = logging.getLogger(__name__)


class LifecycleEvent(str, Enum):
    """Editor lifecycle events."""

    EDITOR_READY = "editor-ready"
    UI_ENTERED = "ui-entered"
    UI_LEFT = "ui-left"
    CHANNEL_OPEN = "channel-open"
    CHANNEL_CLOSE = "channel-close"


@dataclass
class Event:
    """Single event in the bus."""
    event: LifecycleEvent
    data: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.now)

    @property
    def channel_id(self) -> Optional[int]:
        return self.data.get("channel_id")

    def label(self) -> str:
        """Editor-visible form: ``editor-ready`` or ``ui-entered:<id>``."""
        if self.channel_id is not None:
            return f"{self.event.value}:{self.channel_id}"
        return self.event.value

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event": self.event.value,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
        }


EventHandler = Callable[[Event], None]


class LifecycleBus:
    """Pub/sub for :class:`LifecycleEvent` with history.

    All calls happen on the event loop thread, so no locking is needed.
    """

    def __init__(self, history_size: int = 256) -> None:
        self._subscribers: Dict[LifecycleEvent, List[EventHandler]] = {}
        self._global_subscribers: List[EventHandler] = []
        self._history: deque[Event] = deque(maxlen=history_size)

    # ── Subscribe ────────────────────────────────────────────────

    def subscribe(self, event: Union[LifecycleEvent, str], handler: EventHandler) -> None:
        """Subscribe to one event."""
        self._subscribers.setdefault(LifecycleEvent(event), []).append(handler)

    def subscribe_all(self, handler: EventHandler) -> None:
        """Subscribe to every event (catch-all)."""
        self._global_subscribers.append(handler)

    def unsubscribe(self, event: Union[LifecycleEvent, str], handler: EventHandler) -> None:
        try:
            self._subscribers.get(LifecycleEvent(event), []).remove(handler)
        except ValueError:
            pass

    def unsubscribe_all(self, handler: EventHandler) -> None:
        try:
            self._global_subscribers.remove(handler)
        except ValueError:
            pass

    # ── Publish ──────────────────────────────────────────────────

    def publish(self, event: Union[LifecycleEvent, str], data: Optional[Dict[str, Any]] = None) -> Event:
        """Record ``event`` and call its subscribers in subscription order."""
        record = Event(event=LifecycleEvent(event), data=dict(data or {}))
        self._history.append(record)

        handlers = list(self._subscribers.get(record.event, []))
        handlers.extend(self._global_subscribers)
        for handler in handlers:
            try:
                handler(record)
            except Exception as exc:
                logger.error(
                    "[Lifecycle] Handler %s error on %s: %s",
                    getattr(handler, "__name__", repr(handler)),
                    record.event.value,
                    exc,
                )
        return record

    # ── History ──────────────────────────────────────────────────

    def history(self, event: Union[LifecycleEvent, str, None] = None, limit: int = 0) -> List[Event]:
        """Recorded events, oldest first; ``limit`` keeps only the newest."""
        if event is None:
            events = list(self._history)
        else:
            wanted = LifecycleEvent(event)
            events = [e for e in self._history if e.event is wanted]
        return events[-limit:] if limit > 0 else events

    def fired(self, event: Union[LifecycleEvent, str]) -> bool:
        wanted = LifecycleEvent(event)
        return any(e.event is wanted for e in self._history)

    def clear_history(self) -> None:
        self._history.clear()
