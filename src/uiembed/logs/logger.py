from __future__ import annotations

import json
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any


@dataclass
class TraceLogger:
    """Append-only JSONL trace of channel and attach activity."""

    path: str

    def log(self, event: str, channel_id: int | None = None, **fields: Any) -> None:
        record: dict[str, Any] = {
            "ts": time.strftime("%Y-%m-%dT%H:%M:%S%z"),
            "event": event,
        }
        if channel_id is not None:
            record["channel_id"] = channel_id
        if fields:
            record.update(fields)
        self._write(record)

    def log_transition(
        self,
        channel_id: int,
        from_state: str,
        to_state: str,
        trigger: str,
        **extra_fields: Any,
    ) -> None:
        """Log an attach state machine transition.

        Args:
            channel_id: Channel whose UI changed state
            from_state: Previous state value
            to_state: New state value
            trigger: What caused the transition (ui_attach, pager_continue, ...)
            **extra_fields: Additional fields
        """
        record: dict[str, Any] = {
            "ts": time.strftime("%Y-%m-%dT%H:%M:%S%z"),
            "event": "ui.transition",
            "channel_id": channel_id,
            "from": from_state,
            "to": to_state,
            "trigger": trigger,
        }
        record.update(extra_fields)
        self._write(record)

    def _write(self, record: dict[str, Any]) -> None:
        p = Path(self.path)
        p.parent.mkdir(parents=True, exist_ok=True)
        with p.open("a", encoding="utf-8") as f:
            f.write(json.dumps(record, ensure_ascii=False, default=str) + "\n")

    def tail(self, n: int = 20) -> list[dict[str, Any]]:
        p = Path(self.path)
        if not p.exists():
            return []
        lines = p.read_text(encoding="utf-8").splitlines()
        out: list[dict[str, Any]] = []
        for line in lines[-max(1, n) :]:
            try:
                out.append(json.loads(line))
            except json.JSONDecodeError:
                continue
        return out
