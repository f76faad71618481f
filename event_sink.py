"""
📝 Structured Event Sink
========================
Fire-and-forget structured events for the generators. Events are printed
through rich and can additionally be appended to a JSON-lines file for a log
forwarder to pick up.

A failing sink never raises into a control loop: the failure is counted in
`dropped_events` and the caller carries on.
"""

import json
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, List, Dict, Any

from rich.console import Console
from rich.markup import escape

console = Console()

LEVEL_STYLES = {
    "debug": "dim",
    "info": "cyan",
    "warning": "yellow",
    "error": "red",
    "critical": "bold red",
}


class EventSink:
    """Prints events via rich and optionally mirrors them as JSON lines."""

    def __init__(
        self,
        json_path: Optional[str] = None,
        console_output: bool = True,
        min_level: str = "info",
        out: Optional[Console] = None,
    ):
        self.json_path = Path(json_path) if json_path else None
        self.console_output = console_output
        self.min_level = min_level
        self.console = out or console
        self.emitted_events = 0
        self.dropped_events = 0
        self._lock = threading.Lock()

    def _enabled(self, level: str) -> bool:
        order = list(LEVEL_STYLES)
        try:
            return order.index(level) >= order.index(self.min_level)
        except ValueError:
            return True

    def emit(self, event: str, level: str = "info", **fields):
        record = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "event": event,
            "level": level,
            **fields,
        }
        try:
            self.write(record)
        except Exception:
            with self._lock:
                self.dropped_events += 1
            return
        with self._lock:
            self.emitted_events += 1

    def write(self, record: Dict[str, Any]):
        level = record["level"]
        if self.console_output and self._enabled(level):
            style = LEVEL_STYLES.get(level, "white")
            extras = " ".join(
                f"{k}={v}" for k, v in record.items() if k not in ("timestamp", "event", "level")
            )
            self.console.log(f"[{style}]{record['event']}[/{style}] {escape(extras)}")
        if self.json_path:
            with self._lock, self.json_path.open("a") as fh:
                fh.write(json.dumps(record, default=str) + "\n")


class MemorySink(EventSink):
    """Keeps events in a list instead of printing them."""

    def __init__(self, fail: bool = False):
        super().__init__(console_output=False)
        self.events: List[Dict[str, Any]] = []
        self.fail = fail

    def write(self, record: Dict[str, Any]):
        if self.fail:
            raise IOError("sink unavailable")
        with self._lock:
            self.events.append(record)

    def named(self, event: str) -> List[Dict[str, Any]]:
        with self._lock:
            return [e for e in self.events if e["event"] == event]

    def names(self) -> List[str]:
        with self._lock:
            return [e["event"] for e in self.events]
