"""
Progress events for job streaming.

Formats events for SSE and parses them back for CLI consumption.

Wire events:
- scan_line: {"index": n, "text": "..."}   human-readable progress line
- status:    {"status": "working" | "ready" | "done" | "error"}
- done:      {"status": ...}               terminal, stream closes after it
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    """Types of progress events."""
    CONNECTED = "connected"
    SCAN_LINE = "scan_line"
    STATUS = "status"
    DONE = "done"


@dataclass
class ProgressEvent:
    """A progress event for SSE streaming."""

    job_id: str = ""
    event_type: EventType = EventType.STATUS
    data: dict[str, Any] = field(default_factory=dict)
    event_id: str = ""
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_terminal(self) -> bool:
        return self.event_type == EventType.DONE

    def to_sse(self) -> str:
        """Format as SSE message."""
        json_data = json.dumps(self.data)
        lines = []
        if self.event_id:
            lines.append(f"id: {self.event_id}")
        lines.append(f"event: {self.event_type.value}")
        lines.append(f"data: {json_data}")
        return "\n".join(lines) + "\n\n"

    def to_cli_line(self) -> str:
        """Format as single CLI line."""
        if self.event_type == EventType.SCAN_LINE:
            return f"• {self.data.get('text', '')}"
        if self.event_type == EventType.STATUS:
            return f"⏳ {self.data.get('status', '')}"
        if self.event_type == EventType.DONE:
            status = self.data.get("status", "")
            icon = "✅" if status in ("done", "ready") else "🔴"
            extra = self.data.get("output_url") or self.data.get("message") or ""
            return f"{icon} {status} {extra}".rstrip()
        return f"ℹ️ {self.data}"


def parse_sse(block: str) -> Optional[ProgressEvent]:
    """
    Parse one SSE block ("id:/event:/data:" lines) into a ProgressEvent.

    Comments (heartbeats) and unknown event names return None.
    """
    event_id = ""
    event_name = ""
    data_lines = []

    for raw in block.splitlines():
        if not raw or raw.startswith(":"):
            continue
        name, _, value = raw.partition(":")
        value = value[1:] if value.startswith(" ") else value
        if name == "id":
            event_id = value
        elif name == "event":
            event_name = value
        elif name == "data":
            data_lines.append(value)

    if not event_name and not data_lines:
        return None

    try:
        event_type = EventType(event_name or "status")
    except ValueError:
        logger.debug(f"Ignoring unknown SSE event '{event_name}'")
        return None

    try:
        data = json.loads("\n".join(data_lines)) if data_lines else {}
    except json.JSONDecodeError:
        data = {"text": "\n".join(data_lines)}

    return ProgressEvent(event_type=event_type, data=data, event_id=event_id)
