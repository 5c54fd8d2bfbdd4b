"""
Progress Streaming Service

Provides real-time visibility into job progress via Server-Sent Events.

Usage:
    from services.streaming import ProgressBroadcaster

    broadcaster = ProgressBroadcaster()
    await broadcaster.publish(job_id, "scan_line", {"text": "Got it"})

    # In CLI
    curl -N http://localhost:8765/jobs/<job_id>/stream
"""

from .broadcaster import ProgressBroadcaster, Subscription
from .progress_tracker import EventType, ProgressEvent, parse_sse

__all__ = [
    "ProgressBroadcaster",
    "Subscription",
    "ProgressEvent",
    "EventType",
    "parse_sse",
]
