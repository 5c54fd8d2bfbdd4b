"""
Progress Broadcaster

In-process publish/subscribe hub, one channel per job. Created once and
injected into the orchestrator, so it can be swapped for a networked
channel without touching pipeline code.

Per channel:
- buffered scan lines, replayed to late subscribers
- the set of live subscribers (bounded queues)
- the terminal event, after which no lines are accepted

A subscriber whose queue overflows is dropped silently.

Usage:
    broadcaster = ProgressBroadcaster()

    subscription = broadcaster.subscribe(job_id)
    async for event in subscription:
        print(event.to_sse())

    await broadcaster.publish(job_id, "scan_line", {"text": "Got it"})
    await broadcaster.close(job_id, {"status": "done"})
"""

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional, Union
from uuid import uuid4

from .progress_tracker import EventType, ProgressEvent

logger = logging.getLogger(__name__)

_DROPPED = object()


@dataclass
class _Subscriber:
    job_id: str
    queue: asyncio.Queue
    subscriber_id: str = field(default_factory=lambda: str(uuid4()))
    connected_at: float = field(default_factory=time.monotonic)


@dataclass
class _Channel:
    job_id: str
    lines: list[ProgressEvent] = field(default_factory=list)
    subscribers: dict[str, _Subscriber] = field(default_factory=dict)
    terminal: Optional[ProgressEvent] = None
    seq: int = 0
    closed_at: Optional[float] = None

    @property
    def closed(self) -> bool:
        return self.terminal is not None

    def next_id(self) -> str:
        self.seq += 1
        return str(self.seq)


class Subscription:
    """
    One subscriber's view of a job channel.

    Iterate it, or call get(timeout) to interleave heartbeats.
    """

    def __init__(
        self,
        broadcaster: "ProgressBroadcaster",
        job_id: str,
        backlog: Iterable[ProgressEvent],
        subscriber: Optional[_Subscriber],
    ):
        self._broadcaster = broadcaster
        self.job_id = job_id
        self._backlog = deque(backlog)
        self._subscriber = subscriber
        self.finished = False

    async def get(self, timeout: Optional[float] = None) -> Optional[ProgressEvent]:
        """Next event, or None when timeout elapses. Raises StopAsyncIteration at the end."""
        if self._backlog:
            event = self._backlog.popleft()
        elif self.finished or self._subscriber is None:
            self.finished = True
            raise StopAsyncIteration
        else:
            try:
                event = await asyncio.wait_for(self._subscriber.queue.get(), timeout=timeout)
            except asyncio.TimeoutError:
                return None
            if event is _DROPPED:
                self.close()
                raise StopAsyncIteration

        if event.is_terminal:
            self.close()
        return event

    def close(self) -> None:
        self.finished = True
        self._backlog.clear()
        if self._subscriber is not None:
            self._broadcaster._unregister(self._subscriber)
            self._subscriber = None

    def __aiter__(self):
        return self

    async def __anext__(self) -> ProgressEvent:
        return await self.get()


class ProgressBroadcaster:
    """Registry of per-job channels."""

    def __init__(self, queue_size: int = 100, retention_seconds: float = 3600.0):
        self.queue_size = queue_size
        self.retention_seconds = retention_seconds
        self._channels: dict[str, _Channel] = {}

    def _channel(self, job_id: str) -> _Channel:
        channel = self._channels.get(job_id)
        if channel is None:
            channel = _Channel(job_id=job_id)
            self._channels[job_id] = channel
        return channel

    def _unregister(self, subscriber: _Subscriber) -> None:
        channel = self._channels.get(subscriber.job_id)
        if channel:
            channel.subscribers.pop(subscriber.subscriber_id, None)

    def _drop(self, channel: _Channel, subscriber: _Subscriber) -> None:
        channel.subscribers.pop(subscriber.subscriber_id, None)
        queue = subscriber.queue
        while not queue.empty():
            queue.get_nowait()
        queue.put_nowait(_DROPPED)
        logger.info(f"Dropped slow subscriber {subscriber.subscriber_id} for job {channel.job_id}")

    def _fan_out(self, channel: _Channel, event: ProgressEvent) -> None:
        for subscriber in list(channel.subscribers.values()):
            try:
                subscriber.queue.put_nowait(event)
            except asyncio.QueueFull:
                self._drop(channel, subscriber)

    # ------------------------------------------------------------------

    def subscribe(self, job_id: str, replay_from: int = 0) -> Subscription:
        """
        Buffered lines with index >= replay_from first, then live events.
        A closed channel replays and ends with its terminal event at once.
        """
        channel = self._channel(job_id)
        backlog = [e for e in channel.lines if e.data.get("index", 0) >= replay_from]

        if channel.closed:
            return Subscription(self, job_id, [*backlog, channel.terminal], None)

        subscriber = _Subscriber(job_id=job_id, queue=asyncio.Queue(maxsize=self.queue_size))
        channel.subscribers[subscriber.subscriber_id] = subscriber
        return Subscription(self, job_id, backlog, subscriber)

    async def publish(
        self,
        job_id: str,
        event: Union[str, EventType],
        data: Optional[dict[str, Any]] = None,
    ) -> Optional[ProgressEvent]:
        """Fan out a non-terminal event. Ignored once the channel is closed."""
        event_type = EventType(event)
        if event_type == EventType.DONE:
            return await self.close(job_id, data)

        channel = self._channel(job_id)
        if channel.closed:
            logger.debug(f"Ignoring {event_type.value} for closed job {job_id}")
            return None

        payload = dict(data or {})
        if event_type == EventType.SCAN_LINE:
            payload.setdefault("index", len(channel.lines))

        progress_event = ProgressEvent(
            job_id=job_id,
            event_type=event_type,
            data=payload,
            event_id=channel.next_id(),
        )
        if event_type == EventType.SCAN_LINE:
            channel.lines.append(progress_event)

        self._fan_out(channel, progress_event)
        return progress_event

    async def close(self, job_id: str, data: Optional[dict[str, Any]] = None) -> Optional[ProgressEvent]:
        """Publish the terminal event and end the buffer."""
        channel = self._channel(job_id)
        if channel.closed:
            return channel.terminal

        terminal = ProgressEvent(
            job_id=job_id,
            event_type=EventType.DONE,
            data=dict(data or {}),
            event_id=channel.next_id(),
        )
        channel.terminal = terminal
        channel.closed_at = time.monotonic()
        self._fan_out(channel, terminal)
        channel.subscribers.clear()

        self.prune()
        return terminal

    def reopen(self, job_id: str) -> None:
        """Accept events again after a provisional close (recoverable timeout)."""
        channel = self._channels.get(job_id)
        if channel and channel.closed:
            channel.terminal = None
            channel.closed_at = None

    def seed_terminal(self, job_id: str, lines: Iterable[dict], data: dict[str, Any]) -> None:
        """Rebuild a closed channel from persisted state, e.g. after a restart."""
        if job_id in self._channels:
            return
        channel = self._channel(job_id)
        for line in lines:
            channel.lines.append(ProgressEvent(
                job_id=job_id,
                event_type=EventType.SCAN_LINE,
                data={"index": line.get("index", len(channel.lines)), "text": line.get("text", "")},
                event_id=channel.next_id(),
            ))
        channel.terminal = ProgressEvent(
            job_id=job_id,
            event_type=EventType.DONE,
            data=dict(data),
            event_id=channel.next_id(),
        )
        channel.closed_at = time.monotonic()

    def has_channel(self, job_id: str) -> bool:
        return job_id in self._channels

    def is_closed(self, job_id: str) -> bool:
        channel = self._channels.get(job_id)
        return bool(channel and channel.closed)

    def lines(self, job_id: str) -> list[dict]:
        channel = self._channels.get(job_id)
        return [dict(e.data) for e in channel.lines] if channel else []

    def subscriber_count(self, job_id: Optional[str] = None) -> int:
        if job_id:
            channel = self._channels.get(job_id)
            return len(channel.subscribers) if channel else 0
        return sum(len(c.subscribers) for c in self._channels.values())

    def forget(self, job_id: str) -> None:
        self._channels.pop(job_id, None)

    def prune(self) -> int:
        """Drop closed channels older than the retention window."""
        cutoff = time.monotonic() - self.retention_seconds
        stale = [
            job_id for job_id, c in self._channels.items()
            if c.closed and c.closed_at is not None and c.closed_at < cutoff and not c.subscribers
        ]
        for job_id in stale:
            del self._channels[job_id]
        return len(stale)
