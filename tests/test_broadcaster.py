"""
Progress Broadcaster and SSE Formatting Tests

Run with:
    python -m pytest tests/test_broadcaster.py -v
"""

import pytest

from cli.progress_monitor import ProgressMonitor, format_event
from services.streaming.broadcaster import ProgressBroadcaster
from services.streaming.progress_tracker import EventType, ProgressEvent, parse_sse

from .conftest import drain

JOB = "job-1"


class TestBroadcaster:
    @pytest.mark.asyncio
    async def test_live_events_in_order(self, broadcaster):
        subscription = broadcaster.subscribe(JOB)

        await broadcaster.publish(JOB, "scan_line", {"text": "Got it"})
        await broadcaster.publish(JOB, "status", {"status": "working"})
        await broadcaster.publish(JOB, "scan_line", {"text": "Almost there"})
        await broadcaster.close(JOB, {"status": "done"})

        events = await drain(subscription)
        assert [e.event_type for e in events] == [
            EventType.SCAN_LINE,
            EventType.STATUS,
            EventType.SCAN_LINE,
            EventType.DONE,
        ]
        assert [e.data.get("index") for e in events if e.event_type == EventType.SCAN_LINE] == [0, 1]
        assert [int(e.event_id) for e in events] == [1, 2, 3, 4]

    @pytest.mark.asyncio
    async def test_replay_from_index(self, broadcaster):
        for text in ("a", "b", "c"):
            await broadcaster.publish(JOB, "scan_line", {"text": text})

        subscription = broadcaster.subscribe(JOB, replay_from=1)
        await broadcaster.close(JOB, {"status": "done"})

        events = await drain(subscription)
        assert [e.data.get("text") for e in events[:-1]] == ["b", "c"]

    @pytest.mark.asyncio
    async def test_closed_channel_ends_immediately(self, broadcaster):
        await broadcaster.publish(JOB, "scan_line", {"text": "a"})
        await broadcaster.close(JOB, {"status": "error"})

        subscription = broadcaster.subscribe(JOB)
        events = await drain(subscription, timeout=0.01)

        assert events[-1].data == {"status": "error"}
        assert broadcaster.subscriber_count(JOB) == 0

    @pytest.mark.asyncio
    async def test_nothing_after_terminal(self, broadcaster):
        await broadcaster.close(JOB, {"status": "done"})

        assert await broadcaster.publish(JOB, "scan_line", {"text": "late"}) is None
        again = await broadcaster.close(JOB, {"status": "error"})

        assert again.data == {"status": "done"}
        assert broadcaster.lines(JOB) == []

    @pytest.mark.asyncio
    async def test_publish_done_closes(self, broadcaster):
        event = await broadcaster.publish(JOB, "done", {"status": "done"})
        assert event.is_terminal
        assert broadcaster.is_closed(JOB)

    @pytest.mark.asyncio
    async def test_slow_subscriber_dropped(self):
        broadcaster = ProgressBroadcaster(queue_size=2)
        slow = broadcaster.subscribe(JOB)
        fast = broadcaster.subscribe(JOB)

        await broadcaster.publish(JOB, "scan_line", {"text": "1"})
        assert (await fast.get(timeout=0.1)).data["text"] == "1"
        await broadcaster.publish(JOB, "scan_line", {"text": "2"})
        assert (await fast.get(timeout=0.1)).data["text"] == "2"
        await broadcaster.publish(JOB, "scan_line", {"text": "3"})

        with pytest.raises(StopAsyncIteration):
            await slow.get(timeout=0.1)
        assert (await fast.get(timeout=0.1)).data["text"] == "3"
        assert broadcaster.subscriber_count(JOB) == 1

    @pytest.mark.asyncio
    async def test_reopen_after_provisional_close(self, broadcaster):
        await broadcaster.close(JOB, {"status": "timeout", "recoverable": True})
        broadcaster.reopen(JOB)
        subscription = broadcaster.subscribe(JOB)

        await broadcaster.publish(JOB, "scan_line", {"text": "back"})
        await broadcaster.close(JOB, {"status": "done"})

        events = await drain(subscription)
        assert events[-1].data == {"status": "done"}

    @pytest.mark.asyncio
    async def test_heartbeat_timeout_returns_none(self, broadcaster):
        subscription = broadcaster.subscribe(JOB)
        assert await subscription.get(timeout=0.01) is None
        subscription.close()
        assert broadcaster.subscriber_count() == 0

    def test_seed_terminal(self, broadcaster):
        broadcaster.seed_terminal(JOB, [{"index": 0, "text": "a"}, {"index": 1, "text": "b"}], {"status": "done"})

        assert broadcaster.is_closed(JOB)
        assert broadcaster.lines(JOB) == [{"index": 0, "text": "a"}, {"index": 1, "text": "b"}]

    @pytest.mark.asyncio
    async def test_prune_closed_channels(self):
        broadcaster = ProgressBroadcaster(retention_seconds=-1)
        await broadcaster.close(JOB, {"status": "done"})
        await broadcaster.publish("job-2", "scan_line", {"text": "still going"})

        broadcaster.prune()

        assert not broadcaster.has_channel(JOB)
        assert broadcaster.has_channel("job-2")


class TestSSE:
    def test_round_trip(self):
        event = ProgressEvent(job_id=JOB, event_type=EventType.SCAN_LINE, data={"index": 3, "text": "Hi"}, event_id="7")

        parsed = parse_sse(event.to_sse())

        assert parsed.event_type == EventType.SCAN_LINE
        assert parsed.data == {"index": 3, "text": "Hi"}
        assert parsed.event_id == "7"

    def test_heartbeat_comment_ignored(self):
        assert parse_sse(": heartbeat\n\n") is None

    def test_unknown_event_ignored(self):
        assert parse_sse("event: mystery\ndata: {}") is None

    def test_cli_lines(self):
        done = ProgressEvent(event_type=EventType.DONE, data={"status": "done", "output_url": "https://cdn/x.png"})
        assert done.to_cli_line() == "✅ done https://cdn/x.png"
        line = ProgressEvent(event_type=EventType.SCAN_LINE, data={"text": "Got it"})
        assert line.to_cli_line() == "• Got it"


class TestProgressMonitor:
    def test_stream_url_resumes_from_next_line(self):
        monitor = ProgressMonitor("job-1", server_url="http://localhost:8765/")
        monitor._handle_event(ProgressEvent(event_type=EventType.SCAN_LINE, data={"index": 0, "text": "a"}))
        monitor._handle_event(ProgressEvent(event_type=EventType.SCAN_LINE, data={"index": 1, "text": "b"}))

        assert monitor.stream_url == "http://localhost:8765/jobs/job-1/stream?replay_from=2"

    def test_duplicate_lines_skipped(self, capsys):
        monitor = ProgressMonitor("job-1")
        event = ProgressEvent(event_type=EventType.SCAN_LINE, data={"index": 0, "text": "only once"})

        monitor._handle_event(event)
        monitor._handle_event(event)

        assert capsys.readouterr().out.count("only once") == 1

    def test_terminal_recorded(self):
        monitor = ProgressMonitor("job-1")
        monitor._handle_event(ProgressEvent(event_type=EventType.DONE, data={"status": "timeout", "recoverable": True}))

        assert monitor.terminal.data["status"] == "timeout"
        assert "recover" in format_event(monitor.terminal)
