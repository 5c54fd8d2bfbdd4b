#!/usr/bin/env python3
"""
CLI Progress Monitor for Generation Jobs

Connects to the job SSE stream and prints progress lines as they arrive.
On a dropped connection it reconnects and asks for replay from the next
unseen line.

Usage:
    python -m cli.progress_monitor <job_id>
    python -m cli.progress_monitor --server http://localhost:8765 <job_id>
"""

import argparse
import asyncio
from typing import Optional

import aiohttp

from services.streaming.progress_tracker import EventType, ProgressEvent, parse_sse


# ANSI color codes
class Colors:
    RESET = "\033[0m"
    BOLD = "\033[1m"
    DIM = "\033[2m"

    RED = "\033[31m"
    GREEN = "\033[32m"
    YELLOW = "\033[33m"
    CYAN = "\033[36m"
    WHITE = "\033[37m"


def colored(text: str, color: str) -> str:
    """Apply color to text."""
    return f"{color}{text}{Colors.RESET}"


TERMINAL_COLORS = {
    "done": Colors.GREEN,
    "ready": Colors.GREEN,
    "timeout": Colors.YELLOW,
    "error": Colors.RED,
}


def format_event(event: ProgressEvent) -> Optional[str]:
    """Format event for display. Returns None for events not worth printing."""
    if event.event_type == EventType.CONNECTED:
        return colored("Connected", Colors.DIM)

    if event.event_type == EventType.SCAN_LINE:
        return f"{colored('•', Colors.CYAN)} {event.data.get('text', '')}"

    if event.event_type == EventType.STATUS:
        return colored(f"  [{event.data.get('status', '')}]", Colors.DIM)

    status = event.data.get("status", "")
    color = TERMINAL_COLORS.get(status, Colors.WHITE)
    lines = [colored(event.to_cli_line(), color + Colors.BOLD)]
    if event.data.get("recoverable"):
        lines.append(colored("    Still rendering. Run `main.py recover <job_id>` later.", Colors.DIM))
    if event.data.get("error"):
        lines.append(colored(f"    Error: {event.data['error']}", Colors.DIM))
    if event.data.get("prompt"):
        lines.append(colored(f"    Prompt: {event.data['prompt']}", Colors.DIM))
    return "\n".join(lines)


class ProgressMonitor:
    """CLI progress monitor for one job."""

    def __init__(
        self,
        job_id: str,
        server_url: str = "http://localhost:8765",
        max_retries: int = 5,
    ):
        self.job_id = job_id
        self.server_url = server_url.rstrip("/")
        self.max_retries = max_retries

        self.next_index = 0
        self.terminal: Optional[ProgressEvent] = None
        self._running = False

    @property
    def stream_url(self) -> str:
        return f"{self.server_url}/jobs/{self.job_id}/stream?replay_from={self.next_index}"

    async def start(self) -> Optional[ProgressEvent]:
        """Monitor until the terminal event. Returns it, or None if the stream was lost."""
        self._running = True

        print(colored("Generation Progress Monitor", Colors.CYAN + Colors.BOLD))
        print(f"Job:    {colored(self.job_id, Colors.BOLD)}")
        print(f"Server: {colored(self.server_url, Colors.DIM)}")
        print(colored("─" * 45, Colors.DIM))

        retry_count = 0
        while self._running and self.terminal is None:
            try:
                await self._stream_events()
                retry_count = 0
            except aiohttp.ClientError as e:
                retry_count += 1
                if retry_count >= self.max_retries:
                    print(colored(f"\nFailed to connect after {self.max_retries} attempts: {e}", Colors.RED))
                    break
                wait = 2 ** retry_count
                print(colored(f"\nConnection lost. Retrying in {wait}s... ({retry_count}/{self.max_retries})", Colors.YELLOW))
                await asyncio.sleep(wait)
            except asyncio.CancelledError:
                break

        self._running = False
        return self.terminal

    async def _stream_events(self):
        """Read SSE blocks and hand each parsed event to the handler."""
        timeout = aiohttp.ClientTimeout(total=None, sock_read=120)
        async with aiohttp.ClientSession(timeout=timeout) as session:
            async with session.get(self.stream_url) as response:
                if response.status == 404:
                    print(colored(f"Job {self.job_id} not found", Colors.RED))
                    self._running = False
                    return
                if response.status != 200:
                    raise aiohttp.ClientError(f"Server returned {response.status}")

                block: list[str] = []
                async for raw in response.content:
                    if not self._running:
                        break
                    line = raw.decode("utf-8").rstrip("\r\n")
                    if line:
                        block.append(line)
                        continue
                    event = parse_sse("\n".join(block))
                    block = []
                    if event is not None:
                        self._handle_event(event)
                    if self.terminal is not None:
                        break

    def _handle_event(self, event: ProgressEvent):
        if event.event_type == EventType.SCAN_LINE:
            index = event.data.get("index", self.next_index)
            if index < self.next_index:
                return
            self.next_index = index + 1

        text = format_event(event)
        if text:
            print(text)

        if event.is_terminal:
            self.terminal = event

    def stop(self):
        """Stop monitoring."""
        self._running = False


async def main():
    parser = argparse.ArgumentParser(
        description="Monitor generation job progress",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    %(prog)s 3f2c...
    %(prog)s --server http://remote:8765 3f2c...
        """,
    )
    parser.add_argument("job_id", help="Job ID to monitor")
    parser.add_argument(
        "--server",
        default="http://localhost:8765",
        help="Server URL (default: http://localhost:8765)",
    )

    args = parser.parse_args()
    monitor = ProgressMonitor(job_id=args.job_id, server_url=args.server)

    try:
        await monitor.start()
    except KeyboardInterrupt:
        print(colored("\n\nInterrupted by user.", Colors.YELLOW))
        monitor.stop()


if __name__ == "__main__":
    asyncio.run(main())
