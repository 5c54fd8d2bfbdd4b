#!/usr/bin/env python3
"""
Generation Jobs - Main Entry Point

Starts the job server or talks to a running one.

Usage:
    # Start server mode (API + SSE)
    python main.py server

    # Claim queued jobs from a shared database (no HTTP)
    python main.py worker

    # Create a job and follow its progress
    python main.py create --owner alice --mode still --brief "red sneaker on marble"

    # Monitor / recover an existing job
    python main.py monitor <job_id>
    python main.py recover <job_id> --owner alice

    # Add credits
    python main.py grant alice 10 --reference topup-001
"""

import argparse
import asyncio
import json
import logging
import signal
import sys
from typing import Optional

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger("generation")


def start_server(host: str = "0.0.0.0", port: int = 8765):
    """Start the FastAPI server."""
    import uvicorn

    logger.info(f"Generation job server running at http://{host}:{port}")
    uvicorn.run("services.orchestrator.server:app", host=host, port=port, log_level="info")


async def start_worker():
    """Run a queue-claiming worker until interrupted."""
    from core.config import get_config
    from services.orchestrator.runner import QueueClaimer
    from services.orchestrator.server import build_container
    from services.orchestrator.state import JobStatus

    config = get_config()
    container = await build_container(config)
    orchestrator = container.orchestrator

    if config.recovery.recover_on_startup:
        await orchestrator.recover_inflight(stale_after=config.recovery.stale_after_seconds)

    claimer = container.claimer or QueueClaimer(
        lambda: container.store.list_jobs_by_status([JobStatus.QUEUED], limit=20),
        orchestrator.dispatch,
        interval=config.claim_poll_interval,
    )
    container.claimer = claimer
    claimer.start()

    stop_event = asyncio.Event()

    def handle_signal():
        stop_event.set()

    loop = asyncio.get_event_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, handle_signal)

    logger.info("Worker running. Press Ctrl+C to stop")
    await stop_event.wait()

    logger.info("Stopping worker...")
    await container.close()
    logger.info("Worker stopped")


async def create_job(
    server_url: str,
    owner_id: str,
    mode: str,
    inputs: dict,
    parent_id: Optional[str] = None,
    follow: bool = True,
) -> Optional[str]:
    """Create a job over HTTP and optionally follow its stream."""
    import aiohttp

    body = {"mode": mode, "inputs": inputs, "parent_id": parent_id}
    async with aiohttp.ClientSession() as session:
        async with session.post(
            f"{server_url}/jobs",
            json=body,
            headers={"X-Owner-Id": owner_id},
        ) as resp:
            data = await resp.json()
            if resp.status != 202:
                print(f"Create failed ({resp.status}): {json.dumps(data.get('error', data))}")
                return None

    job_id = data["job_id"]
    print(f"Job {job_id} queued ({data['cost']} credits)")
    if follow:
        await monitor_job(job_id, server_url)
    return job_id


async def monitor_job(job_id: str, server_url: str = "http://localhost:8765"):
    """Monitor an existing job's progress."""
    from cli.progress_monitor import ProgressMonitor

    monitor = ProgressMonitor(job_id=job_id, server_url=server_url)
    return await monitor.start()


async def recover_job(job_id: str, owner_id: str, server_url: str) -> bool:
    import aiohttp

    async with aiohttp.ClientSession() as session:
        async with session.post(
            f"{server_url}/jobs/{job_id}/recover",
            headers={"X-Owner-Id": owner_id},
        ) as resp:
            data = await resp.json()
            if resp.status != 200:
                print(f"Recover failed ({resp.status}): {json.dumps(data.get('error', data))}")
                return False

    print(f"Job {job_id}: {data['status']} ({data['user_status']})")
    if data.get("output_url"):
        print(f"Output: {data['output_url']}")
    if data.get("error"):
        print(f"Error: {data['error'].get('code')} {data['error'].get('message')}")
    return True


async def grant_credits(owner_id: str, amount: int, reference_id: str, reason: str):
    """Add credits directly through the configured store."""
    from core.config import get_config
    from services.billing import CreditLedger
    from services.orchestrator.db import create_store

    store = await create_store(get_config())
    try:
        ledger = CreditLedger(store)
        applied = await ledger.grant(owner_id, amount, reference_id, reason=reason)
        balance = await ledger.balance(owner_id)
    finally:
        await store.close()

    if applied:
        print(f"Granted {amount} credits to {owner_id}; balance {balance}")
    else:
        print(f"Grant {reference_id} was already applied; balance {balance}")


def main():
    parser = argparse.ArgumentParser(
        description="Generation Jobs - image and video generation service",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Start server
    python main.py server

    # Create a premium still and follow it
    python main.py create --owner alice --mode still --lane niche --brief "perfume bottle, dusk light"

    # Animate a finished still
    python main.py create --owner alice --mode video --parent <job_id> --brief "slow orbit"

    # Monitor job progress
    python main.py monitor <job_id>
        """,
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # Server command
    server_parser = subparsers.add_parser("server", help="Start API + SSE server")
    server_parser.add_argument("--host", default="0.0.0.0", help="Host to bind")
    server_parser.add_argument("--port", type=int, default=8765, help="Port to bind")

    # Worker command
    subparsers.add_parser("worker", help="Claim and run queued jobs from the database")

    # Create command
    create_parser = subparsers.add_parser("create", help="Create a job")
    create_parser.add_argument("--owner", required=True, help="Owner ID")
    create_parser.add_argument("--mode", choices=["still", "video"], default="still")
    create_parser.add_argument("--brief", "-b", default="", help="What to make")
    create_parser.add_argument("--lane", choices=["main", "niche"], default="main", help="Still lane")
    create_parser.add_argument("--image", help="Product image URL (still) or start image URL (video)")
    create_parser.add_argument("--duration", type=int, help="Video duration in seconds")
    create_parser.add_argument("--reference-video", help="Motion reference video URL")
    create_parser.add_argument("--reference-audio", help="Driving audio URL")
    create_parser.add_argument("--parent", help="Parent job ID to tweak or animate")
    create_parser.add_argument("--feedback", help="Tweak feedback")
    create_parser.add_argument("--suggest-only", action="store_true", help="Preview the prompt only")
    create_parser.add_argument("--no-follow", action="store_true", help="Do not stream progress")
    create_parser.add_argument("--server", default="http://localhost:8765", help="Server URL")

    # Monitor command
    mon_parser = subparsers.add_parser("monitor", help="Monitor job progress")
    mon_parser.add_argument("job_id", help="Job ID to monitor")
    mon_parser.add_argument("--server", default="http://localhost:8765", help="Server URL")

    # Recover command
    rec_parser = subparsers.add_parser("recover", help="Recover a timed-out job")
    rec_parser.add_argument("job_id", help="Job ID to recover")
    rec_parser.add_argument("--owner", required=True, help="Owner ID")
    rec_parser.add_argument("--server", default="http://localhost:8765", help="Server URL")

    # Grant command
    grant_parser = subparsers.add_parser("grant", help="Add credits to an owner")
    grant_parser.add_argument("owner_id", help="Owner ID")
    grant_parser.add_argument("amount", type=int, help="Credits to add")
    grant_parser.add_argument("--reference", required=True, help="Unique grant reference")
    grant_parser.add_argument("--reason", default="topup", help="Ledger reason")

    # Status command
    status_parser = subparsers.add_parser("status", help="Check server status")
    status_parser.add_argument("--server", default="http://localhost:8765", help="Server URL")

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(1)

    # Run appropriate command
    if args.command == "server":
        start_server(host=args.host, port=args.port)

    elif args.command == "worker":
        asyncio.run(start_worker())

    elif args.command == "create":
        inputs = {
            "brief": args.brief,
            "lane": args.lane,
            "suggest_only": args.suggest_only,
        }
        if args.image:
            inputs["product_image_url" if args.mode == "still" else "start_image_url"] = args.image
        if args.duration:
            inputs["duration"] = args.duration
        if args.reference_video:
            inputs["reference_video_url"] = args.reference_video
        if args.reference_audio:
            inputs["reference_audio_url"] = args.reference_audio
        if args.feedback:
            inputs["feedback"] = args.feedback

        job_id = asyncio.run(
            create_job(
                args.server,
                args.owner,
                args.mode,
                inputs,
                parent_id=args.parent,
                follow=not args.no_follow,
            )
        )
        sys.exit(0 if job_id else 1)

    elif args.command == "monitor":
        terminal = asyncio.run(monitor_job(args.job_id, args.server))
        sys.exit(0 if terminal is not None else 1)

    elif args.command == "recover":
        ok = asyncio.run(recover_job(args.job_id, args.owner, args.server))
        sys.exit(0 if ok else 1)

    elif args.command == "grant":
        asyncio.run(grant_credits(args.owner_id, args.amount, args.reference, args.reason))

    elif args.command == "status":
        import aiohttp

        async def check_status():
            async with aiohttp.ClientSession() as session:
                try:
                    async with session.get(f"{args.server}/health") as resp:
                        if resp.status == 200:
                            data = await resp.json()
                            print(f"Server: {args.server}")
                            print("Status: Online")
                            print(f"Active jobs: {data['active_jobs']}")
                            print(f"Connected subscribers: {data['subscribers']}")
                        else:
                            print(f"Server returned status {resp.status}")
                except aiohttp.ClientError as e:
                    print(f"Cannot connect to server: {e}")
                    sys.exit(1)

        asyncio.run(check_status())


if __name__ == "__main__":
    main()
