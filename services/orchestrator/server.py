"""
Generation Job HTTP + SSE Server

FastAPI server that provides:
- POST /jobs - Create a still or video job (returns immediately)
- GET /jobs/{job_id} - Job status, output and progress lines
- GET /jobs/{job_id}/stream - SSE progress stream
- GET /jobs/{job_id}/steps - Ordered step log
- POST /jobs/{job_id}/recover - Reconcile a timed-out job with its provider job
- GET /credits - Current credit balance
- POST /preferences/hard-blocks - Add a tag prompts must avoid
- GET /health - Health check

The caller's identity comes from the X-Owner-Id header.

Usage:
    # Start server
    python -m uvicorn services.orchestrator.server:app --host 0.0.0.0 --port 8765

    # Or via main.py
    python main.py server
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional

from fastapi import FastAPI, Header, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel

from core.config import Config, get_config
from core.errors import (
    GenerationError,
    InsufficientCredits,
    JobImmutableError,
    NotFound,
    PermissionDenied,
    ValidationError,
)
from services.billing.ledger import CreditLedger
from services.billing.preferences import OwnerPreferences
from services.storage.relocator import AssetRelocator, R2Storage
from services.streaming.broadcaster import ProgressBroadcaster
from services.streaming.progress_tracker import EventType, ProgressEvent
from services.video_generation.client import ProviderClient
from services.video_generation.completion import GeminiCompletionService
from services.video_generation.poller import PollOptions, PredictionPoller

from .db import JobStore, create_store
from .graph import JobOrchestrator
from .messages import to_user_status
from .runner import JobTaskRunner, QueueClaimer
from .state import Job, JobStatus

logger = logging.getLogger(__name__)

ERROR_STATUS_CODES = (
    (ValidationError, 400),
    (InsufficientCredits, 402),
    (PermissionDenied, 403),
    (NotFound, 404),
    (JobImmutableError, 409),
)


# ============================================================================
# Service container
# ============================================================================

@dataclass
class ServiceContainer:
    """Everything one process needs, built once and shared by the routes."""

    config: Config
    store: JobStore
    ledger: CreditLedger
    preferences: OwnerPreferences
    broadcaster: ProgressBroadcaster
    orchestrator: JobOrchestrator
    claimer: Optional[QueueClaimer] = None
    closers: list[Callable[[], Awaitable[Any]]] = field(default_factory=list)

    async def close(self) -> None:
        if self.claimer:
            await self.claimer.stop()
        await self.orchestrator.close()
        for close in self.closers:
            try:
                await close()
            except Exception as e:
                logger.warning(f"Error during shutdown: {type(e).__name__}: {e}")


async def build_container(config: Optional[Config] = None) -> ServiceContainer:
    """Wire the store, ledger, provider, completion, storage and orchestrator."""
    config = config or get_config()
    for issue in config.validate():
        logger.warning(f"Config: {issue}")

    store = await create_store(config)
    preferences = OwnerPreferences(store)
    ledger = CreditLedger(store, preferences)
    broadcaster = ProgressBroadcaster(queue_size=config.streaming.subscriber_queue_size)

    client = ProviderClient(config.api.provider_api_token, config.api.provider_api_base)
    poller = PredictionPoller(client, PollOptions.from_config(config.poller))
    completion = GeminiCompletionService(
        api_key=config.api.google_api_key,
        model=config.models.completion_model,
        timeout=config.poller.completion_timeout,
    )
    storage = R2Storage(config.storage, timeout=config.poller.storage_timeout)
    relocator = AssetRelocator(storage, timeout=config.poller.storage_timeout)

    orchestrator = JobOrchestrator(
        store,
        ledger,
        broadcaster,
        poller,
        completion,
        relocator,
        preferences=preferences,
        runner=JobTaskRunner(),
        config=config,
    )

    claimer = None
    if not config.inline_dispatch:
        claimer = QueueClaimer(
            lambda: store.list_jobs_by_status([JobStatus.QUEUED], limit=20),
            orchestrator.dispatch,
            interval=config.claim_poll_interval,
        )

    return ServiceContainer(
        config=config,
        store=store,
        ledger=ledger,
        preferences=preferences,
        broadcaster=broadcaster,
        orchestrator=orchestrator,
        claimer=claimer,
        closers=[client.close, completion.close, storage.close, store.close],
    )


# ============================================================================
# Request / response models
# ============================================================================

class CreateJobRequest(BaseModel):
    """Request to create a generation job."""
    mode: str
    inputs: dict[str, Any] = {}
    declared_cost: Optional[int] = None
    parent_id: Optional[str] = None


class CreateJobResponse(BaseModel):
    job_id: str
    status: str
    stream_url: str
    cost: int


class JobStatusResponse(BaseModel):
    """Job status response."""
    job_id: str
    parent_id: Optional[str] = None
    mode: str
    status: str
    user_status: str
    output_url: Optional[str] = None
    prompt: Optional[str] = None
    error: Optional[dict] = None
    lines: list[dict] = []
    final_line: Optional[str] = None
    created_at: str
    updated_at: str

    @classmethod
    def from_job(cls, job: Job) -> "JobStatusResponse":
        return cls(
            job_id=job.id,
            parent_id=job.parent_id,
            mode=job.mode.value,
            status=job.status.value,
            user_status=to_user_status(job.status),
            output_url=job.output_url,
            prompt=job.prompt_text,
            error=job.error,
            lines=job.wv.user_messages.lines,
            final_line=job.wv.user_messages.final_line,
            created_at=job.created_at.isoformat(),
            updated_at=job.updated_at.isoformat(),
        )


class HardBlockRequest(BaseModel):
    tag: str


# ============================================================================
# App
# ============================================================================

def _container(request: Request) -> ServiceContainer:
    return request.app.state.container


def _require_owner(owner_id: Optional[str]) -> str:
    if not owner_id or not owner_id.strip():
        raise ValidationError("X-Owner-Id header is required", error_code="MISSING_OWNER")
    return owner_id.strip()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    logger.info("Starting generation job server...")
    built_here = app.state.container is None
    if built_here:
        app.state.container = await build_container()
    container: ServiceContainer = app.state.container

    # Resume work left behind by a previous process
    if container.config.recovery.recover_on_startup:
        try:
            await container.orchestrator.recover_inflight()
        except Exception as e:
            logger.error(f"Startup recovery failed: {type(e).__name__}: {e}")

    if container.claimer:
        container.claimer.start()

    yield

    logger.info("Shutting down generation job server...")
    if built_here:
        await container.close()
        app.state.container = None


def create_app(container: Optional[ServiceContainer] = None) -> FastAPI:
    """Build the FastAPI app. Pass a container to skip building one at startup."""
    app = FastAPI(title="Generation Jobs", version="1.0.0", lifespan=lifespan)
    app.state.container = container

    @app.exception_handler(GenerationError)
    async def generation_error_handler(request: Request, exc: GenerationError):
        status_code = next((code for cls, code in ERROR_STATUS_CODES if isinstance(exc, cls)), 500)
        if status_code == 500:
            logger.error(f"Unhandled {exc.error_code} on {request.url.path}: {exc.message}")
        return JSONResponse(status_code=status_code, content={"error": exc.to_dict()})

    @app.get("/")
    async def root():
        """Root endpoint with API info."""
        return {
            "service": "Generation Jobs",
            "version": "1.0.0",
            "endpoints": {
                "POST /jobs": "Create a job",
                "GET /jobs/{job_id}": "Job status",
                "GET /jobs/{job_id}/stream": "SSE progress stream",
                "GET /jobs/{job_id}/steps": "Step log",
                "POST /jobs/{job_id}/recover": "Recover a timed-out job",
                "GET /credits": "Credit balance",
                "POST /preferences/hard-blocks": "Add a hard-block tag",
                "GET /health": "Health check",
            },
        }

    @app.get("/health")
    async def health(request: Request):
        """Health check endpoint."""
        container = _container(request)
        return {
            "status": "healthy",
            "active_jobs": container.orchestrator.runner.active_count,
            "subscribers": container.broadcaster.subscriber_count(),
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    @app.post("/jobs", response_model=CreateJobResponse, status_code=202)
    async def create_job(
        body: CreateJobRequest,
        request: Request,
        x_owner_id: Optional[str] = Header(None),
    ):
        """
        Create a job. Returns immediately; follow progress on stream_url.
        """
        owner_id = _require_owner(x_owner_id)
        result = await _container(request).orchestrator.create(
            owner_id,
            body.mode,
            body.inputs,
            declared_cost=body.declared_cost,
            parent_id=body.parent_id,
        )
        return CreateJobResponse(**result.to_dict())

    @app.get("/jobs/{job_id}", response_model=JobStatusResponse)
    async def get_job(job_id: str, request: Request, x_owner_id: Optional[str] = Header(None)):
        owner_id = _require_owner(x_owner_id)
        job = await _container(request).orchestrator.get_job_for_owner(job_id, owner_id)
        return JobStatusResponse.from_job(job)

    @app.get("/jobs/{job_id}/steps")
    async def get_steps(job_id: str, request: Request, x_owner_id: Optional[str] = Header(None)):
        owner_id = _require_owner(x_owner_id)
        steps = await _container(request).orchestrator.list_steps(job_id, owner_id)
        return {"job_id": job_id, "steps": [s.to_dict() for s in steps]}

    @app.post("/jobs/{job_id}/recover", response_model=JobStatusResponse)
    async def recover_job(job_id: str, request: Request, x_owner_id: Optional[str] = Header(None)):
        owner_id = _require_owner(x_owner_id)
        job = await _container(request).orchestrator.recover(job_id, owner_id)
        return JobStatusResponse.from_job(job)

    @app.get("/jobs/{job_id}/stream")
    async def stream_job(job_id: str, request: Request, replay_from: int = 0):
        """
        SSE endpoint for real-time progress.

        Event types:
        - connected: stream established
        - scan_line: {"index": n, "text": "..."}
        - status: {"status": "working" | "ready" | "done" | "error"}
        - done: terminal event, the stream closes after it

        Usage:
            curl -N http://localhost:8765/jobs/<job_id>/stream
        """
        container = _container(request)
        subscription = await container.orchestrator.subscribe(job_id, replay_from=replay_from)
        heartbeat = container.config.streaming.heartbeat_interval

        async def event_stream():
            try:
                yield ProgressEvent(
                    job_id=job_id,
                    event_type=EventType.CONNECTED,
                    data={"job_id": job_id},
                ).to_sse()

                while True:
                    try:
                        event = await subscription.get(timeout=heartbeat)
                    except StopAsyncIteration:
                        break
                    if event is None:
                        yield ": heartbeat\n\n"
                        continue
                    yield event.to_sse()
            except asyncio.CancelledError:
                logger.debug(f"Stream for {job_id} disconnected")
                raise
            finally:
                subscription.close()

        return StreamingResponse(
            event_stream(),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                "X-Accel-Buffering": "no",
            },
        )

    @app.get("/credits")
    async def credits(request: Request, x_owner_id: Optional[str] = Header(None)):
        owner_id = _require_owner(x_owner_id)
        balance = await _container(request).ledger.balance(owner_id)
        return {"owner_id": owner_id, "balance": balance}

    @app.post("/preferences/hard-blocks")
    async def add_hard_block(
        body: HardBlockRequest,
        request: Request,
        x_owner_id: Optional[str] = Header(None),
    ):
        owner_id = _require_owner(x_owner_id)
        blocks = await _container(request).preferences.add_hard_block(owner_id, body.tag)
        return {"owner_id": owner_id, "hard_blocks": blocks}

    return app


app = create_app()
