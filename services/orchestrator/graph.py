"""
Job Orchestrator

Composes the store, ledger, poller, completion service, relocator and
broadcaster into one pipeline run per job.

Pipeline:
    QUEUED
      ↓ (conditional claim)
    PROCESSING ── charge ──┐
      ↓                    │
    SCANNING (optional)    │
      ↓                    │
    PROMPTING ──(suggest-only)──→ SUGGESTED
      ↓
    GENERATING ──(deadline)──→ parked, recoverable
      ↓
    relocate → POSTSCAN (stills) → DONE

Any failure short-circuits to ERROR and triggers one refund attempt.
"""

import asyncio
import logging
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Optional

from core.config import Config, get_config
from core.errors import (
    JobImmutableError,
    NotFound,
    PermissionDenied,
    PipelineError,
    ProviderFailed,
    ProviderTimeout,
    ValidationError,
    classify_failure,
)
from services.billing.ledger import CreditLedger
from services.billing.preferences import OwnerPreferences
from services.storage.relocator import AssetRelocator
from services.streaming.broadcaster import ProgressBroadcaster, Subscription
from services.video_generation.client import GenerationStatus
from services.video_generation.completion import CompletionService
from services.video_generation.engines import EngineSelector
from services.video_generation.poller import PredictionPoller, failure_from_prediction

from .db import JobStore
from .messages import line_for, to_user_status
from .nodes import (
    GenerateNode,
    JobContext,
    PostscanNode,
    PromptNode,
    RelocateNode,
    ScanNode,
    start_pool,
)
from .runner import CancellationToken, JobCancelled, JobTaskRunner
from .state import Assets, Inputs, Job, JobMode, JobStatus, Step, utcnow

logger = logging.getLogger(__name__)

MAX_INSPIRATIONS = 4

ASSET_URL_FIELDS = (
    "product_image_url",
    "logo_image_url",
    "start_image_url",
    "end_image_url",
    "reference_video_url",
    "reference_audio_url",
)

INFLIGHT_STATUSES = (
    JobStatus.QUEUED,
    JobStatus.PROCESSING,
    JobStatus.SCANNING,
    JobStatus.PROMPTING,
    JobStatus.GENERATING,
    JobStatus.POSTSCAN,
)


@dataclass
class CreateResult:
    job_id: str
    status: str
    stream_url: str
    cost: int

    def to_dict(self) -> dict:
        return asdict(self)


def _is_http_url(value: Any) -> bool:
    return isinstance(value, str) and value.startswith(("http://", "https://"))


def terminal_payload(job: Job) -> dict:
    """Data carried by the terminal 'done' event for a finished job."""
    data = {
        "status": to_user_status(job.status),
        "job_id": job.id,
        "output_url": job.output_url,
    }
    if job.status == JobStatus.SUGGESTED:
        data["prompt"] = job.prompt_text
        data["suggestion"] = job.wv.prompts.suggestion
    if job.status == JobStatus.ERROR and job.error:
        data["error"] = job.error.get("code")
    return data


class JobOrchestrator:
    """
    Usage:
        orchestrator = JobOrchestrator(store, ledger, broadcaster, poller, completion, relocator)

        result = await orchestrator.create("owner-1", "still", {"brief": "red sneaker on marble"})
        async for event in await orchestrator.subscribe(result.job_id):
            print(event.to_cli_line())
    """

    def __init__(
        self,
        store: JobStore,
        ledger: CreditLedger,
        broadcaster: ProgressBroadcaster,
        poller: PredictionPoller,
        completion: CompletionService,
        relocator: AssetRelocator,
        selector: Optional[EngineSelector] = None,
        preferences: Optional[OwnerPreferences] = None,
        runner: Optional[JobTaskRunner] = None,
        config: Optional[Config] = None,
    ):
        self.config = config or get_config()
        self.store = store
        self.ledger = ledger
        self.broadcaster = broadcaster
        self.poller = poller
        self.relocator = relocator
        self.selector = selector or EngineSelector(self.config.models, self.config.billing)
        self.preferences = preferences or ledger.preferences
        self.runner = runner or JobTaskRunner()
        if self.runner.on_crash is None:
            self.runner.on_crash = self.handle_crash

        self.scan = ScanNode(completion, self.config)
        self.prompt = PromptNode(completion, self.preferences, self.config)
        self.generate = GenerateNode(poller, self.config)
        self.relocate = RelocateNode(relocator, self.config)
        self.postscan = PostscanNode(completion, self.config)

        # job_id -> (lock, callers holding or waiting on it)
        self._recover_locks: dict[str, tuple[asyncio.Lock, int]] = {}

    def _context(self, job: Job, step_offset: int, token: Optional[CancellationToken] = None) -> JobContext:
        return JobContext(
            job,
            self.store,
            self.broadcaster,
            token=token,
            step_offset=step_offset,
            chatter_interval=self.config.streaming.chatter_interval,
        )

    async def _load_context(self, job: Job, token: Optional[CancellationToken] = None) -> JobContext:
        steps = await self.store.list_steps(job.id)
        return self._context(job, len(steps), token)

    # ========================================================================
    # Create
    # ========================================================================

    async def create(
        self,
        owner_id: str,
        mode: str,
        inputs: Optional[dict] = None,
        *,
        declared_cost: Optional[int] = None,
        parent_id: Optional[str] = None,
    ) -> CreateResult:
        """
        Validate, pre-check credits and queue a job.

        Args:
            owner_id: Caller identity
            mode: "still" or "video"
            inputs: Flat request fields (brief, lane, asset URLs, ...)
            declared_cost: Cost the caller agreed to; defaults to the engine cost
            parent_id: Job to refine (tweak) or animate

        Returns:
            CreateResult with the job id and stream URL
        """
        if not owner_id:
            raise ValidationError("owner_id is required", error_code="MISSING_OWNER")
        try:
            job_mode = JobMode(mode)
        except ValueError:
            raise ValidationError(f"Unknown mode '{mode}'", error_code="INVALID_MODE")

        payload = dict(inputs or {})
        job = Job(owner_id=owner_id, mode=job_mode, parent_id=parent_id)
        job.wv.inputs = Inputs.from_dict(payload)
        job.wv.assets = Assets.from_dict(payload)
        self._validate_inputs(job)

        if parent_id:
            await self._attach_parent(job, parent_id)
        self._validate_mode_requirements(job)

        wv = job.wv
        selection = self.selector.select(
            job_mode.value,
            lane=wv.inputs.lane,
            duration=wv.inputs.duration,
            reference_video_url=wv.assets.reference_video_url,
            reference_audio_url=wv.assets.reference_audio_url,
        )
        if declared_cost is not None and declared_cost < selection.cost:
            raise ValidationError(
                f"Declared cost {declared_cost} is below the engine cost {selection.cost}",
                error_code="COST_MISMATCH",
                details={"declared": declared_cost, "cost": selection.cost},
            )
        wv.merge("meta", engine=selection.to_dict())

        if wv.inputs.suggest_only:
            await self.preferences.consume_assist(owner_id, self.config.billing.assist_daily_quota)
        else:
            amount = declared_cost if declared_cost is not None else selection.cost
            await self.ledger.ensure_enough_credits(
                owner_id,
                amount,
                suggestion=self.selector.cheaper_alternative(selection),
            )

        await self.store.insert_job(job)
        await self.broadcaster.publish(job.id, "status", {"status": to_user_status(job.status)})
        logger.info(
            f"[{job.id}] Queued {job_mode.value} job for {owner_id} "
            f"({selection.kind.value}, {selection.cost} credits)"
        )

        if self.config.inline_dispatch:
            self.dispatch(job.id)

        return CreateResult(
            job_id=job.id,
            status=job.status.value,
            stream_url=f"/jobs/{job.id}/stream",
            cost=selection.cost,
        )

    def _validate_inputs(self, job: Job) -> None:
        inputs, assets = job.wv.inputs, job.wv.assets

        if not isinstance(inputs.brief, str):
            raise ValidationError("brief must be a string", error_code="INVALID_BRIEF")
        if inputs.duration is not None:
            if not isinstance(inputs.duration, (int, float)) or inputs.duration <= 0:
                raise ValidationError("duration must be a positive number", error_code="INVALID_DURATION")
        if not isinstance(inputs.options, dict):
            raise ValidationError("options must be an object", error_code="INVALID_OPTIONS")

        for name in ASSET_URL_FIELDS:
            value = getattr(assets, name)
            if value is not None and not _is_http_url(value):
                raise ValidationError(f"{name} must be an http(s) URL", error_code="INVALID_URL")

        if not isinstance(assets.inspiration_image_urls, list):
            raise ValidationError("inspiration_image_urls must be a list", error_code="INVALID_URL")
        if len(assets.inspiration_image_urls) > MAX_INSPIRATIONS:
            raise ValidationError(
                f"At most {MAX_INSPIRATIONS} inspiration images are allowed",
                error_code="TOO_MANY_INSPIRATIONS",
            )
        if not all(_is_http_url(u) for u in assets.inspiration_image_urls):
            raise ValidationError("inspiration_image_urls must be http(s) URLs", error_code="INVALID_URL")

        # Parent output is resolved server-side, never taken from the request
        assets.parent_output_url = None

    async def _attach_parent(self, job: Job, parent_id: str) -> None:
        parent = await self.store.get_job(parent_id)
        if parent is None:
            raise NotFound(f"Parent job {parent_id} not found")
        if parent.owner_id != job.owner_id:
            raise PermissionDenied(f"Parent job {parent_id} belongs to another owner")
        if parent.status != JobStatus.DONE or not parent.output_url:
            raise ValidationError(
                f"Parent job {parent_id} has no finished output",
                error_code="PARENT_NOT_READY",
            )
        if job.mode == JobMode.STILL and parent.mode == JobMode.VIDEO:
            raise ValidationError("A still cannot refine a video", error_code="PARENT_MODE_MISMATCH")

        wv = job.wv
        if parent.mode != job.mode:
            # Animating a finished still: its output becomes the first frame
            wv.assets.parent_output_url = parent.output_url
            return

        if not (wv.inputs.feedback or "").strip():
            raise ValidationError("A tweak needs feedback", error_code="MISSING_FEEDBACK")

        inherited = parent.wv.assets.to_dict()
        for name, value in inherited.items():
            if name == "parent_output_url":
                continue
            if not getattr(wv.assets, name) and value:
                setattr(wv.assets, name, value)

        wv.prompts.parent_prompt = parent.prompt_text or parent.wv.prompts.prompt or ""
        if job.mode == JobMode.STILL:
            wv.assets.parent_output_url = parent.output_url
        else:
            wv.assets.start_image_url = wv.assets.start_image_url or parent.wv.assets.parent_output_url
            if parent.wv.inputs.duration and wv.inputs.duration is None:
                wv.inputs.duration = parent.wv.inputs.duration

    def _validate_mode_requirements(self, job: Job) -> None:
        wv = job.wv
        if job.mode == JobMode.VIDEO:
            if not (wv.assets.start_image_url or wv.assets.parent_output_url):
                raise ValidationError("A video needs a start image", error_code="MISSING_START_IMAGE")
        elif not job.parent_id and not wv.inputs.brief.strip():
            raise ValidationError("A still needs a brief", error_code="MISSING_BRIEF")

        if wv.inputs.use_prompt_as_is and not wv.inputs.brief.strip():
            raise ValidationError("use_prompt_as_is needs a brief", error_code="MISSING_BRIEF")

    def dispatch(self, job_id: str) -> None:
        """Hand a queued job to the supervised runner."""
        self.runner.submit(job_id, lambda token: self.run(job_id, token))

    # ========================================================================
    # Run
    # ========================================================================

    async def run(self, job_id: str, token: Optional[CancellationToken] = None) -> Optional[Job]:
        """
        Claim and execute a queued job.

        Returns the job as left by the pipeline, or None when another worker
        won the claim.
        """
        if not await self.store.claim_job(job_id):
            logger.info(f"[{job_id}] Claim lost or job not queued; skipping")
            return None

        job = await self.store.get_job(job_id)
        ctx = await self._load_context(job, token)
        await ctx.publish_status()

        try:
            await self._charge(ctx)
            await ctx.line(line_for(start_pool(ctx.job)))
            await self._run_pipeline(ctx)
        except ProviderTimeout as e:
            await self._park(ctx, e)
        except JobCancelled:
            logger.warning(f"[{job_id}] Cancelled at {ctx.job.status.value}; left for recovery")
        except Exception as e:
            await self._fail(ctx, e, stage=ctx.job.status.value)
        finally:
            await ctx.stop_chatter()

        return ctx.job

    async def _charge(self, ctx: JobContext) -> None:
        if ctx.suggest_only:
            return
        job, selection = ctx.job, ctx.selection
        outcome = await self.ledger.charge(
            job.owner_id,
            job.id,
            selection.cost,
            reason=f"{job.mode.value}:{selection.lane}",
        )
        ctx.wv.merge("meta", charged=True)
        await ctx.record_step(
            "charge",
            input={"amount": selection.cost, "lane": selection.lane},
            output={"outcome": outcome.value},
        )

    async def _run_pipeline(self, ctx: JobContext) -> None:
        if self.scan.should_run(ctx):
            await ctx.set_status(JobStatus.SCANNING)
            await self.scan.execute(ctx)
        ctx.check_cancelled()

        await ctx.set_status(JobStatus.PROMPTING)
        await self.prompt.execute(ctx)

        if ctx.suggest_only:
            await self._finish(ctx, JobStatus.SUGGESTED)
            return
        ctx.check_cancelled()

        await ctx.set_status(JobStatus.GENERATING)
        await self.generate.execute(ctx)
        await self._complete_from_output(ctx)

    async def _complete_from_output(self, ctx: JobContext) -> None:
        """Relocate, caption (stills) and finalize. Shared by run and recover."""
        await self.relocate.execute(ctx)
        if self.postscan.should_run(ctx):
            await ctx.set_status(JobStatus.POSTSCAN)
            await self.postscan.execute(ctx)
        await self._finish(ctx, JobStatus.DONE)

    async def _finish(self, ctx: JobContext, status: JobStatus) -> None:
        job = ctx.job
        final = line_for("suggested" if status == JobStatus.SUGGESTED else "done")
        job.wv.user_messages.final_line = final
        await ctx.line(final)

        job.advance(status)
        await ctx.save()
        await ctx.record_step(
            "finalize",
            output={"status": status.value, "output_url": job.output_url, "prompt": job.prompt_text},
        )
        await ctx.publish_status()
        await self.broadcaster.close(job.id, terminal_payload(job))
        logger.info(f"[{job.id}] Finished as {status.value}")

    async def _park(self, ctx: JobContext, error: ProviderTimeout) -> None:
        """Leave the job in generating with its handle; tell subscribers to check back."""
        job = ctx.job
        logger.warning(f"[{job.id}] Provider job {error.provider_job_id} still running at deadline; parked")
        await ctx.line(line_for("timeout"))
        await ctx.publish_status()
        await self.broadcaster.close(job.id, {
            "status": "timeout",
            "recoverable": True,
            "job_id": job.id,
        })

    async def _fail(self, ctx: JobContext, exc: BaseException, stage: str) -> None:
        """Persist the error, refund once, publish exactly one terminal event."""
        job = ctx.job
        error = classify_failure(exc, stage)
        logger.error(f"[{job.id}] Failed at {stage}: {error.error_code}: {error.message}")

        stored = await self.store.get_job(job.id)
        if stored is not None and stored.is_terminal:
            logger.warning(f"[{job.id}] Already {stored.status.value}; not failing it again")
            return

        refund = None
        if not ctx.suggest_only:
            try:
                outcome = await self.ledger.refund(job.owner_id, job.id, ctx.selection.cost, error)
                refund = outcome.value
            except Exception as e:
                logger.error(f"[{job.id}] Refund failed: {type(e).__name__}: {e}")
                refund = "failed"

        announce = True
        try:
            await ctx.line(line_for("error"))
            job.error = {**error.to_dict(), "stage": stage}
            job.wv.merge("meta", refund=refund)
            job.wv.user_messages.final_line = job.wv.user_messages.lines[-1]["text"]
            job.advance(JobStatus.ERROR)
            await ctx.save()
            await ctx.record_step("error", input={"stage": stage}, output={"refund": refund}, error=job.error)
        except JobImmutableError:
            logger.warning(f"[{job.id}] Finalized concurrently; error not recorded")
            announce = False
        finally:
            # Subscribers get a terminal event even when persisting failed
            if announce:
                await self.broadcaster.publish(job.id, "status", {"status": "error"})
                await self.broadcaster.close(job.id, {
                    "status": "error",
                    "job_id": job.id,
                    "error": error.error_code,
                })

    # ========================================================================
    # Recover
    # ========================================================================

    async def recover(self, job_id: str, owner_id: str) -> Job:
        """
        Reconcile a job parked in generating with its provider job.

        Raises:
            NotFound: no such job
            PermissionDenied: job belongs to another owner (no side effects)
            ValidationError: job is not in a recoverable state
        """
        job = await self.store.get_job(job_id)
        if job is None:
            raise NotFound(f"Job {job_id} not found")
        if job.owner_id != owner_id:
            raise PermissionDenied(f"Job {job_id} belongs to another owner")
        if job.status == JobStatus.DONE:
            return job
        if job.status != JobStatus.GENERATING or not job.wv.outputs.provider_job_id:
            raise ValidationError(
                f"Job {job_id} is {job.status.value} and cannot be recovered",
                error_code="NOT_RECOVERABLE",
                details={"status": job.status.value},
            )
        if self._still_polling(job):
            logger.info(f"[{job.id}] Recover requested while the provider is still being polled; nothing to do")
            return job
        return await self._reconcile(job)

    def _still_polling(self, job: Job) -> bool:
        """True while a run task may still be waiting on the provider job."""
        if job.wv.outputs.timed_out:
            return False
        if self.runner.is_running(job.id):
            return True
        stale_after = 0 if self.config.inline_dispatch else self.config.recovery.stale_after_seconds
        return (utcnow() - job.updated_at).total_seconds() < stale_after

    async def _reconcile(self, job: Job, token: Optional[CancellationToken] = None) -> Job:
        lock, users = self._recover_locks.get(job.id, (None, 0))
        lock = lock or asyncio.Lock()
        self._recover_locks[job.id] = (lock, users + 1)
        try:
            async with lock:
                return await self._reconcile_locked(job.id, token)
        finally:
            lock, users = self._recover_locks[job.id]
            if users > 1:
                self._recover_locks[job.id] = (lock, users - 1)
            else:
                del self._recover_locks[job.id]

    async def _reconcile_locked(self, job_id: str, token: Optional[CancellationToken]) -> Job:
        # Reload under the lock: a concurrent recover may already have finished it
        job = await self.store.get_job(job_id)
        if job.status != JobStatus.GENERATING:
            return job

        ctx = await self._load_context(job, token)
        provider_job_id = job.wv.outputs.provider_job_id
        self.broadcaster.reopen(job.id)
        ctx.wv.merge("meta", recovered_at=utcnow().isoformat())

        prediction = await self.poller.fetch(provider_job_id, self.config.poller.per_call_timeout)
        status = prediction.status if prediction else None
        logger.info(f"[{job.id}] Recover: provider job {provider_job_id} is {status.value if status else 'unknown'}")

        try:
            if status == GenerationStatus.SUCCEEDED:
                output_url = prediction.output_url
                if not output_url:
                    raise ProviderFailed(
                        "Provider succeeded without an output URL",
                        diagnostic=prediction.diagnostic(),
                        provider_job_id=provider_job_id,
                        error_code="PROVIDER_NO_OUTPUT",
                    )
                ctx.wv.merge("outputs", provider_output_url=output_url, provider_status=status.value, timed_out=False)
                await ctx.record_step(
                    "recover",
                    input={"provider_job_id": provider_job_id},
                    output={"status": status.value, "output_url": output_url},
                )
                await self._complete_from_output(ctx)
            elif status in (GenerationStatus.FAILED, GenerationStatus.CANCELED):
                ctx.wv.merge("outputs", provider_status=status.value)
                await ctx.record_step(
                    "recover",
                    input={"provider_job_id": provider_job_id},
                    output=prediction.diagnostic(),
                )
                raise failure_from_prediction(prediction, provider=self.poller.client.name)
            else:
                await self._still_running(ctx, status)
        except JobImmutableError:
            logger.info(f"[{job.id}] Finalized concurrently during recover")
            return await self.store.get_job(job.id)
        except JobCancelled:
            raise
        except Exception as e:
            await self._fail(ctx, e, stage="recover")

        return ctx.job

    def _handle_age(self, job: Job) -> float:
        submitted = job.wv.meta.submitted_at
        started = datetime.fromisoformat(submitted) if submitted else job.created_at
        return (utcnow() - started).total_seconds()

    async def _still_running(self, ctx: JobContext, status: Optional[GenerationStatus]) -> None:
        job = ctx.job
        policy = self.config.recovery
        provider_job_id = job.wv.outputs.provider_job_id
        # An unreadable status is not evidence the job is stuck; only age applies then
        observed = status is not None
        attempts = job.wv.meta.recover_attempts + (1 if observed else 0)
        age = self._handle_age(job)

        ctx.wv.merge("meta", recover_attempts=attempts)
        ctx.wv.merge("outputs", provider_status=status.value if observed else "unknown")
        await ctx.record_step(
            "recover",
            input={"provider_job_id": provider_job_id},
            output={"status": status.value if observed else "unknown", "attempts": attempts, "age_seconds": int(age)},
        )

        if (observed and attempts >= policy.max_attempts) or age >= policy.abandon_after_seconds:
            await self._cancel_quietly(provider_job_id)
            raise PipelineError(
                f"Provider job {provider_job_id} abandoned after {attempts} attempts ({int(age)}s)",
                error_code="PROVIDER_ABANDONED",
                provider=self.poller.client.name,
                details={"attempts": attempts, "age_seconds": int(age)},
            )

        await ctx.line(line_for("timeout"))
        await self.broadcaster.close(job.id, {
            "status": "timeout",
            "recoverable": True,
            "job_id": job.id,
            "attempts": attempts,
        })

    async def _cancel_quietly(self, provider_job_id: str) -> None:
        try:
            await asyncio.wait_for(
                self.poller.client.cancel(provider_job_id),
                timeout=self.config.poller.per_call_timeout,
            )
        except Exception as e:
            logger.warning(f"Cancel of {provider_job_id} failed: {type(e).__name__}: {e}")

    async def recover_inflight(self, stale_after: Optional[float] = None) -> dict[str, int]:
        """
        Startup sweep over non-terminal jobs.

        Queued jobs are dispatched, generating jobs with a handle are
        reconciled, and stranded pre-submission jobs fail as interrupted.
        """
        if stale_after is None:
            stale_after = 0 if self.config.inline_dispatch else self.config.recovery.stale_after_seconds

        summary = {"dispatched": 0, "recovering": 0, "interrupted": 0, "finalized": 0, "skipped": 0}
        jobs = await self.store.list_jobs_by_status(INFLIGHT_STATUSES, limit=500)
        now = utcnow()

        for job in jobs:
            if job.status == JobStatus.QUEUED:
                self.dispatch(job.id)
                summary["dispatched"] += 1
                continue

            if (now - job.updated_at).total_seconds() < stale_after:
                summary["skipped"] += 1
                continue

            if job.status == JobStatus.GENERATING and job.wv.outputs.provider_job_id:
                self.runner.submit(f"recover:{job.id}", lambda token, j=job: self._reconcile(j, token))
                summary["recovering"] += 1
            elif job.status == JobStatus.POSTSCAN and job.output_url:
                ctx = await self._load_context(job)
                try:
                    await self._finish(ctx, JobStatus.DONE)
                    summary["finalized"] += 1
                except JobImmutableError:
                    summary["skipped"] += 1
            else:
                ctx = await self._load_context(job)
                await self._fail(
                    ctx,
                    PipelineError(f"Interrupted at {job.status.value}", error_code="INTERRUPTED"),
                    stage=job.status.value,
                )
                summary["interrupted"] += 1

        if jobs:
            logger.info(f"Recovery sweep: {summary}")
        return summary

    async def handle_crash(self, key: str, exc: BaseException) -> None:
        """Runner error boundary: fail the job a detached task left behind."""
        job_id = key.split(":", 1)[-1]
        try:
            job = await self.store.get_job(job_id)
            if job is None or job.is_terminal:
                return
            ctx = await self._load_context(job)
            await self._fail(ctx, exc, stage=job.status.value)
        except Exception as e:
            logger.error(f"[{job_id}] Crash handler failed: {type(e).__name__}: {e}")

    # ========================================================================
    # Queries
    # ========================================================================

    async def get_job_for_owner(self, job_id: str, owner_id: str) -> Job:
        job = await self.store.get_job(job_id)
        if job is None:
            raise NotFound(f"Job {job_id} not found")
        if job.owner_id != owner_id:
            raise PermissionDenied(f"Job {job_id} belongs to another owner")
        return job

    async def list_steps(self, job_id: str, owner_id: str) -> list[Step]:
        await self.get_job_for_owner(job_id, owner_id)
        return await self.store.list_steps(job_id)

    async def subscribe(self, job_id: str, replay_from: int = 0) -> Subscription:
        """
        Subscribe to a job's progress. A terminal job whose channel is gone
        (e.g. after a restart) is seeded from the store so the caller gets
        its terminal event at once.
        """
        if not self.broadcaster.has_channel(job_id):
            job = await self.store.get_job(job_id)
            if job is None:
                raise NotFound(f"Job {job_id} not found")
            if job.is_terminal:
                self.broadcaster.seed_terminal(job_id, job.wv.user_messages.lines, terminal_payload(job))
        return self.broadcaster.subscribe(job_id, replay_from)

    async def close(self) -> None:
        await self.runner.shutdown()

