"""
Orchestrator Nodes

Each node implements one stage of the generation pipeline and works on a
JobContext, which wraps the job record with persistence, step logging and
progress publishing.

Node Pattern:
1. Read working variables
2. Perform work (completion call, provider call, storage copy)
3. Record a step
4. Merge results into working variables
5. Publish a user-facing line
"""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Optional

from core.config import Config, get_config
from core.errors import PipelineError, ProviderFailed, ProviderTimeout
from services.billing.preferences import OwnerPreferences
from services.storage.relocator import AssetRelocator
from services.streaming.broadcaster import ProgressBroadcaster
from services.streaming.progress_tracker import EventType
from services.video_generation.completion import CompletionService
from services.video_generation.engines import EngineKind, EngineSelection
from services.video_generation.poller import PollOptions, PredictionPoller

from .db import JobStore
from .messages import USER_MESSAGE_RULES, line_for, to_user_status
from .runner import CancellationToken
from .state import Job, JobMode, JobStatus, Step, WorkingVariables, utcnow

logger = logging.getLogger(__name__)


class JobContext:
    """
    Runtime wrapper around one job while a pipeline or recovery runs.

    Owns the step counter, so sequence numbers stay gapless for the job.
    """

    def __init__(
        self,
        job: Job,
        store: JobStore,
        broadcaster: ProgressBroadcaster,
        token: Optional[CancellationToken] = None,
        step_offset: int = 0,
        chatter_interval: float = 8.0,
    ):
        self.job = job
        self.store = store
        self.broadcaster = broadcaster
        self.token = token or CancellationToken()
        self.step_no = step_offset
        self.chatter_interval = chatter_interval
        self._chatter_task: Optional[asyncio.Task] = None

    @property
    def wv(self) -> WorkingVariables:
        return self.job.working_variables

    @property
    def selection(self) -> EngineSelection:
        return EngineSelection.from_dict(self.wv.meta.engine)

    @property
    def suggest_only(self) -> bool:
        return self.wv.inputs.suggest_only

    def check_cancelled(self) -> None:
        self.token.raise_if_cancelled()

    async def save(self) -> None:
        self.job = await self.store.upsert_job(self.job)

    async def publish_status(self) -> None:
        await self.broadcaster.publish(
            self.job.id,
            EventType.STATUS,
            {"status": to_user_status(self.job.status)},
        )

    async def set_status(self, status: JobStatus) -> None:
        if self.job.status == status:
            return
        self.job.advance(status)
        await self.save()
        await self.publish_status()
        logger.info(f"[{self.job.id}] -> {status.value}")

    async def line(self, text: str, persist: bool = True) -> None:
        line = self.wv.push_line(text)
        if line is None:
            return
        if persist:
            await self.save()
        await self.broadcaster.publish(self.job.id, EventType.SCAN_LINE, line)

    async def record_step(
        self,
        step_type: str,
        input: Any = None,
        output: Any = None,
        started_at: Optional[datetime] = None,
        error: Optional[dict] = None,
    ) -> Step:
        """Append a step, persist working variables and publish status."""
        ended_at = utcnow()
        started_at = started_at or ended_at
        self.step_no += 1
        step = Step(
            job_id=self.job.id,
            sequence_no=self.step_no,
            type=step_type,
            input=input,
            output=output,
            timing={
                "started_at": started_at.isoformat(),
                "ended_at": ended_at.isoformat(),
                "duration_ms": int((ended_at - started_at).total_seconds() * 1000),
            },
            error=error,
        )
        await self.store.append_step(step)
        if not self.job.is_terminal:
            await self.save()
            await self.publish_status()
        return step

    # ------------------------------------------------------------------
    # Chatter

    async def _chatter(self, stage: str) -> None:
        while True:
            await asyncio.sleep(self.chatter_interval)
            text = line_for(stage)
            if text:
                await self.line(text, persist=False)

    def start_chatter(self, stage: str = "generating") -> None:
        if self._chatter_task is None and self.chatter_interval > 0:
            self._chatter_task = asyncio.create_task(self._chatter(stage))

    async def stop_chatter(self) -> None:
        task, self._chatter_task = self._chatter_task, None
        if task is not None:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)


class BaseNode(ABC):
    """Base class for all pipeline nodes."""

    node_name: str = "base"
    status: JobStatus = JobStatus.PROCESSING

    def __init__(self, config: Optional[Config] = None):
        self.config = config or get_config()

    def should_run(self, ctx: JobContext) -> bool:
        return True

    @abstractmethod
    async def execute(self, ctx: JobContext) -> None:
        """Execute the node logic."""


# ============================================================================
# Prompts
# ============================================================================

SCAN_SYSTEM = """You look at one reference image ({kind}) for a creative brief.
Describe what matters for recreating it in a generated {mode}: subject, materials,
colors, lighting, composition, any text or branding.

Reply with JSON only:
{{"caption": "<one dense paragraph>", "userMessage": "<short friendly line>"}}

{rules}"""

STILL_READER_SYSTEM = """You write one prompt for an image generation model.
Use the brief and the reference captions. Keep the product faithful to its
reference. Be concrete about composition, lighting and style.
{avoid}
Reply with JSON only:
{{"prompt": "<prompt>", "negativePrompt": "<optional>", "userMessage": "<short friendly line>"}}

{rules}"""

STILL_FIXER_SYSTEM = """You refine an image generation prompt using the user's feedback.
Keep everything the feedback does not ask to change. The previous image is attached.
{avoid}
Reply with JSON only:
{{"prompt": "<revised prompt>", "userMessage": "<short friendly line>"}}

{rules}"""

MOTION_SYSTEM = """You write a motion prompt for an image-to-video model.
Describe subject movement and camera movement for a {duration}s clip that starts
from the attached frame. One or two sentences, no scene cuts.
{avoid}
Reply with JSON only:
{{"prompt": "<motion prompt>", "userMessage": "<short friendly line>"}}

{rules}"""

MOTION_FIXER_SYSTEM = """You revise a motion prompt for an image-to-video model using the
user's feedback. Keep what the feedback does not ask to change.
{avoid}
Reply with JSON only:
{{"prompt": "<revised motion prompt>", "userMessage": "<short friendly line>"}}

{rules}"""

POSTSCAN_SYSTEM = """You describe a freshly generated image in one short sentence for a gallery.
Reply with JSON only:
{{"caption": "<caption>", "userMessage": "<short friendly line>"}}

{rules}"""


def _avoid_clause(hard_blocks: list[str]) -> str:
    if not hard_blocks:
        return ""
    return f"Never include any of: {', '.join(hard_blocks)}.\n"


def _message(parsed: dict, stage: str) -> str:
    return str(parsed.get("userMessage") or "").strip()[:140] or line_for(stage)


def is_tweak(job: Job) -> bool:
    """A tweak refines a parent of the same mode and carries its prompt."""
    return bool(job.parent_id) and job.wv.prompts.parent_prompt is not None


def start_pool(job: Job) -> str:
    if job.mode == JobMode.STILL:
        return "still_tweak_start" if is_tweak(job) else "still_create_start"
    return "video_tweak_start" if is_tweak(job) else "video_animate_start"


# ============================================================================
# Nodes
# ============================================================================

class ScanNode(BaseNode):
    """Caption each reference image."""

    node_name = "scan"
    status = JobStatus.SCANNING
    max_inspirations = 4

    def __init__(self, completion: CompletionService, config: Optional[Config] = None):
        super().__init__(config)
        self.completion = completion

    def targets(self, ctx: JobContext) -> list[tuple[str, str]]:
        assets = ctx.wv.assets
        if ctx.job.mode == JobMode.VIDEO:
            start = assets.start_image_url or assets.parent_output_url
            return [("start_frame", start)] if start else []

        targets = []
        if assets.product_image_url:
            targets.append(("product", assets.product_image_url))
        if assets.logo_image_url:
            targets.append(("logo", assets.logo_image_url))
        for i, url in enumerate(assets.inspiration_image_urls[:self.max_inspirations]):
            targets.append((f"inspiration_{i + 1}", url))
        return targets

    def should_run(self, ctx: JobContext) -> bool:
        already = ctx.wv.scans.captions
        return any(kind not in already for kind, _ in self.targets(ctx))

    async def execute(self, ctx: JobContext) -> None:
        for kind, url in self.targets(ctx):
            if kind in ctx.wv.scans.captions:
                continue
            ctx.check_cancelled()

            started = utcnow()
            system = SCAN_SYSTEM.format(kind=kind, mode=ctx.job.mode.value, rules=USER_MESSAGE_RULES)
            parsed = await self.completion.complete_json(system, f"Reference: {kind}", [url])

            caption = str(parsed.get("caption") or parsed.get("raw") or "").strip()
            ctx.wv.merge("scans", captions={kind: caption})
            await ctx.record_step(
                f"scan_{kind}",
                input={"kind": kind, "image_url": url},
                output={"caption": caption, "parsed_ok": "raw" not in parsed},
                started_at=started,
            )
            await ctx.line(_message(parsed, "scanning"))


class PromptNode(BaseNode):
    """Synthesize the generation prompt (or a suggestion for dry runs)."""

    node_name = "prompt"
    status = JobStatus.PROMPTING

    def __init__(
        self,
        completion: CompletionService,
        preferences: OwnerPreferences,
        config: Optional[Config] = None,
    ):
        super().__init__(config)
        self.completion = completion
        self.preferences = preferences

    def _system_and_user(self, ctx: JobContext, hard_blocks: list[str]) -> tuple[str, str, list[str]]:
        wv = ctx.wv
        avoid = _avoid_clause(hard_blocks)
        rules = USER_MESSAGE_RULES
        captions = json.dumps(wv.scans.captions, ensure_ascii=False)
        tweak = is_tweak(ctx.job)

        if ctx.job.mode == JobMode.STILL:
            if tweak:
                system = STILL_FIXER_SYSTEM.format(avoid=avoid, rules=rules)
                user = (
                    f"PREVIOUS PROMPT: {wv.prompts.parent_prompt or ''}\n"
                    f"FEEDBACK: {wv.inputs.feedback or ''}"
                )
                images = [wv.assets.parent_output_url] if wv.assets.parent_output_url else []
            else:
                system = STILL_READER_SYSTEM.format(avoid=avoid, rules=rules)
                user = (
                    f"BRIEF: {wv.inputs.brief}\n"
                    f"ASPECT RATIO: {wv.inputs.aspect_ratio or 'match input'}\n"
                    f"REFERENCE CAPTIONS: {captions}"
                )
                images = []
            return system, user, images

        duration = ctx.selection.duration or self.config.models.video_default_duration
        start = wv.assets.start_image_url or wv.assets.parent_output_url
        if tweak:
            system = MOTION_FIXER_SYSTEM.format(avoid=avoid, rules=rules)
            user = (
                f"PREVIOUS MOTION PROMPT: {wv.prompts.parent_prompt or ''}\n"
                f"FEEDBACK: {wv.inputs.feedback or ''}"
            )
        else:
            system = MOTION_SYSTEM.format(duration=duration, avoid=avoid, rules=rules)
            user = f"BRIEF: {wv.inputs.brief or '(none, suggest something fitting)'}\nFRAME: {captions}"
        return system, user, [start] if start else []

    async def execute(self, ctx: JobContext) -> None:
        wv = ctx.wv
        negative = (
            self.config.models.video_negative_prompt
            if ctx.job.mode == JobMode.VIDEO
            else self.config.models.still_negative_prompt
        )

        if wv.inputs.use_prompt_as_is and wv.inputs.brief.strip():
            prompt = wv.inputs.brief.strip()
            wv.merge("prompts", prompt=prompt, negative_prompt=negative or None)
            await ctx.record_step("prompt_verbatim", input={"brief": prompt}, output={"prompt": prompt})
            await ctx.line(line_for("prompting"))
        else:
            hard_blocks = await self.preferences.hard_blocks(ctx.job.owner_id)
            system, user, images = self._system_and_user(ctx, hard_blocks)

            started = utcnow()
            parsed = await self.completion.complete_json(system, user, images)
            prompt = str(parsed.get("prompt") or "").strip()
            if not prompt:
                await ctx.record_step(
                    "prompt_synthesis",
                    input={"user": user, "images": images},
                    output=parsed,
                    started_at=started,
                    error={"code": "EMPTY_PROMPT"},
                )
                raise PipelineError("Completion returned no prompt", error_code="EMPTY_PROMPT")

            wv.merge(
                "prompts",
                prompt=prompt,
                negative_prompt=str(parsed.get("negativePrompt") or negative or "").strip() or None,
            )
            await ctx.record_step(
                "prompt_synthesis",
                input={"user": user, "images": images, "hard_blocks": hard_blocks},
                output={"prompt": prompt},
                started_at=started,
            )
            await ctx.line(_message(parsed, "prompting"))

        if ctx.suggest_only:
            wv.merge("prompts", suggestion=wv.prompts.prompt)
        ctx.job.prompt_text = wv.prompts.prompt
        wv.validate("prompts", "prompt")


def build_provider_input(selection: EngineSelection, wv: WorkingVariables, config: Config) -> dict:
    """Provider payload for the selected engine."""
    prompts, assets = wv.prompts, wv.assets
    start = assets.start_image_url or assets.parent_output_url

    if selection.kind in (EngineKind.STILL_ECONOMY, EngineKind.STILL_PREMIUM):
        images = [u for u in [assets.parent_output_url, *assets.image_urls()] if u]
        aspect = wv.inputs.aspect_ratio or (config.models.still_aspect_ratio if images else "1:1")
        payload = {
            "prompt": prompts.prompt,
            "size": config.models.still_size,
            "aspect_ratio": aspect,
            "image_input": images,
        }
    elif selection.kind == EngineKind.VIDEO_PLAIN:
        payload = {
            "prompt": prompts.prompt,
            "start_image": start,
            "duration": selection.duration,
            "mode": "pro" if assets.end_image_url else "standard",
        }
        if assets.end_image_url:
            payload["end_image"] = assets.end_image_url
        if prompts.negative_prompt:
            payload["negative_prompt"] = prompts.negative_prompt
    elif selection.kind == EngineKind.VIDEO_MOTION_TRANSFER:
        payload = {
            "prompt": prompts.prompt,
            "image": start,
            "video": assets.reference_video_url,
            "mode": "std",
        }
    else:
        payload = {
            "image": start,
            "audio": assets.reference_audio_url,
            "resolution": "720p",
        }

    payload.update(wv.inputs.options or {})
    return payload


class GenerateNode(BaseNode):
    """Submit to the provider and wait under the hard deadline."""

    node_name = "generate"
    status = JobStatus.GENERATING

    def __init__(self, poller: PredictionPoller, config: Optional[Config] = None):
        super().__init__(config)
        self.poller = poller

    async def execute(self, ctx: JobContext) -> None:
        selection = ctx.selection
        provider_input = build_provider_input(selection, ctx.wv, self.config)
        options = PollOptions.from_config(self.config.poller, video=selection.is_video)
        started = utcnow()

        async def on_submitted(provider_job_id: str):
            # Persist the handle before waiting: it is what makes recovery possible
            ctx.wv.merge(
                "outputs",
                provider_job_id=provider_job_id,
                provider_model=selection.model,
                provider_status="starting",
            )
            ctx.wv.merge("meta", submitted_at=utcnow().isoformat())
            await ctx.record_step(
                "provider_submit",
                input={"model": selection.model, "input": provider_input},
                output={"provider_job_id": provider_job_id},
                started_at=started,
            )

        async def on_poll(prediction):
            ctx.wv.outputs.provider_status = prediction.status.value

        ctx.start_chatter()
        try:
            result = await self.poller.submit_and_await(
                selection.model,
                provider_input,
                options,
                on_submitted=on_submitted,
                on_poll=on_poll,
            )
        except ProviderFailed as e:
            ctx.wv.merge("outputs", provider_status=(e.diagnostic or {}).get("status", "failed"))
            await ctx.record_step(
                "provider_result",
                input={"provider_job_id": e.provider_job_id},
                output=e.diagnostic,
                started_at=started,
                error=e.to_dict(),
            )
            raise
        finally:
            await ctx.stop_chatter()

        if result.timed_out:
            ctx.wv.merge("outputs", timed_out=True)
            await ctx.record_step(
                "provider_result",
                input={"provider_job_id": result.provider_job_id},
                output={"timed_out": True, "elapsed": round(result.elapsed, 1)},
                started_at=started,
            )
            raise ProviderTimeout(result.provider_job_id, provider=self.poller.client.name)

        output_url = result.output_url
        if not output_url:
            raise ProviderFailed(
                "Provider succeeded without an output URL",
                diagnostic=result.prediction.diagnostic() if result.prediction else None,
                provider_job_id=result.provider_job_id,
                error_code="PROVIDER_NO_OUTPUT",
            )

        ctx.wv.merge("outputs", provider_output_url=output_url, provider_status="succeeded", timed_out=False)
        await ctx.record_step(
            "provider_result",
            input={"provider_job_id": result.provider_job_id},
            output={"output_url": output_url, "elapsed": round(result.elapsed, 1)},
            started_at=started,
        )


class RelocateNode(BaseNode):
    """Copy the provider output into permanent storage."""

    node_name = "relocate"
    status = JobStatus.GENERATING

    def __init__(self, relocator: AssetRelocator, config: Optional[Config] = None):
        super().__init__(config)
        self.relocator = relocator

    async def execute(self, ctx: JobContext) -> None:
        ctx.wv.validate("outputs", "provider_output_url")
        source = ctx.wv.outputs.provider_output_url
        started = utcnow()

        key_prefix = f"{self.config.storage.key_prefix}/{ctx.job.owner_id}/{ctx.job.id}"
        permanent_url = await self.relocator.relocate(source, key_prefix)

        ctx.wv.merge("outputs", permanent_url=permanent_url)
        ctx.job.output_url = permanent_url
        await ctx.record_step(
            "relocate",
            input={"provider_url": source},
            output={"permanent_url": permanent_url},
            started_at=started,
        )
        await ctx.line(line_for("saved_video" if ctx.job.mode == JobMode.VIDEO else "saved_image"))


class PostscanNode(BaseNode):
    """Caption the generated still. Best effort: the asset is already durable."""

    node_name = "postscan"
    status = JobStatus.POSTSCAN

    def __init__(self, completion: CompletionService, config: Optional[Config] = None):
        super().__init__(config)
        self.completion = completion

    def should_run(self, ctx: JobContext) -> bool:
        return ctx.job.mode == JobMode.STILL and bool(ctx.job.output_url)

    async def execute(self, ctx: JobContext) -> None:
        started = utcnow()
        system = POSTSCAN_SYSTEM.format(rules=USER_MESSAGE_RULES)
        try:
            parsed = await self.completion.complete_json(system, "Describe this image.", [ctx.job.output_url])
        except Exception as e:
            logger.warning(f"[{ctx.job.id}] Output caption failed: {type(e).__name__}: {e}")
            await ctx.record_step(
                "postscan",
                input={"image_url": ctx.job.output_url},
                started_at=started,
                error={"code": "POSTSCAN_FAILED", "message": str(e)},
            )
            return

        caption = str(parsed.get("caption") or "").strip() or None
        ctx.wv.merge("scans", output_caption=caption)
        await ctx.record_step(
            "postscan",
            input={"image_url": ctx.job.output_url},
            output={"caption": caption},
            started_at=started,
        )
        await ctx.line(_message(parsed, "done"))
