"""
Job Orchestrator Tests

Covers:
1. Create-time validation and credit pre-checks
2. Full pipeline runs (still, video, suggest-only)
3. Failure handling and refunds, including the safety courtesy cap
4. Timeout parking and recover
5. Startup sweep and the crash boundary
6. Tweak and animate parents

Run with:
    python -m pytest tests/test_orchestrator.py -v
"""

import asyncio
from datetime import timedelta
from uuid import uuid4

import pytest

from core.errors import (
    InsufficientCredits,
    NotFound,
    PermissionDenied,
    ValidationError,
)
from services.orchestrator.state import Job, JobMode, JobStatus, utcnow
from services.streaming.progress_tracker import EventType

from .conftest import PRODUCT_URL, PUBLIC_BASE, START_URL, drain

OWNER = "owner-1"


async def fund(ledger, owner_id: str, amount: int):
    await ledger.grant(owner_id, amount, reference_id=f"seed-{uuid4()}")


async def run_job(orchestrator, owner_id: str, mode: str, inputs: dict, **kwargs) -> Job:
    result = await orchestrator.create(owner_id, mode, inputs, **kwargs)
    await orchestrator.runner.wait_idle()
    return await orchestrator.store.get_job(result.job_id)


async def ledger_refs(store, owner_id: str) -> list[str]:
    entries = await store.list_ledger_entries(owner_id)
    return [e.reference_type for e in entries]


def finished_parent(mode: JobMode, owner_id: str = OWNER, **assets) -> Job:
    job = Job(owner_id=owner_id, mode=mode, status=JobStatus.DONE)
    job.output_url = f"{PUBLIC_BASE}/generations/{owner_id}/{job.id}/out.png"
    job.prompt_text = "white sneaker on concrete, hard light"
    job.wv.merge("assets", **assets)
    return job


class TestCreateValidation:
    """Requests rejected before anything is stored or charged."""

    @pytest.mark.asyncio
    async def test_missing_owner(self, orchestrator):
        with pytest.raises(ValidationError) as exc:
            await orchestrator.create("", "still", {"brief": "shoe"})
        assert exc.value.error_code == "MISSING_OWNER"

    @pytest.mark.asyncio
    async def test_unknown_mode(self, orchestrator):
        with pytest.raises(ValidationError) as exc:
            await orchestrator.create(OWNER, "hologram", {"brief": "shoe"})
        assert exc.value.error_code == "INVALID_MODE"

    @pytest.mark.asyncio
    async def test_still_needs_brief(self, orchestrator, ledger):
        await fund(ledger, OWNER, 5)
        with pytest.raises(ValidationError) as exc:
            await orchestrator.create(OWNER, "still", {"brief": "   "})
        assert exc.value.error_code == "MISSING_BRIEF"

    @pytest.mark.asyncio
    async def test_video_needs_start_image(self, orchestrator, ledger):
        await fund(ledger, OWNER, 20)
        with pytest.raises(ValidationError) as exc:
            await orchestrator.create(OWNER, "video", {"brief": "slow orbit"})
        assert exc.value.error_code == "MISSING_START_IMAGE"

    @pytest.mark.asyncio
    async def test_rejects_non_http_urls(self, orchestrator, ledger):
        await fund(ledger, OWNER, 5)
        with pytest.raises(ValidationError) as exc:
            await orchestrator.create(OWNER, "still", {"brief": "shoe", "product_image_url": "file:///etc/passwd"})
        assert exc.value.error_code == "INVALID_URL"

    @pytest.mark.asyncio
    async def test_too_many_inspirations(self, orchestrator, ledger):
        await fund(ledger, OWNER, 5)
        urls = [f"https://example.com/insp-{i}.jpg" for i in range(5)]
        with pytest.raises(ValidationError) as exc:
            await orchestrator.create(OWNER, "still", {"brief": "shoe", "inspiration_image_urls": urls})
        assert exc.value.error_code == "TOO_MANY_INSPIRATIONS"

    @pytest.mark.asyncio
    async def test_declared_cost_below_engine_cost(self, orchestrator, ledger):
        await fund(ledger, OWNER, 5)
        with pytest.raises(ValidationError) as exc:
            await orchestrator.create(OWNER, "still", {"brief": "shoe", "lane": "niche"}, declared_cost=1)
        assert exc.value.error_code == "COST_MISMATCH"

    @pytest.mark.asyncio
    async def test_premium_lane_with_short_balance(self, orchestrator, ledger, store):
        """Balance 1 on the 2-unit lane: rejected with an economy suggestion, nothing written."""
        await fund(ledger, OWNER, 1)

        with pytest.raises(InsufficientCredits) as exc:
            await orchestrator.create(OWNER, "still", {"brief": "perfume bottle", "lane": "niche"})

        assert exc.value.balance == 1
        assert exc.value.needed == 2
        assert exc.value.suggestion == {"lane": "main", "cost": 1}
        assert await ledger_refs(store, OWNER) == ["grant"]
        assert await store.list_jobs_by_status(list(JobStatus)) == []

    @pytest.mark.asyncio
    async def test_parent_output_url_is_not_taken_from_request(self, orchestrator, ledger, config):
        config.inline_dispatch = False
        await fund(ledger, OWNER, 5)

        result = await orchestrator.create(
            OWNER, "still", {"brief": "shoe", "parent_output_url": "https://evil.example.com/x.png"}
        )

        job = await orchestrator.store.get_job(result.job_id)
        assert job.wv.assets.parent_output_url is None


class TestEngineCosts:
    @pytest.mark.asyncio
    async def test_audio_reference_duration_rounds_up(self, orchestrator, ledger, provider):
        """47 seconds of driving audio bills 50 units."""
        await fund(ledger, OWNER, 100)

        result = await orchestrator.create(OWNER, "video", {
            "start_image_url": START_URL,
            "reference_audio_url": "https://example.com/voice.mp3",
            "duration": 47,
        })
        await orchestrator.runner.wait_idle()

        assert result.cost == 50
        assert await ledger.balance(OWNER) == 50
        model, provider_input = provider.submitted[0]
        assert model == "test/video-audio"
        assert provider_input["audio"] == "https://example.com/voice.mp3"
        assert provider_input["image"] == START_URL


class TestPipelineRun:
    """End-to-end runs over the fakes."""

    @pytest.mark.asyncio
    async def test_economy_still_charges_once(self, orchestrator, ledger, store, storage):
        await fund(ledger, OWNER, 1)

        job = await run_job(orchestrator, OWNER, "still", {
            "brief": "red sneaker on marble",
            "product_image_url": PRODUCT_URL,
        })

        assert job.status == JobStatus.DONE
        assert job.output_url.startswith(f"{PUBLIC_BASE}/generations/{OWNER}/{job.id}/")
        assert job.prompt_text == "red sneaker on white marble, soft studio light"
        assert job.wv.scans.captions["product"] == "white leather sneaker, red sole"
        assert job.wv.scans.output_caption == "sneaker on marble"
        assert job.wv.user_messages.final_line
        assert await ledger.balance(OWNER) == 0
        assert await ledger_refs(store, OWNER) == ["grant", "charge"]
        assert len(storage.stored) == 1

    @pytest.mark.asyncio
    async def test_steps_are_gapless(self, orchestrator, ledger, store):
        await fund(ledger, OWNER, 1)

        job = await run_job(orchestrator, OWNER, "still", {"brief": "shoe", "product_image_url": PRODUCT_URL})

        steps = await store.list_steps(job.id)
        assert [s.sequence_no for s in steps] == list(range(1, len(steps) + 1))
        assert [s.type for s in steps] == [
            "charge",
            "scan_product",
            "prompt_synthesis",
            "provider_submit",
            "provider_result",
            "relocate",
            "postscan",
            "finalize",
        ]
        assert all("duration_ms" in s.timing for s in steps)

    @pytest.mark.asyncio
    async def test_provider_failure_refunds(self, orchestrator, ledger, store, provider):
        await fund(ledger, OWNER, 1)
        provider.script = ["processing", "failed"]
        provider.error = "CUDA out of memory"

        job = await run_job(orchestrator, OWNER, "still", {"brief": "shoe"})

        assert job.status == JobStatus.ERROR
        assert job.error["code"] == "PROVIDER_FAILED"
        assert job.error["stage"] == "generating"
        assert job.wv.meta.refund == "refunded"
        assert await ledger.balance(OWNER) == 1
        assert await ledger_refs(store, OWNER) == ["grant", "charge", "refund"]

    @pytest.mark.asyncio
    async def test_safety_refund_once_per_day(self, orchestrator, ledger, store, provider):
        await fund(ledger, OWNER, 2)
        provider.script = ["failed"]
        provider.error = "Output flagged as NSFW by the safety checker"

        first = await run_job(orchestrator, OWNER, "still", {"brief": "shoe"})
        second = await run_job(orchestrator, OWNER, "still", {"brief": "another shoe"})

        assert first.error["code"] == "SAFETY_BLOCKED"
        assert first.wv.meta.refund == "refunded"
        assert second.error["code"] == "SAFETY_BLOCKED"
        assert second.wv.meta.refund == "withheld"
        assert await ledger.balance(OWNER) == 1
        assert (await ledger_refs(store, OWNER)).count("refund") == 1

    @pytest.mark.asyncio
    async def test_empty_prompt_fails(self, orchestrator, ledger, completion, provider):
        await fund(ledger, OWNER, 1)
        completion.prompt = ""

        job = await run_job(orchestrator, OWNER, "still", {"brief": "shoe"})

        assert job.status == JobStatus.ERROR
        assert job.error["code"] == "EMPTY_PROMPT"
        assert provider.submitted == []
        assert await ledger.balance(OWNER) == 1

    @pytest.mark.asyncio
    async def test_relocation_failure_fails_job(self, orchestrator, ledger, storage):
        await fund(ledger, OWNER, 1)
        storage.fail = ConnectionError("bucket unavailable")

        job = await run_job(orchestrator, OWNER, "still", {"brief": "shoe"})

        assert job.status == JobStatus.ERROR
        assert job.error["code"] == "RELOCATION_FAILED"
        assert job.output_url is None
        assert await ledger.balance(OWNER) == 1

    @pytest.mark.asyncio
    async def test_postscan_failure_is_not_fatal(self, orchestrator, ledger, store, completion):
        await fund(ledger, OWNER, 1)
        completion.fail_postscan = TimeoutError("slow model")

        job = await run_job(orchestrator, OWNER, "still", {"brief": "shoe"})

        assert job.status == JobStatus.DONE
        postscan = [s for s in await store.list_steps(job.id) if s.type == "postscan"]
        assert postscan[0].error["code"] == "POSTSCAN_FAILED"

    @pytest.mark.asyncio
    async def test_hard_blocks_reach_prompt_synthesis(self, orchestrator, ledger, preferences, completion):
        await fund(ledger, OWNER, 1)
        await preferences.add_hard_block(OWNER, "Neon")

        await run_job(orchestrator, OWNER, "still", {"brief": "shoe"})

        prompt_system = next(s for s in completion.systems() if s.startswith("You write one prompt"))
        assert "Never include any of: neon." in prompt_system

    @pytest.mark.asyncio
    async def test_use_prompt_as_is(self, orchestrator, ledger, completion, provider):
        await fund(ledger, OWNER, 1)

        job = await run_job(orchestrator, OWNER, "still", {
            "brief": "exact prompt, keep it",
            "use_prompt_as_is": True,
        })

        assert job.status == JobStatus.DONE
        assert provider.submitted[0][1]["prompt"] == "exact prompt, keep it"
        assert not any(s.startswith("You write one prompt") for s in completion.systems())

    @pytest.mark.asyncio
    async def test_video_run_skips_postscan(self, orchestrator, ledger, store, provider):
        await fund(ledger, OWNER, 5)
        provider.output = ["https://replicate.delivery/pbxt/def456/output.mp4"]

        job = await run_job(orchestrator, OWNER, "video", {"start_image_url": START_URL, "brief": "slow orbit"})

        assert job.status == JobStatus.DONE
        assert job.output_url.endswith(".mp4")
        model, provider_input = provider.submitted[0]
        assert model == "test/video-plain"
        assert provider_input["start_image"] == START_URL
        assert provider_input["duration"] == 5
        assert provider_input["mode"] == "standard"
        types = [s.type for s in await store.list_steps(job.id)]
        assert "scan_start_frame" in types
        assert "postscan" not in types

    @pytest.mark.asyncio
    async def test_claim_lost_returns_none(self, orchestrator, ledger):
        await fund(ledger, OWNER, 1)
        job = await run_job(orchestrator, OWNER, "still", {"brief": "shoe"})

        assert await orchestrator.run(job.id) is None


class TestSuggestOnly:
    @pytest.mark.asyncio
    async def test_never_charges_or_generates(self, orchestrator, ledger, store, provider):
        job = await run_job(orchestrator, OWNER, "still", {"brief": "shoe", "suggest_only": True})

        assert job.status == JobStatus.SUGGESTED
        assert job.wv.prompts.suggestion == job.prompt_text
        assert provider.submitted == []
        assert await ledger_refs(store, OWNER) == []

    @pytest.mark.asyncio
    async def test_terminal_event_carries_prompt(self, orchestrator):
        result = await orchestrator.create(OWNER, "still", {"brief": "shoe", "suggest_only": True})
        subscription = await orchestrator.subscribe(result.job_id)

        events = await drain(subscription)

        assert events[-1].data["status"] == "ready"
        assert events[-1].data["prompt"] == "red sneaker on white marble, soft studio light"

    @pytest.mark.asyncio
    async def test_daily_quota(self, orchestrator):
        for _ in range(2):
            await run_job(orchestrator, OWNER, "still", {"brief": "shoe", "suggest_only": True})

        with pytest.raises(ValidationError) as exc:
            await orchestrator.create(OWNER, "still", {"brief": "shoe", "suggest_only": True})
        assert exc.value.error_code == "ASSIST_QUOTA_EXCEEDED"

    @pytest.mark.asyncio
    async def test_failure_does_not_refund(self, orchestrator, store, completion):
        completion.prompt = ""

        job = await run_job(orchestrator, OWNER, "still", {"brief": "shoe", "suggest_only": True})

        assert job.status == JobStatus.ERROR
        assert job.wv.meta.refund is None
        assert await ledger_refs(store, OWNER) == []


class TestStreaming:
    @pytest.mark.asyncio
    async def test_live_subscriber_sees_lines_then_done(self, orchestrator, ledger):
        await fund(ledger, OWNER, 1)
        result = await orchestrator.create(OWNER, "still", {"brief": "shoe", "product_image_url": PRODUCT_URL})
        subscription = await orchestrator.subscribe(result.job_id)

        events = await drain(subscription)

        lines = [e for e in events if e.event_type == EventType.SCAN_LINE]
        assert [e.data["index"] for e in lines] == list(range(len(lines)))
        assert all("replicate" not in e.data["text"].lower() for e in lines)
        terminal = events[-1]
        assert terminal.data["status"] == "done"
        assert terminal.data["output_url"].startswith(PUBLIC_BASE)
        assert sum(1 for e in events if e.is_terminal) == 1

    @pytest.mark.asyncio
    async def test_late_subscriber_gets_terminal_at_once(self, orchestrator, ledger):
        await fund(ledger, OWNER, 1)
        job = await run_job(orchestrator, OWNER, "still", {"brief": "shoe"})

        subscription = await orchestrator.subscribe(job.id)
        events = await drain(subscription, timeout=0.01)

        assert events[-1].data["status"] == "done"
        with pytest.raises(StopAsyncIteration):
            await subscription.get(timeout=0.01)

    @pytest.mark.asyncio
    async def test_terminal_rebuilt_from_store(self, orchestrator, ledger, broadcaster):
        await fund(ledger, OWNER, 1)
        job = await run_job(orchestrator, OWNER, "still", {"brief": "shoe"})
        broadcaster.forget(job.id)

        events = await drain(await orchestrator.subscribe(job.id, replay_from=1), timeout=0.01)

        assert events[0].data["index"] == 1
        assert events[-1].data["output_url"] == job.output_url

    @pytest.mark.asyncio
    async def test_unknown_job(self, orchestrator):
        with pytest.raises(NotFound):
            await orchestrator.subscribe("no-such-job")


class TestTimeoutAndRecover:
    """Hard deadline parks the job; recover reconciles with the provider."""

    async def _parked(self, orchestrator, ledger, provider) -> Job:
        await fund(ledger, OWNER, 1)
        provider.script = ["processing"]
        job = await run_job(orchestrator, OWNER, "still", {"brief": "shoe"})
        assert job.status == JobStatus.GENERATING
        return job

    @pytest.mark.asyncio
    async def test_deadline_keeps_handle(self, orchestrator, ledger, provider, broadcaster):
        job = await self._parked(orchestrator, ledger, provider)

        assert job.wv.outputs.provider_job_id == "pred-1"
        assert job.wv.outputs.timed_out is True
        assert provider.cancelled == []
        events = await drain(broadcaster.subscribe(job.id), timeout=0.01)
        assert events[-1].data == {"status": "timeout", "recoverable": True, "job_id": job.id}

    @pytest.mark.asyncio
    async def test_recover_after_success_finalizes_without_second_charge(
        self, orchestrator, ledger, store, provider
    ):
        job = await self._parked(orchestrator, ledger, provider)
        provider.script = ["succeeded"]

        recovered = await orchestrator.recover(job.id, OWNER)

        assert recovered.status == JobStatus.DONE
        assert recovered.output_url.startswith(PUBLIC_BASE)
        assert await ledger.balance(OWNER) == 0
        assert (await ledger_refs(store, OWNER)).count("charge") == 1

        events = await drain(await orchestrator.subscribe(job.id), timeout=0.01)
        assert events[-1].data["status"] == "done"

        steps = await store.list_steps(job.id)
        assert [s.sequence_no for s in steps] == list(range(1, len(steps) + 1))
        assert "recover" in [s.type for s in steps]

    @pytest.mark.asyncio
    async def test_concurrent_recover_finalizes_once(self, orchestrator, ledger, store, provider, storage):
        job = await self._parked(orchestrator, ledger, provider)
        provider.script = ["succeeded"]

        first, second = await asyncio.gather(
            orchestrator.recover(job.id, OWNER),
            orchestrator.recover(job.id, OWNER),
        )

        assert first.status == second.status == JobStatus.DONE
        finalize = [s for s in await store.list_steps(job.id) if s.type == "finalize"]
        assert len(finalize) == 1
        assert len(storage.stored) == 1
        assert orchestrator._recover_locks == {}

    @pytest.mark.asyncio
    async def test_recover_other_owner(self, orchestrator, ledger, provider, store):
        job = await self._parked(orchestrator, ledger, provider)
        before = len(await store.list_steps(job.id))

        with pytest.raises(PermissionDenied):
            await orchestrator.recover(job.id, "someone-else")

        assert len(await store.list_steps(job.id)) == before

    @pytest.mark.asyncio
    async def test_recover_provider_failed(self, orchestrator, ledger, provider):
        job = await self._parked(orchestrator, ledger, provider)
        provider.script = ["failed"]
        provider.error = "worker crashed"

        recovered = await orchestrator.recover(job.id, OWNER)

        assert recovered.status == JobStatus.ERROR
        assert recovered.error["stage"] == "recover"
        assert await ledger.balance(OWNER) == 1

    @pytest.mark.asyncio
    async def test_still_running_until_abandoned(self, orchestrator, ledger, provider, store):
        job = await self._parked(orchestrator, ledger, provider)

        first = await orchestrator.recover(job.id, OWNER)
        second = await orchestrator.recover(job.id, OWNER)
        assert first.status == second.status == JobStatus.GENERATING
        assert second.wv.meta.recover_attempts == 2

        third = await orchestrator.recover(job.id, OWNER)

        assert third.status == JobStatus.ERROR
        assert third.error["code"] == "PROVIDER_ABANDONED"
        assert provider.cancelled == ["pred-1"]
        assert await ledger.balance(OWNER) == 1

    @pytest.mark.asyncio
    async def test_recover_done_job_is_noop(self, orchestrator, ledger):
        await fund(ledger, OWNER, 1)
        job = await run_job(orchestrator, OWNER, "still", {"brief": "shoe"})

        again = await orchestrator.recover(job.id, OWNER)

        assert again.status == JobStatus.DONE
        assert again.output_url == job.output_url

    @pytest.mark.asyncio
    async def test_recover_errored_job_rejected(self, orchestrator, ledger, provider):
        await fund(ledger, OWNER, 1)
        provider.script = ["failed"]
        job = await run_job(orchestrator, OWNER, "still", {"brief": "shoe"})

        with pytest.raises(ValidationError) as exc:
            await orchestrator.recover(job.id, OWNER)
        assert exc.value.error_code == "NOT_RECOVERABLE"

    @pytest.mark.asyncio
    async def test_recover_unknown_job(self, orchestrator):
        with pytest.raises(NotFound):
            await orchestrator.recover("missing", OWNER)

    @pytest.mark.asyncio
    async def test_recover_while_polling_leaves_run_alone(self, orchestrator, ledger, store, provider, broadcaster):
        await fund(ledger, OWNER, 1)
        provider.script = ["processing", "processing", "succeeded"]
        created = await orchestrator.create(OWNER, "still", {"brief": "shoe"})
        subscription = broadcaster.subscribe(created.job_id)
        during = []
        get_status = provider.get_status

        async def status_with_recover(provider_job_id):
            if not during:
                during.append(await orchestrator.recover(created.job_id, OWNER))
            return await get_status(provider_job_id)

        provider.get_status = status_with_recover
        await orchestrator.runner.wait_idle()

        assert during[0].status == JobStatus.GENERATING
        job = await store.get_job(created.job_id)
        assert job.status == JobStatus.DONE
        assert job.wv.meta.recover_attempts == 0
        assert await ledger.balance(OWNER) == 0
        events = await drain(subscription, timeout=0.5)
        assert events[-1].data["status"] == "done"
        assert all(e.data.get("status") != "timeout" for e in events)

    @pytest.mark.asyncio
    async def test_unreadable_status_is_not_an_attempt(self, orchestrator, ledger, provider):
        job = await self._parked(orchestrator, ledger, provider)

        async def outage(provider_job_id):
            raise ConnectionError("provider API down")

        provider.get_status = outage
        for _ in range(3):
            parked = await orchestrator.recover(job.id, OWNER)
            assert parked.status == JobStatus.GENERATING

        assert parked.wv.meta.recover_attempts == 0
        assert parked.wv.outputs.provider_status == "unknown"
        assert provider.cancelled == []

        del provider.get_status
        provider.script = ["succeeded"]
        recovered = await orchestrator.recover(job.id, OWNER)

        assert recovered.status == JobStatus.DONE
        assert await ledger.balance(OWNER) == 0

    @pytest.mark.asyncio
    async def test_unreadable_status_abandoned_by_age(self, orchestrator, ledger, provider, config):
        job = await self._parked(orchestrator, ledger, provider)
        config.recovery.abandon_after_seconds = 0

        async def outage(provider_job_id):
            raise ConnectionError("provider API down")

        provider.get_status = outage
        recovered = await orchestrator.recover(job.id, OWNER)

        assert recovered.status == JobStatus.ERROR
        assert recovered.error["code"] == "PROVIDER_ABANDONED"
        assert provider.cancelled == ["pred-1"]
        assert await ledger.balance(OWNER) == 1


class TestRecoverInflight:
    """Startup sweep over jobs a previous process left behind."""

    def _stranded(self, orchestrator, status: JobStatus, age: float = 3600) -> Job:
        job = Job(owner_id=OWNER, mode=JobMode.STILL, status=status)
        job.wv.merge("inputs", brief="shoe")
        job.wv.merge("meta", engine=orchestrator.selector.select("still").to_dict(), charged=True)
        job.updated_at = utcnow() - timedelta(seconds=age)
        return job

    @pytest.mark.asyncio
    async def test_sweep(self, orchestrator, ledger, store, provider, config):
        await fund(ledger, OWNER, 10)
        config.inline_dispatch = False
        queued = await orchestrator.create(OWNER, "still", {"brief": "queued shoe"})

        interrupted = self._stranded(orchestrator, JobStatus.PROMPTING)
        fresh = self._stranded(orchestrator, JobStatus.SCANNING, age=5)
        generating = self._stranded(orchestrator, JobStatus.GENERATING)
        generating.wv.merge("outputs", provider_job_id="pred-legacy")
        postscan = self._stranded(orchestrator, JobStatus.POSTSCAN)
        postscan.output_url = f"{PUBLIC_BASE}/generations/{OWNER}/done.png"
        for job in (interrupted, fresh, generating, postscan):
            await store.insert_job(job)
        await ledger.charge(OWNER, interrupted.id, 1, reason="still:main")
        provider.script = ["succeeded"]

        summary = await orchestrator.recover_inflight(stale_after=60)
        await orchestrator.runner.wait_idle()

        assert summary == {"dispatched": 1, "recovering": 1, "interrupted": 1, "finalized": 1, "skipped": 1}
        assert (await store.get_job(queued.job_id)).status == JobStatus.DONE
        assert (await store.get_job(generating.id)).status == JobStatus.DONE
        assert (await store.get_job(postscan.id)).status == JobStatus.DONE
        assert (await store.get_job(fresh.id)).status == JobStatus.SCANNING

        failed = await store.get_job(interrupted.id)
        assert failed.status == JobStatus.ERROR
        assert failed.error["code"] == "INTERRUPTED"
        assert failed.wv.meta.refund == "refunded"

    @pytest.mark.asyncio
    async def test_crash_boundary_fails_job(self, orchestrator, store, broadcaster):
        job = self._stranded(orchestrator, JobStatus.PROMPTING, age=0)
        await store.insert_job(job)
        subscription = broadcaster.subscribe(job.id)

        await orchestrator.handle_crash(job.id, RuntimeError("boom"))

        stored = await store.get_job(job.id)
        assert stored.status == JobStatus.ERROR
        assert stored.error["code"] == "PIPELINE_ERROR"
        events = await drain(subscription, timeout=0.01)
        assert events[-1].data["status"] == "error"

    @pytest.mark.asyncio
    async def test_runner_crash_reaches_boundary(self, orchestrator, store):
        job = self._stranded(orchestrator, JobStatus.PROMPTING, age=0)
        await store.insert_job(job)

        async def explode(token):
            raise RuntimeError("detached task blew up")

        orchestrator.runner.submit(job.id, explode)
        await orchestrator.runner.wait_idle()

        assert (await store.get_job(job.id)).status == JobStatus.ERROR


class TestParents:
    """Tweak (same mode) and animate (still -> video)."""

    @pytest.mark.asyncio
    async def test_still_tweak_uses_parent(self, orchestrator, ledger, store, completion, provider):
        await fund(ledger, OWNER, 1)
        parent = finished_parent(JobMode.STILL, product_image_url=PRODUCT_URL)
        await store.insert_job(parent)

        job = await run_job(orchestrator, OWNER, "still", {"feedback": "make it blue"}, parent_id=parent.id)

        assert job.status == JobStatus.DONE
        assert job.parent_id == parent.id
        assert job.wv.assets.product_image_url == PRODUCT_URL
        system, user, images = next(c for c in completion.calls if c[0].startswith("You refine"))
        assert "make it blue" in user
        assert parent.prompt_text in user
        assert images == [parent.output_url]
        assert provider.submitted[0][1]["image_input"][0] == parent.output_url

    @pytest.mark.asyncio
    async def test_tweak_needs_feedback(self, orchestrator, ledger, store):
        await fund(ledger, OWNER, 1)
        parent = finished_parent(JobMode.STILL)
        await store.insert_job(parent)

        with pytest.raises(ValidationError) as exc:
            await orchestrator.create(OWNER, "still", {}, parent_id=parent.id)
        assert exc.value.error_code == "MISSING_FEEDBACK"

    @pytest.mark.asyncio
    async def test_animate_still(self, orchestrator, ledger, store, provider):
        await fund(ledger, OWNER, 5)
        parent = finished_parent(JobMode.STILL)
        await store.insert_job(parent)

        job = await run_job(orchestrator, OWNER, "video", {"brief": "gentle spin"}, parent_id=parent.id)

        assert job.status == JobStatus.DONE
        assert provider.submitted[0][1]["start_image"] == parent.output_url
        assert await ledger.balance(OWNER) == 0

    @pytest.mark.asyncio
    async def test_parent_of_other_owner(self, orchestrator, ledger, store):
        await fund(ledger, OWNER, 5)
        parent = finished_parent(JobMode.STILL, owner_id="someone-else")
        await store.insert_job(parent)

        with pytest.raises(PermissionDenied):
            await orchestrator.create(OWNER, "still", {"feedback": "bluer"}, parent_id=parent.id)

    @pytest.mark.asyncio
    async def test_still_cannot_refine_video(self, orchestrator, ledger, store):
        await fund(ledger, OWNER, 5)
        parent = finished_parent(JobMode.VIDEO, start_image_url=START_URL)
        await store.insert_job(parent)

        with pytest.raises(ValidationError) as exc:
            await orchestrator.create(OWNER, "still", {"feedback": "bluer"}, parent_id=parent.id)
        assert exc.value.error_code == "PARENT_MODE_MISMATCH"

    @pytest.mark.asyncio
    async def test_unfinished_parent(self, orchestrator, ledger, store):
        await fund(ledger, OWNER, 5)
        parent = Job(owner_id=OWNER, mode=JobMode.STILL, status=JobStatus.GENERATING)
        await store.insert_job(parent)

        with pytest.raises(ValidationError) as exc:
            await orchestrator.create(OWNER, "video", {}, parent_id=parent.id)
        assert exc.value.error_code == "PARENT_NOT_READY"

    @pytest.mark.asyncio
    async def test_missing_parent(self, orchestrator):
        with pytest.raises(NotFound):
            await orchestrator.create(OWNER, "still", {"feedback": "x"}, parent_id="missing")

