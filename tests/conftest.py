"""
Shared fixtures for the generation job tests.

Fakes stand in for the three external services (media provider,
completion model, object storage); everything else is the real code
running over the in-memory job store.
"""

import json
from typing import Optional, Sequence

import pytest
import pytest_asyncio

from core.config import (
    BillingConfig,
    Config,
    ModelConfig,
    PollerConfig,
    RecoveryConfig,
    StorageConfig,
    StreamingConfig,
)
from services.billing.ledger import CreditLedger
from services.billing.preferences import OwnerPreferences
from services.orchestrator.db import InMemoryJobStore
from services.orchestrator.graph import JobOrchestrator
from services.orchestrator.runner import JobTaskRunner
from services.storage.relocator import AssetRelocator, ObjectStorage
from services.streaming.broadcaster import ProgressBroadcaster
from services.video_generation.client import Prediction
from services.video_generation.completion import CompletionService
from services.video_generation.engines import EngineSelector
from services.video_generation.poller import PollOptions, PredictionPoller

OUTPUT_URL = "https://replicate.delivery/pbxt/abc123/output.png"
VIDEO_OUTPUT_URL = "https://replicate.delivery/pbxt/def456/output.mp4"
PUBLIC_BASE = "https://cdn.example.com"
PRODUCT_URL = "https://example.com/sneaker.jpg"
START_URL = "https://example.com/frame.jpg"


class FakeProviderClient:
    """
    Scripted provider. Each submitted prediction walks through `script`
    one status per get_status call and then stays on the last entry.
    """

    name = "replicate"

    def __init__(self, script: Sequence[str] = ("processing", "succeeded"), output=OUTPUT_URL):
        self.script = list(script)
        self.output = output
        self.error = None
        self.logs = None
        self.submitted: list[tuple[str, dict]] = []
        self.cancelled: list[str] = []
        self.fail_submit: Optional[Exception] = None
        self._calls: dict[str, int] = {}

    async def submit(self, model: str, input: dict) -> str:
        if self.fail_submit:
            raise self.fail_submit
        self.submitted.append((model, input))
        prediction_id = f"pred-{len(self.submitted)}"
        self._calls[prediction_id] = 0
        return prediction_id

    async def get_status(self, provider_job_id: str) -> Prediction:
        index = self._calls.get(provider_job_id, 0)
        self._calls[provider_job_id] = index + 1
        status = self.script[min(index, len(self.script) - 1)]
        return Prediction.from_api({
            "id": provider_job_id,
            "status": status,
            "output": self.output if status == "succeeded" else None,
            "error": self.error if status in ("failed", "canceled") else None,
            "logs": self.logs,
        })

    async def cancel(self, provider_job_id: str) -> None:
        self.cancelled.append(provider_job_id)

    async def close(self):
        return None


class FakeCompletion(CompletionService):
    """Returns JSON text shaped like the real model replies."""

    def __init__(self, prompt: str = "red sneaker on white marble, soft studio light"):
        self.prompt = prompt
        self.calls: list[tuple[str, str, list]] = []
        self.fail_postscan: Optional[Exception] = None

    async def complete(self, system_prompt: str, user_text: str, image_urls: Sequence[str] = ()) -> str:
        self.calls.append((system_prompt, user_text, list(image_urls)))
        if system_prompt.startswith("You look at one reference image"):
            return json.dumps({"caption": "white leather sneaker, red sole", "userMessage": "Nice shoe"})
        if system_prompt.startswith("You describe a freshly generated image"):
            if self.fail_postscan:
                raise self.fail_postscan
            return "```json\n" + json.dumps({"caption": "sneaker on marble", "userMessage": "Looks great"}) + "\n```"
        return json.dumps({"prompt": self.prompt, "userMessage": "Putting it together"})

    def systems(self) -> list[str]:
        return [system for system, _, _ in self.calls]


class FakeStorage(ObjectStorage):
    public_base = PUBLIC_BASE

    def __init__(self):
        self.stored: dict[str, str] = {}
        self.fail: Optional[Exception] = None

    async def fetch_and_store(self, remote_url: str, key: str) -> str:
        if self.fail:
            raise self.fail
        self.stored[key] = remote_url
        return f"{self.public_base}/{key}"


def make_config(**overrides) -> Config:
    config = Config(
        models=ModelConfig(
            still_economy="test/still-economy",
            still_premium="test/still-premium",
            video_plain="test/video-plain",
            video_motion_transfer="test/video-motion",
            video_audio_driven="test/video-audio",
            still_negative_prompt="",
            video_negative_prompt="",
        ),
        poller=PollerConfig(
            hard_deadline=0.3,
            video_hard_deadline=0.3,
            poll_interval=0.01,
            per_call_timeout=1.0,
            cancel_on_timeout=False,
            completion_timeout=1.0,
            storage_timeout=1.0,
        ),
        storage=StorageConfig(r2_public_url=PUBLIC_BASE, key_prefix="generations"),
        billing=BillingConfig(assist_daily_quota=2),
        recovery=RecoveryConfig(
            max_attempts=3,
            abandon_after_seconds=3600,
            recover_on_startup=False,
            stale_after_seconds=900,
        ),
        streaming=StreamingConfig(chatter_interval=0),
        inline_dispatch=True,
    )
    for name, value in overrides.items():
        setattr(config, name, value)
    return config


@pytest.fixture
def config():
    return make_config()


@pytest.fixture
def store():
    return InMemoryJobStore()


@pytest.fixture
def preferences(store):
    return OwnerPreferences(store)


@pytest.fixture
def ledger(store, preferences):
    return CreditLedger(store, preferences)


@pytest.fixture
def broadcaster():
    return ProgressBroadcaster(queue_size=100)


@pytest.fixture
def provider():
    return FakeProviderClient()


@pytest.fixture
def completion():
    return FakeCompletion()


@pytest.fixture
def storage():
    return FakeStorage()


@pytest.fixture
def poller(provider, config):
    return PredictionPoller(provider, PollOptions.from_config(config.poller))


@pytest_asyncio.fixture
async def orchestrator(store, ledger, broadcaster, poller, completion, storage, preferences, config):
    orchestrator = JobOrchestrator(
        store,
        ledger,
        broadcaster,
        poller,
        completion,
        AssetRelocator(storage, timeout=1.0),
        selector=EngineSelector(config.models, config.billing),
        preferences=preferences,
        runner=JobTaskRunner(),
        config=config,
    )
    yield orchestrator
    await orchestrator.close()


async def drain(subscription, timeout: float = 2.0) -> list:
    """Collect events until the terminal one."""
    events = []
    while True:
        event = await subscription.get(timeout=timeout)
        assert event is not None, "stream stalled before its terminal event"
        events.append(event)
        if event.is_terminal:
            return events
