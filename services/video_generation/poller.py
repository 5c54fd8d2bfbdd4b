"""
Prediction Poller

Submits work to the provider and polls it under a hard wall-clock deadline.

Three outcomes:
- succeeded: PollResult with the final prediction
- failed/canceled: ProviderFailed (or SafetyBlocked), never retried here
- deadline hit while still running: PollResult(timed_out=True) carrying the
  provider job id so the job can be recovered later

Every network call gets its own short timeout, so one stalled request
cannot stall the loop.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from core.config import PollerConfig, get_config
from core.errors import PipelineError, ProviderFailed, SafetyBlocked, is_safety_block

from .client import GenerationStatus, Prediction, ProviderClient

logger = logging.getLogger(__name__)


@dataclass
class PollOptions:
    hard_deadline: float = 240.0      # seconds
    poll_interval: float = 2.5
    per_call_timeout: float = 15.0
    cancel_on_timeout: bool = False   # canceling forecloses recovery

    @classmethod
    def from_config(cls, config: PollerConfig, video: bool = False) -> "PollOptions":
        return cls(
            hard_deadline=config.video_hard_deadline if video else config.hard_deadline,
            poll_interval=config.poll_interval,
            per_call_timeout=config.per_call_timeout,
            cancel_on_timeout=config.cancel_on_timeout,
        )


@dataclass
class PollResult:
    provider_job_id: str
    prediction: Optional[Prediction]
    timed_out: bool
    elapsed: float

    @property
    def output_url(self) -> Optional[str]:
        return self.prediction.output_url if self.prediction else None


def failure_from_prediction(prediction: Prediction, provider: str = None) -> ProviderFailed:
    """Build the terminal error for a failed or canceled prediction."""
    diagnostic = prediction.diagnostic()
    code = "PROVIDER_CANCELED" if prediction.status == GenerationStatus.CANCELED else "PROVIDER_FAILED"
    message = str(prediction.error or f"Prediction {prediction.status.value}")

    if is_safety_block(prediction.error):
        return SafetyBlocked(
            message,
            diagnostic=diagnostic,
            provider_job_id=prediction.id,
            provider=provider,
        )
    return ProviderFailed(
        message,
        diagnostic=diagnostic,
        provider_job_id=prediction.id,
        provider=provider,
        error_code=code,
    )


PollCallback = Callable[[Prediction], Awaitable[None]]


class PredictionPoller:
    """
    Usage:
        poller = PredictionPoller(ProviderClient())
        result = await poller.submit_and_await(model, {"prompt": "..."})
        if result.timed_out:
            store result.provider_job_id and recover later
    """

    def __init__(self, client: ProviderClient, defaults: Optional[PollOptions] = None):
        self.client = client
        self.defaults = defaults or PollOptions.from_config(get_config().poller)

    async def _call(self, coro: Awaitable, timeout: float):
        return await asyncio.wait_for(coro, timeout=timeout)

    async def submit(self, model: str, provider_input: dict, options: Optional[PollOptions] = None) -> str:
        options = options or self.defaults
        try:
            return await self._call(self.client.submit(model, provider_input), options.per_call_timeout)
        except asyncio.TimeoutError as e:
            raise PipelineError(
                f"Provider submit timed out after {options.per_call_timeout}s",
                error_code="PROVIDER_SUBMIT_TIMEOUT",
                provider=self.client.name,
            ) from e
        except Exception as e:
            raise PipelineError(
                f"Provider submit failed: {type(e).__name__}: {e}",
                error_code="PROVIDER_SUBMIT_FAILED",
                provider=self.client.name,
            ) from e

    async def fetch(self, provider_job_id: str, timeout: float) -> Optional[Prediction]:
        """One status call. None on timeout or transport error."""
        try:
            return await self._call(self.client.get_status(provider_job_id), timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Status call for {provider_job_id} timed out after {timeout}s")
        except Exception as e:
            logger.warning(f"Status call for {provider_job_id} failed: {type(e).__name__}: {e}")
        return None

    async def submit_and_await(
        self,
        model: str,
        provider_input: dict,
        options: Optional[PollOptions] = None,
        on_submitted: Optional[Callable[[str], Awaitable[None]]] = None,
        on_poll: Optional[PollCallback] = None,
    ) -> PollResult:
        options = options or self.defaults
        started = time.monotonic()

        provider_job_id = await self.submit(model, provider_input, options)
        if on_submitted:
            await on_submitted(provider_job_id)

        return await self.await_prediction(provider_job_id, options, on_poll=on_poll, started=started)

    async def await_prediction(
        self,
        provider_job_id: str,
        options: Optional[PollOptions] = None,
        on_poll: Optional[PollCallback] = None,
        started: Optional[float] = None,
    ) -> PollResult:
        options = options or self.defaults
        started = started if started is not None else time.monotonic()
        deadline = started + options.hard_deadline
        last: Optional[Prediction] = None

        while time.monotonic() < deadline:
            await asyncio.sleep(min(options.poll_interval, max(0.0, deadline - time.monotonic())))

            prediction = await self.fetch(provider_job_id, options.per_call_timeout)
            if prediction is None:
                continue

            last = prediction
            if on_poll:
                try:
                    await on_poll(prediction)
                except Exception as e:
                    logger.warning(f"Poll callback failed: {e}")

            if prediction.status.is_terminal:
                break

        if last is None or not last.status.is_terminal:
            # Last chance before giving up
            final = await self.fetch(provider_job_id, options.per_call_timeout)
            if final is not None:
                last = final

        elapsed = time.monotonic() - started

        if last is not None and last.status in (GenerationStatus.FAILED, GenerationStatus.CANCELED):
            raise failure_from_prediction(last, provider=self.client.name)

        if last is not None and last.status == GenerationStatus.SUCCEEDED:
            logger.info(f"Prediction {provider_job_id} succeeded in {elapsed:.1f}s")
            return PollResult(provider_job_id, last, timed_out=False, elapsed=elapsed)

        logger.warning(
            f"Prediction {provider_job_id} still {last.status.value if last else 'unknown'} "
            f"after {elapsed:.1f}s hard deadline"
        )
        if options.cancel_on_timeout:
            try:
                await self._call(self.client.cancel(provider_job_id), options.per_call_timeout)
            except Exception as e:
                logger.warning(f"Cancel of {provider_job_id} failed: {type(e).__name__}: {e}")

        return PollResult(provider_job_id, last, timed_out=True, elapsed=elapsed)
