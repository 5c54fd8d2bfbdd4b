"""
Media Generation Provider Client

Thin async client for a Replicate-compatible prediction API:
- submit(model, input) -> provider job id
- get_status(provider_job_id) -> Prediction
- cancel(provider_job_id)

The client does not wait or poll; PredictionPoller owns deadlines.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

import httpx

from core.config import get_config

logger = logging.getLogger(__name__)


class GenerationStatus(str, Enum):
    """Status of a provider prediction."""
    STARTING = "starting"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"

    @property
    def is_terminal(self) -> bool:
        return self in (GenerationStatus.SUCCEEDED, GenerationStatus.FAILED, GenerationStatus.CANCELED)


@dataclass
class Prediction:
    """Normalized provider prediction."""
    id: str
    status: GenerationStatus
    output: Any = None
    error: Any = None
    logs: Optional[str] = None
    model: Optional[str] = None
    raw: dict = field(default_factory=dict)

    @property
    def output_url(self) -> Optional[str]:
        """First http(s) URL in the output, whatever shape the model returns."""
        return first_url(self.output)

    def diagnostic(self) -> dict:
        return {
            "id": self.id,
            "status": self.status.value,
            "error": self.error,
            "logs": self.logs[-2000:] if self.logs else None,
            "model": self.model,
        }

    @classmethod
    def from_api(cls, data: dict) -> "Prediction":
        raw_status = str(data.get("status") or "starting").lower()
        try:
            status = GenerationStatus(raw_status)
        except ValueError:
            status = GenerationStatus.PROCESSING
        return cls(
            id=str(data.get("id") or ""),
            status=status,
            output=data.get("output"),
            error=data.get("error"),
            logs=data.get("logs"),
            model=data.get("model") or data.get("version"),
            raw=data,
        )


def first_url(output: Any) -> Optional[str]:
    if isinstance(output, str):
        return output if output.startswith("http") else None
    if isinstance(output, (list, tuple)):
        for item in output:
            url = first_url(item)
            if url:
                return url
        return None
    if isinstance(output, dict):
        for key in ("url", "video", "image", "output"):
            url = first_url(output.get(key))
            if url:
                return url
    return None


class ProviderClient:
    """
    Usage:
        client = ProviderClient()
        job_id = await client.submit("kwaivgi/kling-v2.1", {"prompt": "..."})
        prediction = await client.get_status(job_id)
    """

    name = "replicate"

    def __init__(self, api_token: Optional[str] = None, api_base: Optional[str] = None):
        config = get_config()
        self.api_token = api_token if api_token is not None else config.api.provider_api_token
        self.api_base = (api_base or config.api.provider_api_base).rstrip("/")
        self._http_client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                timeout=60.0,
                headers={
                    "Authorization": f"Bearer {self.api_token}",
                    "Content-Type": "application/json",
                },
            )
        return self._http_client

    async def close(self):
        """Close the HTTP client."""
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None

    async def submit(self, model: str, input: dict) -> str:
        """Create a prediction and return its id. "owner/name:version" pins a version."""
        client = await self._get_client()

        if ":" in model:
            version = model.split(":", 1)[1]
            url = f"{self.api_base}/predictions"
            body = {"version": version, "input": input}
        else:
            url = f"{self.api_base}/models/{model}/predictions"
            body = {"input": input}

        response = await client.post(url, json=body)
        response.raise_for_status()
        data = response.json()

        prediction_id = data.get("id")
        if not prediction_id:
            raise ValueError(f"Provider returned no prediction id: {data}")

        logger.info(f"Submitted {model} prediction {prediction_id}")
        return str(prediction_id)

    async def get_status(self, provider_job_id: str) -> Prediction:
        client = await self._get_client()
        response = await client.get(f"{self.api_base}/predictions/{provider_job_id}")
        response.raise_for_status()
        return Prediction.from_api(response.json())

    async def cancel(self, provider_job_id: str) -> None:
        client = await self._get_client()
        response = await client.post(f"{self.api_base}/predictions/{provider_job_id}/cancel")
        response.raise_for_status()
        logger.info(f"Canceled prediction {provider_job_id}")
