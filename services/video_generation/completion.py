"""
Completion Service - Gemini text/vision calls with Langfuse tracing

Used for:
- captioning reference images and generated output
- synthesizing generation prompts
- refining prompts from tweak feedback

Responses are requested as JSON; parse_json_maybe() tolerates fenced
or prose-wrapped JSON.
"""

import asyncio
import json
import logging
import mimetypes
from typing import Any, Optional, Sequence

import httpx
from google import genai
from google.genai import types
from langfuse import observe
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from core.config import get_config
from core.errors import PipelineError

logger = logging.getLogger(__name__)


def parse_json_maybe(content: Any) -> Optional[dict]:
    """Best-effort JSON object extraction from a model response."""
    if content is None:
        return None
    if isinstance(content, dict):
        return content

    text = str(content).strip()
    if "```json" in text:
        text = text.split("```json", 1)[1].split("```", 1)[0]
    elif "```" in text:
        text = text.split("```", 1)[1].split("```", 1)[0]
    else:
        start, end = text.find("{"), text.rfind("}")
        if start != -1 and end > start:
            text = text[start:end + 1]

    try:
        parsed = json.loads(text.strip())
    except json.JSONDecodeError:
        return None
    return parsed if isinstance(parsed, dict) else None


class CompletionService:
    """Interface: complete(system_prompt, user_text, image_urls) -> text."""

    async def complete(self, system_prompt: str, user_text: str, image_urls: Sequence[str] = ()) -> str:
        raise NotImplementedError

    async def complete_json(self, system_prompt: str, user_text: str, image_urls: Sequence[str] = ()) -> dict:
        raw = await self.complete(system_prompt, user_text, image_urls)
        return parse_json_maybe(raw) or {"raw": raw}


class GeminiCompletionService(CompletionService):
    """
    Usage:
        service = GeminiCompletionService()
        text = await service.complete("You caption images.", "Describe this", ["https://..."])
    """

    def __init__(self, api_key: Optional[str] = None, model: Optional[str] = None, timeout: Optional[float] = None):
        config = get_config()
        self.api_key = api_key if api_key is not None else config.api.google_api_key
        self.model = model or config.models.completion_model
        self.timeout = timeout or config.poller.completion_timeout
        self._client: Optional[genai.Client] = None
        self._http_client: Optional[httpx.AsyncClient] = None

    def _get_client(self) -> genai.Client:
        """Get or create the Gemini client (lazy-loaded)."""
        if self._client is None:
            if not self.api_key:
                raise PipelineError("GOOGLE_API_KEY not set", error_code="COMPLETION_NOT_CONFIGURED")
            self._client = genai.Client(api_key=self.api_key)
        return self._client

    async def _get_http(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=30.0, follow_redirects=True)
        return self._http_client

    async def close(self):
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=8),
        retry=retry_if_exception_type(httpx.TransportError),
        reraise=True,
    )
    async def _fetch_image(self, url: str) -> types.Part:
        http = await self._get_http()
        response = await http.get(url)
        response.raise_for_status()
        mime_type = response.headers.get("content-type", "").split(";")[0].strip()
        if not mime_type.startswith("image/"):
            mime_type = mimetypes.guess_type(url)[0] or "image/jpeg"
        return types.Part.from_bytes(data=response.content, mime_type=mime_type)

    @observe(name="completion")
    async def complete(self, system_prompt: str, user_text: str, image_urls: Sequence[str] = ()) -> str:
        parts = [types.Part.from_text(text=user_text)]
        for url in image_urls:
            parts.append(await self._fetch_image(url))

        client = self._get_client()
        try:
            response = await asyncio.wait_for(
                client.aio.models.generate_content(
                    model=self.model,
                    contents=parts,
                    config=types.GenerateContentConfig(
                        system_instruction=system_prompt,
                        response_mime_type="application/json",
                    ),
                ),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError as e:
            raise PipelineError(
                f"Completion timed out after {self.timeout}s",
                error_code="COMPLETION_TIMEOUT",
                provider="gemini",
            ) from e

        text = response.text or ""
        logger.debug(f"Completion ({self.model}) returned {len(text)} chars")
        return text
