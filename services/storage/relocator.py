"""
Asset Relocator

Copies a provider's ephemeral output URL into permanent object storage.

relocate() is idempotent: a URL already under the storage public base is
returned unchanged, and keys are derived from the source URL so a repeated
copy lands on the same object.
"""

import asyncio
import hashlib
import logging
import mimetypes
import os
from typing import Optional
from urllib.parse import urlparse

import boto3
import httpx
from botocore.config import Config as BotoConfig
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from core.config import StorageConfig, get_config
from core.errors import PipelineError

logger = logging.getLogger(__name__)


class ObjectStorage:
    """Interface: fetch_and_store(remote_url, key) -> permanent URL."""

    public_base: str = ""

    async def fetch_and_store(self, remote_url: str, key: str) -> str:
        raise NotImplementedError

    def is_permanent(self, url: str) -> bool:
        base = self.public_base.rstrip("/")
        return bool(base) and (url == base or url.startswith(base + "/"))

    async def close(self) -> None:
        return None


class R2Storage(ObjectStorage):
    """
    Cloudflare R2 through the S3 API.

    Downloads with httpx (retried on transport errors), uploads with boto3
    in a worker thread so the event loop is never blocked.
    """

    def __init__(self, config: Optional[StorageConfig] = None, timeout: Optional[float] = None):
        self.config = config or get_config().storage
        self.public_base = self.config.r2_public_url.rstrip("/")
        self.timeout = timeout or get_config().poller.storage_timeout
        self._s3 = None
        self._http_client: Optional[httpx.AsyncClient] = None

    def _get_s3(self):
        if self._s3 is None:
            self._s3 = boto3.client(
                "s3",
                endpoint_url=self.config.endpoint_url,
                aws_access_key_id=self.config.r2_access_key,
                aws_secret_access_key=self.config.r2_secret_key,
                config=BotoConfig(signature_version="s3v4"),
                region_name="auto",
            )
        return self._s3

    async def _get_http(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self.timeout, follow_redirects=True)
        return self._http_client

    async def close(self) -> None:
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        retry=retry_if_exception_type(httpx.TransportError),
        reraise=True,
    )
    async def _download(self, url: str) -> tuple[bytes, str]:
        http = await self._get_http()
        response = await http.get(url)
        response.raise_for_status()
        content_type = response.headers.get("content-type", "").split(";")[0].strip()
        return response.content, content_type or "application/octet-stream"

    async def fetch_and_store(self, remote_url: str, key: str) -> str:
        data, content_type = await self._download(remote_url)
        await asyncio.to_thread(
            self._get_s3().put_object,
            Bucket=self.config.r2_bucket,
            Key=key,
            Body=data,
            ContentType=content_type,
        )
        logger.info(f"Stored {key} ({len(data) / 1024 / 1024:.1f} MB)")
        return f"{self.public_base}/{key}"


def derive_key(provider_url: str, key_prefix: str) -> str:
    """Stable key for a source URL: {prefix}/{sha1[:16]}{ext}."""
    digest = hashlib.sha1(provider_url.encode("utf-8")).hexdigest()[:16]
    ext = os.path.splitext(urlparse(provider_url).path)[1].lower()
    if not ext or len(ext) > 6:
        ext = mimetypes.guess_extension(mimetypes.guess_type(provider_url)[0] or "") or ""
    return f"{key_prefix.strip('/')}/{digest}{ext}"


class AssetRelocator:
    """
    Usage:
        relocator = AssetRelocator(R2Storage())
        url = await relocator.relocate(prediction.output_url, f"generations/{job.id}")
    """

    def __init__(self, storage: ObjectStorage, timeout: Optional[float] = None):
        self.storage = storage
        self.timeout = timeout or get_config().poller.storage_timeout

    async def relocate(self, provider_url: str, key_prefix: str) -> str:
        if not provider_url or not provider_url.startswith("http"):
            raise PipelineError(f"Nothing to relocate: {provider_url!r}", error_code="RELOCATION_FAILED")

        if self.storage.is_permanent(provider_url):
            return provider_url

        key = derive_key(provider_url, key_prefix)
        try:
            return await asyncio.wait_for(
                self.storage.fetch_and_store(provider_url, key),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError as e:
            raise PipelineError(
                f"Relocation of {provider_url} timed out after {self.timeout}s",
                error_code="RELOCATION_FAILED",
            ) from e
        except PipelineError:
            raise
        except Exception as e:
            raise PipelineError(
                f"Relocation failed: {type(e).__name__}: {e}",
                error_code="RELOCATION_FAILED",
                details={"provider_url": provider_url, "key": key},
            ) from e
