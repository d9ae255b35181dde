from __future__ import annotations

import asyncio
import base64
import binascii
import logging
import os
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol, Sequence

import httpx

from ..errors import CapabilityError, GenerationTimeoutError, SafetyRejectionError
from .media import ImageResource, sniff_mime_type

logger = logging.getLogger(__name__)

ASPECT_SIZES = {"16:9": (1536, 1024), "9:16": (1024, 1536), "1:1": (1024, 1024)}
POLLING_SIZES = {"16:9": (1024, 576), "9:16": (576, 1024), "1:1": (1024, 1024)}
_EXTENSIONS = {"image/png": "png", "image/jpeg": "jpg", "image/webp": "webp"}


@dataclass
class GeneratedImage:
    """Either raw bytes or an externally hosted URL."""

    data: Optional[bytes] = None
    url: Optional[str] = None
    mime_type: str = "image/png"


class ImageCapability(Protocol):
    async def generate_image(
        self,
        prompt: str,
        images: Sequence[ImageResource] = (),
        aspect_ratio: str = "16:9",
    ) -> GeneratedImage:
        ...


class OpenAIImageBackend:
    """Synchronous image generation through the OpenAI images API."""

    def __init__(self, model: str = "gpt-image-1", api_key: Optional[str] = None, timeout: float = 120.0, client: Any = None) -> None:
        self.model = model
        if client is None:
            api_key = api_key or os.getenv("OPENAI_API_KEY")
            if not api_key:
                raise CapabilityError("OPENAI_API_KEY not set", capability="image")
            from openai import AsyncOpenAI

            client = AsyncOpenAI(api_key=api_key, timeout=timeout)
        self._client = client

    async def generate_image(
        self,
        prompt: str,
        images: Sequence[ImageResource] = (),
        aspect_ratio: str = "16:9",
    ) -> GeneratedImage:
        from openai import BadRequestError, OpenAIError

        width, height = ASPECT_SIZES.get(aspect_ratio, ASPECT_SIZES["16:9"])
        size = f"{width}x{height}"
        started = time.monotonic()
        try:
            if images:
                files = [
                    (f"reference_{i}.{_EXTENSIONS.get(img.mime_type, 'png')}", img.data, img.mime_type)
                    for i, img in enumerate(images, start=1)
                ]
                response = await self._client.images.edit(model=self.model, image=files, prompt=prompt, size=size)
            else:
                response = await self._client.images.generate(model=self.model, prompt=prompt, size=size)
        except BadRequestError as exc:
            if getattr(exc, "code", None) == "moderation_blocked":
                raise SafetyRejectionError("Image blocked by safety filters. Try a different description.", capability="image") from exc
            raise CapabilityError(f"Image capability rejected the request: {exc}", capability="image") from exc
        except OpenAIError as exc:
            logger.error("Image capability call failed: %s", exc)
            raise CapabilityError(f"Image capability failed: {exc}", capability="image") from exc

        logger.info("%s responded in %.2fs (%d reference images)", self.model, time.monotonic() - started, len(images))
        item = response.data[0] if response.data else None
        if item is not None and getattr(item, "b64_json", None):
            data = base64.b64decode(item.b64_json)
            return GeneratedImage(data=data, mime_type=sniff_mime_type(data))
        if item is not None and getattr(item, "url", None):
            return GeneratedImage(url=item.url)
        raise CapabilityError("No image generated by the AI model.", capability="image")


class PollingImageBackend:
    """Image service that accepts a job and is polled until the job finishes.

    ``POST {base_url}/generate`` returns a job id; ``GET {base_url}/jobs/{id}``
    reports ``status`` (``completed`` / ``failed`` / anything else while
    running). The poll loop is bounded by ``max_attempts``.
    """

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        poll_interval: float = 2.0,
        max_attempts: int = 30,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        if not base_url:
            raise CapabilityError("Image service URL is not configured", capability="image")
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key if api_key is not None else os.getenv("SB_IMAGE_SERVICE_KEY")
        self.poll_interval = poll_interval
        self.max_attempts = max_attempts
        self.timeout = timeout
        self._transport = transport

    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, headers=self._headers(), transport=self._transport)

    async def submit_job(self, client: httpx.AsyncClient, payload: Dict[str, Any]) -> str:
        try:
            logger.info("Calling image service %s/generate (%d reference images)", self.base_url, len(payload.get("image_urls", [])))
            response = await client.post(f"{self.base_url}/generate", json=payload)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            logger.error("Image service responded with HTTP %s: %s", e.response.status_code, e.response.text)
            raise CapabilityError(f"Image service returned error: {e.response.status_code}", capability="image") from e
        except httpx.RequestError as e:
            logger.error("Failed to reach image service at %s: %s", self.base_url, e)
            raise CapabilityError(f"Failed to connect to image service: {str(e)}", capability="image") from e

        job_id = data.get("job_id") or data.get("id")
        if not job_id:
            raise CapabilityError("Image service did not return a job id", capability="image")
        logger.info("Image service accepted job %s", job_id)
        return str(job_id)

    async def get_status(self, client: httpx.AsyncClient, job_id: str) -> Optional[Dict[str, Any]]:
        """Current job status, or ``None`` when the status check itself failed."""
        try:
            response = await client.get(f"{self.base_url}/jobs/{job_id}")
            response.raise_for_status()
            return response.json()
        except httpx.HTTPError as e:
            logger.warning("Status check failed for image job %s: %s", job_id, e)
            return None

    async def generate_image(
        self,
        prompt: str,
        images: Sequence[ImageResource] = (),
        aspect_ratio: str = "16:9",
    ) -> GeneratedImage:
        width, height = POLLING_SIZES.get(aspect_ratio, POLLING_SIZES["16:9"])
        payload: Dict[str, Any] = {
            "prompt": prompt,
            "width": width,
            "height": height,
            "image_urls": [img.to_data_url() for img in images],
        }
        async with self._client() as client:
            job_id = await self.submit_job(client, payload)
            for attempt in range(1, self.max_attempts + 1):
                await asyncio.sleep(self.poll_interval)
                status = await self.get_status(client, job_id)
                if status is None:
                    continue
                state = status.get("status", "processing")
                logger.debug("Image job %s status %s (attempt %d/%d)", job_id, state, attempt, self.max_attempts)
                if state == "completed":
                    return _result_from_status(job_id, status)
                if state == "failed":
                    raise CapabilityError(f"Image job failed: {status.get('error') or 'Unknown error'}", capability="image")

        raise GenerationTimeoutError(
            f"Image generation timed out after {self.max_attempts * self.poll_interval:g} seconds",
            attempts=self.max_attempts,
        )


def _result_from_status(job_id: str, status: Dict[str, Any]) -> GeneratedImage:
    items: List[Dict[str, Any]] = status.get("data") or []
    result = status.get("result") or status.get("url") or (items[0].get("url") if items else None)
    if not result:
        raise CapabilityError(f"Image job {job_id} completed without a result", capability="image")
    if result.startswith(("http://", "https://")):
        return GeneratedImage(url=result)
    try:
        data = base64.b64decode(result.split(",", 1)[-1], validate=True)
    except (binascii.Error, ValueError) as exc:
        raise CapabilityError(f"Image job {job_id} returned an unreadable result", capability="image") from exc
    return GeneratedImage(data=data, mime_type=sniff_mime_type(data))
