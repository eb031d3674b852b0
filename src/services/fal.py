"""Generation service for fal.ai queue-based video models."""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

import httpx

from src.utils.errors import FalAPIError, GenerationError, GenerationTimeoutError

logger = logging.getLogger(__name__)

# fal queue endpoint
FAL_QUEUE_URL = "https://queue.fal.run"

QueueUpdateCallback = Callable[[str, Optional[int]], Awaitable[None]]


@dataclass(frozen=True)
class FalHandle:
    """Reference to a submitted fal request."""

    request_id: str
    status_url: str
    response_url: str


def extract_video_url(result: dict[str, Any]) -> str:
    """
    Pull the output video URL out of a fal result payload.

    Raises:
        GenerationError: If the payload has no video URL
    """
    payload = result.get("data") if isinstance(result.get("data"), dict) else result
    video = payload.get("video") if isinstance(payload, dict) else None
    if isinstance(video, dict) and video.get("url"):
        return video["url"]
    if isinstance(video, str) and video:
        return video
    raise GenerationError("No video URL in API response")


class FalService:
    """Submit generation requests to fal.ai and wait for their results."""

    def __init__(
        self,
        fal_key: str,
        queue_url: str = FAL_QUEUE_URL,
        poll_interval: float = 2.0,
    ) -> None:
        """
        Initialize the FalService.

        Args:
            fal_key: API key for fal.ai
            queue_url: Base URL of the fal queue API
            poll_interval: Seconds between status polls
        """
        self.fal_key = fal_key
        self.queue_url = queue_url.rstrip("/")
        self.poll_interval = poll_interval

    def _headers(self) -> dict[str, str]:
        if not self.fal_key:
            raise GenerationError("FAL_KEY not set")
        return {
            "Authorization": f"Key {self.fal_key}",
            "Content-Type": "application/json",
        }

    async def submit(self, client: httpx.AsyncClient, model: str, inputs: dict[str, Any]) -> FalHandle:
        """
        Enqueue a request for ``model``.

        Raises:
            FalAPIError: If fal rejects the request
        """
        response = await client.post(f"{self.queue_url}/{model}", json=inputs)
        if response.status_code >= 300:
            raise FalAPIError(response.status_code, response.text)

        data = response.json()
        request_id = data.get("request_id")
        if not request_id:
            raise GenerationError("fal did not return a request_id")

        base = f"{self.queue_url}/{model}/requests/{request_id}"
        return FalHandle(
            request_id=request_id,
            status_url=data.get("status_url") or f"{base}/status",
            response_url=data.get("response_url") or base,
        )

    async def await_result(
        self,
        client: httpx.AsyncClient,
        handle: FalHandle,
        on_queue_update: Optional[QueueUpdateCallback] = None,
    ) -> dict[str, Any]:
        """
        Poll a request until fal reports completion, then fetch its result.

        Raises:
            FalAPIError: If status or result endpoints error
            GenerationError: If the request failed upstream
        """
        last_status: Optional[str] = None
        while True:
            response = await client.get(handle.status_url)
            if response.status_code >= 300:
                raise FalAPIError(response.status_code, response.text)

            data = response.json()
            status = data.get("status")
            position = data.get("queue_position")

            if status == "COMPLETED":
                if data.get("error"):
                    raise GenerationError(f"Generation failed: {data['error']}")
                break
            if status in ("FAILED", "ERROR", "CANCELLED"):
                raise GenerationError(f"Generation failed: {data.get('error') or status}")

            if on_queue_update and (status != last_status or status == "IN_QUEUE"):
                await on_queue_update(status, position)
            last_status = status
            await asyncio.sleep(self.poll_interval)

        result = await client.get(handle.response_url)
        if result.status_code >= 300:
            raise FalAPIError(result.status_code, result.text)
        return result.json()

    async def run(
        self,
        model: str,
        inputs: dict[str, Any],
        timeout: float,
        on_queue_update: Optional[QueueUpdateCallback] = None,
    ) -> dict[str, Any]:
        """
        Submit and wait, bounded by ``timeout`` seconds.

        Not retried: a failure or timeout is reported to the caller.

        Raises:
            GenerationTimeoutError: If the budget is exhausted
            GenerationError: On any upstream failure
        """

        async def _submit_and_wait() -> dict[str, Any]:
            async with httpx.AsyncClient(headers=self._headers(), timeout=60.0) as client:
                handle = await self.submit(client, model, inputs)
                logger.info(f"Submitted fal request {handle.request_id} to {model}")
                return await self.await_result(client, handle, on_queue_update)

        try:
            return await asyncio.wait_for(_submit_and_wait(), timeout=timeout)
        except asyncio.TimeoutError:
            raise GenerationTimeoutError(model, timeout)
        except httpx.HTTPError as e:
            raise GenerationError(f"HTTP error during generation: {e}")
