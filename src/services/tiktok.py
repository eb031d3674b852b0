"""TikTok source resolution through the RapidAPI downloader."""

import logging
from typing import Any, Optional
from urllib.parse import urlparse

import httpx

from src.utils.errors import SourceVideoError, TikTokAPIError
from src.utils.rate_limiter import RateLimiter
from src.utils.retry import with_retry

logger = logging.getLogger(__name__)


def is_tiktok_url(url: str) -> bool:
    host = (urlparse(url).hostname or "").lower()
    return host == "tiktok.com" or host.endswith(".tiktok.com")


def extract_play_url(data: Any) -> Optional[str]:
    """Direct video URL from a downloader response (``play``, ``data.play``, ``data.video_url``)."""
    if not isinstance(data, dict):
        return None
    if data.get("play"):
        return data["play"]
    inner = data.get("data")
    if isinstance(inner, dict):
        return inner.get("play") or inner.get("video_url")
    return None


class TikTokService:
    """Turns a TikTok page URL into a downloadable video URL."""

    def __init__(
        self,
        rapidapi_key: str,
        rapidapi_host: str,
        rate_limiter: RateLimiter,
    ) -> None:
        self.api_key = rapidapi_key
        self.host = rapidapi_host
        self.rate_limiter = rate_limiter

    @with_retry(max_attempts=3, base_delay=1.0, exceptions=(TikTokAPIError, httpx.HTTPError))
    async def get_download_url(self, tiktok_url: str) -> str:
        """
        Resolve the direct play URL of a TikTok video.

        Raises:
            TikTokAPIError: If the downloader API errors
            SourceVideoError: If the video is private or unavailable
        """
        if not self.api_key:
            raise SourceVideoError("RAPIDAPI_KEY not set")

        await self.rate_limiter.acquire()
        async with httpx.AsyncClient(timeout=30.0) as client:
            response = await client.get(
                f"https://{self.host}/api/download/video",
                params={"url": tiktok_url},
                headers={
                    "x-rapidapi-host": self.host,
                    "x-rapidapi-key": self.api_key,
                },
            )

        if response.status_code < 200 or response.status_code >= 300:
            raise TikTokAPIError(response.status_code, response.text)

        try:
            play_url = extract_play_url(response.json())
        except ValueError:
            play_url = None
        if not play_url:
            raise SourceVideoError(
                "Failed to get TikTok download URL. The video may be private or unavailable."
            )

        logger.debug(f"Resolved TikTok video {tiktok_url}")
        return play_url
