"""Posting service for publishing videos through the Late API."""

import logging
from typing import Any, Optional

import httpx

from src.models.pipeline import PublishMode
from src.utils.errors import LateAPIError, PostingError
from src.utils.retry import with_retry

logger = logging.getLogger(__name__)

LATE_API_URL = "https://getlate.dev/api/v1"

TIKTOK_SETTINGS = {
    "privacy_level": "PUBLIC_TO_EVERYONE",
    "allow_comment": True,
    "allow_duet": True,
    "allow_stitch": True,
    "content_preview_confirmed": True,
    "express_consent_given": True,
}


def build_post_body(
    media_url: str,
    caption: str,
    account_id: str,
    publish_mode: PublishMode = "now",
    scheduled_for: Optional[str] = None,
    timezone: str = "America/New_York",
    platform: str = "tiktok",
) -> dict[str, Any]:
    """Request body for ``POST /posts``."""
    platform_entry: dict[str, Any] = {"platform": platform, "accountId": account_id}
    if platform == "tiktok":
        platform_entry["platformSpecificData"] = {"tiktokSettings": dict(TIKTOK_SETTINGS)}

    body: dict[str, Any] = {
        "content": caption or "",
        "mediaItems": [{"type": "video", "url": media_url}],
        "platforms": [platform_entry],
    }
    if publish_mode == "schedule":
        if not scheduled_for:
            raise PostingError("scheduled_for is required to schedule a post")
        body["scheduledFor"] = scheduled_for
        body["timezone"] = timezone
    elif publish_mode == "draft":
        body["isDraft"] = True
    else:
        body["publishNow"] = True
    return body


class PostingService:
    """Service for creating social posts through Late."""

    def __init__(self, late_api_key: str, api_url: str = LATE_API_URL) -> None:
        """
        Initialize the PostingService.

        Args:
            late_api_key: API key for Late
            api_url: Base URL of the Late API
        """
        self.api_key = late_api_key
        self.api_url = api_url.rstrip("/")

    @with_retry(max_attempts=3, base_delay=1.0, exceptions=(httpx.ConnectError, httpx.ConnectTimeout))
    async def create_post(
        self,
        media_url: str,
        caption: str,
        account_id: str,
        publish_mode: PublishMode = "now",
        scheduled_for: Optional[str] = None,
        timezone: str = "America/New_York",
    ) -> dict[str, Any]:
        """
        Publish, schedule or draft a video post on one account.

        Args:
            media_url: Publicly readable URL of the video
            caption: Post text
            account_id: Late account id
            publish_mode: now, schedule or draft

        Returns:
            The post record returned by Late

        Raises:
            LateAPIError: If Late returns an error
            PostingError: If the API key is missing or the request is invalid
        """
        if not self.api_key:
            raise PostingError("LATE_API_KEY not set")

        body = build_post_body(
            media_url, caption, account_id, publish_mode, scheduled_for, timezone
        )
        async with httpx.AsyncClient(timeout=60.0) as client:
            response = await client.post(
                f"{self.api_url}/posts",
                json=body,
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Content-Type": "application/json",
                },
            )

        if response.status_code >= 300:
            raise LateAPIError(response.status_code, response.text)

        data = response.json()
        post = data.get("post", data) if isinstance(data, dict) else data
        logger.info(f"Created Late post on account {account_id} ({publish_mode})")
        return post
