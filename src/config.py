"""Application settings from environment variables."""

from functools import lru_cache
from typing import Optional

from dotenv import load_dotenv
from pydantic_settings import BaseSettings

# Load environment variables
load_dotenv()


class Settings(BaseSettings):
    """Application settings from environment."""

    # Supabase (database + object storage)
    supabase_url: str = ""
    supabase_key: str = ""
    storage_bucket: str = "media"

    # fal.ai generation
    fal_key: str = ""
    fal_queue_url: str = "https://queue.fal.run"
    fal_motion_control_model: str = "fal-ai/kling-video/v2.6/standard/motion-control"
    fal_image_to_video_model: str = "fal-ai/kling-video/v2.6/standard/image-to-video"
    fal_poll_interval_seconds: float = 2.0

    # RapidAPI TikTok downloader
    rapidapi_key: str = ""
    rapidapi_host: str = "tiktok-api23.p.rapidapi.com"
    rapidapi_requests_per_second: int = 9

    # Late social posting API
    late_api_key: str = ""
    late_api_url: str = "https://getlate.dev/api/v1"

    # Pipeline
    default_prompt: str = (
        "A person performing the same movements as the reference video, "
        "natural lighting, smooth motion"
    )
    default_max_seconds: int = 10
    generation_timeout_seconds: float = 300.0
    render_timeout_seconds: float = 120.0
    step_timeout_seconds: float = 900.0
    max_concurrent_pipelines: int = 8

    # Signed URLs (storage signs for 7 days, cache trusts them for 6)
    signed_url_expiry_seconds: int = 7 * 24 * 60 * 60
    signed_url_ttl_seconds: float = 6 * 24 * 60 * 60
    signed_url_max_entries: int = 5000
    signed_url_resolve_timeout_seconds: float = 5.0
    step_signed_url_resolve_timeout_seconds: float = 3.0

    # Media tools
    ffmpeg_path: str = "ffmpeg"
    ffprobe_path: str = "ffprobe"
    overlay_font_path: Optional[str] = None

    # Configuration
    log_level: str = "INFO"
    max_retry_attempts: int = 3
    base_delay_seconds: float = 1.0

    model_config = {"env_file": ".env", "extra": "ignore"}


@lru_cache
def get_settings() -> Settings:
    """Get cached application settings."""
    return Settings()
