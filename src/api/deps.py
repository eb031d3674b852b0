"""Service container and FastAPI dependencies."""

import logging
from typing import Any, Optional

from fastapi import Request

from src.config import Settings, get_settings
from src.services.database import DatabaseService
from src.services.executors import StepExecutor, VideoGenerator
from src.services.fal import FalService
from src.services.job_processor import JobProcessor
from src.services.media import MediaService
from src.services.orchestrator import JobOrchestrator
from src.services.pipeline_runner import PipelineRunner
from src.services.posting import PostingService
from src.services.signed_url_cache import SignedUrlCache
from src.services.storage import StorageService
from src.services.task_queue import TaskQueue
from src.services.tiktok import TikTokService
from src.utils.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)


class ServiceContainer:
    """
    Owns every long-lived collaborator of the application.

    Process-wide state (the signed URL cache, the RapidAPI rate limiter
    and the task queue) lives here rather than at module level, so each
    app instance, and each test, gets its own.
    """

    def __init__(self, settings: Settings, supabase_client: Optional[Any] = None) -> None:
        if supabase_client is None:
            from supabase import create_client

            supabase_client = create_client(settings.supabase_url, settings.supabase_key)

        self.settings = settings
        self.db = DatabaseService(supabase_client)
        self.storage = StorageService(
            supabase_client=supabase_client,
            bucket=settings.storage_bucket,
            supabase_url=settings.supabase_url,
            signed_url_expiry_seconds=settings.signed_url_expiry_seconds,
        )
        self.url_cache = SignedUrlCache(
            signer=self.storage.sign,
            ttl_seconds=settings.signed_url_ttl_seconds,
            max_entries=settings.signed_url_max_entries,
        )
        self.rate_limiter = RateLimiter(settings.rapidapi_requests_per_second)
        self.task_queue = TaskQueue(settings.max_concurrent_pipelines)

        self.fal = FalService(
            fal_key=settings.fal_key,
            queue_url=settings.fal_queue_url,
            poll_interval=settings.fal_poll_interval_seconds,
        )
        self.tiktok = TikTokService(
            rapidapi_key=settings.rapidapi_key,
            rapidapi_host=settings.rapidapi_host,
            rate_limiter=self.rate_limiter,
        )
        self.media = MediaService(
            ffmpeg_path=settings.ffmpeg_path,
            ffprobe_path=settings.ffprobe_path,
            render_timeout=settings.render_timeout_seconds,
            font_path=settings.overlay_font_path,
        )
        self.posting = PostingService(
            late_api_key=settings.late_api_key, api_url=settings.late_api_url
        )

        self.generator = VideoGenerator(
            db=self.db,
            storage=self.storage,
            url_cache=self.url_cache,
            fal=self.fal,
            tiktok=self.tiktok,
            media=self.media,
            motion_control_model=settings.fal_motion_control_model,
            image_to_video_model=settings.fal_image_to_video_model,
            default_prompt=settings.default_prompt,
            timeout=settings.generation_timeout_seconds,
        )
        self.executor = StepExecutor(
            generator=self.generator, storage=self.storage, media=self.media, db=self.db
        )
        self.runner = PipelineRunner(
            db=self.db, executor=self.executor, step_timeout=settings.step_timeout_seconds
        )
        self.processor = JobProcessor(db=self.db, generator=self.generator)
        self.orchestrator = JobOrchestrator(
            db=self.db,
            storage=self.storage,
            url_cache=self.url_cache,
            runner=self.runner,
            processor=self.processor,
            posting=self.posting,
            task_queue=self.task_queue,
            default_max_seconds=settings.default_max_seconds,
            resolve_timeout=settings.signed_url_resolve_timeout_seconds,
            step_resolve_timeout=settings.step_signed_url_resolve_timeout_seconds,
        )

    async def startup(self) -> None:
        """Fail jobs a previous process left running and requeue waiting ones."""
        await self.orchestrator.reconcile_interrupted_jobs()

    async def shutdown(self) -> None:
        """Let in-flight pipelines reach a terminal state."""
        pending = self.task_queue.pending_count()
        if pending:
            logger.info(f"Waiting for {pending} background tasks")
        await self.task_queue.drain()


def create_container(supabase_client: Optional[Any] = None) -> ServiceContainer:
    """
    Create a ServiceContainer using application settings.

    Returns:
        Configured ServiceContainer instance
    """
    return ServiceContainer(get_settings(), supabase_client=supabase_client)


def get_container(request: Request) -> ServiceContainer:
    """Dependency for the application's service container."""
    return request.app.state.container


def get_orchestrator(request: Request) -> JobOrchestrator:
    """Dependency for the job orchestrator."""
    return get_container(request).orchestrator
