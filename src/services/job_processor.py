"""Processor for plain single-capability jobs."""

import logging
from typing import Any, Optional

from src.models.job import JobStatus, utcnow
from src.models.pipeline import VideoGenConfig
from src.services.database import DatabaseService
from src.services.executors import StepContext, VideoGenerator
from src.services.pipeline_runner import error_message
from src.utils.errors import DatabaseError
from src.utils.retry import with_retry

logger = logging.getLogger(__name__)


class JobProcessor:
    """Runs one motion-control generation for a queued Job."""

    def __init__(self, db: DatabaseService, generator: VideoGenerator) -> None:
        self.db = db
        self.generator = generator

    async def run(self, job_id: str) -> Optional[JobStatus]:
        """
        Process a queued job to ``completed`` or ``failed``.

        Returns:
            The terminal status this run reached, None when the job was
            missing or not queued
        """
        job = await self.db.get_job(job_id)
        if job is None:
            logger.error(f"Job {job_id} not found")
            return None
        if job.status != "queued":
            logger.info(f"Job {job_id} is {job.status}, not processing it")
            return None

        claimed = await self.db.update_job(
            job_id, only_if_status=["queued"], status="processing", step="Starting..."
        )
        if claimed is None:
            return None

        async def on_progress(message: str) -> None:
            await self.db.update_job(job_id, step=message)

        context = StepContext(
            job_id=job_id,
            input_url=job.source_url,
            on_progress=on_progress,
            template_job=False,
        )
        config = VideoGenConfig(
            mode="motion-control",
            model_id=job.model_id,
            image_url=job.image_url,
            prompt=job.custom_prompt,
            max_seconds=job.max_seconds,
        )

        try:
            video_url = await self.generator.prepare_source(
                job.source_url, job.max_seconds, on_progress
            )
            output_url = await self.generator.generate(config, context, video_url, on_progress)
        except Exception as e:
            logger.error(f"Job {job_id} failed: {e}")
            return await self._finish(
                job_id, status="failed", step="Failed", error=error_message(e)
            )

        finished = await self._finish(
            job_id, status="completed", step="Done!", output_url=output_url, completed_at=utcnow()
        )
        if finished:
            logger.info(f"Job {job_id} completed")
        return finished

    @with_retry(max_attempts=3, base_delay=0.5, exceptions=(DatabaseError,))
    async def _finish(self, job_id: str, **fields: Any) -> Optional[JobStatus]:
        updated = await self.db.update_job(job_id, only_if_status=["processing"], **fields)
        if updated is None:
            logger.warning(f"Job {job_id} was settled elsewhere")
            return None
        return updated.status
