"""Job and batch orchestration: creation, fan-out, aggregation and publishing."""

import asyncio
import logging
import random
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx
from pydantic import ValidationError

from src.models.job import (
    ACTIVE_BATCH_STATUSES,
    ACTIVE_JOB_STATUSES,
    TERMINAL_BATCH_STATUSES,
    Batch,
    ImageSelectionMode,
    Job,
    JobStatus,
    derive_batch_status,
)
from src.models.persona import Persona, PersonaImage
from src.models.pipeline import (
    BatchImage,
    BatchVideoGenerationStep,
    MasterConfig,
    PipelineBatch,
    PostResult,
    PostStatus,
    Step,
    StepResult,
    TemplateJob,
    VideoGenerationStep,
    enabled_steps,
    needs_source_video,
)
from src.services.database import DatabaseService
from src.services.job_processor import JobProcessor
from src.services.pipeline_runner import PipelineRunner, error_message
from src.services.posting import PostingService
from src.services.signed_url_cache import SignedUrlCache
from src.services.storage import StorageService
from src.services.task_queue import TaskQueue
from src.services.tiktok import is_tiktok_url
from src.utils.errors import (
    ConflictError,
    ContentOpsError,
    DatabaseError,
    InputValidationError,
    NotFoundError,
)

logger = logging.getLogger(__name__)

ACTIVE_POLL_SECONDS = 3
IDLE_POLL_SECONDS = 30
INTERRUPTED_MESSAGE = "Interrupted before completion"


def post_ids_for(posted_accounts: Dict[str, str]) -> List[str]:
    return [post_id for post_id in posted_accounts.values() if post_id]


def poll_after_seconds(statuses: List[str]) -> int:
    """How soon a client should poll again given the statuses it is showing."""
    active = ACTIVE_JOB_STATUSES | ACTIVE_BATCH_STATUSES
    return ACTIVE_POLL_SECONDS if any(s in active for s in statuses) else IDLE_POLL_SECONDS


def validate_pipeline(name: str, pipeline: List[Step], source_url: Optional[str]) -> None:
    """
    Reject a template request before anything is persisted.

    Raises:
        InputValidationError: On a missing name, an empty pipeline, no
            enabled steps, or a missing source video the pipeline needs
    """
    if not name or not name.strip():
        raise InputValidationError("Name is required")
    if not pipeline:
        raise InputValidationError("Pipeline must contain at least one step")
    if not enabled_steps(pipeline):
        raise InputValidationError("Pipeline must have at least one enabled step")
    if needs_source_video(pipeline) and not source_url:
        raise InputValidationError("A source video is required for this pipeline")


def video_source_for(url: Optional[str]) -> Optional[str]:
    if not url:
        return None
    return "tiktok" if is_tiktok_url(url) else "upload"


def bake_persona(pipeline: List[Step], persona: Persona) -> List[Step]:
    """
    Copy a pipeline with one persona substituted into its generation steps.

    ``video-generation`` steps get the persona's primary image;
    ``batch-video-generation`` steps fan out over all of its images.
    """
    primary = persona.primary_image
    if primary is None:
        raise InputValidationError(f"Model {persona.name} has no images")

    baked: List[Step] = []
    for step in pipeline:
        if isinstance(step, VideoGenerationStep):
            config = step.config.model_copy(
                update={
                    "model_id": persona.id,
                    "image_id": primary.id,
                    "image_url": primary.gcs_url,
                }
            )
            step = step.model_copy(update={"config": config})
        elif isinstance(step, BatchVideoGenerationStep):
            images = [BatchImage(image_id=img.id, image_url=img.gcs_url) for img in persona.images]
            step = step.model_copy(update={"config": step.config.model_copy(update={"images": images})})
        else:
            step = step.model_copy(deep=True)
        baked.append(step)
    return baked


class JobOrchestrator:
    """
    Entry point for every job-creating and job-reading operation.

    Creation validates, persists rows in their initial state and submits
    execution to the task queue; it never waits for execution. Children
    of a batch report their terminal state to the parent through the
    atomic counter increment, and the parent status is derived from the
    counters that increment returned.
    """

    def __init__(
        self,
        db: DatabaseService,
        storage: StorageService,
        url_cache: SignedUrlCache,
        runner: PipelineRunner,
        processor: JobProcessor,
        posting: PostingService,
        task_queue: TaskQueue,
        default_max_seconds: int = 10,
        resolve_timeout: float = 5.0,
        step_resolve_timeout: float = 3.0,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.db = db
        self.storage = storage
        self.url_cache = url_cache
        self.runner = runner
        self.processor = processor
        self.posting = posting
        self.task_queue = task_queue
        self.default_max_seconds = default_max_seconds
        self.resolve_timeout = resolve_timeout
        self.step_resolve_timeout = step_resolve_timeout
        self._rng = rng or random.Random()

    # ==================== PLAIN JOBS ====================

    async def create_job(
        self,
        image_url: str,
        tiktok_url: Optional[str] = None,
        video_url: Optional[str] = None,
        custom_prompt: Optional[str] = None,
        max_seconds: Optional[int] = None,
        model_id: Optional[str] = None,
    ) -> Job:
        """
        Persist a queued motion-control job and start it in the background.

        Raises:
            InputValidationError: If the source video or image is missing
        """
        if not tiktok_url and not video_url:
            raise InputValidationError("A TikTok URL or uploaded video is required")
        if not image_url:
            raise InputValidationError("Model image URL is required")

        try:
            job = Job(
                tiktok_url=tiktok_url,
                video_url=video_url,
                video_source="upload" if video_url else "tiktok",
                image_url=image_url,
                custom_prompt=custom_prompt,
                max_seconds=max_seconds or self.default_max_seconds,
                model_id=model_id,
            )
        except ValidationError as e:
            raise InputValidationError(str(e))

        job = await self.db.create_job(job)
        self.task_queue.submit(f"job:{job.id}", lambda: self._run_job(job.id, None))
        return job

    async def _select_images(
        self,
        model_id: Optional[str],
        mode: ImageSelectionMode,
        selected_image_ids: List[str],
    ) -> List[PersonaImage]:
        if mode == "specific":
            if not selected_image_ids:
                raise InputValidationError("Select at least one image")
            images = await self.db.get_images_by_ids(selected_image_ids)
        else:
            if not model_id:
                raise InputValidationError("A model is required for model image selection")
            persona = await self.db.get_persona(model_id)
            if persona is None:
                raise InputValidationError(f"Model {model_id} not found")
            images = persona.images
        if not images:
            raise InputValidationError("No images available for this batch")
        return images

    async def create_batch(
        self,
        name: str,
        source_urls: List[str],
        model_id: Optional[str] = None,
        image_selection_mode: ImageSelectionMode = "model",
        selected_image_ids: Optional[List[str]] = None,
        custom_prompt: Optional[str] = None,
        max_seconds: Optional[int] = None,
    ) -> Batch:
        """
        Fan one request out into a batch of plain jobs.

        Images are shuffled once and then assigned round-robin, so every
        image is used before any repeats.

        Raises:
            InputValidationError: If there are no sources or no images
        """
        sources = [url.strip() for url in source_urls if url and url.strip()]
        if not name or not name.strip():
            raise InputValidationError("Batch name is required")
        if not sources:
            raise InputValidationError("At least one source video is required")

        selected_image_ids = selected_image_ids or []
        images = await self._select_images(model_id, image_selection_mode, selected_image_ids)
        shuffled = list(images)
        self._rng.shuffle(shuffled)

        batch = await self.db.create_batch(
            Batch(
                name=name.strip(),
                model_id=model_id,
                image_selection_mode=image_selection_mode,
                selected_image_ids=selected_image_ids,
                total_jobs=len(sources),
            )
        )

        jobs: List[Job] = []
        for index, source in enumerate(sources):
            image = shuffled[index % len(shuffled)]
            source_kind = video_source_for(source)
            jobs.append(
                await self.db.create_job(
                    Job(
                        tiktok_url=source if source_kind == "tiktok" else None,
                        video_url=source if source_kind == "upload" else None,
                        video_source=source_kind,
                        image_url=image.gcs_url,
                        image_name=image.filename or None,
                        custom_prompt=custom_prompt,
                        max_seconds=max_seconds or self.default_max_seconds,
                        batch_id=batch.id,
                        model_id=model_id or image.model_id,
                    )
                )
            )

        for job in jobs:
            self.task_queue.submit(f"job:{job.id}", lambda job_id=job.id: self._run_job(job_id, batch.id))
        logger.info(f"Batch {batch.id}: started {len(jobs)} jobs over {len(shuffled)} images")
        return batch

    async def _run_job(self, job_id: str, batch_id: Optional[str]) -> Optional[JobStatus]:
        try:
            if batch_id:
                await self.db.set_batch_status(batch_id, "processing")
            status = await self.processor.run(job_id)
        except Exception as e:
            logger.exception(f"Job {job_id} crashed: {e}")
            status = await self._fail_crashed(self.db.update_job, job_id, e)
        if batch_id and status is not None:
            await self._record_batch_outcome(batch_id, status)
        return status

    async def _fail_crashed(
        self, update: Callable[..., Awaitable[Any]], job_id: str, error: Exception
    ) -> Optional[JobStatus]:
        """
        Fail a job whose run raised before writing its own terminal status.

        Returns:
            ``failed`` when this call settled the job, None when the row
            was already terminal or could not be written
        """
        try:
            updated = await update(
                job_id,
                only_if_status=list(ACTIVE_JOB_STATUSES),
                status="failed",
                step="Failed",
                error=error_message(error),
            )
        except DatabaseError as e:
            logger.error(f"Could not mark job {job_id} failed: {e}")
            return None
        return "failed" if updated is not None else None

    async def _record_batch_outcome(self, batch_id: str, status: JobStatus) -> Batch:
        batch = await self.db.increment_batch_counters(
            batch_id,
            completed=1 if status == "completed" else 0,
            failed=1 if status == "failed" else 0,
        )
        aggregate = derive_batch_status(batch.total_jobs, batch.completed_jobs, batch.failed_jobs)
        done = aggregate in TERMINAL_BATCH_STATUSES
        await self.db.set_batch_status(batch_id, aggregate, completed=done)
        if done:
            logger.info(
                f"Batch {batch_id} finished {aggregate}: "
                f"{batch.completed_jobs} completed, {batch.failed_jobs} failed"
            )
        return batch

    # ==================== TEMPLATE JOBS ====================

    async def create_template_job(
        self,
        name: str,
        pipeline: List[Step],
        tiktok_url: Optional[str] = None,
        video_url: Optional[str] = None,
        model_id: Optional[str] = None,
    ) -> TemplateJob:
        """
        Persist a queued pipeline job and start it in the background.

        Raises:
            InputValidationError: If the request is incomplete
        """
        source_url = video_url or tiktok_url
        validate_pipeline(name, pipeline, source_url)

        job = await self.db.create_template_job(
            TemplateJob(
                name=name.strip(),
                pipeline=pipeline,
                video_source=video_source_for(source_url),
                tiktok_url=tiktok_url,
                video_url=video_url,
                total_steps=len(enabled_steps(pipeline)),
                model_id=model_id,
            )
        )
        self._submit_template_job(job)
        return job

    def _submit_template_job(self, job: TemplateJob) -> None:
        self.task_queue.submit(
            f"template:{job.id}", lambda: self._run_template_job(job.id, job.pipeline_batch_id)
        )

    async def _run_template_job(
        self, job_id: str, pipeline_batch_id: Optional[str]
    ) -> Optional[JobStatus]:
        try:
            if pipeline_batch_id:
                await self.db.set_pipeline_batch_status(pipeline_batch_id, "processing")
            status = await self.runner.run(job_id)
        except Exception as e:
            logger.exception(f"Template job {job_id} crashed: {e}")
            status = await self._fail_crashed(self.db.update_template_job, job_id, e)
        if pipeline_batch_id and status is not None:
            await self._record_pipeline_outcome(pipeline_batch_id, status)
            if status == "completed":
                await self._auto_post(pipeline_batch_id, job_id)
        return status

    async def _record_pipeline_outcome(self, batch_id: str, status: JobStatus) -> PipelineBatch:
        batch = await self.db.increment_pipeline_batch_counters(
            batch_id,
            completed=1 if status == "completed" else 0,
            failed=1 if status == "failed" else 0,
        )
        await self._apply_pipeline_status(batch)
        return batch

    async def _apply_pipeline_status(self, batch: PipelineBatch, reopen: bool = False) -> None:
        aggregate = derive_batch_status(batch.total_jobs, batch.completed_jobs, batch.failed_jobs)
        done = aggregate in TERMINAL_BATCH_STATUSES
        await self.db.set_pipeline_batch_status(batch.id, aggregate, completed=done, reopen=reopen)
        if done:
            logger.info(f"Pipeline batch {batch.id} finished {aggregate}")

    async def create_master_batch(
        self,
        name: str,
        pipeline: List[Step],
        model_ids: List[str],
        master_config: Optional[MasterConfig] = None,
        tiktok_url: Optional[str] = None,
        video_url: Optional[str] = None,
    ) -> PipelineBatch:
        """
        Run one pipeline once per persona.

        Raises:
            InputValidationError: If no models are selected, a model is
                unknown or has no images, or the pipeline is invalid
        """
        source_url = video_url or tiktok_url
        validate_pipeline(name, pipeline, source_url)
        unique_ids = list(dict.fromkeys(model_ids))
        if not unique_ids:
            raise InputValidationError("Select at least one model")

        personas: List[Persona] = []
        for model_id in unique_ids:
            persona = await self.db.get_persona(model_id)
            if persona is None:
                raise InputValidationError(f"Model {model_id} not found")
            personas.append(persona)
        pipelines = [bake_persona(pipeline, persona) for persona in personas]

        batch = await self.db.create_pipeline_batch(
            PipelineBatch(
                name=name.strip(),
                pipeline=pipeline,
                model_ids=unique_ids,
                total_jobs=len(personas),
                master_config=master_config or MasterConfig(),
            )
        )

        jobs: List[TemplateJob] = []
        for persona, baked in zip(personas, pipelines):
            jobs.append(
                await self.db.create_template_job(
                    TemplateJob(
                        name=f"{batch.name} - {persona.name}",
                        pipeline=baked,
                        video_source=video_source_for(source_url),
                        tiktok_url=tiktok_url,
                        video_url=video_url,
                        total_steps=len(enabled_steps(baked)),
                        pipeline_batch_id=batch.id,
                        model_id=persona.id,
                    )
                )
            )

        for job in jobs:
            self._submit_template_job(job)
        logger.info(f"Pipeline batch {batch.id}: started {len(jobs)} template jobs")
        return batch

    async def regenerate(
        self,
        job_id: str,
        from_step_id: Optional[str] = None,
        pipeline: Optional[List[Step]] = None,
    ) -> TemplateJob:
        """
        Start a new attempt of a finished template job.

        The original row is left untouched. The new attempt reuses the
        original's results for every enabled step before ``from_step_id``
        and executes the rest; it joins the original's master batch, if
        any, as an additional child.

        Raises:
            NotFoundError: If the job does not exist
            ConflictError: If the job is still running
            InputValidationError: If the step or edited pipeline is invalid
        """
        original = await self._require_template_job(job_id)
        if not original.is_terminal:
            raise ConflictError("Only finished jobs can be regenerated")

        new_pipeline = pipeline if pipeline is not None else original.pipeline
        validate_pipeline(original.name, new_pipeline, original.source_url)
        steps = enabled_steps(new_pipeline)

        seeded: List[StepResult] = []
        if from_step_id is not None:
            if from_step_id not in {step.id for step in steps}:
                raise InputValidationError(f"Step {from_step_id} is not an enabled step")
            previous = {result.step_id: result for result in original.step_results}
            for step in steps:
                if step.id == from_step_id:
                    break
                if step.id not in previous:
                    raise InputValidationError(
                        f"Step {step.display_label} has no result to reuse; regenerate from it instead"
                    )
                if previous[step.id].type != step.type:
                    raise InputValidationError(
                        f"Step {step.display_label} changed type; regenerate from it instead"
                    )
                seeded.append(previous[step.id])

        attempt = TemplateJob(
            name=original.name,
            pipeline=new_pipeline,
            video_source=original.video_source,
            tiktok_url=original.tiktok_url,
            video_url=original.video_url,
            total_steps=len(steps),
            current_step=len(seeded),
            step_results=seeded,
            pipeline_batch_id=original.pipeline_batch_id,
            model_id=original.model_id,
            regenerated_from=original.id,
            caption_override=original.caption_override,
            publish_mode_override=original.publish_mode_override,
            scheduled_for_override=original.scheduled_for_override,
            timezone_override=original.timezone_override,
        )

        attempt = await self.db.create_template_job(attempt)
        if original.pipeline_batch_id:
            counted = False
            try:
                batch = await self.db.increment_pipeline_batch_counters(
                    original.pipeline_batch_id, total=1
                )
                counted = True
                await self._apply_pipeline_status(batch, reopen=True)
            except ContentOpsError as e:
                logger.error(f"Could not add attempt {attempt.id} to its master batch: {e}")
                if counted:
                    await self.db.increment_pipeline_batch_counters(
                        original.pipeline_batch_id, total=-1
                    )
                await self.db.delete_template_job(attempt.id)
                raise

        logger.info(
            f"Regenerating template job {original.id} as {attempt.id} "
            f"({len(seeded)} steps reused)"
        )
        self._submit_template_job(attempt)
        return attempt

    async def set_post_status(self, job_id: str, post_status: PostStatus) -> TemplateJob:
        """
        Record the review decision for a finished template job.

        Raises:
            NotFoundError: If the job does not exist
            ConflictError: If the job has not finished
        """
        job = await self._require_template_job(job_id)
        if not job.is_terminal:
            raise ConflictError("Only finished jobs can be reviewed")
        updated = await self.db.update_template_job(job_id, post_status=post_status)
        return updated or job

    async def delete_template_job(self, job_id: str) -> None:
        """
        Delete a template job that has not started.

        Raises:
            NotFoundError: If the job does not exist
            ConflictError: If the job has already started
        """
        job = await self._require_template_job(job_id)
        if job.status != "queued":
            raise ConflictError(f"Cannot delete a {job.status} job")
        if not await self.db.delete_template_job(job_id, only_if_status="queued"):
            raise ConflictError("Job started before it could be deleted")

        if job.pipeline_batch_id:
            batch = await self.db.increment_pipeline_batch_counters(job.pipeline_batch_id, total=-1)
            await self._apply_pipeline_status(batch)
        logger.info(f"Deleted queued template job {job_id}")

    async def _require_template_job(self, job_id: str) -> TemplateJob:
        job = await self.db.get_template_job(job_id)
        if job is None:
            raise NotFoundError(f"Template job {job_id} not found")
        return job

    # ==================== PUBLISHING ====================

    async def post_jobs(self, batch_id: str, job_ids: Optional[List[str]] = None) -> List[PostResult]:
        """
        Publish completed children of a master batch through Late.

        Per-job problems are reported in the results, never raised.

        Raises:
            NotFoundError: If the batch does not exist
        """
        batch = await self.db.get_pipeline_batch(batch_id)
        if batch is None:
            raise NotFoundError(f"Pipeline batch {batch_id} not found")

        jobs = await self.db.get_template_jobs_by_batch_id(batch_id)
        if job_ids is not None:
            wanted = set(job_ids)
            jobs = [job for job in jobs if job.id in wanted]
            missing = wanted - {job.id for job in jobs}
            results = [PostResult(job_id=job_id, error="Job not in batch") for job_id in sorted(missing)]
        else:
            results = []

        for job in jobs:
            results.append(await self._post_job(job, batch.master_config))
        return results

    async def _post_job(self, job: TemplateJob, config: MasterConfig) -> PostResult:
        if job.status != "completed" or not job.output_url:
            return PostResult(job_id=job.id, error="Job has not completed")

        posted = dict(job.posted_accounts)
        try:
            account_ids = list(config.account_ids)
            if not account_ids and job.model_id:
                account_ids = await self.db.get_account_ids_for_model(job.model_id)
            if not account_ids:
                return PostResult(job_id=job.id, error="No accounts mapped to this model")

            media_url = job.output_url
            if self.storage.is_owned(media_url):
                media_url = await self.url_cache.get(media_url)

            caption = job.caption_override if job.caption_override is not None else config.caption
            for account_id in account_ids:
                if account_id in posted:
                    continue
                post = await self.posting.create_post(
                    media_url=media_url,
                    caption=caption,
                    account_id=account_id,
                    publish_mode=job.publish_mode_override or config.publish_mode,
                    scheduled_for=job.scheduled_for_override or config.scheduled_for,
                    timezone=job.timezone_override or config.timezone,
                )
                post_id = (post.get("_id") or post.get("id")) if isinstance(post, dict) else None
                posted[account_id] = str(post_id or "")
                await self.db.update_template_job(job.id, posted_accounts=dict(posted))
        except (ContentOpsError, httpx.HTTPError) as e:
            logger.error(f"Posting template job {job.id} failed: {e}")
            return PostResult(job_id=job.id, error=str(e), post_ids=post_ids_for(posted))

        await self.db.update_template_job(job.id, post_status="posted")
        logger.info(f"Posted template job {job.id} to {len(account_ids)} accounts")
        return PostResult(job_id=job.id, posted=True, post_ids=post_ids_for(posted))

    async def _auto_post(self, batch_id: str, job_id: str) -> None:
        batch = await self.db.get_pipeline_batch(batch_id)
        if batch is None or not batch.master_config.auto_post:
            return
        [result] = await self.post_jobs(batch_id, [job_id])
        if not result.posted:
            logger.warning(f"Auto-post of template job {job_id} failed: {result.error}")

    # ==================== RECONCILIATION ====================

    async def reconcile_interrupted_jobs(self) -> int:
        """
        Settle rows a previous process left behind; run once at startup.

        Nothing is executing yet when this runs, so every ``processing``
        row belongs to a dead task and is failed. ``queued`` rows were
        still waiting for a queue slot and are submitted again.

        Returns:
            Number of jobs moved to ``failed``
        """
        count = 0
        for job in await self.db.get_jobs_by_status("processing"):
            updated = await self.db.update_job(
                job.id,
                only_if_status=["processing"],
                status="failed",
                step="Failed",
                error=INTERRUPTED_MESSAGE,
            )
            if updated is None:
                continue
            count += 1
            if job.batch_id:
                await self._record_batch_outcome(job.batch_id, "failed")

        for template_job in await self.db.get_template_jobs_by_status("processing"):
            updated_template = await self.db.update_template_job(
                template_job.id,
                only_if_status=["processing"],
                status="failed",
                step="Failed",
                error=INTERRUPTED_MESSAGE,
            )
            if updated_template is None:
                continue
            count += 1
            if template_job.pipeline_batch_id:
                await self._record_pipeline_outcome(template_job.pipeline_batch_id, "failed")

        queued_jobs = await self.db.get_jobs_by_status("queued")
        for job in queued_jobs:
            self.task_queue.submit(
                f"job:{job.id}",
                lambda job_id=job.id, batch_id=job.batch_id: self._run_job(job_id, batch_id),
            )
        queued_templates = await self.db.get_template_jobs_by_status("queued")
        for template_job in queued_templates:
            self._submit_template_job(template_job)

        if count:
            logger.warning(f"Marked {count} interrupted jobs as failed")
        if queued_jobs or queued_templates:
            logger.info(f"Resubmitted {len(queued_jobs) + len(queued_templates)} queued jobs")
        return count

    # ==================== READ PROJECTIONS ====================

    async def _signed(self, ref: Optional[str], timeout: float) -> Optional[str]:
        if not ref or not self.storage.is_owned(ref):
            return ref
        return await self.url_cache.resolve(ref, timeout=timeout)

    async def job_view(self, job: Job) -> Dict[str, Any]:
        view = job.model_dump(mode="json")
        view["signed_url"] = (
            await self._signed(job.output_url, self.resolve_timeout)
            if job.status == "completed"
            else None
        )
        return view

    async def template_job_view(self, job: TemplateJob) -> Dict[str, Any]:
        """Row dump with display URLs on the output, each step result and each batch item."""
        view = job.model_dump(mode="json")
        targets: List[tuple[Dict[str, Any], Optional[str], float]] = [
            (view, job.output_url if job.status == "completed" else None, self.resolve_timeout)
        ]
        for result, result_view in zip(job.step_results, view["step_results"]):
            targets.append((result_view, result.output_url, self.step_resolve_timeout))
            for item, item_view in zip(result.items, result_view["items"]):
                targets.append((item_view, item.output_url, self.step_resolve_timeout))

        signed = await asyncio.gather(
            *(self._signed(ref, timeout) for _, ref, timeout in targets)
        )
        for (target, _, _), url in zip(targets, signed):
            target["signed_url"] = url
        return view

    async def get_job(self, job_id: str) -> Dict[str, Any]:
        job = await self.db.get_job(job_id)
        if job is None:
            raise NotFoundError(f"Job {job_id} not found")
        view = await self.job_view(job)
        view["poll_after_seconds"] = poll_after_seconds([job.status])
        return view

    async def list_jobs(self, limit: int = 100) -> Dict[str, Any]:
        jobs = await self.db.list_jobs(limit)
        return {
            "jobs": await asyncio.gather(*(self.job_view(job) for job in jobs)),
            "poll_after_seconds": poll_after_seconds([job.status for job in jobs]),
        }

    async def get_batch(self, batch_id: str) -> Dict[str, Any]:
        batch = await self.db.get_batch(batch_id)
        if batch is None:
            raise NotFoundError(f"Batch {batch_id} not found")
        jobs = await self.db.get_jobs_by_batch_id(batch_id)
        view = batch.model_dump(mode="json")
        view["progress"] = batch.progress
        view["jobs"] = await asyncio.gather(*(self.job_view(job) for job in jobs))
        view["poll_after_seconds"] = poll_after_seconds([batch.status] + [job.status for job in jobs])
        return view

    async def get_template_job(self, job_id: str) -> Dict[str, Any]:
        job = await self._require_template_job(job_id)
        view = await self.template_job_view(job)
        view["poll_after_seconds"] = poll_after_seconds([job.status])
        return view

    async def list_template_jobs(self, limit: int = 100) -> Dict[str, Any]:
        jobs = await self.db.list_template_jobs(limit)
        return {
            "jobs": await asyncio.gather(*(self.template_job_view(job) for job in jobs)),
            "poll_after_seconds": poll_after_seconds([job.status for job in jobs]),
        }

    async def get_pipeline_batch(self, batch_id: str) -> Dict[str, Any]:
        batch = await self.db.get_pipeline_batch(batch_id)
        if batch is None:
            raise NotFoundError(f"Pipeline batch {batch_id} not found")
        jobs = await self.db.get_template_jobs_by_batch_id(batch_id)
        view = batch.model_dump(mode="json")
        view["progress"] = batch.progress
        view["jobs"] = await asyncio.gather(*(self.template_job_view(job) for job in jobs))
        view["poll_after_seconds"] = poll_after_seconds([batch.status] + [job.status for job in jobs])
        return view
