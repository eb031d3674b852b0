"""Step executors: one media reference in, one media reference out."""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, List, Optional
from urllib.parse import urlparse

from src.models.pipeline import (
    AttachVideoConfig,
    AttachVideoStep,
    BatchItemResult,
    BatchVideoGenConfig,
    BatchVideoGenerationStep,
    BgMusicConfig,
    BgMusicStep,
    Step,
    StepResult,
    TextOverlayConfig,
    TextOverlayStep,
    VideoGenConfig,
    VideoGenerationStep,
)
from src.services.database import DatabaseService
from src.services.fal import FalService, extract_video_url
from src.services.media import MediaService
from src.services.signed_url_cache import SignedUrlCache
from src.services.storage import StorageService
from src.services.tiktok import TikTokService, is_tiktok_url
from src.utils.errors import GenerationError, PipelineError

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[str], Awaitable[None]]


async def _noop_progress(label: str) -> None:
    return None


@dataclass
class StepContext:
    """Everything an executor may read besides its own config."""

    job_id: str
    input_url: Optional[str]
    results: List[StepResult] = field(default_factory=list)
    on_progress: ProgressCallback = _noop_progress
    template_job: bool = True


@dataclass
class StepOutcome:
    """What a step produced; ``output_url`` is a permanent reference."""

    output_url: str
    items: List[BatchItemResult] = field(default_factory=list)


class VideoGenerator:
    """Runs one fal generation and stores the result in the owned bucket."""

    def __init__(
        self,
        db: DatabaseService,
        storage: StorageService,
        url_cache: SignedUrlCache,
        fal: FalService,
        tiktok: TikTokService,
        media: MediaService,
        motion_control_model: str,
        image_to_video_model: str,
        default_prompt: str,
        timeout: float = 300.0,
    ) -> None:
        self.db = db
        self.storage = storage
        self.url_cache = url_cache
        self.fal = fal
        self.tiktok = tiktok
        self.media = media
        self.motion_control_model = motion_control_model
        self.image_to_video_model = image_to_video_model
        self.default_prompt = default_prompt
        self.timeout = timeout

    async def _readable_url(self, ref: str) -> str:
        """A URL fal can fetch: owned references are signed through the cache."""
        if self.storage.is_owned(ref):
            return await self.url_cache.get(ref)
        return ref

    async def prepare_source(
        self,
        source_url: str,
        max_seconds: int,
        on_progress: ProgressCallback = _noop_progress,
    ) -> str:
        """
        Turn any source reference into a trimmed clip fal can read.

        TikTok page URLs are resolved through the downloader first.

        Returns:
            Signed URL of the prepared clip
        """
        if is_tiktok_url(source_url):
            await on_progress("Fetching TikTok video...")
            source_url = await self.tiktok.get_download_url(source_url)

        await on_progress("Preparing video...")
        data = await self.storage.download_to_buffer(source_url)
        trimmed = await self.media.trim(data, max_seconds)
        ref = await self.storage.upload(trimmed, "video/mp4", folder="sources")
        return await self.url_cache.get(ref)

    async def prepare_image(
        self, image_url: str, on_progress: ProgressCallback = _noop_progress
    ) -> str:
        """Re-host a persona image unless fal already serves it."""
        host = urlparse(image_url).hostname or ""
        if host == "fal.media" or host.endswith(".fal.media"):
            return image_url

        await on_progress("Uploading model image...")
        if self.storage.is_owned(image_url):
            return await self.url_cache.get(image_url)
        data = await self.storage.download_to_buffer(image_url)
        ref = await self.storage.upload(data, "image/png", folder="images")
        return await self.url_cache.get(ref)

    def build_inputs(self, config: VideoGenConfig, image_url: str, video_url: Optional[str]) -> dict[str, Any]:
        prompt = config.prompt or self.default_prompt
        if config.mode == "motion-control":
            return {
                "image_url": image_url,
                "video_url": video_url,
                "character_orientation": config.character_orientation,
                "keep_original_sound": config.keep_original_sound,
                "prompt": prompt,
            }
        return {
            "image_url": image_url,
            "prompt": prompt,
            "duration": config.duration,
            "aspect_ratio": config.aspect_ratio,
        }

    async def generate(
        self,
        config: VideoGenConfig,
        context: StepContext,
        video_url: Optional[str] = None,
        on_progress: ProgressCallback = _noop_progress,
    ) -> str:
        """
        Generate one clip from a persona image.

        Args:
            config: Generation settings; ``image_url`` must be set
            context: Owning job
            video_url: Prepared source clip (motion-control only)

        Returns:
            Permanent reference of the stored result

        Raises:
            PipelineError: If required inputs are missing
            GenerationError: If fal fails or times out
        """
        if not config.image_url:
            raise PipelineError("No persona image selected for video generation")
        if config.mode == "motion-control" and not video_url:
            raise PipelineError("Motion control needs a source video")

        image_url = await self.prepare_image(config.image_url, on_progress)
        model = (
            self.motion_control_model
            if config.mode == "motion-control"
            else self.image_to_video_model
        )

        async def on_queue_update(status: str, position: Optional[int]) -> None:
            if status == "IN_QUEUE":
                label = "In queue" if position is None else f"In queue (position {position})"
                await on_progress(label)
            elif status == "IN_PROGRESS":
                await on_progress("AI is generating your video...")

        await on_progress("Starting AI generation...")
        result = await self.fal.run(
            model,
            self.build_inputs(config, image_url, video_url),
            timeout=self.timeout,
            on_queue_update=on_queue_update,
        )
        fal_url = extract_video_url(result)

        await on_progress("Downloading and uploading result...")
        data = await self.storage.download_to_buffer(fal_url)
        filename = f"{config.mode}-{context.job_id}.mp4"
        ref = await self.storage.upload(data, "video/mp4", folder="outputs")
        await self.db.create_media_file(
            filename=filename,
            gcs_url=ref,
            file_size=len(data),
            job_id=None if context.template_job else context.job_id,
            template_job_id=context.job_id if context.template_job else None,
        )
        logger.info(f"Stored generated video for job {context.job_id}")
        return ref


class StepExecutor:
    """
    Dispatches a pipeline step to the executor for its type.

    Every executor raises on failure and never retries; the runner
    decides what a failure means for the job.
    """

    def __init__(
        self,
        generator: VideoGenerator,
        storage: StorageService,
        media: MediaService,
        db: DatabaseService,
    ) -> None:
        self.generator = generator
        self.storage = storage
        self.media = media
        self.db = db

    async def execute(self, step: Step, context: StepContext) -> StepOutcome:
        if isinstance(step, VideoGenerationStep):
            return await self.video_generation(step.config, context)
        elif isinstance(step, BatchVideoGenerationStep):
            return await self.batch_video_generation(step.config, context)
        elif isinstance(step, TextOverlayStep):
            return await self.text_overlay(step.config, context)
        elif isinstance(step, BgMusicStep):
            return await self.bg_music(step.config, context)
        elif isinstance(step, AttachVideoStep):
            return await self.attach_video(step.config, context)
        raise PipelineError(f"Unsupported step type: {type(step).__name__}")

    async def video_generation(self, config: VideoGenConfig, context: StepContext) -> StepOutcome:
        video_url = None
        if config.mode == "motion-control":
            if not context.input_url:
                raise PipelineError("Motion control needs a source video")
            video_url = await self.generator.prepare_source(
                context.input_url, config.max_seconds, context.on_progress
            )
        output = await self.generator.generate(config, context, video_url, context.on_progress)
        return StepOutcome(output_url=output)

    async def batch_video_generation(
        self, config: BatchVideoGenConfig, context: StepContext
    ) -> StepOutcome:
        """
        Generate one clip per image in parallel.

        Succeeds when at least one image succeeds; the chain continues
        from the first successful clip.

        Raises:
            GenerationError: If every image failed
        """
        video_url = None
        if config.mode == "motion-control":
            if not context.input_url:
                raise PipelineError("Motion control needs a source video")
            video_url = await self.generator.prepare_source(
                context.input_url, config.max_seconds, context.on_progress
            )

        total = len(config.images)
        finished = 0
        await context.on_progress(f"Generating {total} videos...")

        async def generate_one(image) -> str:
            nonlocal finished
            try:
                return await self.generator.generate(config.item_config(image), context, video_url)
            finally:
                finished += 1
                await context.on_progress(f"Generated {finished}/{total} videos")

        outcomes = await asyncio.gather(
            *(generate_one(image) for image in config.images), return_exceptions=True
        )

        items: List[BatchItemResult] = []
        for image, outcome in zip(config.images, outcomes):
            if isinstance(outcome, BaseException):
                logger.warning(f"Batch item {image.image_url} failed for job {context.job_id}: {outcome}")
                items.append(
                    BatchItemResult(image_id=image.image_id, image_url=image.image_url, error=str(outcome))
                )
            else:
                items.append(
                    BatchItemResult(image_id=image.image_id, image_url=image.image_url, output_url=outcome)
                )

        succeeded = [item for item in items if item.succeeded]
        if not succeeded:
            raise GenerationError(f"All {total} generations failed: {items[0].error}")

        logger.info(f"Batch generation for job {context.job_id}: {len(succeeded)}/{total} succeeded")
        return StepOutcome(output_url=succeeded[0].output_url, items=items)

    async def _load_input(self, ref: Optional[str]) -> bytes:
        if not ref:
            raise PipelineError("No input video for this step")
        return await self.storage.download_to_buffer(ref)

    async def _store_edit(self, data: bytes) -> str:
        return await self.storage.upload(data, "video/mp4", folder="edits")

    async def text_overlay(self, config: TextOverlayConfig, context: StepContext) -> StepOutcome:
        await context.on_progress("Adding text overlay...")
        video = await self._load_input(context.input_url)
        rendered = await self.media.overlay_text(video, config)
        return StepOutcome(output_url=await self._store_edit(rendered))

    def music_input(self, config: BgMusicConfig, context: StepContext) -> Optional[str]:
        """The clip music is laid under: the latest targeted step's output, else the chain input."""
        if config.apply_to_step_ids:
            targets = set(config.apply_to_step_ids)
            for result in reversed(context.results):
                if result.step_id in targets:
                    return result.output_url
        return context.input_url

    async def bg_music(self, config: BgMusicConfig, context: StepContext) -> StepOutcome:
        track_url = config.custom_track_url
        if config.track_id:
            track = await self.db.get_music_track(config.track_id)
            if track is None:
                raise PipelineError(f"Music track {config.track_id} not found")
            track_url = track.gcs_url

        await context.on_progress("Adding background music...")
        video = await self._load_input(self.music_input(config, context))
        track_data = await self.storage.download_to_buffer(track_url)
        rendered = await self.media.mix_music(video, track_data, config)
        return StepOutcome(output_url=await self._store_edit(rendered))

    async def attach_video(self, config: AttachVideoConfig, context: StepContext) -> StepOutcome:
        await context.on_progress("Attaching video...")
        primary = await self._load_input(context.input_url)
        secondary = await self.storage.download_to_buffer(config.video_url)
        rendered = await self.media.attach(primary, secondary, config.position)
        return StepOutcome(output_url=await self._store_edit(rendered))
