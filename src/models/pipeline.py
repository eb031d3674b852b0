"""Pipeline, step and template job Pydantic models."""

from datetime import datetime
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, Field, field_validator, model_validator

from src.models.job import (
    TERMINAL_JOB_STATUSES,
    BatchStatus,
    JobStatus,
    VideoSource,
    new_id,
    utcnow,
)

StepType = Literal[
    "video-generation",
    "batch-video-generation",
    "text-overlay",
    "bg-music",
    "attach-video",
]
GenerationMode = Literal["motion-control", "subtle-animation"]
AspectRatio = Literal["9:16", "16:9", "1:1"]
PostStatus = Literal["posted", "rejected"]
PublishMode = Literal["now", "schedule", "draft"]

STEP_LABELS: dict[str, str] = {
    "video-generation": "Video Generation",
    "batch-video-generation": "Batch Video Generation",
    "text-overlay": "Text Overlay",
    "bg-music": "Background Music",
    "attach-video": "Attach Video",
}


# ==================== Step configs ====================


class VideoGenConfig(BaseModel):
    """Motion-control or subtle-animation generation from a persona image."""

    mode: GenerationMode = "motion-control"
    model_id: Optional[str] = None
    image_id: Optional[str] = None
    image_url: Optional[str] = None
    prompt: Optional[str] = None
    max_seconds: int = Field(default=10, ge=1, le=60)
    duration: Literal["5", "10"] = "5"
    aspect_ratio: AspectRatio = "9:16"
    character_orientation: Literal["video", "image"] = "video"
    keep_original_sound: bool = True


class BatchImage(BaseModel):
    """One persona image fanned out by a batch-video-generation step."""

    image_id: Optional[str] = None
    image_url: str = Field(min_length=1)


class BatchVideoGenConfig(BaseModel):
    """Parallel generation over several images sharing one configuration."""

    mode: GenerationMode = "motion-control"
    images: list[BatchImage] = Field(min_length=1)
    prompt: Optional[str] = None
    max_seconds: int = Field(default=10, ge=1, le=60)
    duration: Literal["5", "10"] = "5"
    aspect_ratio: AspectRatio = "9:16"
    character_orientation: Literal["video", "image"] = "video"
    keep_original_sound: bool = True

    def item_config(self, image: BatchImage) -> VideoGenConfig:
        """The single-image config each fanned-out item is generated with."""
        return VideoGenConfig(
            mode=self.mode,
            image_id=image.image_id,
            image_url=image.image_url,
            prompt=self.prompt,
            max_seconds=self.max_seconds,
            duration=self.duration,
            aspect_ratio=self.aspect_ratio,
            character_orientation=self.character_orientation,
            keep_original_sound=self.keep_original_sound,
        )


class TextOverlayConfig(BaseModel):
    """Caption burned into the video frames."""

    text: str = Field(min_length=1, max_length=500)
    position: Literal["top", "center", "bottom"] = "bottom"
    font_size: int = Field(default=48, ge=8, le=200)
    font_color: str = "#FFFFFF"
    background_color: Optional[str] = "#000000"
    background_opacity: float = Field(default=0.5, ge=0.0, le=1.0)
    padding: int = Field(default=20, ge=0, le=200)
    start_time: float = Field(default=0.0, ge=0.0)
    end_time: Optional[float] = None

    @field_validator("text")
    @classmethod
    def text_not_whitespace(cls, v: str) -> str:
        """Validate that text is not only whitespace."""
        if not v.strip():
            raise ValueError("text cannot be only whitespace")
        return v

    @field_validator("font_color", "background_color")
    @classmethod
    def hex_color(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        digits = v.lstrip("#")
        if len(digits) != 6 or any(c not in "0123456789abcdefABCDEF" for c in digits):
            raise ValueError("color must be a #RRGGBB hex value")
        return f"#{digits.upper()}"

    @model_validator(mode="after")
    def window_is_ordered(self) -> "TextOverlayConfig":
        if self.end_time is not None and self.end_time <= self.start_time:
            raise ValueError("end_time must be after start_time")
        return self


class BgMusicConfig(BaseModel):
    """Audio track mixed under the video."""

    track_id: Optional[str] = None
    custom_track_url: Optional[str] = None
    volume: int = Field(default=30, ge=0, le=100)
    fade_in: float = Field(default=0.0, ge=0.0, le=30.0)
    fade_out: float = Field(default=0.0, ge=0.0, le=30.0)
    keep_original_audio: bool = True
    apply_to_step_ids: list[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def track_selected(self) -> "BgMusicConfig":
        if not self.track_id and not self.custom_track_url:
            raise ValueError("either track_id or custom_track_url is required")
        return self


class AttachVideoConfig(BaseModel):
    """Second clip concatenated before or after the chain output."""

    video_url: str = Field(min_length=1)
    position: Literal["before", "after"] = "after"


# ==================== Steps (tagged union) ====================


class _StepBase(BaseModel):
    id: str = Field(default_factory=new_id, min_length=1)
    enabled: bool = True
    label: Optional[str] = None

    @property
    def display_label(self) -> str:
        return self.label or STEP_LABELS[self.type]  # type: ignore[attr-defined]


class VideoGenerationStep(_StepBase):
    type: Literal["video-generation"] = "video-generation"
    config: VideoGenConfig


class BatchVideoGenerationStep(_StepBase):
    type: Literal["batch-video-generation"] = "batch-video-generation"
    config: BatchVideoGenConfig


class TextOverlayStep(_StepBase):
    type: Literal["text-overlay"] = "text-overlay"
    config: TextOverlayConfig


class BgMusicStep(_StepBase):
    type: Literal["bg-music"] = "bg-music"
    config: BgMusicConfig


class AttachVideoStep(_StepBase):
    type: Literal["attach-video"] = "attach-video"
    config: AttachVideoConfig


Step = Annotated[
    Union[
        VideoGenerationStep,
        BatchVideoGenerationStep,
        TextOverlayStep,
        BgMusicStep,
        AttachVideoStep,
    ],
    Field(discriminator="type"),
]

GENERATION_STEP_TYPES: frozenset[str] = frozenset({"video-generation", "batch-video-generation"})


def enabled_steps(pipeline: list[Step]) -> list[Step]:
    """Steps that execute, in pipeline order."""
    return [step for step in pipeline if step.enabled]


def needs_source_video(pipeline: list[Step]) -> bool:
    """
    Whether a pipeline must be given a source video.

    Only a pipeline whose first enabled step generates from scratch
    (subtle-animation of a still image) can run without one.
    """
    steps = enabled_steps(pipeline)
    if not steps:
        return False
    first = steps[0]
    if isinstance(first, (VideoGenerationStep, BatchVideoGenerationStep)):
        return first.config.mode != "subtle-animation"
    return True


# ==================== Results and jobs ====================


class BatchItemResult(BaseModel):
    """Outcome of one image inside a batch-video-generation step."""

    image_id: Optional[str] = None
    image_url: str
    output_url: Optional[str] = None
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.output_url is not None


class StepResult(BaseModel):
    """Output record appended after each successful step."""

    step_id: str = Field(min_length=1)
    type: StepType
    label: str
    output_url: str = Field(min_length=1)
    items: list[BatchItemResult] = Field(default_factory=list)


class TemplateJob(BaseModel):
    """A job driven by a multi-step pipeline."""

    id: str = Field(default_factory=new_id, min_length=1)
    name: str = Field(min_length=1)
    pipeline: list[Step] = Field(min_length=1)
    status: JobStatus = "queued"
    step: str = "Queued"
    video_source: Optional[VideoSource] = None
    tiktok_url: Optional[str] = None
    video_url: Optional[str] = None
    current_step: int = Field(default=0, ge=0)
    total_steps: int = Field(default=0, ge=0)
    step_results: list[StepResult] = Field(default_factory=list)
    output_url: Optional[str] = None
    error: Optional[str] = None
    pipeline_batch_id: Optional[str] = None
    model_id: Optional[str] = None
    post_status: Optional[PostStatus] = None
    posted_accounts: dict[str, str] = Field(default_factory=dict)
    regenerated_from: Optional[str] = None
    caption_override: Optional[str] = None
    publish_mode_override: Optional[PublishMode] = None
    scheduled_for_override: Optional[str] = None
    timezone_override: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None

    @model_validator(mode="after")
    def results_match_pipeline(self) -> "TemplateJob":
        enabled_ids = {step.id for step in self.pipeline if step.enabled}
        if len(self.step_results) > len(enabled_ids):
            raise ValueError("more step results than enabled steps")
        for result in self.step_results:
            if result.step_id not in enabled_ids:
                raise ValueError(f"step result {result.step_id} has no enabled pipeline step")
        return self

    @property
    def enabled_steps(self) -> list[Step]:
        return enabled_steps(self.pipeline)

    @property
    def source_url(self) -> Optional[str]:
        return self.video_url or self.tiktok_url

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_JOB_STATUSES


class MasterConfig(BaseModel):
    """Publishing defaults shared by every child of a master batch."""

    caption: str = ""
    publish_mode: PublishMode = "now"
    scheduled_for: Optional[str] = None
    timezone: str = "America/New_York"
    account_ids: list[str] = Field(default_factory=list)
    auto_post: bool = False

    @model_validator(mode="after")
    def schedule_has_time(self) -> "MasterConfig":
        if self.publish_mode == "schedule" and not self.scheduled_for:
            raise ValueError("scheduled_for is required when publish_mode is 'schedule'")
        return self


class PipelineBatch(BaseModel):
    """A master batch: one TemplateJob per persona over a shared pipeline."""

    id: str = Field(default_factory=new_id, min_length=1)
    name: str = Field(min_length=1)
    pipeline: list[Step] = Field(min_length=1)
    model_ids: list[str] = Field(default_factory=list)
    status: BatchStatus = "pending"
    total_jobs: int = Field(default=0, ge=0)
    completed_jobs: int = Field(default=0, ge=0)
    failed_jobs: int = Field(default=0, ge=0)
    master_config: MasterConfig = Field(default_factory=MasterConfig)
    created_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None

    @model_validator(mode="after")
    def counters_within_total(self) -> "PipelineBatch":
        if self.completed_jobs + self.failed_jobs > self.total_jobs:
            raise ValueError("completed_jobs + failed_jobs cannot exceed total_jobs")
        return self

    @property
    def progress(self) -> int:
        if not self.total_jobs:
            return 0
        return round((self.completed_jobs + self.failed_jobs) * 100 / self.total_jobs)


class PostResult(BaseModel):
    """Outcome of publishing one template job."""

    job_id: str
    posted: bool = False
    post_ids: list[str] = Field(default_factory=list)
    error: Optional[str] = None
