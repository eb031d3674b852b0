"""Job and Batch Pydantic models."""

from datetime import datetime, timezone
from typing import Literal, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, model_validator

JobStatus = Literal["queued", "processing", "completed", "failed"]
BatchStatus = Literal["pending", "processing", "completed", "partial", "failed"]
VideoSource = Literal["tiktok", "upload"]
ImageSelectionMode = Literal["model", "specific"]

TERMINAL_JOB_STATUSES: frozenset[str] = frozenset({"completed", "failed"})
ACTIVE_JOB_STATUSES: frozenset[str] = frozenset({"queued", "processing"})
TERMINAL_BATCH_STATUSES: frozenset[str] = frozenset({"completed", "partial", "failed"})
ACTIVE_BATCH_STATUSES: frozenset[str] = frozenset({"pending", "processing"})


def utcnow() -> datetime:
    """Timezone-aware current time used for every persisted timestamp."""
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid4())


def derive_batch_status(total: int, completed: int, failed: int, started: bool = True) -> BatchStatus:
    """
    Aggregate status of a fan-out group from its counters.

    ``pending`` until a child starts, ``processing`` while any child is
    non-terminal, then ``completed`` (no failures), ``failed`` (no
    successes) or ``partial``.
    """
    if completed + failed > total:
        raise ValueError(f"counters exceed total: {completed} + {failed} > {total}")
    if total == 0:
        return "completed"
    if completed + failed < total:
        return "processing" if started or completed + failed else "pending"
    if failed == 0:
        return "completed"
    if completed == 0:
        return "failed"
    return "partial"


class Job(BaseModel):
    """A single generation unit driven by one motion-control call."""

    id: str = Field(default_factory=new_id, min_length=1)
    tiktok_url: Optional[str] = None
    video_url: Optional[str] = None
    video_source: VideoSource = "tiktok"
    image_url: str = Field(min_length=1)
    image_name: Optional[str] = None
    custom_prompt: Optional[str] = None
    max_seconds: int = Field(default=10, ge=1, le=60)
    batch_id: Optional[str] = None
    model_id: Optional[str] = None
    status: JobStatus = "queued"
    step: str = "Queued"
    output_url: Optional[str] = None
    error: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None

    @model_validator(mode="after")
    def require_source_video(self) -> "Job":
        """A plain job always drives motion from a source video."""
        if not self.tiktok_url and not self.video_url:
            raise ValueError("either tiktok_url or video_url is required")
        return self

    @property
    def source_url(self) -> str:
        return self.video_url or self.tiktok_url or ""

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_JOB_STATUSES


class Batch(BaseModel):
    """A fan-out group of plain Jobs created by one bulk request."""

    id: str = Field(default_factory=new_id, min_length=1)
    name: str = Field(min_length=1)
    status: BatchStatus = "pending"
    model_id: Optional[str] = None
    image_selection_mode: ImageSelectionMode = "model"
    selected_image_ids: list[str] = Field(default_factory=list)
    total_jobs: int = Field(default=0, ge=0)
    completed_jobs: int = Field(default=0, ge=0)
    failed_jobs: int = Field(default=0, ge=0)
    created_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None

    @model_validator(mode="after")
    def counters_within_total(self) -> "Batch":
        if self.completed_jobs + self.failed_jobs > self.total_jobs:
            raise ValueError("completed_jobs + failed_jobs cannot exceed total_jobs")
        return self

    @property
    def progress(self) -> int:
        """Percentage of children that reached a terminal state."""
        if not self.total_jobs:
            return 0
        return round((self.completed_jobs + self.failed_jobs) * 100 / self.total_jobs)
