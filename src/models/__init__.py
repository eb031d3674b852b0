"""Pydantic data models for the content operations pipeline."""

from src.models.job import Batch, Job, derive_batch_status
from src.models.persona import MusicTrack, Persona, PersonaImage
from src.models.pipeline import (
    MasterConfig,
    PipelineBatch,
    PostResult,
    Step,
    StepResult,
    TemplateJob,
)

__all__ = [
    "Batch",
    "Job",
    "derive_batch_status",
    "MusicTrack",
    "Persona",
    "PersonaImage",
    "MasterConfig",
    "PipelineBatch",
    "PostResult",
    "Step",
    "StepResult",
    "TemplateJob",
]
