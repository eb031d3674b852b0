"""Utility modules for the content operations pipeline."""

from src.utils.errors import (
    ConflictError,
    ContentOpsError,
    DatabaseError,
    FalAPIError,
    GenerationError,
    GenerationTimeoutError,
    InputValidationError,
    LateAPIError,
    NotFoundError,
    PipelineError,
    PostingError,
    RenderError,
    SigningError,
    SourceVideoError,
    StorageServiceError,
    TikTokAPIError,
)
from src.utils.rate_limiter import RateLimiter
from src.utils.retry import with_retry

__all__ = [
    "ContentOpsError",
    "InputValidationError",
    "NotFoundError",
    "ConflictError",
    "DatabaseError",
    "StorageServiceError",
    "SigningError",
    "GenerationError",
    "FalAPIError",
    "GenerationTimeoutError",
    "SourceVideoError",
    "TikTokAPIError",
    "RenderError",
    "PostingError",
    "LateAPIError",
    "PipelineError",
    "RateLimiter",
    "with_retry",
]
