"""Custom exception classes for the content operations pipeline."""


class ContentOpsError(Exception):
    """Base exception for all application errors."""

    pass


class InputValidationError(ContentOpsError):
    """A creation request was rejected before any row was persisted."""

    pass


class NotFoundError(ContentOpsError):
    """A requested job, batch or related record does not exist."""

    pass


class ConflictError(ContentOpsError):
    """The requested action is not allowed in the record's current state."""

    pass


class DatabaseError(ContentOpsError):
    """Errors from the persistence layer."""

    pass


class StorageServiceError(ContentOpsError):
    """Errors from the object storage service."""

    pass


class SigningError(StorageServiceError):
    """Object storage could not mint a signed URL."""

    pass


class GenerationError(ContentOpsError):
    """Errors from an external generation capability."""

    pass


class FalAPIError(GenerationError):
    """fal.ai API returned an error."""

    def __init__(self, status_code: int, message: str) -> None:
        self.status_code = status_code
        super().__init__(f"fal.ai error {status_code}: {message}")


class GenerationTimeoutError(GenerationError):
    """An external generation call exceeded its execution budget."""

    def __init__(self, operation: str, timeout: float) -> None:
        self.operation = operation
        self.timeout = timeout
        super().__init__(f"{operation} timed out after {timeout:g}s")


class SourceVideoError(ContentOpsError):
    """The source video could not be resolved or downloaded."""

    pass


class TikTokAPIError(SourceVideoError):
    """RapidAPI TikTok endpoint returned an error."""

    def __init__(self, status_code: int, message: str) -> None:
        self.status_code = status_code
        super().__init__(f"TikTok API error {status_code}: {message}")


class RenderError(ContentOpsError):
    """ffmpeg or ffprobe failed while rendering a step."""

    pass


class PostingError(ContentOpsError):
    """Errors from the social posting service."""

    pass


class LateAPIError(PostingError):
    """Late API returned an error."""

    def __init__(self, status_code: int, message: str) -> None:
        self.status_code = status_code
        super().__init__(f"Late API error ({status_code}): {message}")


class PipelineError(ContentOpsError):
    """A pipeline step could not be executed."""

    pass
