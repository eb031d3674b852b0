"""FastAPI routes for the content pipeline API."""

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, ValidationError

from src.api.deps import get_orchestrator
from src.models.job import Batch, ImageSelectionMode, Job
from src.models.pipeline import (
    MasterConfig,
    PipelineBatch,
    PostResult,
    PostStatus,
    Step,
    TemplateJob,
)
from src.services.orchestrator import JobOrchestrator
from src.utils.errors import (
    ConflictError,
    ContentOpsError,
    GenerationError,
    InputValidationError,
    NotFoundError,
    PostingError,
    SourceVideoError,
    StorageServiceError,
)

logger = logging.getLogger(__name__)

# Create router
router = APIRouter()


# ==================== Error Response Model ====================


class ErrorResponse(BaseModel):
    """Standard error response model."""

    detail: str
    error_type: str
    errors: Optional[List[Dict[str, Any]]] = None


# ==================== Exception Handlers ====================


async def validation_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle Pydantic validation errors."""
    errors = exc.errors() if isinstance(exc, (ValidationError, RequestValidationError)) else []
    return JSONResponse(
        status_code=422,
        content={
            "detail": "Validation error",
            "error_type": "ValidationError",
            "errors": [
                {"loc": list(e.get("loc", ())), "msg": e.get("msg"), "type": e.get("type")}
                for e in errors
            ],
        },
    )


def status_code_for(exc: ContentOpsError) -> int:
    if isinstance(exc, InputValidationError):
        return 400
    if isinstance(exc, NotFoundError):
        return 404
    if isinstance(exc, ConflictError):
        return 409
    if isinstance(exc, (GenerationError, SourceVideoError, PostingError, StorageServiceError)):
        return 502  # Bad Gateway for external API errors
    return 500


async def content_ops_exception_handler(request: Request, exc: ContentOpsError) -> JSONResponse:
    """Handle application-specific errors."""
    status_code = status_code_for(exc)
    if status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
    return JSONResponse(
        status_code=status_code,
        content={
            "detail": str(exc),
            "error_type": type(exc).__name__,
        },
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Handle HTTP exceptions with consistent format."""
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "detail": exc.detail,
            "error_type": "HTTPException",
        },
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle unexpected exceptions."""
    logger.exception(f"Unexpected error: {exc}")
    return JSONResponse(
        status_code=500,
        content={
            "detail": "Internal server error",
            "error_type": "InternalError",
        },
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(ValidationError, validation_exception_handler)
    app.add_exception_handler(ContentOpsError, content_ops_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)


# ==================== Request/Response Models ====================


class CreateJobRequest(BaseModel):
    """Request model for a single motion-control job."""

    tiktok_url: Optional[str] = None
    video_url: Optional[str] = None
    image_url: str = Field(default="", description="Persona image to animate")
    custom_prompt: Optional[str] = None
    max_seconds: Optional[int] = Field(default=None, ge=1, le=60)
    model_id: Optional[str] = None


class JobCreatedResponse(BaseModel):
    job_id: str
    job: Job


class CreateBatchRequest(BaseModel):
    """Request model for fanning source videos out over a persona's images."""

    name: str
    source_urls: List[str] = Field(default_factory=list)
    model_id: Optional[str] = None
    image_selection_mode: ImageSelectionMode = "model"
    selected_image_ids: List[str] = Field(default_factory=list)
    custom_prompt: Optional[str] = None
    max_seconds: Optional[int] = Field(default=None, ge=1, le=60)


class BatchCreatedResponse(BaseModel):
    batch_id: str
    batch: Batch


class CreateTemplateRequest(BaseModel):
    """Request model for a pipeline job."""

    name: str = ""
    pipeline: List[Step] = Field(default_factory=list)
    tiktok_url: Optional[str] = None
    video_url: Optional[str] = None
    model_id: Optional[str] = None


class TemplateCreatedResponse(BaseModel):
    job_id: str
    job: TemplateJob


class RegenerateRequest(BaseModel):
    """Start a new attempt, optionally reusing results before ``from_step_id``."""

    from_step_id: Optional[str] = None
    pipeline: Optional[List[Step]] = None


class PostStatusRequest(BaseModel):
    post_status: PostStatus


class CreateMasterBatchRequest(BaseModel):
    """Request model for running one pipeline across several personas."""

    name: str = ""
    pipeline: List[Step] = Field(default_factory=list)
    model_ids: List[str] = Field(default_factory=list)
    master_config: MasterConfig = Field(default_factory=MasterConfig)
    tiktok_url: Optional[str] = None
    video_url: Optional[str] = None


class PipelineBatchCreatedResponse(BaseModel):
    batch_id: str
    batch: PipelineBatch


class PostJobsRequest(BaseModel):
    job_ids: Optional[List[str]] = None


class PostJobsResponse(BaseModel):
    results: List[PostResult]
    posted: int
    failed: int


# ==================== Jobs ====================


@router.post("/jobs", response_model=JobCreatedResponse)
async def create_job(
    request: CreateJobRequest,
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
) -> JobCreatedResponse:
    """
    Create a motion-control job.

    Returns immediately with the queued job; poll ``GET /jobs/{id}``.
    """
    job = await orchestrator.create_job(
        image_url=request.image_url,
        tiktok_url=request.tiktok_url,
        video_url=request.video_url,
        custom_prompt=request.custom_prompt,
        max_seconds=request.max_seconds,
        model_id=request.model_id,
    )
    return JobCreatedResponse(job_id=job.id, job=job)


@router.get("/jobs")
async def list_jobs(
    limit: int = Query(100, ge=1, le=500),
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    return await orchestrator.list_jobs(limit)


@router.get("/jobs/{job_id}")
async def get_job(
    job_id: str,
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    """Job state with a signed output URL and the suggested polling interval."""
    return await orchestrator.get_job(job_id)


# ==================== Batches ====================


@router.post("/batches", response_model=BatchCreatedResponse)
async def create_batch(
    request: CreateBatchRequest,
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
) -> BatchCreatedResponse:
    batch = await orchestrator.create_batch(
        name=request.name,
        source_urls=request.source_urls,
        model_id=request.model_id,
        image_selection_mode=request.image_selection_mode,
        selected_image_ids=request.selected_image_ids,
        custom_prompt=request.custom_prompt,
        max_seconds=request.max_seconds,
    )
    return BatchCreatedResponse(batch_id=batch.id, batch=batch)


@router.get("/batches/{batch_id}")
async def get_batch(
    batch_id: str,
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    return await orchestrator.get_batch(batch_id)


# ==================== Templates ====================


@router.post("/templates", response_model=TemplateCreatedResponse)
async def create_template_job(
    request: CreateTemplateRequest,
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
) -> TemplateCreatedResponse:
    """
    Create a pipeline job.

    Validation happens before anything is stored; execution starts in the
    background and the queued job is returned immediately.
    """
    job = await orchestrator.create_template_job(
        name=request.name,
        pipeline=request.pipeline,
        tiktok_url=request.tiktok_url,
        video_url=request.video_url,
        model_id=request.model_id,
    )
    return TemplateCreatedResponse(job_id=job.id, job=job)


@router.get("/templates")
async def list_template_jobs(
    limit: int = Query(100, ge=1, le=500),
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    return await orchestrator.list_template_jobs(limit)


@router.get("/templates/{job_id}")
async def get_template_job(
    job_id: str,
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    return await orchestrator.get_template_job(job_id)


@router.delete("/templates/{job_id}", status_code=204)
async def delete_template_job(
    job_id: str,
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
) -> Response:
    """Delete a job that has not started yet (409 otherwise)."""
    await orchestrator.delete_template_job(job_id)
    return Response(status_code=204)


@router.post("/templates/{job_id}/regenerate", response_model=TemplateCreatedResponse)
async def regenerate_template_job(
    job_id: str,
    request: RegenerateRequest,
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
) -> TemplateCreatedResponse:
    """Start a new attempt of a finished job; the original is kept as history."""
    job = await orchestrator.regenerate(
        job_id, from_step_id=request.from_step_id, pipeline=request.pipeline
    )
    return TemplateCreatedResponse(job_id=job.id, job=job)


@router.patch("/templates/{job_id}/post-status", response_model=TemplateJob)
async def set_post_status(
    job_id: str,
    request: PostStatusRequest,
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
) -> TemplateJob:
    return await orchestrator.set_post_status(job_id, request.post_status)


# ==================== Pipeline (master) batches ====================


@router.post("/pipeline-batches", response_model=PipelineBatchCreatedResponse)
async def create_pipeline_batch(
    request: CreateMasterBatchRequest,
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
) -> PipelineBatchCreatedResponse:
    batch = await orchestrator.create_master_batch(
        name=request.name,
        pipeline=request.pipeline,
        model_ids=request.model_ids,
        master_config=request.master_config,
        tiktok_url=request.tiktok_url,
        video_url=request.video_url,
    )
    return PipelineBatchCreatedResponse(batch_id=batch.id, batch=batch)


@router.get("/pipeline-batches/{batch_id}")
async def get_pipeline_batch(
    batch_id: str,
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    """Master batch with every child, signed URLs and the polling interval."""
    return await orchestrator.get_pipeline_batch(batch_id)


@router.post("/pipeline-batches/{batch_id}/post", response_model=PostJobsResponse)
async def post_pipeline_batch(
    batch_id: str,
    request: PostJobsRequest,
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
) -> PostJobsResponse:
    """Publish completed children through Late; failures are reported per job."""
    results = await orchestrator.post_jobs(batch_id, request.job_ids)
    posted = sum(1 for result in results if result.posted)
    return PostJobsResponse(results=results, posted=posted, failed=len(results) - posted)


# ==================== Health ====================


@router.get("/health")
async def health(request: Request) -> Dict[str, Any]:
    container = request.app.state.container
    return {
        "status": "healthy",
        "pending_tasks": container.task_queue.pending_count(),
        "cached_urls": len(container.url_cache),
    }
