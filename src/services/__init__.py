"""Service layer for the content operations pipeline."""

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

__all__ = [
    "DatabaseService",
    "StepExecutor",
    "VideoGenerator",
    "FalService",
    "JobProcessor",
    "MediaService",
    "JobOrchestrator",
    "PipelineRunner",
    "PostingService",
    "SignedUrlCache",
    "StorageService",
    "TaskQueue",
    "TikTokService",
]
