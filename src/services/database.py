"""Database service for Supabase operations."""

import logging
from typing import Any, Iterable, List, Optional, TypeVar

from pydantic import BaseModel

from src.models.job import (
    ACTIVE_BATCH_STATUSES,
    Batch,
    BatchStatus,
    Job,
    JobStatus,
    new_id,
    utcnow,
)
from src.models.persona import MusicTrack, Persona, PersonaImage
from src.models.pipeline import PipelineBatch, TemplateJob
from src.utils.errors import DatabaseError

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)

JOBS = "jobs"
BATCHES = "batches"
TEMPLATE_JOBS = "template_jobs"
PIPELINE_BATCHES = "pipeline_batches"


def _serialize(value: Any) -> Any:
    """Convert models (and lists of models) into JSON-compatible column values."""
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if isinstance(value, list):
        return [_serialize(v) for v in value]
    if hasattr(value, "isoformat"):
        return value.isoformat()
    return value


class DatabaseService:
    """
    Service for Supabase database operations.

    Row updates are field-level: only the columns passed to an ``update_*``
    call are written, so concurrent writers touching different fields of
    the same row do not clobber each other. Batch counters are only ever
    changed through the ``increment_batch_counters`` Postgres function.
    """

    def __init__(self, supabase_client: Any) -> None:
        """
        Initialize the DatabaseService.

        Args:
            supabase_client: Supabase client instance
        """
        self.supabase = supabase_client

    # ==================== GENERIC HELPERS ====================

    def _insert(self, table: str, model: BaseModel) -> dict[str, Any]:
        result = self.supabase.table(table).insert(model.model_dump(mode="json")).execute()
        if not result.data:
            raise DatabaseError(f"Failed to insert into {table}")
        return result.data[0]

    def _select_one(self, table: str, row_id: str) -> Optional[dict[str, Any]]:
        result = self.supabase.table(table).select("*").eq("id", row_id).execute()
        return result.data[0] if result.data else None

    def _update(
        self,
        table: str,
        row_id: str,
        fields: dict[str, Any],
        only_if_status: Optional[Iterable[str]] = None,
    ) -> Optional[dict[str, Any]]:
        data = {key: _serialize(value) for key, value in fields.items()}
        query = self.supabase.table(table).update(data).eq("id", row_id)
        if only_if_status is not None:
            query = query.in_("status", list(only_if_status))
        result = query.execute()
        return result.data[0] if result.data else None

    @staticmethod
    def _to_model(model_cls: type[M], row: Optional[dict[str, Any]]) -> Optional[M]:
        return model_cls.model_validate(row) if row else None

    # ==================== JOBS ====================

    async def create_job(self, job: Job) -> Job:
        """
        Create a new job record.

        Raises:
            DatabaseError: If creation fails
        """
        try:
            row = self._insert(JOBS, job)
            logger.info(f"Created job {job.id}")
            return Job.model_validate(row)
        except DatabaseError:
            raise
        except Exception as e:
            raise DatabaseError(f"Failed to create job: {e}")

    async def get_job(self, job_id: str) -> Optional[Job]:
        """Retrieve a job by ID, None when it does not exist."""
        try:
            return self._to_model(Job, self._select_one(JOBS, job_id))
        except Exception as e:
            raise DatabaseError(f"Failed to get job {job_id}: {e}")

    async def list_jobs(self, limit: int = 100) -> List[Job]:
        try:
            result = (
                self.supabase.table(JOBS)
                .select("*")
                .order("created_at", desc=True)
                .limit(limit)
                .execute()
            )
            return [Job.model_validate(row) for row in result.data or []]
        except Exception as e:
            raise DatabaseError(f"Failed to list jobs: {e}")

    async def update_job(
        self, job_id: str, only_if_status: Optional[Iterable[str]] = None, **fields: Any
    ) -> Optional[Job]:
        """
        Write the given fields of a job.

        With ``only_if_status`` the write only applies while the job is in
        one of those statuses.

        Returns:
            The updated Job, None if no such job exists or the guard failed

        Raises:
            DatabaseError: If the update fails
        """
        try:
            return self._to_model(Job, self._update(JOBS, job_id, fields, only_if_status))
        except Exception as e:
            raise DatabaseError(f"Failed to update job {job_id}: {e}")

    async def get_jobs_by_batch_id(self, batch_id: str) -> List[Job]:
        try:
            result = (
                self.supabase.table(JOBS)
                .select("*")
                .eq("batch_id", batch_id)
                .order("created_at")
                .execute()
            )
            return [Job.model_validate(row) for row in result.data or []]
        except Exception as e:
            raise DatabaseError(f"Failed to get jobs for batch {batch_id}: {e}")

    async def get_jobs_by_status(self, status: JobStatus) -> List[Job]:
        """Jobs currently in ``status``, oldest first."""
        return [Job.model_validate(row) for row in self._rows_with_status(JOBS, status)]

    def _rows_with_status(self, table: str, status: str) -> list[dict[str, Any]]:
        try:
            result = (
                self.supabase.table(table)
                .select("*")
                .eq("status", status)
                .order("created_at")
                .execute()
            )
            return result.data or []
        except Exception as e:
            raise DatabaseError(f"Failed to query {status} rows in {table}: {e}")

    # ==================== BATCHES ====================

    async def create_batch(self, batch: Batch) -> Batch:
        try:
            row = self._insert(BATCHES, batch)
            logger.info(f"Created batch {batch.id} with {batch.total_jobs} jobs")
            return Batch.model_validate(row)
        except DatabaseError:
            raise
        except Exception as e:
            raise DatabaseError(f"Failed to create batch: {e}")

    async def get_batch(self, batch_id: str) -> Optional[Batch]:
        try:
            return self._to_model(Batch, self._select_one(BATCHES, batch_id))
        except Exception as e:
            raise DatabaseError(f"Failed to get batch {batch_id}: {e}")

    async def list_batches(self, limit: int = 100) -> List[Batch]:
        try:
            result = (
                self.supabase.table(BATCHES)
                .select("*")
                .order("created_at", desc=True)
                .limit(limit)
                .execute()
            )
            return [Batch.model_validate(row) for row in result.data or []]
        except Exception as e:
            raise DatabaseError(f"Failed to list batches: {e}")

    async def increment_batch_counters(
        self, batch_id: str, completed: int = 0, failed: int = 0, total: int = 0
    ) -> Batch:
        """Atomically add to a batch's counters and return the new row."""
        row = self._increment(BATCHES, batch_id, completed, failed, total)
        return Batch.model_validate(row)

    async def set_batch_status(
        self, batch_id: str, status: BatchStatus, completed: bool = False, reopen: bool = False
    ) -> Optional[Batch]:
        """
        Write an aggregate status.

        Non-terminal statuses are only written while the batch is still
        active, so a late sibling never overwrites a terminal status.
        ``reopen`` lifts that guard for a batch that gained a new child.
        """
        return self._to_model(
            Batch, self._set_parent_status(BATCHES, batch_id, status, completed, reopen)
        )

    # ==================== TEMPLATE JOBS ====================

    async def create_template_job(self, job: TemplateJob) -> TemplateJob:
        try:
            row = self._insert(TEMPLATE_JOBS, job)
            logger.info(f"Created template job {job.id} ({len(job.pipeline)} steps)")
            return TemplateJob.model_validate(row)
        except DatabaseError:
            raise
        except Exception as e:
            raise DatabaseError(f"Failed to create template job: {e}")

    async def get_template_job(self, job_id: str) -> Optional[TemplateJob]:
        try:
            return self._to_model(TemplateJob, self._select_one(TEMPLATE_JOBS, job_id))
        except Exception as e:
            raise DatabaseError(f"Failed to get template job {job_id}: {e}")

    async def list_template_jobs(self, limit: int = 100) -> List[TemplateJob]:
        try:
            result = (
                self.supabase.table(TEMPLATE_JOBS)
                .select("*")
                .order("created_at", desc=True)
                .limit(limit)
                .execute()
            )
            return [TemplateJob.model_validate(row) for row in result.data or []]
        except Exception as e:
            raise DatabaseError(f"Failed to list template jobs: {e}")

    async def update_template_job(
        self, job_id: str, only_if_status: Optional[Iterable[str]] = None, **fields: Any
    ) -> Optional[TemplateJob]:
        """
        Write the given fields of a template job.

        Raises:
            DatabaseError: If the update fails
        """
        try:
            return self._to_model(
                TemplateJob, self._update(TEMPLATE_JOBS, job_id, fields, only_if_status)
            )
        except Exception as e:
            raise DatabaseError(f"Failed to update template job {job_id}: {e}")

    async def delete_template_job(self, job_id: str, only_if_status: Optional[str] = None) -> bool:
        """Delete a template job, optionally only while it has the given status."""
        try:
            query = self.supabase.table(TEMPLATE_JOBS).delete().eq("id", job_id)
            if only_if_status is not None:
                query = query.eq("status", only_if_status)
            result = query.execute()
            return bool(result.data)
        except Exception as e:
            raise DatabaseError(f"Failed to delete template job {job_id}: {e}")

    async def get_template_jobs_by_batch_id(self, batch_id: str) -> List[TemplateJob]:
        try:
            result = (
                self.supabase.table(TEMPLATE_JOBS)
                .select("*")
                .eq("pipeline_batch_id", batch_id)
                .order("created_at")
                .execute()
            )
            return [TemplateJob.model_validate(row) for row in result.data or []]
        except Exception as e:
            raise DatabaseError(f"Failed to get template jobs for batch {batch_id}: {e}")

    async def get_template_jobs_by_status(self, status: JobStatus) -> List[TemplateJob]:
        return [
            TemplateJob.model_validate(row)
            for row in self._rows_with_status(TEMPLATE_JOBS, status)
        ]

    # ==================== PIPELINE BATCHES ====================

    async def create_pipeline_batch(self, batch: PipelineBatch) -> PipelineBatch:
        try:
            row = self._insert(PIPELINE_BATCHES, batch)
            logger.info(f"Created pipeline batch {batch.id} for {len(batch.model_ids)} models")
            return PipelineBatch.model_validate(row)
        except DatabaseError:
            raise
        except Exception as e:
            raise DatabaseError(f"Failed to create pipeline batch: {e}")

    async def get_pipeline_batch(self, batch_id: str) -> Optional[PipelineBatch]:
        try:
            return self._to_model(PipelineBatch, self._select_one(PIPELINE_BATCHES, batch_id))
        except Exception as e:
            raise DatabaseError(f"Failed to get pipeline batch {batch_id}: {e}")

    async def list_pipeline_batches(self, limit: int = 50) -> List[PipelineBatch]:
        try:
            result = (
                self.supabase.table(PIPELINE_BATCHES)
                .select("*")
                .order("created_at", desc=True)
                .limit(limit)
                .execute()
            )
            return [PipelineBatch.model_validate(row) for row in result.data or []]
        except Exception as e:
            raise DatabaseError(f"Failed to list pipeline batches: {e}")

    async def increment_pipeline_batch_counters(
        self, batch_id: str, completed: int = 0, failed: int = 0, total: int = 0
    ) -> PipelineBatch:
        row = self._increment(PIPELINE_BATCHES, batch_id, completed, failed, total)
        return PipelineBatch.model_validate(row)

    async def set_pipeline_batch_status(
        self, batch_id: str, status: BatchStatus, completed: bool = False, reopen: bool = False
    ) -> Optional[PipelineBatch]:
        return self._to_model(
            PipelineBatch,
            self._set_parent_status(PIPELINE_BATCHES, batch_id, status, completed, reopen),
        )

    # ==================== PARENT COUNTERS ====================

    def _increment(
        self, table: str, batch_id: str, completed: int, failed: int, total: int
    ) -> dict[str, Any]:
        """
        Call the ``increment_batch_counters`` function (see sql/schema.sql).

        The increment happens inside a single UPDATE statement, so siblings
        finishing at the same instant each observe a distinct post-increment
        row.
        """
        try:
            result = self.supabase.rpc(
                "increment_batch_counters",
                {
                    "p_table": table,
                    "p_batch_id": batch_id,
                    "p_completed": completed,
                    "p_failed": failed,
                    "p_total": total,
                },
            ).execute()
        except Exception as e:
            raise DatabaseError(f"Failed to increment counters for {table} {batch_id}: {e}")

        data = result.data
        if isinstance(data, list):
            data = data[0] if data else None
        if not data:
            raise DatabaseError(f"No {table} row {batch_id} to increment")
        return data

    def _set_parent_status(
        self, table: str, batch_id: str, status: BatchStatus, completed: bool, reopen: bool = False
    ) -> Optional[dict[str, Any]]:
        fields: dict[str, Any] = {"status": status}
        if completed:
            fields["completed_at"] = utcnow()
        elif reopen:
            fields["completed_at"] = None
        guard = None if completed or reopen else ACTIVE_BATCH_STATUSES
        try:
            return self._update(table, batch_id, fields, only_if_status=guard)
        except Exception as e:
            raise DatabaseError(f"Failed to set status of {table} {batch_id}: {e}")

    # ==================== PERSONAS / LIBRARY ====================

    async def get_persona(self, model_id: str) -> Optional[Persona]:
        """Retrieve a persona with its reference images."""
        try:
            row = self._select_one("models", model_id)
            if not row:
                return None
            images = (
                self.supabase.table("model_images")
                .select("*")
                .eq("model_id", model_id)
                .order("created_at")
                .execute()
            )
            return Persona(
                id=row["id"],
                name=row["name"],
                description=row.get("description"),
                avatar_url=row.get("avatar_url"),
                images=[PersonaImage.model_validate(img) for img in images.data or []],
            )
        except Exception as e:
            raise DatabaseError(f"Failed to get model {model_id}: {e}")

    async def get_images_by_ids(self, image_ids: List[str]) -> List[PersonaImage]:
        if not image_ids:
            return []
        try:
            result = self.supabase.table("model_images").select("*").in_("id", image_ids).execute()
            return [PersonaImage.model_validate(row) for row in result.data or []]
        except Exception as e:
            raise DatabaseError(f"Failed to get model images: {e}")

    async def get_music_track(self, track_id: str) -> Optional[MusicTrack]:
        try:
            return self._to_model(MusicTrack, self._select_one("music_tracks", track_id))
        except Exception as e:
            raise DatabaseError(f"Failed to get music track {track_id}: {e}")

    async def get_account_ids_for_model(self, model_id: str) -> List[str]:
        """Late account ids mapped to a persona."""
        try:
            result = (
                self.supabase.table("model_account_mappings")
                .select("late_account_id")
                .eq("model_id", model_id)
                .execute()
            )
            return [row["late_account_id"] for row in result.data or []]
        except Exception as e:
            raise DatabaseError(f"Failed to get accounts for model {model_id}: {e}")

    # ==================== MEDIA FILES ====================

    async def create_media_file(
        self,
        filename: str,
        gcs_url: str,
        file_type: str = "video",
        mime_type: str = "video/mp4",
        file_size: Optional[int] = None,
        job_id: Optional[str] = None,
        template_job_id: Optional[str] = None,
    ) -> str:
        """
        Record an owned artifact produced by a generation.

        Returns:
            The id of the created media record
        """
        try:
            media_id = new_id()
            result = (
                self.supabase.table("media_files")
                .insert(
                    {
                        "id": media_id,
                        "filename": filename,
                        "gcs_url": gcs_url,
                        "file_type": file_type,
                        "mime_type": mime_type,
                        "file_size": file_size,
                        "job_id": job_id,
                        "template_job_id": template_job_id,
                        "created_at": utcnow().isoformat(),
                    }
                )
                .execute()
            )
            if not result.data:
                raise DatabaseError("Failed to insert media file into database")
            return media_id
        except DatabaseError:
            raise
        except Exception as e:
            raise DatabaseError(f"Failed to create media file: {e}")
