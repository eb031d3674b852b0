"""Property-based tests for database operations.

Covers row round-trips, guarded status writes, atomic counter
increments and the persona/library lookups.
"""

import asyncio
from datetime import timedelta
from typing import Any, Dict

import pytest
from hypothesis import given, settings, strategies as st

from src.models.job import Batch, Job, utcnow
from src.models.pipeline import PipelineBatch, StepResult, TemplateJob
from src.services.database import DatabaseService
from src.utils.errors import DatabaseError

from conftest import TIKTOK_URL, MockSupabaseClient, overlay_step, seed_persona


def new_job(**fields: Any) -> Job:
    return Job(tiktok_url=TIKTOK_URL, image_url="gs://bucket/p.png", **fields)


class TestRowRoundTrip:
    """Rows written by the service read back as equal models."""

    @pytest.mark.asyncio
    async def test_job_round_trip(self, db: DatabaseService) -> None:
        job = await db.create_job(new_job(custom_prompt="dance", max_seconds=7))
        assert await db.get_job(job.id) == job
        assert await db.get_job("missing") is None

    @pytest.mark.asyncio
    async def test_template_job_round_trip(self, db: DatabaseService) -> None:
        job = await db.create_template_job(
            TemplateJob(name="Clip", pipeline=[overlay_step("s1"), overlay_step("s2")], tiktok_url=TIKTOK_URL)
        )
        stored = await db.get_template_job(job.id)
        assert stored == job
        assert [step.id for step in stored.pipeline] == ["s1", "s2"]

    @pytest.mark.asyncio
    async def test_insert_failure_wrapped(self, supabase: MockSupabaseClient, db: DatabaseService) -> None:
        supabase.failing_tables.add("jobs")
        with pytest.raises(DatabaseError, match="Failed to create job"):
            await db.create_job(new_job())

    @pytest.mark.asyncio
    async def test_list_newest_first(self, db: DatabaseService) -> None:
        old = await db.create_job(new_job(created_at=utcnow() - timedelta(hours=1)))
        new = await db.create_job(new_job())
        assert [job.id for job in await db.list_jobs()] == [new.id, old.id]
        assert [job.id for job in await db.list_jobs(limit=1)] == [new.id]


class TestFieldLevelUpdates:
    """Updates touch only the given columns and honor status guards."""

    @settings(max_examples=50, deadline=None)
    @given(step=st.text(min_size=1, max_size=40), prompt=st.text(max_size=40))
    def test_update_does_not_clobber_other_fields(self, step: str, prompt: str) -> None:
        db = DatabaseService(MockSupabaseClient())

        async def run_test() -> Job:
            job = await db.create_job(new_job(custom_prompt=prompt))
            await db.update_job(job.id, step=step)
            return await db.get_job(job.id)

        stored = asyncio.run(run_test())
        assert stored.step == step
        assert stored.custom_prompt == prompt
        assert stored.status == "queued"

    @pytest.mark.asyncio
    async def test_guard_blocks_write(self, supabase: MockSupabaseClient, db: DatabaseService) -> None:
        job = await db.create_job(new_job(status="completed"))

        result = await db.update_job(job.id, only_if_status=["processing"], status="failed")

        assert result is None
        assert (await db.get_job(job.id)).status == "completed"
        assert supabase.updates == []

    @pytest.mark.asyncio
    async def test_guard_allows_write(self, db: DatabaseService) -> None:
        job = await db.create_job(new_job())
        claimed = await db.update_job(job.id, only_if_status=["queued"], status="processing")
        assert claimed.status == "processing"

    @pytest.mark.asyncio
    async def test_step_results_serialized(self, supabase: MockSupabaseClient, db: DatabaseService) -> None:
        job = await db.create_template_job(
            TemplateJob(name="Clip", pipeline=[overlay_step("s1")], tiktok_url=TIKTOK_URL)
        )
        result = StepResult(step_id="s1", type="text-overlay", label="Text Overlay", output_url="u")

        await db.update_template_job(job.id, step_results=[result], completed_at=utcnow())

        row: Dict[str, Any] = supabase.tables["template_jobs"][job.id]
        assert row["step_results"] == [result.model_dump(mode="json")]
        assert isinstance(row["completed_at"], str)
        assert (await db.get_template_job(job.id)).step_results == [result]

    @pytest.mark.asyncio
    async def test_guarded_delete(self, db: DatabaseService) -> None:
        job = await db.create_template_job(
            TemplateJob(name="Clip", pipeline=[overlay_step("s1")], tiktok_url=TIKTOK_URL)
        )
        await db.update_template_job(job.id, status="processing")

        assert await db.delete_template_job(job.id, only_if_status="queued") is False
        assert await db.delete_template_job(job.id) is True
        assert await db.get_template_job(job.id) is None


class TestParentCounters:
    """Counters change only through the increment function."""

    @settings(max_examples=50, deadline=None)
    @given(outcomes=st.lists(st.booleans(), min_size=1, max_size=20))
    def test_increments_accumulate(self, outcomes) -> None:
        supabase = MockSupabaseClient()
        db = DatabaseService(supabase)

        async def run_test() -> Batch:
            batch = await db.create_batch(Batch(name="b", total_jobs=len(outcomes)))
            for ok in outcomes:
                await db.increment_batch_counters(batch.id, completed=int(ok), failed=int(not ok))
            return await db.get_batch(batch.id)

        stored = asyncio.run(run_test())
        assert stored.completed_jobs == sum(outcomes)
        assert stored.failed_jobs == len(outcomes) - sum(outcomes)
        assert len(supabase.rpc_calls) == len(outcomes)
        assert {call["p_table"] for call in supabase.rpc_calls} == {"batches"}

    @pytest.mark.asyncio
    async def test_increment_missing_batch(self, db: DatabaseService) -> None:
        with pytest.raises(DatabaseError, match="to increment"):
            await db.increment_pipeline_batch_counters("missing", completed=1)

    @pytest.mark.asyncio
    async def test_total_adjustment(self, db: DatabaseService) -> None:
        batch = await db.create_pipeline_batch(
            PipelineBatch(name="p", pipeline=[overlay_step("s1")], total_jobs=2)
        )
        grown = await db.increment_pipeline_batch_counters(batch.id, total=1)
        shrunk = await db.increment_pipeline_batch_counters(batch.id, total=-2)
        assert (grown.total_jobs, shrunk.total_jobs) == (3, 1)


class TestParentStatus:
    """Late siblings never overwrite a terminal parent status."""

    @pytest.mark.asyncio
    async def test_terminal_not_overwritten(self, db: DatabaseService) -> None:
        batch = await db.create_batch(Batch(name="b", total_jobs=1))
        finished = await db.set_batch_status(batch.id, "completed", completed=True)
        assert finished.completed_at is not None

        assert await db.set_batch_status(batch.id, "processing") is None
        assert (await db.get_batch(batch.id)).status == "completed"

    @pytest.mark.asyncio
    async def test_reopen_lifts_guard(self, db: DatabaseService) -> None:
        batch = await db.create_pipeline_batch(
            PipelineBatch(name="p", pipeline=[overlay_step("s1")], total_jobs=1)
        )
        await db.set_pipeline_batch_status(batch.id, "failed", completed=True)

        reopened = await db.set_pipeline_batch_status(batch.id, "processing", reopen=True)

        assert reopened.status == "processing"
        assert reopened.completed_at is None


class TestLookups:
    """Personas, images, tracks, accounts, media records and status scans."""

    @pytest.mark.asyncio
    async def test_persona_with_images(self, supabase: MockSupabaseClient, db: DatabaseService) -> None:
        urls = seed_persona(supabase, "m1", "Mia", image_count=3)

        persona = await db.get_persona("m1")

        assert [image.gcs_url for image in persona.images] == urls
        assert persona.primary_image.gcs_url == urls[0]
        assert await db.get_persona("missing") is None
        assert [img.id for img in await db.get_images_by_ids(["m1-img-2"])] == ["m1-img-2"]
        assert await db.get_images_by_ids([]) == []

    @pytest.mark.asyncio
    async def test_accounts_for_model(self, supabase: MockSupabaseClient, db: DatabaseService) -> None:
        supabase.tables["model_account_mappings"] = {
            "1": {"id": "1", "model_id": "m1", "late_account_id": "acc-a"},
            "2": {"id": "2", "model_id": "m2", "late_account_id": "acc-b"},
        }
        assert await db.get_account_ids_for_model("m1") == ["acc-a"]

    @pytest.mark.asyncio
    async def test_media_file_record(self, supabase: MockSupabaseClient, db: DatabaseService) -> None:
        media_id = await db.create_media_file("out.mp4", "https://x/out.mp4", file_size=10, job_id="j1")
        [row] = supabase.rows("media_files")
        assert row["id"] == media_id
        assert row["job_id"] == "j1"
        assert row["template_job_id"] is None

    @pytest.mark.asyncio
    async def test_rows_by_status(self, db: DatabaseService) -> None:
        old = await db.create_job(new_job(status="processing", created_at=utcnow() - timedelta(minutes=30)))
        fresh = await db.create_job(new_job(status="processing"))
        queued = await db.create_job(new_job(status="queued", created_at=utcnow() - timedelta(minutes=30)))

        assert [job.id for job in await db.get_jobs_by_status("processing")] == [old.id, fresh.id]
        assert [job.id for job in await db.get_jobs_by_status("queued")] == [queued.id]
        assert await db.get_template_jobs_by_status("processing") == []
