"""Pipeline runner: executes a template job's enabled steps in order."""

import asyncio
import logging
from typing import Any, List, Optional

from src.models.job import JobStatus, utcnow
from src.models.pipeline import StepResult, TemplateJob
from src.services.database import DatabaseService
from src.services.executors import StepContext, StepExecutor
from src.utils.errors import DatabaseError, PipelineError
from src.utils.retry import with_retry

logger = logging.getLogger(__name__)


def error_message(error: BaseException) -> str:
    """Human-readable failure reason stored on a job."""
    return str(error) or error.__class__.__name__


class PipelineRunner:
    """
    Drives a TemplateJob through ``queued -> processing -> completed|failed``.

    State is persisted at every step boundary: the result list, the
    number of finished steps and a label naming the next step. A failing
    step stops the run; later steps are never attempted. Step results
    already present on the row (seeded by a regenerate) are not executed
    again and the chain resumes from the last of them.
    """

    def __init__(
        self,
        db: DatabaseService,
        executor: StepExecutor,
        step_timeout: Optional[float] = None,
    ) -> None:
        """
        Initialize the PipelineRunner.

        Args:
            db: Database service holding the job rows
            executor: Step dispatcher
            step_timeout: Upper bound in seconds for a single step
        """
        self.db = db
        self.executor = executor
        self.step_timeout = step_timeout

    async def run(self, job_id: str) -> Optional[JobStatus]:
        """
        Execute a queued template job to a terminal state.

        Returns:
            The terminal status this run reached, None when the job was
            missing or not queued (nothing was executed)
        """
        job = await self.db.get_template_job(job_id)
        if job is None:
            logger.error(f"Template job {job_id} not found")
            return None
        if job.status != "queued":
            logger.info(f"Template job {job_id} is {job.status}, not running it")
            return None

        steps = job.enabled_steps
        results: List[StepResult] = list(job.step_results)
        first_pending = next(
            (step for step in steps if step.id not in {r.step_id for r in results}), None
        )
        claimed = await self.db.update_template_job(
            job_id,
            only_if_status=["queued"],
            status="processing",
            total_steps=len(steps),
            current_step=len(results),
            step=first_pending.display_label if first_pending else "Finalizing",
        )
        if claimed is None:
            logger.info(f"Template job {job_id} was claimed elsewhere")
            return None

        logger.info(f"Running template job {job_id}: {len(steps)} steps, {len(results)} seeded")
        try:
            output_url = await self._run_steps(job, results)
        except Exception as e:
            logger.error(f"Template job {job_id} failed at step {len(results) + 1}: {e}")
            return await self._finish(
                job_id, status="failed", step="Failed", error=error_message(e)
            )

        finished = await self._finish(
            job_id,
            status="completed",
            step="Done!",
            output_url=output_url,
            current_step=len(steps),
            completed_at=utcnow(),
        )
        if finished:
            logger.info(f"Template job {job_id} completed")
        return finished

    @with_retry(max_attempts=3, base_delay=0.5, exceptions=(DatabaseError,))
    async def _finish(self, job_id: str, **fields: Any) -> Optional[JobStatus]:
        """
        Write the terminal status of a job this runner claimed.

        Returns:
            The status written, None when the row had already left
            ``processing``
        """
        updated = await self.db.update_template_job(job_id, only_if_status=["processing"], **fields)
        if updated is None:
            logger.warning(f"Template job {job_id} was settled elsewhere")
            return None
        return updated.status

    async def _run_steps(self, job: TemplateJob, results: List[StepResult]) -> str:
        """
        Execute every enabled step without a result, appending to ``results``.

        Returns:
            The final output reference
        """
        steps = job.enabled_steps
        done = {result.step_id for result in results}
        input_url = results[-1].output_url if results else job.source_url

        for index, step in enumerate(steps):
            if step.id in done:
                continue

            label = step.display_label

            async def on_progress(message: str, label: str = label) -> None:
                await self.db.update_template_job(job.id, step=f"{label}: {message}")

            context = StepContext(
                job_id=job.id,
                input_url=input_url,
                results=list(results),
                on_progress=on_progress,
            )
            logger.info(f"Template job {job.id} step {index + 1}/{len(steps)}: {label}")
            outcome = await self._execute(step, context)

            results.append(
                StepResult(
                    step_id=step.id,
                    type=step.type,
                    label=label,
                    output_url=outcome.output_url,
                    items=outcome.items,
                )
            )
            input_url = outcome.output_url
            upcoming = steps[index + 1].display_label if index + 1 < len(steps) else "Finalizing"
            await self.db.update_template_job(
                job.id,
                step_results=results,
                current_step=len(results),
                step=upcoming,
            )

        if not input_url:
            raise PipelineError("Pipeline produced no output")
        return input_url

    async def _execute(self, step, context: StepContext):
        if self.step_timeout is None:
            return await self.executor.execute(step, context)
        try:
            return await asyncio.wait_for(
                self.executor.execute(step, context), timeout=self.step_timeout
            )
        except asyncio.TimeoutError:
            raise PipelineError(f"{step.display_label} timed out after {self.step_timeout:g}s")
