"""
Pipeline orchestration: trigger gate, job fan-out, status aggregation.

Each matching event becomes a PipelineRun whose jobs run as independent
asyncio tasks. A failing job never stops its siblings; the run completes
only once every job has reached a terminal state, so the report always
contains one outcome per declared job.
"""

import asyncio
import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass

from ci_common.models import (
    Event,
    JobRun,
    JobSpec,
    NoMatch,
    PipelineRun,
    PipelineSpec,
    StepResult,
    utcnow,
)
from ci_common.repository import PipelineRunRepository

from .actions import ActionRegistry
from .environment import ExecutionEnvironment
from .job_executor import JobExecutor
from .matcher import matches

logger = logging.getLogger(__name__)


@dataclass
class _ActiveRun:
    run: PipelineRun
    cancel_event: asyncio.Event
    ref: tuple[str, str]


class PipelineOrchestrator:
    """
    Dispatches events against a loaded pipeline.

    The orchestrator holds only the read-only PipelineSpec and the set of
    in-flight runs; all per-job state lives in the job executors.
    """

    def __init__(
        self,
        spec: PipelineSpec,
        environment: ExecutionEnvironment,
        actions: ActionRegistry | None = None,
        repository: PipelineRunRepository | None = None,
        supersede: bool = False,
        default_timeout_minutes: float | None = None,
        on_output: Callable[[str, str, str], None] | None = None,
        executor: JobExecutor | None = None,
    ):
        """
        Initialize the orchestrator.

        Args:
            spec: Loaded pipeline definition
            environment: Provider for job environments
            actions: Registry for `uses` steps
            repository: Archive for finished runs (optional)
            supersede: Cancel a running pipeline when a newer matching event
                       arrives for the same event kind and branch
            default_timeout_minutes: Job budget when a job declares none
            on_output: Called with (job, step, line) as output arrives
            executor: Job executor override (defaults to one built from the
                      arguments above)
        """
        self.spec = spec
        self.repository = repository
        self.supersede = supersede
        self.executor = executor or JobExecutor(
            environment,
            actions=actions,
            default_timeout_minutes=default_timeout_minutes,
            on_output=on_output,
        )
        self._active: dict[str, _ActiveRun] = {}

    @property
    def active_runs(self) -> list[PipelineRun]:
        return [active.run for active in self._active.values()]

    async def dispatch(self, event: Event) -> PipelineRun | NoMatch:
        """
        Run the pipeline for an event if it satisfies the trigger.

        Returns:
            The finished PipelineRun, or NoMatch if the trigger does not
            select the event (nothing is provisioned in that case)
        """
        if not matches(event, self.spec.trigger):
            logger.info(
                f"No match for {event.kind} on {event.branch!r} in pipeline {self.spec.name!r}"
            )
            return NoMatch(
                event=event,
                reason=f"{event.kind} on {event.branch!r} does not satisfy the trigger",
            )

        ref = (event.kind, event.branch)
        if self.supersede:
            await self._cancel_superseded(ref)

        run = PipelineRun(id=str(uuid.uuid4()), pipeline=self.spec.name, event=event)
        cancel_event = asyncio.Event()
        self._active[run.id] = _ActiveRun(run=run, cancel_event=cancel_event, ref=ref)

        try:
            await self._execute(run, cancel_event)
        except asyncio.CancelledError:
            await self._archive(run)
            raise
        finally:
            self._active.pop(run.id, None)

        await self._archive(run)
        return run

    async def cancel(self, run_id: str) -> bool:
        """
        Request cancellation of a running pipeline.

        Jobs stop at their in-flight step and release their environments.

        Returns:
            True if the run was active, False otherwise
        """
        active = self._active.get(run_id)
        if active is None:
            return False
        logger.info(f"Cancelling pipeline run {run_id}")
        active.cancel_event.set()
        return True

    async def _cancel_superseded(self, ref: tuple[str, str]) -> None:
        for run_id, active in list(self._active.items()):
            if active.ref == ref and not active.cancel_event.is_set():
                logger.info(f"Run {run_id} superseded by a newer {ref[0]} on {ref[1]!r}")
                await self.cancel(run_id)

    async def _execute(self, run: PipelineRun, cancel_event: asyncio.Event) -> None:
        run.status = "running"
        run.start_time = utcnow()
        logger.info(
            f"Pipeline {self.spec.name!r} run {run.id} started for "
            f"{run.event.kind} on {run.event.branch!r} with {len(self.spec.jobs)} jobs"
        )

        context_vars = self._context_vars(run)
        tasks = [
            asyncio.create_task(
                self.executor.execute(
                    job,
                    pipeline_env=self.spec.env,
                    context_vars=context_vars,
                    cancel_event=cancel_event,
                ),
                name=f"{run.id}:{job.name}",
            )
            for job in self.spec.jobs
        ]

        try:
            results = await asyncio.gather(*tasks, return_exceptions=True)
        except asyncio.CancelledError:
            # gather has already cancelled every job task and waited for them
            cancel_event.set()
            run.jobs = [
                self._job_result(job, self._task_outcome(task))
                for job, task in zip(self.spec.jobs, tasks)
            ]
            run.status = "cancelled"
            run.end_time = utcnow()
            logger.info(f"Pipeline run {run.id} was cancelled")
            raise

        run.jobs = [
            self._job_result(job, result) for job, result in zip(self.spec.jobs, results)
        ]
        run.status = self._aggregate(run.jobs, cancel_event.is_set())
        run.end_time = utcnow()
        logger.info(f"Pipeline run {run.id} finished with status {run.status}")

    def _job_result(self, job: JobSpec, result: JobRun | BaseException) -> JobRun:
        if isinstance(result, JobRun):
            return result

        if isinstance(result, asyncio.CancelledError):
            status, error = "cancelled", "Job task was cancelled"
        else:
            logger.error(f"[{job.name}] job task raised {result!r}")
            status, error = "errored", f"Job task raised: {result!r}"
        return JobRun(
            name=job.name,
            runs_on=job.runs_on,
            status=status,
            error=error,
            steps=[
                StepResult(index=index, name=step.name, status="skipped")
                for index, step in enumerate(job.steps)
            ],
            end_time=utcnow(),
        )

    @staticmethod
    def _task_outcome(task: asyncio.Task) -> JobRun | BaseException:
        if not task.done() or task.cancelled():
            return asyncio.CancelledError()
        return task.exception() or task.result()

    @staticmethod
    def _aggregate(jobs: list[JobRun], cancel_requested: bool) -> str:
        if all(job.status == "succeeded" for job in jobs):
            return "succeeded"
        if cancel_requested:
            return "cancelled"
        return "failed"

    def _context_vars(self, run: PipelineRun) -> dict[str, str]:
        event = run.event
        return {
            "CI": "true",
            "CI_PIPELINE_ID": run.id,
            "CI_PIPELINE_NAME": self.spec.name,
            "CI_EVENT_NAME": event.kind,
            "CI_REF_NAME": event.branch,
            "CI_SHA": event.sha or "",
            "CI_REPOSITORY": event.repository or "",
        }

    async def _archive(self, run: PipelineRun) -> None:
        if self.repository is None:
            return
        try:
            await self.repository.save_run(run)
        except Exception as e:
            logger.error(f"Failed to archive pipeline run {run.id}: {e}", exc_info=True)
