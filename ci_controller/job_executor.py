"""
Job execution with scoped environment acquisition.

A job gets its own environment, runs its steps there, and the environment is
torn down on every exit path. Failures stay inside the job: the executor
reports them on the returned JobRun and never raises them to the caller.
"""

import asyncio
import logging
from collections.abc import Callable, Mapping

from ci_common.errors import EnvironmentProvisionError
from ci_common.models import JobRun, JobSpec, StepResult, utcnow

from .actions import ActionRegistry
from .environment import EnvironmentHandle, ExecutionEnvironment
from .step_runner import StepContext, StepRunner

logger = logging.getLogger(__name__)


class JobExecutor:
    """Runs a single job inside an exclusively owned environment."""

    def __init__(
        self,
        environment: ExecutionEnvironment,
        actions: ActionRegistry | None = None,
        step_runner: StepRunner | None = None,
        default_timeout_minutes: float | None = None,
        on_output: Callable[[str, str, str], None] | None = None,
    ):
        """
        Initialize the job executor.

        Args:
            environment: Provider used to acquire each job's environment
            actions: Registry for `uses` steps
            step_runner: Runner for the job's steps
            default_timeout_minutes: Job budget when the job declares none
            on_output: Called with (job, step, line) as output arrives
        """
        self.environment = environment
        self.actions = actions or ActionRegistry()
        self.step_runner = step_runner or StepRunner()
        self.default_timeout_minutes = default_timeout_minutes
        self.on_output = on_output

    async def execute(
        self,
        job: JobSpec,
        *,
        pipeline_env: Mapping[str, str] | None = None,
        context_vars: Mapping[str, str] | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> JobRun:
        """
        Execute a job and report its outcome.

        Args:
            job: Job to run
            pipeline_env: Workflow-level env, overridden by the job's env
            context_vars: Run context variables (CI_*), applied last
            cancel_event: When set, the job stops at the next opportunity

        Returns:
            JobRun in a terminal state
        """
        job_run = JobRun(name=job.name, runs_on=job.runs_on)
        job_run.status = "running"
        job_run.start_time = utcnow()

        if cancel_event is not None and cancel_event.is_set():
            self._finish_without_steps(job, job_run, "cancelled", "Cancelled before start")
            return job_run

        try:
            handle = await self.environment.provision(job.runs_on)
        except (EnvironmentProvisionError, OSError) as e:
            logger.error(f"[{job.name}] environment provisioning failed: {e}")
            self._finish_without_steps(job, job_run, "errored", str(e))
            return job_run

        job_run.environment_id = handle.id
        logger.info(f"[{job.name}] running on {job.runs_on} (environment {handle.id})")

        recorded: list[StepResult] = []
        try:
            self._apply_env(handle, job, pipeline_env, context_vars)
            context = StepContext(
                job_name=job.name,
                environment=self.environment,
                handle=handle,
                actions=self.actions,
                cancel_event=cancel_event,
                deadline=self._deadline(job),
                on_step_start=lambda index: setattr(job_run, "current_step", index),
                on_output=self.on_output,
                results=recorded,
            )
            outcome = await self.step_runner.run(job.steps, context)
            job_run.steps = outcome.steps
            job_run.status = outcome.status
            job_run.failed_step = outcome.failed_step
            job_run.error = outcome.error
        except asyncio.CancelledError:
            job_run.status = "cancelled"
            job_run.error = "Job task was cancelled"
            raise
        except Exception as e:
            logger.error(f"[{job.name}] unexpected error while running steps: {e}", exc_info=True)
            job_run.status = "errored"
            job_run.error = f"Unexpected error: {e}"
            job_run.steps = self._partial_steps(job, recorded, job_run)
        finally:
            await self._release(job.name, handle)
            job_run.end_time = utcnow()

        logger.info(f"[{job.name}] finished with status {job_run.status}")
        return job_run

    def _apply_env(
        self,
        handle: EnvironmentHandle,
        job: JobSpec,
        pipeline_env: Mapping[str, str] | None,
        context_vars: Mapping[str, str] | None,
    ) -> None:
        handle.env.update(pipeline_env or {})
        handle.env.update(job.env)
        handle.env.update(context_vars or {})
        handle.env["CI_JOB_NAME"] = job.name
        handle.env["CI_WORKSPACE"] = str(handle.workspace)

    def _deadline(self, job: JobSpec) -> float | None:
        minutes = job.timeout_minutes or self.default_timeout_minutes
        if minutes is None:
            return None
        return asyncio.get_running_loop().time() + minutes * 60

    async def _release(self, job_name: str, handle: EnvironmentHandle) -> None:
        try:
            await self.environment.teardown(handle)
            logger.debug(f"[{job_name}] released environment {handle.id}")
        except Exception as e:
            logger.warning(
                f"[{job_name}] failed to tear down environment {handle.id}: {e}",
                exc_info=True,
            )

    def _partial_steps(
        self, job: JobSpec, recorded: list[StepResult], job_run: JobRun
    ) -> list[StepResult]:
        """Keep the results recorded so far; the step in flight is errored, the rest skipped."""
        steps = list(recorded)
        for index in range(len(steps), len(job.steps)):
            if index == job_run.current_step:
                job_run.failed_step = index
                steps.append(
                    StepResult(
                        index=index,
                        name=job.steps[index].name,
                        status="errored",
                        error=job_run.error,
                    )
                )
            else:
                steps.append(StepResult(index=index, name=job.steps[index].name, status="skipped"))
        return steps

    def _finish_without_steps(
        self, job: JobSpec, job_run: JobRun, status: str, error: str
    ) -> None:
        job_run.status = status
        job_run.error = error
        job_run.steps = [
            StepResult(index=index, name=step.name, status="skipped")
            for index, step in enumerate(job.steps)
        ]
        job_run.end_time = utcnow()
