"""
Sequential, fail-fast step execution inside one environment.

Shell commands and toolchain actions produce the same ExitStatus, so the
runner classifies every step the same way: succeeded, failed (ran and
exited non-zero or timed out), errored (could not be started) or cancelled.
The first non-success step halts the job and every later step is recorded
as skipped without running.
"""

import asyncio
import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Literal

from ci_common.errors import StepError, StepFailure
from ci_common.models import ShellCommand, Step, StepResult, ToolchainAction, utcnow

from .actions import ActionRegistry
from .environment import EnvironmentHandle, ExecutionEnvironment, ExitStatus

logger = logging.getLogger(__name__)

# Shell exit codes for "found but not executable" and "command not found"
NOT_EXECUTABLE_EXIT_CODE = 126
COMMAND_NOT_FOUND_EXIT_CODE = 127

OutcomeStatus = Literal["succeeded", "failed", "errored", "cancelled"]


@dataclass
class StepContext:
    """
    Everything a step needs to run inside a job's environment.

    Attributes:
        job_name: Name of the owning job (for logs and errors)
        environment: Provider that owns the handle
        handle: The job's environment
        actions: Registry used to resolve `uses` steps
        cancel_event: When set, the in-flight step is terminated
        deadline: Event loop time after which the job is out of budget
        on_step_start: Called with the index of each step as it starts
        on_output: Called with (job, step, line) as output arrives
        results: Step results recorded so far, in step order
    """

    job_name: str
    environment: ExecutionEnvironment
    handle: EnvironmentHandle
    actions: ActionRegistry
    cancel_event: asyncio.Event | None = None
    deadline: float | None = None
    on_step_start: Callable[[int], None] | None = None
    on_output: Callable[[str, str, str], None] | None = None
    results: list[StepResult] = field(default_factory=list)

    @property
    def cancelled(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()


@dataclass
class StepsOutcome:
    """Aggregate result of running a job's steps."""

    status: OutcomeStatus
    steps: list[StepResult] = field(default_factory=list)
    failed_step: int | None = None
    error: str | None = None


class StepRunner:
    """Runs steps strictly in order, stopping at the first non-success."""

    async def run(self, steps: Sequence[Step], context: StepContext) -> StepsOutcome:
        results = context.results

        for index, step in enumerate(steps):
            if context.cancelled:
                return self._halt(
                    "cancelled", steps, index, results, None, "Cancelled before step started"
                )

            if context.on_step_start:
                context.on_step_start(index)

            logger.info(f"[{context.job_name}] ▶ {step.name}")
            result = await self._run_step(index, step, context)
            results.append(result)

            if result.succeeded:
                continue

            logger.info(f"[{context.job_name}] ✗ {step.name} ({result.status})")
            return self._halt(result.status, steps, index + 1, results, index, result.error)

        return StepsOutcome(status="succeeded", steps=results)

    def _halt(
        self,
        status: OutcomeStatus,
        steps: Sequence[Step],
        skip_from: int,
        results: list[StepResult],
        failed_step: int | None,
        error: str | None,
    ) -> StepsOutcome:
        for index in range(skip_from, len(steps)):
            results.append(StepResult(index=index, name=steps[index].name, status="skipped"))
        return StepsOutcome(status=status, steps=results, failed_step=failed_step, error=error)

    def _timeout_for(self, step: Step, context: StepContext) -> float | None:
        timeouts = []
        if step.timeout_minutes is not None:
            timeouts.append(step.timeout_minutes * 60)
        if context.deadline is not None:
            remaining = context.deadline - asyncio.get_running_loop().time()
            timeouts.append(max(remaining, 0.0))
        return min(timeouts) if timeouts else None

    async def _run_step(self, index: int, step: Step, context: StepContext) -> StepResult:
        result = StepResult(index=index, name=step.name, status="failed", start_time=utcnow())
        timeout = self._timeout_for(step, context)

        try:
            if timeout is not None and timeout <= 0:
                status = ExitStatus(None, "Job time budget exhausted.\n", timed_out=True)
            elif isinstance(step, ShellCommand):
                status = await self._run_shell(step, context, timeout)
            else:
                status = await self._run_action(step, context, timeout)
        except StepError as e:
            result.status = "errored"
            result.error = str(e)
        except OSError as e:
            result.status = "errored"
            result.error = str(StepError(step.name, str(e)))
        else:
            self._classify(result, step, status, context.job_name)

        result.end_time = utcnow()
        return result

    def _classify(
        self, result: StepResult, step: Step, status: ExitStatus, job_name: str
    ) -> None:
        result.exit_code = status.exit_code
        result.output = status.output

        if status.cancelled:
            result.status = "cancelled"
            result.error = f"step '{step.name}' was cancelled"
        elif status.timed_out:
            result.status = "failed"
            result.error = f"step '{step.name}' timed out"
        elif status.exit_code == 0:
            result.status = "succeeded"
        elif status.exit_code in (NOT_EXECUTABLE_EXIT_CODE, COMMAND_NOT_FOUND_EXIT_CODE):
            result.status = "errored"
            result.error = str(
                StepError(step.name, f"command could not be run (exit={status.exit_code})")
            )
        else:
            result.status = "failed"
            result.error = str(StepFailure(job_name, step.name, result.index, status.exit_code))

    async def _run_shell(
        self, step: ShellCommand, context: StepContext, timeout: float | None
    ) -> ExitStatus:
        on_output = None
        if context.on_output:
            callback = context.on_output

            def on_output(line: str) -> None:
                callback(context.job_name, step.name, line)

        return await context.environment.run_command(
            context.handle,
            step.run,
            env=step.env,
            working_directory=step.working_directory,
            timeout=timeout,
            cancel_event=context.cancel_event,
            on_output=on_output,
        )

    async def _run_action(
        self, step: ToolchainAction, context: StepContext, timeout: float | None
    ) -> ExitStatus:
        # Resolve first so unknown actions error before anything is scheduled
        context.actions.resolve(step.uses, step.name)
        task = asyncio.create_task(
            context.actions.invoke(
                step.uses,
                step.with_params,
                context.handle,
                context.environment,
                step=step.name,
            )
        )

        waiters: set[asyncio.Future] = {task}
        cancel_waiter = None
        if context.cancel_event is not None:
            cancel_waiter = asyncio.create_task(context.cancel_event.wait())
            waiters.add(cancel_waiter)

        try:
            done, _ = await asyncio.wait(
                waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            if cancel_waiter is not None:
                cancel_waiter.cancel()
            if not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

        if task in done:
            return task.result()
        if cancel_waiter is not None and cancel_waiter in done:
            return ExitStatus(None, "\nStep cancelled.\n", cancelled=True)
        return ExitStatus(None, f"\nStep timed out after {timeout:g}s.\n", timed_out=True)
