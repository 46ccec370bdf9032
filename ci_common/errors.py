"""
Error taxonomy for workflow loading and pipeline execution.

Only InvalidSpec is fatal to a whole invocation. Environment and step errors
are scoped to a single job and surface in that job's report entry.
"""


class CIError(Exception):
    """Base class for all errors raised by the CI system."""


class InvalidSpec(CIError):
    """The workflow document is malformed; raised at load time."""

    def __init__(self, message: str, path: str | None = None):
        self.message = message
        self.path = path
        super().__init__(f"{path}: {message}" if path else message)


class InvalidEvent(CIError, ValueError):
    """The event descriptor is malformed."""


class EnvironmentProvisionError(CIError):
    """An execution environment could not be provisioned or used."""

    def __init__(self, label: str, message: str):
        self.label = label
        self.message = message
        super().__init__(f"Failed to provision environment {label!r}: {message}")


class StepFailure(CIError):
    """A step ran and exited with a failing status."""

    def __init__(self, job: str, step: str, index: int, exit_code: int | None):
        self.job = job
        self.step = step
        self.index = index
        self.exit_code = exit_code
        super().__init__(
            f"[{job}] step {index} '{step}' failed (exit={exit_code})"
        )


class StepError(CIError):
    """A step could not be invoked at all."""

    def __init__(self, step: str, message: str):
        self.step = step
        self.message = message
        super().__init__(f"step '{step}' could not be started: {message}")


class ActionNotFound(StepError):
    """A toolchain action identifier could not be resolved."""

    def __init__(self, step: str, uses: str):
        self.uses = uses
        super().__init__(step, f"action {uses!r} is not registered")
