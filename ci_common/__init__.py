"""
CI Common module.

This module contains the workflow domain models, the error taxonomy and the
archive interface shared across the CI components (controller, persistence,
client).

The common module has no dependencies on other ci_* modules, making it
a pure domain layer that can be imported by any component.
"""

from .errors import (
    ActionNotFound,
    CIError,
    EnvironmentProvisionError,
    InvalidEvent,
    InvalidSpec,
    StepError,
    StepFailure,
)
from .models import (
    Event,
    JobRun,
    JobSpec,
    NoMatch,
    PipelineRun,
    PipelineSpec,
    ShellCommand,
    Step,
    StepResult,
    ToolchainAction,
    TriggerSpec,
)
from .repository import PipelineRunRepository

__all__ = [
    "ActionNotFound",
    "CIError",
    "EnvironmentProvisionError",
    "Event",
    "InvalidEvent",
    "InvalidSpec",
    "JobRun",
    "JobSpec",
    "NoMatch",
    "PipelineRun",
    "PipelineRunRepository",
    "PipelineSpec",
    "ShellCommand",
    "Step",
    "StepError",
    "StepFailure",
    "StepResult",
    "ToolchainAction",
    "TriggerSpec",
]
