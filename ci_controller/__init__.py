"""
CI Controller module.

This module turns a loaded workflow into running jobs: it matches events
against the trigger, provisions one isolated environment per job, runs each
job's steps fail-fast, and aggregates the job outcomes into a pipeline run.
"""

from .actions import ActionRegistry
from .container_manager import DockerEnvironment
from .environment import EnvironmentHandle, ExecutionEnvironment, ExitStatus, LocalEnvironment
from .job_executor import JobExecutor
from .matcher import matches
from .orchestrator import PipelineOrchestrator
from .step_runner import StepContext, StepRunner, StepsOutcome
from .workflow import load_workflow, parse_workflow

__all__ = [
    "ActionRegistry",
    "DockerEnvironment",
    "EnvironmentHandle",
    "ExecutionEnvironment",
    "ExitStatus",
    "JobExecutor",
    "LocalEnvironment",
    "PipelineOrchestrator",
    "StepContext",
    "StepRunner",
    "StepsOutcome",
    "load_workflow",
    "matches",
    "parse_workflow",
]
