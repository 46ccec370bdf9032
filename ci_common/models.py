"""
Data models for workflow definitions and pipeline runs.

These models represent the domain objects used throughout the application:
the immutable workflow definition (loaded once per invocation) and the
runtime records produced while executing it.
"""

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from types import MappingProxyType
from typing import Any, Literal

from .errors import InvalidEvent

EventKind = Literal["push", "pull_request"]
EVENT_KINDS: tuple[str, ...] = ("push", "pull_request")

StepStatus = Literal["succeeded", "failed", "errored", "skipped", "cancelled"]
JobStatus = Literal["pending", "running", "succeeded", "failed", "errored", "cancelled"]
PipelineStatus = Literal["pending", "running", "succeeded", "failed", "cancelled"]

JOB_TERMINAL_STATES = frozenset({"succeeded", "failed", "errored", "cancelled"})
PIPELINE_TERMINAL_STATES = frozenset({"succeeded", "failed", "cancelled"})


def _frozen_env(env: Mapping[str, str] | None) -> Mapping[str, str]:
    return MappingProxyType(dict(env or {}))


def utcnow() -> datetime:
    return datetime.now(UTC)


def _isoformat(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.isoformat().replace("+00:00", "Z")


@dataclass(frozen=True)
class Event:
    """
    A repository event that may trigger a pipeline.

    For pull requests, ``branch`` is the base branch the pull request targets.
    """

    kind: str
    branch: str
    sha: str | None = None
    repository: str | None = None  # Path or URL used by checkout

    def __post_init__(self) -> None:
        if self.kind not in EVENT_KINDS:
            raise InvalidEvent(
                f"Unsupported event kind {self.kind!r}, expected one of {EVENT_KINDS}"
            )
        if not isinstance(self.branch, str) or not self.branch:
            raise InvalidEvent("Event branch must be a non-empty string")

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "branch": self.branch,
            "sha": self.sha,
            "repository": self.repository,
        }


@dataclass(frozen=True)
class TriggerSpec:
    """
    Event kinds mapped to the branch patterns that trigger a pipeline.

    A kind whose pattern tuple is empty never matches.
    """

    branches: Mapping[str, tuple[str, ...]]

    def __post_init__(self) -> None:
        frozen = {kind: tuple(patterns) for kind, patterns in self.branches.items()}
        object.__setattr__(self, "branches", MappingProxyType(frozen))

    def patterns_for(self, kind: str) -> tuple[str, ...]:
        return self.branches.get(kind, ())


@dataclass(frozen=True)
class ShellCommand:
    """A step that runs a command string through the environment's shell."""

    name: str
    run: str
    env: Mapping[str, str] = field(default_factory=dict)
    working_directory: str | None = None
    timeout_minutes: float | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "env", _frozen_env(self.env))

    @property
    def kind(self) -> str:
        return "run"


@dataclass(frozen=True)
class ToolchainAction:
    """
    A step that invokes an external action such as ``actions/checkout@v4``.

    The identifier is opaque to the runner; it is resolved by the action
    registry at execution time.
    """

    name: str
    uses: str
    with_params: Mapping[str, Any] = field(default_factory=dict)
    env: Mapping[str, str] = field(default_factory=dict)
    timeout_minutes: float | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "with_params", MappingProxyType(dict(self.with_params)))
        object.__setattr__(self, "env", _frozen_env(self.env))

    @property
    def kind(self) -> str:
        return "uses"

    @property
    def action_name(self) -> str:
        return self.uses.split("@", 1)[0]

    @property
    def action_ref(self) -> str | None:
        _, sep, ref = self.uses.partition("@")
        return ref if sep else None


Step = ShellCommand | ToolchainAction


@dataclass(frozen=True)
class JobSpec:
    """A job: an environment label, environment variables and ordered steps."""

    name: str
    runs_on: str
    steps: tuple[Step, ...]
    env: Mapping[str, str] = field(default_factory=dict)
    timeout_minutes: float | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "steps", tuple(self.steps))
        object.__setattr__(self, "env", _frozen_env(self.env))


@dataclass(frozen=True)
class PipelineSpec:
    """
    Root of a loaded workflow document.

    Created once at load time and shared read-only by the matcher, the
    orchestrator and every job executor.
    """

    name: str
    trigger: TriggerSpec
    jobs: tuple[JobSpec, ...]
    env: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "jobs", tuple(self.jobs))
        object.__setattr__(self, "env", _frozen_env(self.env))

    def job(self, name: str) -> JobSpec | None:
        for job in self.jobs:
            if job.name == name:
                return job
        return None


@dataclass
class StepResult:
    """Outcome and captured output of a single step."""

    index: int
    name: str
    status: StepStatus
    exit_code: int | None = None
    output: str = ""
    error: str | None = None
    start_time: datetime | None = None
    end_time: datetime | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == "succeeded"

    def to_dict(self) -> dict[str, Any]:
        return {
            "index": self.index,
            "name": self.name,
            "status": self.status,
            "exit_code": self.exit_code,
            "output": self.output,
            "error": self.error,
            "start_time": _isoformat(self.start_time),
            "end_time": _isoformat(self.end_time),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StepResult":
        return cls(
            index=data["index"],
            name=data["name"],
            status=data["status"],
            exit_code=data.get("exit_code"),
            output=data.get("output", ""),
            error=data.get("error"),
            start_time=_parse_time(data.get("start_time")),
            end_time=_parse_time(data.get("end_time")),
        )


@dataclass
class JobRun:
    """
    Runtime record of one job within a pipeline run.

    Jobs progress through states: pending -> running -> succeeded
    Additional terminal states: failed, errored, cancelled
    """

    name: str
    runs_on: str
    status: JobStatus = "pending"
    environment_id: str | None = None
    current_step: int | None = None
    steps: list[StepResult] = field(default_factory=list)
    failed_step: int | None = None
    error: str | None = None
    start_time: datetime | None = None
    end_time: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in JOB_TERMINAL_STATES

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status,
            "runs_on": self.runs_on,
            "environment_id": self.environment_id,
            "failed_step": self.failed_step,
            "error": self.error,
            "start_time": _isoformat(self.start_time),
            "end_time": _isoformat(self.end_time),
            "steps": [step.to_dict() for step in self.steps],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "JobRun":
        return cls(
            name=data["name"],
            runs_on=data.get("runs_on", ""),
            status=data["status"],
            environment_id=data.get("environment_id"),
            steps=[StepResult.from_dict(s) for s in data.get("steps", [])],
            failed_step=data.get("failed_step"),
            error=data.get("error"),
            start_time=_parse_time(data.get("start_time")),
            end_time=_parse_time(data.get("end_time")),
        )


@dataclass
class PipelineRun:
    """
    One execution of every job in a pipeline in response to one event.

    Runs progress through states: pending -> running -> succeeded
    Additional terminal states: failed, cancelled
    """

    id: str
    pipeline: str
    event: Event
    status: PipelineStatus = "pending"
    jobs: list[JobRun] = field(default_factory=list)
    start_time: datetime | None = None
    end_time: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in PIPELINE_TERMINAL_STATES

    @property
    def succeeded(self) -> bool:
        return self.status == "succeeded"

    def job(self, name: str) -> JobRun | None:
        for job_run in self.jobs:
            if job_run.name == name:
                return job_run
        return None

    def to_dict(self) -> dict[str, Any]:
        """Convert the run to the structured report format."""
        return {
            "id": self.id,
            "pipeline": self.pipeline,
            "status": self.status,
            "event": self.event.to_dict(),
            "start_time": _isoformat(self.start_time),
            "end_time": _isoformat(self.end_time),
            "jobs": [job.to_dict() for job in self.jobs],
        }

    def to_summary_dict(self) -> dict[str, Any]:
        """Convert the run to summary format (without jobs, for listings)."""
        return {
            "run_id": self.id,
            "pipeline": self.pipeline,
            "status": self.status,
            "event": self.event.kind,
            "branch": self.event.branch,
            "start_time": _isoformat(self.start_time),
            "end_time": _isoformat(self.end_time),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PipelineRun":
        event = data["event"]
        return cls(
            id=data["id"],
            pipeline=data["pipeline"],
            event=Event(
                kind=event["kind"],
                branch=event["branch"],
                sha=event.get("sha"),
                repository=event.get("repository"),
            ),
            status=data["status"],
            jobs=[JobRun.from_dict(j) for j in data.get("jobs", [])],
            start_time=_parse_time(data.get("start_time")),
            end_time=_parse_time(data.get("end_time")),
        )


@dataclass(frozen=True)
class NoMatch:
    """Result of dispatching an event that does not satisfy the trigger."""

    event: Event
    reason: str

    def to_dict(self) -> dict[str, Any]:
        return {"status": "no_match", "event": self.event.to_dict(), "reason": self.reason}


def _parse_time(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None
