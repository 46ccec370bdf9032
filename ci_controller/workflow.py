"""
Workflow document loader.

Parses a GitHub-Actions style YAML document into an immutable PipelineSpec.
Every structural problem is reported as InvalidSpec before anything runs.
"""

import logging
from pathlib import Path
from typing import Any

import yaml

from ci_common.errors import InvalidSpec
from ci_common.models import (
    EVENT_KINDS,
    JobSpec,
    PipelineSpec,
    ShellCommand,
    Step,
    ToolchainAction,
    TriggerSpec,
)

logger = logging.getLogger(__name__)


def load_workflow(path: str | Path) -> PipelineSpec:
    """
    Load a workflow document from a YAML file.

    Args:
        path: Path to the workflow file

    Returns:
        PipelineSpec built from the document

    Raises:
        InvalidSpec: If the file is missing, unreadable or malformed
    """
    wf_path = Path(path).expanduser()
    if not wf_path.is_file():
        raise InvalidSpec(f"Workflow file not found: {wf_path}")

    try:
        text = wf_path.read_text()
    except OSError as e:
        raise InvalidSpec(f"Cannot read workflow file {wf_path}: {e}") from e

    spec = parse_workflow(text, default_name=wf_path.stem)
    logger.debug(f"Loaded workflow {spec.name!r} from {wf_path} with {len(spec.jobs)} jobs")
    return spec


def parse_workflow(text: str, default_name: str = "workflow") -> PipelineSpec:
    """
    Parse a workflow document from YAML text.

    Raises:
        InvalidSpec: If the YAML is invalid or the document is malformed
    """
    try:
        document = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise InvalidSpec(f"Invalid YAML: {e}") from e

    return build_pipeline(document, default_name=default_name)


def build_pipeline(document: Any, default_name: str = "workflow") -> PipelineSpec:
    """Validate an already-decoded document and build a PipelineSpec."""
    if not isinstance(document, dict):
        raise InvalidSpec("Workflow document must be a mapping")

    name = document.get("name", default_name)
    if not isinstance(name, str) or not name:
        raise InvalidSpec("Workflow name must be a non-empty string", "name")

    # YAML 1.1 reads the bare key `on` as boolean True
    if "on" in document:
        on_section = document["on"]
    else:
        on_section = document.get(True)

    trigger = _parse_trigger(on_section)
    env = _parse_env(document.get("env"), "env")
    jobs = _parse_jobs(document.get("jobs"))

    return PipelineSpec(name=name, trigger=trigger, jobs=jobs, env=env)


def _parse_trigger(section: Any) -> TriggerSpec:
    if not section:
        raise InvalidSpec("Workflow must declare at least one trigger", "on")
    if not isinstance(section, dict):
        raise InvalidSpec(
            "Trigger must be a mapping of event kind to branch filter", "on"
        )

    branches: dict[str, tuple[str, ...]] = {}
    for kind, config in section.items():
        path = f"on.{kind}"
        if kind not in EVENT_KINDS:
            raise InvalidSpec(
                f"Unsupported event kind {kind!r}, expected one of {EVENT_KINDS}", path
            )
        if not isinstance(config, dict) or "branches" not in config:
            raise InvalidSpec("Trigger must declare a branches list", path)

        patterns = config["branches"]
        if isinstance(patterns, str):
            patterns = [patterns]
        if not isinstance(patterns, list) or not patterns:
            raise InvalidSpec("Trigger references zero branches", f"{path}.branches")
        for pattern in patterns:
            if not isinstance(pattern, str) or not pattern:
                raise InvalidSpec(
                    f"Branch pattern must be a non-empty string, got {pattern!r}",
                    f"{path}.branches",
                )
        branches[kind] = tuple(patterns)

    return TriggerSpec(branches=branches)


def _parse_env(section: Any, path: str) -> dict[str, str]:
    if section is None:
        return {}
    if not isinstance(section, dict):
        raise InvalidSpec("env must be a mapping", path)

    env: dict[str, str] = {}
    for key, value in section.items():
        if not isinstance(key, str) or not key:
            raise InvalidSpec(f"Invalid environment variable name {key!r}", path)
        if isinstance(value, bool):
            env[key] = "true" if value else "false"
        elif isinstance(value, (str, int, float)):
            env[key] = str(value)
        else:
            raise InvalidSpec(
                f"Environment variable {key!r} must be a scalar, got {type(value).__name__}",
                path,
            )
    return env


def _parse_timeout(value: Any, path: str) -> float | None:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        raise InvalidSpec(f"timeout-minutes must be a positive number, got {value!r}", path)
    return float(value)


def _parse_jobs(section: Any) -> tuple[JobSpec, ...]:
    if not section:
        raise InvalidSpec("Workflow must declare at least one job", "jobs")
    if not isinstance(section, dict):
        raise InvalidSpec("jobs must be a mapping of job id to job", "jobs")

    return tuple(_parse_job(job_id, config) for job_id, config in section.items())


def _parse_job(job_id: Any, config: Any) -> JobSpec:
    path = f"jobs.{job_id}"
    if not isinstance(job_id, str) or not job_id:
        raise InvalidSpec(f"Invalid job id {job_id!r}", "jobs")
    if not isinstance(config, dict):
        raise InvalidSpec("Job must be a mapping", path)

    runs_on = config.get("runs-on")
    if not isinstance(runs_on, str) or not runs_on:
        raise InvalidSpec("Job must declare runs-on", f"{path}.runs-on")

    raw_steps = config.get("steps")
    if not isinstance(raw_steps, list) or not raw_steps:
        raise InvalidSpec("Job must declare at least one step", f"{path}.steps")

    steps = tuple(
        _parse_step(step, index, f"{path}.steps[{index}]")
        for index, step in enumerate(raw_steps)
    )

    return JobSpec(
        name=job_id,
        runs_on=runs_on,
        steps=steps,
        env=_parse_env(config.get("env"), f"{path}.env"),
        timeout_minutes=_parse_timeout(
            config.get("timeout-minutes"), f"{path}.timeout-minutes"
        ),
    )


def _parse_step(config: Any, index: int, path: str) -> Step:
    if not isinstance(config, dict):
        raise InvalidSpec("Step must be a mapping", path)

    has_run = "run" in config
    has_uses = "uses" in config
    if has_run == has_uses:
        raise InvalidSpec("Step must declare exactly one of run or uses", path)

    env = _parse_env(config.get("env"), f"{path}.env")
    timeout = _parse_timeout(config.get("timeout-minutes"), f"{path}.timeout-minutes")

    if has_run:
        command = config["run"]
        if not isinstance(command, str) or not command.strip():
            raise InvalidSpec("run must be a non-empty command string", path)
        working_directory = config.get("working-directory")
        if working_directory is not None and not isinstance(working_directory, str):
            raise InvalidSpec("working-directory must be a string", path)
        return ShellCommand(
            name=str(config.get("name") or _first_line(command)),
            run=command,
            env=env,
            working_directory=working_directory,
            timeout_minutes=timeout,
        )

    uses = config["uses"]
    if not isinstance(uses, str) or not uses.strip():
        raise InvalidSpec("uses must be a non-empty action identifier", path)
    params = config.get("with") or {}
    if not isinstance(params, dict):
        raise InvalidSpec("with must be a mapping", f"{path}.with")
    return ToolchainAction(
        name=str(config.get("name") or uses),
        uses=uses.strip(),
        with_params=params,
        env=env,
        timeout_minutes=timeout,
    )


def _first_line(command: str) -> str:
    return command.strip().splitlines()[0]
