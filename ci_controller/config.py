"""
Runner configuration from environment variables.

Environment Variables:
    CI_ENVIRONMENT: Execution environment, "local" or "docker" (default: local)
    CI_CONTAINER_PREFIX: Container name prefix for namespace isolation (default: ci_)
    CI_RUNNER_IMAGES: runs-on label to Docker image mapping,
                      "label=image,label=image" (default: ubuntu-latest=rust:latest)
    CI_DB_PATH: SQLite database for archived runs (default: none, no archive)
    CI_JOB_TIMEOUT_MINUTES: Job budget when a workflow declares none (default: none)

Command-line options override environment variables.
"""

import logging
import os
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

ENVIRONMENT_KINDS = ("local", "docker")
DEFAULT_RUNNER_IMAGES = {"ubuntu-latest": "rust:latest"}


@dataclass
class RunnerConfig:
    """Resolved settings for one CLI invocation."""

    environment: str = "local"
    container_prefix: str = "ci_"
    runner_images: dict[str, str] = field(
        default_factory=lambda: dict(DEFAULT_RUNNER_IMAGES)
    )
    db_path: str | None = None
    job_timeout_minutes: float | None = None

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None) -> "RunnerConfig":
        env = os.environ if environ is None else environ
        return cls(
            environment=get_environment_kind(env.get("CI_ENVIRONMENT")),
            container_prefix=env.get("CI_CONTAINER_PREFIX", "ci_"),
            runner_images=parse_runner_images(env.get("CI_RUNNER_IMAGES")),
            db_path=env.get("CI_DB_PATH") or None,
            job_timeout_minutes=parse_timeout(env.get("CI_JOB_TIMEOUT_MINUTES")),
        )


def get_environment_kind(value: str | None) -> str:
    if not value:
        return "local"
    kind = value.strip().lower()
    if kind not in ENVIRONMENT_KINDS:
        logger.warning(f"Invalid CI_ENVIRONMENT={value}, using default local")
        return "local"
    return kind


def parse_runner_images(value: str | None) -> dict[str, str]:
    """
    Parse a "label=image,label=image" mapping.

    Malformed entries are skipped with a warning; an empty or missing value
    yields the default mapping.
    """
    if not value:
        return dict(DEFAULT_RUNNER_IMAGES)

    images: dict[str, str] = {}
    for entry in value.split(","):
        entry = entry.strip()
        if not entry:
            continue
        label, sep, image = entry.partition("=")
        if not sep or not label.strip() or not image.strip():
            logger.warning(f"Ignoring malformed CI_RUNNER_IMAGES entry {entry!r}")
            continue
        images[label.strip()] = image.strip()

    return images or dict(DEFAULT_RUNNER_IMAGES)


def parse_timeout(value: str | None) -> float | None:
    if not value:
        return None
    try:
        minutes = float(value)
    except ValueError:
        logger.warning(f"Invalid CI_JOB_TIMEOUT_MINUTES={value}, using no timeout")
        return None
    if minutes <= 0:
        logger.warning(f"Invalid CI_JOB_TIMEOUT_MINUTES={value}, using no timeout")
        return None
    return minutes
