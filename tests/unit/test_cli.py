"""
Unit tests for the CLI.

Workflows run on the local environment with plain shell commands, so these
tests need nothing but a POSIX shell.
"""

import json
from datetime import UTC, datetime

import pytest
from click.testing import CliRunner

from ci_client.cli import cli, format_time

PASSING_WORKFLOW = """\
name: Checks
on:
  push:
    branches: [main, "release/**"]
jobs:
  lint:
    runs-on: ubuntu-latest
    steps:
      - run: echo linting
  test:
    runs-on: ubuntu-latest
    env:
      GREETING: hello
    steps:
      - run: echo "$GREETING from $CI_JOB_NAME"
"""

FAILING_WORKFLOW = """\
name: Broken
on:
  push:
    branches: [main]
jobs:
  test:
    runs-on: ubuntu-latest
    steps:
      - run: echo before
      - name: Fails
        run: echo "assertion failed" && exit 3
      - run: echo never
  other:
    runs-on: ubuntu-latest
    steps:
      - run: echo still runs
"""


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def write_workflow(tmp_path):
    def write(text: str, name: str = "ci.yml") -> str:
        path = tmp_path / name
        path.write_text(text)
        return str(path)

    return write


@pytest.fixture
def clean_env():
    """Environment variables isolating the CLI from the host configuration."""
    return {
        "CI_ENVIRONMENT": "local",
        "CI_DB_PATH": "",
        "CI_JOB_TIMEOUT_MINUTES": "",
    }


class TestRunCommand:
    """Test suite for `ci run`."""

    def test_successful_run(self, runner, write_workflow, clean_env):
        workflow = write_workflow(PASSING_WORKFLOW)

        result = runner.invoke(cli, ["run", workflow, "--branch", "main"], env=clean_env)

        assert result.exit_code == 0, result.output
        assert "SUCCEEDED" in result.output
        assert "lint" in result.output
        assert "test" in result.output

    def test_json_report(self, runner, write_workflow, clean_env):
        workflow = write_workflow(PASSING_WORKFLOW)

        result = runner.invoke(
            cli,
            ["run", workflow, "--branch", "release/1.0", "--sha", "abc123", "--json"],
            env=clean_env,
        )

        assert result.exit_code == 0, result.output
        report = json.loads(result.output)
        assert report["status"] == "succeeded"
        assert report["event"]["branch"] == "release/1.0"
        assert report["event"]["sha"] == "abc123"
        test_job = next(job for job in report["jobs"] if job["name"] == "test")
        assert test_job["steps"][0]["output"] == "hello from test\n"

    def test_failing_run(self, runner, write_workflow, clean_env):
        workflow = write_workflow(FAILING_WORKFLOW)

        result = runner.invoke(cli, ["run", workflow, "--branch", "main", "--json"], env=clean_env)

        assert result.exit_code == 1
        report = json.loads(result.output)
        assert report["status"] == "failed"
        test_job, other_job = report["jobs"]
        assert test_job["failed_step"] == 1
        assert [s["status"] for s in test_job["steps"]] == ["succeeded", "failed", "skipped"]
        assert test_job["steps"][1]["exit_code"] == 3
        assert "assertion failed" in test_job["steps"][1]["output"]
        assert other_job["status"] == "succeeded"

    def test_failing_run_text_report_shows_output(self, runner, write_workflow, clean_env):
        workflow = write_workflow(FAILING_WORKFLOW)

        result = runner.invoke(cli, ["run", workflow, "--branch", "main"], env=clean_env)

        assert result.exit_code == 1
        assert "FAILED" in result.output
        assert "Fails (exit=3)" in result.output
        assert "assertion failed" in result.output

    def test_no_match(self, runner, write_workflow, clean_env):
        workflow = write_workflow(FAILING_WORKFLOW)

        result = runner.invoke(cli, ["run", workflow, "--branch", "feature-x"], env=clean_env)

        assert result.exit_code == 0
        assert "No match" in result.output

    def test_no_match_json(self, runner, write_workflow, clean_env):
        workflow = write_workflow(PASSING_WORKFLOW)

        result = runner.invoke(
            cli,
            ["run", workflow, "--event", "pull_request", "--branch", "main", "--json"],
            env=clean_env,
        )

        assert result.exit_code == 0
        assert json.loads(result.output)["status"] == "no_match"

    def test_invalid_workflow(self, runner, write_workflow, clean_env):
        workflow = write_workflow("on:\n  push:\n    branches: [main]\njobs: {}\n")

        result = runner.invoke(cli, ["run", workflow, "--branch", "main"], env=clean_env)

        assert result.exit_code == 2
        assert "Error" in result.output

    def test_missing_workflow_file(self, runner, tmp_path, clean_env):
        result = runner.invoke(
            cli, ["run", str(tmp_path / "missing.yml"), "--branch", "main"], env=clean_env
        )
        assert result.exit_code == 2

    def test_unknown_event_kind_rejected(self, runner, write_workflow, clean_env):
        workflow = write_workflow(PASSING_WORKFLOW)
        result = runner.invoke(
            cli, ["run", workflow, "--event", "release", "--branch", "main"], env=clean_env
        )
        assert result.exit_code == 2

    def test_stream_output(self, runner, write_workflow, clean_env):
        workflow = write_workflow(PASSING_WORKFLOW)

        result = runner.invoke(
            cli, ["run", workflow, "--branch", "main", "--stream"], env=clean_env
        )

        assert result.exit_code == 0
        assert "[lint] linting" in result.output

    def test_run_is_archived(self, runner, write_workflow, clean_env, tmp_path):
        workflow = write_workflow(PASSING_WORKFLOW)
        db_path = str(tmp_path / "runs.db")

        result = runner.invoke(
            cli, ["run", workflow, "--branch", "main", "--json", "--db-path", db_path], env=clean_env
        )
        run_id = json.loads(result.output)["id"]

        history = runner.invoke(cli, ["history", "--db-path", db_path, "--json"], env=clean_env)
        assert history.exit_code == 0
        runs = json.loads(history.output)
        assert [r["run_id"] for r in runs] == [run_id]
        assert runs[0]["status"] == "succeeded"

        shown = runner.invoke(cli, ["show", run_id, "--db-path", db_path, "--json"], env=clean_env)
        assert shown.exit_code == 0
        assert [job["name"] for job in json.loads(shown.output)["jobs"]] == ["lint", "test"]

        text = runner.invoke(cli, ["show", run_id, "--db-path", db_path], env=clean_env)
        assert "SUCCEEDED" in text.output


class TestValidateCommand:
    def test_valid_workflow(self, runner, write_workflow):
        workflow = write_workflow(PASSING_WORKFLOW)

        result = runner.invoke(cli, ["validate", workflow])

        assert result.exit_code == 0
        assert "'Checks' is valid" in result.output
        assert "on push: main, release/**" in result.output
        assert "job lint (ubuntu-latest): 1 steps" in result.output

    def test_invalid_workflow(self, runner, write_workflow):
        workflow = write_workflow("on:\n  push:\n    branches: main\njobs:\n  a:\n    steps: []\n")

        result = runner.invoke(cli, ["validate", workflow])

        assert result.exit_code == 2


class TestArchiveCommands:
    def test_history_requires_database(self, runner, clean_env):
        result = runner.invoke(cli, ["history"], env=clean_env)
        assert result.exit_code == 2
        assert "CI_DB_PATH" in result.output

    def test_history_empty(self, runner, tmp_path, clean_env):
        result = runner.invoke(
            cli, ["history", "--db-path", str(tmp_path / "empty.db")], env=clean_env
        )
        assert result.exit_code == 0
        assert "No runs found." in result.output

    def test_history_uses_env_database(self, runner, tmp_path, clean_env):
        clean_env["CI_DB_PATH"] = str(tmp_path / "env.db")
        result = runner.invoke(cli, ["history"], env=clean_env)
        assert result.exit_code == 0

    def test_show_unknown_run(self, runner, tmp_path, clean_env):
        result = runner.invoke(
            cli, ["show", "missing", "--db-path", str(tmp_path / "runs.db")], env=clean_env
        )
        assert result.exit_code == 1
        assert "not found" in result.output


def test_format_time():
    assert format_time(None) == "N/A"
    assert format_time(datetime(2024, 1, 15, 10, 30, 45, tzinfo=UTC)) == "2024-01-15 10:30:45"
