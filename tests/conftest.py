"""
Shared fixtures for the CI test suite.

FakeEnvironment stands in for a real execution environment: commands return
scripted results and every provision/teardown is recorded so tests can check
isolation and cleanup.
"""

import asyncio
import shutil
import tempfile
from collections.abc import Mapping
from pathlib import Path

import pytest

from ci_common.errors import EnvironmentProvisionError
from ci_controller.environment import EnvironmentHandle, ExecutionEnvironment, ExitStatus
from ci_controller.workflow import parse_workflow

RUST_WORKFLOW = """\
name: Rust

on:
  push:
    branches: [main]
  pull_request:
    branches: [main]

jobs:
  test:
    runs-on: ubuntu-latest
    env:
      RUST_BACKTRACE: 1
    steps:
      - run: rustup update stable
      - uses: actions/checkout@v4
      - run: cargo test

  rustfmt:
    runs-on: ubuntu-latest
    steps:
      - run: rustup update stable
      - uses: actions/checkout@v4
      - run: cargo fmt -- --check
"""


class FakeEnvironment(ExecutionEnvironment):
    """Scripted execution environment that records everything it is asked to do."""

    def __init__(
        self,
        results: Mapping[str, tuple[int, str]] | None = None,
        fail_labels: set[str] | None = None,
        delay: float = 0.0,
    ):
        self.results = dict(results or {})
        self.fail_labels = fail_labels or set()
        self.delay = delay
        self.provisioned: list[EnvironmentHandle] = []
        self.torn_down: list[str] = []
        self.commands: list[tuple[str, str, dict[str, str]]] = []
        self.running = 0
        self.max_running = 0

    async def provision(self, label: str) -> EnvironmentHandle:
        if label in self.fail_labels:
            raise EnvironmentProvisionError(label, "no runner available")
        handle = EnvironmentHandle(
            id=f"env-{len(self.provisioned) + 1}",
            label=label,
            workspace=Path(tempfile.mkdtemp(prefix="ci_fake_")),
        )
        self.provisioned.append(handle)
        return handle

    async def teardown(self, handle: EnvironmentHandle) -> None:
        self.torn_down.append(handle.id)
        shutil.rmtree(handle.workspace, ignore_errors=True)

    async def run_command(
        self,
        handle,
        command,
        env=None,
        working_directory=None,
        timeout=None,
        cancel_event=None,
        on_output=None,
    ) -> ExitStatus:
        merged = dict(handle.env)
        merged.update(env or {})
        self.commands.append((handle.id, command, merged))

        self.running += 1
        self.max_running = max(self.max_running, self.running)
        try:
            if self.delay:
                if cancel_event is not None:
                    try:
                        await asyncio.wait_for(cancel_event.wait(), timeout=self.delay)
                        return ExitStatus(None, "\nStep cancelled.\n", cancelled=True)
                    except asyncio.TimeoutError:
                        pass
                else:
                    await asyncio.sleep(self.delay)

            exit_code, output = self.results.get(command, (0, f"ran {command}\n"))
            if on_output:
                for line in output.splitlines(keepends=True):
                    on_output(line)
            return ExitStatus(exit_code, output)
        finally:
            self.running -= 1

    def commands_for(self, env_id: str) -> list[str]:
        return [command for owner, command, _ in self.commands if owner == env_id]


@pytest.fixture
def fake_environment():
    """Create a FakeEnvironment where every command succeeds."""
    return FakeEnvironment()


@pytest.fixture
def environment_factory():
    """Return the FakeEnvironment class for tests that need custom scripts."""
    return FakeEnvironment


@pytest.fixture
def rust_workflow():
    """The test + rustfmt workflow used by the Rust project."""
    return parse_workflow(RUST_WORKFLOW)


@pytest.fixture
def rust_workflow_text():
    return RUST_WORKFLOW


@pytest.fixture
def source_repo(tmp_path):
    """A plain project directory that checkout copies into job workspaces."""
    repo = tmp_path / "project"
    repo.mkdir()
    (repo / "Cargo.toml").write_text('[package]\nname = "demo"\nversion = "0.1.0"\n')
    (repo / "src").mkdir()
    (repo / "src" / "lib.rs").write_text("pub fn answer() -> u32 { 42 }\n")
    return repo
