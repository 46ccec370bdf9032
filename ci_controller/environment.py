"""
Execution environments for CI jobs.

An execution environment is provisioned once per job, exclusively owned by
that job, and torn down when the job finishes. This module defines the
interface plus a local implementation that gives every job a fresh temporary
workspace on the host and runs commands through the host shell.
"""

import asyncio
import logging
import os
import shutil
import tempfile
import uuid
from abc import ABC, abstractmethod
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from pathlib import Path

from ci_common.errors import EnvironmentProvisionError

logger = logging.getLogger(__name__)

OutputCallback = Callable[[str], None]

# Seconds between cancel/deadline checks while waiting for process output
READ_POLL_INTERVAL = 0.1

# Bytes requested per read of process output
READ_CHUNK_SIZE = 64 * 1024


@dataclass
class ExitStatus:
    """Result of running a command or action inside an environment."""

    exit_code: int | None
    output: str = ""
    timed_out: bool = False
    cancelled: bool = False

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0 and not self.timed_out and not self.cancelled


@dataclass
class EnvironmentHandle:
    """
    A provisioned execution environment.

    Attributes:
        id: Unique identifier of this environment instance
        label: The runs-on label it was provisioned for
        workspace: Host path of the job's workspace directory
        container_id: Docker container ID (None for local environments)
        env: Environment variables applied to every command
    """

    id: str
    label: str
    workspace: Path
    container_id: str | None = None
    env: dict[str, str] = field(default_factory=dict)


class ExecutionEnvironment(ABC):
    """Provisions isolated environments and runs commands inside them."""

    @abstractmethod
    async def provision(self, label: str) -> EnvironmentHandle:
        """
        Acquire a fresh environment for a runs-on label.

        Raises:
            EnvironmentProvisionError: If no environment can be provisioned
        """

    @abstractmethod
    async def teardown(self, handle: EnvironmentHandle) -> None:
        """Release every resource held by the environment."""

    @abstractmethod
    async def run_command(
        self,
        handle: EnvironmentHandle,
        command: str,
        env: Mapping[str, str] | None = None,
        working_directory: str | None = None,
        timeout: float | None = None,
        cancel_event: asyncio.Event | None = None,
        on_output: OutputCallback | None = None,
    ) -> ExitStatus:
        """
        Run a shell command inside the environment and wait for it to exit.

        Args:
            handle: Environment to run in
            command: Shell command string
            env: Extra variables layered over handle.env
            working_directory: Directory relative to the workspace
            timeout: Seconds before the command is terminated
            cancel_event: When set, the command is terminated
            on_output: Called with every output line as it arrives

        Raises:
            OSError: If the command cannot be spawned
        """


async def stream_process(
    process: asyncio.subprocess.Process,
    timeout: float | None = None,
    cancel_event: asyncio.Event | None = None,
    on_output: OutputCallback | None = None,
) -> ExitStatus:
    """
    Collect a process's output line by line until it exits.

    Output is read in chunks and split on newlines here, so a single line
    may be arbitrarily long. The read uses a short timeout so cancellation
    and the deadline are checked while the process is quiet. The process is
    terminated if collection stops for any reason other than its exit.
    """
    assert process.stdout is not None, (
        "stdout should be available when PIPE is specified"
    )

    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout if timeout is not None else None
    output: list[str] = []
    pending = b""

    def emit(data: bytes) -> None:
        text = data.decode(errors="replace")
        output.append(text)
        if on_output:
            on_output(text)

    def flush() -> None:
        if pending:
            emit(pending)

    try:
        while True:
            if cancel_event and cancel_event.is_set():
                await _terminate(process)
                flush()
                output.append("\nStep cancelled.\n")
                return ExitStatus(process.returncode, "".join(output), cancelled=True)

            if deadline is not None and loop.time() >= deadline:
                await _terminate(process)
                flush()
                output.append(f"\nStep timed out after {timeout:g}s.\n")
                return ExitStatus(process.returncode, "".join(output), timed_out=True)

            try:
                chunk = await asyncio.wait_for(
                    process.stdout.read(READ_CHUNK_SIZE), timeout=READ_POLL_INTERVAL
                )
            except asyncio.TimeoutError:
                continue

            if not chunk:
                break
            *lines, pending = (pending + chunk).split(b"\n")
            for line in lines:
                emit(line + b"\n")

        flush()
        await process.wait()
        return ExitStatus(process.returncode, "".join(output))
    except BaseException:
        await _terminate(process)
        raise


async def communicate(process: asyncio.subprocess.Process) -> tuple[bytes, bytes]:
    """Wait for a short-lived process, terminating it if the wait is cancelled."""
    try:
        stdout, stderr = await process.communicate()
    except asyncio.CancelledError:
        await _terminate(process)
        raise
    return stdout or b"", stderr or b""


async def _terminate(process: asyncio.subprocess.Process) -> None:
    try:
        process.terminate()
    except ProcessLookupError:
        pass
    await process.wait()


class LocalEnvironment(ExecutionEnvironment):
    """
    Runs each job in its own temporary workspace on the host.

    Commands inherit the host's environment variables plus the handle's,
    but each job gets its own workspace directory and its own copy of the
    variables.
    """

    def __init__(
        self,
        labels: set[str] | None = None,
        shell: str = "sh",
        workspace_root: str | None = None,
    ):
        """
        Initialize the local environment provider.

        Args:
            labels: Accepted runs-on labels (None accepts any label)
            shell: Shell used to run command strings
            workspace_root: Parent directory for job workspaces
        """
        self.labels = labels
        self.shell = shell
        self.workspace_root = workspace_root

    async def provision(self, label: str) -> EnvironmentHandle:
        if self.labels is not None and label not in self.labels:
            raise EnvironmentProvisionError(
                label, f"no local runner for label (known: {sorted(self.labels)})"
            )

        env_id = str(uuid.uuid4())
        try:
            workspace = tempfile.mkdtemp(prefix=f"ci_job_{env_id[:8]}_", dir=self.workspace_root)
        except OSError as e:
            raise EnvironmentProvisionError(label, str(e)) from e

        logger.debug(f"Provisioned local environment {env_id} at {workspace}")
        return EnvironmentHandle(id=env_id, label=label, workspace=Path(workspace))

    async def teardown(self, handle: EnvironmentHandle) -> None:
        logger.debug(f"Removing local workspace {handle.workspace}")
        await asyncio.to_thread(shutil.rmtree, handle.workspace, ignore_errors=True)

    async def run_command(
        self,
        handle: EnvironmentHandle,
        command: str,
        env: Mapping[str, str] | None = None,
        working_directory: str | None = None,
        timeout: float | None = None,
        cancel_event: asyncio.Event | None = None,
        on_output: OutputCallback | None = None,
    ) -> ExitStatus:
        cwd = handle.workspace / (working_directory or ".")
        if not cwd.is_dir():
            raise FileNotFoundError(f"working directory not found: {cwd}")

        process_env = os.environ.copy()
        process_env.update(handle.env)
        process_env.update(env or {})

        process = await asyncio.create_subprocess_exec(
            self.shell,
            "-c",
            command,
            cwd=str(cwd),
            env=process_env,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
        return await stream_process(process, timeout, cancel_event, on_output)
