"""
Unit tests for ci_controller.environment.

stream_process is tested with mocked processes, the local environment with
real shell subprocesses in temporary workspaces.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from ci_common.errors import EnvironmentProvisionError
from ci_controller.environment import (
    ExitStatus,
    LocalEnvironment,
    communicate,
    stream_process,
)


def mock_process(lines: list[bytes], returncode: int = 0) -> AsyncMock:
    process = AsyncMock()
    process.stdout = AsyncMock()
    process.stdout.read = AsyncMock(side_effect=lines)
    process.returncode = returncode
    process.wait = AsyncMock()
    process.terminate = MagicMock()
    return process


class TestExitStatus:
    def test_succeeded(self):
        assert ExitStatus(0).succeeded
        assert not ExitStatus(1).succeeded
        assert not ExitStatus(0, timed_out=True).succeeded
        assert not ExitStatus(None, cancelled=True).succeeded


class TestStreamProcess:
    """Test suite for stream_process."""

    @pytest.mark.asyncio
    async def test_collects_output(self):
        """Test that every line is captured and forwarded to the callback."""
        process = mock_process([b"line 1\n", b"line 2\n", b""], returncode=0)
        seen = []

        status = await stream_process(process, on_output=seen.append)

        assert status.exit_code == 0
        assert status.output == "line 1\nline 2\n"
        assert seen == ["line 1\n", "line 2\n"]
        process.wait.assert_awaited()

    @pytest.mark.asyncio
    async def test_nonzero_exit(self):
        process = mock_process([b"error\n", b""], returncode=3)
        status = await stream_process(process)
        assert status.exit_code == 3
        assert not status.succeeded

    @pytest.mark.asyncio
    async def test_lines_split_across_reads(self):
        """Test that lines are reassembled when a read ends mid-line."""
        process = mock_process([b"par", b"tial\nsecond\nno new", b"line", b""])
        seen = []

        status = await stream_process(process, on_output=seen.append)

        assert status.output == "partial\nsecond\nno newline"
        assert seen == ["partial\n", "second\n", "no newline"]

    @pytest.mark.asyncio
    async def test_callback_error_terminates_process(self):
        process = mock_process([b"line 1\n", b""])

        def broken(line):
            raise RuntimeError("display closed")

        with pytest.raises(RuntimeError, match="display closed"):
            await stream_process(process, on_output=broken)

        process.terminate.assert_called_once()

    @pytest.mark.asyncio
    async def test_cancel_event_terminates_process(self):
        """Test that setting the cancel event terminates the process."""
        cancel_event = asyncio.Event()
        call_count = 0

        async def read(n):
            nonlocal call_count
            call_count += 1
            if call_count == 1:
                cancel_event.set()
                return b"started\n"
            return b"never read\n"

        process = mock_process([])
        process.stdout.read = read

        status = await stream_process(process, cancel_event=cancel_event)

        assert status.cancelled
        assert status.output.startswith("started\n")
        assert "cancelled" in status.output
        process.terminate.assert_called_once()

    @pytest.mark.asyncio
    async def test_timeout_terminates_quiet_process(self):
        """Test that a process producing no output is stopped at the deadline."""

        async def read(n):
            await asyncio.sleep(1)
            return b""

        process = mock_process([])
        process.stdout.read = read

        status = await stream_process(process, timeout=0.2)

        assert status.timed_out
        assert not status.succeeded
        process.terminate.assert_called_once()

    @pytest.mark.asyncio
    async def test_terminate_after_exit_is_ignored(self):
        cancel_event = asyncio.Event()
        cancel_event.set()
        process = mock_process([])
        process.terminate = MagicMock(side_effect=ProcessLookupError)

        status = await stream_process(process, cancel_event=cancel_event)

        assert status.cancelled


class TestCommunicate:
    """Test suite for communicate."""

    @pytest.mark.asyncio
    async def test_returns_output(self):
        process = AsyncMock()
        process.communicate = AsyncMock(return_value=(b"out", None))

        assert await communicate(process) == (b"out", b"")

    @pytest.mark.asyncio
    async def test_cancel_terminates_process(self):
        """Test that cancelling the wait does not leave the process running."""
        started = asyncio.Event()

        async def hang():
            started.set()
            await asyncio.sleep(10)

        process = AsyncMock()
        process.communicate = hang
        process.wait = AsyncMock()
        process.terminate = MagicMock()

        task = asyncio.create_task(communicate(process))
        await started.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        process.terminate.assert_called_once()
        process.wait.assert_awaited()



class TestLocalEnvironment:
    """Test suite for LocalEnvironment with real subprocesses."""

    @pytest.fixture
    def environment(self, tmp_path):
        return LocalEnvironment(workspace_root=str(tmp_path))

    @pytest.mark.asyncio
    async def test_provision_creates_fresh_workspaces(self, environment):
        first = await environment.provision("ubuntu-latest")
        second = await environment.provision("ubuntu-latest")
        try:
            assert first.id != second.id
            assert first.workspace != second.workspace
            assert first.workspace.is_dir()
            assert first.label == "ubuntu-latest"
        finally:
            await environment.teardown(first)
            await environment.teardown(second)

    @pytest.mark.asyncio
    async def test_teardown_removes_workspace(self, environment):
        handle = await environment.provision("ubuntu-latest")
        (handle.workspace / "file.txt").write_text("data")

        await environment.teardown(handle)

        assert not handle.workspace.exists()

    @pytest.mark.asyncio
    async def test_unknown_label_rejected(self, tmp_path):
        environment = LocalEnvironment(labels={"ubuntu-latest"}, workspace_root=str(tmp_path))
        with pytest.raises(EnvironmentProvisionError):
            await environment.provision("windows-latest")

    @pytest.mark.asyncio
    async def test_run_command_in_workspace(self, environment):
        handle = await environment.provision("ubuntu-latest")
        try:
            status = await environment.run_command(handle, "pwd && echo hello")
            assert status.exit_code == 0
            lines = status.output.splitlines()
            assert lines[-1] == "hello"
            assert lines[0].endswith(handle.workspace.name)
        finally:
            await environment.teardown(handle)

    @pytest.mark.asyncio
    async def test_environment_variables_layered(self, environment):
        """Handle variables apply to every command; step variables win."""
        handle = await environment.provision("ubuntu-latest")
        handle.env.update({"JOB_VAR": "job", "SHARED": "job"})
        try:
            status = await environment.run_command(
                handle,
                'echo "$JOB_VAR $SHARED $STEP_VAR"',
                env={"SHARED": "step", "STEP_VAR": "only-step"},
            )
            assert status.output.strip() == "job step only-step"
        finally:
            await environment.teardown(handle)

    @pytest.mark.asyncio
    async def test_stderr_is_captured(self, environment):
        handle = await environment.provision("ubuntu-latest")
        try:
            status = await environment.run_command(handle, "echo oops >&2; exit 4")
            assert status.exit_code == 4
            assert "oops" in status.output
        finally:
            await environment.teardown(handle)

    @pytest.mark.asyncio
    async def test_missing_command_exit_code(self, environment):
        handle = await environment.provision("ubuntu-latest")
        try:
            status = await environment.run_command(handle, "definitely-not-a-real-tool-xyz")
            assert status.exit_code == 127
        finally:
            await environment.teardown(handle)

    @pytest.mark.asyncio
    async def test_working_directory(self, environment):
        handle = await environment.provision("ubuntu-latest")
        (handle.workspace / "sub").mkdir()
        try:
            status = await environment.run_command(handle, "pwd", working_directory="sub")
            assert status.output.strip().endswith("/sub")
        finally:
            await environment.teardown(handle)

    @pytest.mark.asyncio
    async def test_missing_working_directory_raises(self, environment):
        handle = await environment.provision("ubuntu-latest")
        try:
            with pytest.raises(FileNotFoundError):
                await environment.run_command(handle, "pwd", working_directory="nope")
        finally:
            await environment.teardown(handle)

    @pytest.mark.asyncio
    async def test_timeout_kills_long_command(self, environment):
        handle = await environment.provision("ubuntu-latest")
        try:
            status = await environment.run_command(handle, "sleep 5", timeout=0.3)
            assert status.timed_out
        finally:
            await environment.teardown(handle)

    @pytest.mark.asyncio
    async def test_line_longer_than_stream_limit(self, environment):
        """Test that a single output line over 64 KiB is captured intact."""
        handle = await environment.provision("ubuntu-latest")
        try:
            status = await environment.run_command(
                handle, "head -c 70000 /dev/zero | tr '\\0' x; echo; echo done"
            )
            assert status.exit_code == 0
            lines = status.output.splitlines()
            assert lines[0] == "x" * 70000
            assert lines[1] == "done"
        finally:
            await environment.teardown(handle)
