"""
Docker-backed execution environments.

Each job gets its own long-lived container started from the image mapped to
its runs-on label. Steps run through `docker exec` against that container,
and the job's workspace is a host temp directory bind-mounted at /workspace
so checkout can populate it from the host.
"""

import asyncio
import logging
import shutil
import tempfile
import uuid
from collections.abc import Mapping
from pathlib import Path, PurePosixPath

from ci_common.errors import EnvironmentProvisionError

from .environment import (
    EnvironmentHandle,
    ExecutionEnvironment,
    ExitStatus,
    OutputCallback,
    communicate,
    stream_process,
)

logger = logging.getLogger(__name__)

CONTAINER_WORKSPACE = "/workspace"


class DockerEnvironment(ExecutionEnvironment):
    """
    Manages one Docker container per job.

    Containers are named "{prefix}{environment_id}" so leftovers from a
    crashed run can be found and removed with remove_stale_containers().
    """

    def __init__(
        self,
        images: Mapping[str, str],
        container_name_prefix: str = "ci_",
        docker_binary: str = "docker",
    ):
        """
        Initialize the Docker environment provider.

        Args:
            images: runs-on label -> Docker image
            container_name_prefix: Prefix for container names, enabling
                                   parallel runners without interference
            docker_binary: Docker CLI executable
        """
        self.images = dict(images)
        self.container_name_prefix = container_name_prefix
        self.docker_binary = docker_binary

    def _get_container_name(self, env_id: str) -> str:
        return f"{self.container_name_prefix}{env_id}"

    async def _docker(self, *args: str) -> tuple[int, str, str]:
        process = await asyncio.create_subprocess_exec(
            self.docker_binary,
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stdout, stderr = await communicate(process)
        return process.returncode, stdout.decode(), stderr.decode()

    async def provision(self, label: str) -> EnvironmentHandle:
        image = self.images.get(label)
        if image is None:
            raise EnvironmentProvisionError(
                label, f"no image configured for label (known: {sorted(self.images)})"
            )

        env_id = str(uuid.uuid4())
        workspace = Path(tempfile.mkdtemp(prefix=f"ci_job_{env_id[:8]}_"))
        container_name = self._get_container_name(env_id)

        try:
            returncode, stdout, stderr = await self._docker(
                "run",
                "--detach",
                "--name",
                container_name,
                "-v",
                f"{workspace}:{CONTAINER_WORKSPACE}",
                "-w",
                CONTAINER_WORKSPACE,
                image,
                "sleep",
                "infinity",
            )
        except OSError as e:
            shutil.rmtree(workspace, ignore_errors=True)
            raise EnvironmentProvisionError(label, f"cannot run docker: {e}") from e
        except BaseException:
            # The container may already exist even though docker run never returned
            await self._discard(container_name, workspace)
            raise

        if returncode != 0:
            shutil.rmtree(workspace, ignore_errors=True)
            raise EnvironmentProvisionError(
                label, f"failed to start container from {image}: {stderr.strip()}"
            )

        container_id = stdout.strip()
        logger.info(f"Started container {container_name} ({image}) for label {label}")
        return EnvironmentHandle(
            id=env_id,
            label=label,
            workspace=workspace,
            container_id=container_id,
        )

    async def _discard(self, container_name: str, workspace: Path) -> None:
        try:
            await self._docker("rm", "--force", container_name)
        except OSError as e:
            logger.warning(f"Failed to remove container {container_name}: {e}")
        finally:
            shutil.rmtree(workspace, ignore_errors=True)

    async def teardown(self, handle: EnvironmentHandle) -> None:
        container_name = self._get_container_name(handle.id)
        try:
            returncode, _, stderr = await self._docker("rm", "--force", container_name)
            if returncode != 0 and "No such container" not in stderr:
                logger.warning(
                    f"Failed to remove container {container_name}: {stderr.strip()}"
                )
        finally:
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
        workdir = PurePosixPath(CONTAINER_WORKSPACE) / (working_directory or ".")

        variables = dict(handle.env)
        variables.update(env or {})
        variables["CI_WORKSPACE"] = CONTAINER_WORKSPACE

        args = [self.docker_binary, "exec", "-w", str(workdir)]
        for key, value in variables.items():
            args.extend(["-e", f"{key}={value}"])
        args.extend([self._get_container_name(handle.id), "sh", "-c", command])

        process = await asyncio.create_subprocess_exec(
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
        return await stream_process(process, timeout, cancel_event, on_output)

    async def list_containers(self) -> list[str]:
        """
        List names of all containers created by this provider's prefix.

        Raises:
            RuntimeError: If docker cannot list containers
        """
        returncode, stdout, stderr = await self._docker(
            "ps",
            "-a",
            "--filter",
            f"name=^{self.container_name_prefix}",
            "--format",
            "{{.Names}}",
        )
        if returncode != 0:
            raise RuntimeError(f"Failed to list containers: {stderr.strip()}")
        return [
            name
            for name in stdout.strip().split("\n")
            if name.startswith(self.container_name_prefix)
        ]

    async def remove_stale_containers(self) -> list[str]:
        """
        Remove containers left behind by runs that never tore down.

        Returns:
            Names of the removed containers
        """
        removed = []
        for name in await self.list_containers():
            returncode, _, stderr = await self._docker("rm", "--force", name)
            if returncode == 0:
                logger.info(f"Removed stale container {name}")
                removed.append(name)
            else:
                logger.warning(f"Failed to remove stale container {name}: {stderr.strip()}")
        return removed
