"""
Toolchain action registry.

Actions are referenced from workflow steps by an opaque identifier such as
``actions/checkout@v4``. The part before ``@`` selects a registered handler;
the ref after it is passed through in the parameters as ``_ref``.
"""

import asyncio
import logging
import shutil
from collections.abc import Awaitable, Callable, Mapping
from pathlib import Path
from typing import Any

from ci_common.errors import ActionNotFound

from .environment import EnvironmentHandle, ExecutionEnvironment, ExitStatus, communicate

logger = logging.getLogger(__name__)

ActionHandler = Callable[
    [Mapping[str, Any], EnvironmentHandle, ExecutionEnvironment], Awaitable[ExitStatus]
]


class ActionRegistry:
    """Resolves action identifiers to handlers and invokes them."""

    def __init__(self, builtins: bool = True):
        self._handlers: dict[str, ActionHandler] = {}
        if builtins:
            self.register("actions/checkout", checkout)
            self.register(
                "actions-rs/toolchain",
                command_action(
                    "rustup toolchain install {toolchain} --profile minimal",
                    defaults={"toolchain": "stable"},
                ),
            )

    def register(self, name: str, handler: ActionHandler) -> None:
        """Register a handler under an action name (without the @ref part)."""
        self._handlers[name] = handler

    def __contains__(self, uses: str) -> bool:
        return uses.split("@", 1)[0] in self._handlers

    def resolve(self, uses: str, step: str = "") -> ActionHandler:
        """
        Find the handler for an action identifier.

        Raises:
            ActionNotFound: If no handler is registered for the action
        """
        handler = self._handlers.get(uses.split("@", 1)[0])
        if handler is None:
            raise ActionNotFound(step or uses, uses)
        return handler

    async def invoke(
        self,
        uses: str,
        params: Mapping[str, Any],
        handle: EnvironmentHandle,
        environment: ExecutionEnvironment,
        step: str = "",
    ) -> ExitStatus:
        """
        Invoke an action inside an environment.

        Raises:
            ActionNotFound: If the action cannot be resolved
        """
        handler = self.resolve(uses, step)
        _, sep, ref = uses.partition("@")
        call_params = dict(params)
        if sep:
            call_params.setdefault("_ref", ref)
        logger.debug(f"Invoking action {uses} in environment {handle.id}")
        return await handler(call_params, handle, environment)


def command_action(
    template: str, defaults: Mapping[str, Any] | None = None
) -> ActionHandler:
    """
    Build an action that runs a shell command inside the environment.

    The template is formatted with the step's ``with`` parameters layered
    over ``defaults``.
    """

    async def handler(
        params: Mapping[str, Any],
        handle: EnvironmentHandle,
        environment: ExecutionEnvironment,
    ) -> ExitStatus:
        values = dict(defaults or {})
        values.update(params)
        try:
            command = template.format(**values)
        except KeyError as e:
            return ExitStatus(1, f"missing action parameter: {e.args[0]}\n")
        return await environment.run_command(handle, command)

    return handler


async def _run_host(*args: str) -> tuple[int, str]:
    process = await asyncio.create_subprocess_exec(
        *args,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.STDOUT,
    )
    stdout, _ = await communicate(process)
    return process.returncode, stdout.decode(errors="replace")


async def checkout(
    params: Mapping[str, Any],
    handle: EnvironmentHandle,
    environment: ExecutionEnvironment,
) -> ExitStatus:
    """
    Populate the job workspace with the repository under test.

    Git repositories are cloned and the requested ref checked out; plain
    directories are copied as-is.

    Parameters:
        repository: Path or URL (default: CI_REPOSITORY)
        ref: Commit or branch to check out (default: CI_SHA)
        path: Destination relative to the workspace
    """
    source = params.get("repository") or handle.env.get("CI_REPOSITORY")
    if not source:
        return ExitStatus(1, "checkout: no repository configured\n")

    ref = params.get("ref") or handle.env.get("CI_SHA")
    dest = handle.workspace / str(params.get("path") or "")
    source_path = Path(str(source)).expanduser()

    if source_path.is_dir() and not (source_path / ".git").exists():
        await asyncio.to_thread(
            shutil.copytree,
            source_path,
            dest,
            dirs_exist_ok=True,
            ignore=shutil.ignore_patterns(".git"),
        )
        return ExitStatus(0, f"Copied {source_path} into {dest}\n")

    returncode, output = await _run_host("git", "clone", "--quiet", str(source), str(dest))
    if returncode != 0 or not ref:
        return ExitStatus(returncode, output)

    returncode, checkout_output = await _run_host(
        "git", "-C", str(dest), "checkout", "--quiet", str(ref)
    )
    return ExitStatus(returncode, output + checkout_output)
