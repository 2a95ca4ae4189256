"""Command runners that execute processes against a working context."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import signal
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol, Sequence, runtime_checkable

from src.pipeline.exceptions import CommandInvocationError, CommandTimeoutError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WorkingContext:
    """The isolated environment a pipeline instance operates against.

    ``root`` is the repository root inside that environment. When
    ``container_id`` is set, ``root`` is a path inside the container.
    """

    id: str
    root: Path
    container_id: str | None = None


@dataclass(frozen=True)
class CommandResult:
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    duration_seconds: float = 0.0

    @property
    def success(self) -> bool:
        return self.exit_code == 0

    @property
    def output(self) -> str:
        """stdout and stderr joined, for pattern matching tool output."""
        if self.stdout and self.stderr:
            return f"{self.stdout}\n{self.stderr}"
        return self.stdout or self.stderr


@runtime_checkable
class CommandRunner(Protocol):
    async def run(
        self,
        context: WorkingContext,
        command: str,
        args: Sequence[str] = (),
        timeout: float | None = None,
        stdin_text: str | None = None,
    ) -> CommandResult: ...


class LocalCommandRunner:
    """Runs commands as local subprocesses rooted at ``context.root``.

    Each command gets its own process group so a timeout or cancellation can
    kill the command together with anything it spawned.
    """

    def __init__(self, default_timeout: float | None = None) -> None:
        self._default_timeout = default_timeout

    async def run(
        self,
        context: WorkingContext,
        command: str,
        args: Sequence[str] = (),
        timeout: float | None = None,
        stdin_text: str | None = None,
    ) -> CommandResult:
        timeout = timeout if timeout is not None else self._default_timeout
        logger.debug("Running %s %s in %s", command, " ".join(args), context.root)
        start = time.monotonic()

        try:
            process = await asyncio.create_subprocess_exec(
                command,
                *args,
                cwd=str(context.root),
                stdin=asyncio.subprocess.PIPE if stdin_text is not None else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except OSError as e:
            raise CommandInvocationError(command, str(e)) from e

        stdin_bytes = stdin_text.encode() if stdin_text is not None else None
        try:
            async with asyncio.timeout(timeout):
                stdout, stderr = await process.communicate(stdin_bytes)
        except TimeoutError:
            await self._kill(process)
            logger.warning("Command %s timed out after %ss", command, timeout)
            raise CommandTimeoutError(command, timeout) from None
        except asyncio.CancelledError:
            await self._kill(process)
            raise

        return CommandResult(
            exit_code=process.returncode,
            stdout=stdout.decode(errors="replace"),
            stderr=stderr.decode(errors="replace"),
            duration_seconds=time.monotonic() - start,
        )

    @staticmethod
    async def _kill(process: asyncio.subprocess.Process) -> None:
        if process.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                os.killpg(process.pid, signal.SIGKILL)
        await process.wait()


class ContainerCommandRunner:
    """Runs commands inside a running container via ``docker exec``.

    The container must already exist; its lifecycle is owned elsewhere.
    """

    def __init__(
        self,
        inner: CommandRunner | None = None,
        docker_binary: str = "docker",
        host_dir: Path | None = None,
    ) -> None:
        self._inner = inner or LocalCommandRunner()
        self._docker = docker_binary
        self._host_dir = host_dir or Path(".")

    async def run(
        self,
        context: WorkingContext,
        command: str,
        args: Sequence[str] = (),
        timeout: float | None = None,
        stdin_text: str | None = None,
    ) -> CommandResult:
        if context.container_id is None:
            raise CommandInvocationError(command, f"context {context.id} has no container")

        docker_args = ["exec"]
        if stdin_text is not None:
            docker_args.append("-i")
        docker_args += ["-w", str(context.root), context.container_id, command, *args]

        host_context = WorkingContext(id=context.id, root=self._host_dir)
        result = await self._inner.run(
            host_context, self._docker, docker_args, timeout=timeout, stdin_text=stdin_text,
        )
        logger.debug(
            "Executed %s in container %s: exit code %d",
            command, context.container_id, result.exit_code,
        )
        return result
