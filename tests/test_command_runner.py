"""Tests for local and container command runners."""

from __future__ import annotations

import asyncio
import time
from pathlib import Path

import pytest

from src.pipeline.exceptions import CommandInvocationError, CommandTimeoutError
from src.workspace import (
    CommandResult,
    CommandRunner,
    ContainerCommandRunner,
    LocalCommandRunner,
    ScriptedCommandRunner,
    WorkingContext,
)


# ---------------------------------------------------------------------------
# LocalCommandRunner
# ---------------------------------------------------------------------------


class TestLocalCommandRunner:
    async def test_captures_stdout_and_exit_code(self, local_context):
        runner = LocalCommandRunner()
        result = await runner.run(local_context, "echo", ["hello"])
        assert result.exit_code == 0
        assert result.success is True
        assert result.stdout.strip() == "hello"
        assert result.duration_seconds >= 0

    async def test_non_zero_exit_is_a_result_not_an_error(self, local_context):
        runner = LocalCommandRunner()
        result = await runner.run(local_context, "sh", ["-c", "echo oops >&2; exit 3"])
        assert result.exit_code == 3
        assert result.success is False
        assert "oops" in result.stderr
        assert "oops" in result.output

    async def test_runs_in_context_root(self, local_context, tmp_path):
        (tmp_path / "marker.txt").write_text("x")
        result = await LocalCommandRunner().run(local_context, "ls")
        assert "marker.txt" in result.stdout

    async def test_stdin_text_is_piped(self, local_context):
        result = await LocalCommandRunner().run(local_context, "cat", stdin_text="piped input")
        assert result.stdout == "piped input"

    async def test_missing_executable_raises_invocation_error(self, local_context):
        with pytest.raises(CommandInvocationError) as exc_info:
            await LocalCommandRunner().run(local_context, "definitely-not-a-real-binary-xyz")
        assert exc_info.value.command == "definitely-not-a-real-binary-xyz"

    async def test_timeout_kills_process_and_raises(self, local_context):
        runner = LocalCommandRunner()
        start = time.monotonic()
        with pytest.raises(CommandTimeoutError) as exc_info:
            await runner.run(local_context, "sleep", ["30"], timeout=0.2)
        assert time.monotonic() - start < 10
        assert exc_info.value.timeout == 0.2

    async def test_timeout_is_an_invocation_error(self, local_context):
        with pytest.raises(CommandInvocationError):
            await LocalCommandRunner(default_timeout=0.2).run(local_context, "sleep", ["30"])

    async def test_cancellation_propagates(self, local_context):
        runner = LocalCommandRunner()
        task = asyncio.create_task(runner.run(local_context, "sleep", ["30"]))
        await asyncio.sleep(0.2)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    def test_satisfies_protocol(self):
        assert isinstance(LocalCommandRunner(), CommandRunner)


# ---------------------------------------------------------------------------
# ContainerCommandRunner
# ---------------------------------------------------------------------------


class TestContainerCommandRunner:
    async def test_wraps_command_in_docker_exec(self):
        inner = ScriptedCommandRunner({"docker": CommandResult(exit_code=0, stdout="ok")})
        runner = ContainerCommandRunner(inner=inner)
        context = WorkingContext(id="t1", root=Path("/workspace"), container_id="abc123")

        result = await runner.run(context, "dotnet", ["build"], timeout=5)

        assert result.stdout == "ok"
        assert inner.calls == [
            ("docker", ["exec", "-w", "/workspace", "abc123", "dotnet", "build"]),
        ]
        assert inner.last_timeout == 5

    async def test_stdin_adds_interactive_flag(self):
        inner = ScriptedCommandRunner()
        runner = ContainerCommandRunner(inner=inner)
        context = WorkingContext(id="t1", root=Path("/workspace"), container_id="abc123")

        await runner.run(context, "cat", [], stdin_text="data")

        assert inner.calls[0][1][:2] == ["exec", "-i"]

    async def test_context_without_container_raises(self, local_context):
        runner = ContainerCommandRunner(inner=ScriptedCommandRunner())
        with pytest.raises(CommandInvocationError):
            await runner.run(local_context, "ls")


# ---------------------------------------------------------------------------
# ScriptedCommandRunner
# ---------------------------------------------------------------------------


class TestScriptedCommandRunner:
    async def test_sequence_is_consumed_and_last_repeats(self, local_context):
        runner = ScriptedCommandRunner({
            "npm": [CommandResult(exit_code=1), CommandResult(exit_code=0)],
        })
        codes = [(await runner.run(local_context, "npm", ["run", "build"])).exit_code for _ in range(3)]
        assert codes == [1, 0, 0]
        assert len(runner.calls_to("npm")) == 3

    async def test_unscripted_command_succeeds(self, local_context):
        result = await ScriptedCommandRunner().run(local_context, "anything")
        assert result.success

    async def test_callable_entry_receives_args(self, local_context):
        runner = ScriptedCommandRunner({"go": lambda args: CommandResult(exit_code=len(args))})
        result = await runner.run(local_context, "go", ["build", "./..."])
        assert result.exit_code == 2
