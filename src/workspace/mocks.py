"""Mock command runner for testing build and test flows without real tools."""

from __future__ import annotations

from typing import Callable, Sequence

from src.workspace.command_runner import CommandResult, WorkingContext


class ScriptedCommandRunner:
    """Replays canned results per executable.

    A script entry is a CommandResult, a list of them consumed in order
    (the last one repeats), or a callable taking the argument list.
    Unscripted commands succeed with no output.
    """

    def __init__(
        self,
        script: dict[str, CommandResult | list[CommandResult] | Callable] | None = None,
        error: Exception | None = None,
    ) -> None:
        self._script = {k: list(v) if isinstance(v, list) else v for k, v in (script or {}).items()}
        self._error = error
        self.calls: list[tuple[str, list[str]]] = []
        self.last_context: WorkingContext | None = None
        self.last_timeout: float | None = None

    async def run(
        self,
        context: WorkingContext,
        command: str,
        args: Sequence[str] = (),
        timeout: float | None = None,
        stdin_text: str | None = None,
    ) -> CommandResult:
        self.calls.append((command, list(args)))
        self.last_context = context
        self.last_timeout = timeout
        if self._error is not None:
            raise self._error

        entry = self._script.get(command)
        if entry is None:
            return CommandResult(exit_code=0)
        if callable(entry):
            return entry(list(args))
        if isinstance(entry, list):
            return entry.pop(0) if len(entry) > 1 else entry[0]
        return entry

    def calls_to(self, command: str) -> list[list[str]]:
        return [args for cmd, args in self.calls if cmd == command]
