"""Working context access: command runners, file stores and the change ledger."""

from src.workspace.command_runner import (
    CommandResult,
    CommandRunner,
    ContainerCommandRunner,
    LocalCommandRunner,
    WorkingContext,
)
from src.workspace.file_editor import FileEditor, revert_change, revert_changes
from src.workspace.file_store import (
    ContainerFileStore,
    FileStore,
    InMemoryFileStore,
    LocalFileStore,
    normalize_path,
    relative_to_root,
)
from src.workspace.mocks import ScriptedCommandRunner

__all__ = [
    "CommandResult",
    "CommandRunner",
    "ContainerCommandRunner",
    "ContainerFileStore",
    "FileEditor",
    "FileStore",
    "InMemoryFileStore",
    "LocalCommandRunner",
    "LocalFileStore",
    "ScriptedCommandRunner",
    "WorkingContext",
    "normalize_path",
    "relative_to_root",
    "revert_change",
    "revert_changes",
]
