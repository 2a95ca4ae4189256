"""File stores: raw read/write/delete access to a working context's tree.

Stores do not record anything. All mutations performed by the pipeline go
through ``FileEditor``, which records them in its change ledger.
"""

from __future__ import annotations

import logging
import os
import shlex
from pathlib import Path, PurePosixPath
from typing import Protocol, Sequence, runtime_checkable

from src.pipeline.exceptions import FileOperationError
from src.workspace.command_runner import CommandRunner, WorkingContext

logger = logging.getLogger(__name__)


def normalize_path(path: str) -> str:
    """Normalize a repository-relative path to posix form without a leading './'."""
    normalized = PurePosixPath(path.replace("\\", "/"))
    parts = [p for p in normalized.parts if p not in ("", ".", "/")]
    return "/".join(parts)


def relative_to_root(context: WorkingContext, path: str) -> str:
    """Map a path reported by a tool to a repository-relative path."""
    candidate = PurePosixPath(path.replace("\\", "/"))
    if candidate.is_absolute():
        root = PurePosixPath(Path(context.root).as_posix())
        if candidate.is_relative_to(root):
            return normalize_path(str(candidate.relative_to(root)))
    return normalize_path(path)


@runtime_checkable
class FileStore(Protocol):
    async def read_text(self, context: WorkingContext, path: str) -> str: ...

    async def write_text(self, context: WorkingContext, path: str, content: str) -> None: ...

    async def delete(self, context: WorkingContext, path: str) -> None: ...

    async def exists(self, context: WorkingContext, path: str) -> bool: ...

    async def list_files(
        self, context: WorkingContext, ignored_directories: Sequence[str] = (),
    ) -> list[str]: ...


class LocalFileStore:
    """FileStore over the local filesystem, rooted at ``context.root``."""

    def _resolve(self, context: WorkingContext, path: str) -> Path:
        root = Path(context.root).resolve()
        full = (root / normalize_path(path)).resolve()
        if full != root and root not in full.parents:
            raise FileOperationError("resolve", path, "path escapes the working context root")
        return full

    async def read_text(self, context: WorkingContext, path: str) -> str:
        full = self._resolve(context, path)
        try:
            return full.read_text()
        except OSError as e:
            raise FileOperationError("read", path, str(e)) from e

    async def write_text(self, context: WorkingContext, path: str, content: str) -> None:
        full = self._resolve(context, path)
        try:
            full.parent.mkdir(parents=True, exist_ok=True)
            full.write_text(content)
        except OSError as e:
            raise FileOperationError("write", path, str(e)) from e

    async def delete(self, context: WorkingContext, path: str) -> None:
        full = self._resolve(context, path)
        try:
            full.unlink(missing_ok=True)
        except OSError as e:
            raise FileOperationError("delete", path, str(e)) from e

    async def exists(self, context: WorkingContext, path: str) -> bool:
        return self._resolve(context, path).is_file()

    async def list_files(
        self, context: WorkingContext, ignored_directories: Sequence[str] = (),
    ) -> list[str]:
        root = Path(context.root)
        if not root.is_dir():
            return []
        ignored = set(ignored_directories)
        files: list[str] = []
        for dirpath, dirnames, filenames in os.walk(root):
            dirnames[:] = sorted(d for d in dirnames if d not in ignored)
            rel_dir = Path(dirpath).relative_to(root)
            for name in sorted(filenames):
                files.append((rel_dir / name).as_posix())
        return files


class ContainerFileStore:
    """FileStore that reaches into a running container through a CommandRunner."""

    def __init__(self, runner: CommandRunner) -> None:
        self._runner = runner

    async def read_text(self, context: WorkingContext, path: str) -> str:
        path = normalize_path(path)
        result = await self._runner.run(context, "cat", [path])
        if not result.success:
            raise FileOperationError("read", path, result.stderr.strip() or "cat failed")
        return result.stdout

    async def write_text(self, context: WorkingContext, path: str, content: str) -> None:
        path = normalize_path(path)
        script = 'mkdir -p "$(dirname "$1")" && cat > "$1"'
        result = await self._runner.run(
            context, "sh", ["-c", script, "sh", path], stdin_text=content,
        )
        if not result.success:
            raise FileOperationError("write", path, result.stderr.strip() or "write failed")

    async def delete(self, context: WorkingContext, path: str) -> None:
        path = normalize_path(path)
        result = await self._runner.run(context, "rm", ["-f", path])
        if not result.success:
            raise FileOperationError("delete", path, result.stderr.strip() or "rm failed")

    async def exists(self, context: WorkingContext, path: str) -> bool:
        result = await self._runner.run(context, "test", ["-f", normalize_path(path)])
        return result.success

    async def list_files(
        self, context: WorkingContext, ignored_directories: Sequence[str] = (),
    ) -> list[str]:
        prune = " -o ".join(f"-name {shlex.quote(d)}" for d in ignored_directories)
        if prune:
            script = f"find . -type d \\( {prune} \\) -prune -o -type f -print"
        else:
            script = "find . -type f -print"
        result = await self._runner.run(context, "sh", ["-c", script])
        if not result.success:
            logger.warning("Listing files in %s failed: %s", context.id, result.stderr.strip())
            return []
        return [normalize_path(line) for line in result.stdout.splitlines() if line.strip()]


class InMemoryFileStore:
    """FileStore backed by a dict. For tests and dry runs."""

    def __init__(self, files: dict[str, str] | None = None) -> None:
        self.files: dict[str, str] = {
            normalize_path(p): c for p, c in (files or {}).items()
        }
        self.write_count: int = 0

    async def read_text(self, context: WorkingContext, path: str) -> str:
        path = normalize_path(path)
        if path not in self.files:
            raise FileOperationError("read", path, "file not found")
        return self.files[path]

    async def write_text(self, context: WorkingContext, path: str, content: str) -> None:
        self.files[normalize_path(path)] = content
        self.write_count += 1

    async def delete(self, context: WorkingContext, path: str) -> None:
        self.files.pop(normalize_path(path), None)

    async def exists(self, context: WorkingContext, path: str) -> bool:
        return normalize_path(path) in self.files

    async def list_files(
        self, context: WorkingContext, ignored_directories: Sequence[str] = (),
    ) -> list[str]:
        ignored = set(ignored_directories)
        return [
            p for p in self.files
            if not ignored.intersection(PurePosixPath(p).parts[:-1])
        ]

    def snapshot(self) -> dict[str, str]:
        return dict(self.files)
