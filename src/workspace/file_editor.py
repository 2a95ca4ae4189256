"""Ledgered file operations.

Every mutation the pipeline makes to a working tree goes through a
``FileEditor`` and leaves exactly one ``FileChange`` entry in its ledger,
in the order performed. Rollback replays the ledger newest first.
"""

from __future__ import annotations

import logging
from pathlib import PurePosixPath
from typing import Callable, Sequence

from src.pipeline.config import DEFAULT_PROTECTED_FILES
from src.pipeline.exceptions import FileOperationError, LedgerCorruptionError
from src.pipeline.models import ChangeType, FileChange
from src.workspace.command_runner import WorkingContext
from src.workspace.file_store import FileStore, normalize_path

logger = logging.getLogger(__name__)

Transform = Callable[[str], str]


class FileEditor:
    """Applies file mutations through a FileStore and records them.

    One editor belongs to one pipeline instance; it is not shared between
    concurrently running steps.
    """

    def __init__(
        self,
        store: FileStore,
        protected_files: Sequence[str] = DEFAULT_PROTECTED_FILES,
    ) -> None:
        self.store = store
        self._protected = {p.lower() for p in protected_files}
        self._ledger: list[FileChange] = []

    @property
    def changes(self) -> list[FileChange]:
        return list(self._ledger)

    def checkpoint(self) -> int:
        return len(self._ledger)

    def clear(self) -> None:
        self._ledger.clear()

    def is_protected(self, path: str) -> bool:
        path = normalize_path(path)
        lowered = path.lower()
        if lowered == ".git" or lowered.startswith(".git/"):
            return True
        name = PurePosixPath(lowered).name
        return name in self._protected or name.startswith("license")

    async def read_file(self, context: WorkingContext, path: str) -> str:
        return await self.store.read_text(context, path)

    async def exists(self, context: WorkingContext, path: str) -> bool:
        return await self.store.exists(context, path)

    async def create_file(
        self, context: WorkingContext, path: str, content: str,
    ) -> FileChange:
        path = normalize_path(path)
        if await self.store.exists(context, path):
            raise FileOperationError("create", path, "file already exists")
        await self.store.write_text(context, path, content)
        change = FileChange(type=ChangeType.CREATED, path=path, new_content=content)
        self._ledger.append(change)
        logger.info("Created %s", path)
        return change

    async def modify_file(
        self, context: WorkingContext, path: str, transform: str | Transform,
    ) -> FileChange | None:
        """Replace a file's content, or apply a transform to it.

        Returns None without recording anything when the content is unchanged.
        """
        path = normalize_path(path)
        if not await self.store.exists(context, path):
            raise FileOperationError("modify", path, "file does not exist")
        old = await self.store.read_text(context, path)
        new = transform(old) if callable(transform) else transform
        if new == old:
            logger.debug("No changes to %s", path)
            return None
        await self.store.write_text(context, path, new)
        change = FileChange(
            type=ChangeType.MODIFIED, path=path, old_content=old, new_content=new,
        )
        self._ledger.append(change)
        logger.info("Modified %s", path)
        return change

    async def replace_in_file(
        self, context: WorkingContext, path: str, original: str, replacement: str,
    ) -> FileChange | None:
        """Replace every occurrence of ``original``. None if it did not occur."""
        return await self.modify_file(
            context, path, lambda content: content.replace(original, replacement),
        )

    async def delete_file(self, context: WorkingContext, path: str) -> FileChange | None:
        path = normalize_path(path)
        if self.is_protected(path):
            raise FileOperationError("delete", path, "protected file")
        if not await self.store.exists(context, path):
            logger.debug("Delete of missing file %s skipped", path)
            return None
        old = await self.store.read_text(context, path)
        await self.store.delete(context, path)
        change = FileChange(type=ChangeType.DELETED, path=path, old_content=old)
        self._ledger.append(change)
        logger.info("Deleted %s", path)
        return change

    async def rollback_to(
        self, context: WorkingContext, checkpoint: int = 0,
    ) -> list[FileChange]:
        """Revert and drop every ledger entry recorded after ``checkpoint``.

        Entries are consumed one at a time, so a failure partway leaves the
        not-yet-reverted entries in the ledger.
        """
        if checkpoint < 0 or checkpoint > len(self._ledger):
            raise LedgerCorruptionError(
                f"Checkpoint {checkpoint} outside ledger of {len(self._ledger)} entries"
            )
        reverted: list[FileChange] = []
        while len(self._ledger) > checkpoint:
            change = self._ledger[-1]
            await revert_change(self.store, context, change)
            self._ledger.pop()
            reverted.append(change)
        if reverted:
            logger.info("Rolled back %d change(s)", len(reverted))
        return reverted


async def revert_change(store: FileStore, context: WorkingContext, change: FileChange) -> None:
    """Undo a single change. Reverting an already-reverted change is a no-op."""
    exists = await store.exists(context, change.path)

    if change.type is ChangeType.CREATED:
        if exists:
            await store.delete(context, change.path)
        return

    if change.old_content is None:
        raise LedgerCorruptionError(
            f"{change.type.value} entry for {change.path} has no previous content"
        )
    if exists and await store.read_text(context, change.path) == change.old_content:
        return
    await store.write_text(context, change.path, change.old_content)


async def revert_changes(
    store: FileStore, context: WorkingContext, changes: Sequence[FileChange],
) -> None:
    """Undo ``changes`` newest first."""
    for change in reversed(changes):
        await revert_change(store, context, change)
