"""Repository context builder: language, build tool, test framework and file inventory."""

from __future__ import annotations

import logging
from collections import Counter
from fnmatch import fnmatchcase
from pathlib import PurePosixPath
from typing import Sequence

from src.pipeline.config import PipelineConfig, ToolMarker
from src.pipeline.exceptions import FileOperationError
from src.pipeline.models import RepositoryContext, language_for_path
from src.workspace.command_runner import WorkingContext
from src.workspace.file_store import FileStore

logger = logging.getLogger(__name__)


def detect_primary_language(files: Sequence[str]) -> str:
    """Most common known language by file extension. Ties go to the first seen."""
    counts = Counter(
        lang for lang in (language_for_path(f) for f in files) if lang != "unknown"
    )
    if not counts:
        return "unknown"
    return counts.most_common(1)[0][0]


def marker_candidates(files: Sequence[str], marker: ToolMarker, max_depth: int) -> list[str]:
    """Files within ``max_depth`` directory levels whose name matches a marker pattern."""
    matches = []
    for path in files:
        p = PurePosixPath(path)
        if len(p.parts) > max_depth:
            continue
        if any(fnmatchcase(p.name, pattern) for pattern in marker.patterns):
            matches.append(path)
    return matches


class RepositoryContextBuilder:
    """Inspects a working tree and produces a RepositoryContext snapshot.

    Build tools and test frameworks are detected from marker files, checked
    in the configured priority order. The first marker with a match wins.
    """

    def __init__(self, store: FileStore, config: PipelineConfig | None = None) -> None:
        self._store = store
        self._config = config or PipelineConfig()

    async def list_files(self, context: WorkingContext) -> list[str]:
        return await self._store.list_files(context, self._config.ignored_directories)

    async def build(self, context: WorkingContext) -> RepositoryContext:
        logger.info("Building repository context for %s", context.id)
        files = await self.list_files(context)
        if not files:
            logger.warning("No files found in %s", context.id)
            return RepositoryContext(metadata={"context_id": context.id, "file_count": "0"})

        language = detect_primary_language(files)
        build_tool = await self.detect_build_tool(context, files)
        test_framework = await self.detect_test_framework(context, files)

        logger.info(
            "Repository context built: language=%s, build_tool=%s, test_framework=%s",
            language, build_tool, test_framework,
        )
        return RepositoryContext(
            language=language,
            files=tuple(files),
            test_framework=test_framework,
            build_tool=build_tool,
            metadata={"context_id": context.id, "file_count": str(len(files))},
        )

    async def detect_build_tool(
        self, context: WorkingContext, files: Sequence[str] | None = None,
    ) -> str | None:
        if files is None:
            files = await self.list_files(context)
        tool = await self._first_match(context, files, self._config.build_tool_markers)
        if tool is None:
            logger.warning("No build tool detected")
        return tool

    async def detect_test_framework(
        self, context: WorkingContext, files: Sequence[str] | None = None,
    ) -> str | None:
        if files is None:
            files = await self.list_files(context)
        framework = await self._first_match(context, files, self._config.test_framework_markers)
        if framework is None:
            logger.warning("No test framework detected")
        return framework

    async def _first_match(
        self,
        context: WorkingContext,
        files: Sequence[str],
        markers: Sequence[ToolMarker],
    ) -> str | None:
        for marker in markers:
            candidates = marker_candidates(files, marker, self._config.marker_search_depth)
            if not candidates:
                continue
            if marker.contains is None:
                return marker.tool
            needle = marker.contains.lower()
            for path in candidates:
                try:
                    content = await self._store.read_text(context, path)
                except FileOperationError as e:
                    logger.debug("Could not read marker file %s: %s", path, e)
                    continue
                if needle in content.lower():
                    return marker.tool
        return None
