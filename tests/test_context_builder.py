"""Tests for repository context building and tool detection."""

from __future__ import annotations

from pathlib import Path

import pytest

from src.pipeline.config import PipelineConfig, ToolMarker
from src.pipeline.context_builder import (
    RepositoryContextBuilder,
    detect_primary_language,
    marker_candidates,
)
from src.workspace import InMemoryFileStore, WorkingContext

CONTEXT = WorkingContext(id="ctx-7", root=Path("/repo"))


def _make_builder(files: dict[str, str], **config) -> RepositoryContextBuilder:
    return RepositoryContextBuilder(InMemoryFileStore(files), PipelineConfig(**config))


class TestPrimaryLanguage:
    def test_most_common_extension_wins(self):
        files = ["a.py", "b.py", "c.ts", "README.md"]
        assert detect_primary_language(files) == "python"

    def test_unknown_when_no_source_files(self):
        assert detect_primary_language(["README.md", "Makefile"]) == "unknown"


class TestMarkerCandidates:
    def test_depth_limit(self):
        marker = ToolMarker("npm", ("package.json",))
        files = ["package.json", "a/b/package.json", "a/b/c/d/package.json"]
        assert marker_candidates(files, marker, max_depth=3) == ["package.json", "a/b/package.json"]

    def test_glob_patterns(self):
        marker = ToolMarker("dotnet", ("*.csproj",))
        assert marker_candidates(["src/App/App.csproj"], marker, max_depth=3) == ["src/App/App.csproj"]


class TestBuildToolDetection:
    @pytest.mark.parametrize(
        "files, expected",
        [
            ({"src/App.csproj": "<Project/>"}, "dotnet"),
            ({"package.json": "{}"}, "npm"),
            ({"build.gradle": ""}, "gradle"),
            ({"pom.xml": "<project/>"}, "maven"),
            ({"go.mod": "module x"}, "go"),
            ({"Cargo.toml": ""}, "cargo"),
            ({"pyproject.toml": ""}, "python"),
        ],
    )
    async def test_detects_tool_from_marker(self, files, expected):
        builder = _make_builder(files)
        assert await builder.detect_build_tool(CONTEXT) == expected

    async def test_priority_order_when_several_markers_present(self):
        builder = _make_builder({"package.json": "{}", "App.csproj": ""})
        assert await builder.detect_build_tool(CONTEXT) == "dotnet"

    async def test_none_when_no_marker(self):
        builder = _make_builder({"notes.txt": ""})
        assert await builder.detect_build_tool(CONTEXT) is None

    async def test_ignored_directories_are_not_searched(self):
        builder = _make_builder({"node_modules/pkg/package.json": "{}"})
        assert await builder.detect_build_tool(CONTEXT) is None

    async def test_custom_markers_from_config(self):
        builder = _make_builder(
            {"Makefile": "all:"},
            build_tool_markers=(ToolMarker("make", ("Makefile",)),),
        )
        assert await builder.detect_build_tool(CONTEXT) == "make"


class TestTestFrameworkDetection:
    async def test_csproj_content_selects_framework(self):
        builder = _make_builder({"tests/App.Tests.csproj": '<PackageReference Include="xunit" />'})
        assert await builder.detect_test_framework(CONTEXT) == "xunit"

    async def test_nunit_when_xunit_absent(self):
        builder = _make_builder({"App.Tests.csproj": '<PackageReference Include="NUnit" />'})
        assert await builder.detect_test_framework(CONTEXT) == "nunit"

    async def test_jest_from_package_json(self):
        builder = _make_builder({"package.json": '{"devDependencies": {"jest": "^29"}}'})
        assert await builder.detect_test_framework(CONTEXT) == "jest"

    async def test_package_json_without_jest(self):
        builder = _make_builder({"package.json": '{"devDependencies": {}}'})
        assert await builder.detect_test_framework(CONTEXT) is None

    async def test_pytest_from_test_file(self):
        builder = _make_builder({"tests/test_app.py": "def test_x(): pass"})
        assert await builder.detect_test_framework(CONTEXT) == "pytest"

    async def test_go_tests(self):
        builder = _make_builder({"pkg/app_test.go": "package pkg"})
        assert await builder.detect_test_framework(CONTEXT) == "go"


class TestBuild:
    async def test_full_context(self):
        builder = _make_builder({
            "pyproject.toml": "",
            "src/app.py": "",
            "src/util.py": "",
            "tests/test_app.py": "",
        })
        repo = await builder.build(CONTEXT)

        assert repo.language == "python"
        assert repo.build_tool == "python"
        assert repo.test_framework == "pytest"
        assert len(repo.files) == 4
        assert repo.metadata["context_id"] == "ctx-7"
        assert repo.metadata["file_count"] == "4"

    async def test_empty_tree_gives_empty_context(self):
        repo = await _make_builder({}).build(CONTEXT)
        assert repo.is_empty
        assert repo.language == "unknown"
        assert repo.build_tool is None
        assert repo.metadata["file_count"] == "0"
