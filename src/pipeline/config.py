"""Pipeline configuration."""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from pathlib import Path

import yaml


@dataclass(frozen=True)
class ToolMarker:
    """A tool name and the file patterns that identify it.

    When ``contains`` is set, a matching file only counts if its content
    includes that text (case-insensitive).
    """

    tool: str
    patterns: tuple[str, ...]
    contains: str | None = None

    @classmethod
    def from_dict(cls, data: dict) -> ToolMarker:
        return cls(
            tool=data["tool"],
            patterns=tuple(data["patterns"]),
            contains=data.get("contains"),
        )


# First match wins. Order matters when several markers are present.
DEFAULT_BUILD_TOOL_MARKERS: tuple[ToolMarker, ...] = (
    ToolMarker("dotnet", ("*.csproj", "*.fsproj", "*.vbproj")),
    ToolMarker("npm", ("package.json",)),
    ToolMarker("gradle", ("build.gradle", "build.gradle.kts")),
    ToolMarker("maven", ("pom.xml",)),
    ToolMarker("go", ("go.mod",)),
    ToolMarker("cargo", ("Cargo.toml",)),
    ToolMarker("python", ("pyproject.toml", "setup.py")),
)

DEFAULT_TEST_FRAMEWORK_MARKERS: tuple[ToolMarker, ...] = (
    ToolMarker("xunit", ("*.csproj",), contains="xunit"),
    ToolMarker("nunit", ("*.csproj",), contains="nunit"),
    ToolMarker("mstest", ("*.csproj",), contains="mstest"),
    ToolMarker("jest", ("package.json",), contains="jest"),
    ToolMarker("pytest", ("pytest.ini", "conftest.py", "test_*.py", "*_test.py")),
    ToolMarker("junit", ("pom.xml",), contains="junit"),
    ToolMarker("go", ("*_test.go",)),
)

DEFAULT_IGNORED_DIRECTORIES: tuple[str, ...] = (
    ".git",
    "node_modules",
    "bin",
    "obj",
    "build",
    "dist",
    "target",
    "__pycache__",
    ".venv",
    "venv",
    ".tox",
    ".pytest_cache",
    ".mypy_cache",
    ".gradle",
    "vendor",
)

DEFAULT_PROTECTED_FILES: tuple[str, ...] = (
    ".gitignore",
    "license",
    "license.txt",
    "license.md",
    "readme.md",
    ".dockerignore",
)

_MARKER_FIELDS = ("build_tool_markers", "test_framework_markers")
_TUPLE_FIELDS = ("ignored_directories", "protected_files")


@dataclass(frozen=True)
class PipelineConfig:
    """Configuration for step execution and verification."""

    build_max_retries: int = 3
    test_max_retries: int = 2
    step_max_retries: int = 1
    retry_delay_seconds: float = 1.0
    command_timeout_seconds: float = 600.0
    max_fixes_per_attempt: int = 10
    test_filter: str | None = None
    collect_coverage: bool = False
    require_build_tool: bool = False
    require_test_framework: bool = False
    marker_search_depth: int = 3
    build_tool_markers: tuple[ToolMarker, ...] = DEFAULT_BUILD_TOOL_MARKERS
    test_framework_markers: tuple[ToolMarker, ...] = DEFAULT_TEST_FRAMEWORK_MARKERS
    ignored_directories: tuple[str, ...] = DEFAULT_IGNORED_DIRECTORIES
    protected_files: tuple[str, ...] = field(default=DEFAULT_PROTECTED_FILES)

    @classmethod
    def from_dict(cls, data: dict) -> PipelineConfig:
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ValueError(f"Unknown config keys: {', '.join(sorted(unknown))}")

        kwargs = dict(data)
        for name in _MARKER_FIELDS:
            if name in kwargs:
                kwargs[name] = tuple(ToolMarker.from_dict(m) for m in kwargs[name])
        for name in _TUPLE_FIELDS:
            if name in kwargs:
                kwargs[name] = tuple(kwargs[name])
        return cls(**kwargs)


def load_config(path: Path | None) -> PipelineConfig:
    """Load a PipelineConfig from a YAML file. Missing file or None gives defaults."""
    if path is None or not path.exists():
        return PipelineConfig()
    data = yaml.safe_load(path.read_text()) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Config file {path} must contain a mapping")
    return PipelineConfig.from_dict(data)
