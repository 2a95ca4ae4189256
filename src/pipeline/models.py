"""Domain models for the step execution pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import PurePosixPath
from types import MappingProxyType
from typing import Mapping


# ---------------------------------------------------------------------------
# Repository context and plan
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RepositoryContext:
    """Snapshot of a working tree, produced once per step."""

    language: str = "unknown"
    files: tuple[str, ...] = ()
    test_framework: str | None = None
    build_tool: str | None = None
    metadata: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))

    def __post_init__(self) -> None:
        object.__setattr__(self, "files", tuple(self.files))
        object.__setattr__(self, "metadata", MappingProxyType(dict(self.metadata)))

    @property
    def is_empty(self) -> bool:
        return not self.files


@dataclass
class PlanStep:
    id: str
    title: str
    details: str = ""
    done: bool = False


class ActionType(Enum):
    CREATE_FILE = "create"
    MODIFY_FILE = "modify"
    DELETE_FILE = "delete"


@dataclass
class CodeGenerationRequest:
    content: str = ""
    before_marker: str | None = None
    after_marker: str | None = None
    parameters: dict[str, str] = field(default_factory=dict)


@dataclass
class CodeAction:
    type: ActionType
    file_path: str
    description: str = ""
    request: CodeGenerationRequest = field(default_factory=CodeGenerationRequest)


@dataclass
class StepActionPlan:
    actions: list[CodeAction] = field(default_factory=list)
    prerequisites: list[str] = field(default_factory=list)
    requires_tests: bool = False
    main_file: str | None = None
    test_file: str | None = None


# ---------------------------------------------------------------------------
# File change ledger
# ---------------------------------------------------------------------------


class ChangeType(Enum):
    CREATED = "created"
    MODIFIED = "modified"
    DELETED = "deleted"


@dataclass(frozen=True)
class FileChange:
    """One filesystem mutation. old_content is None for creates, new_content for deletes."""

    type: ChangeType
    path: str
    old_content: str | None = None
    new_content: str | None = None


# ---------------------------------------------------------------------------
# Build verification
# ---------------------------------------------------------------------------


class ErrorSeverity(Enum):
    ERROR = "error"
    WARNING = "warning"


class ErrorCategory(Enum):
    SYNTAX = "syntax"
    TYPE = "type"
    MISSING_DEPENDENCY = "missing_dependency"
    CONFIGURATION = "configuration"
    RUNTIME = "runtime"
    OTHER = "other"


@dataclass(frozen=True)
class BuildError:
    code: str
    message: str
    file_path: str | None = None
    line: int | None = None
    severity: ErrorSeverity = ErrorSeverity.ERROR
    category: ErrorCategory = ErrorCategory.OTHER

    @property
    def location(self) -> str:
        if self.file_path is None:
            return "unknown file"
        if self.line is None:
            return self.file_path
        return f"{self.file_path}:{self.line}"


class FixConfidence(Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


@dataclass(frozen=True)
class CodeFix:
    file_path: str
    original_code: str
    fixed_code: str
    description: str = ""
    confidence: FixConfidence = FixConfidence.MEDIUM


@dataclass
class BuildResult:
    """Outcome of build verification.

    ``undetermined`` marks a run where no build tool was detected: nothing was
    built, so ``attempts`` is 0 and ``errors`` is empty.
    """

    success: bool
    attempts: int = 0
    output: str = ""
    errors: list[BuildError] = field(default_factory=list)
    fixes_applied: list[CodeFix] = field(default_factory=list)
    duration_seconds: float = 0.0
    build_tool: str | None = None
    undetermined: bool = False
    tool_available: bool = True
    missing_tool: str | None = None
    fix_requests: int = 0

    @classmethod
    def undetermined_result(cls) -> BuildResult:
        return cls(
            success=True,
            undetermined=True,
            output="No build tool detected; build verification skipped",
        )


# ---------------------------------------------------------------------------
# Test validation
# ---------------------------------------------------------------------------


class FailureType(Enum):
    ASSERTION = "assertion"
    EXCEPTION = "exception"
    TIMEOUT = "timeout"
    SETUP = "setup"
    TEARDOWN = "teardown"


@dataclass(frozen=True)
class TestFailure:
    __test__ = False

    test_name: str
    class_name: str = ""
    message: str = ""
    type: FailureType = FailureType.EXCEPTION
    file_path: str | None = None
    line: int | None = None
    stack_trace: str | None = None
    expected: str | None = None
    actual: str | None = None
    root_cause: str | None = None

    @property
    def full_name(self) -> str:
        return f"{self.class_name}.{self.test_name}" if self.class_name else self.test_name


class FixTarget(Enum):
    CODE = "code"
    TEST = "test"


@dataclass(frozen=True)
class TestFix:
    __test__ = False

    file_path: str
    original_code: str
    fixed_code: str
    description: str = ""
    target: FixTarget = FixTarget.CODE


@dataclass(frozen=True)
class CoverageReport:
    line_coverage: float = 0.0
    branch_coverage: float | None = None

    @property
    def summary(self) -> str:
        text = f"Line coverage: {self.line_coverage:.2f}%"
        if self.branch_coverage is not None:
            text += f", Branch coverage: {self.branch_coverage:.2f}%"
        return text


@dataclass
class TestExecutionResult:
    """Parsed output of one test run."""

    __test__ = False

    success: bool
    total: int = 0
    passed: int = 0
    failed: int = 0
    skipped: int = 0
    failures: list[TestFailure] = field(default_factory=list)
    output: str = ""
    coverage: CoverageReport | None = None
    duration_seconds: float = 0.0


@dataclass
class TestValidationResult:
    __test__ = False

    all_passed: bool
    total: int = 0
    passed: int = 0
    failed: int = 0
    skipped: int = 0
    attempts: int = 0
    remaining_failures: list[TestFailure] = field(default_factory=list)
    fixes_applied: list[TestFix] = field(default_factory=list)
    coverage: CoverageReport | None = None
    duration_seconds: float = 0.0
    summary: str = ""
    test_framework: str | None = None
    undetermined: bool = False
    fix_requests: int = 0

    @classmethod
    def undetermined_result(cls) -> TestValidationResult:
        return cls(
            all_passed=True,
            undetermined=True,
            summary="No test framework detected; test validation skipped",
        )


# ---------------------------------------------------------------------------
# Step execution
# ---------------------------------------------------------------------------


@dataclass
class ExecutionMetrics:
    files_created: int = 0
    files_modified: int = 0
    files_deleted: int = 0
    step_attempts: int = 0
    build_attempts: int = 0
    test_attempts: int = 0
    llm_calls: int = 0
    analysis_seconds: float = 0.0
    generation_seconds: float = 0.0
    build_seconds: float = 0.0
    test_seconds: float = 0.0

    def record_changes(self, changes: list[FileChange]) -> None:
        """Add the changes of one attempt to the running file counts."""
        self.files_created += sum(1 for c in changes if c.type is ChangeType.CREATED)
        self.files_modified += sum(1 for c in changes if c.type is ChangeType.MODIFIED)
        self.files_deleted += sum(1 for c in changes if c.type is ChangeType.DELETED)


@dataclass(frozen=True)
class StepExecutionResult:
    """Outcome of one step. A successful result always carries passing build and test results."""

    success: bool
    changes: tuple[FileChange, ...] = ()
    error: str | None = None
    build_result: BuildResult | None = None
    test_result: TestValidationResult | None = None
    action_plan: StepActionPlan | None = None
    metrics: ExecutionMetrics = field(default_factory=ExecutionMetrics)
    duration_seconds: float = 0.0
    rolled_back: bool = False

    def __post_init__(self) -> None:
        object.__setattr__(self, "changes", tuple(self.changes))
        if self.success:
            if self.build_result is None or not self.build_result.success:
                raise ValueError("Successful step requires a successful build result")
            if self.test_result is None or not self.test_result.all_passed:
                raise ValueError("Successful step requires a passing test result")


# ---------------------------------------------------------------------------
# Multi-file refactoring
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DependencyNode:
    file_path: str
    depends_on: tuple[str, ...] = ()
    depended_by: tuple[str, ...] = ()


@dataclass(frozen=True)
class DependencyGraph:
    nodes: Mapping[str, DependencyNode] = field(default_factory=lambda: MappingProxyType({}))
    circular_dependencies: tuple[tuple[str, ...], ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "nodes", MappingProxyType(dict(self.nodes)))

    @property
    def has_edges(self) -> bool:
        return any(node.depends_on for node in self.nodes.values())


@dataclass
class RefactoringPlan:
    description: str
    changes: list[FileChange] = field(default_factory=list)

    @property
    def affected_files(self) -> list[str]:
        return [c.path for c in self.changes]


@dataclass
class ChangesetValidationResult:
    is_valid: bool
    applied_changes: list[FileChange] = field(default_factory=list)
    build_result: BuildResult | None = None
    warnings: list[str] = field(default_factory=list)
    error: str | None = None


@dataclass
class RefactoringResult:
    success: bool
    ordered_changes: list[FileChange] = field(default_factory=list)
    applied_changes: list[FileChange] = field(default_factory=list)
    graph: DependencyGraph | None = None
    validation: ChangesetValidationResult | None = None
    error: str | None = None
    rolled_back: bool = False


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


LANGUAGE_BY_EXTENSION: dict[str, str] = {
    ".cs": "csharp",
    ".fs": "fsharp",
    ".js": "javascript",
    ".jsx": "javascript",
    ".ts": "typescript",
    ".tsx": "typescript",
    ".py": "python",
    ".java": "java",
    ".kt": "kotlin",
    ".go": "go",
    ".rs": "rust",
    ".cpp": "cpp",
    ".cc": "cpp",
    ".cxx": "cpp",
    ".c": "c",
    ".rb": "ruby",
    ".php": "php",
}


def language_for_path(path: str) -> str:
    """Return the language name for a file path, or 'unknown'."""
    return LANGUAGE_BY_EXTENSION.get(PurePosixPath(path).suffix.lower(), "unknown")
