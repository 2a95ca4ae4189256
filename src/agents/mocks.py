"""Mock generation collaborators for testing and dry runs."""

from __future__ import annotations

from typing import Callable, Sequence

from src.pipeline.models import (
    ActionType,
    BuildError,
    CodeAction,
    CodeFix,
    CodeGenerationRequest,
    PlanStep,
    RepositoryContext,
    StepActionPlan,
    TestFailure,
    TestFix,
)


class MockTextGenerator:
    """Returns canned responses in order; the last one repeats."""

    def __init__(self, responses: str | Sequence[str] = "{}", error: Exception | None = None) -> None:
        self._responses = [responses] if isinstance(responses, str) else list(responses)
        self._error = error
        self.call_count: int = 0
        self.prompts: list[str] = []

    async def generate(self, prompt: str, system: str | None = None) -> str:
        self.call_count += 1
        self.prompts.append(prompt)
        if self._error is not None:
            raise self._error
        index = min(self.call_count - 1, len(self._responses) - 1)
        return self._responses[index]


class MockStepPlanner:
    """Returns a configurable action plan."""

    def __init__(self, plan: StepActionPlan | None = None, error: Exception | None = None) -> None:
        self._plan = plan or StepActionPlan(
            actions=[
                CodeAction(
                    type=ActionType.CREATE_FILE,
                    file_path="mock_file.py",
                    description="Mock implementation",
                    request=CodeGenerationRequest(content="def mock():\n    return True\n"),
                ),
            ],
        )
        self._error = error
        self.call_count: int = 0
        self.last_step: PlanStep | None = None
        self.last_context: RepositoryContext | None = None

    async def plan(self, step: PlanStep, context: RepositoryContext) -> StepActionPlan:
        self.call_count += 1
        self.last_step = step
        self.last_context = context
        if self._error is not None:
            raise self._error
        return self._plan


class MockCodeGenerator:
    """Returns the request content, or per-path canned code.

    Paths listed in ``fail_paths`` raise the configured error instead.
    """

    def __init__(
        self,
        code_by_path: dict[str, str] | None = None,
        tests: str = "def test_mock():\n    assert True\n",
        fail_paths: Sequence[str] = (),
        error: Exception | None = None,
    ) -> None:
        self._code_by_path = code_by_path or {}
        self._tests = tests
        self._fail_paths = set(fail_paths)
        self._error = error or RuntimeError("mock generation failure")
        self.call_count: int = 0
        self.generated_paths: list[str] = []
        self.test_call_count: int = 0

    async def generate_code(
        self, action: CodeAction, language: str, existing: str | None = None,
    ) -> str:
        self.call_count += 1
        self.generated_paths.append(action.file_path)
        if action.file_path in self._fail_paths:
            raise self._error
        if action.file_path in self._code_by_path:
            return self._code_by_path[action.file_path]
        return action.request.content or f"# {action.description}\n"

    async def generate_tests(
        self, main_path: str, code: str, test_framework: str | None,
    ) -> str:
        self.test_call_count += 1
        return self._tests


class MockFixGenerator:
    """Returns configurable fixes.

    A fix source may be a fix, a callable taking the diagnostic, or None.
    Codes or test names in ``fail_on`` raise instead.
    """

    def __init__(
        self,
        build_fix: CodeFix | Callable[[BuildError], CodeFix | None] | None = None,
        test_fix: TestFix | Callable[[TestFailure], TestFix | None] | None = None,
        fail_on: Sequence[str] = (),
    ) -> None:
        self._build_fix = build_fix
        self._test_fix = test_fix
        self._fail_on = set(fail_on)
        self.build_fix_calls: list[BuildError] = []
        self.test_fix_calls: list[TestFailure] = []
        self.analyze_calls: int = 0

    @property
    def call_count(self) -> int:
        return len(self.build_fix_calls) + len(self.test_fix_calls) + self.analyze_calls

    async def generate_build_fix(
        self, error: BuildError, surrounding: str | None,
    ) -> CodeFix | None:
        self.build_fix_calls.append(error)
        if error.code in self._fail_on:
            raise RuntimeError(f"mock fix failure for {error.code}")
        if callable(self._build_fix):
            return self._build_fix(error)
        return self._build_fix

    async def analyze_failure(self, failure: TestFailure) -> TestFailure:
        self.analyze_calls += 1
        return failure

    async def generate_test_fix(
        self, failure: TestFailure, surrounding: str | None,
    ) -> TestFix | None:
        self.test_fix_calls.append(failure)
        if failure.test_name in self._fail_on:
            raise RuntimeError(f"mock fix failure for {failure.test_name}")
        if callable(self._test_fix):
            return self._test_fix(failure)
        return self._test_fix
