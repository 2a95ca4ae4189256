"""Protocols for the generation collaborators consumed by the pipeline."""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from src.pipeline.models import (
    BuildError,
    CodeAction,
    CodeFix,
    PlanStep,
    RepositoryContext,
    StepActionPlan,
    TestFailure,
    TestFix,
)


@runtime_checkable
class TextGenerator(Protocol):
    """Black-box text generation: text in, text out. May fail or time out."""

    async def generate(self, prompt: str, system: str | None = None) -> str: ...


@runtime_checkable
class StepPlanner(Protocol):
    async def plan(self, step: PlanStep, context: RepositoryContext) -> StepActionPlan: ...


@runtime_checkable
class CodeGenerator(Protocol):
    async def generate_code(
        self, action: CodeAction, language: str, existing: str | None = None,
    ) -> str: ...

    async def generate_tests(
        self, main_path: str, code: str, test_framework: str | None,
    ) -> str: ...


@runtime_checkable
class FixGenerator(Protocol):
    async def generate_build_fix(
        self, error: BuildError, surrounding: str | None,
    ) -> CodeFix | None: ...

    async def analyze_failure(self, failure: TestFailure) -> TestFailure: ...

    async def generate_test_fix(
        self, failure: TestFailure, surrounding: str | None,
    ) -> TestFix | None: ...
