"""Step executor: analyze, generate, build and test one plan step.

A step runs through a fixed sequence of phases. Each phase handler returns a
``Transition`` and ``next_phase`` is the only place the next phase is
decided, so every exit path of an attempt goes through the table below.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import posixpath
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable

from src.agents.code_generator import insert_between_markers
from src.agents.protocol import CodeGenerator, StepPlanner
from src.pipeline.build_verifier import BuildVerifier
from src.pipeline.config import PipelineConfig
from src.pipeline.context_builder import RepositoryContextBuilder
from src.pipeline.exceptions import (
    InvalidTransitionError,
    LedgerCorruptionError,
    RefactoringError,
)
from src.pipeline.models import (
    ActionType,
    BuildResult,
    ChangeType,
    CodeAction,
    ExecutionMetrics,
    FileChange,
    PlanStep,
    RefactoringPlan,
    RepositoryContext,
    StepActionPlan,
    StepExecutionResult,
    TestValidationResult,
    language_for_path,
)
from src.pipeline.refactoring import RefactoringCoordinator
from src.pipeline.test_validator import TestValidator
from src.workspace.command_runner import WorkingContext
from src.workspace.file_editor import FileEditor
from src.workspace.file_store import normalize_path

logger = logging.getLogger(__name__)


class StepPhase(Enum):
    ANALYZING = "analyzing"
    GENERATING = "generating"
    BUILDING = "building"
    TESTING = "testing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ROLLING_BACK = "rolling_back"


class Transition(Enum):
    ADVANCE = "advance"
    RETRY = "retry"
    FAIL = "fail"


TRANSITIONS: dict[tuple[StepPhase, Transition], StepPhase] = {
    (StepPhase.ANALYZING, Transition.ADVANCE): StepPhase.GENERATING,
    (StepPhase.GENERATING, Transition.ADVANCE): StepPhase.BUILDING,
    (StepPhase.BUILDING, Transition.ADVANCE): StepPhase.TESTING,
    (StepPhase.TESTING, Transition.ADVANCE): StepPhase.SUCCEEDED,
    (StepPhase.ANALYZING, Transition.FAIL): StepPhase.FAILED,
    (StepPhase.GENERATING, Transition.FAIL): StepPhase.FAILED,
    (StepPhase.BUILDING, Transition.FAIL): StepPhase.FAILED,
    (StepPhase.TESTING, Transition.FAIL): StepPhase.FAILED,
    (StepPhase.FAILED, Transition.ADVANCE): StepPhase.ROLLING_BACK,
    (StepPhase.ROLLING_BACK, Transition.RETRY): StepPhase.ANALYZING,
    (StepPhase.ROLLING_BACK, Transition.FAIL): StepPhase.FAILED,
}

TERMINAL_PHASES = frozenset({StepPhase.SUCCEEDED, StepPhase.FAILED})


def next_phase(phase: StepPhase, transition: Transition) -> StepPhase:
    """Return the phase ``transition`` leads to from ``phase``."""
    try:
        return TRANSITIONS[(phase, transition)]
    except KeyError:
        raise InvalidTransitionError(phase, transition) from None


def derive_test_path(main_file: str) -> str | None:
    """Conventional test file location for ``main_file``, or None if unknown."""
    main_file = normalize_path(main_file)
    directory, name = posixpath.split(main_file)
    stem, ext = posixpath.splitext(name)
    language = language_for_path(main_file)
    if language == "python":
        return f"tests/test_{stem}.py"
    if language in ("typescript", "javascript"):
        return posixpath.join(directory, f"{stem}.test{ext}")
    if language == "go":
        return posixpath.join(directory, f"{stem}_test.go")
    if language == "java":
        test_dir = directory.replace("src/main/", "src/test/", 1)
        return posixpath.join(test_dir, f"{stem}Test.java")
    if language == "csharp":
        return posixpath.join("tests", f"{stem}Tests.cs")
    return None


@dataclass
class _Attempt:
    """Mutable state of one pass through the phases."""

    context: WorkingContext
    step: PlanStep
    number: int
    metrics: ExecutionMetrics
    checkpoint: int
    repository: RepositoryContext | None = None
    plan: StepActionPlan | None = None
    build_result: BuildResult | None = None
    test_result: TestValidationResult | None = None
    error: str | None = None
    staged: list[FileChange] = field(default_factory=list)


class StepExecutor:
    """Runs plan steps against a working context.

    Every file mutation goes through ``editor``; a step's changes are the
    ledger entries recorded after the checkpoint taken when it started.
    """

    def __init__(
        self,
        context_builder: RepositoryContextBuilder,
        planner: StepPlanner,
        code_generator: CodeGenerator,
        editor: FileEditor,
        build_verifier: BuildVerifier,
        test_validator: TestValidator,
        coordinator: RefactoringCoordinator | None = None,
        config: PipelineConfig | None = None,
        on_progress: Callable | None = None,
    ) -> None:
        self._context_builder = context_builder
        self._planner = planner
        self._code_generator = code_generator
        self._editor = editor
        self._build_verifier = build_verifier
        self._test_validator = test_validator
        self._coordinator = coordinator or RefactoringCoordinator(editor, build_verifier)
        self._config = config or PipelineConfig()
        self._on_progress = on_progress
        self._handlers = {
            StepPhase.ANALYZING: self._analyze_phase,
            StepPhase.GENERATING: self._generate_phase,
            StepPhase.BUILDING: self._build_phase,
            StepPhase.TESTING: self._test_phase,
        }

    def _enter(self, phase: StepPhase, attempt: int) -> None:
        logger.info("Step phase: %s (attempt %d)", phase.value, attempt)
        if self._on_progress:
            self._on_progress(phase, attempt)

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def analyze_step(
        self,
        context: WorkingContext,
        step: PlanStep,
        repository: RepositoryContext | None = None,
    ) -> StepActionPlan:
        """Ask the planner for the actions that implement ``step``."""
        if repository is None:
            repository = await self._context_builder.build(context)
        plan = await self._planner.plan(step, repository)
        logger.info("Step analysis found %d action(s)", len(plan.actions))
        return plan

    async def execute_step(
        self,
        context: WorkingContext,
        step: PlanStep,
        metrics: ExecutionMetrics | None = None,
        attempt: int = 1,
    ) -> StepExecutionResult:
        """Run one attempt. A failed attempt leaves its changes in place."""
        metrics = metrics if metrics is not None else ExecutionMetrics()
        metrics.step_attempts += 1
        run = _Attempt(
            context=context,
            step=step,
            number=attempt,
            metrics=metrics,
            checkpoint=self._editor.checkpoint(),
        )
        start = time.monotonic()
        logger.info("Starting step %s: %s", step.id, step.title)

        phase = StepPhase.ANALYZING
        self._enter(phase, attempt)
        while phase not in TERMINAL_PHASES:
            try:
                transition = await self._handlers[phase](run)
            except (InvalidTransitionError, LedgerCorruptionError):
                raise
            except Exception as e:
                logger.error("Step %s failed while %s: %s", step.id, phase.value, e)
                run.error = f"{phase.value.capitalize()} failed: {e}"
                transition = Transition.FAIL
            phase = next_phase(phase, transition)
            self._enter(phase, attempt)

        changes = self._editor.changes[run.checkpoint:]
        metrics.record_changes(changes)
        succeeded = phase is StepPhase.SUCCEEDED
        if succeeded:
            logger.info(
                "Step %s complete: %d created, %d modified, %d deleted",
                step.id,
                sum(1 for c in changes if c.type is ChangeType.CREATED),
                sum(1 for c in changes if c.type is ChangeType.MODIFIED),
                sum(1 for c in changes if c.type is ChangeType.DELETED),
            )
        return StepExecutionResult(
            success=succeeded,
            changes=changes,
            error=None if succeeded else run.error,
            build_result=run.build_result,
            test_result=run.test_result,
            action_plan=run.plan,
            metrics=metrics,
            duration_seconds=time.monotonic() - start,
        )

    async def execute_step_with_retry(
        self,
        context: WorkingContext,
        step: PlanStep,
        max_retries: int | None = None,
    ) -> StepExecutionResult:
        """Run a step, rolling back and retrying from analysis on failure.

        A step that still fails after the last retry is rolled back too, so
        the working tree is left as it was found. Metrics accumulate across
        attempts.
        """
        max_retries = self._config.step_max_retries if max_retries is None else max_retries
        if max_retries < 0:
            raise ValueError("max_retries must not be negative")

        metrics = ExecutionMetrics()
        checkpoint = self._editor.checkpoint()
        start = time.monotonic()
        total = max_retries + 1
        attempt = 0

        try:
            while True:
                attempt += 1
                result = await self.execute_step(context, step, metrics, attempt)
                if result.success:
                    logger.info("Step %s succeeded on attempt %d", step.id, attempt)
                    step.done = True
                    return dataclasses.replace(result, duration_seconds=time.monotonic() - start)

                logger.warning("Step %s failed on attempt %d: %s", step.id, attempt, result.error)
                phase = next_phase(StepPhase.FAILED, Transition.ADVANCE)
                self._enter(phase, attempt)
                await self.rollback_step(context, checkpoint)

                if attempt >= total:
                    self._enter(next_phase(phase, Transition.FAIL), attempt)
                    logger.error("Step %s failed after %d attempt(s)", step.id, attempt)
                    return dataclasses.replace(
                        result,
                        duration_seconds=time.monotonic() - start,
                        rolled_back=True,
                    )

                next_phase(phase, Transition.RETRY)
                logger.info("Retrying step %s (attempt %d of %d)", step.id, attempt + 1, total)
                if self._config.retry_delay_seconds > 0:
                    await asyncio.sleep(self._config.retry_delay_seconds)
        except asyncio.CancelledError:
            logger.warning("Step %s cancelled; rolling back", step.id)
            await self.rollback_step(context, checkpoint)
            raise

    async def rollback_step(self, context: WorkingContext, checkpoint: int = 0) -> list[FileChange]:
        """Revert every change recorded since ``checkpoint``. Idempotent."""
        reverted = await self._editor.rollback_to(context, checkpoint)
        logger.info("Rolled back %d change(s)", len(reverted))
        return reverted

    # ------------------------------------------------------------------
    # Phase handlers
    # ------------------------------------------------------------------

    async def _analyze_phase(self, run: _Attempt) -> Transition:
        started = time.monotonic()
        run.repository = await self._context_builder.build(run.context)
        run.metrics.llm_calls += 1
        run.plan = await self.analyze_step(run.context, run.step, run.repository)
        run.metrics.analysis_seconds += time.monotonic() - started
        return Transition.ADVANCE

    async def _generate_phase(self, run: _Attempt) -> Transition:
        started = time.monotonic()
        try:
            await self._stage_actions(run)
            await self._stage_tests(run)
            await self._apply_staged(run)
        finally:
            run.metrics.generation_seconds += time.monotonic() - started
        return Transition.ADVANCE

    async def _build_phase(self, run: _Attempt) -> Transition:
        started = time.monotonic()
        build = await self._build_verifier.verify_build(run.context)
        run.metrics.build_seconds += time.monotonic() - started
        run.metrics.build_attempts += build.attempts
        run.metrics.llm_calls += build.fix_requests
        run.build_result = build

        if build.undetermined:
            if self._config.require_build_tool:
                run.error = "No build tool detected and one is required"
                return Transition.FAIL
            return Transition.ADVANCE
        if not build.success:
            run.error = f"Build failed after {build.attempts} attempt(s): {build.output[-2000:]}"
            return Transition.FAIL
        return Transition.ADVANCE

    async def _test_phase(self, run: _Attempt) -> Transition:
        started = time.monotonic()
        tests = await self._test_validator.run_and_validate_tests(
            run.context, test_filter=self._config.test_filter,
        )
        run.metrics.test_seconds += time.monotonic() - started
        run.metrics.test_attempts += tests.attempts
        run.metrics.llm_calls += tests.fix_requests
        run.test_result = tests

        if tests.undetermined:
            if self._config.require_test_framework:
                run.error = "No test framework detected and one is required"
                return Transition.FAIL
            return Transition.ADVANCE
        if not tests.all_passed:
            run.error = f"Tests failed. {tests.failed}/{tests.total} tests failing: {tests.summary}"
            return Transition.FAIL
        return Transition.ADVANCE

    # ------------------------------------------------------------------
    # Generation helpers
    # ------------------------------------------------------------------

    async def _current_content(self, run: _Attempt, path: str) -> str | None:
        """Content of ``path`` once the staged changes are applied. None if absent."""
        for change in reversed(run.staged):
            if change.path == path:
                return None if change.type is ChangeType.DELETED else change.new_content
        if await self._editor.exists(run.context, path):
            return await self._editor.read_file(run.context, path)
        return None

    async def _stage_actions(self, run: _Attempt) -> None:
        for action in run.plan.actions:
            path = normalize_path(action.file_path)
            logger.info("Staging %s %s", action.type.value, path)
            if action.type is ActionType.DELETE_FILE:
                run.staged.append(FileChange(type=ChangeType.DELETED, path=path))
                continue

            existing = await self._current_content(run, path)
            content = await self._content_for(run, action, existing)
            if action.type is ActionType.CREATE_FILE:
                run.staged.append(FileChange(type=ChangeType.CREATED, path=path, new_content=content))
            else:
                run.staged.append(
                    FileChange(
                        type=ChangeType.MODIFIED,
                        path=path,
                        old_content=existing,
                        new_content=content,
                    )
                )

    async def _content_for(
        self, run: _Attempt, action: CodeAction, existing: str | None,
    ) -> str:
        request = action.request
        if request.content.strip():
            if existing is not None and (request.before_marker or request.after_marker):
                return insert_between_markers(
                    existing, request.content, request.after_marker, request.before_marker,
                )
            return request.content

        run.metrics.llm_calls += 1
        language = language_for_path(action.file_path)
        if language == "unknown":
            language = run.repository.language
        logger.info("Generating content for %s", action.file_path)
        return await self._code_generator.generate_code(
            action, language, existing if action.type is ActionType.MODIFY_FILE else None,
        )

    async def _stage_tests(self, run: _Attempt) -> None:
        plan = run.plan
        if not plan.requires_tests or not plan.main_file:
            return
        main_file = normalize_path(plan.main_file)
        test_file = normalize_path(plan.test_file) if plan.test_file else derive_test_path(main_file)
        if not test_file:
            logger.warning("No test file location known for %s; skipping tests", main_file)
            return

        code = await self._current_content(run, main_file)
        if code is None:
            logger.warning("Main file %s does not exist; skipping tests", main_file)
            return
        logger.info("Generating tests for %s into %s", main_file, test_file)
        run.metrics.llm_calls += 1
        tests = await self._code_generator.generate_tests(
            main_file, code, run.repository.test_framework,
        )
        existing = await self._current_content(run, test_file)
        if existing is None:
            run.staged.append(FileChange(type=ChangeType.CREATED, path=test_file, new_content=tests))
        else:
            run.staged.append(
                FileChange(
                    type=ChangeType.MODIFIED, path=test_file, old_content=existing, new_content=tests,
                )
            )

    async def _apply_staged(self, run: _Attempt) -> None:
        staged = run.staged
        paths = list(dict.fromkeys(c.path for c in staged))
        if len(paths) > 1:
            contents = {c.path: c.new_content for c in staged if c.new_content is not None}
            graph = await self._coordinator.analyze_dependencies(run.context, paths, contents)
            if graph.has_edges:
                plan = RefactoringPlan(description=run.step.title, changes=staged)
                result = await self._coordinator.refactor(
                    run.context, plan, verify=False, graph=graph,
                )
                if not result.success:
                    raise RefactoringError(result.error or "Changeset could not be applied")
                return

        for change in staged:
            await self._coordinator.apply_change(run.context, change)
