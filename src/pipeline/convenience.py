"""Convenience functions for wiring and running a pipeline."""

from __future__ import annotations

from dataclasses import dataclass

from src.agents.protocol import CodeGenerator, FixGenerator, StepPlanner
from src.pipeline.build_verifier import BuildVerifier
from src.pipeline.config import PipelineConfig
from src.pipeline.context_builder import RepositoryContextBuilder
from src.pipeline.models import PlanStep, StepExecutionResult
from src.pipeline.refactoring import RefactoringCoordinator
from src.pipeline.step_executor import StepExecutor
from src.pipeline.test_validator import TestValidator
from src.workspace.command_runner import CommandRunner, LocalCommandRunner, WorkingContext
from src.workspace.file_editor import FileEditor
from src.workspace.file_store import FileStore, LocalFileStore


@dataclass
class Generators:
    planner: StepPlanner
    code_generator: CodeGenerator
    fix_generator: FixGenerator


@dataclass
class Pipeline:
    """One pipeline instance. Owns its editor, and so its change ledger."""

    config: PipelineConfig
    runner: CommandRunner
    store: FileStore
    editor: FileEditor
    context_builder: RepositoryContextBuilder
    build_verifier: BuildVerifier
    test_validator: TestValidator
    coordinator: RefactoringCoordinator
    executor: StepExecutor


def create_generators(model: str = "sonnet", timeout: int = 300) -> Generators:
    """Create generators backed by ClaudeTextGenerator."""
    from src.agents.claude_code import ClaudeTextGenerator
    from src.agents.code_generator import LlmCodeGenerator
    from src.agents.fix_generator import LlmFixGenerator
    from src.agents.step_planner import LlmStepPlanner

    generator = ClaudeTextGenerator(model=model, timeout=timeout)
    return Generators(
        planner=LlmStepPlanner(generator),
        code_generator=LlmCodeGenerator(generator),
        fix_generator=LlmFixGenerator(generator),
    )


def create_mock_generators() -> Generators:
    """Create mock generators for fast testing."""
    from src.agents.mocks import MockCodeGenerator, MockFixGenerator, MockStepPlanner

    return Generators(
        planner=MockStepPlanner(),
        code_generator=MockCodeGenerator(),
        fix_generator=MockFixGenerator(),
    )


def create_pipeline(
    runner: CommandRunner | None = None,
    store: FileStore | None = None,
    config: PipelineConfig | None = None,
    generators: Generators | None = None,
    on_progress=None,
    mock: bool = False,
    model: str = "sonnet",
) -> Pipeline:
    """Wire a pipeline with sensible defaults.

    Uses Claude-backed generators by default. Pass mock=True for fast
    testing without burning tokens.
    """
    config = config or PipelineConfig()
    runner = runner or LocalCommandRunner(default_timeout=config.command_timeout_seconds)
    store = store or LocalFileStore()
    if generators is None:
        generators = create_mock_generators() if mock else create_generators(model=model)

    editor = FileEditor(store, protected_files=config.protected_files)
    context_builder = RepositoryContextBuilder(store, config)
    build_verifier = BuildVerifier(
        runner, editor, generators.fix_generator, context_builder, config,
    )
    test_validator = TestValidator(
        runner, editor, generators.fix_generator, context_builder, config,
    )
    coordinator = RefactoringCoordinator(editor, build_verifier)
    executor = StepExecutor(
        context_builder=context_builder,
        planner=generators.planner,
        code_generator=generators.code_generator,
        editor=editor,
        build_verifier=build_verifier,
        test_validator=test_validator,
        coordinator=coordinator,
        config=config,
        on_progress=on_progress,
    )
    return Pipeline(
        config=config,
        runner=runner,
        store=store,
        editor=editor,
        context_builder=context_builder,
        build_verifier=build_verifier,
        test_validator=test_validator,
        coordinator=coordinator,
        executor=executor,
    )


async def run_step(
    context: WorkingContext,
    step: PlanStep,
    pipeline: Pipeline | None = None,
    on_progress=None,
    mock: bool = False,
) -> StepExecutionResult:
    """Run one step with retries on a fresh or given pipeline."""
    if pipeline is None:
        pipeline = create_pipeline(on_progress=on_progress, mock=mock)
    return await pipeline.executor.execute_step_with_retry(context, step)
