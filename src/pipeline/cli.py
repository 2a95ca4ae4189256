"""CLI entry point for the step execution pipeline.

Usage:
  python -m src.pipeline context <root> [--container ID]
  python -m src.pipeline build <root> [--max-retries N] [--no-fix] [--mock]
  python -m src.pipeline test <root> [--filter F] [--max-retries N] [--mock]
  python -m src.pipeline run-step <root> --title TITLE [--details TEXT] [--mock]

Common options: --config pipeline.yaml, --model sonnet, --verbose.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Step execution pipeline CLI")
    subparsers = parser.add_subparsers(dest="command")

    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("root", help="Working context root (a path inside the container with --container)")
    common.add_argument("--container", default=None, help="Run inside this running container")
    common.add_argument("--config", default=None, help="Pipeline config YAML file")
    common.add_argument("--mock", action="store_true", help="Use mock generators (no model calls)")
    common.add_argument("--model", default="sonnet", help="Claude model (default: sonnet)")
    common.add_argument("--verbose", "-v", action="store_true", help="Debug logging")

    subparsers.add_parser("context", parents=[common], help="Show the detected repository context")

    build_parser_ = subparsers.add_parser("build", parents=[common], help="Verify the build")
    build_parser_.add_argument("--max-retries", type=int, default=None, help="Build attempts")
    build_parser_.add_argument("--no-fix", action="store_true", help="Report errors without fixing")

    test_parser = subparsers.add_parser("test", parents=[common], help="Run and validate tests")
    test_parser.add_argument("--filter", default=None, help="Only run matching tests")
    test_parser.add_argument("--max-retries", type=int, default=None, help="Test attempts")

    step_parser = subparsers.add_parser("run-step", parents=[common], help="Execute one plan step")
    step_parser.add_argument("--title", required=True, help="Step title")
    step_parser.add_argument("--details", default="", help="Step details")
    step_parser.add_argument("--id", dest="step_id", default="cli-step", help="Step ID")
    step_parser.add_argument("--max-retries", type=int, default=None, help="Step retries")
    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        sys.exit(1)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    commands = {
        "context": _context_command,
        "build": _build_command,
        "test": _test_command,
        "run-step": _run_step_command,
    }
    try:
        ok = asyncio.run(commands[args.command](args))
    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    if not ok:
        sys.exit(1)


def _create(args, on_progress=None):
    from src.pipeline.config import load_config
    from src.pipeline.convenience import create_pipeline
    from src.workspace import (
        ContainerCommandRunner,
        ContainerFileStore,
        LocalCommandRunner,
        LocalFileStore,
        WorkingContext,
    )

    config = load_config(Path(args.config) if args.config else None)
    if args.container:
        runner = ContainerCommandRunner()
        store = ContainerFileStore(runner)
        context = WorkingContext(id=args.container, root=Path(args.root), container_id=args.container)
    else:
        runner = LocalCommandRunner(default_timeout=config.command_timeout_seconds)
        store = LocalFileStore()
        context = WorkingContext(id="local", root=Path(args.root).resolve())

    pipeline = create_pipeline(
        runner=runner,
        store=store,
        config=config,
        on_progress=on_progress,
        mock=args.mock,
        model=args.model,
    )
    return pipeline, context


async def _context_command(args) -> bool:
    pipeline, context = _create(args)
    repo = await pipeline.context_builder.build(context)
    print(f"Language:       {repo.language}")
    print(f"Build tool:     {repo.build_tool or '(none detected)'}")
    print(f"Test framework: {repo.test_framework or '(none detected)'}")
    print(f"Files:          {len(repo.files)}")
    return True


async def _build_command(args) -> bool:
    pipeline, context = _create(args)
    result = await pipeline.build_verifier.verify_build(
        context, max_retries=args.max_retries, fix_errors=not args.no_fix,
    )
    if result.undetermined:
        print("Build: UNDETERMINED (no build tool detected)")
        return True

    print(f"Build: {'SUCCESS' if result.success else 'FAILED'} ({result.build_tool})")
    print(f"Attempts: {result.attempts}")
    if result.fixes_applied:
        print(f"Fixes applied: {len(result.fixes_applied)}")
    for error in result.errors:
        print(f"  {error.location}: {error.code} {error.message}")
    if not result.tool_available:
        print(result.output, file=sys.stderr)
    print(f"Duration: {result.duration_seconds:.2f}s")
    return result.success


async def _test_command(args) -> bool:
    pipeline, context = _create(args)
    result = await pipeline.test_validator.run_and_validate_tests(
        context, max_retries=args.max_retries, test_filter=args.filter,
    )
    print(f"Tests: {result.summary}")
    if not result.undetermined:
        print(f"Passed: {result.passed}  Failed: {result.failed}  Skipped: {result.skipped}")
        print(f"Attempts: {result.attempts}")
    for failure in result.remaining_failures:
        print(f"  [FAIL] {failure.full_name}: {failure.message}")
    if result.coverage is not None:
        print(f"Coverage: {result.coverage.summary}")
    return result.all_passed


async def _run_step_command(args) -> bool:
    from src.pipeline.models import PlanStep

    def on_progress(phase, attempt):
        print(f"  Phase: {phase.value.upper()} (attempt {attempt})")

    pipeline, context = _create(args, on_progress=on_progress)
    step = PlanStep(id=args.step_id, title=args.title, details=args.details)
    result = await pipeline.executor.execute_step_with_retry(
        context, step, max_retries=args.max_retries,
    )

    print(f"\nStep {step.id}: {'SUCCESS' if result.success else 'FAILED'}")
    for change in result.changes:
        print(f"  [{change.type.value.upper()}] {change.path}")
    m = result.metrics
    print(f"Attempts: {m.step_attempts} (build {m.build_attempts}, test {m.test_attempts})")
    print(f"Model calls: {m.llm_calls}")
    print(f"Duration: {result.duration_seconds:.2f}s")
    if result.rolled_back:
        print("Changes were rolled back.")
    if result.error:
        print(f"Error: {result.error}", file=sys.stderr)
    return result.success


if __name__ == "__main__":
    main()
