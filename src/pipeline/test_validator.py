"""Test validator: run tests, parse failures, request fixes, retry."""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import re
import time
from dataclasses import dataclass
from typing import Callable, Sequence

from src.agents.protocol import FixGenerator
from src.pipeline.config import PipelineConfig
from src.pipeline.context_builder import RepositoryContextBuilder
from src.pipeline.exceptions import FileOperationError
from src.pipeline.models import (
    CoverageReport,
    FailureType,
    TestExecutionResult,
    TestFailure,
    TestFix,
    TestValidationResult,
)
from src.workspace.command_runner import CommandResult, CommandRunner, WorkingContext
from src.workspace.file_editor import FileEditor
from src.workspace.file_store import relative_to_root

logger = logging.getLogger(__name__)

MAX_FAILURE_MESSAGE = 1000


@dataclass(frozen=True)
class TestCommand:
    __test__ = False

    executable: str
    args: tuple[str, ...]
    filter_args: Callable[[str], tuple[str, ...]]
    coverage_args: tuple[str, ...] | None = None

    def build_args(self, test_filter: str | None) -> list[str]:
        args = list(self.args)
        if test_filter:
            args.extend(self.filter_args(test_filter))
        return args


_DOTNET = TestCommand(
    "dotnet", ("test",), lambda f: ("--filter", f), ("test", "--collect", "Code Coverage"),
)

TEST_COMMANDS: dict[str, TestCommand] = {
    "xunit": _DOTNET,
    "nunit": _DOTNET,
    "mstest": _DOTNET,
    "jest": TestCommand("npm", ("test",), lambda f: ("--", f), ("test", "--", "--coverage")),
    "pytest": TestCommand("pytest", ("-v",), lambda f: (f,), ("--cov", "--cov-branch")),
    "junit": TestCommand("mvn", ("test",), lambda f: (f"-Dtest={f}",)),
    "go": TestCommand("go", ("test", "./..."), lambda f: ("-run", f), ("test", "./...", "-cover")),
}


# ---------------------------------------------------------------------------
# Result parsing
# ---------------------------------------------------------------------------


def classify_failure(message: str) -> FailureType:
    """Timeout, then setup, teardown, assertion; anything else is an exception."""
    lowered = message.lower()
    if "timeout" in lowered or "timed out" in lowered:
        return FailureType.TIMEOUT
    if "setup" in lowered or "beforeeach" in lowered or "beforeall" in lowered:
        return FailureType.SETUP
    if "teardown" in lowered or "aftereach" in lowered or "afterall" in lowered:
        return FailureType.TEARDOWN
    if "assert" in lowered or "expected" in lowered or "should" in lowered:
        return FailureType.ASSERTION
    return FailureType.EXCEPTION


_EXPECTED_ACTUAL_PATTERNS = (
    re.compile(r"Expected:\s*(?P<expected>.+?)\s*\n\s*(?:Actual|Received|But was):\s*(?P<actual>.+)", re.IGNORECASE),
    re.compile(r"expected:\s*<(?P<expected>.*?)>\s*but was:\s*<(?P<actual>.*?)>", re.IGNORECASE),
    re.compile(r"assert (?P<actual>.+?) == (?P<expected>.+?)$", re.MULTILINE),
)


def extract_expected_actual(message: str) -> tuple[str | None, str | None]:
    for pattern in _EXPECTED_ACTUAL_PATTERNS:
        m = pattern.search(message)
        if m:
            return m["expected"].strip(), m["actual"].strip()
    return None, None


def _failure(test_name: str, class_name: str, message: str) -> TestFailure:
    message = message.strip()[:MAX_FAILURE_MESSAGE]
    expected, actual = extract_expected_actual(message)
    return TestFailure(
        test_name=test_name,
        class_name=class_name,
        message=message,
        type=classify_failure(message),
        expected=expected,
        actual=actual,
    )


def _section(output: str, start: int, next_marker: str) -> str:
    end = output.find(next_marker, start)
    return output[start:end if end != -1 else len(output)]


def _int(value: str | None) -> int:
    return int(value) if value else 0


_DOTNET_SUMMARY = re.compile(
    r"Failed:\s+(\d+),\s+Passed:\s+(\d+),\s+Skipped:\s+(\d+),\s+Total:\s+(\d+)"
)
_DOTNET_FAILURE = re.compile(r"^\s*Failed\s+(.+)\.([^\s.]+)\s+\[", re.MULTILINE)


def parse_dotnet_results(output: str) -> TestExecutionResult:
    failed = passed = skipped = total = 0
    m = _DOTNET_SUMMARY.search(output)
    if m:
        failed, passed, skipped, total = (int(g) for g in m.groups())

    failures = []
    for fm in _DOTNET_FAILURE.finditer(output):
        message = _section(output, fm.end(), "Failed ")
        message = "\n".join(message.strip().splitlines()[:10])
        failures.append(_failure(fm[2].strip(), fm[1].strip(), message))
    failed = max(failed, len(failures))
    return TestExecutionResult(
        success=failed == 0, total=total, passed=passed, failed=failed,
        skipped=skipped, failures=failures, output=output,
    )


_JEST_SUMMARY = re.compile(
    r"Tests:\s+(?:(\d+)\s+failed,\s+)?(?:(\d+)\s+skipped,\s+)?(?:(\d+)\s+passed,\s+)?(\d+)\s+total"
)
_JEST_FAILURE = re.compile(r"●\s+(.+?)\s+›\s+(.+?)$", re.MULTILINE)


def parse_jest_results(output: str) -> TestExecutionResult:
    failed = passed = skipped = total = 0
    m = _JEST_SUMMARY.search(output)
    if m:
        failed, skipped = _int(m[1]), _int(m[2])
        passed, total = _int(m[3]), int(m[4])

    failures = [
        _failure(fm[2].strip(), fm[1].strip(), _section(output, fm.end(), "●"))
        for fm in _JEST_FAILURE.finditer(output)
    ]
    failed = max(failed, len(failures))
    return TestExecutionResult(
        success=failed == 0, total=total, passed=passed, failed=failed,
        skipped=skipped, failures=failures, output=output,
    )


_PYTEST_SUMMARY = re.compile(r"^=+ (?P<body>.*\d+ (?:passed|failed|skipped|error).*) =+$", re.MULTILINE)
_PYTEST_COUNT = re.compile(r"(\d+) (passed|failed|skipped|errors?)")
_PYTEST_FAILURE = re.compile(r"^(?:FAILED|ERROR) (?P<nodeid>\S+)(?: - (?P<msg>.*))?$", re.MULTILINE)


def parse_pytest_results(output: str) -> TestExecutionResult:
    counts = {"passed": 0, "failed": 0, "skipped": 0, "error": 0}
    summaries = _PYTEST_SUMMARY.findall(output)
    if summaries:
        for number, kind in _PYTEST_COUNT.findall(summaries[-1]):
            counts[kind.rstrip("s") if kind.startswith("error") else kind] += int(number)

    failures = []
    for fm in _PYTEST_FAILURE.finditer(output):
        parts = fm["nodeid"].split("::")
        test_name = parts[-1]
        class_name = ".".join(parts[:-1])
        failure = _failure(test_name, class_name, fm["msg"] or "")
        failures.append(_with_file(failure, parts[0] if len(parts) > 1 else None))

    failed = max(counts["failed"] + counts["error"], len(failures))
    total = counts["passed"] + failed + counts["skipped"]
    return TestExecutionResult(
        success=failed == 0, total=total, passed=counts["passed"], failed=failed,
        skipped=counts["skipped"], failures=failures, output=output,
    )


_JUNIT_SUMMARY = re.compile(r"Tests run:\s+(\d+),\s+Failures:\s+(\d+),\s+Errors:\s+(\d+),\s+Skipped:\s+(\d+)")
_JUNIT_FAILURE = re.compile(
    r"(\w+)\((.+?)\)\s+Time elapsed:.*?<<<\s+(?:FAILURE|ERROR)!", re.MULTILINE,
)


def parse_junit_results(output: str) -> TestExecutionResult:
    failed = passed = skipped = total = 0
    summaries = _JUNIT_SUMMARY.findall(output)
    if summaries:
        # Surefire prints per-class lines and a final aggregate; the last one wins.
        run, failures_count, errors_count, skipped = (int(g) for g in summaries[-1])
        total = run
        failed = failures_count + errors_count
        passed = total - failed - skipped

    failures = [
        _failure(fm[1].strip(), fm[2].strip(), _section(output, fm.end(), "<<<"))
        for fm in _JUNIT_FAILURE.finditer(output)
    ]
    failed = max(failed, len(failures))
    return TestExecutionResult(
        success=failed == 0, total=total, passed=passed, failed=failed,
        skipped=skipped, failures=failures, output=output,
    )


_GO_RESULT = re.compile(r"^\s*--- (PASS|FAIL|SKIP): (\S+)", re.MULTILINE)


def parse_go_results(output: str) -> TestExecutionResult:
    passed = failed = skipped = 0
    failures = []
    for m in _GO_RESULT.finditer(output):
        status, name = m[1], m[2]
        if status == "PASS":
            passed += 1
        elif status == "SKIP":
            skipped += 1
        else:
            failed += 1
            failures.append(_failure(name, "", _section(output, m.end(), "--- ")))
    # A build failure in a package prints FAIL without any test lines.
    if failed == 0 and re.search(r"^FAIL\b", output, re.MULTILINE):
        failed = 1
    return TestExecutionResult(
        success=failed == 0, total=passed + failed + skipped, passed=passed,
        failed=failed, skipped=skipped, failures=failures, output=output,
    )


RESULT_PARSERS: dict[str, Callable[[str], TestExecutionResult]] = {
    "xunit": parse_dotnet_results,
    "nunit": parse_dotnet_results,
    "mstest": parse_dotnet_results,
    "jest": parse_jest_results,
    "pytest": parse_pytest_results,
    "junit": parse_junit_results,
    "go": parse_go_results,
}


def parse_test_results(output: str, framework: str) -> TestExecutionResult:
    """Decompose raw test output into counts and failures. Pure."""
    parser = RESULT_PARSERS.get(framework)
    if parser is None:
        logger.warning("Unsupported test framework for result parsing: %s", framework)
        return TestExecutionResult(success=False, output=output)
    return parser(output)


_LINE_COVERAGE = re.compile(r"Line.*?(\d+(?:\.\d+)?)%")
_BRANCH_COVERAGE = re.compile(r"Branch.*?(\d+(?:\.\d+)?)%")
_PYTEST_TOTAL_COVERAGE = re.compile(r"^TOTAL\s+.*?(\d+(?:\.\d+)?)%\s*$", re.MULTILINE)
_GO_COVERAGE = re.compile(r"coverage:\s+(\d+(?:\.\d+)?)% of statements")


def parse_coverage(output: str) -> CoverageReport | None:
    """Line and branch percentages when the output reports them, otherwise None."""
    line = _LINE_COVERAGE.search(output) or _PYTEST_TOTAL_COVERAGE.search(output) or _GO_COVERAGE.search(output)
    branch = _BRANCH_COVERAGE.search(output)
    if line is None and branch is None:
        return None
    return CoverageReport(
        line_coverage=float(line[1]) if line else 0.0,
        branch_coverage=float(branch[1]) if branch else None,
    )


def _with_file(failure: TestFailure, file_path: str | None) -> TestFailure:
    if file_path is None:
        return failure
    return dataclasses.replace(failure, file_path=file_path)


# ---------------------------------------------------------------------------
# Validator
# ---------------------------------------------------------------------------


class TestValidator:
    """Runs the detected test framework with a bounded fix-and-retry loop."""

    __test__ = False

    def __init__(
        self,
        runner: CommandRunner,
        editor: FileEditor,
        fix_generator: FixGenerator,
        context_builder: RepositoryContextBuilder,
        config: PipelineConfig | None = None,
    ) -> None:
        self._runner = runner
        self._editor = editor
        self._fix_generator = fix_generator
        self._context_builder = context_builder
        self._config = config or PipelineConfig()

    async def detect_test_framework(self, context: WorkingContext) -> str | None:
        return await self._context_builder.detect_test_framework(context)

    async def run_tests(
        self,
        context: WorkingContext,
        test_filter: str | None = None,
        framework: str | None = None,
    ) -> TestExecutionResult:
        """Run the test suite once and parse its output.

        Raises CommandInvocationError if the test command cannot be started.
        """
        framework = framework or await self.detect_test_framework(context)
        if framework is None or framework not in TEST_COMMANDS:
            logger.warning("No supported test framework detected, cannot run tests")
            return TestExecutionResult(success=False, output="No test framework detected")

        command = TEST_COMMANDS[framework]
        logger.info("Running tests with %s", framework)
        start = time.monotonic()
        result = await self._runner.run(
            context,
            command.executable,
            command.build_args(test_filter),
            timeout=self._config.command_timeout_seconds,
        )
        parsed = self.parse_test_results(result.output, framework)
        parsed.duration_seconds = time.monotonic() - start
        if not result.success and parsed.success:
            # A non-zero exit with nothing parsed as failed is still a failed run.
            parsed.success = False
        if parsed.coverage is None:
            parsed.coverage = parse_coverage(result.output)
        logger.info(
            "Parsed %d test(s): %d passed, %d failed, %d skipped",
            parsed.total, parsed.passed, parsed.failed, parsed.skipped,
        )
        return parsed

    def parse_test_results(self, output: str, framework: str) -> TestExecutionResult:
        return parse_test_results(output, framework)

    async def analyze_test_failures(self, failures: Sequence[TestFailure]) -> list[TestFailure]:
        """Refine each failure. A failed analysis keeps the original failure."""
        analyzed = []
        for failure in failures[:self._config.max_fixes_per_attempt]:
            try:
                analyzed.append(await self._fix_generator.analyze_failure(failure))
            except Exception as e:
                logger.warning("Failure analysis failed for %s: %s", failure.full_name, e)
                analyzed.append(failure)
        return analyzed

    async def generate_test_fixes(
        self, context: WorkingContext, failures: Sequence[TestFailure],
    ) -> list[TestFix]:
        fixes: list[TestFix] = []
        for failure in failures:
            surrounding = await self._read_surrounding(context, failure.file_path)
            try:
                fix = await self._fix_generator.generate_test_fix(failure, surrounding)
            except Exception as e:
                logger.warning("Fix generation failed for %s: %s", failure.full_name, e)
                continue
            if fix is not None:
                fixes.append(fix)
        return fixes

    async def apply_test_fixes(
        self, context: WorkingContext, fixes: Sequence[TestFix],
    ) -> list[TestFix]:
        """Apply fixes through the editor. Returns the fixes that changed a file."""
        applied: list[TestFix] = []
        for fix in fixes:
            path = relative_to_root(context, fix.file_path)
            try:
                change = await self._editor.replace_in_file(
                    context, path, fix.original_code, fix.fixed_code,
                )
            except FileOperationError as e:
                logger.warning("Failed to apply fix to %s: %s", path, e)
                continue
            if change is None:
                logger.warning("Fix for %s did not match the file content", path)
                continue
            applied.append(fix)
            logger.info("Applied %s fix to %s: %s", fix.target.value, path, fix.description)
        return applied

    async def get_coverage(
        self, context: WorkingContext, framework: str | None = None,
    ) -> CoverageReport | None:
        framework = framework or await self.detect_test_framework(context)
        command = TEST_COMMANDS.get(framework) if framework else None
        if command is None or command.coverage_args is None:
            logger.info("Coverage not supported for framework: %s", framework)
            return None
        result: CommandResult = await self._runner.run(
            context,
            command.executable,
            command.coverage_args,
            timeout=self._config.command_timeout_seconds,
        )
        if not result.success:
            logger.warning("Coverage command failed: %s", result.stderr.strip())
            return None
        return parse_coverage(result.output)

    async def run_and_validate_tests(
        self,
        context: WorkingContext,
        max_retries: int | None = None,
        test_filter: str | None = None,
        framework: str | None = None,
    ) -> TestValidationResult:
        """Run tests, and on failure analyze, fix and rerun.

        Returns an undetermined result when no test framework is detected.
        """
        max_retries = self._config.test_max_retries if max_retries is None else max_retries
        if max_retries < 1:
            raise ValueError("max_retries must be at least 1")
        test_filter = test_filter if test_filter is not None else self._config.test_filter

        start = time.monotonic()
        framework = framework or await self.detect_test_framework(context)
        if framework is None:
            logger.warning("Test validation skipped: no test framework detected")
            return TestValidationResult.undetermined_result()

        logger.info("Starting test validation with %s (max %d attempts)", framework, max_retries)
        fixes_applied: list[TestFix] = []
        fix_requests = 0
        attempt = 0
        result = TestExecutionResult(success=False)
        summary = ""

        while attempt < max_retries:
            attempt += 1
            logger.info("Test run attempt %d of %d", attempt, max_retries)
            result = await self.run_tests(context, test_filter, framework)

            if result.success:
                coverage = result.coverage
                if coverage is None and self._config.collect_coverage:
                    coverage = await self.get_coverage(context, framework)
                return TestValidationResult(
                    all_passed=True,
                    total=result.total,
                    passed=result.passed,
                    failed=0,
                    skipped=result.skipped,
                    attempts=attempt,
                    fixes_applied=fixes_applied,
                    coverage=coverage,
                    duration_seconds=time.monotonic() - start,
                    summary=f"All {result.total} tests passed in {attempt} attempt(s)",
                    test_framework=framework,
                    fix_requests=fix_requests,
                )

            if not result.failures:
                summary = f"{result.failed} test(s) failed but no failures could be parsed"
                logger.warning(summary)
                break

            if attempt >= max_retries:
                summary = f"{len(result.failures)} test(s) still failing after {attempt} attempt(s)"
                break

            analyzed = await self.analyze_test_failures(result.failures)
            fixes = await self.generate_test_fixes(context, analyzed)
            fix_requests += 2 * len(analyzed)
            if not fixes:
                summary = f"No fixes could be generated for {len(result.failures)} failing test(s)"
                logger.warning(summary)
                break
            fixes_applied.extend(await self.apply_test_fixes(context, fixes))

            delay = self._config.retry_delay_seconds * 2 ** (attempt - 1)
            if delay > 0:
                logger.info("Waiting %ss before retry", delay)
                await asyncio.sleep(delay)

        return TestValidationResult(
            all_passed=False,
            total=result.total,
            passed=result.passed,
            failed=result.failed,
            skipped=result.skipped,
            attempts=attempt,
            remaining_failures=list(result.failures),
            fixes_applied=fixes_applied,
            coverage=result.coverage,
            duration_seconds=time.monotonic() - start,
            summary=summary,
            test_framework=framework,
            fix_requests=fix_requests,
        )

    async def _read_surrounding(self, context: WorkingContext, file_path: str | None) -> str | None:
        if not file_path:
            return None
        path = relative_to_root(context, file_path)
        try:
            if await self._editor.exists(context, path):
                return await self._editor.read_file(context, path)
        except FileOperationError as e:
            logger.debug("Could not read %s for fix context: %s", path, e)
        return None
