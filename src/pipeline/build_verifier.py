"""Build verifier: run the build, parse errors, request fixes, retry."""

from __future__ import annotations

import asyncio
import logging
import re
import shlex
import time
from dataclasses import dataclass
from typing import Callable, Sequence

from src.agents.protocol import FixGenerator
from src.pipeline.config import PipelineConfig
from src.pipeline.context_builder import RepositoryContextBuilder
from src.pipeline.exceptions import FileOperationError
from src.pipeline.models import (
    BuildError,
    BuildResult,
    CodeFix,
    ErrorCategory,
    ErrorSeverity,
)
from src.workspace.command_runner import CommandResult, CommandRunner, WorkingContext
from src.workspace.file_editor import FileEditor
from src.workspace.file_store import relative_to_root

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BuildCommand:
    executable: str
    args: tuple[str, ...]
    install_hint: str


BUILD_COMMANDS: dict[str, BuildCommand] = {
    "dotnet": BuildCommand("dotnet", ("build",), "Install .NET SDK: https://dotnet.microsoft.com/download"),
    "npm": BuildCommand("npm", ("run", "build"), "Install Node.js and npm: https://nodejs.org/"),
    "gradle": BuildCommand("./gradlew", ("build",), "Install Gradle: https://gradle.org/install/"),
    "maven": BuildCommand("mvn", ("compile",), "Install Maven: https://maven.apache.org/install.html"),
    "go": BuildCommand("go", ("build", "./..."), "Install Go: https://golang.org/doc/install"),
    "cargo": BuildCommand("cargo", ("build",), "Install Rust and Cargo: https://www.rust-lang.org/tools/install"),
    "python": BuildCommand("python", ("-m", "compileall", "-q", "."), "Install Python: https://www.python.org/downloads/"),
}


# ---------------------------------------------------------------------------
# Error parsing
# ---------------------------------------------------------------------------

_DEPENDENCY_WORDS = ("package", "module", "import", "dependency", "not found", "cannot find")
_TYPE_WORDS = ("type", "cast")
_SYNTAX_WORDS = ("syntax", "expected", "unexpected")
_CONFIG_WORDS = ("config", "setting")


def categorize_error(code: str, message: str) -> ErrorCategory:
    """Coarse category from keywords. Dependency words are checked first."""
    lowered = message.lower()
    if any(w in lowered for w in _DEPENDENCY_WORDS):
        return ErrorCategory.MISSING_DEPENDENCY
    if any(w in lowered for w in _TYPE_WORDS) or code.startswith(("CS1", "TS2")):
        return ErrorCategory.TYPE
    if any(w in lowered for w in _SYNTAX_WORDS):
        return ErrorCategory.SYNTAX
    if any(w in lowered for w in _CONFIG_WORDS):
        return ErrorCategory.CONFIGURATION
    return ErrorCategory.OTHER


def _severity(word: str) -> ErrorSeverity:
    return ErrorSeverity.ERROR if word.lower() == "error" else ErrorSeverity.WARNING


_MSBUILD_RE = re.compile(
    r"^\s*(?P<file>[^\s(][^(]*?)\((?P<line>\d+),\d+\):\s+(?P<sev>error|warning)\s+"
    r"(?P<code>[A-Z]+\d+):\s+(?P<msg>.+?)\s*$",
    re.MULTILINE,
)
_MSBUILD_PROJECT_SUFFIX = re.compile(r"\s+\[[^\]]+\]$")
_TSC_COLON_RE = re.compile(
    r"^\s*(?P<file>\S+?):(?P<line>\d+):\d+\s+-\s+error\s+(?P<code>TS\d+):\s+(?P<msg>.+?)\s*$",
    re.MULTILINE,
)
_WEBPACK_RE = re.compile(r"ERROR in (?P<file>\S+)(?:\s+(?P<line>\d+):\d+)?", re.MULTILINE)
_JAVAC_RE = re.compile(
    r"^\s*(?P<file>.+?):(?P<line>\d+):\s+(?P<sev>error|warning):\s+(?P<msg>.+?)\s*$",
    re.MULTILINE,
)
_MAVEN_RE = re.compile(
    r"\[(?P<sev>ERROR|WARNING)\]\s+(?P<file>.+?):\[(?P<line>\d+),\d+\]\s+(?P<msg>.+?)\s*$",
    re.MULTILINE,
)
_GO_RE = re.compile(r"^(?P<file>[^\s#].*?):(?P<line>\d+):\d+:\s+(?P<msg>.+?)\s*$", re.MULTILINE)
_CARGO_RE = re.compile(
    r"error\[(?P<code>[A-Z]\d+)\]:\s+(?P<msg>.+?)[\r\n]+\s*-->\s+(?P<file>.+?):(?P<line>\d+):\d+",
)
_PY_FILE_RE = re.compile(r'^\s*File "(?P<file>[^"]+)", line (?P<line>\d+)')
_PY_ERROR_RE = re.compile(r"^(?P<code>\w+(?:Error|Exception)):\s*(?P<msg>.*)$")


def parse_dotnet_errors(output: str) -> list[BuildError]:
    errors = []
    for m in _MSBUILD_RE.finditer(output):
        message = _MSBUILD_PROJECT_SUFFIX.sub("", m["msg"])
        errors.append(BuildError(
            code=m["code"],
            message=message,
            file_path=m["file"].strip(),
            line=int(m["line"]),
            severity=_severity(m["sev"]),
            category=categorize_error(m["code"], message),
        ))
    return errors


def parse_npm_errors(output: str) -> list[BuildError]:
    errors = []
    for m in _WEBPACK_RE.finditer(output):
        errors.append(BuildError(
            code="BUILD_ERROR",
            message="Build failed",
            file_path=m["file"],
            line=int(m["line"]) if m["line"] else None,
        ))
    errors.extend(
        e for e in parse_dotnet_errors(output) if e.severity is ErrorSeverity.ERROR
    )
    for m in _TSC_COLON_RE.finditer(output):
        errors.append(BuildError(
            code=m["code"],
            message=m["msg"],
            file_path=m["file"],
            line=int(m["line"]),
            category=categorize_error(m["code"], m["msg"]),
        ))
    return errors


def parse_gradle_errors(output: str) -> list[BuildError]:
    return [
        BuildError(
            code="GRADLE_ERROR",
            message=m["msg"],
            file_path=m["file"].strip(),
            line=int(m["line"]),
            severity=_severity(m["sev"]),
            category=categorize_error("", m["msg"]),
        )
        for m in _JAVAC_RE.finditer(output)
    ]


def parse_maven_errors(output: str) -> list[BuildError]:
    return [
        BuildError(
            code="MAVEN_ERROR",
            message=m["msg"],
            file_path=m["file"].strip(),
            line=int(m["line"]),
            severity=_severity(m["sev"]),
            category=categorize_error("", m["msg"]),
        )
        for m in _MAVEN_RE.finditer(output)
    ]


def parse_go_errors(output: str) -> list[BuildError]:
    return [
        BuildError(
            code="GO_ERROR",
            message=m["msg"],
            file_path=m["file"].strip(),
            line=int(m["line"]),
            category=categorize_error("", m["msg"]),
        )
        for m in _GO_RE.finditer(output)
    ]


def parse_cargo_errors(output: str) -> list[BuildError]:
    return [
        BuildError(
            code=m["code"],
            message=m["msg"].strip(),
            file_path=m["file"].strip(),
            line=int(m["line"]),
            category=categorize_error(m["code"], m["msg"]),
        )
        for m in _CARGO_RE.finditer(output)
    ]


_PY_CATEGORIES = {
    "SyntaxError": ErrorCategory.SYNTAX,
    "IndentationError": ErrorCategory.SYNTAX,
    "TabError": ErrorCategory.SYNTAX,
    "ImportError": ErrorCategory.MISSING_DEPENDENCY,
    "ModuleNotFoundError": ErrorCategory.MISSING_DEPENDENCY,
    "TypeError": ErrorCategory.TYPE,
}


def parse_python_errors(output: str) -> list[BuildError]:
    """Pair each ``XxxError: msg`` line with the closest preceding ``File "...", line N``."""
    errors = []
    location: tuple[str, int] | None = None
    for line in output.splitlines():
        file_match = _PY_FILE_RE.match(line)
        if file_match:
            location = (file_match["file"], int(file_match["line"]))
            continue
        error_match = _PY_ERROR_RE.match(line)
        if error_match and location is not None:
            code = error_match["code"]
            errors.append(BuildError(
                code=code,
                message=error_match["msg"],
                file_path=location[0],
                line=location[1],
                category=_PY_CATEGORIES.get(code, ErrorCategory.RUNTIME),
            ))
            location = None
    return errors


ERROR_PARSERS: dict[str, Callable[[str], list[BuildError]]] = {
    "dotnet": parse_dotnet_errors,
    "npm": parse_npm_errors,
    "gradle": parse_gradle_errors,
    "maven": parse_maven_errors,
    "go": parse_go_errors,
    "cargo": parse_cargo_errors,
    "python": parse_python_errors,
}


def parse_build_errors(output: str, build_tool: str) -> list[BuildError]:
    """Decompose raw build output into BuildErrors. Pure.

    Unrecognised lines are ignored. Duplicate diagnostics are reported once,
    in first-seen order.
    """
    parser = ERROR_PARSERS.get(build_tool)
    if parser is None:
        logger.warning("Unsupported build tool for error parsing: %s", build_tool)
        return []
    return list(dict.fromkeys(parser(output)))


def select_fixable_errors(errors: Sequence[BuildError], limit: int) -> list[BuildError]:
    return [e for e in errors if e.severity is ErrorSeverity.ERROR][:limit]


# ---------------------------------------------------------------------------
# Verifier
# ---------------------------------------------------------------------------


class BuildVerifier:
    """Runs the detected build tool with a bounded fix-and-retry loop.

    Retries are serialized; there is never more than one build running
    against a working context.
    """

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

    async def detect_build_tool(self, context: WorkingContext) -> str | None:
        return await self._context_builder.detect_build_tool(context)

    async def run_build(self, context: WorkingContext, build_tool: str) -> CommandResult:
        """Run one build. Raises CommandInvocationError if the build cannot be started."""
        command = BUILD_COMMANDS[build_tool]
        logger.info("Running build with %s", build_tool)
        return await self._runner.run(
            context,
            command.executable,
            command.args,
            timeout=self._config.command_timeout_seconds,
        )

    async def is_tool_available(self, context: WorkingContext, build_tool: str) -> bool:
        executable = BUILD_COMMANDS[build_tool].executable
        result = await self._runner.run(
            context, "sh", ["-c", f"command -v {shlex.quote(executable)}"],
        )
        return result.success

    def parse_build_errors(self, output: str, build_tool: str) -> list[BuildError]:
        return parse_build_errors(output, build_tool)

    async def generate_fixes(
        self, context: WorkingContext, errors: Sequence[BuildError],
    ) -> list[CodeFix]:
        """One fix request per error. A failed request is logged and skipped."""
        fixes: list[CodeFix] = []
        for error in select_fixable_errors(errors, self._config.max_fixes_per_attempt):
            surrounding = await self._read_surrounding(context, error.file_path)
            try:
                fix = await self._fix_generator.generate_build_fix(error, surrounding)
            except Exception as e:
                logger.warning("Fix generation failed for %s (%s): %s", error.code, error.location, e)
                continue
            if fix is not None:
                fixes.append(fix)
        return fixes

    async def apply_fixes(self, context: WorkingContext, fixes: Sequence[CodeFix]) -> list[CodeFix]:
        """Apply fixes through the editor. Returns the fixes that changed a file."""
        applied: list[CodeFix] = []
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
            logger.info("Applied fix to %s: %s", path, fix.description)
        return applied

    async def verify_build(
        self,
        context: WorkingContext,
        max_retries: int | None = None,
        build_tool: str | None = None,
        fix_errors: bool = True,
    ) -> BuildResult:
        """Build, and on failure parse errors, apply fixes and rebuild.

        Returns an undetermined result when no build tool is detected.
        Invocation failures (command could not start or timed out) propagate.
        """
        max_retries = self._config.build_max_retries if max_retries is None else max_retries
        if max_retries < 1:
            raise ValueError("max_retries must be at least 1")

        start = time.monotonic()
        tool = build_tool or await self.detect_build_tool(context)
        if tool is None:
            logger.warning("Build verification skipped: no build tool detected")
            return BuildResult.undetermined_result()

        if tool not in BUILD_COMMANDS:
            return BuildResult(
                success=False,
                output=f"Unsupported build tool: {tool}",
                build_tool=tool,
                duration_seconds=time.monotonic() - start,
            )

        if not await self.is_tool_available(context, tool):
            command = BUILD_COMMANDS[tool]
            logger.warning("Build tool '%s' is not available. %s", tool, command.install_hint)
            return BuildResult(
                success=False,
                output=f"Build tool '{tool}' is not available. {command.install_hint}",
                build_tool=tool,
                tool_available=False,
                missing_tool=command.executable,
                duration_seconds=time.monotonic() - start,
            )

        logger.info("Starting build verification with %s (max %d attempts)", tool, max_retries)
        fixes_applied: list[CodeFix] = []
        errors: list[BuildError] = []
        fix_requests = 0
        output = ""
        attempt = 0

        while attempt < max_retries:
            attempt += 1
            logger.info("Build attempt %d of %d", attempt, max_retries)
            result = await self.run_build(context, tool)
            output = result.output

            if result.success:
                logger.info("Build succeeded on attempt %d", attempt)
                return BuildResult(
                    success=True,
                    attempts=attempt,
                    output=output,
                    fixes_applied=fixes_applied,
                    duration_seconds=time.monotonic() - start,
                    build_tool=tool,
                    fix_requests=fix_requests,
                )

            errors = self.parse_build_errors(output, tool)
            if not errors:
                logger.warning("Build failed but no parseable errors found")
                break
            logger.info("Found %d error(s) in build output", len(errors))

            if attempt >= max_retries or not fix_errors:
                break

            fix_requests += len(select_fixable_errors(errors, self._config.max_fixes_per_attempt))
            fixes = await self.generate_fixes(context, errors)
            if not fixes:
                logger.warning("No fixes could be generated for the errors")
                break
            fixes_applied.extend(await self.apply_fixes(context, fixes))

            delay = self._config.retry_delay_seconds * 2 ** (attempt - 1)
            if delay > 0:
                logger.info("Waiting %ss before retry", delay)
                await asyncio.sleep(delay)

        logger.warning("Build failed after %d attempt(s)", attempt)
        return BuildResult(
            success=False,
            attempts=attempt,
            output=output,
            errors=errors,
            fixes_applied=fixes_applied,
            duration_seconds=time.monotonic() - start,
            build_tool=tool,
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
