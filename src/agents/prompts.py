"""Prompt text for the generation collaborators."""

from __future__ import annotations

from src.pipeline.models import (
    BuildError,
    CodeAction,
    PlanStep,
    RepositoryContext,
    TestFailure,
)

MAX_LISTED_FILES = 50

STEP_PLANNER_SYSTEM = """\
You are an expert code analysis assistant. Your role is to analyze plan steps and
generate detailed, actionable code change plans.

Respond with a JSON object that follows this schema:

{
  "actions": [
    {
      "type": "CreateFile" | "ModifyFile" | "DeleteFile",
      "filePath": "path/to/file.ext",
      "description": "What this action does",
      "request": {
        "content": "Code content or modification details",
        "beforeMarker": "optional context marker before change",
        "afterMarker": "optional context marker after change",
        "parameters": {"key": "value"}
      }
    }
  ],
  "prerequisites": ["Things that need to be done first"],
  "requiresTests": true | false,
  "testFile": "path/to/test/file.ext or null",
  "mainFile": "path/to/main/implementation/file.ext or null"
}

Guidelines:
- Generate specific file paths based on the repository structure
- Make actions atomic and specific
- Include a test file path if tests are needed

Respond ONLY with valid JSON."""

CODE_GENERATOR_SYSTEM = """\
You are an expert software developer. Generate complete, production-quality code
that follows the conventions of the surrounding repository.

Respond with the code only, in a single fenced code block."""

TEST_GENERATOR_SYSTEM = """\
You are an expert software testing specialist. Write focused unit tests for the
given code using the named test framework.

Respond with the complete test file only, in a single fenced code block."""

BUILD_FIX_SYSTEM = """\
You are an expert software developer specializing in fixing compilation errors.

Respond with a JSON object that follows this schema:

{
  "filePath": "path/to/file",
  "description": "Brief description of what the fix does",
  "originalCode": "exact code snippet that has the error",
  "fixedCode": "corrected code snippet",
  "confidence": "High|Medium|Low"
}

Guidelines:
- Provide exact code snippets that uniquely identify the location
- High confidence: syntax errors, missing imports, obvious type mismatches
- Medium confidence: logic errors that have a clear fix
- Low confidence: complex errors that may have multiple solutions
- If you cannot fix the error, respond with {}"""

FAILURE_ANALYSIS_SYSTEM = """\
You are an expert software testing specialist and debugger.

Respond with a JSON object that follows this schema:

{
  "type": "Assertion|Exception|Timeout|Setup|Teardown",
  "errorMessage": "analyzed and clarified error message",
  "expectedValue": "expected value if applicable",
  "actualValue": "actual value if applicable",
  "rootCause": "identified root cause of the failure"
}"""

TEST_FIX_SYSTEM = """\
You are an expert software developer specializing in fixing test failures.

Respond with a JSON object that follows this schema:

{
  "target": "Code|Test",
  "filePath": "path/to/file",
  "description": "Brief description of what the fix does",
  "originalCode": "exact code snippet that needs fixing",
  "fixedCode": "corrected code snippet"
}

If the test is wrong, fix the test (target "Test"). If the code is wrong, fix the
code (target "Code"). If you cannot fix the failure, respond with {}"""


def build_plan_prompt(step: PlanStep, context: RepositoryContext) -> str:
    parts = [
        "# Plan Step to Analyze",
        f"**Title:** {step.title}",
        f"**Details:** {step.details}",
        "",
        "# Repository Context",
        f"**Language:** {context.language}",
    ]
    if context.build_tool:
        parts.append(f"**Build Tool:** {context.build_tool}")
    if context.test_framework:
        parts.append(f"**Test Framework:** {context.test_framework}")
    parts.append("")
    parts.append("**Existing Files:**")
    parts.extend(f"- {f}" for f in context.files[:MAX_LISTED_FILES])
    if len(context.files) > MAX_LISTED_FILES:
        parts.append(f"... and {len(context.files) - MAX_LISTED_FILES} more files")
    parts.append("")
    parts.append("# Your Task")
    parts.append(
        "Analyze the plan step and generate a detailed action plan with "
        "specific code changes needed."
    )
    return "\n".join(parts)


def build_code_prompt(action: CodeAction, language: str, existing: str | None) -> str:
    parts = [
        f"## Language\n{language}",
        f"## Requirements\n{action.description}",
        f"## Target File Path\n{action.file_path}",
    ]
    if action.request.content:
        parts.append(f"## Details\n{action.request.content}")
    if action.request.parameters:
        params = "\n".join(f"- {k}: {v}" for k, v in action.request.parameters.items())
        parts.append(f"## Parameters\n{params}")
    if existing is not None:
        parts.append(f"## Existing Code to Modify\n```\n{existing}\n```")
        if action.request.before_marker or action.request.after_marker:
            parts.append(
                "Generate only the code to insert between these markers:\n"
                f"after: {action.request.after_marker or '(start of file)'}\n"
                f"before: {action.request.before_marker or '(end of file)'}"
            )
        else:
            parts.append(
                "Modify the above code according to the requirements, "
                "preserving its style and structure. Return the whole file."
            )
    else:
        parts.append("Generate new code according to the requirements above.")
    return "\n\n".join(parts)


def build_tests_prompt(main_path: str, code: str, test_framework: str | None) -> str:
    return (
        f"## Test Framework\n{test_framework or 'the repository default'}\n\n"
        f"## Code Under Test ({main_path})\n```\n{code}\n```\n\n"
        "Write tests covering the public behaviour of this code."
    )


def build_error_prompt(error: BuildError, surrounding: str | None) -> str:
    parts = [
        "I have the following build error that needs to be fixed:",
        f"Error in {error.location}",
        f"  Code: {error.code}",
        f"  Category: {error.category.value}",
        f"  Message: {error.message}",
    ]
    if surrounding:
        parts.append(f"\nFile content:\n```\n{surrounding}\n```")
    return "\n".join(parts)


def build_failure_prompt(failure: TestFailure, surrounding: str | None = None) -> str:
    parts = [
        f"Test: {failure.full_name}",
        f"  Type: {failure.type.value}",
        f"  Error: {failure.message}",
    ]
    if failure.expected is not None:
        parts.append(f"  Expected: {failure.expected}")
    if failure.actual is not None:
        parts.append(f"  Actual: {failure.actual}")
    if failure.root_cause:
        parts.append(f"  Root cause: {failure.root_cause}")
    if failure.stack_trace:
        parts.append(f"  Stack Trace: {failure.stack_trace}")
    if surrounding:
        parts.append(f"\nFile content:\n```\n{surrounding}\n```")
    return "\n".join(parts)
