"""Fix generator: one generation request per build error or test failure."""

from __future__ import annotations

import dataclasses
import logging

from src.agents.prompts import (
    BUILD_FIX_SYSTEM,
    FAILURE_ANALYSIS_SYSTEM,
    TEST_FIX_SYSTEM,
    build_error_prompt,
    build_failure_prompt,
)
from src.agents.protocol import TextGenerator
from src.agents.responses import extract_json, get_field
from src.pipeline.models import (
    BuildError,
    CodeFix,
    FailureType,
    FixConfidence,
    FixTarget,
    TestFailure,
    TestFix,
)

logger = logging.getLogger(__name__)


def _confidence(value) -> FixConfidence:
    try:
        return FixConfidence(str(value).lower())
    except ValueError:
        return FixConfidence.MEDIUM


def parse_code_fix(text: str, default_path: str | None = None) -> CodeFix | None:
    """Parse a generated build fix. Returns None for empty or unusable responses."""
    try:
        data = extract_json(text)
    except ValueError as e:
        logger.warning("Unparseable build fix response: %s", e)
        return None

    path = get_field(data, "filePath", "file_path") or default_path
    original = get_field(data, "originalCode", "original_code")
    fixed = get_field(data, "fixedCode", "fixed_code")
    if not path or not original or fixed is None:
        return None
    return CodeFix(
        file_path=str(path),
        original_code=str(original),
        fixed_code=str(fixed),
        description=str(get_field(data, "description", default="")),
        confidence=_confidence(get_field(data, "confidence", default="medium")),
    )


def parse_test_fix(text: str, default_path: str | None = None) -> TestFix | None:
    try:
        data = extract_json(text)
    except ValueError as e:
        logger.warning("Unparseable test fix response: %s", e)
        return None

    path = get_field(data, "filePath", "file_path") or default_path
    original = get_field(data, "originalCode", "original_code")
    fixed = get_field(data, "fixedCode", "fixed_code")
    if not path or not original or fixed is None:
        return None
    target = FixTarget.TEST if str(get_field(data, "target", default="code")).lower() == "test" else FixTarget.CODE
    return TestFix(
        file_path=str(path),
        original_code=str(original),
        fixed_code=str(fixed),
        description=str(get_field(data, "description", default="")),
        target=target,
    )


def merge_failure_analysis(failure: TestFailure, text: str) -> TestFailure:
    """Fold a generated analysis into ``failure``. Unusable analysis returns it unchanged."""
    try:
        data = extract_json(text)
    except ValueError as e:
        logger.warning("Unparseable failure analysis: %s", e)
        return failure

    updates: dict = {}
    type_name = get_field(data, "type")
    if type_name:
        try:
            updates["type"] = FailureType(str(type_name).lower())
        except ValueError:
            pass
    for attr, keys in (
        ("message", ("errorMessage", "message")),
        ("expected", ("expectedValue", "expected")),
        ("actual", ("actualValue", "actual")),
        ("root_cause", ("rootCause", "root_cause")),
    ):
        value = get_field(data, *keys)
        if value:
            updates[attr] = str(value)
    return dataclasses.replace(failure, **updates)


class LlmFixGenerator:
    """FixGenerator backed by a TextGenerator."""

    def __init__(self, generator: TextGenerator) -> None:
        self._generator = generator

    async def generate_build_fix(
        self, error: BuildError, surrounding: str | None,
    ) -> CodeFix | None:
        response = await self._generator.generate(
            build_error_prompt(error, surrounding), system=BUILD_FIX_SYSTEM,
        )
        return parse_code_fix(response, default_path=error.file_path)

    async def analyze_failure(self, failure: TestFailure) -> TestFailure:
        response = await self._generator.generate(
            build_failure_prompt(failure), system=FAILURE_ANALYSIS_SYSTEM,
        )
        return merge_failure_analysis(failure, response)

    async def generate_test_fix(
        self, failure: TestFailure, surrounding: str | None,
    ) -> TestFix | None:
        response = await self._generator.generate(
            build_failure_prompt(failure, surrounding), system=TEST_FIX_SYSTEM,
        )
        return parse_test_fix(response, default_path=failure.file_path)
