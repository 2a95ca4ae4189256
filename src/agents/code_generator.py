"""Code generator that asks a text generator for file content."""

from __future__ import annotations

import logging

from src.agents.prompts import (
    CODE_GENERATOR_SYSTEM,
    TEST_GENERATOR_SYSTEM,
    build_code_prompt,
    build_tests_prompt,
)
from src.agents.protocol import TextGenerator
from src.agents.responses import strip_code_fences
from src.pipeline.exceptions import GenerationError
from src.pipeline.models import CodeAction

logger = logging.getLogger(__name__)


def insert_between_markers(
    existing: str,
    generated: str,
    after_marker: str | None,
    before_marker: str | None,
) -> str:
    """Replace the text between two anchors in ``existing`` with ``generated``.

    A missing ``after_marker`` anchors at the start of the file and a missing
    ``before_marker`` at the end. Raises GenerationError if an anchor is not found.
    """
    start = 0
    if after_marker:
        idx = existing.find(after_marker)
        if idx == -1:
            raise GenerationError(f"Marker not found: {after_marker!r}")
        start = idx + len(after_marker)

    end = len(existing)
    if before_marker:
        idx = existing.find(before_marker, start)
        if idx == -1:
            raise GenerationError(f"Marker not found: {before_marker!r}")
        end = idx

    body = generated
    if after_marker and not body.startswith("\n"):
        body = "\n" + body
    if before_marker and not body.endswith("\n"):
        body += "\n"
    return existing[:start] + body + existing[end:]


class LlmCodeGenerator:
    """CodeGenerator backed by a TextGenerator."""

    def __init__(self, generator: TextGenerator) -> None:
        self._generator = generator

    async def generate_code(
        self, action: CodeAction, language: str, existing: str | None = None,
    ) -> str:
        response = await self._generator.generate(
            build_code_prompt(action, language, existing), system=CODE_GENERATOR_SYSTEM,
        )
        code = strip_code_fences(response)
        if not code:
            raise GenerationError(f"No code generated for {action.file_path}")

        request = action.request
        if existing is not None and (request.before_marker or request.after_marker):
            code = insert_between_markers(
                existing, code, request.after_marker, request.before_marker,
            )
        logger.debug("Generated %d characters for %s", len(code), action.file_path)
        return code

    async def generate_tests(
        self, main_path: str, code: str, test_framework: str | None,
    ) -> str:
        response = await self._generator.generate(
            build_tests_prompt(main_path, code, test_framework), system=TEST_GENERATOR_SYSTEM,
        )
        tests = strip_code_fences(response)
        if not tests:
            raise GenerationError(f"No tests generated for {main_path}")
        return tests
