"""Claude text generator. Runs single-turn prompts via the claude-agent-sdk."""

from __future__ import annotations

import asyncio
import logging
import os

# Allow nested invocation from within a Claude Code session.
# The SDK spawns claude CLI which checks for this env var.
os.environ.pop("CLAUDECODE", None)

from claude_agent_sdk import (
    AssistantMessage,
    ClaudeAgentOptions,
    ResultMessage,
    TextBlock,
    query,
)

from src.pipeline.exceptions import GenerationError

logger = logging.getLogger(__name__)


class ClaudeTextGenerator:
    """TextGenerator backed by the claude-agent-sdk.

    Prompts run with no tools: the pipeline applies every change itself so
    it can record it in the change ledger.
    """

    def __init__(
        self,
        model: str = "sonnet",
        timeout: int = 300,
        max_turns: int = 1,
    ) -> None:
        self._model = model
        self._timeout = timeout
        self._max_turns = max_turns

    async def generate(self, prompt: str, system: str | None = None) -> str:
        options = ClaudeAgentOptions(
            model=self._model,
            system_prompt=system,
            allowed_tools=[],
            max_turns=self._max_turns,
        )

        text_parts: list[str] = []
        result_text: str | None = None
        is_error = False

        try:
            async with asyncio.timeout(self._timeout):
                async for message in query(prompt=prompt, options=options):
                    if isinstance(message, AssistantMessage):
                        for block in message.content:
                            if isinstance(block, TextBlock):
                                text_parts.append(block.text)
                    elif isinstance(message, ResultMessage):
                        is_error = message.is_error
                        result_text = message.result
        except TimeoutError:
            raise GenerationError(
                f"Claude generation timed out after {self._timeout}s"
            ) from None
        except Exception as e:
            raise GenerationError(f"Claude generation failed: {e}") from e

        if is_error:
            raise GenerationError(f"Claude returned an error: {result_text or '(no detail)'}")

        output = (result_text or "\n".join(text_parts)).strip()
        if not output:
            raise GenerationError("Claude returned no output")
        logger.debug("Generated %d characters", len(output))
        return output
