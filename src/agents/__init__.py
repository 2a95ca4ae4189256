"""Generation collaborators: planning, code generation and fix generation."""

from src.agents.code_generator import LlmCodeGenerator, insert_between_markers
from src.agents.fix_generator import LlmFixGenerator
from src.agents.mocks import (
    MockCodeGenerator,
    MockFixGenerator,
    MockStepPlanner,
    MockTextGenerator,
)
from src.agents.protocol import CodeGenerator, FixGenerator, StepPlanner, TextGenerator
from src.agents.step_planner import LlmStepPlanner, parse_action_plan

__all__ = [
    "CodeGenerator",
    "FixGenerator",
    "LlmCodeGenerator",
    "LlmFixGenerator",
    "LlmStepPlanner",
    "MockCodeGenerator",
    "MockFixGenerator",
    "MockStepPlanner",
    "MockTextGenerator",
    "StepPlanner",
    "TextGenerator",
    "insert_between_markers",
    "parse_action_plan",
]
