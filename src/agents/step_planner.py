"""Step planner that asks a text generator for a JSON action plan."""

from __future__ import annotations

import logging

from src.agents.prompts import STEP_PLANNER_SYSTEM, build_plan_prompt
from src.agents.protocol import TextGenerator
from src.agents.responses import extract_json, get_field
from src.pipeline.exceptions import GenerationError
from src.pipeline.models import (
    ActionType,
    CodeAction,
    CodeGenerationRequest,
    PlanStep,
    RepositoryContext,
    StepActionPlan,
)

logger = logging.getLogger(__name__)

_ACTION_TYPES = {
    "createfile": ActionType.CREATE_FILE,
    "create": ActionType.CREATE_FILE,
    "modifyfile": ActionType.MODIFY_FILE,
    "modify": ActionType.MODIFY_FILE,
    "deletefile": ActionType.DELETE_FILE,
    "delete": ActionType.DELETE_FILE,
}


def parse_action_plan(text: str) -> StepActionPlan:
    """Parse a generated action plan. Raises GenerationError when malformed."""
    try:
        data = extract_json(text)
    except ValueError as e:
        raise GenerationError(f"Action plan is not valid JSON: {e}") from e

    actions: list[CodeAction] = []
    for raw in get_field(data, "actions", default=[]):
        if not isinstance(raw, dict):
            raise GenerationError(f"Malformed action entry: {raw!r}")
        type_name = str(get_field(raw, "type", default="")).replace("_", "").lower()
        action_type = _ACTION_TYPES.get(type_name)
        path = get_field(raw, "filePath", "file_path", "path")
        if action_type is None or not path:
            raise GenerationError(f"Action needs a known type and a file path: {raw!r}")

        request = get_field(raw, "request", default={}) or {}
        actions.append(CodeAction(
            type=action_type,
            file_path=str(path),
            description=str(get_field(raw, "description", default="")),
            request=CodeGenerationRequest(
                content=str(get_field(request, "content", default="")),
                before_marker=get_field(request, "beforeMarker", "before_marker"),
                after_marker=get_field(request, "afterMarker", "after_marker"),
                parameters={
                    str(k): str(v)
                    for k, v in (get_field(request, "parameters", default={}) or {}).items()
                },
            ),
        ))

    return StepActionPlan(
        actions=actions,
        prerequisites=[str(p) for p in get_field(data, "prerequisites", default=[])],
        requires_tests=bool(get_field(data, "requiresTests", "requires_tests", default=False)),
        main_file=get_field(data, "mainFile", "main_file"),
        test_file=get_field(data, "testFile", "test_file"),
    )


class LlmStepPlanner:
    """StepPlanner that turns a PlanStep into a StepActionPlan via a TextGenerator."""

    def __init__(self, generator: TextGenerator) -> None:
        self._generator = generator

    async def plan(self, step: PlanStep, context: RepositoryContext) -> StepActionPlan:
        logger.info("Analyzing step %s: %s", step.id, step.title)
        response = await self._generator.generate(
            build_plan_prompt(step, context), system=STEP_PLANNER_SYSTEM,
        )
        plan = parse_action_plan(response)
        logger.info("Action plan for step %s has %d action(s)", step.id, len(plan.actions))
        return plan
