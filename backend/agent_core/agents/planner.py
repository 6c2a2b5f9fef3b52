"""
Planner - Optional up-front planning and post-turn reflection.

This module provides:
- Plan creation from a goal and the available tool descriptors
- Reflection on a finished turn against its plan
- Strict parsing of the model's JSON output into Plan / Reflection models

Both operations are best-effort: every failure surfaces as PlanningError and
the orchestrator falls back to direct reasoning.
"""

import re
from typing import Optional, Sequence

import structlog
from pydantic import BaseModel, ValidationError

from agent_core.agents.context_manager import ContextManager
from agent_core.core.errors import ContextError, LlmError, PlanningError, categorize_llm_exception
from agent_core.core.llm import LlmClient
from agent_core.models.message import Message
from agent_core.models.plan import Plan, Reflection
from agent_core.models.tool import ToolDescriptor, ToolExecution

logger = structlog.get_logger(__name__)

_CODE_FENCE = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL)

PLANNER_PROMPT = """
You are the planning module of a tool-using assistant.
Break the user's goal into a short, ordered list of steps.

## Available Tools
{tools}

## Rules
1. Use a tool step only when a tool is needed; set "tool_name" to one of the names above.
2. "tool_input" must match the tool's parameters, written as a JSON object string.
3. Steps without a tool are reasoning steps the assistant carries out itself.
4. Use at most {max_steps} steps.
{reflections}
Respond with JSON only, in the form:
{{"goal": "...", "steps": [{{"description": "...", "tool_name": null, "tool_input": null}}]}}
"""

REFLECTION_PROMPT = """
You review whether an assistant's final response achieved its plan.

{plan}

## Tool Results
{executions}

Respond with JSON only, in the form:
{{"goal_met": true, "summary": "...", "issues": ["..."], "suggestions": ["..."]}}
"""


def _strip_code_fence(text: str) -> str:
    text = text.strip()
    match = _CODE_FENCE.match(text)
    return match.group(1) if match else text


class Planner:
    """Creates plans and reflections through an LlmClient."""

    def __init__(
        self,
        llm: LlmClient,
        max_plan_steps: int = 8,
        context_manager: Optional[ContextManager] = None,
    ):
        self.llm = llm
        self.max_plan_steps = max_plan_steps
        self.context_manager = context_manager or ContextManager()

    async def create_plan(
        self,
        goal: str,
        descriptors: Sequence[ToolDescriptor],
        reflections: Sequence[Reflection] = (),
    ) -> Plan:
        """
        Ask the model for a plan.

        Args:
            goal: The user's request
            descriptors: Tools the plan may reference
            reflections: Earlier reflections, newest last, folded into the prompt

        Returns:
            A validated Plan

        Raises:
            PlanningError: The model failed, or returned an unusable plan
        """
        tool_lines = "\n".join(d.to_prompt_line() for d in descriptors) or "- (none)"
        reflection_text = ""
        if reflections:
            lessons = "\n".join(r.to_prompt() for r in reflections)
            reflection_text = f"\n## Lessons From Earlier Turns\n{lessons}\n"

        system_prompt = PLANNER_PROMPT.format(
            tools=tool_lines,
            max_steps=self.max_plan_steps,
            reflections=reflection_text,
        )
        plan = await self._ask(system_prompt, goal, Plan)

        if not plan.steps:
            raise PlanningError("Plan has no steps")
        if len(plan.steps) > self.max_plan_steps:
            raise PlanningError(f"Plan has {len(plan.steps)} steps, the limit is {self.max_plan_steps}")

        known = {d.name for d in descriptors}
        unknown = [s.tool_name for s in plan.steps if s.tool_name and s.tool_name not in known]
        if unknown:
            raise PlanningError(f"Plan references unknown tools: {', '.join(unknown)}")

        for step in plan.steps:
            step.completed = False

        logger.info("Plan created", goal=plan.goal, step_count=len(plan.steps))
        for index, step in enumerate(plan.steps, start=1):
            logger.debug("Plan step", index=index, description=step.description, tool_name=step.tool_name)
        return plan

    async def reflect(
        self,
        plan: Plan,
        response: str,
        executions: Sequence[ToolExecution] = (),
    ) -> Reflection:
        """
        Critique a finished turn against its plan.

        Raises:
            PlanningError: The model failed, or returned an unusable reflection
        """
        execution_lines = "\n".join(
            f"- {e.tool_name} [{e.status.value}]: {e.result_text()}" for e in executions
        ) or "- (no tools were run)"
        system_prompt = REFLECTION_PROMPT.format(plan=plan.to_prompt(), executions=execution_lines)

        reflection = await self._ask(system_prompt, f"Final response:\n{response}", Reflection)
        logger.info("Reflection recorded", goal_met=reflection.goal_met, issues=len(reflection.issues))
        return reflection

    async def _ask(self, system_prompt: str, request: str, model: type[BaseModel]):
        try:
            context = self.context_manager.build_context([Message.user(request)], system_prompt)
            response = await self.llm.generate(context, [])
        except (LlmError, ContextError) as e:
            raise PlanningError(f"{model.__name__} request failed: {e.message}") from e
        except Exception as e:
            kind = categorize_llm_exception(e)
            raise PlanningError(f"{model.__name__} request failed ({kind.value}): {e}") from e

        try:
            return model.model_validate_json(_strip_code_fence(response.text))
        except ValidationError as e:
            logger.warning("Unparseable planner output", expected=model.__name__, text=response.text[:200])
            raise PlanningError(f"Model returned an invalid {model.__name__}: {e}") from e
