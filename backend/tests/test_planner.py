"""
Tests for planning and reflection.
"""

import json

import pytest

from agent_core.agents.planner import Planner
from agent_core.agents.tools.math_tools import get_math_tools
from agent_core.core.errors import LlmError, LlmErrorKind, PlanningError
from agent_core.models.plan import Plan, PlanStep, Reflection
from agent_core.models.tool import ToolExecution, ToolStatus

from conftest import ScriptedLlm, text

DESCRIPTORS = [tool.descriptor() for tool in get_math_tools()]


def plan_json(*steps: dict, goal: str = "Compute") -> str:
    return json.dumps({"goal": goal, "steps": list(steps)})


@pytest.mark.asyncio
class TestCreatePlan:
    """Test plan creation and validation."""

    async def test_valid_plan(self):
        llm = ScriptedLlm(text(plan_json(
            {"description": "Add", "tool_name": "calculator", "tool_input": '{"expression": "1+1"}'},
            {"description": "Explain"},
        )))

        plan = await Planner(llm).create_plan("What is 1+1?", DESCRIPTORS)

        assert len(plan.steps) == 2
        assert plan.steps[0].is_tool_step
        assert not plan.is_complete
        assert llm.tools == [[]]
        assert "calculator" in llm.contexts[0].system_prompt
        assert llm.contexts[0].messages[-1].content == "What is 1+1?"

    async def test_code_fenced_json(self):
        fenced = "```json\n" + plan_json({"description": "Think"}) + "\n```"
        plan = await Planner(ScriptedLlm(text(fenced))).create_plan("goal", DESCRIPTORS)
        assert plan.steps[0].description == "Think"

    async def test_completed_flags_reset(self):
        llm = ScriptedLlm(text(plan_json({"description": "Think", "completed": True})))
        plan = await Planner(llm).create_plan("goal", DESCRIPTORS)
        assert plan.pending_steps() == plan.steps

    async def test_empty_plan_rejected(self):
        with pytest.raises(PlanningError):
            await Planner(ScriptedLlm(text(plan_json()))).create_plan("goal", DESCRIPTORS)

    async def test_too_many_steps(self):
        steps = [{"description": f"step {i}"} for i in range(4)]
        llm = ScriptedLlm(text(plan_json(*steps)))
        with pytest.raises(PlanningError):
            await Planner(llm, max_plan_steps=3).create_plan("goal", DESCRIPTORS)

    async def test_unknown_tool_rejected(self):
        llm = ScriptedLlm(text(plan_json({"description": "Search", "tool_name": "web_search"})))
        with pytest.raises(PlanningError, match="web_search"):
            await Planner(llm).create_plan("goal", DESCRIPTORS)

    async def test_not_json(self):
        with pytest.raises(PlanningError):
            await Planner(ScriptedLlm(text("Sure, here is my plan"))).create_plan("goal", DESCRIPTORS)

    async def test_llm_error_wrapped(self):
        llm = ScriptedLlm(LlmError(LlmErrorKind.PROVIDER_ERROR, "down"))
        with pytest.raises(PlanningError):
            await Planner(llm).create_plan("goal", DESCRIPTORS)

    async def test_unexpected_exception_wrapped(self):
        llm = ScriptedLlm(RuntimeError("connection reset"))
        with pytest.raises(PlanningError, match="connection reset"):
            await Planner(llm).create_plan("goal", DESCRIPTORS)

    async def test_reflections_in_prompt(self):
        llm = ScriptedLlm(text(plan_json({"description": "Think"})))
        earlier = Reflection(goal_met=False, summary="Forgot units", suggestions=["state the units"])

        await Planner(llm).create_plan("goal", DESCRIPTORS, [earlier])

        prompt = llm.contexts[0].system_prompt
        assert "Lessons From Earlier Turns" in prompt
        assert "state the units" in prompt


@pytest.mark.asyncio
class TestReflect:
    """Test reflection on a finished turn."""

    async def test_reflection_parsed(self):
        llm = ScriptedLlm(text(json.dumps({"goal_met": True, "summary": "Correct"})))
        plan = Plan(goal="Add", steps=[PlanStep(description="Add", tool_name="calculator", completed=True)])
        execution = ToolExecution(tool_name="calculator", input="{}", status=ToolStatus.COMPLETED, output="2")

        reflection = await Planner(llm).reflect(plan, "1+1 is 2", [execution])

        assert reflection.goal_met
        assert reflection.issues == []
        prompt = llm.contexts[0].system_prompt
        assert "calculator [completed]: 2" in prompt
        assert "[x] Add" in prompt
        assert llm.contexts[0].messages[-1].content == "Final response:\n1+1 is 2"

    async def test_invalid_reflection(self):
        llm = ScriptedLlm(text(json.dumps({"summary": "missing goal_met"})))
        with pytest.raises(PlanningError):
            await Planner(llm).reflect(Plan(goal="x", steps=[PlanStep(description="x")]), "answer")


class TestPlanModel:
    """Test plan step batching."""

    def test_next_tool_batch(self):
        plan = Plan(goal="g", steps=[
            PlanStep(description="think"),
            PlanStep(description="a", tool_name="calculator"),
            PlanStep(description="b", tool_name="calculator"),
            PlanStep(description="explain"),
            PlanStep(description="c", tool_name="calculator"),
        ])

        batch = plan.next_tool_batch()

        assert [s.description for s in batch] == ["a", "b"]
        assert plan.steps[0].completed
        for step in batch:
            plan.mark_completed(step)
        assert [s.description for s in plan.next_tool_batch()] == ["c"]
        assert plan.steps[3].completed

    def test_to_prompt_marks_progress(self):
        plan = Plan(goal="g", steps=[PlanStep(description="a", tool_name="calculator", completed=True)])
        assert plan.to_prompt() == "Plan goal: g\n1. [x] a [tool: calculator]"
