from pydantic import BaseModel, Field
from typing import List, Optional


class PlanStep(BaseModel):
    description: str = Field(description="Clear and concise description of the step")
    tool_name: Optional[str] = Field(default=None, description="Name of the tool this step calls, if any")
    tool_input: Optional[str] = Field(default=None, description="Input passed to the tool, usually a JSON object string")
    completed: bool = Field(default=False, description="Whether the step has been carried out")

    @property
    def is_tool_step(self) -> bool:
        return bool(self.tool_name)


class Plan(BaseModel):
    goal: str = Field(description="The overall objective the plan achieves")
    steps: List[PlanStep] = Field(default_factory=list, description="Ordered steps to achieve the goal")

    @property
    def is_complete(self) -> bool:
        return all(step.completed for step in self.steps)

    def pending_steps(self) -> List[PlanStep]:
        return [step for step in self.steps if not step.completed]

    def mark_completed(self, step: PlanStep) -> None:
        step.completed = True

    def next_tool_batch(self) -> List[PlanStep]:
        """
        Return the next run of consecutive pending tool steps.

        Leading reasoning steps (no tool) are marked completed first; they are
        carried out by the model itself when it next thinks.
        """
        batch: List[PlanStep] = []
        for step in self.steps:
            if step.completed:
                continue
            if not step.is_tool_step:
                if batch:
                    break
                self.mark_completed(step)
                continue
            batch.append(step)
        return batch

    def to_prompt(self) -> str:
        lines = [f"Plan goal: {self.goal}"]
        for index, step in enumerate(self.steps, start=1):
            marker = "x" if step.completed else " "
            tool = f" [tool: {step.tool_name}]" if step.tool_name else ""
            lines.append(f"{index}. [{marker}] {step.description}{tool}")
        return "\n".join(lines)


class Reflection(BaseModel):
    goal_met: bool = Field(description="Whether the final response achieved the plan goal")
    summary: str = Field(description="One or two sentence critique of the outcome")
    issues: List[str] = Field(default_factory=list, description="Problems observed while executing the plan")
    suggestions: List[str] = Field(default_factory=list, description="Adjustments for future planning")

    def to_prompt(self) -> str:
        text = f"- {'met' if self.goal_met else 'missed'}: {self.summary}"
        if self.suggestions:
            text += f" Suggestions: {'; '.join(self.suggestions)}"
        return text
