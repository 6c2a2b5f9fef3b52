"""
Tool data models.

Describes registered tools and the lifecycle record of each tool execution.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

from agent_core.core.errors import ToolError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ToolDescriptor(BaseModel):
    """Machine-readable description of a registered tool."""
    name: str = Field(description="Unique tool name")
    description: str = Field(description="What the tool does, shown to the model")
    parameter_schema: Optional[dict[str, Any]] = Field(
        default=None,
        description="JSON schema for the tool input, if the tool takes structured input",
    )

    def to_openai_schema(self) -> dict[str, Any]:
        """Return an OpenAI-compatible function tool schema."""
        parameters = self.parameter_schema or {
            "type": "object",
            "properties": {"input": {"type": "string"}},
        }
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": parameters,
            },
        }

    def to_prompt_line(self) -> str:
        line = f"- {self.name}: {self.description}"
        if self.parameter_schema:
            properties = self.parameter_schema.get("properties", {})
            if properties:
                line += f" (parameters: {', '.join(properties)})"
        return line


class ToolStatus(str, Enum):
    """Status of a tool execution."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    TIMED_OUT = "timed_out"

    @property
    def is_terminal(self) -> bool:
        return self not in (ToolStatus.PENDING, ToolStatus.RUNNING)


@dataclass
class ToolExecution:
    """
    Record of one tool call, including its retries.

    Created pending by the executor, moved to running for each attempt and
    finally to exactly one terminal status. Retries share the execution_id and
    bump `attempts`.
    """
    tool_name: str
    input: str
    execution_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    status: ToolStatus = ToolStatus.PENDING
    output: Optional[str] = None
    error: Optional[ToolError] = None
    started_at: datetime = field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    attempts: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def succeeded(self) -> bool:
        return self.status == ToolStatus.COMPLETED

    @property
    def duration(self) -> Optional[float]:
        """Seconds from creation to terminal status."""
        if self.completed_at is None:
            return None
        return (self.completed_at - self.started_at).total_seconds()

    def result_text(self) -> str:
        """Text fed back to the model for this execution."""
        if self.succeeded:
            return self.output or ""
        if self.error is not None:
            return f"Tool '{self.tool_name}' failed ({self.error.kind.value}): {self.error.message}"
        return f"Tool '{self.tool_name}' ended with status {self.status.value}"

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "execution_id": self.execution_id,
            "tool_name": self.tool_name,
            "input": self.input,
            "status": self.status.value,
            "output": self.output,
            "error": self.error.to_dict() if self.error else None,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "attempts": self.attempts,
        }


@dataclass(frozen=True)
class ToolCallRequest:
    """A tool call requested by the model or by a plan step."""
    name: str
    input: str = ""
    call_id: str = field(default_factory=lambda: f"call_{uuid.uuid4().hex[:12]}")
