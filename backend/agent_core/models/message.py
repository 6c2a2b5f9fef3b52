"""
Conversation message and context models.

Messages are immutable once created. A Context is a bounded selection of
messages plus the system prompt, built fresh for each inference call.
"""

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from agent_core.models.tool import ToolExecution, ToolStatus


class MessageRole(str, Enum):
    """Author of a message."""
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"
    TOOL = "tool"


@dataclass(frozen=True)
class ToolCallRecord:
    """
    Snapshot of a tool call attached to a message.

    Assistant messages carry the request (status pending); tool messages carry
    the terminal outcome of the execution.
    """
    call_id: str
    tool_name: str
    input: str
    execution_id: Optional[str] = None
    status: ToolStatus = ToolStatus.PENDING
    output: Optional[str] = None
    error: Optional[str] = None

    @classmethod
    def from_execution(cls, call_id: str, execution: ToolExecution) -> "ToolCallRecord":
        return cls(
            call_id=call_id,
            tool_name=execution.tool_name,
            input=execution.input,
            execution_id=execution.execution_id,
            status=execution.status,
            output=execution.output,
            error=execution.error.message if execution.error else None,
        )


@dataclass(frozen=True)
class Message:
    """A single conversation message."""
    role: MessageRole
    content: str
    tool_call: Optional[ToolCallRecord] = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    token_count: Optional[int] = None  # cached, stamped at creation

    @property
    def is_important(self) -> bool:
        """Messages carrying a tool call or tool result survive as summaries."""
        return self.tool_call is not None or self.role == MessageRole.TOOL

    def with_token_count(self, token_count: int) -> "Message":
        return replace(self, token_count=token_count)

    def with_content(self, content: str) -> "Message":
        """Copy with new content; the cached token count is dropped."""
        return replace(self, content=content, token_count=None)

    @classmethod
    def user(cls, content: str) -> "Message":
        return cls(role=MessageRole.USER, content=content)

    @classmethod
    def assistant(cls, content: str, tool_call: Optional[ToolCallRecord] = None) -> "Message":
        return cls(role=MessageRole.ASSISTANT, content=content, tool_call=tool_call)

    @classmethod
    def system(cls, content: str) -> "Message":
        return cls(role=MessageRole.SYSTEM, content=content)

    @classmethod
    def tool(cls, content: str, tool_call: ToolCallRecord) -> "Message":
        return cls(role=MessageRole.TOOL, content=content, tool_call=tool_call)


@dataclass(frozen=True)
class Context:
    """Bounded input for one inference call; total_tokens never exceeds budget."""
    system_prompt: str
    messages: tuple[Message, ...]
    total_tokens: int
    budget: int
    system_tokens: int = 0
    dropped_count: int = 0
    summarized_count: int = 0

    @property
    def remaining(self) -> int:
        return self.budget - self.total_tokens
