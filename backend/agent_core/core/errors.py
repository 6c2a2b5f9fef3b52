"""
Error taxonomy for the orchestration core.

This module provides:
- A common AgentError base with a stable code and structured payload
- LLM, tool, planning, context and state-machine error kinds
- Categorization of raw provider exceptions into LLM error kinds
"""

import asyncio
from enum import Enum
from typing import Any, Optional


class AgentError(Exception):
    """Base class for every error surfaced by the orchestration core."""

    code = "agent_error"
    component = "agent"

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict[str, Any]:
        """Structured form handed to the surrounding application."""
        return {
            "code": self.code,
            "component": self.component,
            "message": self.message,
        }


class LlmErrorKind(str, Enum):
    """Failure categories reported by an LLM client."""
    RATE_LIMITED = "rate_limited"
    TIMEOUT = "timeout"
    MALFORMED_RESPONSE = "malformed_response"
    PROVIDER_ERROR = "provider_error"


class LlmError(AgentError):
    """The LLM client failed to produce a usable response."""

    code = "llm_error"
    component = "llm"

    def __init__(self, kind: LlmErrorKind, message: str = ""):
        super().__init__(message or kind.value)
        self.kind = kind

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["kind"] = self.kind.value
        return data


class ToolErrorKind(str, Enum):
    """Failure categories for a single tool call."""
    INVALID_INPUT = "invalid_input"
    UNAUTHORIZED = "unauthorized"
    NOT_FOUND = "not_found"
    TIMEOUT = "timeout"
    EXECUTION_ERROR = "execution_error"
    RESOURCE_LIMIT = "resource_limit"


# Kinds that are never retried, whatever the tool says
PERMANENT_TOOL_ERRORS = frozenset({
    ToolErrorKind.INVALID_INPUT,
    ToolErrorKind.UNAUTHORIZED,
    ToolErrorKind.NOT_FOUND,
    ToolErrorKind.RESOURCE_LIMIT,
})


class ToolError(AgentError):
    """
    A categorized tool failure.

    Tools may raise this themselves to report a failure; the executor raises it
    for policy, lookup, validation and timeout failures. Retryability is a
    property of the kind: timeouts always retry, execution errors only when
    flagged retryable, everything else never.
    """

    code = "tool_error"
    component = "tool"

    def __init__(
        self,
        kind: ToolErrorKind,
        detail: str = "",
        tool_name: Optional[str] = None,
        retryable: bool = False,
    ):
        super().__init__(detail or kind.value)
        self.kind = kind
        self.detail = detail
        self.tool_name = tool_name
        self._retryable = retryable

    @property
    def retryable(self) -> bool:
        if self.kind == ToolErrorKind.TIMEOUT:
            return True
        if self.kind in PERMANENT_TOOL_ERRORS:
            return False
        return self._retryable

    @classmethod
    def not_found(cls, tool_name: str) -> "ToolError":
        return cls(ToolErrorKind.NOT_FOUND, f"Tool '{tool_name}' is not registered", tool_name)

    @classmethod
    def unauthorized(cls, tool_name: str) -> "ToolError":
        return cls(ToolErrorKind.UNAUTHORIZED, f"Tool '{tool_name}' is not allowed by policy", tool_name)

    @classmethod
    def timeout(cls, tool_name: str, seconds: float) -> "ToolError":
        return cls(ToolErrorKind.TIMEOUT, f"Tool '{tool_name}' timed out after {seconds:g}s", tool_name)

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data.update({
            "kind": self.kind.value,
            "tool_name": self.tool_name,
            "retryable": self.retryable,
        })
        return data


class DuplicateToolError(AgentError):
    """A tool with the same name is already registered."""

    code = "duplicate_tool"
    component = "tool_registry"

    def __init__(self, tool_name: str):
        super().__init__(f"Tool '{tool_name}' is already registered")
        self.tool_name = tool_name


class PlanningError(AgentError):
    """The planner could not produce a usable plan or reflection."""

    code = "planning_error"
    component = "planner"


class ContextError(AgentError):
    """The context budget cannot be satisfied."""

    code = "context_error"
    component = "context_manager"

    def __init__(self, message: str, required: int = 0, budget: int = 0):
        super().__init__(message)
        self.required = required
        self.budget = budget

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data.update({"required": self.required, "budget": self.budget})
        return data


class InvalidStateTransition(AgentError):
    """An event does not match any edge from the current state."""

    code = "invalid_state_transition"
    component = "orchestrator"

    def __init__(self, from_state: str, to_state: str, trigger: Optional[str] = None):
        message = f"Invalid transition {from_state} -> {to_state}"
        if trigger:
            message += f" on '{trigger}'"
        super().__init__(message)
        self.from_state = from_state
        self.to_state = to_state
        self.trigger = trigger

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data.update({
            "from_state": self.from_state,
            "to_state": self.to_state,
            "trigger": self.trigger,
        })
        return data


class ToolRoundLimitExceeded(AgentError):
    """The model kept requesting tools after the per-turn round limit."""

    code = "tool_round_limit"
    component = "orchestrator"


class ConfigError(AgentError):
    """Configuration values are missing or out of range."""

    code = "config_error"
    component = "config"


def categorize_llm_exception(error: Exception) -> LlmErrorKind:
    """
    Categorize a raw provider exception.

    Args:
        error: The exception raised by the provider SDK

    Returns:
        The matching LlmErrorKind (provider_error when nothing matches)
    """
    if isinstance(error, LlmError):
        return error.kind
    if isinstance(error, (TimeoutError, asyncio.TimeoutError)):
        return LlmErrorKind.TIMEOUT

    error_str = str(error).lower()

    if "rate limit" in error_str or "429" in error_str or "too many requests" in error_str:
        return LlmErrorKind.RATE_LIMITED

    if "timeout" in error_str or "timed out" in error_str:
        return LlmErrorKind.TIMEOUT

    if "parse" in error_str or "json" in error_str or "malformed" in error_str:
        return LlmErrorKind.MALFORMED_RESPONSE

    return LlmErrorKind.PROVIDER_ERROR
