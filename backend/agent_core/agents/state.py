"""
Agent state machine.

AgentState is a tagged union of frozen variants, some carrying payload.
StateMachine holds exactly one variant per agent instance and applies events
strictly according to TRANSITIONS; anything else is rejected without mutation.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Union

import structlog

from agent_core.core.errors import AgentError, InvalidStateTransition
from agent_core.core.events import EventBus, StateTransitionEvent
from agent_core.models.message import Context
from agent_core.models.tool import ToolCallRequest

logger = structlog.get_logger(__name__)


class StateKind(str, Enum):
    IDLE = "idle"
    THINKING = "thinking"
    EXECUTING_TOOL = "executing_tool"
    RESPONDING = "responding"
    ERROR = "error"


class Trigger(str, Enum):
    """Events that drive the state machine."""
    RECEIVE = "receive"
    DECIDE_NO_TOOL = "decide_no_tool"
    DECIDE_TOOL_CALL = "decide_tool_call"
    ROUND_LIMIT = "round_limit"
    TOOL_SUCCESS = "tool_success"
    TOOL_FAILURE = "tool_failure"
    RETRY = "retry"
    STREAM_COMPLETE = "stream_complete"
    FAIL = "fail"
    ACKNOWLEDGE = "acknowledge"
    CANCEL = "cancel"


@dataclass(frozen=True)
class Idle:
    kind = StateKind.IDLE


@dataclass(frozen=True)
class Thinking:
    context: Optional[Context] = None  # set once the context for the next call is built

    kind = StateKind.THINKING


@dataclass(frozen=True)
class ExecutingTool:
    tool_name: str
    input: str
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    calls: tuple[ToolCallRequest, ...] = ()

    kind = StateKind.EXECUTING_TOOL

    @classmethod
    def for_calls(cls, calls: list[ToolCallRequest]) -> "ExecutingTool":
        """Build the payload for one call or a fan-out batch."""
        if len(calls) == 1:
            return cls(tool_name=calls[0].name, input=calls[0].input, calls=tuple(calls))
        return cls(
            tool_name=",".join(call.name for call in calls),
            input="\n".join(call.input for call in calls),
            calls=tuple(calls),
        )


@dataclass(frozen=True)
class Responding:
    partial_output: tuple[str, ...] = ()

    kind = StateKind.RESPONDING

    @property
    def text(self) -> str:
        return "".join(self.partial_output)


@dataclass(frozen=True)
class Error:
    error: AgentError
    recoverable: bool = True

    kind = StateKind.ERROR


AgentState = Union[Idle, Thinking, ExecutingTool, Responding, Error]


TRANSITIONS: dict[tuple[StateKind, Trigger], StateKind] = {
    (StateKind.IDLE, Trigger.RECEIVE): StateKind.THINKING,
    (StateKind.THINKING, Trigger.DECIDE_NO_TOOL): StateKind.RESPONDING,
    (StateKind.THINKING, Trigger.DECIDE_TOOL_CALL): StateKind.EXECUTING_TOOL,
    (StateKind.THINKING, Trigger.ROUND_LIMIT): StateKind.RESPONDING,
    (StateKind.THINKING, Trigger.FAIL): StateKind.ERROR,
    (StateKind.EXECUTING_TOOL, Trigger.TOOL_SUCCESS): StateKind.THINKING,
    (StateKind.EXECUTING_TOOL, Trigger.TOOL_FAILURE): StateKind.ERROR,
    (StateKind.EXECUTING_TOOL, Trigger.RETRY): StateKind.EXECUTING_TOOL,
    (StateKind.RESPONDING, Trigger.STREAM_COMPLETE): StateKind.IDLE,
    (StateKind.RESPONDING, Trigger.FAIL): StateKind.ERROR,
    (StateKind.ERROR, Trigger.ACKNOWLEDGE): StateKind.IDLE,
    (StateKind.THINKING, Trigger.CANCEL): StateKind.IDLE,
    (StateKind.EXECUTING_TOOL, Trigger.CANCEL): StateKind.IDLE,
    (StateKind.RESPONDING, Trigger.CANCEL): StateKind.IDLE,
    (StateKind.ERROR, Trigger.CANCEL): StateKind.IDLE,
}


def target_of(kind: StateKind, trigger: Trigger) -> Optional[StateKind]:
    """Return the state kind the trigger leads to, or None if undefined."""
    return TRANSITIONS.get((kind, trigger))


class StateMachine:
    """
    Single-writer holder of the current AgentState.

    Only the orchestrator that owns the instance calls `apply`. Every applied
    transition is logged and emitted on the event bus.
    """

    def __init__(self, event_bus: Optional[EventBus] = None, initial: Optional[AgentState] = None):
        self._state: AgentState = initial or Idle()
        self._event_bus = event_bus
        self._history: list[tuple[StateKind, StateKind, Trigger]] = []

    @property
    def state(self) -> AgentState:
        return self._state

    @property
    def kind(self) -> StateKind:
        return self._state.kind

    @property
    def history(self) -> list[tuple[StateKind, StateKind, Trigger]]:
        """Applied transitions as (old, new, trigger), oldest first."""
        return list(self._history)

    def can_apply(self, trigger: Trigger) -> bool:
        return target_of(self._state.kind, trigger) is not None

    def apply(self, trigger: Trigger, new_state: AgentState) -> AgentState:
        """
        Apply a transition.

        Args:
            trigger: The event being applied
            new_state: The variant to move to; must match the table's target kind

        Returns:
            The new state

        Raises:
            InvalidStateTransition: No edge matches; the state is left unchanged
        """
        old_state = self._state
        expected = target_of(old_state.kind, trigger)

        if expected is None or expected != new_state.kind:
            logger.warning(
                "Rejected state transition",
                from_state=old_state.kind.value,
                to_state=new_state.kind.value,
                trigger=trigger.value,
            )
            raise InvalidStateTransition(old_state.kind.value, new_state.kind.value, trigger.value)

        self._state = new_state
        self._history.append((old_state.kind, new_state.kind, trigger))

        logger.info(
            "State transition",
            from_state=old_state.kind.value,
            to_state=new_state.kind.value,
            trigger=trigger.value,
        )

        if self._event_bus is not None:
            self._event_bus.emit(StateTransitionEvent(
                from_state=old_state.kind.value,
                to_state=new_state.kind.value,
                trigger=trigger.value,
            ))

        return new_state

    def replace_payload(self, new_state: AgentState) -> AgentState:
        """
        Swap the payload of the current state without a transition.

        Used for a rebuilt context while Thinking and for streamed output
        while Responding. Nothing is logged or emitted.

        Raises:
            InvalidStateTransition: new_state is a different kind
        """
        if new_state.kind != self._state.kind:
            raise InvalidStateTransition(self._state.kind.value, new_state.kind.value, "update")
        self._state = new_state
        return new_state

    def update_output(self, partial_output: tuple[str, ...]) -> Responding:
        """Replace the Responding payload while streaming."""
        return self.replace_payload(Responding(partial_output=partial_output))
