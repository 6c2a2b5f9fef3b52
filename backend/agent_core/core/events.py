"""
Observability Events

Emits structured events for the surrounding application to log or collect
as metrics.

Features:
- State transition events (old state, new state, trigger)
- Tool execution terminal-status events (status, duration, attempts)
- Synchronous and async handler registration
"""

import asyncio
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Union

import structlog

logger = structlog.get_logger(__name__)


class EventType(str, Enum):
    """Types of events that can be emitted."""
    STATE_TRANSITION = "state.transition"
    TOOL_EXECUTION = "tool.execution"


@dataclass(frozen=True)
class StateTransitionEvent:
    """A single applied state transition."""
    from_state: str
    to_state: str
    trigger: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    event_type = EventType.STATE_TRANSITION

    def to_dict(self) -> dict:
        data = asdict(self)
        data["timestamp"] = self.timestamp.isoformat()
        data["event_type"] = self.event_type.value
        return data


@dataclass(frozen=True)
class ToolExecutionEvent:
    """A tool execution reaching a terminal status."""
    execution_id: str
    tool_name: str
    status: str
    duration: Optional[float]
    attempts: int = 1
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    event_type = EventType.TOOL_EXECUTION

    def to_dict(self) -> dict:
        data = asdict(self)
        data["timestamp"] = self.timestamp.isoformat()
        data["event_type"] = self.event_type.value
        return data


AgentEvent = Union[StateTransitionEvent, ToolExecutionEvent]
EventHandler = Callable[[AgentEvent], None]
AsyncEventHandler = Callable[[AgentEvent], Awaitable[Any]]


class EventBus:
    """
    Fan-out of agent events to registered handlers.

    One bus is created per application (or per agent) and injected into the
    orchestrator and tool executor. Handler failures are logged and never
    interrupt the emitting component.

    Usage:
        bus = EventBus()
        bus.register_event_handler(lambda event: print(event.to_dict()))
        bus.emit(StateTransitionEvent("idle", "thinking", "receive"))
    """

    def __init__(self):
        self._event_handlers: list[EventHandler] = []
        self._async_event_handlers: list[AsyncEventHandler] = []
        self._pending: set[asyncio.Task] = set()

    def register_event_handler(self, handler: EventHandler) -> None:
        """Register a synchronous event handler."""
        self._event_handlers.append(handler)
        logger.debug("Registered sync event handler", handler_count=len(self._event_handlers))

    def register_async_event_handler(self, handler: AsyncEventHandler) -> None:
        """Register an async event handler, scheduled on the running loop."""
        self._async_event_handlers.append(handler)
        logger.debug("Registered async event handler", handler_count=len(self._async_event_handlers))

    def emit(self, event: AgentEvent) -> None:
        """Emit an event to all registered handlers."""
        for handler in self._event_handlers:
            try:
                handler(event)
            except Exception as e:
                logger.error("Event handler error", error=str(e), event_type=event.event_type.value)

        if self._async_event_handlers:
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                loop = None

            if loop is None:
                logger.debug("No running loop, skipping async handlers", event_type=event.event_type.value)
            else:
                for handler in self._async_event_handlers:
                    task = loop.create_task(self._run_async_handler(handler, event))
                    self._pending.add(task)
                    task.add_done_callback(self._pending.discard)

        logger.debug("Event emitted", **event.to_dict())

    async def drain(self) -> None:
        """Wait for scheduled async handlers to finish."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    @staticmethod
    async def _run_async_handler(handler: AsyncEventHandler, event: AgentEvent) -> None:
        try:
            await handler(event)
        except Exception as e:
            logger.error("Async event handler error", error=str(e), event_type=event.event_type.value)
