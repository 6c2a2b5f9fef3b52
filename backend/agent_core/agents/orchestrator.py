"""
Orchestrator - Drives one agent through its state machine, a turn at a time.

This module provides:
- The turn loop: context building, LLM decisions, tool rounds, responding
- Optional planning before the first decision and reflection after the response
- Streaming with per-chunk timeouts and cooperative cancellation
- Mapping of LLM, tool and context failures onto Error states and TurnResults
"""

import asyncio
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional, Sequence

import structlog

from agent_core.agents.context_manager import ContextManager
from agent_core.agents.planner import Planner
from agent_core.agents.state import (
    Error,
    ExecutingTool,
    Idle,
    Responding,
    StateKind,
    StateMachine,
    Thinking,
    Trigger,
    AgentState,
    target_of,
)
from agent_core.agents.tools.executor import ToolExecutor, ToolPolicy
from agent_core.agents.tools.registry import ToolRegistry
from agent_core.config import OrchestratorConfig
from agent_core.core.errors import (
    AgentError,
    ContextError,
    LlmError,
    LlmErrorKind,
    PlanningError,
    ToolError,
    ToolErrorKind,
    ToolRoundLimitExceeded,
    categorize_llm_exception,
)
from agent_core.core.events import EventBus
from agent_core.core.llm import LlmClient, LlmResponse
from agent_core.core.logging_config import bind_turn_context
from agent_core.models.message import Context, Message, MessageRole, ToolCallRecord
from agent_core.models.plan import Plan, Reflection
from agent_core.models.tool import ToolCallRequest, ToolDescriptor, ToolExecution

logger = structlog.get_logger(__name__)

# Failures the model can plausibly fix by itself when told about them
MODEL_RECOVERABLE_TOOL_ERRORS = frozenset({
    ToolErrorKind.INVALID_INPUT,
    ToolErrorKind.EXECUTION_ERROR,
    ToolErrorKind.RESOURCE_LIMIT,
})

ChunkCallback = Callable[[str], None]


class TurnStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class TurnResult:
    """Outcome of one run_turn call."""
    status: TurnStatus
    response: str = ""
    messages: list[Message] = field(default_factory=list)  # to append to the caller's history
    executions: list[ToolExecution] = field(default_factory=list)
    error: Optional[AgentError] = None
    plan: Optional[Plan] = None
    reflection: Optional[Reflection] = None
    turn_id: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status == TurnStatus.COMPLETED


class _TurnFailed(Exception):
    """Internal signal: the turn reached an Error state."""

    def __init__(self, error: AgentError):
        super().__init__(error.message)
        self.error = error


class Orchestrator:
    """
    Owns one agent's state and runs its turns.

    Collaborators are injected; anything not supplied is built from the
    config. A single orchestrator runs at most one turn at a time; starting a
    second turn while one is active raises InvalidStateTransition.

    Usage:
        orchestrator = Orchestrator(llm=client, registry=registry, config=config)
        result = await orchestrator.run_turn(history, "What is 2+2?")
        history.extend(result.messages)
    """

    def __init__(
        self,
        llm: LlmClient,
        registry: ToolRegistry,
        executor: Optional[ToolExecutor] = None,
        context_manager: Optional[ContextManager] = None,
        planner: Optional[Planner] = None,
        config: Optional[OrchestratorConfig] = None,
        event_bus: Optional[EventBus] = None,
        policy: Optional[ToolPolicy] = None,
    ):
        self.config = config or OrchestratorConfig()
        self.llm = llm
        self.registry = registry
        self.event_bus = event_bus or EventBus()
        self.policy = policy

        self.context_manager = context_manager or ContextManager(
            max_context_tokens=self.config.max_context_tokens,
            token_model=self.config.token_model,
            summary_max_chars=self.config.summary_max_chars,
            max_messages=self.config.max_messages,
        )
        self.executor = executor or ToolExecutor(
            registry,
            event_bus=self.event_bus,
            tool_timeout=self.config.tool_timeout,
            max_tool_retries=self.config.max_tool_retries,
            max_parallel_tools=self.config.max_parallel_tools,
            retry_base_delay=self.config.tool_retry_base_delay,
            max_input_chars=self.config.max_input_chars,
            max_output_chars=self.config.max_output_chars,
        )
        if planner is None and (self.config.enable_planning or self.config.enable_reflection):
            planner = Planner(llm, max_plan_steps=self.config.max_plan_steps, context_manager=self.context_manager)
        self.planner = planner

        self._machine = StateMachine(event_bus=self.event_bus)
        self._reflections: deque[Reflection] = deque(maxlen=self.config.max_reflections)
        self._task: Optional[asyncio.Task] = None
        self._cancel_requested = False

    @property
    def state(self) -> AgentState:
        return self._machine.state

    @property
    def state_history(self):
        return self._machine.history

    @property
    def reflections(self) -> list[Reflection]:
        return list(self._reflections)

    def acknowledge(self) -> None:
        """
        Clear an Error state.

        Raises:
            InvalidStateTransition: The agent is not in Error
        """
        self._machine.apply(Trigger.ACKNOWLEDGE, Idle())

    def cancel(self) -> bool:
        """
        Cancel the active turn.

        The state moves to Idle immediately and the turn task is cancelled;
        run_turn then returns a CANCELLED result. Cancelling an Idle agent
        does nothing.

        Returns:
            True if something was cancelled
        """
        if self._machine.kind == StateKind.IDLE:
            return False

        self._machine.apply(Trigger.CANCEL, Idle())
        if self._task is not None and not self._task.done():
            self._cancel_requested = True
            # From inside the turn (a callback or event handler) the flag is
            # enough; the turn checks it before its next transition
            if self._task is not _current_task():
                self._task.cancel()
        logger.info("Turn cancelled")
        return True

    async def run_turn(
        self,
        history: Sequence[Message],
        user_input: str,
        conversation_id: Optional[str] = None,
        on_chunk: Optional[ChunkCallback] = None,
    ) -> TurnResult:
        """
        Run one conversational turn.

        Args:
            history: Prior messages, oldest first; never mutated
            user_input: The new user message
            conversation_id: Bound into every log entry of the turn
            on_chunk: Called with each piece of response text as it arrives

        Returns:
            TurnResult; LLM, tool and context failures are reported here,
            not raised

        Raises:
            InvalidStateTransition: A turn is already running, or the agent is
                in a non-recoverable Error that has not been acknowledged
            Exception: Anything raised by on_chunk, after
                the agent is moved to a recoverable Error
        """
        state = self._machine.state
        if isinstance(state, Error) and state.recoverable:
            self.acknowledge()

        self._machine.apply(Trigger.RECEIVE, Thinking())
        self._task = asyncio.current_task()
        self._cancel_requested = False

        with bind_turn_context(conversation_id=conversation_id) as turn_id:
            logger.info("Turn started", history_length=len(history))
            try:
                result = await self._run(history, user_input, on_chunk)
            except asyncio.CancelledError:
                if not self._cancel_requested:
                    self._force_idle()
                    raise
                task = asyncio.current_task()
                if task is not None and task.cancelling():
                    task.uncancel()
                return TurnResult(status=TurnStatus.CANCELLED, turn_id=turn_id)
            except Exception as e:
                self._fail_unexpected(e)
                raise
            finally:
                self._task = None
                self._cancel_requested = False

            result.turn_id = turn_id
            logger.info(
                "Turn finished",
                status=result.status.value,
                new_messages=len(result.messages),
                tool_executions=len(result.executions),
            )
            return result

    def _apply(self, trigger: Trigger, new_state: AgentState) -> AgentState:
        """Apply a transition for the running turn, unless it was cancelled meanwhile."""
        if self._cancel_requested:
            raise asyncio.CancelledError()
        return self._machine.apply(trigger, new_state)

    async def _run(
        self,
        history: Sequence[Message],
        user_input: str,
        on_chunk: Optional[ChunkCallback],
    ) -> TurnResult:
        user_message = self.context_manager.stamp(Message.user(user_input))
        transcript = list(history) + [user_message]
        new_messages = [user_message]
        executions: list[ToolExecution] = []
        descriptors = self._descriptors()
        plan: Optional[Plan] = None

        def failed(error: AgentError) -> TurnResult:
            return TurnResult(
                status=TurnStatus.FAILED,
                messages=new_messages,
                executions=executions,
                error=error,
                plan=plan,
            )

        try:
            if self.config.enable_planning and self.planner is not None:
                plan = await self._create_plan(user_input, descriptors)

            rounds = 0
            while True:
                context = self._build_context(transcript, descriptors, plan)
                if self._cancel_requested:
                    raise asyncio.CancelledError()
                self._machine.replace_payload(Thinking(context=context))

                batch = plan.next_tool_batch() if plan is not None else []
                if batch and rounds < self.config.max_tool_rounds_per_turn:
                    calls = [ToolCallRequest(name=step.tool_name, input=step.tool_input or "") for step in batch]
                    rounds += 1
                    try:
                        await self._tool_round(
                            calls, [step.description for step in batch], transcript, new_messages, executions,
                        )
                    finally:
                        for step in batch:
                            plan.mark_completed(step)
                    continue

                if rounds >= self.config.max_tool_rounds_per_turn:
                    logger.warning("Tool round limit reached", rounds=rounds)
                    await self._decide(context, [], Trigger.ROUND_LIMIT, on_chunk)
                    if self._machine.kind != StateKind.RESPONDING:
                        raise _TurnFailed(ToolRoundLimitExceeded(
                            f"No final answer after {rounds} tool rounds"
                        ))
                    break

                response = await self._decide(context, descriptors, Trigger.DECIDE_NO_TOOL, on_chunk)
                if self._machine.kind == StateKind.RESPONDING:
                    break

                if not response.tool_calls:
                    # neither text nor calls: an empty answer
                    self._apply(Trigger.DECIDE_NO_TOOL, Responding())
                    break

                rounds += 1
                notes = [response.text] + [""] * (len(response.tool_calls) - 1)
                await self._tool_round(response.tool_calls, notes, transcript, new_messages, executions)

        except LlmError as e:
            self._apply(Trigger.FAIL, Error(error=e, recoverable=True))
            return failed(e)
        except ContextError as e:
            # An oversized tool result is bad data, not a misconfigured budget
            from_tool = transcript[-1].role == MessageRole.TOOL
            self._apply(Trigger.FAIL, Error(error=e, recoverable=from_tool))
            return failed(e)
        except _TurnFailed as e:
            if self._machine.kind != StateKind.ERROR:
                self._apply(Trigger.FAIL, Error(error=e.error, recoverable=True))
            return failed(e.error)

        if self._cancel_requested:
            raise asyncio.CancelledError()
        text = self._machine.state.text
        answer = self.context_manager.stamp(Message.assistant(text))
        new_messages.append(answer)

        reflection = None
        if self.config.enable_reflection and plan is not None and self.planner is not None:
            reflection = await self._reflect(plan, text, executions)

        self._apply(Trigger.STREAM_COMPLETE, Idle())
        return TurnResult(
            status=TurnStatus.COMPLETED,
            response=text,
            messages=new_messages,
            executions=executions,
            plan=plan,
            reflection=reflection,
        )

    def _descriptors(self) -> list[ToolDescriptor]:
        return [
            d for d in self.registry.list_descriptions()
            if self.policy is None or self.policy.allows(d.name)
        ]

    def _system_prompt(self, descriptors: Sequence[ToolDescriptor], plan: Optional[Plan]) -> str:
        parts = [self.config.system_prompt]
        if descriptors:
            parts.append("## Available Tools\n" + "\n".join(d.to_prompt_line() for d in descriptors))
        if plan is not None:
            parts.append("## Current Plan\n" + plan.to_prompt())
        return "\n\n".join(parts)

    def _build_context(
        self,
        transcript: Sequence[Message],
        descriptors: Sequence[ToolDescriptor],
        plan: Optional[Plan],
    ) -> Context:
        return self.context_manager.build_context(
            transcript,
            self._system_prompt(descriptors, plan),
            budget=self.config.max_context_tokens,
        )

    async def _create_plan(self, goal: str, descriptors: Sequence[ToolDescriptor]) -> Optional[Plan]:
        try:
            return await asyncio.wait_for(
                self.planner.create_plan(goal, descriptors, list(self._reflections)),
                timeout=self.config.llm_timeout,
            )
        except PlanningError as e:
            logger.warning("Planning failed, reasoning directly", error=e.message)
        except asyncio.TimeoutError:
            logger.warning("Planning timed out, reasoning directly", timeout=self.config.llm_timeout)
        return None

    async def _reflect(self, plan: Plan, response: str, executions: list[ToolExecution]) -> Optional[Reflection]:
        try:
            reflection = await asyncio.wait_for(
                self.planner.reflect(plan, response, executions),
                timeout=self.config.llm_timeout,
            )
        except PlanningError as e:
            logger.warning("Reflection failed", error=e.message)
            return None
        except asyncio.TimeoutError:
            logger.warning("Reflection timed out", timeout=self.config.llm_timeout)
            return None
        self._reflections.append(reflection)
        return reflection

    async def _decide(
        self,
        context: Context,
        tools: Sequence[ToolDescriptor],
        text_trigger: Trigger,
        on_chunk: Optional[ChunkCallback],
    ) -> LlmResponse:
        """
        Ask the model for its next action.

        An answer moves the machine to Responding via `text_trigger`; a tool
        request leaves it in Thinking. With no tools offered, any tool calls
        the model makes anyway are ignored.
        """
        logger.debug(
            "Requesting LLM decision",
            context_tokens=context.total_tokens,
            messages=len(context.messages),
            tools=len(tools),
        )
        if self.config.stream_responses:
            return await self._stream(context, tools, text_trigger, on_chunk)

        response = await self._generate(context, tools)
        if response.tool_calls and not tools:
            logger.warning("Ignoring tool calls made without tools", tools=[c.name for c in response.tool_calls])
            response = LlmResponse(text=response.text)

        if response.text and not response.tool_calls:
            self._apply(text_trigger, Responding(partial_output=(response.text,)))
            if on_chunk is not None:
                on_chunk(response.text)
        return response

    async def _generate(self, context: Context, tools: Sequence[ToolDescriptor]) -> LlmResponse:
        try:
            return await asyncio.wait_for(self.llm.generate(context, tools), timeout=self.config.llm_timeout)
        except asyncio.TimeoutError as e:
            raise LlmError(LlmErrorKind.TIMEOUT, f"No response within {self.config.llm_timeout:g}s") from e
        except LlmError:
            raise
        except Exception as e:
            raise LlmError(categorize_llm_exception(e), str(e)) from e

    async def _stream(
        self,
        context: Context,
        tools: Sequence[ToolDescriptor],
        text_trigger: Trigger,
        on_chunk: Optional[ChunkCallback],
    ) -> LlmResponse:
        """
        Consume a response stream chunk by chunk.

        The first text chunk moves the machine to Responding; later chunks
        update its partial output. Tool calls only count while no answer text
        has streamed; text that accompanies them is kept as their preamble.
        """
        pieces: list[str] = []
        preamble: list[str] = []
        tool_calls: list[ToolCallRequest] = []
        stream = self.llm.stream(context, tools)

        async def next_chunk():
            return await stream.__anext__()

        try:
            while True:
                try:
                    chunk = await asyncio.wait_for(next_chunk(), timeout=self.config.llm_timeout)
                except StopAsyncIteration:
                    break
                except asyncio.TimeoutError as e:
                    raise LlmError(
                        LlmErrorKind.TIMEOUT,
                        f"No streamed output within {self.config.llm_timeout:g}s",
                    ) from e
                except LlmError:
                    raise
                except Exception as e:
                    raise LlmError(categorize_llm_exception(e), str(e)) from e

                if chunk.tool_calls and (pieces or not tools):
                    logger.warning(
                        "Discarding tool calls that cannot be run",
                        tools=[call.name for call in chunk.tool_calls],
                        after_text=bool(pieces),
                    )
                elif chunk.tool_calls:
                    tool_calls.extend(chunk.tool_calls)

                if not chunk.text:
                    continue
                if tool_calls:
                    preamble.append(chunk.text)
                    continue

                pieces.append(chunk.text)
                if self._machine.kind == StateKind.THINKING:
                    self._apply(text_trigger, Responding(partial_output=tuple(pieces)))
                else:
                    if self._cancel_requested:
                        raise asyncio.CancelledError()
                    self._machine.update_output(tuple(pieces))
                if on_chunk is not None:
                    on_chunk(chunk.text)
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()

        if pieces:
            return LlmResponse(text="".join(pieces))
        return LlmResponse(text="".join(preamble), tool_calls=tool_calls)

    async def _tool_round(
        self,
        calls: Sequence[ToolCallRequest],
        notes: Sequence[str],
        transcript: list[Message],
        new_messages: list[Message],
        executions: list[ToolExecution],
    ) -> None:
        """
        Run one round of tool calls and record them in the transcript.

        Raises:
            _TurnFailed: A call failed in a way the model is not asked to handle
        """
        for call, note in zip(calls, notes):
            request = self.context_manager.stamp(Message.assistant(
                note,
                ToolCallRecord(call_id=call.call_id, tool_name=call.name, input=call.input),
            ))
            transcript.append(request)
            new_messages.append(request)

        self._apply(Trigger.DECIDE_TOOL_CALL, ExecutingTool.for_calls(list(calls)))

        if len(calls) == 1:
            round_executions = [await self.executor.execute(
                calls[0].name, calls[0].input, policy=self.policy, on_retry=self._on_retry,
            )]
        else:
            round_executions = await self.executor.execute_batch(calls, policy=self.policy, on_retry=self._on_retry)
        executions.extend(round_executions)

        for call, execution in zip(calls, round_executions):
            result = self.context_manager.stamp(Message.tool(
                execution.result_text(),
                ToolCallRecord.from_execution(call.call_id, execution),
            ))
            transcript.append(result)
            new_messages.append(result)

        fatal = [
            e for e in round_executions
            if not e.succeeded and not (
                self.config.feed_tool_errors_to_model
                and e.error is not None
                and e.error.kind in MODEL_RECOVERABLE_TOOL_ERRORS
            )
        ]
        if fatal:
            first = fatal[0]
            error = first.error or ToolError(
                ToolErrorKind.EXECUTION_ERROR, f"Tool ended with status {first.status.value}", first.tool_name,
            )
            self._apply(Trigger.TOOL_FAILURE, Error(error=error, recoverable=True))
            raise _TurnFailed(error)

        self._apply(Trigger.TOOL_SUCCESS, Thinking())

    def _on_retry(self, execution: ToolExecution, error: ToolError) -> None:
        state = self._machine.state
        if isinstance(state, ExecutingTool) and not self._cancel_requested:
            self._machine.apply(Trigger.RETRY, state)

    def _force_idle(self) -> None:
        if self._machine.kind != StateKind.IDLE:
            self._machine.apply(Trigger.CANCEL, Idle())

    def _fail_unexpected(self, error: Exception) -> None:
        """Move a turn interrupted by an unexpected exception into a recoverable Error."""
        kind = self._machine.kind
        trigger = Trigger.TOOL_FAILURE if kind == StateKind.EXECUTING_TOOL else Trigger.FAIL
        logger.error("Turn aborted by unexpected error", state=kind.value, error=str(error))
        if target_of(kind, trigger) is not None:
            wrapped = error if isinstance(error, AgentError) else AgentError(str(error) or type(error).__name__)
            self._machine.apply(trigger, Error(error=wrapped, recoverable=True))


def _current_task() -> Optional[asyncio.Task]:
    try:
        return asyncio.current_task()
    except RuntimeError:
        return None
