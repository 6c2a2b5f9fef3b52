"""
Tool Executor - Permission-checked, validated, time-bounded tool calls.

This module provides:
- ToolPolicy allow/deny lists checked before any work is done
- JSON schema validation of structured tool input
- Per-attempt timeouts with retry for transient failures
- Bounded parallel fan-out with results in request order
- Terminal-status events for every execution
"""

import asyncio
import json
from dataclasses import dataclass, field
from typing import Callable, Optional, Sequence

import jsonschema
import structlog

from agent_core.agents.tools.base import Tool
from agent_core.agents.tools.registry import ToolRegistry
from agent_core.core.errors import ToolError, ToolErrorKind
from agent_core.core.events import EventBus, ToolExecutionEvent
from agent_core.core.retry import RetryConfig, calculate_delay
from agent_core.models.tool import ToolCallRequest, ToolExecution, ToolStatus, utcnow

logger = structlog.get_logger(__name__)

RetryCallback = Callable[[ToolExecution, ToolError], None]


@dataclass
class ToolPolicy:
    """
    Which tools a caller may run.

    `allowed_tools` of None means every registered tool; a name in
    `denied_tools` is always refused.
    """
    allowed_tools: Optional[set[str]] = None
    denied_tools: set[str] = field(default_factory=set)

    def allows(self, tool_name: str) -> bool:
        if tool_name in self.denied_tools:
            return False
        return self.allowed_tools is None or tool_name in self.allowed_tools


def format_schema_error(error: jsonschema.ValidationError) -> str:
    path = "/".join(str(part) for part in error.path) or "<root>"
    return f"{path}: {error.message}"


class ToolExecutor:
    """
    Runs tools from a registry.

    Holds no per-turn state. Each call produces one ToolExecution that ends in
    exactly one terminal status; retries reuse the same record.
    """

    def __init__(
        self,
        registry: ToolRegistry,
        event_bus: Optional[EventBus] = None,
        tool_timeout: float = 30.0,
        max_tool_retries: int = 1,
        max_parallel_tools: int = 4,
        retry_base_delay: float = 0.0,
        max_input_chars: int = 100_000,
        max_output_chars: int = 100_000,
    ):
        self.registry = registry
        self.event_bus = event_bus
        self.tool_timeout = tool_timeout
        self.max_tool_retries = max_tool_retries
        self.max_parallel_tools = max_parallel_tools
        self.max_input_chars = max_input_chars
        self.max_output_chars = max_output_chars
        self._backoff = RetryConfig(
            max_retries=max_tool_retries,
            base_delay=retry_base_delay,
            max_delay=max(tool_timeout, retry_base_delay),
            jitter=False,
        )

    async def execute(
        self,
        tool_name: str,
        input: str,
        policy: Optional[ToolPolicy] = None,
        execution_id: Optional[str] = None,
        on_retry: Optional[RetryCallback] = None,
    ) -> ToolExecution:
        """
        Execute one tool call.

        Failures are returned as a failed or timed-out ToolExecution, never
        raised. Cancellation marks the execution cancelled and propagates.

        Args:
            tool_name: Registered name of the tool
            input: Raw input string (a JSON object for structured tools)
            policy: Optional permission policy, checked before anything else
            execution_id: Id to use instead of a generated one
            on_retry: Called with (execution, error) before each retry

        Returns:
            The terminal ToolExecution
        """
        execution = ToolExecution(tool_name=tool_name, input=input)
        if execution_id:
            execution.execution_id = execution_id

        try:
            tool = self._prepare(tool_name, input, policy)
        except ToolError as e:
            return self._finish(execution, ToolStatus.FAILED, error=e)

        try:
            return await self._run_attempts(tool, execution, on_retry)
        except asyncio.CancelledError:
            self._finish(execution, ToolStatus.CANCELLED)
            raise

    async def execute_batch(
        self,
        requests: Sequence[ToolCallRequest],
        policy: Optional[ToolPolicy] = None,
        on_retry: Optional[RetryCallback] = None,
    ) -> list[ToolExecution]:
        """
        Execute independent tool calls concurrently.

        At most `max_parallel_tools` run at once. Results are returned in
        request order regardless of completion order.
        """
        semaphore = asyncio.Semaphore(max(1, self.max_parallel_tools))

        async def run(request: ToolCallRequest) -> ToolExecution:
            async with semaphore:
                return await self.execute(request.name, request.input, policy=policy, on_retry=on_retry)

        logger.debug("Executing tool batch", tools=[request.name for request in requests])
        return list(await asyncio.gather(*(run(request) for request in requests)))

    def _prepare(self, tool_name: str, input: str, policy: Optional[ToolPolicy]) -> Tool:
        if policy is not None and not policy.allows(tool_name):
            raise ToolError.unauthorized(tool_name)

        tool = self.registry.get(tool_name)

        if len(input) > self.max_input_chars:
            raise ToolError(
                ToolErrorKind.RESOURCE_LIMIT,
                f"Input of {len(input)} characters exceeds the limit of {self.max_input_chars}",
                tool_name,
            )

        self._validate_input(tool, input)
        return tool

    def _validate_input(self, tool: Tool, input: str) -> None:
        schema = tool.parameter_schema()
        if schema is None:
            return

        try:
            payload = json.loads(input) if input.strip() else {}
        except json.JSONDecodeError as e:
            raise ToolError(ToolErrorKind.INVALID_INPUT, f"Input is not valid JSON: {e.msg}", tool.name) from e

        if not isinstance(payload, dict):
            raise ToolError(ToolErrorKind.INVALID_INPUT, "Input must be a JSON object", tool.name)

        validator_cls = jsonschema.validators.validator_for(schema)
        errors = sorted(validator_cls(schema).iter_errors(payload), key=lambda err: list(err.path))
        if errors:
            raise ToolError(
                ToolErrorKind.INVALID_INPUT,
                "; ".join(format_schema_error(error) for error in errors),
                tool.name,
            )

    async def _run_attempts(
        self,
        tool: Tool,
        execution: ToolExecution,
        on_retry: Optional[RetryCallback],
    ) -> ToolExecution:
        while True:
            execution.status = ToolStatus.RUNNING
            execution.attempts += 1

            status = ToolStatus.FAILED
            try:
                output = await asyncio.wait_for(tool.execute(execution.input), timeout=self.tool_timeout)
            except asyncio.TimeoutError:
                status = ToolStatus.TIMED_OUT
                error = ToolError.timeout(tool.name, self.tool_timeout)
            except ToolError as e:
                error = e
                if error.tool_name is None:
                    error.tool_name = tool.name
            except Exception as e:
                error = ToolError(
                    ToolErrorKind.EXECUTION_ERROR,
                    str(e) or type(e).__name__,
                    tool.name,
                    retryable=tool.retryable,
                )
            else:
                output = output if isinstance(output, str) else str(output)
                if len(output) <= self.max_output_chars:
                    return self._finish(execution, ToolStatus.COMPLETED, output=output)
                error = ToolError(
                    ToolErrorKind.RESOURCE_LIMIT,
                    f"Output of {len(output)} characters exceeds the limit of {self.max_output_chars}",
                    tool.name,
                )

            if not error.retryable or execution.attempts > self.max_tool_retries:
                return self._finish(execution, status, error=error)

            logger.warning(
                "Retrying tool",
                tool_name=tool.name,
                execution_id=execution.execution_id,
                attempt=execution.attempts,
                max_retries=self.max_tool_retries,
                error_kind=error.kind.value,
            )
            if on_retry is not None:
                on_retry(execution, error)

            delay = calculate_delay(execution.attempts - 1, self._backoff)
            if delay > 0:
                await asyncio.sleep(delay)

    def _finish(
        self,
        execution: ToolExecution,
        status: ToolStatus,
        output: Optional[str] = None,
        error: Optional[ToolError] = None,
    ) -> ToolExecution:
        execution.status = status
        execution.output = output
        execution.error = error
        execution.completed_at = utcnow()

        if status == ToolStatus.COMPLETED:
            logger.info(
                "Tool execution completed",
                tool_name=execution.tool_name,
                execution_id=execution.execution_id,
                attempts=execution.attempts,
                duration=execution.duration,
            )
        else:
            logger.warning(
                "Tool execution failed",
                tool_name=execution.tool_name,
                execution_id=execution.execution_id,
                status=status.value,
                attempts=execution.attempts,
                error_kind=error.kind.value if error else None,
                error=error.message if error else None,
            )

        if self.event_bus is not None:
            self.event_bus.emit(ToolExecutionEvent(
                execution_id=execution.execution_id,
                tool_name=execution.tool_name,
                status=status.value,
                duration=execution.duration,
                attempts=execution.attempts,
            ))
        return execution
