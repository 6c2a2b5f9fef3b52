"""
LLM client boundary.

This module provides:
- The LlmClient interface the orchestrator and planner talk to
- LlmResponse / LlmChunk value types
- ChatModelClient, an adapter over any LangChain BaseChatModel with
  message conversion, tool binding, error categorization and provider retry
"""

import json
from abc import ABC, abstractmethod
from typing import AsyncIterator, List, Optional, Sequence

import structlog
from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import (
    AIMessage,
    AIMessageChunk,
    BaseMessage,
    HumanMessage,
    SystemMessage,
    ToolMessage,
)
from pydantic import BaseModel, ConfigDict, Field

from agent_core.core.errors import LlmError, LlmErrorKind, categorize_llm_exception
from agent_core.core.retry import async_retry
from agent_core.models.message import Context, Message, MessageRole
from agent_core.models.tool import ToolCallRequest, ToolDescriptor

logger = structlog.get_logger(__name__)


# Provider failures worth another attempt; malformed responses are not
RETRYABLE_LLM_ERRORS = frozenset({
    LlmErrorKind.RATE_LIMITED,
    LlmErrorKind.TIMEOUT,
    LlmErrorKind.PROVIDER_ERROR,
})


class LlmResponse(BaseModel):
    """Complete model output for one inference call."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    text: str = Field(default="", description="Assistant text, possibly empty")
    tool_calls: List[ToolCallRequest] = Field(default_factory=list, description="Requested tool calls")

    @property
    def wants_tools(self) -> bool:
        return bool(self.tool_calls)


class LlmChunk(BaseModel):
    """One increment of a streamed response."""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    text: str = ""
    tool_calls: List[ToolCallRequest] = Field(default_factory=list)


class LlmClient(ABC):
    """
    Interface to a language model.

    Implementations raise LlmError for every failure. `tools` is empty when
    the caller wants a text-only answer.
    """

    @abstractmethod
    async def generate(self, context: Context, tools: Sequence[ToolDescriptor]) -> LlmResponse:
        raise NotImplementedError

    async def stream(self, context: Context, tools: Sequence[ToolDescriptor]) -> AsyncIterator[LlmChunk]:
        """Stream the response; the default yields generate()'s result as one chunk."""
        response = await self.generate(context, tools)
        yield LlmChunk(text=response.text, tool_calls=response.tool_calls)


def _tool_args(input: str) -> dict:
    """Structured args for a recorded tool call input."""
    if input.strip():
        try:
            parsed = json.loads(input)
        except json.JSONDecodeError:
            parsed = None
        if isinstance(parsed, dict):
            return parsed
    return {"input": input}


def context_to_messages(context: Context) -> list[BaseMessage]:
    """
    Convert a Context into LangChain chat messages.

    Consecutive assistant tool-call requests are merged into one AIMessage.
    A tool call and its result are only paired when both survived context
    selection; an unpaired result is passed on as plain text.
    """
    requested = {
        m.tool_call.call_id for m in context.messages
        if m.role == MessageRole.ASSISTANT and m.tool_call is not None
    }
    answered = {
        m.tool_call.call_id for m in context.messages
        if m.role == MessageRole.TOOL and m.tool_call is not None
    }
    paired = requested & answered

    result: list[BaseMessage] = []
    if context.system_prompt:
        result.append(SystemMessage(content=context.system_prompt))

    for message in context.messages:
        if message.role == MessageRole.USER:
            result.append(HumanMessage(content=message.content))
        elif message.role == MessageRole.SYSTEM:
            result.append(SystemMessage(content=message.content))
        elif message.role == MessageRole.TOOL:
            call = message.tool_call
            if call is not None and call.call_id in paired:
                result.append(ToolMessage(content=message.content, tool_call_id=call.call_id))
            else:
                name = call.tool_name if call else "tool"
                result.append(HumanMessage(content=f"Tool result ({name}): {message.content}"))
        else:
            _append_assistant(result, message, paired)

    return result


def _append_assistant(result: list[BaseMessage], message: Message, paired: set[str]) -> None:
    call = message.tool_call
    if call is None or call.call_id not in paired:
        result.append(AIMessage(content=message.content))
        return

    tool_call = {"name": call.tool_name, "args": _tool_args(call.input), "id": call.call_id}
    previous = result[-1] if result else None
    if isinstance(previous, AIMessage) and previous.tool_calls:
        result[-1] = AIMessage(
            content=previous.content,
            tool_calls=list(previous.tool_calls) + [tool_call],
        )
    else:
        result.append(AIMessage(content=message.content, tool_calls=[tool_call]))


def _content_text(content) -> str:
    """Flatten LangChain message content (str or content blocks) to text."""
    if isinstance(content, str):
        return content
    parts = []
    for block in content or []:
        if isinstance(block, str):
            parts.append(block)
        elif isinstance(block, dict) and block.get("type") == "text":
            parts.append(block.get("text", ""))
    return "".join(parts)


def _free_form(tools: Sequence[ToolDescriptor]) -> set[str]:
    return {tool.name for tool in tools if tool.parameter_schema is None}


def _tool_requests(message: AIMessage, free_form: set[str]) -> list[ToolCallRequest]:
    """Tool calls of a reply; free-form tools get their raw "input" string back."""
    requests = []
    for call in message.tool_calls:
        args = call.get("args") or {}
        if call["name"] in free_form and isinstance(args.get("input"), str):
            input = args["input"]
        else:
            input = json.dumps(args)
        kwargs = {"name": call["name"], "input": input}
        if call.get("id"):
            kwargs["call_id"] = call["id"]
        requests.append(ToolCallRequest(**kwargs))
    if message.invalid_tool_calls:
        names = [call.get("name") for call in message.invalid_tool_calls]
        raise LlmError(LlmErrorKind.MALFORMED_RESPONSE, f"Unparseable tool calls: {names}")
    return requests


class ChatModelClient(LlmClient):
    """
    LlmClient backed by a LangChain chat model.

    Tools are bound per call with `bind_tools`; models without tool support
    fall back to text-only generation. Non-streaming calls are retried for
    rate limits, timeouts and provider errors; streaming calls are not.
    """

    def __init__(
        self,
        model: BaseChatModel,
        max_retries: int = 2,
        retry_base_delay: float = 1.0,
        retry_max_delay: float = 30.0,
    ):
        self.model = model
        self.max_retries = max_retries
        self.retry_base_delay = retry_base_delay
        self.retry_max_delay = retry_max_delay

    def _runnable(self, tools: Sequence[ToolDescriptor]):
        if not tools:
            return self.model
        try:
            return self.model.bind_tools([tool.to_openai_schema() for tool in tools])
        except NotImplementedError:
            logger.warning(
                "Chat model does not support tool binding, continuing without tools",
                model=type(self.model).__name__,
            )
            return self.model

    async def generate(self, context: Context, tools: Sequence[ToolDescriptor]) -> LlmResponse:
        invoke = async_retry(
            max_retries=self.max_retries,
            base_delay=self.retry_base_delay,
            max_delay=self.retry_max_delay,
            retryable_exceptions=(LlmError,),
            should_retry=lambda e: e.kind in RETRYABLE_LLM_ERRORS,
        )(self._generate_once)
        return await invoke(context, tools)

    async def _generate_once(self, context: Context, tools: Sequence[ToolDescriptor]) -> LlmResponse:
        messages = context_to_messages(context)
        try:
            reply = await self._runnable(tools).ainvoke(messages)
        except LlmError:
            raise
        except Exception as e:
            raise self._wrap(e) from e

        if not isinstance(reply, AIMessage):
            raise LlmError(LlmErrorKind.MALFORMED_RESPONSE, f"Unexpected reply type {type(reply).__name__}")

        response = LlmResponse(
            text=_content_text(reply.content),
            tool_calls=_tool_requests(reply, _free_form(tools)),
        )
        logger.debug(
            "LLM response received",
            text_length=len(response.text),
            tool_calls=[call.name for call in response.tool_calls],
        )
        return response

    async def stream(self, context: Context, tools: Sequence[ToolDescriptor]) -> AsyncIterator[LlmChunk]:
        """
        Stream text as it arrives.

        Tool calls are only complete once the stream ends, so they are
        yielded in a final chunk.
        """
        messages = context_to_messages(context)
        aggregate: Optional[AIMessageChunk] = None
        try:
            async for chunk in self._runnable(tools).astream(messages):
                aggregate = chunk if aggregate is None else aggregate + chunk
                text = _content_text(chunk.content)
                if text:
                    yield LlmChunk(text=text)
        except LlmError:
            raise
        except Exception as e:
            raise self._wrap(e) from e

        if aggregate is not None and (aggregate.tool_calls or aggregate.invalid_tool_calls):
            yield LlmChunk(tool_calls=_tool_requests(aggregate, _free_form(tools)))

    @staticmethod
    def _wrap(error: Exception) -> LlmError:
        kind = categorize_llm_exception(error)
        logger.warning("LLM call failed", kind=kind.value, error=str(error))
        return LlmError(kind, str(error))
