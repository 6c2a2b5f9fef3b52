"""
Shared fakes and fixtures for agent_core tests.
"""

import asyncio
import json
from typing import AsyncIterator, Optional, Sequence, Union

import pytest

from agent_core.agents.tools.base import FunctionTool
from agent_core.agents.tools.math_tools import get_math_tools
from agent_core.agents.tools.registry import ToolRegistry
from agent_core.core.events import EventBus
from agent_core.core.llm import LlmChunk, LlmClient, LlmResponse
from agent_core.models.message import Context
from agent_core.models.tool import ToolCallRequest, ToolDescriptor


ScriptItem = Union[LlmResponse, Exception]


class ScriptedLlm(LlmClient):
    """LLM fake returning pre-scripted responses in order and recording every call."""

    def __init__(self, *script: ScriptItem, delay: float = 0.0):
        self.script = list(script)
        self.delay = delay
        self.contexts: list[Context] = []
        self.tools: list[list[ToolDescriptor]] = []

    async def generate(self, context: Context, tools: Sequence[ToolDescriptor]) -> LlmResponse:
        self.contexts.append(context)
        self.tools.append(list(tools))
        if self.delay:
            await asyncio.sleep(self.delay)
        if not self.script:
            raise AssertionError("ScriptedLlm ran out of responses")
        item = self.script.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    @property
    def calls(self) -> int:
        return len(self.contexts)


class StreamingLlm(LlmClient):
    """LLM fake streaming scripted chunk lists, one list per call."""

    def __init__(self, *streams: list[LlmChunk], chunk_delay: float = 0.0):
        self.streams = list(streams)
        self.chunk_delay = chunk_delay
        self.closed = 0

    async def generate(self, context: Context, tools: Sequence[ToolDescriptor]) -> LlmResponse:
        raise AssertionError("StreamingLlm only streams")

    async def stream(self, context: Context, tools: Sequence[ToolDescriptor]) -> AsyncIterator[LlmChunk]:
        chunks = self.streams.pop(0)
        try:
            for chunk in chunks:
                if self.chunk_delay:
                    await asyncio.sleep(self.chunk_delay)
                yield chunk
        finally:
            self.closed += 1


def tool_call(name: str, **arguments) -> LlmResponse:
    """Response requesting one structured tool call."""
    return LlmResponse(tool_calls=[ToolCallRequest(name=name, input=json.dumps(arguments))])


def text(content: str) -> LlmResponse:
    return LlmResponse(text=content)


def sleeping_tool(name: str, seconds: float, output: Optional[str] = None, log: Optional[list] = None) -> FunctionTool:
    """Async tool that sleeps, optionally recording start/end into `log`."""

    async def run(input: str) -> str:
        if log is not None:
            log.append(("start", name))
        await asyncio.sleep(seconds)
        if log is not None:
            log.append(("end", name))
        return output if output is not None else f"{name} done"

    return FunctionTool(name, f"Sleeps for {seconds}s", run)


def echo_tool(name: str = "echo") -> FunctionTool:
    return FunctionTool(name, "Echoes its input", lambda input: input)


@pytest.fixture
def registry() -> ToolRegistry:
    return ToolRegistry(get_math_tools())


@pytest.fixture
def event_bus() -> EventBus:
    return EventBus()


@pytest.fixture
def events(event_bus) -> list:
    """Every event emitted on the `event_bus` fixture, in order."""
    recorded = []
    event_bus.register_event_handler(recorded.append)
    return recorded
