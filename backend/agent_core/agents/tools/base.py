"""
Tool interface and adapters.

A Tool is a named, described capability with an optional parameter schema.
Implementations are supplied by the surrounding application; this module also
provides adapters for plain callables and for LangChain tools.
"""

import asyncio
import inspect
import json
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Optional, Union

from langchain_core.tools import BaseTool

from agent_core.models.tool import ToolDescriptor


class Tool(ABC):
    """Abstract tool."""

    name: str
    description: str
    # Whether unexpected exceptions from execute() may be retried
    retryable: bool = False

    def parameter_schema(self) -> Optional[dict[str, Any]]:
        """JSON schema of the input object, or None for free-form string input."""
        return None

    @abstractmethod
    async def execute(self, input: str) -> str:
        """
        Run the tool.

        Raise ToolError to report a categorized failure; any other exception
        is reported as an execution error, retried only when `retryable`.
        """
        raise NotImplementedError

    def descriptor(self) -> ToolDescriptor:
        return ToolDescriptor(
            name=self.name,
            description=self.description,
            parameter_schema=self.parameter_schema(),
        )


ToolFunction = Callable[[str], Union[str, Awaitable[str]]]


class FunctionTool(Tool):
    """
    Wraps a plain function taking the raw input string.

    Coroutine functions are awaited; synchronous functions run in a worker
    thread so they cannot block the event loop. A thread that outlives its
    timeout is abandoned and its result discarded.
    """

    def __init__(
        self,
        name: str,
        description: str,
        func: ToolFunction,
        schema: Optional[dict[str, Any]] = None,
        retryable: bool = False,
    ):
        self.name = name
        self.description = description
        self._func = func
        self._schema = schema
        self.retryable = retryable

    def parameter_schema(self) -> Optional[dict[str, Any]]:
        return self._schema

    async def execute(self, input: str) -> str:
        if inspect.iscoroutinefunction(self._func):
            result = await self._func(input)
        else:
            result = await asyncio.to_thread(self._func, input)
        return str(result)


class LangChainTool(Tool):
    """Adapts a LangChain BaseTool (e.g. one built with @tool)."""

    def __init__(self, tool: BaseTool):
        self._tool = tool
        self.name = tool.name
        self.description = tool.description

    def parameter_schema(self) -> Optional[dict[str, Any]]:
        args_schema = self._tool.tool_call_schema
        if isinstance(args_schema, dict):
            schema = dict(args_schema)
        else:
            schema = args_schema.model_json_schema()
        schema.pop("title", None)
        schema.pop("description", None)
        return schema

    async def execute(self, input: str) -> str:
        arguments = json.loads(input) if input.strip() else {}
        result = await self._tool.ainvoke(arguments)
        return result if isinstance(result, str) else json.dumps(result, default=str)
