"""
Tool Registry - Named, ordered mapping of the tools an agent may call.

This module provides:
- Registration with duplicate detection and in-place replacement
- Lookup by name with a categorized NOT_FOUND error
- Descriptors in registration order, for prompts and tool binding
"""

from typing import Iterable, Iterator

import structlog

from agent_core.agents.tools.base import Tool
from agent_core.core.errors import DuplicateToolError, ToolError
from agent_core.models.tool import ToolDescriptor

logger = structlog.get_logger(__name__)


class ToolRegistry:
    """
    Registry of available tools.

    One instance per agent (or application), injected into the executor and
    orchestrator. Registration normally happens at startup; lookups after
    that are read-only. Dict insertion order is the registration order.
    """

    def __init__(self, tools: Iterable[Tool] = ()):
        self._tools: dict[str, Tool] = {}
        self.register_all(tools)

    def register(self, tool: Tool, replace: bool = False) -> None:
        """
        Register a tool.

        Args:
            tool: The tool to register
            replace: Overwrite an existing tool of the same name; the
                replacement keeps the original position

        Raises:
            DuplicateToolError: The name is taken and replace is False
        """
        name = tool.name
        if name in self._tools and not replace:
            raise DuplicateToolError(name)

        replaced = name in self._tools
        self._tools[name] = tool

        logger.info(
            "Tool registered",
            tool_name=name,
            replaced=replaced,
            structured_input=tool.parameter_schema() is not None,
        )

    def register_all(self, tools: Iterable[Tool], replace: bool = False) -> None:
        for tool in tools:
            self.register(tool, replace=replace)

    def unregister(self, name: str) -> bool:
        """Remove a tool; returns False when it was not registered."""
        if self._tools.pop(name, None) is None:
            return False
        logger.info("Tool unregistered", tool_name=name)
        return True

    def get(self, name: str) -> Tool:
        """
        Resolve a tool by name.

        Raises:
            ToolError: kind NOT_FOUND when no tool has that name
        """
        tool = self._tools.get(name)
        if tool is None:
            raise ToolError.not_found(name)
        return tool

    def contains(self, name: str) -> bool:
        return name in self._tools

    def names(self) -> list[str]:
        return list(self._tools)

    def list_descriptions(self) -> list[ToolDescriptor]:
        """Descriptors of all registered tools, in registration order."""
        return [tool.descriptor() for tool in self._tools.values()]

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    def __iter__(self) -> Iterator[Tool]:
        return iter(list(self._tools.values()))
