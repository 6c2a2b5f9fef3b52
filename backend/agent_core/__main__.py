from dotenv import load_dotenv
load_dotenv()  # Load environment variables before other imports

import asyncio
import json
import sys
from typing import Sequence

from agent_core.agents.orchestrator import Orchestrator
from agent_core.agents.tools.math_tools import get_math_tools
from agent_core.agents.tools.registry import ToolRegistry
from agent_core.config import load_config
from agent_core.core.events import EventBus
from agent_core.core.llm import LlmClient, LlmResponse
from agent_core.core.logging_config import configure_logging, get_logger
from agent_core.models.message import Context, MessageRole
from agent_core.models.tool import ToolCallRequest, ToolDescriptor

logger = get_logger(__name__)


class OfflineCalculatorClient(LlmClient):
    """Stands in for a real model: asks the calculator once, then answers."""

    def __init__(self, expression: str):
        self.expression = expression

    async def generate(self, context: Context, tools: Sequence[ToolDescriptor]) -> LlmResponse:
        results = [m for m in context.messages if m.role == MessageRole.TOOL]
        if results:
            return LlmResponse(text=f"{self.expression} = {results[-1].content}")
        return LlmResponse(tool_calls=[ToolCallRequest(
            name="calculator",
            input=json.dumps({"expression": self.expression}),
        )])


async def main(expression: str) -> int:
    config = load_config()
    configure_logging(json_format=config.log_format == "json", log_level=config.log_level)

    event_bus = EventBus()
    event_bus.register_event_handler(lambda event: logger.info("Agent event", **event.to_dict()))

    orchestrator = Orchestrator(
        llm=OfflineCalculatorClient(expression),
        registry=ToolRegistry(get_math_tools()),
        config=config,
        event_bus=event_bus,
    )
    result = await orchestrator.run_turn([], f"What is {expression}?", conversation_id="demo")

    print(result.response or result.error.message)
    return 0 if result.succeeded else 1


if __name__ == "__main__":
    sys.exit(asyncio.run(main(" ".join(sys.argv[1:]) or "2+2")))
