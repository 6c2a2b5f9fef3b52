"""
Agent Orchestration Core

Drives a tool-using conversational agent with:
- A bounded state machine per agent
- Token-budgeted context construction
- Permission-checked, time-bounded tool execution
- Optional planning and reflection
"""

from agent_core.agents.context_manager import ContextManager, TokenModel
from agent_core.agents.orchestrator import Orchestrator, TurnResult, TurnStatus
from agent_core.agents.planner import Planner
from agent_core.agents.state import StateKind, Trigger
from agent_core.agents.tools.base import FunctionTool, LangChainTool, Tool
from agent_core.agents.tools.executor import ToolExecutor, ToolPolicy
from agent_core.agents.tools.registry import ToolRegistry
from agent_core.config import OrchestratorConfig, load_config
from agent_core.core.errors import AgentError, LlmError, ToolError
from agent_core.core.events import EventBus
from agent_core.core.llm import ChatModelClient, LlmClient, LlmResponse
from agent_core.models.message import Message, MessageRole

__all__ = [
    'ContextManager',
    'TokenModel',
    'Orchestrator',
    'TurnResult',
    'TurnStatus',
    'Planner',
    'StateKind',
    'Trigger',
    'Tool',
    'FunctionTool',
    'LangChainTool',
    'ToolExecutor',
    'ToolPolicy',
    'ToolRegistry',
    'OrchestratorConfig',
    'load_config',
    'AgentError',
    'LlmError',
    'ToolError',
    'EventBus',
    'LlmClient',
    'ChatModelClient',
    'LlmResponse',
    'Message',
    'MessageRole',
]
