"""
Tests for the LLM boundary and the LangChain chat-model adapter.
"""

import pytest
from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.language_models.fake_chat_models import GenericFakeChatModel
from langchain_core.messages import AIMessage, HumanMessage, SystemMessage, ToolMessage

from agent_core.core.errors import LlmError, LlmErrorKind, categorize_llm_exception
from agent_core.core.llm import ChatModelClient, LlmClient, LlmResponse, context_to_messages
from agent_core.models.message import Context, Message, ToolCallRecord
from agent_core.models.tool import ToolDescriptor

CALCULATOR = ToolDescriptor(
    name="calculator",
    description="Evaluate arithmetic",
    parameter_schema={
        "type": "object",
        "properties": {"expression": {"type": "string"}},
        "required": ["expression"],
    },
)


def make_context(*messages: Message, system_prompt: str = "sys") -> Context:
    return Context(system_prompt=system_prompt, messages=tuple(messages), total_tokens=0, budget=1000)


class FailingChatModel(BaseChatModel):
    """Chat model that always raises the configured error."""

    error_message: str = "rate limit exceeded (429)"
    calls: int = 0

    @property
    def _llm_type(self) -> str:
        return "failing"

    def _generate(self, messages, stop=None, run_manager=None, **kwargs):
        self.calls += 1
        raise RuntimeError(self.error_message)


class TestContextConversion:
    """Test Context to LangChain message conversion."""

    def test_basic_roles(self):
        context = make_context(Message.user("hi"), Message.assistant("hello"))
        messages = context_to_messages(context)

        assert [type(m) for m in messages] == [SystemMessage, HumanMessage, AIMessage]
        assert messages[0].content == "sys"

    def test_tool_call_pairs(self):
        request = Message.assistant("", ToolCallRecord(call_id="c1", tool_name="calculator", input='{"expression": "2+2"}'))
        result = Message.tool("4", ToolCallRecord(call_id="c1", tool_name="calculator", input='{"expression": "2+2"}'))

        messages = context_to_messages(make_context(Message.user("2+2?"), request, result))

        ai, tool = messages[2], messages[3]
        assert isinstance(ai, AIMessage)
        assert ai.tool_calls[0]["name"] == "calculator"
        assert ai.tool_calls[0]["args"] == {"expression": "2+2"}
        assert ai.tool_calls[0]["id"] == "c1"
        assert isinstance(tool, ToolMessage)
        assert tool.tool_call_id == "c1"

    def test_consecutive_requests_merge(self):
        first = Message.assistant("", ToolCallRecord(call_id="a", tool_name="t", input="x"))
        second = Message.assistant("", ToolCallRecord(call_id="b", tool_name="t", input="y"))
        results = [
            Message.tool("1", ToolCallRecord(call_id="a", tool_name="t", input="x")),
            Message.tool("2", ToolCallRecord(call_id="b", tool_name="t", input="y")),
        ]

        messages = context_to_messages(make_context(Message.user("go"), first, second, *results))

        assert len(messages) == 5
        assert [c["id"] for c in messages[2].tool_calls] == ["a", "b"]
        assert messages[2].tool_calls[0]["args"] == {"input": "x"}

    def test_orphan_result_becomes_text(self):
        """Test a tool result whose request was dropped is passed as plain text."""
        result = Message.tool("4", ToolCallRecord(call_id="gone", tool_name="calculator", input=""))

        messages = context_to_messages(make_context(result, Message.user("and?")))

        assert isinstance(messages[1], HumanMessage)
        assert messages[1].content == "Tool result (calculator): 4"


@pytest.mark.asyncio
class TestChatModelClient:
    """Test the chat model adapter against LangChain's fake chat model."""

    async def test_text_response(self):
        model = GenericFakeChatModel(messages=iter([AIMessage(content="hello there")]))
        client = ChatModelClient(model)

        response = await client.generate(make_context(Message.user("hi")), [])

        assert response.text == "hello there"
        assert response.tool_calls == []

    async def test_tool_call_response(self):
        reply = AIMessage(
            content="",
            tool_calls=[{"name": "calculator", "args": {"expression": "2+2"}, "id": "call_abc"}],
        )
        client = ChatModelClient(GenericFakeChatModel(messages=iter([reply])))

        response = await client.generate(make_context(Message.user("2+2?")), [CALCULATOR])

        assert response.wants_tools
        call = response.tool_calls[0]
        assert call.name == "calculator"
        assert call.input == '{"expression": "2+2"}'
        assert call.call_id == "call_abc"

    async def test_free_form_tool_input_unwrapped(self):
        reply = AIMessage(content="", tool_calls=[{"name": "echo", "args": {"input": "raw text"}, "id": "c"}])
        client = ChatModelClient(GenericFakeChatModel(messages=iter([reply])))
        echo = ToolDescriptor(name="echo", description="Echo")

        response = await client.generate(make_context(Message.user("x")), [echo])

        assert response.tool_calls[0].input == "raw text"

    async def test_stream_yields_text_pieces(self):
        model = GenericFakeChatModel(messages=iter([AIMessage(content="hello streaming world")]))
        client = ChatModelClient(model)

        pieces = [chunk.text async for chunk in client.stream(make_context(Message.user("hi")), [])]

        assert len(pieces) > 1
        assert "".join(pieces) == "hello streaming world"

    async def test_rate_limit_retried_then_raised(self):
        model = FailingChatModel()
        client = ChatModelClient(model, max_retries=2, retry_base_delay=0)

        with pytest.raises(LlmError) as exc_info:
            await client.generate(make_context(Message.user("hi")), [])

        assert exc_info.value.kind == LlmErrorKind.RATE_LIMITED
        assert model.calls == 3

    async def test_malformed_not_retried(self):
        model = FailingChatModel(error_message="could not parse malformed JSON output")
        client = ChatModelClient(model, max_retries=2, retry_base_delay=0)

        with pytest.raises(LlmError) as exc_info:
            await client.generate(make_context(Message.user("hi")), [])

        assert exc_info.value.kind == LlmErrorKind.MALFORMED_RESPONSE
        assert model.calls == 1


@pytest.mark.asyncio
class TestDefaultStream:
    """Test the default stream implementation of LlmClient."""

    async def test_wraps_generate(self):
        class Fixed(LlmClient):
            async def generate(self, context, tools):
                return LlmResponse(text="whole answer")

        chunks = [c async for c in Fixed().stream(make_context(Message.user("x")), [])]

        assert [c.text for c in chunks] == ["whole answer"]


class TestCategorizeLlmException:
    """Test provider exception categorization."""

    def test_patterns(self):
        assert categorize_llm_exception(Exception("HTTP 429 Too Many Requests")) == LlmErrorKind.RATE_LIMITED
        assert categorize_llm_exception(Exception("request timed out")) == LlmErrorKind.TIMEOUT
        assert categorize_llm_exception(TimeoutError()) == LlmErrorKind.TIMEOUT
        assert categorize_llm_exception(ValueError("bad json")) == LlmErrorKind.MALFORMED_RESPONSE
        assert categorize_llm_exception(Exception("server exploded")) == LlmErrorKind.PROVIDER_ERROR

    def test_llm_error_keeps_kind(self):
        error = LlmError(LlmErrorKind.TIMEOUT, "slow")
        assert categorize_llm_exception(error) == LlmErrorKind.TIMEOUT
        assert error.to_dict() == {"code": "llm_error", "component": "llm", "message": "slow", "kind": "timeout"}
