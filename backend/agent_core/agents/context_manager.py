"""
Context Manager - Token-budgeted context construction.

This module provides:
- Deterministic token estimation for different model families
- Greedy, recency-biased selection of history into a bounded Context
- Summarized forms for messages that carry tool calls or tool results
- Token statistics over a message history
"""

import math
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Optional, Sequence

import structlog

from agent_core.core.errors import ContextError
from agent_core.models.message import Context, Message, MessageRole

logger = structlog.get_logger(__name__)


class TokenModel(str, Enum):
    """Token estimation models."""
    GPT = "gpt"
    CLAUDE = "claude"
    GENERIC = "generic"


CHARS_PER_TOKEN = {
    TokenModel.GPT: 4.0,
    TokenModel.CLAUDE: 3.5,
    TokenModel.GENERIC: 4.0,
}

SUMMARY_MARKER = "[summarized]"


@dataclass
class TokenStats:
    """Token statistics for a set of messages."""
    total_tokens: int = 0
    message_count: int = 0
    tokens_by_role: dict[str, int] = field(default_factory=dict)

    @property
    def avg_tokens_per_message(self) -> int:
        if self.message_count == 0:
            return 0
        return self.total_tokens // self.message_count


class ContextManager:
    """
    Builds a Context whose total_tokens never exceeds its budget.

    Holds no per-turn state; a single instance can be shared by concurrent
    turns. Token counts are pure functions of message content, so identical
    history always yields an identical Context.
    """

    def __init__(
        self,
        max_context_tokens: int = 4096,
        token_model: TokenModel = TokenModel.GPT,
        summary_max_chars: int = 200,
        max_messages: int = 0,
    ):
        self.max_context_tokens = max_context_tokens
        self.token_model = TokenModel(token_model)
        self.summary_max_chars = summary_max_chars
        self.max_messages = max_messages  # 0 means no count limit

    def count_tokens(self, text: str) -> int:
        """Estimate the token count of a piece of text."""
        if not text:
            return 0
        return math.ceil(len(text) / CHARS_PER_TOKEN[self.token_model])

    def message_tokens(self, message: Message) -> int:
        """Token cost of a message, using the cached count when present."""
        if message.token_count is not None:
            return message.token_count
        return self._compute_message_tokens(message)

    def _compute_message_tokens(self, message: Message) -> int:
        tokens = self.count_tokens(message.content)
        # Requests carry their call payload; tool results already hold it as content
        if message.tool_call is not None and message.role == MessageRole.ASSISTANT:
            tokens += self.count_tokens(message.tool_call.tool_name + message.tool_call.input)
        return tokens

    def stamp(self, message: Message) -> Message:
        """Return the message with its token count cached."""
        if message.token_count is not None:
            return message
        return message.with_token_count(self._compute_message_tokens(message))

    def _truncate(self, text: str) -> str:
        if len(text) > self.summary_max_chars:
            return text[: self.summary_max_chars] + "..."
        return text

    def summarize(self, message: Message) -> Optional[Message]:
        """
        Deterministic summary form of an important message.

        Keeps the tool name and the head of the content; a tool request also
        keeps only the head of its input. The result is a new message sharing
        the original id.

        Returns:
            The summary, or None when it would not cost fewer tokens than the
            message itself
        """
        label = message.tool_call.tool_name if message.tool_call else message.role.value
        summary = message.with_content(f"{SUMMARY_MARKER} {label}: {self._truncate(message.content)}")
        if message.tool_call is not None and message.role == MessageRole.ASSISTANT:
            record = replace(message.tool_call, input=self._truncate(message.tool_call.input))
            summary = replace(summary, tool_call=record)
        summary = self.stamp(summary)

        if self.message_tokens(summary) >= self.message_tokens(message):
            return None
        return summary

    def compact(self, message: Message) -> Message:
        """Smallest form of a message: its summary when one is cheaper, else the message."""
        if message.is_important:
            summary = self.summarize(message)
            if summary is not None:
                return summary
        return message

    def build_context(
        self,
        history: Sequence[Message],
        system_prompt: str,
        budget: Optional[int] = None,
        max_messages: Optional[int] = None,
    ) -> Context:
        """
        Select history into a bounded context.

        The system prompt and the most recent message form a mandatory floor.
        Remaining messages are walked newest to oldest: kept verbatim if they
        fit, otherwise summarized if important and the summary fits, otherwise
        dropped. Once a message has been dropped, older messages only enter
        if important, in their smallest form. Walking stops once max_messages
        messages are selected.

        Args:
            history: Full message history, oldest first (never mutated)
            system_prompt: System prompt for this inference call
            budget: Token budget (defaults to max_context_tokens)
            max_messages: Message count limit (defaults to the instance's;
                0 means no limit)

        Returns:
            A new Context in chronological order

        Raises:
            ContextError: The floor alone exceeds the budget, or history is empty
        """
        budget = self.max_context_tokens if budget is None else budget
        max_messages = self.max_messages if max_messages is None else max_messages
        if not history:
            raise ContextError("Cannot build a context from an empty history", budget=budget)

        system_tokens = self.count_tokens(system_prompt)
        latest = history[-1]
        latest_tokens = self.message_tokens(latest)
        floor = system_tokens + latest_tokens

        if floor > budget:
            logger.error(
                "Context floor exceeds budget",
                system_tokens=system_tokens,
                latest_tokens=latest_tokens,
                budget=budget,
            )
            raise ContextError(
                f"System prompt ({system_tokens}) and latest message ({latest_tokens}) "
                f"exceed the context budget of {budget} tokens",
                required=floor,
                budget=budget,
            )

        selected: list[Message] = [latest]
        total = floor
        dropped = 0
        summarized = 0

        older = list(reversed(history[:-1]))
        for index, message in enumerate(older):
            if max_messages and len(selected) >= max_messages:
                dropped += len(older) - index
                break

            cost = self.message_tokens(message)

            if dropped == 0 and total + cost <= budget:
                selected.append(message)
                total += cost
                continue

            if message.is_important:
                candidate = self.summarize(message) if dropped == 0 else self.compact(message)
                if candidate is not None:
                    candidate_cost = self.message_tokens(candidate)
                    if total + candidate_cost <= budget:
                        selected.append(candidate)
                        total += candidate_cost
                        if candidate is not message:
                            summarized += 1
                        continue

            dropped += 1

        selected.reverse()

        if dropped or summarized:
            logger.debug(
                "Context trimmed",
                kept=len(selected),
                summarized=summarized,
                dropped=dropped,
                total_tokens=total,
                budget=budget,
            )

        return Context(
            system_prompt=system_prompt,
            messages=tuple(selected),
            total_tokens=total,
            budget=budget,
            system_tokens=system_tokens,
            dropped_count=dropped,
            summarized_count=summarized,
        )

    def token_stats(self, messages: Sequence[Message]) -> TokenStats:
        """Calculate token statistics for a set of messages."""
        stats = TokenStats(message_count=len(messages))
        for message in messages:
            tokens = self.message_tokens(message)
            stats.total_tokens += tokens
            role = message.role.value
            stats.tokens_by_role[role] = stats.tokens_by_role.get(role, 0) + tokens
        return stats

    def would_exceed(self, current_tokens: int, new_tokens: int) -> bool:
        """Check if adding tokens would exceed the configured limit."""
        return current_tokens + new_tokens > self.max_context_tokens

    def remaining_capacity(self, current_tokens: int) -> int:
        """Remaining token capacity under the configured limit."""
        return max(0, self.max_context_tokens - current_tokens)
