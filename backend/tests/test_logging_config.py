"""
Tests for structured logging configuration.
"""

from agent_core.core.logging_config import (
    bind_turn_context,
    clear_log_buffer,
    configure_logging,
    get_buffered_logs,
    get_conversation_id,
    get_logger,
    get_turn_id,
)


class TestTurnContext:
    """Test turn context variables."""

    def test_bound_and_reset(self):
        assert get_turn_id() is None
        with bind_turn_context(conversation_id="conv-1") as turn_id:
            assert get_turn_id() == turn_id
            assert get_conversation_id() == "conv-1"
        assert get_turn_id() is None
        assert get_conversation_id() is None

    def test_explicit_turn_id(self):
        with bind_turn_context(turn_id="turn-42") as turn_id:
            assert turn_id == "turn-42"


class TestLogBuffer:
    """Test the in-memory log buffer."""

    def test_entries_carry_turn_context(self):
        configure_logging(json_format=True, log_level="DEBUG")
        clear_log_buffer()
        logger = get_logger("tests.logging")

        with bind_turn_context(conversation_id="conv-7") as turn_id:
            logger.info("Inside turn", step=1)
        logger.warning("Outside turn")

        inside = get_buffered_logs(turn_id=turn_id)
        assert len(inside) == 1
        assert inside[0]["event"] == "Inside turn"
        assert inside[0]["conversation_id"] == "conv-7"
        assert inside[0]["step"] == 1

        warnings = get_buffered_logs(level="warning")
        assert [entry["event"] for entry in warnings] == ["Outside turn"]
        assert clear_log_buffer() == 2
