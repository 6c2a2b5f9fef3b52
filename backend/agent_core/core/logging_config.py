"""
Structured Logging Configuration

This module provides:
- Centralized structlog configuration
- Turn and conversation tracking via context variables
- JSON and console output formatters
- An in-memory buffer of recent log entries
"""

import logging
import sys
import uuid
from collections import deque
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Iterator, Optional

import structlog
from structlog.types import Processor

# Context variables for turn tracking
turn_id_var: ContextVar[Optional[str]] = ContextVar("turn_id", default=None)
conversation_id_var: ContextVar[Optional[str]] = ContextVar("conversation_id", default=None)

LOG_BUFFER_SIZE = 1000
_log_buffer: deque = deque(maxlen=LOG_BUFFER_SIZE)
_log_buffer_lock = Lock()


def get_turn_id() -> Optional[str]:
    """Get the current turn ID from context."""
    return turn_id_var.get()


def get_conversation_id() -> Optional[str]:
    """Get the current conversation ID from context."""
    return conversation_id_var.get()


def generate_turn_id() -> str:
    """Generate a new short turn ID."""
    return str(uuid.uuid4())[:8]


@contextmanager
def bind_turn_context(
    turn_id: Optional[str] = None,
    conversation_id: Optional[str] = None,
) -> Iterator[str]:
    """
    Bind turn and conversation IDs to every log entry emitted inside the block.

    Usage:
        with bind_turn_context(conversation_id="conv-1") as turn_id:
            logger.info("Processing turn")
    """
    turn_id = turn_id or generate_turn_id()
    turn_token = turn_id_var.set(turn_id)
    conversation_token = conversation_id_var.set(conversation_id)
    try:
        yield turn_id
    finally:
        turn_id_var.reset(turn_token)
        conversation_id_var.reset(conversation_token)


def add_turn_context(
    logger: logging.Logger,
    method_name: str,
    event_dict: dict[str, Any]
) -> dict[str, Any]:
    """Add turn context to log entries."""
    turn_id = get_turn_id()
    conversation_id = get_conversation_id()

    if turn_id:
        event_dict["turn_id"] = turn_id
    if conversation_id:
        event_dict["conversation_id"] = conversation_id

    return event_dict


def add_timestamp(
    logger: logging.Logger,
    method_name: str,
    event_dict: dict[str, Any]
) -> dict[str, Any]:
    """Add ISO timestamp to log entries."""
    event_dict["timestamp"] = datetime.now(timezone.utc).isoformat()
    return event_dict


def buffer_log_entry(
    logger: logging.Logger,
    method_name: str,
    event_dict: dict[str, Any]
) -> dict[str, Any]:
    """Keep a copy of the entry in the in-memory buffer."""
    with _log_buffer_lock:
        _log_buffer.append({"level": method_name, **event_dict})
    return event_dict


def get_buffered_logs(
    limit: int = 100,
    level: Optional[str] = None,
    turn_id: Optional[str] = None,
) -> list[dict[str, Any]]:
    """
    Get buffered log entries with optional filtering.

    Args:
        limit: Maximum number of entries to return
        level: Filter by log level (debug, info, warning, error)
        turn_id: Filter by turn ID

    Returns:
        List of log entries, newest first
    """
    with _log_buffer_lock:
        logs = list(_log_buffer)

    if level:
        logs = [entry for entry in logs if entry.get("level") == level]
    if turn_id:
        logs = [entry for entry in logs if entry.get("turn_id") == turn_id]

    return list(reversed(logs))[:limit]


def clear_log_buffer() -> int:
    """Clear the log buffer. Returns count of cleared entries."""
    with _log_buffer_lock:
        count = len(_log_buffer)
        _log_buffer.clear()
        return count


def configure_logging(
    json_format: bool = False,
    log_level: str = "INFO",
    enable_buffer: bool = True
) -> None:
    """
    Configure structlog for the orchestration core.

    Args:
        json_format: If True, output JSON logs (for production)
        log_level: Minimum log level (DEBUG, INFO, WARNING, ERROR)
        enable_buffer: If True, keep recent entries in memory
    """
    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        add_timestamp,
        add_turn_context,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if enable_buffer:
        shared_processors.append(buffer_log_entry)

    if json_format:
        shared_processors.append(structlog.processors.format_exc_info)
        renderer = structlog.processors.JSONRenderer()
    else:
        shared_processors.append(structlog.dev.set_exc_info)
        renderer = structlog.dev.ConsoleRenderer(colors=True)

    shared_processors.append(renderer)

    structlog.configure(
        processors=shared_processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
    )

    for logger_name in ["httpx", "httpcore", "asyncio"]:
        logging.getLogger(logger_name).setLevel(logging.WARNING)


def get_logger(name: str = __name__) -> structlog.stdlib.BoundLogger:
    """
    Get a structlog logger instance.

    Args:
        name: Logger name (typically __name__)

    Returns:
        Configured structlog logger
    """
    return structlog.get_logger(name)
