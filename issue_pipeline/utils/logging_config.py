"""
Logging configuration using structlog for structured, JSON-based logging.

Every module logs through ``structlog.get_logger(__name__)`` with snake_case
event names. Per-task context (task id, issue number) is bound through
contextvars so that nested engine and sandbox events carry it automatically.
"""

from typing import Any

import structlog


def configure_logging(log_level: str = "INFO", json_output: bool = True) -> None:
    """Configure structured logging.

    Args:
        log_level: Minimum log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_output: Render JSON lines when True, a human-readable console
            format otherwise
    """
    renderer: Any = structlog.processors.JSONRenderer() if json_output else structlog.dev.ConsoleRenderer()
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(log_level.upper()),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def bind_task_context(task_id: str, issue_number: int | None = None) -> None:
    """Bind task identifiers to every log event emitted in this context."""
    structlog.contextvars.bind_contextvars(task_id=task_id, issue_number=issue_number)


def clear_task_context() -> None:
    """Remove the identifiers bound by :func:`bind_task_context`."""
    structlog.contextvars.unbind_contextvars("task_id", "issue_number")


def get_logger(name: str | None = None) -> Any:
    """Get a logger instance.

    Example:
        >>> log = get_logger(__name__)
        >>> log.info("stage_started", task_id="ISSUE-42", stage="intake")
    """
    return structlog.get_logger(name)
