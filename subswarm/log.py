"""Logging setup: structlog on top of standard-library logging."""

from __future__ import annotations

import logging

import structlog

# Free-text fields that can carry a whole prompt or generated answer.
_LONG_FIELDS = {"prompt", "text", "summary", "message", "content"}
_MAX_DISPLAY_LEN = 80


def _truncate_long_fields(logger, method_name, event_dict):
    """Structlog processor that shortens prompt and output text in log lines."""
    for key in _LONG_FIELDS:
        val = event_dict.get(key)
        if isinstance(val, str) and len(val) > _MAX_DISPLAY_LEN:
            event_dict[key] = val[:_MAX_DISPLAY_LEN] + "... [truncated]"
    return event_dict


_logging_configured = False


def configure_logging(level: int | str = logging.WARNING, renderer: str = "console") -> None:
    """Configure structlog and standard-library logging.

    Safe to call more than once; subsequent calls are no-ops. *renderer* is
    ``"console"`` for human-readable output or ``"json"`` for one JSON object
    per line.
    """
    global _logging_configured  # noqa: PLW0603
    if _logging_configured:
        return
    _logging_configured = True

    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.WARNING

    logging.basicConfig(format="%(message)s", level=level)

    final = (
        structlog.processors.JSONRenderer()
        if renderer == "json"
        else structlog.dev.ConsoleRenderer(colors=False)
    )
    processors = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_log_level,
        _truncate_long_fields,
    ]
    if renderer == "json":
        processors += [
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
        ]
    processors.append(final)

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
    )


def reset_logging() -> None:
    """Forget a previous ``configure_logging()`` call. Intended for tests."""
    global _logging_configured  # noqa: PLW0603
    _logging_configured = False
    structlog.reset_defaults()
