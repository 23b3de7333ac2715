"""Structured logging singleton.

Reads LOG_LEVEL from os.environ directly so logging works before Settings
is loaded; ``configure_level`` re-applies the level once settings are known.

Executor and container tokens travel as URL user-info (``ws://token@host``,
``--control=http://token@host``). Every event passes through
``redact_credentials`` so those tokens never reach the log stream.
"""

from __future__ import annotations

import logging
import os
import re
import sys
from typing import Any

import structlog

# scheme://user[:password]@  ->  scheme://
_URL_CREDENTIALS = re.compile(r"(?P<scheme>\b[a-zA-Z][a-zA-Z0-9+.-]*://)[^/@\s]+@")


def _scrub(value: Any) -> Any:
    if isinstance(value, str):
        return _URL_CREDENTIALS.sub(r"\g<scheme>", value)
    if type(value) in (list, tuple):
        return type(value)(_scrub(v) for v in value)
    return value


def redact_credentials(
    logger: Any, method_name: str, event_dict: structlog.typing.EventDict
) -> structlog.typing.EventDict:
    """structlog processor: strip user-info from every URL in the event."""
    return {key: _scrub(value) for key, value in event_dict.items()}


def _setup_logging() -> structlog.stdlib.BoundLogger:
    level_name = os.environ.get("LOG_LEVEL", "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)

    # Configure stdlib root logger first so structlog's filter_by_level works
    logging.basicConfig(level=level, format="%(message)s", stream=sys.stderr)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            redact_credentials,
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    return structlog.get_logger("meshexec")


logger = _setup_logging()


def configure_level(level_name: str) -> None:
    """Apply the level from settings; unknown names fall back to INFO."""
    level = getattr(logging, level_name.upper(), logging.INFO)
    logging.getLogger().setLevel(level)
    logger.debug("Log level configured", level=logging.getLevelName(level))


def _uncaught_exception_handler(
    exc_type: type[BaseException],
    exc_value: BaseException,
    exc_tb: object,
) -> None:
    if issubclass(exc_type, KeyboardInterrupt):
        sys.__excepthook__(exc_type, exc_value, exc_tb)  # type: ignore[arg-type]
        return
    # Supervised runners are separate processes and outlive this one.
    logger.critical(
        "Executor crashed, containers left unsupervised",
        exc_info=(exc_type, exc_value, exc_tb),
    )
    sys.exit(1)


sys.excepthook = _uncaught_exception_handler
