# src/tabula/core/logging.py
"""Structured logging for Tabula.

structlog and stdlib records share one handler on stderr and one
ProcessorFormatter, so SQLAlchemy or httpx warnings render in the same
console or JSON format as Tabula's own key/value events.

Credentials never reach the output: any event key that names a secret
(access_token, authorization, ...) is masked before rendering.
"""

import logging
import sys
from collections.abc import MutableMapping
from typing import Any

import structlog
from structlog.stdlib import ProcessorFormatter

from tabula.core.config import LoggingSettings

# Chatty at DEBUG: one line per HTTP request, SQL statement or limiter bucket
_NOISY_LOGGERS: tuple[str, ...] = (
    "httpx",
    "httpcore",
    "sqlalchemy",
    "sqlalchemy.engine",
    "sqlalchemy.pool",
    "pyrate_limiter",
)

_SECRET_KEYS: frozenset[str] = frozenset({"access_token", "authorization", "token", "password", "api_key"})
_MASK = "***"


def _mask_secrets(
    logger: logging.Logger | None,
    method_name: str,
    event_dict: MutableMapping[str, Any],
) -> MutableMapping[str, Any]:
    for key in event_dict.keys() & _SECRET_KEYS:
        if event_dict[key]:
            event_dict[key] = _MASK
    return event_dict


def _drop_formatter_bookkeeping(
    logger: logging.Logger | None,
    method_name: str,
    event_dict: MutableMapping[str, Any],
) -> MutableMapping[str, Any]:
    # Always present: ProcessorFormatter adds both before running processors
    del event_dict["_record"]
    del event_dict["_from_structlog"]
    return event_dict


def _pre_chain() -> list[Any]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
        _mask_secrets,
    ]


def _render_chain(json_output: bool) -> list[Any]:
    if json_output:
        return [
            _drop_formatter_bookkeeping,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(sort_keys=True),
        ]
    return [
        _drop_formatter_bookkeeping,
        structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()),
    ]


def configure_logging(*, json_output: bool = False, level: str = "INFO") -> None:
    """Install the stderr handler and the structlog pipeline.

    Safe to call repeatedly; each call replaces the previous handler.

    Args:
        json_output: One JSON object per line instead of console rendering
        level: Root level name (DEBUG, INFO, WARNING, ERROR)
    """
    root_level = logging.getLevelName(level.upper())
    if not isinstance(root_level, int):
        raise ValueError(f"Unknown log level: {level!r}")

    pre_chain = _pre_chain()
    structlog.configure(
        processors=[*pre_chain, ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        # Reconfiguration must reach loggers created before this call
        cache_logger_on_first_use=False,
    )

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(ProcessorFormatter(processors=_render_chain(json_output), foreign_pre_chain=pre_chain))

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(root_level)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(root_level, logging.WARNING))


def configure_from_settings(
    settings: LoggingSettings,
    *,
    verbose: bool = False,
    json_output: bool | None = None,
) -> None:
    """Apply the ``logging`` settings section; command-line flags win."""
    configure_logging(
        json_output=settings.json_output if json_output is None else json_output,
        level="DEBUG" if verbose else settings.level,
    )
