"""
Structured logging for zestswap.

Modules log through stdlib ``logging``; records are rendered by structlog so
the ``execution_id`` bound by ``execution_context`` lands on every line.
Output goes to stderr, leaving stdout to the CLI's JSON.
"""

import logging
import sys
from typing import Optional, TextIO

import structlog

from .config import settings

NOISY_LOGGERS = ("httpcore", "httpx")


def setup_logging(log_level: Optional[str] = None, stream: Optional[TextIO] = None) -> None:
    """Install a single root handler rendering JSON, or console output at DEBUG.

    Args:
        log_level: Override log level (default: from settings.log_level)
        stream: Destination (default: stderr)
    """
    level = getattr(logging, (log_level or settings.log_level).upper(), logging.INFO)

    pre_chain: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
    ]
    if level == logging.DEBUG:
        renderer: structlog.types.Processor = structlog.dev.ConsoleRenderer()
    else:
        pre_chain.append(structlog.processors.format_exc_info)
        renderer = structlog.processors.JSONRenderer()

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=pre_chain,
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        )
    )

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def execution_context(execution_id: str, **fields: object):
    """Tag every log line emitted inside the block with ``execution_id``.

    Previous bindings are restored on exit, so nested executions are safe.
    """
    return structlog.contextvars.bound_contextvars(execution_id=execution_id, **fields)
