"""
Logging infrastructure for the memory engines.

All modules log through structlog with event-style messages and
key/value context, e.g. ``logger.info("knowledge_stored", id=..., score=...)``.
"""

import logging
import sys
from typing import Any, Dict, Optional

import structlog

_configured = False


def configure_logging(level: str = "INFO", json: bool = True) -> None:
    """
    Install the structlog processor chain.

    Args:
        level: Minimum log level name
        json: Render JSON lines (True) or human-readable console output
    """
    global _configured

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(message)s",
        stream=sys.stderr,
    )

    renderer = (
        structlog.processors.JSONRenderer()
        if json
        else structlog.dev.ConsoleRenderer(colors=False)
    )
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
    _configured = True


def get_logger(name: str, **initial: Any) -> Any:
    """Return a structlog logger bound to ``name`` and optional context."""
    if not _configured:
        configure_logging()
    return structlog.get_logger(name).bind(**initial)


def log_step(
    logger: Any,
    step_name: str,
    ms: float,
    extra: Optional[Dict[str, Any]] = None,
) -> None:
    """
    Log a pipeline step execution with timing.

    Args:
        logger: Bound structlog logger
        step_name: Name of the step (e.g., "store", "retrieve")
        ms: Duration in milliseconds
        extra: Optional extra fields to log
    """
    logger.info("step_executed", step=step_name, duration_ms=round(ms, 3), **(extra or {}))
