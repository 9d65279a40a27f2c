"""
Structured logging for the delivery engine.

JSON lines on stdout, one event per line, with ISO timestamps, level, logger
name and whatever context is bound via structlog.contextvars (worker name,
delivery id). Call setup_logging() once at process start; modules just do
`logger = get_logger(__name__)`.
"""

import logging
import sys
from typing import Any

import structlog
from structlog.stdlib import LoggerFactory

# Third-party loggers that are chatty at INFO
QUIET_LOGGERS = ("httpx", "httpcore", "psycopg.pool", "redis")


def setup_logging(log_level: str = "INFO") -> None:
    """
    Configure structlog over stdlib logging with JSON output.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    level = getattr(logging, log_level.upper(), logging.INFO)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(default=str),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=LoggerFactory(),
        context_class=dict,
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str = None) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def log_job_run(job: str, metrics: dict[str, Any]) -> None:
    """Emit the summary line for one finished job run."""
    logger = get_logger("delivery_engine.jobs")
    if metrics.get("failed") or metrics.get("errors"):
        logger.warning("Job run completed with failures", job=job, **metrics)
    else:
        logger.info("Job run completed", job=job, **metrics)
