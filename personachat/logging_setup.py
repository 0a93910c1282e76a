"""Structured logging setup shared by the web app and the CLI scripts."""
import logging

import structlog

from personachat import config


def configure_logging(level: str = None) -> None:
    """Configure structlog to emit JSON lines through the stdlib logger.

    Args:
        level: Log level name (default from config)
    """
    level = (level or config.LOG_LEVEL).upper()
    logging.basicConfig(format="%(message)s", level=level)

    structlog.configure(
        processors=[
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
    )
