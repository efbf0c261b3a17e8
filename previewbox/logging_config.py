"""
Structured logging for previewbox.

Usage:
    from previewbox.logging_config import get_logger
    logger = get_logger(__name__)
    logger.info("sandbox_created", user_id="u1", port=8123)
"""

import logging
import sys

import structlog

# Track whether setup has already run to avoid clobbering handlers
_setup_done = False


def setup_logging(level: str = "INFO", json_output: bool = False) -> None:
    """
    Configure structlog and the stdlib root handler it writes through.

    Safe to call multiple times. Later calls only update the log level.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR)
        json_output: Render JSON lines instead of the colored console format
    """
    global _setup_done

    log_level = getattr(logging, level.upper(), logging.INFO)
    logging.getLogger("previewbox").setLevel(log_level)

    if _setup_done:
        return

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(message)s"))
    root = logging.getLogger("previewbox")
    root.addHandler(handler)
    root.propagate = False

    renderer = (
        structlog.processors.JSONRenderer()
        if json_output
        else structlog.dev.ConsoleRenderer()
    )

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            renderer,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    _setup_done = True


def get_logger(name: str):
    """Get a structlog logger under the previewbox namespace."""
    if not name.startswith("previewbox"):
        name = f"previewbox.{name}"
    return structlog.get_logger(name)
