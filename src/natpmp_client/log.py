"""
Logging setup.

Modules log through structlog.get_logger(); this only decides how the
events are rendered and which levels get through.
"""
import logging
import sys

import structlog


def configure_logging(level: str = "INFO", fmt: str = "console"):
    """
    Configure structlog for the process.

    Args:
        level: Minimum level name ("DEBUG", "INFO", ...)
        fmt: "console" for human-readable output, "json" for one JSON
            object per line
    """
    numeric_level = logging.getLevelName(level.upper())
    if not isinstance(numeric_level, int):
        raise ValueError(f"Unknown log level: {level}")

    renderer = (
        structlog.processors.JSONRenderer()
        if fmt == "json"
        else structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())
    )

    structlog.configure(
        processors=[
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=False,
    )
