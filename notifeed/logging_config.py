# notifeed/logging_config.py
import logging
import os

import structlog

LOG_LEVEL = os.getenv("NOTIFEED_LOG_LEVEL", "INFO")
LOG_JSON = os.getenv("NOTIFEED_LOG_JSON", "false").lower() in ("1", "true", "yes")


def configure_logging(level: str = LOG_LEVEL, json_output: bool = LOG_JSON) -> None:
    renderer = (
        structlog.processors.JSONRenderer()
        if json_output
        else structlog.dev.ConsoleRenderer()
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(level.upper())
        ),
        cache_logger_on_first_use=True,
    )
