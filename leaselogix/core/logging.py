"""
Application-wide logging configuration.

Every module logs through ``logging.getLogger(__name__)``; this module only sets
the root format once, from the application lifespan.
"""

import logging

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"

# Libraries that are chatty at INFO
_QUIET_LOGGERS = ("sqlalchemy.engine", "httpx", "passlib")


def configure_logging(level: str = "INFO") -> None:
    """Configure root logging. Safe to call more than once."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
    )
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logging.getLogger(__name__).info("Logging initialized with level %s", level)
