"""
Logging setup.

Every module logs through a namespaced logger (logging.getLogger(__name__)),
so the whole package can be tuned at once:

    logging.getLogger("gracefulhttp").setLevel(logging.DEBUG)
    logging.getLogger("gracefulhttp.sse").setLevel(logging.WARNING)
"""

import logging

PACKAGE_LOGGER = "gracefulhttp"

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "off": logging.CRITICAL + 1,
}


def level_from_name(name: str) -> int:
    return _LEVELS.get(name.lower(), logging.INFO)


def setup_logging(log_level: str = "info") -> logging.Logger:
    """Configure the gracefulhttp logger; "off" silences it."""
    level = level_from_name(log_level)

    # no-op when the application already configured the root logger
    logging.basicConfig(format=LOG_FORMAT, datefmt=DATE_FORMAT)

    logger = logging.getLogger(PACKAGE_LOGGER)
    logger.setLevel(level)
    return logger
