"""
RAGChat - Logging
==================
Logger factory shared by every RAGChat module.

One stdout handler is attached to the ``ragchat`` package logger the first
time ``get_logger`` runs; module loggers (``ragchat.src.core.rag_engine``
and friends) propagate to it, so each record is printed exactly once no
matter how many modules ask for a logger.  Loggers outside the package
(scripts run as ``__main__``) get their own handler.

Level resolution:
  • ``settings.LOG_LEVEL`` when set (``"INFO"``, ``"ERROR"``, ...)
  • otherwise ``settings.ENV``: ``"dev"`` → DEBUG, ``"prod"`` → WARNING

Usage:
    from ragchat.src.utils.logger import get_logger
    logger = get_logger(__name__)
    logger.info("[CHAT] Pipeline total: %.1fms", total_ms)
"""

import logging
import sys

from ragchat.config.settings import settings

_PACKAGE = "ragchat"
_ENV_LEVEL_MAP = {
    "dev": logging.DEBUG,
    "prod": logging.WARNING,
}
_LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def _default_level() -> int:
    if settings.LOG_LEVEL:
        return logging.getLevelName(settings.LOG_LEVEL)
    return _ENV_LEVEL_MAP.get(settings.ENV, logging.INFO)


def _attach_handler(logger: logging.Logger, level: int) -> None:
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(fmt=_LOG_FORMAT, datefmt=_DATE_FORMAT))
    logger.addHandler(handler)
    logger.setLevel(level)
    logger.propagate = False


def get_logger(name: str, level: int | None = None) -> logging.Logger:
    """
    Return the named logger, configuring the package handler on first use.

    Args:
        name:  Typically ``__name__`` of the calling module.
        level: Explicit level for this logger only.  The package-wide
               level comes from settings.
    """
    package_logger = logging.getLogger(_PACKAGE)
    if not package_logger.handlers:
        _attach_handler(package_logger, _default_level())

    logger = logging.getLogger(name)
    if name != _PACKAGE and not name.startswith(_PACKAGE + ".") and not logger.handlers:
        _attach_handler(logger, _default_level())

    if level is not None:
        logger.setLevel(level)
    return logger
