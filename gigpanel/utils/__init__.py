"""
Shared helpers.
"""
import logging
import sys

from gigpanel.core import config


_LOG_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"
_configured = False


def _configure_root() -> None:
    global _configured
    if _configured:
        return
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(_LOG_FORMAT))
    root = logging.getLogger("gigpanel")
    root.addHandler(handler)
    root.setLevel(config.LOG_LEVEL.upper())
    root.propagate = True
    _configured = True


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger under the ``gigpanel`` hierarchy.

    Usage:
        from gigpanel.utils import get_logger

        log = get_logger(__name__)
        log.info("Something happened")
    """
    _configure_root()
    if not name.startswith("gigpanel"):
        name = f"gigpanel.{name}"
    return logging.getLogger(name)
