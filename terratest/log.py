"""Named, line-oriented loggers for test scenarios."""
from __future__ import annotations

import logging
import sys

LOG_FORMAT = "[%(name)s] %(asctime)s %(message)s"
DATE_FORMAT = "%Y/%m/%d %H:%M:%S"
ROOT_LOGGER = "terratest"


class _StdoutHandler(logging.StreamHandler):
    """Stream handler that always writes to the current sys.stdout."""

    @property
    def stream(self):
        return sys.stdout

    @stream.setter
    def stream(self, _value) -> None:
        pass


def _configure_root() -> logging.Logger:
    root = logging.getLogger(ROOT_LOGGER)
    if not any(isinstance(handler, _StdoutHandler) for handler in root.handlers):
        handler = _StdoutHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT, DATE_FORMAT))
        root.addHandler(handler)
    return root


def get_logger(name: str, level: str | int = logging.INFO) -> logging.Logger:
    """Return a logger that prefixes every line with its name."""
    _configure_root()
    logger = logging.getLogger(f"{ROOT_LOGGER}.{name}")
    logger.setLevel(level)
    return logger
