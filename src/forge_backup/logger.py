from __future__ import annotations

import logging
import sys

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARN": logging.WARNING,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}


def configure_logging(level: str = "INFO") -> None:
    """Install a single stderr handler on the root logger."""
    resolved = _LEVELS.get((level or "").upper())
    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(handler)
    root.setLevel(resolved if resolved is not None else logging.INFO)

    if resolved is None:
        logging.getLogger(__name__).info("Invalid log level %r passed, using INFO", level)

    # urllib3 logs every connection at DEBUG
    logging.getLogger("urllib3").setLevel(max(root.level, logging.INFO))
