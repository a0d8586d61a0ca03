"""Logging configuration for Signal360."""

import logging
import sys


def setup_logger(name: str = "signal360", level: str = "INFO") -> logging.Logger:
    """Create and configure a logger under the ``signal360`` namespace."""
    if not name.startswith("signal360"):
        name = f"signal360.{name}"
    logger = logging.getLogger(name)
    if not logger.handlers:
        handler = logging.StreamHandler(sys.stderr)
        fmt = logging.Formatter(
            "%(asctime)s | %(name)-28s | %(levelname)-7s | %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
        handler.setFormatter(fmt)
        logger.addHandler(handler)
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    return logger
