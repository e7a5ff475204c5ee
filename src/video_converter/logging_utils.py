"""
Logging utilities for the worker.
"""
import logging

from .models import LoggingConfig


def setup_logging(config: LoggingConfig = None) -> logging.Logger:
    """
    Configure the package logger from the logging config section.

    Adds a single stream handler the first time it is called; later calls
    only adjust the level.

    Returns:
        The ``video_converter`` logger
    """
    config = config or LoggingConfig()
    logger = logging.getLogger("video_converter")
    logger.setLevel(getattr(logging, config.level.upper()))

    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(config.format))
        logger.addHandler(handler)

    return logger
