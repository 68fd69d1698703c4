"""Simple logging utility.

Provides a lightweight wrapper around Python's standard logging
module so that every processing stage writes messages in the same
format.  Stages log what they did at INFO and every data-quality
finding at WARNING.
"""

import logging


def get_logger(name: str, level: int = logging.INFO) -> logging.Logger:
    """Return a configured logger with a preset format.

    The handler is attached only once per logger name, so repeated
    calls from different stages do not duplicate output.
    """
    logger = logging.getLogger(name)
    if not logger.handlers:
        handler = logging.StreamHandler()
        formatter = logging.Formatter(
            fmt='[%(asctime)s] [%(levelname)s] %(name)s: %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )
        handler.setFormatter(formatter)
        logger.addHandler(handler)
        logger.setLevel(level)
    return logger
