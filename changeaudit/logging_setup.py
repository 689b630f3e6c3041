from __future__ import annotations

import logging
from typing import Union

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def configure_logging(level: Union[int, str] = logging.INFO) -> logging.Logger:
    """
    Install a stream handler on the ``changeaudit`` logger.

    Calling this more than once only updates the level.

    Parameters
    ----------
    level
        Logging level name or number.

    Returns
    -------
    logging.Logger
        The package logger.
    """
    logger = logging.getLogger("changeaudit")
    if isinstance(level, str):
        level = level.upper()
    logger.setLevel(level)
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(handler)
    return logger
