import logging
from typing import Union

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logger(name: str, level: Union[int, str] = logging.INFO) -> logging.Logger:
    """Configure the named logger with one stream handler.

    Calling it again only adjusts the level, so repeated host construction
    never duplicates output.
    """
    logger = logging.getLogger(name)
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO
    logger.setLevel(level)

    if not any(getattr(h, "_pipekit_handler", False) for h in logger.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler._pipekit_handler = True
        logger.addHandler(handler)

    return logger
