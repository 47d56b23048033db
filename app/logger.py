# app/logger.py
# stdlib logging, one stream handler per named logger

import logging

_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


def get_logger(name: str) -> logging.Logger:
    logger = logging.getLogger(name)
    if logger.handlers:
        return logger

    logger.setLevel(logging.INFO)
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(fmt=_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
    logger.addHandler(handler)
    return logger


def set_level(level: str) -> None:
    """Applies LOG_LEVEL to every logger created through get_logger."""
    value = logging.getLevelName(level.upper())
    if not isinstance(value, int):
        value = logging.INFO
    for name in list(logging.root.manager.loggerDict):
        if name == "app" or name.startswith("app."):
            logging.getLogger(name).setLevel(value)
