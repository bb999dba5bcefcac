import logging

from .config import LOGGER_NAME, apply_log_level, get_settings


def get_logger(name: str = LOGGER_NAME) -> logging.Logger:
    root = logging.getLogger(LOGGER_NAME)
    if not root.hasHandlers():
        handler = logging.StreamHandler()
        formatter = logging.Formatter('[%(asctime)s][%(levelname)s][%(name)s] %(message)s')
        handler.setFormatter(formatter)
        root.addHandler(handler)
    apply_log_level(get_settings())
    return logging.getLogger(name)
