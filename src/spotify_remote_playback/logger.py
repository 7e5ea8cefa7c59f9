"""Logger factory shared by all components."""

import logging
import os
import sys

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
ROOT_LOGGER_NAME = "spotify_remote_playback"


def get_logger(name: str = ROOT_LOGGER_NAME) -> logging.Logger:
    """Return a named logger, configuring the package root logger on first use.

    The level is read from the ``LOG_LEVEL`` environment variable (default ``INFO``).
    """
    root = logging.getLogger(ROOT_LOGGER_NAME)
    if not root.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(handler)
        root.setLevel(os.getenv("LOG_LEVEL", "INFO").upper())
    if name == ROOT_LOGGER_NAME or name.startswith(f"{ROOT_LOGGER_NAME}."):
        return logging.getLogger(name)
    return root.getChild(name)
