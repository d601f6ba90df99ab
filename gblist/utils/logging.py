# gblist/utils/logging.py

from __future__ import annotations

import logging
import os
import sys

ROOT_LOGGER = "gblist"
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

_configured = False


def _configure_root() -> logging.Logger:
    global _configured
    root = logging.getLogger(ROOT_LOGGER)
    if _configured:
        return root

    level_name = os.environ.get("GBLIST_LOG_LEVEL", "WARNING").upper()
    level = logging.getLevelName(level_name)
    if not isinstance(level, int):
        level = logging.WARNING

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(handler)
    root.setLevel(level)
    root.propagate = False
    _configured = True
    return root


def get_logger(name: str) -> logging.Logger:
    """
    Return a logger living under the package root logger.

    The root handler is installed on first use, so importing a module never
    prints anything by itself.
    """
    _configure_root()
    if name != ROOT_LOGGER and not name.startswith(ROOT_LOGGER + "."):
        name = f"{ROOT_LOGGER}.{name}"
    return logging.getLogger(name)


def set_verbosity(verbose: bool) -> None:
    """Switch the package root logger between DEBUG and its configured level."""
    root = _configure_root()
    if verbose:
        root.setLevel(logging.DEBUG)
