"""Logging setup shared by the web app and the local runner."""

from __future__ import annotations

import logging
from typing import Union

DEFAULT_LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

_HANDLER_NAME = "mp3convert-console"


def configure_logging(level: Union[int, str] = logging.INFO) -> logging.Logger:
    """Attach a single console handler to the root logger.

    Calling this more than once only updates the level; the handler is not
    duplicated.
    """

    root = logging.getLogger()
    root.setLevel(level)
    if not any(getattr(h, "name", None) == _HANDLER_NAME for h in root.handlers):
        handler = logging.StreamHandler()
        handler.set_name(_HANDLER_NAME)
        handler.setFormatter(logging.Formatter(DEFAULT_LOG_FORMAT))
        root.addHandler(handler)
    return root


__all__ = ["configure_logging", "DEFAULT_LOG_FORMAT"]
