"""Logging setup for executor runs."""

from __future__ import annotations

import logging
import os
from logging import Logger
from typing import Iterable, Optional, Union

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


def resolve_log_level(level: Union[int, str, None] = None) -> int:
    """Turn ``level`` (or ``SE_LOG_LEVEL`` when unset) into a numeric level."""

    if level is None:
        level = os.getenv("SE_LOG_LEVEL") or logging.INFO
    if isinstance(level, int):
        return level
    numeric = logging.getLevelName(level.strip().upper())
    if not isinstance(numeric, int):
        raise ValueError(f"Unknown log level: {level!r}")
    return numeric


def configure_logging(
    level: Union[int, str, None] = None,
    *,
    name: str = "stateful executor",
    propagate: bool = False,
    extra_loggers: Optional[Iterable[str]] = None,
) -> Logger:
    """Attach one stream handler to the executor logger and any ``extra_loggers``.

    Module loggers (``"stateful executor.session"`` and friends) inherit the
    handler through the logger hierarchy, so only the root name is touched.
    Calling this twice does not duplicate handlers.
    """

    numeric = resolve_log_level(level)
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(LOG_FORMAT))

    targets = [logging.getLogger(name)]
    targets.extend(logging.getLogger(extra) for extra in extra_loggers or ())
    for target in targets:
        if not any(isinstance(existing, logging.StreamHandler) for existing in target.handlers):
            target.addHandler(handler)
        target.setLevel(numeric)
        target.propagate = propagate
    return targets[0]
