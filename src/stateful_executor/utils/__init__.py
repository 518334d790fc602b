"""Utility helpers for logging, device selection, and seeding."""

from .logging import configure_logging, resolve_log_level
from .devices import resolve_device
from .random import seed_everything

__all__ = [
    "configure_logging",
    "resolve_device",
    "resolve_log_level",
    "seed_everything",
]
