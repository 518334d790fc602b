"""Device selection for the torch engine."""

from __future__ import annotations

import os
from typing import Literal

import torch


def resolve_device() -> Literal["cpu", "cuda", "mps"]:
    """Resolve the runtime device, honouring the ``SE_DEVICE`` environment variable.

    When ``SE_DEVICE`` is unset the first available accelerator is used, falling
    back to CPU. An explicit value that is unavailable raises ``ValueError``.
    """
    device = os.getenv("SE_DEVICE")

    if not device:
        if torch.cuda.is_available():
            return "cuda"
        if hasattr(torch.backends, "mps") and torch.backends.mps.is_available():
            return "mps"
        return "cpu"

    if device == "cuda":
        if not torch.cuda.is_available():
            raise ValueError("SE_DEVICE is set to 'cuda', but CUDA is not available.")
        return "cuda"
    elif device == "mps":
        if not (hasattr(torch.backends, "mps") and torch.backends.mps.is_available()):
            raise ValueError("SE_DEVICE is set to 'mps', but MPS is not available.")
        return "mps"
    elif device == "cpu":
        return "cpu"
    else:
        raise ValueError(f"Unsupported device specified in SE_DEVICE: {device}")
