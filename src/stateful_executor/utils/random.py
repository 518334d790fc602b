"""Seeding helpers for reproducible generation runs."""

from __future__ import annotations

import os
import random
from typing import Optional

import numpy as np
import torch


def seed_everything(seed: Optional[int]) -> None:
    """Seed Python, NumPy, and PyTorch RNGs.

    ``None`` is a no-op so callers can pass configuration values directly.
    """

    if seed is None:
        return

    value = int(seed)
    random.seed(value)
    os.environ["PYTHONHASHSEED"] = str(value)
    np.random.seed(value)
    torch.manual_seed(value)

    if torch.cuda.is_available():  # pragma: no cover - exercised on CUDA hosts
        torch.cuda.manual_seed_all(value)
