"""Seedable randomness for simulated sensing noise.

Some indicators (respiration rate, gaze blink/stability/unrest, the fatigue
bands) are not measured directly; they are sampled within bounded ranges.
All such draws go through a `Jitter` instance so that a seed makes them
reproducible.
"""

from __future__ import annotations

from typing import Optional

import numpy as np


class Jitter:
    """Named random source wrapping a numpy Generator."""

    def __init__(self, seed: Optional[int] = None) -> None:
        self.seed = seed
        self._rng = np.random.default_rng(seed)

    def uniform(self, low: float, high: float) -> float:
        """Draw from [low, high)."""
        return float(self._rng.uniform(low, high))

    def offset(self, base: float, span: float) -> float:
        """Return base + a draw from [0, span)."""
        return base + self.uniform(0.0, span)
