"""Eye-aperture based gaze and fatigue indicators.

Only the aperture ratio is measured. Blink rate, pupil unrest and stability
are drawn from bands conditioned on it, and the fatigue index is a banded
step function with jitter. Without landmarks the neutral "average alert"
vector is returned, not zeros.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

import numpy as np

from . import landmarks as lmk
from .features import GazeVector
from .jitter import Jitter
from .landmarks import as_landmarks

logger = logging.getLogger(__name__)

NEUTRAL_GAZE = GazeVector(blink_rate=15.0, pupil_unrest=2.5, stability=80.0, fatigue_index=30.0)


@dataclass
class GazeConfig:
    closed_ratio: float = 0.20  # below: eyes nearly closed
    drowsy_ratio: float = 0.26  # below: drooping lids


# (base, span) per band: closed, drowsy, alert
FATIGUE_BANDS = ((85.0, 10.0), (60.0, 15.0), (10.0, 20.0))
STABILITY_BANDS = ((70.0, 10.0), (78.0, 10.0), (85.0, 10.0))


def eye_aperture(top: np.ndarray, bottom: np.ndarray, inner: np.ndarray, outer: np.ndarray) -> float:
    """Vertical lid gap over horizontal corner distance, in the image plane."""
    horizontal = float(np.linalg.norm(inner[:2] - outer[:2]))
    if horizontal == 0.0:
        return 0.0
    return float(np.linalg.norm(top[:2] - bottom[:2])) / horizontal


class GazeEstimator:
    def __init__(self, cfg: Optional[GazeConfig] = None, jitter: Optional[Jitter] = None) -> None:
        self.cfg = cfg or GazeConfig()
        self.jitter = jitter or Jitter()

    def aperture_ratio(self, landmarks: np.ndarray) -> float:
        left = eye_aperture(
            landmarks[lmk.EYE_TOP_LEFT],
            landmarks[lmk.EYE_BOTTOM_LEFT],
            landmarks[lmk.EYE_INNER_LEFT],
            landmarks[lmk.EYE_OUTER_LEFT],
        )
        right = eye_aperture(
            landmarks[lmk.EYE_TOP_RIGHT],
            landmarks[lmk.EYE_BOTTOM_RIGHT],
            landmarks[lmk.EYE_INNER_RIGHT],
            landmarks[lmk.EYE_OUTER_RIGHT],
        )
        return (left + right) / 2.0

    def band(self, ratio: float) -> int:
        """0 = closed, 1 = drowsy, 2 = alert."""
        if ratio < self.cfg.closed_ratio:
            return 0
        if ratio < self.cfg.drowsy_ratio:
            return 1
        return 2

    def from_ratio(self, ratio: float) -> GazeVector:
        j = self.jitter
        b = self.band(ratio)
        fatigue = round(j.offset(*FATIGUE_BANDS[b]))
        blink = 22.0 if b == 0 else j.offset(12.0, 5.0)
        return GazeVector(
            blink_rate=blink,
            pupil_unrest=j.offset(1.5, 3.0),
            stability=j.offset(*STABILITY_BANDS[b]),
            fatigue_index=float(fatigue),
        )

    def estimate(self, landmarks: object) -> GazeVector:
        try:
            lm = as_landmarks(landmarks)
        except ValueError:
            logger.warning("Malformed landmark set; using neutral gaze")
            return NEUTRAL_GAZE
        if lm is None or lm.shape[0] <= lmk.EYE_TOP_RIGHT:
            return NEUTRAL_GAZE
        ratio = self.aperture_ratio(lm)
        logger.debug("Eye aperture ratio %.3f", ratio)
        return self.from_ratio(ratio)
