"""Skin-tone indicators from a single cheek patch."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

import numpy as np

from .features import ComplexionVector
from .roi import cheek_patch, mean_rgb

logger = logging.getLogger(__name__)


@dataclass
class ComplexionConfig:
    patch_size: int = 40
    offset_x: int = 50
    homogeneity_weight: float = 0.6
    smoothness_weight: float = 0.4
    # defaults used when the patch cannot be sampled
    default_homogeneity: float = 80.0
    default_redness: float = 25.0
    default_roughness: float = 35.0


def vitality(
    homogeneity: float,
    roughness: float,
    homogeneity_weight: float = 0.6,
    smoothness_weight: float = 0.4,
) -> float:
    """Weighted combination of homogeneity and smoothness (100 - roughness)."""
    v = homogeneity_weight * homogeneity + smoothness_weight * (100.0 - roughness)
    return float(min(100.0, max(0.0, v)))


class ComplexionEstimator:
    def __init__(self, cfg: Optional[ComplexionConfig] = None) -> None:
        self.cfg = cfg or ComplexionConfig()

    def _vector(self, homogeneity: float, redness: float, roughness: float) -> ComplexionVector:
        c = self.cfg
        return ComplexionVector(
            homogeneity=homogeneity,
            redness=redness,
            roughness=roughness,
            vitality=vitality(
                homogeneity, roughness, c.homogeneity_weight, c.smoothness_weight
            ),
        )

    def default(self) -> ComplexionVector:
        c = self.cfg
        return self._vector(c.default_homogeneity, c.default_redness, c.default_roughness)

    def estimate(self, frame: Optional[np.ndarray]) -> ComplexionVector:
        """Analyze the cheek patch of one BGR frame."""
        p = cheek_patch(frame, self.cfg.patch_size, self.cfg.offset_x) if frame is not None else None
        if p is None:
            logger.warning("Cheek patch out of bounds; using default complexion")
            return self.default()

        r_avg, g_avg, b_avg = mean_rgb(p)
        r_std = float(p[..., 2].std(dtype=np.float64))
        others = (g_avg + b_avg) / 2

        homogeneity = max(0.0, 100.0 - r_std * 2.0)
        if others > 0:
            redness = min(100.0, r_avg / others * 20.0)
        else:
            redness = 100.0 if r_avg > 0 else 0.0
        roughness = min(100.0, r_std * 5.0)
        return self._vector(float(homogeneity), float(redness), float(roughness))
