"""Facial action intensities from FaceMesh geometry.

Each channel is a geometric proxy (3-D distance between named landmarks, or
a raw normalized height) scaled by a channel constant and clamped to [0, 5]
by `ExpressionVector`. No temporal state is kept between frames.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Callable, Iterable, Optional

import numpy as np

from . import landmarks as lmk
from .capture import FrameSource, next_frame
from .features import ExpressionVector
from .landmarks import LandmarkSource, as_landmarks

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int], None]

_MAX_INDEX = max(
    lmk.INNER_BROW_RIGHT,
    lmk.OUTER_BROW_RIGHT,
    lmk.EYE_TOP_RIGHT,
    lmk.EYE_BOTTOM_RIGHT,
    lmk.MOUTH_CORNER_RIGHT,
    lmk.CHIN,
)


@dataclass
class ExpressionConfig:
    frames: int = 15
    frame_interval: float = 0.1  # seconds between detector invocations
    frame_timeout: float = 1.0  # per-invocation budget
    # channel scale constants
    brow_raise_scale: float = 100.0
    brow_lower_scale: float = 10.0
    cheek_raise_scale: float = 10.0
    lip_pull_scale: float = 50.0
    lip_depress_scale: float = 10.0
    chin_raise_scale: float = 10.0
    lip_stretch_scale: float = 2.0
    lip_press_scale: float = 50.0
    lip_press_rest: float = 0.1  # lip gap at which pressing reads zero


@dataclass(frozen=True)
class ExpressionSample:
    """Result of a multi-frame run: the averaged vector and the detected sets."""

    vector: ExpressionVector
    landmarks: list[np.ndarray] = field(default_factory=list)
    attempted: int = 0
    succeeded: int = 0


class ExpressionEstimator:
    def __init__(self, cfg: Optional[ExpressionConfig] = None) -> None:
        self.cfg = cfg or ExpressionConfig()

    def estimate(self, landmarks: object) -> ExpressionVector:
        """Map one landmark set to an ExpressionVector.

        Missing, empty or truncated landmark sets give the zero vector.
        """
        try:
            lm = as_landmarks(landmarks)
        except ValueError:
            logger.warning("Malformed landmark set; using zero expression vector")
            return ExpressionVector.zero()
        if lm is None or lm.shape[0] <= _MAX_INDEX:
            return ExpressionVector.zero()

        c = self.cfg

        def dist(a: int, b: int) -> float:
            return float(np.linalg.norm(lm[a] - lm[b]))

        brow_eye = (
            dist(lmk.INNER_BROW_LEFT, lmk.EYE_TOP_LEFT)
            + dist(lmk.INNER_BROW_RIGHT, lmk.EYE_TOP_RIGHT)
        ) / 2
        brow_height = (lm[lmk.OUTER_BROW_LEFT, 1] + lm[lmk.OUTER_BROW_RIGHT, 1]) / 2
        eye_height = (
            dist(lmk.EYE_TOP_LEFT, lmk.EYE_BOTTOM_LEFT)
            + dist(lmk.EYE_TOP_RIGHT, lmk.EYE_BOTTOM_RIGHT)
        ) / 2
        mouth_width = dist(lmk.MOUTH_CORNER_LEFT, lmk.MOUTH_CORNER_RIGHT)
        corner_drop = (lm[lmk.MOUTH_CORNER_LEFT, 1] + lm[lmk.MOUTH_CORNER_RIGHT, 1]) / 2
        lip_gap = dist(lmk.UPPER_LIP, lmk.LOWER_LIP)
        # Closed lips stretch without bound; saturate
        lip_stretch = mouth_width / lip_gap * c.lip_stretch_scale if lip_gap > 0 else np.inf

        return ExpressionVector(
            inner_brow_raise=brow_eye * c.brow_raise_scale,
            brow_lower=(1 - brow_height) * c.brow_lower_scale,
            cheek_raise=(1 - eye_height) * c.cheek_raise_scale,
            lip_corner_pull=mouth_width * c.lip_pull_scale,
            lip_corner_depress=corner_drop * c.lip_depress_scale,
            chin_raise=(1 - lm[lmk.CHIN, 1]) * c.chin_raise_scale,
            lip_stretch=lip_stretch,
            lip_press=(c.lip_press_rest - lip_gap) * c.lip_press_scale,
        )

    def estimate_many(self, landmark_sets: Iterable[object]) -> ExpressionVector:
        """Per-channel mean over several landmark sets."""
        return ExpressionVector.mean(self.estimate(s) for s in landmark_sets)

    async def sample(
        self,
        source: LandmarkSource,
        frames: FrameSource,
        n_frames: Optional[int] = None,
        progress: Optional[ProgressCallback] = None,
    ) -> ExpressionSample:
        """Run the detector on N consecutive frames and average the results.

        A frame with no face counts as the zero vector. Timeouts and errors
        are logged and left out of the average; if nothing succeeds the zero
        vector is returned. `progress` receives 0-100 after every frame.
        """
        n = self.cfg.frames if n_frames is None else max(0, int(n_frames))
        vectors: list[ExpressionVector] = []
        detected: list[np.ndarray] = []
        for i in range(n):
            try:
                lm = await self._detect_once(source, frames)
            except asyncio.TimeoutError:
                logger.warning("Landmark detection timed out (frame %d/%d)", i + 1, n)
            except Exception as exc:
                logger.warning("Error analyzing frame %d/%d: %s", i + 1, n, exc)
            else:
                vectors.append(self.estimate(lm))
                if lm is not None:
                    detected.append(lm)
            if progress is not None:
                progress(round((i + 1) * 100 / n))
            if i < n - 1:
                await asyncio.sleep(self.cfg.frame_interval)
        if not vectors:
            logger.info("No expression frames succeeded; using zero vector")
        return ExpressionSample(
            vector=ExpressionVector.mean(vectors),
            landmarks=detected,
            attempted=n,
            succeeded=len(vectors),
        )

    async def _detect_once(
        self, source: LandmarkSource, frames: FrameSource
    ) -> Optional[np.ndarray]:
        frame = await next_frame(frames)
        if frame is None:
            raise RuntimeError("no frame available")
        raw = await asyncio.wait_for(source.request(frame), self.cfg.frame_timeout)
        return as_landmarks(raw)

