"""Full extraction pipeline: four estimators in sequence.

Every stage is guarded: an estimator that raises is replaced by its own
fallback vector, so the only error that escapes `run` is a frame source that
is already gone when analysis starts.
"""

from __future__ import annotations

import logging
from time import perf_counter
from typing import Callable, Optional

from .capture import FrameSource, next_frame
from .complexion import ComplexionEstimator
from .errors import StreamLostError
from .expression import ExpressionEstimator, ExpressionSample
from .features import Biometrics, ExpressionVector
from .gaze import NEUTRAL_GAZE, GazeEstimator
from .jitter import Jitter
from .landmarks import LandmarkSource
from .pulse import PulseEstimator

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int], None]

# Progress range [start, end) per stage, in percent
STAGE_SPANS = {
    "expression": (0, 40),
    "pulse": (40, 80),
    "complexion": (80, 90),
    "gaze": (90, 100),
}


class ProgressTracker:
    """Forwards a monotonically increasing percentage to a callback."""

    def __init__(self, callback: Optional[ProgressCallback] = None) -> None:
        self.callback = callback
        self.value = 0

    def report(self, pct: float) -> None:
        pct = int(round(min(100.0, max(0.0, pct))))
        if pct <= self.value:
            return
        self.value = pct
        if self.callback is not None:
            self.callback(pct)

    def stage(self, name: str, fraction: float = 1.0) -> None:
        start, end = STAGE_SPANS[name]
        self.report(start + (end - start) * fraction)


class ExtractionPipeline:
    def __init__(
        self,
        landmarks: LandmarkSource,
        expression: Optional[ExpressionEstimator] = None,
        pulse: Optional[PulseEstimator] = None,
        complexion: Optional[ComplexionEstimator] = None,
        gaze: Optional[GazeEstimator] = None,
        jitter: Optional[Jitter] = None,
    ) -> None:
        jitter = jitter or Jitter()
        self.landmarks = landmarks
        self.expression = expression or ExpressionEstimator()
        self.pulse = pulse or PulseEstimator(jitter=jitter)
        self.complexion = complexion or ComplexionEstimator()
        self.gaze = gaze or GazeEstimator(jitter=jitter)

    def budget_seconds(self) -> float:
        """Worst-case duration of `run` when every stage times out."""
        ec = self.expression.cfg
        return ec.frames * (ec.frame_timeout + ec.frame_interval) + self.pulse.budget_seconds()

    def expected_seconds(self) -> float:
        """Nominal duration of `run` when every detector call returns at once."""
        ec = self.expression.cfg
        return max(0, ec.frames - 1) * ec.frame_interval + self.pulse.sampling_seconds()

    async def run(
        self, frames: FrameSource, progress: Optional[ProgressCallback] = None
    ) -> Biometrics:
        if not frames.is_open:
            raise StreamLostError("frame source is not available")
        tracker = ProgressTracker(progress)
        t0 = perf_counter()

        try:
            sample = await self.expression.sample(
                self.landmarks,
                frames,
                progress=lambda p: tracker.stage("expression", p / 100.0),
            )
        except Exception:
            logger.exception("Expression stage failed; using zero vector")
            sample = ExpressionSample(vector=ExpressionVector.zero())
        tracker.stage("expression")

        try:
            pulse = await self.pulse.estimate(frames)
        except Exception:
            logger.exception("Pulse stage failed; using fallback")
            pulse = self.pulse.fallback()
        tracker.stage("pulse")

        try:
            complexion = self.complexion.estimate(await next_frame(frames))
        except Exception:
            logger.exception("Complexion stage failed; using default")
            complexion = self.complexion.default()
        tracker.stage("complexion")

        # Gaze reuses the most recent landmarks from the expression stage
        last = sample.landmarks[-1] if sample.landmarks else None
        try:
            gaze = self.gaze.estimate(last)
        except Exception:
            logger.exception("Gaze stage failed; using neutral vector")
            gaze = NEUTRAL_GAZE
        tracker.stage("gaze")

        logger.info(
            "Extraction finished in %.2fs (%d/%d expression frames)",
            perf_counter() - t0,
            sample.succeeded,
            sample.attempted,
        )
        return Biometrics(
            expression=sample.vector, pulse=pulse, complexion=complexion, gaze=gaze
        )
