"""Heart rate, variability and respiration from forehead color fluctuation.

A fixed square patch near the top third of the frame is sampled at a nominal
frame rate; the mean green intensity of each sample forms the raw series.
Two deliberately simple reductions run over it:

- heart rate: strict local maxima per second, x60, damped by a constant
  factor to offset noise peaks;
- variability: root mean square of successive differences, scaled.

Series shorter than `min_seconds` reduce to 0, which the estimator replaces
with the fallback pair (72 bpm, 45). Respiration is not measured; it is a
baseline plus bounded jitter.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

import numpy as np
from scipy.signal import argrelmax

from .capture import FrameSource, next_frame
from .features import PulseVector
from .jitter import Jitter
from .quality import pulse_snr
from .roi import forehead_patch, mean_rgb

logger = logging.getLogger(__name__)

FALLBACK_HEART_RATE = 72.0
FALLBACK_HRV = 45.0


@dataclass
class PulseConfig:
    fps: float = 30.0  # nominal sampling rate
    frame_period: Optional[float] = None  # wall-clock pause per sample; 1/fps if None
    duration_ms: int = 3500
    grace_ms: int = 2000
    patch_size: int = 50
    min_seconds: float = 2.0
    damping: float = 0.5
    hrv_scale: float = 100.0
    respiration_base: float = 14.0
    respiration_span: float = 4.0


def heart_rate_from_peaks(
    series: np.ndarray,
    fs: float,
    damping: float = 0.5,
    min_seconds: float = 2.0,
) -> float:
    """Count strict local maxima and convert to damped beats per minute.

    Returns 0.0 when the series is shorter than `min_seconds * fs`.
    """
    x = np.asarray(series, dtype=np.float64)
    if fs <= 0 or x.size < min_seconds * fs:
        return 0.0
    peaks = argrelmax(x)[0]
    elapsed = x.size / fs
    return float(round(peaks.size / elapsed * 60.0 * damping))


def rmssd_proxy(
    series: np.ndarray,
    fs: float,
    scale: float = 100.0,
    min_seconds: float = 2.0,
) -> float:
    """Scaled root mean square of successive sample differences."""
    x = np.asarray(series, dtype=np.float64)
    if fs <= 0 or x.size < min_seconds * fs:
        return 0.0
    d2 = np.diff(x) ** 2
    return float(round(np.sqrt(d2.mean()) * scale))


class PulseEstimator:
    def __init__(
        self, cfg: Optional[PulseConfig] = None, jitter: Optional[Jitter] = None
    ) -> None:
        self.cfg = cfg or PulseConfig()
        self.jitter = jitter or Jitter()
        self.last_snr_db: float = 0.0
        self.last_sample_count: int = 0

    def _duration(self, duration_ms: Optional[int]) -> int:
        return self.cfg.duration_ms if duration_ms is None else duration_ms

    def _period(self) -> float:
        return 1.0 / self.cfg.fps if self.cfg.frame_period is None else self.cfg.frame_period

    def target_samples(self, duration_ms: Optional[int] = None) -> int:
        return int(round(self._duration(duration_ms) / 1000.0 * self.cfg.fps))

    def sampling_seconds(self, duration_ms: Optional[int] = None) -> float:
        """Nominal wall-clock time to fill the series."""
        return self.target_samples(duration_ms) * self._period()

    def budget_seconds(self, duration_ms: Optional[int] = None) -> float:
        """Upper bound on how long `estimate` can take."""
        return (self._duration(duration_ms) + self.cfg.grace_ms) / 1000.0

    def _respiration(self) -> float:
        return self.jitter.offset(self.cfg.respiration_base, self.cfg.respiration_span)

    def fallback(self) -> PulseVector:
        return PulseVector(
            heart_rate=FALLBACK_HEART_RATE,
            hrv=FALLBACK_HRV,
            respiration_rate=self._respiration(),
            substituted=frozenset({"heart_rate", "hrv"}),
        )

    def reduce(self, series: np.ndarray) -> PulseVector:
        """Turn a raw green series into a PulseVector, substituting fallbacks."""
        c = self.cfg
        x = np.asarray(series, dtype=np.float64)
        hr = heart_rate_from_peaks(x, c.fps, c.damping, c.min_seconds)
        hrv = rmssd_proxy(x, c.fps, c.hrv_scale, c.min_seconds)
        substituted = set()
        if not hr:
            hr = FALLBACK_HEART_RATE
            substituted.add("heart_rate")
        if not hrv:
            hrv = FALLBACK_HRV
            substituted.add("hrv")
        self.last_snr_db = pulse_snr(x, c.fps)
        self.last_sample_count = int(x.size)
        logger.info(
            "Pulse: %d samples, hr=%.0f hrv=%.0f snr=%.1f dB%s",
            x.size,
            hr,
            hrv,
            self.last_snr_db,
            f" (fallback: {', '.join(sorted(substituted))})" if substituted else "",
        )
        return PulseVector(
            heart_rate=hr,
            hrv=hrv,
            respiration_rate=self._respiration(),
            substituted=frozenset(substituted),
        )

    async def collect(
        self, frames: FrameSource, duration_ms: Optional[int] = None
    ) -> np.ndarray:
        """Sample the forehead patch until the series is full or time runs out.

        Frames that cannot be sampled are skipped; a closed source ends the
        series early.
        """
        c = self.cfg
        target = self.target_samples(duration_ms)
        period = self._period()
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.budget_seconds(duration_ms)
        series: list[float] = []
        while len(series) < target:
            if loop.time() >= deadline:
                logger.warning(
                    "Pulse sampling deadline reached with %d/%d samples",
                    len(series),
                    target,
                )
                break
            if not frames.is_open:
                logger.warning(
                    "Frame source closed during pulse sampling (%d/%d samples)",
                    len(series),
                    target,
                )
                break
            frame = await next_frame(frames)
            p = forehead_patch(frame, c.patch_size) if frame is not None else None
            if p is not None:
                _, green, _ = mean_rgb(p)
                series.append(green)
            await asyncio.sleep(period)
        return np.asarray(series, dtype=np.float64)

    async def estimate(
        self, frames: FrameSource, duration_ms: Optional[int] = None
    ) -> PulseVector:
        """Sample and reduce; never outlives the sampling budget."""
        # One extra frame period on top of the sampling deadline
        budget = self.budget_seconds(duration_ms) + 1.0 / self.cfg.fps
        try:
            series = await asyncio.wait_for(self.collect(frames, duration_ms), budget)
        except asyncio.TimeoutError:
            logger.warning("Pulse estimation timed out; using fallback")
            return self.fallback()
        return self.reduce(series)
