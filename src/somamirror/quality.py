"""Quality figures for the pulse signal.

Used for diagnostics only: the heart-rate reduction itself is peak counting,
but the spectral SNR tells whether the sampled patch carried any pulse at
all.
"""

from __future__ import annotations

import numpy as np


def snr_db(
    power_spectrum: np.ndarray,
    peak_index: int,
    guard_bins: int = 1,
    band_bins: int = 1,
) -> float:
    """Estimate SNR at a known peak using local noise floor.

    Signal is taken as the mean magnitude within the peak band (±band_bins),
    while noise is estimated as the median magnitude of bins outside a guard
    region (±guard_bins beyond the band).
    """
    p = np.asarray(power_spectrum, dtype=np.float32)
    n = int(p.size)
    if n == 0:
        return 0.0
    i0 = max(0, int(peak_index) - int(band_bins))
    i1 = min(n, int(peak_index) + int(band_bins) + 1)
    sig = float(np.mean(p[i0:i1])) if i1 > i0 else float(p[int(peak_index)])
    g0 = max(0, i0 - int(guard_bins))
    g1 = min(n, i1 + int(guard_bins))
    if g0 <= 0 and g1 >= n:
        # No room for noise estimation
        return 0.0
    noise_bins = np.concatenate([p[:g0], p[g1:]])
    if noise_bins.size == 0:
        return 0.0
    noise = float(np.median(noise_bins))
    if noise <= 0.0 or sig <= 0.0:
        return 0.0
    return 10.0 * float(np.log10(sig / noise))


def pulse_snr(
    series: np.ndarray,
    fs: float,
    fmin: float = 0.7,
    fmax: float = 4.0,
) -> float:
    """SNR [dB] of the strongest spectral peak inside the heart-rate band.

    Returns 0.0 for series too short to have a spectrum or with no band.
    """
    x = np.asarray(series, dtype=np.float32)
    if x.size < 8 or fs <= 0:
        return 0.0
    w = np.hanning(x.size).astype(np.float32)
    mag = np.abs(np.fft.rfft((x - x.mean()) * w))
    freqs = np.fft.rfftfreq(x.size, d=1.0 / fs)
    band = (freqs >= fmin) & (freqs <= fmax)
    if not np.any(band):
        return 0.0
    idx = int(np.argmax(mag * band))
    return snr_db(mag, idx)
