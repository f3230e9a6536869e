"""Fixed-position sampling patches and mean RGB utilities.

The estimators do not track the face: they sample fixed rectangles that
approximate the forehead (upper third, centred) and a cheek (right of
centre) for a subject framed in the middle of the image.
"""

from __future__ import annotations

from typing import Optional, Tuple

import numpy as np


def mean_rgb(patch_bgr: np.ndarray) -> Tuple[float, float, float]:
    """(R, G, B) means of an HxWx3 BGR patch."""
    if patch_bgr.ndim != 3 or patch_bgr.shape[2] != 3:
        raise ValueError("patch_bgr must be HxWx3 array")
    b_mean, g_mean, r_mean = patch_bgr.reshape(-1, 3).mean(axis=0, dtype=np.float64)
    return float(r_mean), float(g_mean), float(b_mean)


def patch(frame: np.ndarray, x: int, y: int, size: int) -> Optional[np.ndarray]:
    """Return the size x size patch with top-left corner (x, y).

    None when the frame is not an HxWx3 array or the patch does not fit.
    """
    if frame is None or frame.ndim != 3 or frame.shape[2] != 3:
        return None
    h, w = frame.shape[:2]
    if size <= 0 or x < 0 or y < 0 or x + size > w or y + size > h:
        return None
    return frame[y : y + size, x : x + size]


def forehead_patch(frame: np.ndarray, size: int = 50) -> Optional[np.ndarray]:
    """Square patch centred at (width/2, height/3)."""
    if frame is None or frame.ndim < 2:
        return None
    h, w = frame.shape[:2]
    return patch(frame, int(w / 2 - size / 2), int(h / 3 - size / 2), size)


def cheek_patch(
    frame: np.ndarray, size: int = 40, offset_x: int = 50
) -> Optional[np.ndarray]:
    """Square patch with top-left corner at (width/2 + offset_x, height/2)."""
    if frame is None or frame.ndim < 2:
        return None
    h, w = frame.shape[:2]
    return patch(frame, int(w / 2 + offset_x), int(h / 2), size)
