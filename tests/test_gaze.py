from __future__ import annotations

import numpy as np
import pytest

from fakes import face_landmarks
from somamirror.gaze import NEUTRAL_GAZE, GazeEstimator, eye_aperture
from somamirror.jitter import Jitter


def test_eye_aperture_ratio() -> None:
    top, bottom = np.array([0.5, 0.45, 0.0]), np.array([0.5, 0.55, 0.1])
    inner, outer = np.array([0.3, 0.5, 0.0]), np.array([0.7, 0.5, 0.0])
    assert eye_aperture(top, bottom, inner, outer) == pytest.approx(0.25)
    assert eye_aperture(top, bottom, inner, inner) == 0.0


def test_aperture_ratio_from_face() -> None:
    est = GazeEstimator()
    assert est.aperture_ratio(face_landmarks(aperture=0.30)) == pytest.approx(0.30)


@pytest.mark.parametrize("empty", [None, [], np.zeros((10, 3))])
def test_no_landmarks_gives_neutral(empty) -> None:
    assert GazeEstimator().estimate(empty) == NEUTRAL_GAZE


@pytest.mark.parametrize(
    "aperture,low,high",
    [(0.15, 85, 95), (0.23, 60, 75), (0.30, 10, 30)],
)
def test_fatigue_bands(aperture: float, low: int, high: int) -> None:
    est = GazeEstimator(jitter=Jitter(seed=11))
    lm = face_landmarks(aperture=aperture)
    for _ in range(100):
        v = est.estimate(lm)
        assert low <= v.fatigue_index <= high
        assert v.fatigue_index == round(v.fatigue_index)
        assert 1.5 <= v.pupil_unrest < 4.5


def test_closed_eyes_blink_rate() -> None:
    est = GazeEstimator(jitter=Jitter(seed=12))
    for _ in range(20):
        assert est.estimate(face_landmarks(aperture=0.1)).blink_rate == 22.0
        assert 12.0 <= est.estimate(face_landmarks(aperture=0.3)).blink_rate < 17.0


def test_alert_eyes_are_steadier() -> None:
    est = GazeEstimator(jitter=Jitter(seed=13))
    closed = [est.from_ratio(0.1).stability for _ in range(50)]
    alert = [est.from_ratio(0.4).stability for _ in range(50)]
    assert max(closed) < 80.0
    assert min(alert) >= 85.0


def test_seeded_jitter_is_reproducible() -> None:
    lm = face_landmarks(aperture=0.22)
    a = GazeEstimator(jitter=Jitter(seed=5)).estimate(lm)
    b = GazeEstimator(jitter=Jitter(seed=5)).estimate(lm)
    assert a == b
