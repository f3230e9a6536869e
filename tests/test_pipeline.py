from __future__ import annotations

import asyncio

import pytest

from fakes import FakeFrames, ScriptedLandmarks, face_landmarks, gray_frame
from somamirror.complexion import ComplexionEstimator
from somamirror.errors import StreamLostError
from somamirror.expression import ExpressionConfig, ExpressionEstimator
from somamirror.features import ExpressionVector
from somamirror.gaze import NEUTRAL_GAZE, GazeEstimator
from somamirror.jitter import Jitter
from somamirror.pipeline import ExtractionPipeline, ProgressTracker
from somamirror.pulse import PulseConfig, PulseEstimator


def make_pipeline(landmarks: ScriptedLandmarks, seed: int = 0, **parts) -> ExtractionPipeline:
    jitter = Jitter(seed=seed)
    return ExtractionPipeline(
        landmarks,
        expression=parts.get(
            "expression",
            ExpressionEstimator(ExpressionConfig(frames=3, frame_interval=0.0, frame_timeout=0.5)),
        ),
        pulse=parts.get(
            "pulse",
            PulseEstimator(PulseConfig(frame_period=0.0, duration_ms=200, grace_ms=500), jitter),
        ),
        complexion=parts.get("complexion"),
        gaze=parts.get("gaze", GazeEstimator(jitter=jitter)),
        jitter=jitter,
    )


class BrokenComplexion(ComplexionEstimator):
    def estimate(self, frame):
        raise RuntimeError("sensor glitch")


def test_progress_tracker_is_monotonic() -> None:
    seen: list[int] = []
    t = ProgressTracker(seen.append)
    t.stage("expression", 0.5)
    t.report(10)
    t.stage("pulse", 0.0)
    t.stage("gaze")
    t.report(150)
    assert seen == [20, 40, 100]


def test_run_with_face_produces_all_vectors() -> None:
    source = ScriptedLandmarks([face_landmarks(aperture=0.1, mouth_half_width=0.04)])
    pipeline = make_pipeline(source)
    seen: list[int] = []

    bio = asyncio.run(pipeline.run(FakeFrames([gray_frame()]), progress=seen.append))

    assert bio.expression.lip_corner_pull == pytest.approx(4.0)
    assert bio.pulse.heart_rate == 72.0
    assert bio.complexion.vitality == pytest.approx(100.0)
    # gaze reuses the last expression landmarks: nearly closed eyes
    assert bio.gaze.blink_rate == 22.0
    assert seen == sorted(seen)
    assert seen[-1] == 100
    assert {40, 80, 90} <= set(seen)
    assert source.calls == 3


def test_detector_failures_fall_back() -> None:
    source = ScriptedLandmarks([RuntimeError("model missing")])
    bio = asyncio.run(make_pipeline(source).run(FakeFrames()))
    assert bio.expression == ExpressionVector.zero()
    assert bio.gaze == NEUTRAL_GAZE


def test_failing_stage_uses_its_default() -> None:
    source = ScriptedLandmarks()
    pipeline = make_pipeline(source, complexion=BrokenComplexion())
    bio = asyncio.run(pipeline.run(FakeFrames()))
    assert bio.complexion == ComplexionEstimator().default()


def test_closed_source_raises_stream_lost() -> None:
    frames = FakeFrames()
    frames.release()
    with pytest.raises(StreamLostError):
        asyncio.run(make_pipeline(ScriptedLandmarks()).run(frames))


def test_budget_covers_every_stage() -> None:
    pipeline = ExtractionPipeline(
        ScriptedLandmarks(),
        expression=ExpressionEstimator(ExpressionConfig(frames=15, frame_interval=0.1, frame_timeout=1.0)),
        pulse=PulseEstimator(PulseConfig(duration_ms=3500, grace_ms=2000)),
    )
    assert pipeline.budget_seconds() == pytest.approx(15 * 1.1 + 5.5)


def test_seeded_runs_are_reproducible() -> None:
    lm = face_landmarks()
    a = asyncio.run(make_pipeline(ScriptedLandmarks([lm]), seed=9).run(FakeFrames()))
    b = asyncio.run(make_pipeline(ScriptedLandmarks([lm]), seed=9).run(FakeFrames()))
    assert a == b
