from __future__ import annotations

import json
import time
from pathlib import Path
from tempfile import TemporaryDirectory

from fastapi.testclient import TestClient

from fakes import FakeFrames, ScriptedLandmarks
from somamirror.errors import CameraUnavailableError
from somamirror.expression import ExpressionConfig, ExpressionEstimator
from somamirror.jitter import Jitter
from somamirror.pipeline import ExtractionPipeline
from somamirror.pulse import PulseConfig, PulseEstimator
from somamirror.report import ReportGenerator
from somamirror.service import make_app
from somamirror.session import SessionConfig
from somamirror.store import SessionStore, StoreConfig

REPORT = json.dumps(
    {"score": 81, "headline": "More relaxed", "narrative": "Calmer overall.", "observations": ["HRV up"]}
)


class StaticBackend:
    name = "static"

    async def complete(self, payload: dict) -> str:
        return REPORT


def make_client(data_dir: Path, camera_factory=FakeFrames, max_sessions: int = 256) -> TestClient:
    jitter = Jitter(seed=0)
    pipeline = ExtractionPipeline(
        ScriptedLandmarks(),
        expression=ExpressionEstimator(ExpressionConfig(frames=2, frame_interval=0.0, frame_timeout=0.5)),
        pulse=PulseEstimator(PulseConfig(frame_period=0.0, duration_ms=100, grace_ms=500), jitter),
        jitter=jitter,
    )
    app = make_app(
        camera_factory=camera_factory,
        pipeline=pipeline,
        store=SessionStore(StoreConfig(out_dir=data_dir)),
        reporter=ReportGenerator([StaticBackend()]),
        session_cfg=SessionConfig(countdown_ticks=3, tick_seconds=0.01, preanalysis_at=0, grace_seconds=0.5),
        max_sessions=max_sessions,
    )
    return TestClient(app)


def wait_for_state(client: TestClient, session_id: str, state: str, timeout: float = 5.0) -> dict:
    deadline = time.monotonic() + timeout
    while True:
        snap = client.get(f"/sessions/{session_id}").json()
        if snap["state"] == state or time.monotonic() > deadline:
            return snap
        time.sleep(0.02)


def run_stage(client: TestClient, stage: str, text: str, participant_id: str = "p-01") -> str:
    r = client.post("/sessions", json={"stage": stage, "participant_id": participant_id})
    assert r.status_code == 200
    sid = r.json()["id"]
    assert wait_for_state(client, sid, "transcribed")["state"] == "transcribed"
    r = client.post(f"/sessions/{sid}/self-report", json={"text": text})
    assert r.status_code == 200
    return sid


def test_health() -> None:
    with TemporaryDirectory() as td, make_client(Path(td)) as client:
        assert client.get("/health").json() == {"status": "ok"}


def test_before_after_flow() -> None:
    with TemporaryDirectory() as td, make_client(Path(td)) as client:
        before = run_stage(client, "before", "Stressed after work")
        after = run_stage(client, "after", "Much calmer")

        r = client.post("/reports", json={"before_id": before, "after_id": after})
        assert r.status_code == 200
        body = r.json()
        assert body["report"]["headline"] == "More relaxed"
        assert {row["label"] for row in body["comparison"]} >= {"HRV", "Fatigue index"}

        history = client.get("/participants/p-01/history").json()
        assert [h["stage"] for h in history] == ["after", "before"]
        assert history[1]["self_report"] == "Stressed after work"


def test_invalid_requests() -> None:
    with TemporaryDirectory() as td, make_client(Path(td)) as client:
        assert client.post("/sessions", json={"stage": "during", "participant_id": "p"}).status_code == 422
        assert client.get("/sessions/nope").status_code == 404
        assert client.post("/reports", json={"before_id": "nope"}).status_code == 404

        r = client.post("/sessions", json={"stage": "before", "participant_id": "p-01"})
        sid = r.json()["id"]
        wait_for_state(client, sid, "transcribed")
        assert client.post(f"/sessions/{sid}/self-report", json={"text": ""}).status_code == 422
        assert client.post("/reports", json={"before_id": sid}).status_code == 409
        assert client.post(f"/sessions/{sid}/self-report", json={"text": "ok"}).status_code == 200
        assert client.post(f"/sessions/{sid}/self-report", json={"text": "again"}).status_code == 409
        assert client.post(f"/sessions/{sid}/retry").status_code == 409


def test_camera_failure_then_retry() -> None:
    attempts = []

    def flaky_camera():
        attempts.append(1)
        if len(attempts) == 1:
            raise CameraUnavailableError("device busy")
        return FakeFrames()

    with TemporaryDirectory() as td, make_client(Path(td), camera_factory=flaky_camera) as client:
        r = client.post("/sessions", json={"stage": "before", "participant_id": "p-01"})
        sid = r.json()["id"]
        snap = wait_for_state(client, sid, "idle")
        assert "camera" in snap["notice"]

        r = client.post(f"/sessions/{sid}/retry")
        assert r.status_code == 200
        assert wait_for_state(client, sid, "transcribed")["notice"] is None


def test_websocket_streams_until_done() -> None:
    with TemporaryDirectory() as td, make_client(Path(td)) as client:
        sid = client.post("/sessions", json={"stage": "before", "participant_id": "p-01"}).json()["id"]
        last = None
        with client.websocket_connect(f"/ws/{sid}") as ws:
            while True:
                last = ws.receive_json()
                if last["state"] == "transcribed":
                    break
        assert last["progress"] == 100


def test_report_rejects_mismatched_sessions() -> None:
    with TemporaryDirectory() as td, make_client(Path(td)) as client:
        before = run_stage(client, "before", "Tired")
        after = run_stage(client, "after", "Rested")
        stranger = run_stage(client, "after", "Fine", participant_id="p-02")

        swapped = client.post("/reports", json={"before_id": after, "after_id": before})
        assert swapped.status_code == 422
        assert client.post("/reports", json={"before_id": after}).status_code == 422
        other = client.post("/reports", json={"before_id": before, "after_id": stranger})
        assert other.status_code == 422
        assert client.post("/reports", json={"before_id": before, "after_id": after}).status_code == 200


def test_finished_sessions_are_evicted_oldest_first() -> None:
    with TemporaryDirectory() as td, make_client(Path(td), max_sessions=2) as client:
        first = run_stage(client, "before", "one")
        second = run_stage(client, "after", "two")
        third = run_stage(client, "before", "three")

        assert client.get(f"/sessions/{first}").status_code == 404
        assert client.get(f"/sessions/{second}").status_code == 200
        assert client.get(f"/sessions/{third}").status_code == 200
