from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from pathlib import Path
from tempfile import TemporaryDirectory

import pytest

from somamirror.errors import StorageError
from somamirror.features import (
    Biometrics,
    ComplexionVector,
    ExpressionVector,
    FeatureRecord,
    GazeVector,
    PulseVector,
    Stage,
)
from somamirror.store import SUMMARY_HEADER, SessionStore, StoreConfig

T0 = datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc)


def make_record(pid: str = "p-01", stage: Stage = Stage.BEFORE, minutes: int = 0) -> FeatureRecord:
    bio = Biometrics(
        expression=ExpressionVector(cheek_raise=1.5),
        pulse=PulseVector(68.0, 52.0, 15.5),
        complexion=ComplexionVector(82.0, 22.0, 30.0, 77.2),
        gaze=GazeVector(14.0, 2.0, 88.0, 21.0),
    )
    return FeatureRecord.create(bio, stage, "Feeling fine", pid, timestamp=T0 + timedelta(minutes=minutes))


def test_store_writes_json_and_csv() -> None:
    with TemporaryDirectory() as td:
        out = Path(td)
        store = SessionStore(StoreConfig(out_dir=out, summary_name="test"))
        h1 = store.save(make_record())
        store.save(make_record(stage=Stage.AFTER, minutes=30))

        assert h1 == "p-01-before-20240501T090000000000"
        meta = json.loads((out / "records" / f"{h1}.json").read_text())
        assert meta["self_report"] == "Feeling fine"
        assert meta["pulse"]["hrv"] == 52.0

        txt = (out / "test.csv").read_text().strip().splitlines()
        assert txt[0] == ",".join(SUMMARY_HEADER)
        assert len(txt) == 3
        assert txt[1].startswith(f"{h1},2024-05-01T09:00:00+00:00,p-01,before,68.0,52.0")


def test_load_round_trip() -> None:
    with TemporaryDirectory() as td:
        store = SessionStore(StoreConfig(out_dir=Path(td)))
        rec = make_record()
        assert store.load(store.save(rec)) == rec


def test_history_newest_first_per_participant() -> None:
    with TemporaryDirectory() as td:
        store = SessionStore(StoreConfig(out_dir=Path(td)))
        assert store.history() == []
        store.save(make_record("p-01", Stage.BEFORE, 0))
        store.save(make_record("p-01", Stage.AFTER, 30))
        store.save(make_record("p-02", Stage.BEFORE, 10))
        (Path(td) / "records" / "broken.json").write_text("{not json")

        mine = store.history("p-01")
        assert [r.stage for r in mine] == [Stage.AFTER, Stage.BEFORE]
        assert len(store.history()) == 3


def test_participant_id_is_sanitized() -> None:
    with TemporaryDirectory() as td:
        store = SessionStore(StoreConfig(out_dir=Path(td)))
        handle = store.save(make_record("../evil id"))
        assert "/" not in handle
        assert store.load(handle).participant_id == "../evil id"


def test_bad_handles_and_write_failures_raise_storage_error() -> None:
    with TemporaryDirectory() as td:
        out = Path(td)
        store = SessionStore(StoreConfig(out_dir=out))
        with pytest.raises(StorageError):
            store.load("../../etc/passwd")
        with pytest.raises(StorageError):
            store.load("missing")
        # a file where the records directory should be
        (out / "records").write_text("")
        with pytest.raises(StorageError):
            store.save(make_record())
