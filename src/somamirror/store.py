"""File-backed persistence for feature records.

Each record is written as one JSON document; a CSV summary row per record is
appended alongside for quick inspection in a spreadsheet.
"""

from __future__ import annotations

import csv
import json
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from .errors import StorageError
from .features import ExpressionVector, FeatureRecord

logger = logging.getLogger(__name__)

_UNSAFE = re.compile(r"[^A-Za-z0-9_.-]")

SUMMARY_HEADER = [
    "handle",
    "timestamp",
    "participant_id",
    "stage",
    "heart_rate",
    "hrv",
    "respiration_rate",
    "homogeneity",
    "redness",
    "roughness",
    "vitality",
    "blink_rate",
    "pupil_unrest",
    "stability",
    "fatigue_index",
    *ExpressionVector.channels(),
]


@dataclass
class StoreConfig:
    out_dir: Path
    summary_name: str = "sessions"


def _summary_row(handle: str, record: FeatureRecord) -> list[object]:
    flat: dict[str, object] = {
        "handle": handle,
        "timestamp": record.timestamp.isoformat(),
        "participant_id": record.participant_id,
        "stage": record.stage.value,
        **record.pulse.to_dict(),
        **record.complexion.to_dict(),
        **record.gaze.to_dict(),
        **record.expression.to_dict(),
    }
    return [flat[k] for k in SUMMARY_HEADER]


class SessionStore:
    """Save and load FeatureRecords under `cfg.out_dir`."""

    def __init__(self, cfg: StoreConfig) -> None:
        self.cfg = cfg
        self.records_dir = self.cfg.out_dir / "records"
        self.summary_path = self.cfg.out_dir / f"{self.cfg.summary_name}.csv"

    def save(self, record: FeatureRecord) -> str:
        """Persist a record and return its handle."""
        handle = "{}-{}-{}".format(
            _UNSAFE.sub("_", record.participant_id) or "anonymous",
            record.stage.value,
            record.timestamp.strftime("%Y%m%dT%H%M%S%f"),
        )
        try:
            self.records_dir.mkdir(parents=True, exist_ok=True)
            path = self.records_dir / f"{handle}.json"
            path.write_text(
                json.dumps(record.to_dict(), ensure_ascii=False, indent=2),
                encoding="utf-8",
            )
            new_file = not self.summary_path.exists()
            with self.summary_path.open("a", newline="", encoding="utf-8") as f:
                writer = csv.writer(f)
                if new_file:
                    writer.writerow(SUMMARY_HEADER)
                writer.writerow(_summary_row(handle, record))
        except OSError as exc:
            raise StorageError(f"could not save record {handle}: {exc}") from exc
        logger.info("Saved record %s", handle)
        return handle

    def load(self, handle: str) -> FeatureRecord:
        if _UNSAFE.search(handle):
            raise StorageError(f"invalid record handle: {handle!r}")
        path = self.records_dir / f"{handle}.json"
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            return FeatureRecord.from_dict(data)
        except (OSError, ValueError, KeyError, TypeError) as exc:
            raise StorageError(f"could not load record {handle}: {exc}") from exc

    def history(self, participant_id: Optional[str] = None) -> list[FeatureRecord]:
        """Stored records, newest first, optionally for one participant."""
        if not self.records_dir.exists():
            return []
        records = []
        for path in self.records_dir.glob("*.json"):
            try:
                record = self.load(path.stem)
            except StorageError as exc:
                logger.warning("Skipping unreadable record: %s", exc)
                continue
            if participant_id is None or record.participant_id == participant_id:
                records.append(record)
        records.sort(key=lambda r: r.timestamp, reverse=True)
        return records
