"""Capture session state machine.

    IDLE -> RECORDING -> ANALYZING -> TRANSCRIBED

One session instance covers one stage ("before" or "after"). While the
countdown runs, a speculative pre-analysis is started against the live
stream; if it has finished by the time the countdown reaches zero its result
is used as is, otherwise the pipeline runs again in the foreground with
progress reporting. The camera is released once the four vectors exist.

Any unrecoverable failure (no camera, stream gone, analysis over budget)
returns the session to IDLE with a single notice; retrying is up to the
caller.
"""

from __future__ import annotations

import asyncio
import logging
import math
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional, Protocol

from .capture import FrameSource
from .errors import SessionStateError, StorageError, StreamLostError
from .features import Biometrics, FeatureRecord, Stage
from .pipeline import ExtractionPipeline

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    IDLE = "idle"
    RECORDING = "recording"
    ANALYZING = "analyzing"
    TRANSCRIBED = "transcribed"


@dataclass
class SessionConfig:
    countdown_ticks: int = 15
    tick_seconds: float = 1.0
    # Ticks remaining when the background run starts; <= 0 disables it and
    # None derives it from the pipeline's nominal duration times the margin
    preanalysis_at: Optional[int] = None
    preanalysis_margin: float = 2.0
    grace_seconds: float = 2.0


class RecordStore(Protocol):
    def save(self, record: FeatureRecord) -> str: ...


CameraFactory = Callable[[], FrameSource]

_STATUS = (
    (40, "Reading facial micro-expressions"),
    (80, "Capturing pulse signal"),
    (90, "Analyzing skin texture"),
    (101, "Mapping gaze"),
)


class CaptureSession:
    def __init__(
        self,
        stage: Stage | str,
        participant_id: str,
        camera_factory: CameraFactory,
        pipeline: ExtractionPipeline,
        cfg: Optional[SessionConfig] = None,
        store: Optional[RecordStore] = None,
        on_change: Optional[Callable[["CaptureSession"], None]] = None,
    ) -> None:
        self.id = uuid.uuid4().hex
        self.stage = Stage(stage)
        self.participant_id = participant_id
        self.cfg = cfg or SessionConfig()
        self.pipeline = pipeline
        self.store = store
        self.on_change = on_change
        self._camera_factory = camera_factory

        self.state = SessionState.IDLE
        self.remaining = self.cfg.countdown_ticks
        self.progress = 0
        self.status = ""
        self.notice: Optional[str] = None
        self.used_preanalysis = False
        self.record_handle: Optional[str] = None

        self._stream: Optional[FrameSource] = None
        self._preanalysis: Optional[asyncio.Task] = None
        self._biometrics: Optional[Biometrics] = None
        self._record: Optional[FeatureRecord] = None

    # -- observers -------------------------------------------------------

    @property
    def biometrics(self) -> Optional[Biometrics]:
        return self._biometrics

    @property
    def record(self) -> Optional[FeatureRecord]:
        return self._record

    def analysis_budget(self) -> float:
        return self.pipeline.budget_seconds() + self.cfg.grace_seconds

    def preanalysis_ticks(self) -> int:
        """Countdown tick at which the background pre-analysis starts."""
        cfg = self.cfg
        if cfg.preanalysis_at is not None:
            return cfg.preanalysis_at
        if cfg.tick_seconds <= 0:
            return cfg.countdown_ticks
        needed = self.pipeline.expected_seconds() * cfg.preanalysis_margin
        return max(1, min(cfg.countdown_ticks, math.ceil(needed / cfg.tick_seconds)))

    def snapshot(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "stage": self.stage.value,
            "participant_id": self.participant_id,
            "state": self.state.value,
            "remaining": self.remaining,
            "progress": self.progress,
            "status": self.status,
            "notice": self.notice,
            "completed": self._record is not None,
        }

    def _changed(self) -> None:
        if self.on_change is not None:
            self.on_change(self)

    def _set_state(self, state: SessionState) -> None:
        logger.info("Session %s (%s): %s -> %s", self.id[:8], self.stage.value, self.state.value, state.value)
        self.state = state
        self._changed()

    # -- transitions -----------------------------------------------------

    async def run(self) -> Optional[Biometrics]:
        """Record, analyze and stop in TRANSCRIBED; None if the run failed."""
        if self.state is not SessionState.IDLE:
            raise SessionStateError(f"cannot start recording from {self.state.value}")
        self.notice = None
        self.progress = 0
        self.used_preanalysis = False
        try:
            self._stream = self._camera_factory()
        except Exception as exc:
            self._fail(f"Could not access the camera: {exc}")
            return None

        try:
            self._set_state(SessionState.RECORDING)
            await self._countdown()
            return await self._analyze()
        except asyncio.CancelledError:
            self._cancel_preanalysis()
            self._release()
            self.state = SessionState.IDLE
            raise

    async def _countdown(self) -> None:
        cfg = self.cfg
        self.remaining = cfg.countdown_ticks
        self._maybe_preanalyze()
        while self.remaining > 0:
            await asyncio.sleep(cfg.tick_seconds)
            self.remaining -= 1
            self._changed()
            self._maybe_preanalyze()

    def _maybe_preanalyze(self) -> None:
        at = self.preanalysis_ticks()
        if at <= 0 or self._preanalysis is not None or self.remaining > at:
            return
        logger.info("Session %s: starting background pre-analysis", self.id[:8])
        self._preanalysis = asyncio.create_task(self.pipeline.run(self._stream))

    def _cached_preanalysis(self) -> Optional[Biometrics]:
        task = self._preanalysis
        if task is None or not task.done() or task.cancelled():
            return None
        exc = task.exception()
        if exc is not None:
            logger.warning("Background pre-analysis failed: %s", exc)
            return None
        return task.result()

    def _cancel_preanalysis(self) -> None:
        task, self._preanalysis = self._preanalysis, None
        if task is not None and not task.done():
            task.cancel()

    async def _analyze(self) -> Optional[Biometrics]:
        self.status = "Processing biomarkers"
        self._set_state(SessionState.ANALYZING)
        biometrics = self._cached_preanalysis()
        if biometrics is not None:
            logger.info("Session %s: using cached pre-analysis", self.id[:8])
            self.used_preanalysis = True
            self._preanalysis = None
            self._on_progress(100)
        else:
            pending = self._preanalysis
            self._cancel_preanalysis()
            if pending is not None:
                await asyncio.gather(pending, return_exceptions=True)
            try:
                biometrics = await asyncio.wait_for(
                    self.pipeline.run(self._stream, progress=self._on_progress),
                    self.analysis_budget(),
                )
            except asyncio.TimeoutError:
                self._fail("Analysis took too long. Please try again.")
                return None
            except StreamLostError as exc:
                self._fail(f"The video stream was lost: {exc}")
                return None
            except Exception as exc:
                logger.exception("Analysis failed")
                self._fail(f"The capture failed: {exc}")
                return None

        self._biometrics = biometrics
        self._release()
        self.status = "Done"
        self._set_state(SessionState.TRANSCRIBED)
        return biometrics

    def _on_progress(self, pct: int) -> None:
        if pct <= self.progress:
            return
        self.progress = pct
        self.status = next(text for limit, text in _STATUS if pct < limit)
        self._changed()

    def _fail(self, message: str) -> None:
        logger.warning("Session %s: %s", self.id[:8], message)
        self._cancel_preanalysis()
        self._release()
        self.notice = message
        self.remaining = self.cfg.countdown_ticks
        self.progress = 0
        self.status = ""
        self._set_state(SessionState.IDLE)

    def _release(self) -> None:
        stream, self._stream = self._stream, None
        if stream is not None:
            try:
                stream.release()
            except Exception:
                logger.exception("Failed to release frame source")

    def complete(self, self_report: str) -> FeatureRecord:
        """Attach the self-report and produce the session's FeatureRecord.

        Allowed once, in TRANSCRIBED. A failing store is logged; the record
        is returned either way.
        """
        if self.state is not SessionState.TRANSCRIBED or self._biometrics is None:
            raise SessionStateError(f"cannot complete from {self.state.value}")
        if self._record is not None:
            raise SessionStateError("session already completed")
        text = self_report.strip()
        if not text:
            raise ValueError("self-report must not be empty")
        record = FeatureRecord.create(
            self._biometrics, self.stage, text, self.participant_id
        )
        self._record = record
        if self.store is not None:
            try:
                self.record_handle = self.store.save(record)
            except StorageError as exc:
                logger.warning("Session %s: record not persisted: %s", self.id[:8], exc)
                self.notice = "The record could not be saved; it is kept for this session only."
        self._changed()
        return record
