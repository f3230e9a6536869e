"""Facial landmark sources.

A source turns one BGR frame into zero or one landmark set: a float array
of shape (N, 3) holding normalized (x, y, z) points in MediaPipe FaceMesh
index order.

The blocking model call runs on a single-worker executor owned by the
source, so requests are served one at a time in FIFO order. Results reach
callers through two independent channels:

- `request(frame)`: one-shot; the awaiting caller gets exactly its own
  result.
- `track(frame)` + `subscribe()`: continuous updates broadcast to every
  subscriber, each holding only the latest result.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, NamedTuple, Optional

import numpy as np

logger = logging.getLogger(__name__)

# FaceMesh indices used by the estimators
INNER_BROW_LEFT, INNER_BROW_RIGHT = 66, 296
OUTER_BROW_LEFT, OUTER_BROW_RIGHT = 107, 336
EYE_TOP_LEFT, EYE_TOP_RIGHT = 159, 386
EYE_BOTTOM_LEFT, EYE_BOTTOM_RIGHT = 145, 374
EYE_INNER_LEFT, EYE_INNER_RIGHT = 133, 362
EYE_OUTER_LEFT, EYE_OUTER_RIGHT = 33, 263
MOUTH_CORNER_LEFT, MOUTH_CORNER_RIGHT = 61, 291
UPPER_LIP, LOWER_LIP = 13, 14
CHIN = 152

FACE_MESH_POINTS = 468


class LandmarkPoint(NamedTuple):
    x: float
    y: float
    z: float = 0.0


def as_landmarks(points: Any) -> Optional[np.ndarray]:
    """Coerce points to an (N, 3) float array; None for no/empty input.

    Accepts arrays, sequences of tuples, or objects exposing x/y/z
    attributes (MediaPipe NormalizedLandmark, LandmarkPoint).
    """
    if points is None:
        return None
    if isinstance(points, np.ndarray):
        arr = points.astype(np.float64, copy=False)
    else:
        seq = list(points)
        if not seq:
            return None
        if hasattr(seq[0], "x"):
            arr = np.array(
                [[p.x, p.y, getattr(p, "z", 0.0)] for p in seq], dtype=np.float64
            )
        else:
            arr = np.asarray(seq, dtype=np.float64)
    if arr.size == 0:
        return None
    if arr.ndim != 2 or arr.shape[1] not in (2, 3):
        raise ValueError("landmarks must be an (N, 2) or (N, 3) array")
    if arr.shape[1] == 2:
        arr = np.hstack([arr, np.zeros((arr.shape[0], 1))])
    return arr


class LandmarkSubscription:
    """Latest-value mailbox fed by `LandmarkSource.track`."""

    def __init__(self, source: "LandmarkSource") -> None:
        self._source = source
        self._queue: "asyncio.Queue[Optional[np.ndarray]]" = asyncio.Queue(maxsize=1)

    def _push(self, landmarks: Optional[np.ndarray]) -> None:
        if self._queue.full():
            self._queue.get_nowait()
        self._queue.put_nowait(landmarks)

    async def get(self) -> Optional[np.ndarray]:
        return await self._queue.get()

    def close(self) -> None:
        self._source._subscribers.discard(self)

    def __aiter__(self) -> "LandmarkSubscription":
        return self

    async def __anext__(self) -> Optional[np.ndarray]:
        return await self.get()


class LandmarkSource(ABC):
    """Base class for landmark detectors.

    Subclasses implement the blocking `_setup` and `_process` hooks; both run
    on the source's own worker thread.
    """

    def __init__(self) -> None:
        self._executor: Optional[ThreadPoolExecutor] = None
        self._init_lock = asyncio.Lock()
        self._ready = False
        self._subscribers: set[LandmarkSubscription] = set()

    @property
    def ready(self) -> bool:
        return self._ready

    async def initialize(self) -> None:
        """One-time setup; safe to call repeatedly."""
        async with self._init_lock:
            if self._ready:
                return
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=1, thread_name_prefix=type(self).__name__
                )
            loop = asyncio.get_running_loop()
            await loop.run_in_executor(self._executor, self._setup)
            self._ready = True
            logger.info("%s initialized", type(self).__name__)

    async def request(self, frame: np.ndarray) -> Optional[np.ndarray]:
        """Detect landmarks on one frame; None when no face is found."""
        if not self._ready:
            await self.initialize()
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, self._process, frame)

    async def track(self, frame: np.ndarray) -> Optional[np.ndarray]:
        """Detect and broadcast the result to all subscribers."""
        landmarks = await self.request(frame)
        for sub in list(self._subscribers):
            sub._push(landmarks)
        return landmarks

    def subscribe(self) -> LandmarkSubscription:
        sub = LandmarkSubscription(self)
        self._subscribers.add(sub)
        return sub

    def close(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=False)
            self._executor = None
        self._ready = False
        self._subscribers.clear()

    @abstractmethod
    def _setup(self) -> None:
        """Load the model."""

    @abstractmethod
    def _process(self, frame: np.ndarray) -> Optional[np.ndarray]:
        """Run the model on one BGR frame."""


@dataclass
class FaceMeshConfig:
    max_num_faces: int = 1
    refine_landmarks: bool = True
    min_detection_confidence: float = 0.5
    min_tracking_confidence: float = 0.5
    static_image_mode: bool = False


class FaceMeshLandmarkSource(LandmarkSource):
    """MediaPipe FaceMesh detector (CPU/TFLite), imported lazily."""

    def __init__(self, cfg: Optional[FaceMeshConfig] = None) -> None:
        super().__init__()
        self.cfg = cfg or FaceMeshConfig()
        self._mesh = None

    def _setup(self) -> None:
        try:
            import mediapipe as mp  # type: ignore

            self._mesh = mp.solutions.face_mesh.FaceMesh(
                static_image_mode=self.cfg.static_image_mode,
                max_num_faces=self.cfg.max_num_faces,
                refine_landmarks=self.cfg.refine_landmarks,
                min_detection_confidence=self.cfg.min_detection_confidence,
                min_tracking_confidence=self.cfg.min_tracking_confidence,
            )
        except Exception as exc:  # pragma: no cover - optional path
            raise RuntimeError(f"Failed to initialize MediaPipe FaceMesh: {exc}") from exc

    def _process(self, frame: np.ndarray) -> Optional[np.ndarray]:
        import cv2

        if frame is None or frame.size == 0:
            return None
        rgb = cv2.cvtColor(frame, cv2.COLOR_BGR2RGB)
        rgb.flags.writeable = False
        results = self._mesh.process(rgb)  # type: ignore[union-attr]
        if not results.multi_face_landmarks:
            return None
        return as_landmarks(results.multi_face_landmarks[0].landmark)

    def close(self) -> None:
        if self._mesh is not None:
            self._mesh.close()
            self._mesh = None
        super().close()

