"""Camera capture utilities (OpenCV-based)."""

from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass
from typing import Optional, Protocol

import numpy as np

from .errors import CameraUnavailableError

logger = logging.getLogger(__name__)


@dataclass
class CaptureConfig:
    device_index: int = 0
    width: int = 640
    height: int = 480
    fps: int = 30


class FrameSource(Protocol):
    """Read-only access to a live video stream.

    Several readers may share one source; frames are BGR uint8 arrays.
    `read_frame` may block until the device delivers a frame, so coroutines
    go through `next_frame`.
    """

    @property
    def is_open(self) -> bool: ...

    def read_frame(self) -> Optional[np.ndarray]:
        """Return the current frame, or None when none is available."""
        ...

    def release(self) -> None: ...


async def next_frame(frames: FrameSource) -> Optional[np.ndarray]:
    """Read one frame on a worker thread, keeping the event loop free."""
    return await asyncio.to_thread(frames.read_frame)


class CameraStream:
    """Thin wrapper around OpenCV VideoCapture.

    Imports cv2 lazily to avoid import-time side effects in non-camera contexts.
    Reads and release are serialized by a lock, since readers run on worker
    threads.
    """

    def __init__(self, cfg: Optional[CaptureConfig] = None) -> None:
        self.cfg = cfg or CaptureConfig()
        self._cap = None
        self._lock = threading.Lock()

    @property
    def is_open(self) -> bool:
        return self._cap is not None

    def open(self) -> None:
        import cv2  # local import

        cap = cv2.VideoCapture(self.cfg.device_index)
        if not cap.isOpened():
            cap.release()
            raise CameraUnavailableError(
                f"Failed to open camera {self.cfg.device_index}"
            )
        # Set properties (best-effort)
        cap.set(cv2.CAP_PROP_FRAME_WIDTH, self.cfg.width)
        cap.set(cv2.CAP_PROP_FRAME_HEIGHT, self.cfg.height)
        cap.set(cv2.CAP_PROP_FPS, self.cfg.fps)
        self._cap = cap
        logger.info("Camera %d opened", self.cfg.device_index)

    def read_frame(self) -> Optional[np.ndarray]:
        with self._lock:
            if self._cap is None:
                return None
            ok, frame = self._cap.read()
        return frame if ok else None

    def release(self) -> None:
        with self._lock:
            cap, self._cap = self._cap, None
        if cap is not None:
            cap.release()
            logger.info("Camera %d released", self.cfg.device_index)


def open_camera(cfg: Optional[CaptureConfig] = None) -> CameraStream:
    """Open the default camera; raises CameraUnavailableError on failure."""
    stream = CameraStream(cfg)
    stream.open()
    return stream
