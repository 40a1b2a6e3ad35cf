from __future__ import annotations

import base64
import os
import threading
from typing import List, Optional, Tuple

import cv2
import numpy as np

from .config import (
    CAMERA_BACKEND_ORDER,
    CAMERA_MIN_READY_FRAMES,
    FRAME_FPS,
    FRAME_HEIGHT,
    FRAME_WIDTH,
    SNAPSHOT_JPEG_QUALITY,
)
from .exceptions import CameraError, FrameReadError
from .face_engine import FaceEngine
from .logger import setup_logger
from .models import FaceDetection

_BACKEND_ALIASES = {
    "auto": "Auto",
    "any": "Auto",
    "dshow": "DirectShow",
    "directshow": "DirectShow",
    "msmf": "Media Foundation",
    "mediafoundation": "Media Foundation",
    "v4l2": "V4L2",
}


def _preferred_backend_order() -> list[str]:
    if not CAMERA_BACKEND_ORDER:
        if os.name == "nt":
            return ["DirectShow", "Media Foundation", "Auto"]
        return ["Auto", "V4L2"]
    result: list[str] = []
    for item in CAMERA_BACKEND_ORDER:
        name = _BACKEND_ALIASES.get(item.strip().lower())
        if name and name not in result:
            result.append(name)
    return result or ["Auto"]


def capture_backends() -> List[Tuple[str, int | None]]:
    backend_map: dict[str, int | None] = {
        "Auto": getattr(cv2, "CAP_ANY", None),
        "DirectShow": getattr(cv2, "CAP_DSHOW", None),
        "Media Foundation": getattr(cv2, "CAP_MSMF", None),
        "V4L2": getattr(cv2, "CAP_V4L2", None),
    }
    candidates: List[Tuple[str, int | None]] = []
    seen: set[int | None] = set()
    for name in _preferred_backend_order():
        backend = backend_map.get(name)
        if backend in seen:
            continue
        seen.add(backend)
        candidates.append((name, backend))
    return candidates


def encode_jpeg_b64(frame: np.ndarray, quality: int = SNAPSHOT_JPEG_QUALITY) -> str:
    if frame is None or frame.size == 0:
        return ""
    ok, encoded = cv2.imencode(".jpg", frame, [int(cv2.IMWRITE_JPEG_QUALITY), int(quality)])
    if not ok:
        return ""
    return base64.b64encode(encoded.tobytes()).decode("utf-8")


class CameraStream:
    def __init__(self, camera_index: int = 0, min_ready_frames: int = CAMERA_MIN_READY_FRAMES):
        self.camera_index = camera_index
        self.min_ready_frames = max(1, min_ready_frames)
        self.cap: Optional[cv2.VideoCapture] = None
        self.backend_name: Optional[str] = None
        self.frames_read = 0
        self.last_frame: Optional[np.ndarray] = None
        self.lock = threading.Lock()
        self.logger = setup_logger(self.__class__.__name__)

    def __enter__(self) -> "CameraStream":
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    @property
    def is_open(self) -> bool:
        return self.cap is not None

    def open(self) -> None:
        if self.cap is not None:
            return

        attempted: List[str] = []
        for backend_name, backend in capture_backends():
            attempted.append(backend_name)
            cap = cv2.VideoCapture(self.camera_index) if backend is None else cv2.VideoCapture(self.camera_index, backend)
            if cap.isOpened():
                cap.set(cv2.CAP_PROP_FRAME_WIDTH, FRAME_WIDTH)
                cap.set(cv2.CAP_PROP_FRAME_HEIGHT, FRAME_HEIGHT)
                cap.set(cv2.CAP_PROP_FPS, FRAME_FPS)
                self.cap = cap
                self.backend_name = backend_name
                self.frames_read = 0
                self.last_frame = None
                self.logger.info("Camera %s opened with %s backend", self.camera_index, backend_name)
                return
            cap.release()

        tried = ", ".join(attempted) if attempted else "default backend"
        raise CameraError(
            f"Unable to open camera index {self.camera_index}. Check permissions and connection. Tried: {tried}."
        )

    def read(self) -> np.ndarray:
        with self.lock:
            if self.cap is None:
                raise CameraError("Camera stream is not initialized.")

            success, frame = self.cap.read()
            if not success or frame is None:
                raise FrameReadError("Failed to read frame from camera.")
            self.frames_read += 1
            self.last_frame = frame
            return frame

    def is_ready(self) -> bool:
        """True once a non-empty frame arrived and enough frames were buffered."""
        if self.cap is None:
            return False
        try:
            frame = self.read()
        except CameraError:
            return False
        h, w = frame.shape[:2]
        return h > 0 and w > 0 and self.frames_read >= self.min_ready_frames

    def close(self) -> None:
        with self.lock:
            if self.cap is not None:
                self.cap.release()
                self.cap = None
            self.last_frame = None
            self.frames_read = 0


class FaceCamera:
    """Camera capability used by the detection loop: readiness plus per-frame faces."""

    def __init__(self, stream: CameraStream, engine: FaceEngine):
        self.stream = stream
        self.engine = engine

    def open(self) -> None:
        self.stream.open()

    def close(self) -> None:
        self.stream.close()

    def is_ready(self) -> bool:
        return self.stream.is_ready()

    def capture(self) -> np.ndarray:
        return self.stream.read()

    def detect(self, frame: np.ndarray) -> list[FaceDetection]:
        return self.engine.extract_embeddings(frame).detections()

    def snapshot(self, frame: np.ndarray) -> str:
        return encode_jpeg_b64(frame)

