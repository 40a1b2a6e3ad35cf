from __future__ import annotations

import asyncio
from typing import Callable, List, Optional, Protocol, Sequence, Tuple

import numpy as np

from .config import DETECTION_INTERVAL_SECONDS, NO_FACE_ALERT_PASSES
from .encounters import EncounterStateMachine
from .exceptions import CompanionError
from .logger import setup_logger
from .models import DetectionResult, FaceDetection
from .notifier import VoiceNotifier

NO_FACE_TEXT = "No face detected. Please point the camera at someone."


class Camera(Protocol):
    def open(self) -> None: ...

    def close(self) -> None: ...

    def is_ready(self) -> bool: ...

    def capture(self) -> np.ndarray: ...

    def detect(self, frame: np.ndarray) -> Sequence[FaceDetection]: ...

    def snapshot(self, frame: np.ndarray) -> str: ...


class DetectionLoop:
    """Runs one detection pass every ``interval`` seconds while active.

    Passes never overlap: a tick that arrives while the previous pass is
    still running is dropped, not queued. Ticks before the camera is ready
    are skipped without touching the no-face counter.
    """

    def __init__(
        self,
        camera: Camera,
        machine: EncounterStateMachine,
        notifier: VoiceNotifier,
        interval: float = DETECTION_INTERVAL_SECONDS,
        no_face_threshold: int = NO_FACE_ALERT_PASSES,
    ):
        self.camera = camera
        self.machine = machine
        self.notifier = notifier
        self.interval = interval
        self.no_face_threshold = max(1, no_face_threshold)
        self.logger = setup_logger(self.__class__.__name__)

        self.active = False
        self.no_face_count = 0
        self.skipped_ticks = 0
        self.passes_run = 0
        self.last_error: Optional[str] = None

        self._ticker: Optional[asyncio.Task] = None
        self._pass_task: Optional[asyncio.Task] = None
        # Serializes camera and face-engine access between passes and manual captures.
        self._camera_lock = asyncio.Lock()
        self._detection_listeners: List[Callable[[DetectionResult], None]] = []
        self._fatal_listeners: List[Callable[[CompanionError], None]] = []

    @property
    def busy(self) -> bool:
        return self._pass_task is not None and not self._pass_task.done()

    def on_detection(self, callback: Callable[[DetectionResult], None]) -> None:
        self._detection_listeners.append(callback)

    def on_fatal_error(self, callback: Callable[[CompanionError], None]) -> None:
        self._fatal_listeners.append(callback)

    def start(self) -> bool:
        if self.active:
            return False
        self.active = True
        self.no_face_count = 0
        self.skipped_ticks = 0
        self.last_error = None
        self._ticker = asyncio.get_running_loop().create_task(self._run())
        self.logger.info("Detection loop started (every %.1fs)", self.interval)
        return True

    def stop(self) -> bool:
        """Cancel the timer and any pass in flight; a second call does nothing."""
        if not self.active:
            return False
        self.active = False
        if self._ticker is not None:
            self._ticker.cancel()
            self._ticker = None
        if self._pass_task is not None:
            if self._pass_task is not asyncio.current_task():
                self._pass_task.cancel()
            self._pass_task = None
        self.no_face_count = 0
        self.machine.reset()
        self.logger.info("Detection loop stopped")
        return True

    def tick(self) -> bool:
        """Launch a pass unless one is already running; returns True when launched."""
        if not self.active:
            return False
        if self.busy:
            self.skipped_ticks += 1
            self.logger.warning("Previous detection pass still running; tick skipped")
            return False
        self._pass_task = asyncio.get_running_loop().create_task(self._guarded_pass())
        return True

    async def _run(self) -> None:
        while self.active:
            await asyncio.sleep(self.interval)
            self.tick()

    async def _guarded_pass(self) -> None:
        try:
            await self.run_pass()
        except CompanionError as exc:
            self.last_error = str(exc)
            if exc.session_fatal:
                self.logger.error("Detection stopped: %s", exc)
                self.stop()
                for listener in list(self._fatal_listeners):
                    listener(exc)
            else:
                self.logger.warning("Detection pass failed: %s", exc)
        except Exception as exc:
            self.last_error = str(exc)
            self.logger.exception("Detection pass crashed")

    async def run_pass(self) -> Optional[DetectionResult]:
        async with self._camera_lock:
            ready = await asyncio.to_thread(self.camera.is_ready)
            if not ready:
                self.logger.debug("Camera not ready yet; pass skipped")
                return None
            frame = await asyncio.to_thread(self.camera.capture)
            faces = await asyncio.to_thread(self.camera.detect, frame)
            snapshot = await asyncio.to_thread(self.camera.snapshot, frame) if faces else ""

        if not self.active:
            return None
        self.passes_run += 1

        if not faces:
            self.no_face_count += 1
            self.logger.debug("No face in frame (%d consecutive)", self.no_face_count)
            if self.no_face_count == self.no_face_threshold:
                self.notifier.speak(NO_FACE_TEXT)
            await self.machine.process("", [])
            return None

        self.no_face_count = 0
        result = await self.machine.process(snapshot, faces)
        if result is None or not self.active:
            return None

        for listener in list(self._detection_listeners):
            listener(result)
        return result

    async def grab_face(self) -> Optional[Tuple[str, FaceDetection]]:
        """Read the current frame outside the cadence; returns the largest face or None."""
        async with self._camera_lock:
            frame = await asyncio.to_thread(self.camera.capture)
            faces = await asyncio.to_thread(self.camera.detect, frame)
            if not faces:
                return None
            snapshot = await asyncio.to_thread(self.camera.snapshot, frame)
        return snapshot, faces[0]
