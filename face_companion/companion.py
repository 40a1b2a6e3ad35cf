from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Callable, List, Optional

from .camera import CameraStream, FaceCamera
from .config import CAMERA_INDEX, DB_PATH, DETECTION_INTERVAL_SECONDS, NO_FACE_ALERT_PASSES, OWNER_ID
from .database import CompanionDatabase
from .detection_loop import Camera, DetectionLoop
from .encounters import EncounterStateMachine
from .enrichment import EnrichmentClient
from .exceptions import CameraError, CompanionError, SaveError
from .face_engine import load_face_engine
from .logger import setup_logger
from .models import DetectionResult, Encounter, KnownPerson, Task, TaskStatus
from .notifier import VoiceNotifier
from .reminders import TaskReminderScheduler
from .speech import Pyttsx3Speaker

READY_TEXT = (
    "Face recognition is ready. Start the camera to begin recognizing people. "
    "I will whisper their names to you when I see them."
)
CAMERA_ON_TEXT = "Camera activated. I will help you recognize people."
CAMERA_OFF_TEXT = "Camera deactivated."
AUDIO_ON_TEXT = "Audio guidance enabled."


def default_camera_factory(camera_index: int = CAMERA_INDEX) -> Callable[[], Camera]:
    def _build() -> FaceCamera:
        return FaceCamera(CameraStream(camera_index=camera_index), load_face_engine())

    return _build


class CompanionService:
    """Caller-facing surface tying the detection loop, save workflow and reminders together.

    The camera capability (and with it the face models) is built lazily on the
    first ``load``/``start_loop`` call; a model or camera failure there is
    session fatal and propagates to the caller.
    """

    def __init__(
        self,
        db: CompanionDatabase,
        notifier: VoiceNotifier,
        enrichment: EnrichmentClient,
        camera_factory: Callable[[], Camera],
        owner_id: str = OWNER_ID,
        machine: Optional[EncounterStateMachine] = None,
        scheduler: Optional[TaskReminderScheduler] = None,
        interval: float = DETECTION_INTERVAL_SECONDS,
        no_face_threshold: int = NO_FACE_ALERT_PASSES,
    ):
        self.db = db
        self.notifier = notifier
        self.enrichment = enrichment
        self.camera_factory = camera_factory
        self.owner_id = owner_id
        self.machine = machine or EncounterStateMachine(db, notifier, enrichment, owner_id=owner_id)
        self.scheduler = scheduler or TaskReminderScheduler(notifier)
        if self.scheduler.task_source is None:
            self.scheduler.task_source = self._load_tasks
        self.interval = interval
        self.no_face_threshold = no_face_threshold
        self.logger = setup_logger(self.__class__.__name__)

        self.camera: Optional[Camera] = None
        self.loop: Optional[DetectionLoop] = None
        self.last_detection: Optional[DetectionResult] = None
        self.last_error: Optional[str] = None
        self._detection_listeners: List[Callable[[DetectionResult], None]] = []
        self._load_lock = asyncio.Lock()

        self.machine.on_error(self._on_background_error)

    @property
    def loaded(self) -> bool:
        return self.loop is not None

    @property
    def loop_active(self) -> bool:
        return self.loop is not None and self.loop.active

    def on_detection(self, callback: Callable[[DetectionResult], None]) -> None:
        self._detection_listeners.append(callback)

    async def load(self) -> None:
        async with self._load_lock:
            if self.loop is not None:
                return
            try:
                camera = await asyncio.to_thread(self.camera_factory)
            except CompanionError as exc:
                self.last_error = str(exc)
                self.logger.error("Face recognition unavailable: %s", exc)
                raise
            await asyncio.to_thread(self.machine.refresh_registry)

            loop = DetectionLoop(
                camera,
                self.machine,
                self.notifier,
                interval=self.interval,
                no_face_threshold=self.no_face_threshold,
            )
            loop.on_detection(self._on_detection)
            loop.on_fatal_error(self._on_fatal_error)
            self.camera = camera
            self.loop = loop
            self.logger.info("Face recognition ready")
            self.notifier.speak(READY_TEXT)

    async def start_loop(self) -> bool:
        await self.load()
        if self.loop.active:
            return False
        try:
            await asyncio.to_thread(self.camera.open)
        except CameraError as exc:
            self.last_error = str(exc)
            self.logger.error("Camera could not be started: %s", exc)
            raise
        self.last_error = None
        self.loop.start()
        self.notifier.speak(CAMERA_ON_TEXT)
        return True

    async def stop_loop(self) -> bool:
        if self.loop is None or not self.loop.stop():
            return False
        await asyncio.to_thread(self.camera.close)
        self.notifier.speak(CAMERA_OFF_TEXT)
        return True

    async def capture_now(self) -> dict:
        """Hold the face currently in view for saving, without narration."""
        if not self.loop_active:
            raise SaveError("Start the camera before capturing a face.")
        grabbed = await self.loop.grab_face()
        if grabbed is None:
            raise SaveError("No face found in the current frame. Please try again.")
        snapshot, face = grabbed
        self.machine.capture(snapshot, face)
        self.logger.info("Face captured manually for saving")
        return self.pending_state()

    def request_save(self) -> dict:
        self.machine.request_save()
        return self.pending_state()

    async def confirm_save(self, name: str, relationship: Optional[str] = None) -> KnownPerson:
        person = await self.machine.confirm_save(name, relationship)
        await asyncio.to_thread(self.machine.refresh_registry)
        return person

    def cancel_save(self) -> None:
        self.machine.cancel_save()

    def set_audio_enabled(self, enabled: bool) -> bool:
        was_enabled = self.notifier.enabled
        self.notifier.set_enabled(enabled)
        if enabled and not was_enabled:
            self.notifier.speak(AUDIO_ON_TEXT)
        return self.notifier.enabled

    async def start_reminders(self, enabled: bool = True, lead_minutes: Optional[int] = None) -> None:
        tasks = await asyncio.to_thread(self._load_tasks)
        self.scheduler.start(tasks, enabled=enabled, lead_minutes=lead_minutes)

    def stop_reminders(self) -> None:
        self.scheduler.stop()

    async def remind_now(self, task_id: str) -> Optional[bool]:
        task = await asyncio.to_thread(self.db.get_task, task_id)
        if task is None:
            return None
        return self.scheduler.remind_now(task)

    def reset_reminders(self) -> None:
        self.scheduler.reset_reminders()

    async def add_task(
        self,
        name: str,
        scheduled_time: datetime | str,
        location: Optional[str] = None,
        description: Optional[str] = None,
    ) -> Task:
        task = await asyncio.to_thread(
            self.db.create_task, self.owner_id, name, scheduled_time, location, description
        )
        await self._push_tasks()
        return task

    async def set_task_status(self, task_id: str, status: TaskStatus | str) -> Optional[Task]:
        task = await asyncio.to_thread(self.db.set_task_status, task_id, status)
        if task is not None:
            await self._push_tasks()
        return task

    async def delete_task(self, task_id: str) -> bool:
        deleted = await asyncio.to_thread(self.db.delete_task, task_id)
        if deleted:
            await self._push_tasks()
        return deleted

    async def list_tasks(self, status: Optional[TaskStatus | str] = None) -> List[Task]:
        return await asyncio.to_thread(self.db.list_tasks, self.owner_id, status)

    async def list_people(self) -> List[KnownPerson]:
        return await asyncio.to_thread(self.db.list_known_people, self.owner_id)

    async def list_encounters(self, limit: int = 50) -> List[Encounter]:
        return await asyncio.to_thread(self.db.list_encounters, self.owner_id, limit)

    def pending_state(self) -> Optional[dict]:
        pending = self.machine.pending
        if pending is None:
            return None
        return {
            "captured_at": pending.captured_at.isoformat(timespec="seconds"),
            "preview_b64": pending.image_b64,
        }

    def get_state(self) -> dict:
        last_spoken = self.notifier.last_spoken
        return {
            "loaded": self.loaded,
            "loop_active": self.loop_active,
            "encounter_state": self.machine.state.value,
            "current": self.machine.current.to_dict() if self.machine.current else None,
            "last_detection": self.last_detection.to_dict() if self.last_detection else None,
            "pending": self.pending_state(),
            "no_face_count": self.loop.no_face_count if self.loop else 0,
            "skipped_ticks": self.loop.skipped_ticks if self.loop else 0,
            "audio_enabled": self.notifier.enabled,
            "is_speaking": self.notifier.is_speaking,
            "last_spoken": last_spoken.text if last_spoken else None,
            "reminders_running": self.scheduler.running,
            "reminded_task_ids": sorted(self.scheduler.reminded),
            "known_count": len(self.machine.registry),
            "error": self.last_error,
        }

    async def close(self) -> None:
        await self.stop_loop()
        self.scheduler.stop()
        self.notifier.stop()
        self.enrichment.close()
        close_speaker = getattr(self.notifier.speaker, "close", None)
        if callable(close_speaker):
            close_speaker()

    def _load_tasks(self) -> List[Task]:
        return self.db.list_tasks(self.owner_id)

    async def _push_tasks(self) -> None:
        tasks = await asyncio.to_thread(self._load_tasks)
        self.scheduler.update_tasks(tasks)

    def _on_detection(self, result: DetectionResult) -> None:
        self.last_detection = result
        for listener in list(self._detection_listeners):
            listener(result)

    def _on_fatal_error(self, exc: CompanionError) -> None:
        self.last_error = str(exc)
        if self.camera is not None:
            self.camera.close()

    def _on_background_error(self, exc: CompanionError) -> None:
        self.last_error = str(exc)


def build_companion(camera_index: int = CAMERA_INDEX) -> CompanionService:
    """Wire the production capabilities: sqlite store, pyttsx3 voice, Gemini enrichment, webcam."""
    db = CompanionDatabase(DB_PATH)
    notifier = VoiceNotifier(Pyttsx3Speaker())
    return CompanionService(
        db=db,
        notifier=notifier,
        enrichment=EnrichmentClient(),
        camera_factory=default_camera_factory(camera_index),
    )
