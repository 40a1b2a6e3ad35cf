from __future__ import annotations

import asyncio
from enum import Enum
from typing import Callable, List, Optional, Sequence

from .config import MATCH_DISTANCE_THRESHOLD, OWNER_ID, SAVE_PROMPT_DELAY_SECONDS
from .database import CompanionDatabase
from .enrichment import EnrichmentClient
from .exceptions import CompanionError, DatabaseError, SaveError
from .logger import setup_logger
from .matcher import match, serialize_embedding
from .models import DetectionResult, FaceDetection, KnownPerson, PendingCapture
from .notifier import VoiceNotifier

NEW_PERSON_LEAD = "You are meeting someone new."
NEW_PERSON_SUBJECT = "The new person"
SAVE_PROMPT_TEXT = "Would you like to save this person? Tap the Save This Person button."


class EncounterState(str, Enum):
    SCANNING = "scanning"
    KNOWN = "known"
    UNKNOWN = "unknown"
    SAVE_CANDIDATE = "save_candidate"


def compose_notification(lead: str, subject: str, enrichment: Optional[str]) -> str:
    """Merge the lead sentence and enrichment into one utterance."""
    text = (enrichment or "").strip()
    if not text:
        return lead
    # Predicate-only descriptions ("is nearby") need a subject.
    if text[0].islower():
        text = f"{subject} {text}"
    if text[-1] not in ".!?":
        text += "."
    return f"{lead} {text}"


class EncounterStateMachine:
    def __init__(
        self,
        db: CompanionDatabase,
        notifier: VoiceNotifier,
        enrichment: EnrichmentClient,
        owner_id: str = OWNER_ID,
        threshold: float = MATCH_DISTANCE_THRESHOLD,
        save_prompt_delay: float = SAVE_PROMPT_DELAY_SECONDS,
    ):
        self.db = db
        self.notifier = notifier
        self.enrichment = enrichment
        self.owner_id = owner_id
        self.threshold = threshold
        self.save_prompt_delay = save_prompt_delay
        self.logger = setup_logger(self.__class__.__name__)

        self.state = EncounterState.SCANNING
        self.current: Optional[DetectionResult] = None
        self.pending: Optional[PendingCapture] = None
        self.registry: List[KnownPerson] = []

        self._generation = 0
        self._save_prompt: Optional[asyncio.TimerHandle] = None
        # The save prompt is offered once per continuous run of unknown passes.
        self._save_prompt_offered = False
        self._log_tasks: set[asyncio.Task] = set()
        self._error_listeners: List[Callable[[CompanionError], None]] = []

    def refresh_registry(self) -> None:
        self.registry = self.db.list_known_people(self.owner_id)
        self.logger.info(
            "Loaded %d known people (%d with face data)",
            len(self.registry),
            sum(1 for person in self.registry if person.face_encoding),
        )

    def on_error(self, listener: Callable[[CompanionError], None]) -> None:
        self._error_listeners.append(listener)

    async def process(self, snapshot_b64: str, faces: Sequence[FaceDetection]) -> Optional[DetectionResult]:
        """Evaluate one detection pass from scratch; returns None when no face was seen."""
        holding_capture = self.state == EncounterState.SAVE_CANDIDATE
        if not holding_capture:
            self.state = EncounterState.SCANNING
        self.current = None

        if not faces:
            self._end_unknown_streak()
            return None

        generation = self._generation
        face = faces[0]
        outcome = match(face.embedding, self.registry, threshold=self.threshold)

        if outcome.is_known:
            self._end_unknown_streak()
            if not holding_capture:
                self.state = EncounterState.KNOWN
                self.pending = None
            self.logger.info("Known face: %s (confidence %s%%)", outcome.name, outcome.confidence)
            enrichment = await self.enrichment.describe(snapshot_b64, outcome.name)
            if generation != self._generation:
                return None
            result = DetectionResult(
                is_known=True,
                name=outcome.name,
                confidence=outcome.confidence,
                person_id=outcome.person_id,
                enrichment=enrichment,
            )
            self.current = result
            self.notifier.speak(compose_notification(f"This is {outcome.name}.", outcome.name, enrichment))
            return result

        if not holding_capture:
            self.state = EncounterState.UNKNOWN
            self.pending = PendingCapture(image_b64=snapshot_b64, embedding=face.embedding)
        self.logger.info("Unknown face detected")
        enrichment = await self.enrichment.describe(snapshot_b64, None)
        if generation != self._generation:
            return None

        result = DetectionResult(is_known=False, confidence=0, enrichment=enrichment, can_save=True)
        self.current = result
        self.notifier.speak(compose_notification(NEW_PERSON_LEAD, NEW_PERSON_SUBJECT, enrichment))
        self._start_encounter_log()
        if not holding_capture and not self._save_prompt_offered:
            self._schedule_save_prompt(generation)
        return result

    def capture(self, snapshot_b64: str, face: FaceDetection) -> None:
        """Hold ``face`` for saving without narrating it."""
        self._cancel_save_prompt()
        self.pending = PendingCapture(image_b64=snapshot_b64, embedding=face.embedding)
        self.state = EncounterState.SAVE_CANDIDATE

    def request_save(self) -> None:
        if self.state == EncounterState.SAVE_CANDIDATE:
            return
        if self.pending is None:
            raise SaveError("There is no unknown face to save right now.")
        self._cancel_save_prompt()
        self.state = EncounterState.SAVE_CANDIDATE

    async def confirm_save(self, name: str, relationship: Optional[str] = None) -> KnownPerson:
        """Persist the pending capture as a known person.

        On failure the machine stays in SAVE_CANDIDATE with the same capture so
        the caller can retry.
        """
        self.request_save()

        name = (name or "").strip()
        if not name:
            raise SaveError("Please enter a name for this person.")
        relationship = (relationship or "").strip() or None

        pending = self.pending
        try:
            encoding = serialize_embedding(pending.embedding)
        except ValueError as exc:
            raise SaveError(f"Captured face data is unusable: {exc}") from exc

        try:
            person = await asyncio.to_thread(
                self.db.create_known_person,
                self.owner_id,
                name,
                relationship,
                encoding,
                pending.image_b64 or None,
            )
        except DatabaseError as exc:
            self.logger.exception("Saving %s failed", name)
            raise SaveError(f"Could not save {name}. Please try again.") from exc

        if self.pending is pending:
            self.pending = None
            self.state = EncounterState.SCANNING
        self.registry = [person] + [p for p in self.registry if p.id != person.id]
        self.logger.info("Saved new known person %s (%s)", person.name, person.id)
        self.notifier.speak(f"I will remember {person.name} from now on.")
        return person

    def cancel_save(self) -> None:
        self._end_unknown_streak()
        self.pending = None
        self.state = EncounterState.SCANNING

    def reset(self) -> None:
        """Drop all per-session state; results of passes still in flight are discarded."""
        self._generation += 1
        self._end_unknown_streak()
        self.pending = None
        self.current = None
        self.state = EncounterState.SCANNING

    async def wait_for_logs(self) -> None:
        if self._log_tasks:
            await asyncio.gather(*list(self._log_tasks), return_exceptions=True)

    def _start_encounter_log(self) -> None:
        task = asyncio.get_running_loop().create_task(self._log_encounter())
        self._log_tasks.add(task)
        task.add_done_callback(self._log_tasks.discard)

    async def _log_encounter(self) -> None:
        try:
            await asyncio.to_thread(self.db.create_encounter, self.owner_id, "detected")
        except DatabaseError as exc:
            self.logger.exception("Unknown encounter could not be logged")
            for listener in list(self._error_listeners):
                listener(exc)

    def _schedule_save_prompt(self, generation: int) -> None:
        if self.save_prompt_delay <= 0:
            return
        self._save_prompt_offered = True
        loop = asyncio.get_running_loop()
        self._save_prompt = loop.call_later(self.save_prompt_delay, self._fire_save_prompt, generation)

    def _fire_save_prompt(self, generation: int) -> None:
        self._save_prompt = None
        if generation != self._generation or self.state != EncounterState.UNKNOWN:
            return
        self.notifier.speak(SAVE_PROMPT_TEXT)

    def _end_unknown_streak(self) -> None:
        self._cancel_save_prompt()
        self._save_prompt_offered = False

    def _cancel_save_prompt(self) -> None:
        if self._save_prompt is not None:
            self._save_prompt.cancel()
            self._save_prompt = None
