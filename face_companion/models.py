from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional

import numpy as np


class TaskStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    SKIPPED = "skipped"


@dataclass
class KnownPerson:
    id: str
    name: str
    relationship: Optional[str] = None
    # Serialized JSON list exactly as stored; parsed per match so one bad row cannot break the rest.
    face_encoding: Optional[str] = None
    photo: Optional[str] = None
    owner_id: str = ""
    created_at: str = ""
    updated_at: str = ""


@dataclass
class Task:
    id: str
    name: str
    scheduled_time: datetime
    location: Optional[str] = None
    status: TaskStatus = TaskStatus.PENDING
    description: Optional[str] = None
    owner_id: str = ""
    completed_at: Optional[str] = None
    created_at: str = ""
    updated_at: str = ""

    @property
    def is_pending(self) -> bool:
        return self.status == TaskStatus.PENDING


@dataclass
class Encounter:
    id: str
    owner_id: str
    encounter_time: str
    action: str = "detected"
    snapshot: Optional[str] = None
    saved_as_known: bool = False
    notes: Optional[str] = None


@dataclass
class FaceDetection:
    box: np.ndarray
    embedding: np.ndarray
    confidence: float = 0.0


@dataclass
class FaceBatch:
    embeddings: list[np.ndarray]
    boxes: list[np.ndarray]
    confidences: list[float]

    def detections(self) -> list[FaceDetection]:
        return [
            FaceDetection(box=box, embedding=emb, confidence=conf)
            for emb, box, conf in zip(self.embeddings, self.boxes, self.confidences)
        ]


@dataclass(frozen=True)
class MatchResult:
    is_known: bool
    person_id: Optional[str] = None
    name: Optional[str] = None
    confidence: Optional[int] = None
    distance: Optional[float] = None


@dataclass
class DetectionResult:
    is_known: bool
    name: Optional[str] = None
    confidence: Optional[int] = None
    person_id: Optional[str] = None
    enrichment: Optional[str] = None
    can_save: bool = False

    def to_dict(self) -> dict:
        return {
            "is_known": self.is_known,
            "name": self.name,
            "confidence": self.confidence,
            "person_id": self.person_id,
            "enrichment": self.enrichment,
            "can_save": self.can_save,
        }


@dataclass
class PendingCapture:
    image_b64: str
    embedding: np.ndarray
    captured_at: datetime = field(default_factory=datetime.now)
