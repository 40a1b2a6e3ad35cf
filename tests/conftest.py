import asyncio
import os
import tempfile
import time
from pathlib import Path

_SCRATCH = Path(tempfile.mkdtemp(prefix="face-companion-tests-"))
os.environ.setdefault("COMPANION_LOG_DIR", str(_SCRATCH / "logs"))
os.environ.setdefault("COMPANION_DATA_DIR", str(_SCRATCH / "data"))
os.environ["GEMINI_API_KEY"] = ""

import numpy as np
import pytest

from face_companion.database import CompanionDatabase
from face_companion.encounters import EncounterStateMachine
from face_companion.models import FaceDetection
from face_companion.notifier import VoiceNotifier


class FakeSpeaker:
    def __init__(self):
        self.spoken: list[str] = []
        self.cancels = 0
        self.is_speaking = False

    def speak(self, text, options=None):
        self.spoken.append(text)
        self.is_speaking = True

    def cancel(self):
        self.cancels += 1
        self.is_speaking = False


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeEnrichment:
    def __init__(self, text: str = "is nearby", delay: float = 0.0):
        self.text = text
        self.delay = delay
        self.calls: list = []
        self.closed = False

    async def describe(self, image_b64, person_name=None):
        self.calls.append(person_name)
        if self.delay:
            await asyncio.sleep(self.delay)
        return self.text

    def close(self):
        self.closed = True


class FakeCamera:
    """Replays a script of detection results; each entry is a list of faces."""

    def __init__(self, script=None, ready: bool = True, detect_delay: float = 0.0):
        self.script = list(script or [])
        self.ready = ready
        self.detect_delay = detect_delay
        self.opened = False
        self.closed = False
        self.detect_calls = 0

    def open(self):
        self.opened = True
        self.closed = False

    def close(self):
        self.closed = True
        self.opened = False

    def is_ready(self):
        return self.ready

    def capture(self):
        return np.zeros((4, 4, 3), dtype=np.uint8)

    def detect(self, frame):
        self.detect_calls += 1
        if self.detect_delay:
            time.sleep(self.detect_delay)
        if not self.script:
            return []
        if len(self.script) == 1:
            return list(self.script[0])
        return list(self.script.pop(0))

    def snapshot(self, frame):
        return "c25hcHNob3Q="


def face(*values: float) -> FaceDetection:
    return FaceDetection(
        box=np.array([0, 0, 80, 80], dtype=np.float32),
        embedding=np.array(values, dtype=np.float32),
        confidence=0.9,
    )


@pytest.fixture
def speaker() -> FakeSpeaker:
    return FakeSpeaker()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def notifier(speaker, clock, tmp_path) -> VoiceNotifier:
    return VoiceNotifier(
        speaker,
        cooldown_seconds=3.0,
        preferences_path=tmp_path / "preferences.json",
        clock=clock,
    )


@pytest.fixture
def db(tmp_path) -> CompanionDatabase:
    return CompanionDatabase(tmp_path / "companion.db")


@pytest.fixture
def enrichment() -> FakeEnrichment:
    return FakeEnrichment()


@pytest.fixture
def machine(db, notifier, enrichment) -> EncounterStateMachine:
    return EncounterStateMachine(db, notifier, enrichment, owner_id="owner-1", save_prompt_delay=0.05)
