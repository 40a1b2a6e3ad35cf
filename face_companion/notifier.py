from __future__ import annotations

import json
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, Protocol

from .config import PREFERENCES_PATH, SPEECH_COOLDOWN_SECONDS
from .logger import setup_logger
from .speech import SpeechOptions


class Speaker(Protocol):
    @property
    def is_speaking(self) -> bool: ...

    def speak(self, text: str, options: SpeechOptions = ...) -> None: ...

    def cancel(self) -> None: ...


@dataclass(frozen=True)
class SpokenRecord:
    text: str
    started_at: float


class VoiceNotifier:
    """Single spoken-notification channel shared by recognition and reminders.

    At most one utterance plays: every accepted request cancels whatever is
    playing and starts immediately. A request repeating the last text inside
    the cooldown window is dropped. The enabled flag is persisted to
    ``preferences_path`` and gates every request.
    """

    def __init__(
        self,
        speaker: Speaker,
        cooldown_seconds: float = SPEECH_COOLDOWN_SECONDS,
        preferences_path: Optional[Path] = PREFERENCES_PATH,
        options: SpeechOptions = SpeechOptions(),
        clock: Callable[[], float] = time.monotonic,
    ):
        self.speaker = speaker
        self.cooldown_seconds = cooldown_seconds
        self.preferences_path = Path(preferences_path) if preferences_path is not None else None
        self.options = options
        self.clock = clock
        self.logger = setup_logger(self.__class__.__name__)
        self.last_spoken: Optional[SpokenRecord] = None
        self._enabled = self._load_enabled()

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def is_speaking(self) -> bool:
        return bool(self.speaker.is_speaking)

    def speak(self, text: str) -> bool:
        """Start speaking ``text``; returns False when the request was dropped."""
        if not self._enabled or not text or not text.strip():
            return False

        now = self.clock()
        last = self.last_spoken
        if last is not None and last.text == text and (now - last.started_at) < self.cooldown_seconds:
            self.logger.debug("Duplicate notification within cooldown skipped: %s", text)
            return False

        self.speaker.cancel()
        self.last_spoken = SpokenRecord(text=text, started_at=now)
        self.logger.info("Speaking: %s", text)
        self.speaker.speak(text, self.options)
        return True

    def stop(self) -> None:
        self.speaker.cancel()

    def set_enabled(self, enabled: bool) -> None:
        enabled = bool(enabled)
        changed = enabled != self._enabled
        self._enabled = enabled
        if not enabled:
            self.speaker.cancel()
        if changed:
            self._save_enabled()
            self.logger.info("Voice notifications %s", "enabled" if enabled else "disabled")

    def _load_enabled(self) -> bool:
        if self.preferences_path is None or not self.preferences_path.exists():
            return True
        try:
            data = json.loads(self.preferences_path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            self.logger.warning("Ignoring unreadable preferences file %s: %s", self.preferences_path, exc)
            return True
        return bool(data.get("audio_enabled", True))

    def _save_enabled(self) -> None:
        if self.preferences_path is None:
            return
        data: dict = {}
        if self.preferences_path.exists():
            try:
                data = json.loads(self.preferences_path.read_text(encoding="utf-8"))
            except (OSError, ValueError):
                data = {}
        data["audio_enabled"] = self._enabled
        self.preferences_path.parent.mkdir(parents=True, exist_ok=True)
        self.preferences_path.write_text(json.dumps(data, indent=2), encoding="utf-8")
