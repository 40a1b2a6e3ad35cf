from __future__ import annotations

import queue
import threading
from dataclasses import dataclass
from typing import Optional, Sequence

import pyttsx3

from .config import SPEECH_BASE_WPM, SPEECH_PITCH, SPEECH_RATE, SPEECH_VOICE_HINTS, SPEECH_VOLUME
from .exceptions import SpeechUnavailableError
from .logger import setup_logger


@dataclass(frozen=True)
class SpeechOptions:
    rate: float = SPEECH_RATE
    pitch: float = SPEECH_PITCH
    volume: float = SPEECH_VOLUME
    voice_hints: Sequence[str] = SPEECH_VOICE_HINTS


def _voice_language(voice) -> str:
    languages = getattr(voice, "languages", None) or []
    for lang in languages:
        if isinstance(lang, bytes):
            lang = lang.decode("utf-8", errors="ignore")
        return str(lang).lstrip("\x05").lower()
    return ""


def pick_voice(voices, hints: Sequence[str]) -> Optional[str]:
    """Prefer an English voice whose name matches a hint, then any English voice."""
    english = [v for v in voices if _voice_language(v).startswith("en") or "english" in str(v.name).lower()]
    for voice in english or list(voices):
        if any(hint.lower() in str(voice.name).lower() for hint in hints):
            return voice.id
    if english:
        return english[0].id
    return None


class Pyttsx3Speaker:
    """Speech capability backed by a pyttsx3 engine living on its own worker thread.

    ``speak`` returns immediately; playback happens on the worker. ``cancel``
    drops anything queued and stops the utterance in progress, including one
    the worker has picked up but the driver has not started yet.
    """

    def __init__(self, base_wpm: int = SPEECH_BASE_WPM, init_timeout: float = 10.0):
        self.base_wpm = base_wpm
        self.logger = setup_logger(self.__class__.__name__)
        self._requests: "queue.Queue[Optional[tuple[int, str, SpeechOptions]]]" = queue.Queue()
        self._busy = threading.Event()
        self._ready = threading.Event()
        self._lock = threading.Lock()
        self._generation = 0
        self._init_error: Optional[BaseException] = None
        self._engine = None
        self._voice_cache: dict[tuple[str, ...], Optional[str]] = {}

        self._worker = threading.Thread(target=self._run, name="companion-speech", daemon=True)
        self._worker.start()
        if not self._ready.wait(timeout=init_timeout):
            raise SpeechUnavailableError("Text-to-speech engine did not start in time.")
        if self._init_error is not None:
            raise SpeechUnavailableError(f"Text-to-speech is not available: {self._init_error}") from self._init_error

    @property
    def is_speaking(self) -> bool:
        return self._busy.is_set()

    def speak(self, text: str, options: SpeechOptions = SpeechOptions()) -> None:
        with self._lock:
            self._requests.put((self._generation, text, options))

    def cancel(self) -> None:
        with self._lock:
            self._generation += 1
            while True:
                try:
                    self._requests.get_nowait()
                except queue.Empty:
                    break
            if self._engine is not None and self._busy.is_set():
                self._engine.stop()

    def close(self) -> None:
        self.cancel()
        self._requests.put(None)
        self._worker.join(timeout=3.0)

    def _run(self) -> None:
        try:
            engine = pyttsx3.init()
            self._engine = engine
        except Exception as exc:
            self._init_error = exc
            self._ready.set()
            return
        self._ready.set()

        while True:
            item = self._requests.get()
            if item is None:
                break
            generation, text, options = item
            self._busy.set()
            try:
                self._apply_options(options)
                # A cancel after this point finds the utterance queued or playing and stops it.
                with self._lock:
                    if generation != self._generation:
                        self.logger.debug("Dropped cancelled utterance %r", text)
                        continue
                    engine.say(text)
                engine.runAndWait()
            except Exception:
                self.logger.exception("Speech playback failed for %r", text)
            finally:
                self._busy.clear()

    def _apply_options(self, options: SpeechOptions) -> None:
        engine = self._engine
        engine.setProperty("rate", int(self.base_wpm * options.rate))
        engine.setProperty("volume", max(0.0, min(1.0, options.volume)))

        hints = tuple(options.voice_hints)
        if hints not in self._voice_cache:
            self._voice_cache[hints] = pick_voice(engine.getProperty("voices") or [], hints)
        voice_id = self._voice_cache[hints]
        if voice_id:
            engine.setProperty("voice", voice_id)

        if options.pitch != 1.0:
            try:
                engine.setProperty("pitch", options.pitch)
            except Exception as exc:
                # Only some drivers expose pitch.
                self.logger.debug("Pitch not supported by speech driver: %s", exc)
