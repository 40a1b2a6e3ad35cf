import os
from pathlib import Path

import torch


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except (TypeError, ValueError):
        return default


def _bool_env(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() not in {"0", "false", "no", "off"}


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except (TypeError, ValueError):
        return default


def _csv_env(name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    raw = os.getenv(name)
    if raw is None:
        return default
    values = tuple(token.strip() for token in raw.split(",") if token.strip())
    return values or default


BASE_DIR = Path(__file__).resolve().parent.parent
DATA_DIR = Path(os.getenv("COMPANION_DATA_DIR", str(BASE_DIR / "data")))
LOG_DIR = Path(os.getenv("COMPANION_LOG_DIR", str(BASE_DIR / "logs")))
DB_PATH = DATA_DIR / "companion.db"
PREFERENCES_PATH = DATA_DIR / "preferences.json"

# All people, tasks and encounters are listed by this owner id.
OWNER_ID = os.getenv("COMPANION_OWNER_ID", "default")

# Webcam settings
CAMERA_INDEX = _int_env("COMPANION_CAMERA_INDEX", 0)
FRAME_WIDTH = _int_env("COMPANION_FRAME_WIDTH", 1280)
FRAME_HEIGHT = _int_env("COMPANION_FRAME_HEIGHT", 720)
FRAME_FPS = _int_env("COMPANION_FRAME_FPS", 30)
CAMERA_MIN_READY_FRAMES = _int_env("COMPANION_CAMERA_MIN_READY_FRAMES", 1)
CAMERA_BACKEND_ORDER = _csv_env("COMPANION_CAMERA_BACKEND_ORDER", ())

# Detection loop
DETECTION_INTERVAL_SECONDS = _float_env("COMPANION_DETECTION_INTERVAL_SECONDS", 2.0)
NO_FACE_ALERT_PASSES = _int_env("COMPANION_NO_FACE_ALERT_PASSES", 3)
SAVE_PROMPT_DELAY_SECONDS = _float_env("COMPANION_SAVE_PROMPT_DELAY_SECONDS", 3.0)

# Recognition settings (Euclidean distance, lower is closer)
MATCH_DISTANCE_THRESHOLD = _float_env("COMPANION_MATCH_DISTANCE_THRESHOLD", 0.6)

# Face engine
FACE_DETECTION_THRESHOLD = _float_env("COMPANION_FACE_DETECTION_THRESHOLD", 0.6)
MIN_FACE_SIZE = _int_env("COMPANION_MIN_FACE_SIZE", 60)
EMBEDDER_WEIGHT_SOURCES = _csv_env(
    "COMPANION_EMBEDDER_WEIGHT_SOURCES",
    (str(DATA_DIR / "models" / "resnet18_face.pt"), "default"),
)
MODEL_LOAD_ATTEMPTS = _int_env("COMPANION_MODEL_LOAD_ATTEMPTS", 3)
MODEL_LOAD_RETRY_DELAY_SECONDS = _float_env("COMPANION_MODEL_LOAD_RETRY_DELAY_SECONDS", 1.0)

# Speech
SPEECH_COOLDOWN_SECONDS = _float_env("COMPANION_SPEECH_COOLDOWN_SECONDS", 3.0)
SPEECH_RATE = _float_env("COMPANION_SPEECH_RATE", 0.9)
SPEECH_PITCH = _float_env("COMPANION_SPEECH_PITCH", 1.0)
SPEECH_VOLUME = _float_env("COMPANION_SPEECH_VOLUME", 0.7)
SPEECH_VOICE_HINTS = _csv_env("COMPANION_SPEECH_VOICE_HINTS", ("Female", "Samantha", "Karen", "Victoria"))
SPEECH_BASE_WPM = _int_env("COMPANION_SPEECH_BASE_WPM", 200)

# Enrichment (hosted multimodal description service)
ENRICHMENT_ENABLED = _bool_env("COMPANION_ENRICHMENT_ENABLED", True)
GEMINI_API_KEY = os.getenv("GEMINI_API_KEY", "")
GEMINI_MODEL = os.getenv("GEMINI_MODEL", "gemini-2.5-flash")
GEMINI_BASE_URL = os.getenv("GEMINI_BASE_URL", "https://generativelanguage.googleapis.com/v1beta")
ENRICHMENT_TIMEOUT_SECONDS = _float_env("COMPANION_ENRICHMENT_TIMEOUT_SECONDS", 12.0)
ENRICHMENT_FALLBACK_TEXT = os.getenv("COMPANION_ENRICHMENT_FALLBACK_TEXT", "is nearby")
SNAPSHOT_JPEG_QUALITY = _int_env("COMPANION_SNAPSHOT_JPEG_QUALITY", 80)

# Task reminders
REMINDER_POLL_SECONDS = _float_env("COMPANION_REMINDER_POLL_SECONDS", 30.0)
REMINDER_MIN_CHECK_INTERVAL_SECONDS = _float_env("COMPANION_REMINDER_MIN_CHECK_INTERVAL_SECONDS", 60.0)
REMINDER_LEAD_MINUTES = _int_env("COMPANION_REMINDER_LEAD_MINUTES", 5)
REMINDER_OVERDUE_GRACE_MINUTES = _int_env("COMPANION_REMINDER_OVERDUE_GRACE_MINUTES", 5)

# Runtime settings
DEVICE = "cuda" if torch.cuda.is_available() else "cpu"
