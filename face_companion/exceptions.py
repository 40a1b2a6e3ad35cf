class CompanionError(Exception):
    """Base exception for the companion system."""

    # Session-fatal errors end the current session; everything else only fails the current operation.
    session_fatal = False


class CameraError(CompanionError):
    """Raised when the camera cannot be opened or read."""

    session_fatal = True


class FrameReadError(CameraError):
    """Raised when a single frame read fails on an open camera."""

    session_fatal = False


class SpeechUnavailableError(CompanionError):
    """Raised when no text-to-speech driver can be initialized."""

    session_fatal = True


class FaceEngineError(CompanionError):
    """Raised when face detection or embedding generation fails."""


class ModelLoadError(FaceEngineError):
    """Raised when every configured model source failed to load."""

    session_fatal = True


class DatabaseError(CompanionError):
    """Raised when database operations fail."""


class SaveError(CompanionError):
    """Raised when a pending face cannot be saved as a known person."""


class EnrichmentError(CompanionError):
    """Raised inside the enrichment adapter; never leaves it."""
