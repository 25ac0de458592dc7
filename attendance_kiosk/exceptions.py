class KioskError(Exception):
    """Base exception for the attendance kiosk."""


class ModelLoadError(KioskError):
    """Raised when detection or descriptor model weights cannot be loaded."""


class ReferenceImageError(KioskError):
    """Raised when a labeled reference image cannot be fetched or does not hold exactly one face."""

    def __init__(self, label: str, message: str):
        super().__init__(f"Reference '{label}': {message}")
        self.label = label


class FaceEngineError(KioskError):
    """Raised when face detection or descriptor extraction fails."""


class CameraError(KioskError):
    """Raised when webcam access fails."""


class SessionError(KioskError):
    """Raised when the session service cannot be reached or misbehaves."""
