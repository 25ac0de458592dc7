from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, List, Optional, Protocol

import numpy as np

NO_FACE_DETECTED = "No face detected"
UNKNOWN_FACE = "unknown"


@dataclass(frozen=True)
class ReferenceFace:
    label: str
    descriptors: np.ndarray  # (k, D) float32, k >= 1


@dataclass
class DetectedFace:
    box: np.ndarray  # x1, y1, x2, y2 in frame pixels
    descriptor: np.ndarray  # (D,) float32
    left_eye: np.ndarray  # (6, 2) p1..p6 in frame pixels
    right_eye: np.ndarray  # (6, 2)
    score: float = 1.0

    @property
    def area(self) -> float:
        x1, y1, x2, y2 = [float(v) for v in self.box]
        return max(0.0, x2 - x1) * max(0.0, y2 - y1)


@dataclass(frozen=True)
class Recognition:
    name: str
    distance: Optional[float] = None

    @property
    def is_known(self) -> bool:
        return self.name not in {NO_FACE_DETECTED, UNKNOWN_FACE}

    @property
    def display(self) -> str:
        if self.distance is None:
            return self.name
        return f"{self.name} ({round(self.distance, 2)})"

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "distance": None if self.distance is None else round(float(self.distance), 4),
            "display": self.display,
            "known": self.is_known,
        }


@dataclass(frozen=True)
class BlinkState:
    is_blinking: bool = False
    left_ear: Optional[float] = None
    right_ear: Optional[float] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "is_blinking": self.is_blinking,
            "left_ear": None if self.left_ear is None else round(self.left_ear, 4),
            "right_ear": None if self.right_ear is None else round(self.right_ear, 4),
            "label": "Blink detected!" if self.is_blinking else "No blink",
        }


@dataclass
class FaceScreenState:
    status: str = "loading"
    message: str = "Loading models, please wait..."
    recognition: Recognition = field(default_factory=lambda: Recognition(NO_FACE_DETECTED))
    blink: BlinkState = field(default_factory=BlinkState)
    face_count: int = 0
    tick: int = 0
    tick_errors: int = 0
    last_tick_ms: float = 0.0
    reference_labels: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "message": self.message,
            "recognition": self.recognition.to_dict(),
            "blink": self.blink.to_dict(),
            "face_count": self.face_count,
            "tick": self.tick,
            "tick_errors": self.tick_errors,
            "last_tick_ms": round(self.last_tick_ms, 1),
            "reference_labels": list(self.reference_labels),
        }


class FaceDetector(Protocol):
    def load(self, model_dir: Path) -> None: ...

    def detect_faces(self, image: np.ndarray, static: bool = False) -> List[DetectedFace]: ...

    def close(self) -> None: ...


class FrameSource(Protocol):
    def open(self) -> None: ...

    def read(self) -> np.ndarray: ...

    def close(self) -> None: ...
