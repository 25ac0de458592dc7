from __future__ import annotations

import time
from typing import List, Optional, Tuple

import cv2
import numpy as np

from .exceptions import CameraError
from .logger import setup_logger

_BACKEND_ALIASES = {
    "auto": "Auto",
    "any": "Auto",
    "v4l2": "V4L2",
    "dshow": "DirectShow",
    "directshow": "DirectShow",
    "msmf": "Media Foundation",
    "avfoundation": "AVFoundation",
}


def capture_backends(order: str = "") -> List[Tuple[str, Optional[int]]]:
    backend_map = {
        "Auto": getattr(cv2, "CAP_ANY", None),
        "V4L2": getattr(cv2, "CAP_V4L2", None),
        "DirectShow": getattr(cv2, "CAP_DSHOW", None),
        "Media Foundation": getattr(cv2, "CAP_MSMF", None),
        "AVFoundation": getattr(cv2, "CAP_AVFOUNDATION", None),
    }
    preferred: List[str] = []
    for token in order.split(","):
        name = _BACKEND_ALIASES.get(token.strip().lower())
        if name and name not in preferred:
            preferred.append(name)
    if "Auto" not in preferred:
        preferred.append("Auto")

    candidates: List[Tuple[str, Optional[int]]] = []
    seen: set = set()
    for name in preferred:
        backend = backend_map.get(name)
        if backend in seen:
            continue
        seen.add(backend)
        candidates.append((name, backend))
    return candidates


def open_camera_capture(camera_index: int, backend_order: str = "") -> Tuple[cv2.VideoCapture, str]:
    attempted: List[str] = []
    for backend_name, backend in capture_backends(backend_order):
        attempted.append(backend_name)
        cap = cv2.VideoCapture(camera_index) if backend is None else cv2.VideoCapture(camera_index, backend)
        if cap.isOpened():
            # Some backends report opened=True but never deliver frames.
            for _ in range(6):
                ok, frame = cap.read()
                if ok and frame is not None:
                    return cap, backend_name
                time.sleep(0.03)
        cap.release()

    raise CameraError(
        f"Unable to open webcam index {camera_index}. Tried backends: {', '.join(attempted)}."
    )


class CameraStream:
    def __init__(
        self,
        camera_index: int = 0,
        width: int = 1280,
        height: int = 720,
        fps: int = 30,
        backend_order: str = "",
    ):
        self.camera_index = camera_index
        self.width = width
        self.height = height
        self.fps = fps
        self.backend_order = backend_order
        self.cap: Optional[cv2.VideoCapture] = None
        self.backend_name: Optional[str] = None
        self.logger = setup_logger(self.__class__.__name__)

    def __enter__(self) -> "CameraStream":
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    @property
    def is_open(self) -> bool:
        return self.cap is not None

    def open(self) -> None:
        self.cap, self.backend_name = open_camera_capture(self.camera_index, self.backend_order)
        self.cap.set(cv2.CAP_PROP_FRAME_WIDTH, self.width)
        self.cap.set(cv2.CAP_PROP_FRAME_HEIGHT, self.height)
        self.cap.set(cv2.CAP_PROP_FPS, self.fps)
        self.logger.info("Camera %s opened with %s backend", self.camera_index, self.backend_name)

    def read(self) -> np.ndarray:
        if self.cap is None:
            raise CameraError("Webcam stream is not initialized.")

        success, frame = self.cap.read()
        if not success or frame is None:
            raise CameraError("Failed to read frame from webcam.")
        return frame

    def close(self) -> None:
        if self.cap is not None:
            self.cap.release()
            self.cap = None
            self.logger.info("Camera %s released", self.camera_index)
