from __future__ import annotations

from pathlib import Path
from typing import List, Optional, Sequence

import cv2
import numpy as np
import requests

from .exceptions import ModelLoadError, ReferenceImageError
from .logger import setup_logger
from .types import FaceDetector, ReferenceFace


def reference_location(base: str, label: str) -> str:
    if base.startswith(("http://", "https://")):
        return f"{base.rstrip('/')}/known_faces/{label}.jpg"
    return str(Path(base) / "known_faces" / f"{label}.jpg")


class ReferenceLoader:
    """Loads the face models, then one descriptor per known identity.

    Every label must resolve to an image holding exactly one face. The first
    failure aborts the whole load so a partial reference set is never used.
    """

    def __init__(
        self,
        engine: FaceDetector,
        labels: Sequence[str],
        reference_base: str,
        model_dir: Path,
        timeout_seconds: float = 10.0,
        http: Optional[requests.Session] = None,
    ):
        self.engine = engine
        self.labels = list(labels)
        self.reference_base = str(reference_base)
        self.model_dir = Path(model_dir)
        self.timeout_seconds = float(timeout_seconds)
        self.http = http or requests.Session()
        self.logger = setup_logger(self.__class__.__name__)

    def load_models(self) -> None:
        try:
            self.engine.load(self.model_dir)
        except ModelLoadError:
            raise
        except Exception as exc:
            raise ModelLoadError(f"Failed to load face models from {self.model_dir}: {exc}") from exc

    def load_references(self) -> List[ReferenceFace]:
        if not self.labels:
            raise ReferenceImageError("*", "no reference labels are configured")

        references: List[ReferenceFace] = []
        for label in self.labels:
            image = self.fetch_image(label)
            faces = self.engine.detect_faces(image, static=True)
            if len(faces) != 1:
                raise ReferenceImageError(label, f"expected exactly one face, found {len(faces)}")
            descriptor = np.asarray(faces[0].descriptor, dtype=np.float32).reshape(1, -1)
            references.append(ReferenceFace(label=label, descriptors=descriptor))
            self.logger.info("Loaded reference descriptor for '%s'", label)
        return references

    def load(self) -> List[ReferenceFace]:
        self.load_models()
        return self.load_references()

    def fetch_image(self, label: str) -> np.ndarray:
        location = reference_location(self.reference_base, label)
        if location.startswith(("http://", "https://")):
            try:
                response = self.http.get(location, timeout=self.timeout_seconds)
                response.raise_for_status()
            except requests.RequestException as exc:
                raise ReferenceImageError(label, f"failed to fetch {location}: {exc}") from exc
            payload = response.content
        else:
            path = Path(location)
            if not path.is_file():
                raise ReferenceImageError(label, f"image not found at {location}")
            try:
                payload = path.read_bytes()
            except OSError as exc:
                raise ReferenceImageError(label, f"failed to read {location}: {exc}") from exc

        if not payload:
            raise ReferenceImageError(label, f"image at {location} is empty")
        try:
            image = cv2.imdecode(np.frombuffer(payload, dtype=np.uint8), cv2.IMREAD_COLOR)
        except cv2.error as exc:
            raise ReferenceImageError(label, f"could not decode image at {location}: {exc}") from exc
        if image is None:
            raise ReferenceImageError(label, f"could not decode image at {location}")
        return image
