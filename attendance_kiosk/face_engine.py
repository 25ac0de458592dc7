from pathlib import Path
from typing import List, Optional

import cv2
import numpy as np
import torch
import torch.nn.functional as f
import torchvision.models as models
from torchvision.models import ResNet18_Weights

from .eye_metrics import landmarks_to_eyes
from .exceptions import FaceEngineError, ModelLoadError
from .logger import setup_logger
from .types import DetectedFace

try:
    import mediapipe as mp
except Exception:  # pragma: no cover - runtime dependency guard
    mp = None


def resolve_device(requested: str) -> str:
    requested = (requested or "auto").strip().lower()
    if requested == "auto":
        return "cuda" if torch.cuda.is_available() else "cpu"
    if requested == "cuda" and not torch.cuda.is_available():
        raise ModelLoadError("CUDA was requested but is not available.")
    return requested


class FaceEngine:
    """Face detection, landmarks and descriptors.

    FaceMesh gives the face boxes and the dense landmarks the eye sequences are
    read from. A ResNet18 backbone turns each face crop into an L2-normalised
    descriptor. Reference images go through a static-image graph; video frames
    go through a tracking graph.
    """

    def __init__(self, device: str = "auto", max_faces: int = 4, min_detection_confidence: float = 0.5):
        if mp is None:
            raise FaceEngineError("mediapipe is required. Install the project dependencies first.")

        self.device = torch.device(resolve_device(device))
        if int(max_faces) < 1:
            raise FaceEngineError(f"max_faces must be at least 1, got {max_faces}.")
        self.max_faces = int(max_faces)
        # Reference images must be able to report a second face to be rejected.
        self.reference_max_faces = max(2, self.max_faces)
        self.min_detection_confidence = float(min_detection_confidence)
        self.logger = setup_logger(self.__class__.__name__)

        self.embedder: Optional[torch.nn.Module] = None
        self._image_mesh = None
        self._video_mesh = None
        self.mean = torch.tensor([0.485, 0.456, 0.406], dtype=torch.float32).view(1, 3, 1, 1).to(self.device)
        self.std = torch.tensor([0.229, 0.224, 0.225], dtype=torch.float32).view(1, 3, 1, 1).to(self.device)
        self.clahe = cv2.createCLAHE(clipLimit=2.0, tileGridSize=(8, 8))

    @property
    def loaded(self) -> bool:
        return self.embedder is not None and self._video_mesh is not None

    def load(self, model_dir: Path) -> None:
        model_dir = Path(model_dir)
        try:
            model_dir.mkdir(parents=True, exist_ok=True)
            torch.hub.set_dir(str(model_dir))

            backbone = models.resnet18(weights=ResNet18_Weights.DEFAULT)
            backbone.fc = torch.nn.Identity()
            self.embedder = backbone.eval().to(self.device)

            face_mesh = mp.solutions.face_mesh
            self._image_mesh = face_mesh.FaceMesh(
                static_image_mode=True,
                max_num_faces=self.reference_max_faces,
                refine_landmarks=False,
                min_detection_confidence=self.min_detection_confidence,
            )
            self._video_mesh = face_mesh.FaceMesh(
                static_image_mode=False,
                max_num_faces=self.max_faces,
                refine_landmarks=False,
                min_detection_confidence=self.min_detection_confidence,
                min_tracking_confidence=self.min_detection_confidence,
            )
        except Exception as exc:
            self.close()
            raise ModelLoadError(f"Failed to load face models from {model_dir}: {exc}") from exc

        if self.device.type == "cuda":
            torch.backends.cudnn.benchmark = True
        self.logger.info("Face models loaded from %s on %s", model_dir, self.device)

    def detect_faces(self, image: np.ndarray, static: bool = False) -> List[DetectedFace]:
        if not self.loaded:
            raise FaceEngineError("Face models are not loaded.")
        if image is None or image.size == 0:
            raise FaceEngineError("Empty image passed to face detection.")

        mesh = self._image_mesh if static else self._video_mesh
        try:
            rgb = cv2.cvtColor(image, cv2.COLOR_BGR2RGB)
            result = mesh.process(rgb)
        except Exception as exc:
            raise FaceEngineError(f"Face detection failed: {exc}") from exc

        if not result.multi_face_landmarks:
            return []

        h, w = image.shape[:2]
        crops: List[np.ndarray] = []
        pending: List[tuple[np.ndarray, np.ndarray, np.ndarray]] = []
        for face_landmarks in result.multi_face_landmarks:
            points = np.array(
                [[lm.x * w, lm.y * h] for lm in face_landmarks.landmark],
                dtype=np.float32,
            )
            x1 = int(np.clip(points[:, 0].min(), 0, w - 1))
            y1 = int(np.clip(points[:, 1].min(), 0, h - 1))
            x2 = int(np.clip(points[:, 0].max(), 0, w))
            y2 = int(np.clip(points[:, 1].max(), 0, h))
            if x2 <= x1 or y2 <= y1:
                continue

            crop = self._square_crop(rgb, x1, y1, x2, y2)
            if crop.size == 0:
                continue

            left_eye, right_eye = landmarks_to_eyes(points)
            crops.append(crop)
            pending.append((np.array([x1, y1, x2, y2], dtype=np.float32), left_eye, right_eye))

        if not crops:
            return []

        descriptors = self._embed(crops)
        return [
            DetectedFace(box=box, descriptor=descriptors[i], left_eye=left_eye, right_eye=right_eye)
            for i, (box, left_eye, right_eye) in enumerate(pending)
        ]

    def close(self) -> None:
        for mesh in (self._image_mesh, self._video_mesh):
            if mesh is not None:
                mesh.close()
        self._image_mesh = None
        self._video_mesh = None
        self.embedder = None

    def _embed(self, crops: List[np.ndarray]) -> np.ndarray:
        try:
            processed = [
                torch.from_numpy(self._preprocess_crop(crop)).permute(2, 0, 1).float() / 255.0
                for crop in crops
            ]
            batch = torch.stack(processed, dim=0).to(self.device)
            batch = (batch - self.mean) / self.std
            with torch.inference_mode():
                raw = self.embedder(batch)
                normed = f.normalize(raw, p=2, dim=1)
            return normed.detach().cpu().numpy().astype(np.float32)
        except Exception as exc:
            raise FaceEngineError(f"Descriptor extraction failed: {exc}") from exc

    @staticmethod
    def _square_crop(rgb: np.ndarray, x1: int, y1: int, x2: int, y2: int) -> np.ndarray:
        h, w = rgb.shape[:2]
        side = int(max(x2 - x1, y2 - y1) * 1.1)
        cx = (x1 + x2) // 2
        cy = (y1 + y2) // 2

        sx1 = max(0, cx - side // 2)
        sy1 = max(0, cy - side // 2)
        sx2 = min(w, sx1 + side)
        sy2 = min(h, sy1 + side)
        if sx2 <= sx1 or sy2 <= sy1:
            return np.empty((0, 0, 3), dtype=rgb.dtype)
        return rgb[sy1:sy2, sx1:sx2]

    def _preprocess_crop(self, crop: np.ndarray) -> np.ndarray:
        interpolation = cv2.INTER_CUBIC if min(crop.shape[:2]) < 224 else cv2.INTER_AREA
        resized = cv2.resize(crop, (224, 224), interpolation=interpolation)

        # Even out illumination so lighting changes move the descriptor less.
        ycrcb = cv2.cvtColor(resized, cv2.COLOR_RGB2YCrCb)
        y_channel, cr_channel, cb_channel = cv2.split(ycrcb)
        balanced = cv2.cvtColor(
            cv2.merge([self.clahe.apply(y_channel), cr_channel, cb_channel]),
            cv2.COLOR_YCrCb2RGB,
        )

        mask = np.zeros((224, 224), dtype=np.float32)
        cv2.ellipse(mask, (112, 112), (84, 100), 0, 0, 360, 1.0, -1)
        mask = cv2.GaussianBlur(mask, (0, 0), sigmaX=6.0, sigmaY=6.0)[..., None]

        balanced_f = balanced.astype(np.float32)
        mean_color = balanced_f.mean(axis=(0, 1), keepdims=True)
        focused = (balanced_f * mask) + (mean_color * (1.0 - mask))
        return np.clip(focused, 0.0, 255.0).astype(np.uint8)
