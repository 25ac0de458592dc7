"""
Eye Aspect Ratio helpers.

EAR = (||p2-p6|| + ||p3-p5||) / (2 * ||p1-p4||)

p1..p6 follow the usual six-point eye layout: p1 and p4 are the eye corners,
p2/p3 sit on the upper lid and p6/p5 on the lower lid below them. Low values
mean a closed or closing lid.
"""
from __future__ import annotations

from typing import Sequence

import numpy as np

from .types import BlinkState

# FaceMesh indices ordered p1..p6. "Left" is the eye on the left side of the
# image, which matches the 68-point scheme's points 36-41.
LEFT_EYE_INDICES = (33, 160, 158, 133, 153, 144)
RIGHT_EYE_INDICES = (362, 385, 387, 263, 373, 380)

DEFAULT_BLINK_THRESHOLD = 0.28


def eye_aspect_ratio(eye: Sequence[Sequence[float]] | np.ndarray) -> float:
    points = np.asarray(eye, dtype=np.float64)
    if points.shape != (6, 2):
        raise ValueError(f"Expected 6 eye landmarks of shape (6, 2), got {points.shape}.")

    v1 = np.linalg.norm(points[1] - points[5])
    v2 = np.linalg.norm(points[2] - points[4])
    h = np.linalg.norm(points[0] - points[3])

    # Collapsed corners: treat the lid as shut.
    if h < 1e-6:
        return 0.0
    return float((v1 + v2) / (2.0 * h))


def is_blinking(left_ear: float, right_ear: float, threshold: float = DEFAULT_BLINK_THRESHOLD) -> bool:
    return left_ear <= threshold or right_ear <= threshold


def blink_state(left_eye: np.ndarray, right_eye: np.ndarray, threshold: float = DEFAULT_BLINK_THRESHOLD) -> BlinkState:
    left_ear = eye_aspect_ratio(left_eye)
    right_ear = eye_aspect_ratio(right_eye)
    return BlinkState(
        is_blinking=is_blinking(left_ear, right_ear, threshold),
        left_ear=left_ear,
        right_ear=right_ear,
    )


def landmarks_to_eyes(points: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    """Pick the two six-point eye sequences out of a full FaceMesh landmark array (N, 2)."""
    if points.ndim != 2 or points.shape[0] <= max(RIGHT_EYE_INDICES):
        raise ValueError(f"Landmark array of shape {points.shape} does not cover the eye indices.")
    left = points[list(LEFT_EYE_INDICES)].astype(np.float32)
    right = points[list(RIGHT_EYE_INDICES)].astype(np.float32)
    return left, right
