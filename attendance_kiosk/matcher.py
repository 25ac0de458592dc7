from __future__ import annotations

from typing import List, Sequence

import numpy as np

from .types import UNKNOWN_FACE, Recognition, ReferenceFace


class FaceMatcher:
    """Nearest labeled reference by Euclidean descriptor distance.

    Each label is scored by the mean distance over its descriptors. The best
    label is accepted only when that distance is strictly below the threshold.
    """

    def __init__(self, references: Sequence[ReferenceFace], threshold: float = 0.6):
        if not references:
            raise ValueError("FaceMatcher needs at least one labeled reference.")

        self.threshold = float(threshold)
        self.labels: List[str] = []
        self._descriptor_sets: List[np.ndarray] = []
        dim = None
        for ref in references:
            descriptors = np.atleast_2d(np.asarray(ref.descriptors, dtype=np.float32))
            if descriptors.shape[0] == 0:
                raise ValueError(f"Reference '{ref.label}' has no descriptors.")
            if dim is None:
                dim = descriptors.shape[1]
            elif descriptors.shape[1] != dim:
                raise ValueError(
                    f"Reference '{ref.label}' has descriptor size {descriptors.shape[1]}, expected {dim}."
                )
            self.labels.append(ref.label)
            self._descriptor_sets.append(descriptors)
        self.dim = int(dim)

    def distances(self, descriptor: np.ndarray) -> np.ndarray:
        query = np.asarray(descriptor, dtype=np.float32).reshape(-1)
        if query.size != self.dim:
            raise ValueError(f"Query descriptor has size {query.size}, expected {self.dim}.")
        return np.array(
            [float(np.linalg.norm(descriptors - query, axis=1).mean()) for descriptors in self._descriptor_sets],
            dtype=np.float32,
        )

    def find_best_match(self, descriptor: np.ndarray) -> Recognition:
        scores = self.distances(descriptor)
        idx = int(np.argmin(scores))
        best = float(scores[idx])
        if best < self.threshold:
            return Recognition(name=self.labels[idx], distance=best)
        return Recognition(name=UNKNOWN_FACE, distance=best)
