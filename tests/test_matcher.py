import numpy as np
import pytest

from attendance_kiosk.matcher import FaceMatcher
from attendance_kiosk.types import UNKNOWN_FACE, ReferenceFace
from kiosk_fakes import one_hot, roster_references


def test_closest_reference_is_returned_with_distance():
    matcher = FaceMatcher(roster_references(), threshold=0.6)
    query = one_hot(1) + 0.1 * one_hot(5)

    result = matcher.find_best_match(query)

    assert result.name == "fahmi"
    assert result.distance == pytest.approx(0.1, abs=1e-6)
    assert result.display == "fahmi (0.1)"


def test_distance_above_threshold_is_unknown():
    matcher = FaceMatcher(roster_references(), threshold=0.6)

    result = matcher.find_best_match(one_hot(5))

    assert result.name == UNKNOWN_FACE
    assert result.is_known is False
    assert result.distance == pytest.approx(np.sqrt(2.0), abs=1e-6)


def test_distance_equal_to_threshold_is_not_accepted():
    matcher = FaceMatcher([ReferenceFace("fahmi", np.zeros((1, 2), dtype=np.float32))], threshold=0.5)

    assert matcher.find_best_match(np.array([0.5, 0.0])).name == UNKNOWN_FACE
    assert matcher.find_best_match(np.array([0.49, 0.0])).name == "fahmi"


def test_label_score_is_mean_over_its_descriptors():
    refs = [
        ReferenceFace("ziea", np.array([[0.0, 0.0], [1.0, 0.0]], dtype=np.float32)),
        ReferenceFace("amak", np.array([[0.45, 0.0]], dtype=np.float32)),
    ]
    matcher = FaceMatcher(refs, threshold=0.6)

    np.testing.assert_allclose(matcher.distances(np.array([0.0, 0.0])), [0.5, 0.45], atol=1e-6)
    assert matcher.find_best_match(np.array([0.0, 0.0])).name == "amak"


def test_invalid_reference_sets_are_rejected():
    with pytest.raises(ValueError):
        FaceMatcher([])
    with pytest.raises(ValueError):
        FaceMatcher([ReferenceFace("a", np.zeros((1, 4))), ReferenceFace("b", np.zeros((1, 3)))])

    matcher = FaceMatcher(roster_references())
    with pytest.raises(ValueError):
        matcher.find_best_match(np.zeros(3))
