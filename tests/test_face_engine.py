import pytest

pytest.importorskip("mediapipe")
pytest.importorskip("torch")

from attendance_kiosk.exceptions import FaceEngineError  # noqa: E402
from attendance_kiosk.face_engine import FaceEngine  # noqa: E402


def test_configured_face_limit_is_kept_for_video():
    engine = FaceEngine(device="cpu", max_faces=1)

    assert engine.max_faces == 1
    assert engine.reference_max_faces == 2
    assert engine.loaded is False


def test_larger_face_limit_applies_to_both_graphs():
    engine = FaceEngine(device="cpu", max_faces=5)

    assert engine.max_faces == 5
    assert engine.reference_max_faces == 5


def test_face_limit_below_one_is_rejected():
    with pytest.raises(FaceEngineError):
        FaceEngine(device="cpu", max_faces=0)
