import asyncio

import pytest

from attendance_kiosk.exceptions import ModelLoadError, ReferenceImageError
from attendance_kiosk.face_screen import FaceDetectScreen, select_primary_face
from attendance_kiosk.types import NO_FACE_DETECTED, UNKNOWN_FACE
from kiosk_fakes import (
    FakeCamera,
    FakeEngine,
    FakeLoader,
    make_face,
    make_settings,
    one_hot,
    write_reference_images,
)


def build_screen(tmp_path, engine=None, camera=None, loader=None, **settings):
    return FaceDetectScreen(
        make_settings(tmp_path, **settings),
        engine=engine or FakeEngine(),
        camera=camera or FakeCamera(),
        loader=loader or FakeLoader(),
    )


def mount_and_tick(screen):
    async def scenario():
        await screen.mount()
        return await screen.tick()

    return asyncio.run(scenario())


def test_mount_moves_to_ready_and_opens_camera(tmp_path):
    camera = FakeCamera()
    screen = build_screen(tmp_path, camera=camera)
    seen = []
    screen.subscribe(lambda state: seen.append(state.status))

    state = asyncio.run(screen.mount())

    assert state.status == "ready"
    assert state.reference_labels == ("fahmi", "andij")
    assert camera.opened == 1
    assert seen == ["loading", "ready"]


def test_tick_without_faces_reports_sentinel(tmp_path):
    screen = build_screen(tmp_path, engine=FakeEngine(script=[[]]))

    state = mount_and_tick(screen)

    assert state.recognition.name == NO_FACE_DETECTED
    assert state.blink.is_blinking is False
    assert state.face_count == 0
    assert state.tick == 1


def test_known_face_with_open_eyes(tmp_path):
    face = make_face(one_hot(1) + 0.1 * one_hot(5), left_ear=0.35, right_ear=0.35)
    screen = build_screen(tmp_path, engine=FakeEngine(script=[[face]]))

    state = mount_and_tick(screen)

    assert state.recognition.name == "fahmi"
    assert state.recognition.distance == pytest.approx(0.1, abs=1e-6)
    assert state.blink.is_blinking is False
    assert screen.last_jpeg is not None


def test_one_closed_eye_reports_blink(tmp_path):
    face = make_face(one_hot(1), left_ear=0.20, right_ear=0.35)
    screen = build_screen(tmp_path, engine=FakeEngine(script=[[face]]))

    state = mount_and_tick(screen)

    assert state.recognition.name == "fahmi"
    assert state.blink.is_blinking is True


def test_face_beyond_threshold_is_unknown(tmp_path):
    screen = build_screen(tmp_path, engine=FakeEngine(script=[[make_face(one_hot(6))]]))

    state = mount_and_tick(screen)

    assert state.recognition.name == UNKNOWN_FACE
    assert state.recognition.distance > 0.6


def test_largest_face_is_selected(tmp_path):
    small = make_face(one_hot(1), box=(0, 0, 40, 40))
    large = make_face(one_hot(2), box=(100, 100, 300, 300))
    screen = build_screen(tmp_path, engine=FakeEngine(script=[[small, large]]))

    state = mount_and_tick(screen)

    assert state.recognition.name == "andij"
    assert state.face_count == 2


def test_equal_areas_keep_detection_order():
    first = make_face(one_hot(1), box=(0, 0, 50, 50))
    second = make_face(one_hot(2), box=(60, 0, 110, 50))
    assert select_primary_face([first, second]) is first
    assert select_primary_face([]) is None


def test_polling_ticks_do_not_overlap(tmp_path):
    engine = FakeEngine(script=[[make_face(one_hot(1))]], delay=0.05)
    screen = build_screen(tmp_path, engine=engine, poll_interval_seconds=0.01)

    async def scenario():
        await screen.mount()
        await screen.play()
        assert screen.is_polling
        await asyncio.sleep(0.3)
        return await screen.pause()

    state = asyncio.run(scenario())

    assert engine.max_active == 1
    assert engine.calls >= 2
    assert state.status == "paused"


def test_pause_stops_further_ticks_and_play_resumes(tmp_path):
    engine = FakeEngine(script=[[]])
    screen = build_screen(tmp_path, engine=engine)

    async def scenario():
        await screen.mount()
        await screen.play()
        await asyncio.sleep(0.1)
        await screen.pause()
        await asyncio.sleep(0.02)
        paused_calls = engine.calls
        await asyncio.sleep(0.1)
        assert engine.calls == paused_calls
        resumed = await screen.play()
        await asyncio.sleep(0.1)
        await screen.unmount()
        return paused_calls, resumed

    paused_calls, resumed = asyncio.run(scenario())

    assert paused_calls >= 1
    assert resumed.status == "polling"
    assert engine.calls > paused_calls


def test_unmount_cancels_polling_and_releases_resources(tmp_path):
    engine = FakeEngine(script=[[]])
    camera = FakeCamera()
    screen = build_screen(tmp_path, engine=engine, camera=camera)

    async def scenario():
        await screen.mount()
        await screen.play()
        await asyncio.sleep(0.05)
        state = await screen.unmount()
        calls = engine.calls
        await asyncio.sleep(0.1)
        assert engine.calls == calls
        again = await screen.play()
        return state, again

    state, again = asyncio.run(scenario())

    assert state.status == "closed"
    assert again.status == "closed"
    assert screen.is_polling is False
    assert camera.closed == 1
    assert engine.closed == 1


def test_model_failure_moves_to_error_without_camera(tmp_path):
    camera = FakeCamera()
    loader = FakeLoader(error=ModelLoadError("Failed to load face models from /models: missing weights"))
    screen = build_screen(tmp_path, camera=camera, loader=loader)

    async def scenario():
        state = await screen.mount()
        after_play = await screen.play()
        return state, after_play

    state, after_play = asyncio.run(scenario())

    assert state.status == "error"
    assert "missing weights" in state.message
    assert after_play.status == "error"
    assert camera.opened == 0
    assert screen.is_polling is False


def test_bad_reference_image_moves_to_error(tmp_path):
    loader = FakeLoader(error=ReferenceImageError("ziea", "expected exactly one face, found 2"))
    screen = build_screen(tmp_path, loader=loader)

    state = asyncio.run(screen.mount())

    assert state.status == "error"
    assert "ziea" in state.message


def test_camera_failure_moves_to_camera_unavailable(tmp_path):
    screen = build_screen(tmp_path, camera=FakeCamera(fail=True))

    state = asyncio.run(screen.mount())

    assert state.status == "camera_unavailable"
    assert "Unable to open webcam" in state.message


def test_failed_tick_keeps_previous_result(tmp_path):
    face = make_face(one_hot(1))
    engine = FakeEngine(script=[[face], RuntimeError("mesh crashed")])
    screen = build_screen(tmp_path, engine=engine, poll_interval_seconds=0.01)

    async def scenario():
        await screen.mount()
        await screen.play()
        await asyncio.sleep(0.15)
        return await screen.pause()

    state = asyncio.run(scenario())

    assert state.recognition.name == "fahmi"
    assert state.tick == 1
    assert state.tick_errors >= 1


def test_empty_reference_file_moves_to_error(tmp_path):
    write_reference_images(tmp_path, {"fahmi": 40})
    (tmp_path / "known_faces" / "andij.jpg").write_bytes(b"")
    camera = FakeCamera()
    screen = FaceDetectScreen(make_settings(tmp_path), engine=FakeEngine(), camera=camera)

    state = asyncio.run(screen.mount())

    assert state.status == "error"
    assert "andij" in state.message
    assert camera.opened == 0


def test_unexpected_loader_failure_moves_to_error(tmp_path):
    screen = build_screen(tmp_path, loader=FakeLoader(error=RuntimeError("disk vanished")))

    state = asyncio.run(screen.mount())

    assert state.status == "error"
    assert "disk vanished" in state.message


class CloseTrackingEngine(FakeEngine):
    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.closed_while_detecting = False

    def close(self) -> None:
        with self._lock:
            self.closed_while_detecting = self.active > 0
        super().close()


def test_unmount_waits_for_detection_in_flight(tmp_path):
    engine = CloseTrackingEngine(script=[[make_face(one_hot(1))]], delay=0.3)
    camera = FakeCamera()
    screen = build_screen(tmp_path, engine=engine, camera=camera, poll_interval_seconds=0.01)

    async def scenario():
        await screen.mount()
        await screen.play()
        await asyncio.sleep(0.1)
        assert engine.active == 1
        await screen.unmount()
        return engine.active

    active_after = asyncio.run(scenario())

    assert active_after == 0
    assert engine.closed == 1
    assert engine.closed_while_detecting is False
    assert camera.closed == 1


def test_failed_tick_is_published(tmp_path):
    engine = FakeEngine(script=[RuntimeError("mesh crashed")])
    screen = build_screen(tmp_path, engine=engine, poll_interval_seconds=0.01)
    errors_seen = []
    screen.subscribe(lambda state: errors_seen.append(state.tick_errors))

    async def scenario():
        await screen.mount()
        await screen.play()
        await asyncio.sleep(0.1)
        published = list(errors_seen)
        await screen.unmount()
        return published

    published = asyncio.run(scenario())

    assert screen.state.tick == 0
    assert max(published) >= 1
