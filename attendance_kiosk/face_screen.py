from __future__ import annotations

import asyncio
import inspect
import time
from dataclasses import replace
from typing import Any, Callable, List, Optional, Sequence, Tuple

import cv2
import numpy as np

from .config import Settings
from .exceptions import CameraError, KioskError
from .eye_metrics import blink_state
from .logger import setup_logger
from .matcher import FaceMatcher
from .polling import PollingTask
from .reference_loader import ReferenceLoader
from .types import (
    NO_FACE_DETECTED,
    BlinkState,
    DetectedFace,
    FaceDetector,
    FaceScreenState,
    FrameSource,
    Recognition,
)

StateListener = Callable[[FaceScreenState], Any]


def select_primary_face(faces: Sequence[DetectedFace]) -> Optional[DetectedFace]:
    """Largest bounding box wins; on equal areas the earlier detection is kept."""
    if not faces:
        return None
    return max(faces, key=lambda face: face.area)


class FaceDetectScreen:
    """Controller for the webcam recognition screen.

    ``mount`` loads the models and the labeled references, then acquires the
    camera. ``play`` starts the polling loop, ``pause`` stops it and
    ``unmount`` stops it for good and releases the camera. Every state change
    is published to the subscribed listeners as a fresh snapshot.
    """

    def __init__(
        self,
        settings: Settings,
        engine: FaceDetector,
        camera: FrameSource,
        loader: Optional[ReferenceLoader] = None,
    ):
        self.settings = settings
        self.engine = engine
        self.camera = camera
        self.loader = loader or ReferenceLoader(
            engine=engine,
            labels=settings.known_labels,
            reference_base=settings.reference_base,
            model_dir=settings.model_dir,
            timeout_seconds=settings.request_timeout_seconds,
        )
        self.matcher: Optional[FaceMatcher] = None
        self.logger = setup_logger(self.__class__.__name__)

        self._state = FaceScreenState()
        self._listeners: List[StateListener] = []
        self._poller: Optional[PollingTask] = None
        self._inflight: Optional[asyncio.Task] = None
        self._camera_open = False
        self._closed = False
        self.last_jpeg: Optional[bytes] = None

    @property
    def state(self) -> FaceScreenState:
        return self._state

    @property
    def is_polling(self) -> bool:
        return self._poller is not None and self._poller.running

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    async def mount(self) -> FaceScreenState:
        if self._closed:
            raise KioskError("Face screen has been unmounted.")
        if self._state.status != "loading":
            return self._state

        await self._publish(status="loading", message="Loading models, please wait...")
        try:
            references = await asyncio.to_thread(self.loader.load)
            self.matcher = FaceMatcher(references, threshold=self.settings.match_threshold)
        except (KioskError, ValueError) as exc:
            self.logger.error("Face screen initialization failed: %s", exc)
            return await self._publish(status="error", message=str(exc))
        except Exception as exc:
            self.logger.exception("Unexpected failure while loading face models")
            return await self._publish(status="error", message=f"Initialization failed: {exc}")

        labels = tuple(self.matcher.labels)
        self.logger.info("Loaded %s reference faces: %s", len(labels), ", ".join(labels))

        try:
            await asyncio.to_thread(self.camera.open)
        except Exception as exc:
            if not isinstance(exc, CameraError):
                self.logger.exception("Unexpected failure while opening the camera")
            self.logger.error("Camera unavailable: %s", exc)
            return await self._publish(
                status="camera_unavailable", message=str(exc), reference_labels=labels
            )

        self._camera_open = True
        if self._closed:
            await self._release_camera()
            return self._state
        return await self._publish(status="ready", message="Camera ready", reference_labels=labels)

    async def play(self) -> FaceScreenState:
        if self._state.status not in {"ready", "paused"}:
            self.logger.warning("Cannot start polling while screen is '%s'", self._state.status)
            return self._state

        if self._poller is None:
            self._poller = PollingTask(
                self.tick,
                interval=self.settings.poll_interval_seconds,
                name="face-screen-poll",
                on_error=self._record_tick_error,
                logger=self.logger,
            )
        self._poller.start()
        self.logger.info("Polling started every %.2fs", self._poller.interval)
        return await self._publish(status="polling", message="Camera running")

    async def pause(self) -> FaceScreenState:
        if self._poller is not None:
            await self._poller.stop()
        if self._state.status != "polling":
            return self._state
        return await self._publish(status="paused", message="Camera paused")

    async def unmount(self) -> FaceScreenState:
        if self._closed:
            return self._state
        self._closed = True
        if self._poller is not None:
            await self._poller.stop()
            self._poller = None
        await self._drain_inflight()
        await self._release_camera()
        self.engine.close()
        self.last_jpeg = None
        state = await self._publish(status="closed", message="Face screen closed")
        self._listeners.clear()
        return state

    async def tick(self) -> FaceScreenState:
        if self.matcher is None:
            raise KioskError("Face screen is not mounted.")

        started = time.perf_counter()
        # Cancelling the tick must not abandon a worker still holding the
        # camera or the face graphs; unmount waits on this task.
        await self._drain_inflight()
        work = asyncio.get_running_loop().create_task(asyncio.to_thread(self._capture))
        self._inflight = work
        try:
            faces, jpeg = await asyncio.shield(work)
        finally:
            if work.done():
                self._inflight = None
        recognition, blink = self.evaluate(faces)
        self.last_jpeg = jpeg

        return await self._publish(
            recognition=recognition,
            blink=blink,
            face_count=len(faces),
            tick=self._state.tick + 1,
            last_tick_ms=(time.perf_counter() - started) * 1000.0,
        )

    def evaluate(self, faces: Sequence[DetectedFace]) -> Tuple[Recognition, BlinkState]:
        face = select_primary_face(faces)
        if face is None:
            return Recognition(NO_FACE_DETECTED), BlinkState()
        recognition = self.matcher.find_best_match(face.descriptor)
        blink = blink_state(face.left_eye, face.right_eye, self.settings.blink_threshold)
        return recognition, blink

    def _capture(self) -> Tuple[List[DetectedFace], Optional[bytes]]:
        frame = self.camera.read()
        faces = self.engine.detect_faces(frame)
        return faces, self._encode_jpeg(frame)

    async def _record_tick_error(self, exc: Exception) -> None:
        await self._publish(tick_errors=self._state.tick_errors + 1)

    async def _drain_inflight(self) -> None:
        work, self._inflight = self._inflight, None
        if work is None:
            return
        if not work.done():
            await asyncio.wait({work})
        if not work.cancelled() and work.exception() is not None:
            self.logger.warning("Abandoned detection failed: %s", work.exception())

    def _encode_jpeg(self, frame: np.ndarray) -> Optional[bytes]:
        ok, encoded = cv2.imencode(".jpg", frame, [int(cv2.IMWRITE_JPEG_QUALITY), self.settings.jpeg_quality])
        return encoded.tobytes() if ok else None

    async def _release_camera(self) -> None:
        if self._camera_open:
            await asyncio.to_thread(self.camera.close)
            self._camera_open = False

    async def _publish(self, **changes: Any) -> FaceScreenState:
        self._state = replace(self._state, **changes)
        snapshot = self._state
        for listener in list(self._listeners):
            result = listener(snapshot)
            if inspect.isawaitable(result):
                await result
        return snapshot
