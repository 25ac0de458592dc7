from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Callable, Dict, Optional

from fastapi import Body, FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, JSONResponse, StreamingResponse
from fastapi.templating import Jinja2Templates

from .camera import CameraStream
from .config import WEB_DIR, Settings, get_settings
from .exceptions import KioskError
from .face_screen import FaceDetectScreen
from .login_screen import LoginScreen
from .navigation import History
from .session import ApiSessionService, RosterSessionService, SessionService
from .types import FaceDetector, FaceScreenState, FrameSource
from .ws_manager import FaceStateBroadcaster

TEMPLATES_DIR = WEB_DIR / "templates"
logger = logging.getLogger("attendance_kiosk.web_app")

EngineFactory = Callable[[Settings], FaceDetector]
CameraFactory = Callable[[Settings], FrameSource]


def default_engine_factory(settings: Settings) -> FaceDetector:
    from .face_engine import FaceEngine

    return FaceEngine(
        device=settings.device,
        max_faces=settings.max_faces,
        min_detection_confidence=settings.min_detection_confidence,
    )


def default_camera_factory(settings: Settings) -> FrameSource:
    return CameraStream(
        camera_index=settings.camera_index,
        width=settings.frame_width,
        height=settings.frame_height,
        fps=settings.frame_fps,
        backend_order=settings.camera_backend_order,
    )


def build_session_service(settings: Settings) -> SessionService:
    if settings.auth_url:
        return ApiSessionService(settings.auth_url, timeout_seconds=settings.request_timeout_seconds)
    return RosterSessionService(settings.known_labels, latency_seconds=settings.roster_latency_seconds)


async def _mjpeg_frames(request: Request, screen: FaceDetectScreen, interval: float) -> AsyncIterator[bytes]:
    last: Optional[bytes] = None
    while screen.state.status != "closed":
        if await request.is_disconnected():
            break
        frame = screen.last_jpeg
        if frame is None or frame is last:
            await asyncio.sleep(min(interval, 0.1))
            continue
        last = frame
        yield (
            b"--frame\r\n"
            b"Content-Type: image/jpeg\r\n\r\n" + frame + b"\r\n"
        )


def create_web_app(
    settings: Optional[Settings] = None,
    engine_factory: Optional[EngineFactory] = None,
    camera_factory: Optional[CameraFactory] = None,
    session: Optional[SessionService] = None,
) -> FastAPI:
    settings = settings or get_settings()
    engine_factory = engine_factory or default_engine_factory
    camera_factory = camera_factory or default_camera_factory
    templates = Jinja2Templates(directory=str(TEMPLATES_DIR))
    broadcaster = FaceStateBroadcaster()
    login_screen = LoginScreen(
        session=session or build_session_service(settings),
        navigator=History(),
        banner_seconds=settings.error_banner_seconds,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        screen: Optional[FaceDetectScreen] = None
        try:
            screen = FaceDetectScreen(settings, engine=engine_factory(settings), camera=camera_factory(settings))
        except KioskError as exc:
            app.state.startup_error = str(exc)
            logger.error("Face screen could not be created: %s", exc)
        except Exception as exc:
            app.state.startup_error = f"Face screen could not be created: {exc}"
            logger.exception("Face screen could not be created")

        if screen is not None:
            screen.subscribe(broadcaster)
            await screen.mount()
            await screen.play()
        app.state.face_screen = screen
        yield
        if screen is not None:
            await screen.unmount()
        await login_screen.teardown()

    app = FastAPI(title=settings.app_name, version="1.0.0", lifespan=lifespan)
    app.state.face_screen = None
    app.state.startup_error = None
    app.state.login_screen = login_screen
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(KioskError)
    async def _kiosk_error(request: Request, exc: KioskError):
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    @app.exception_handler(Exception)
    async def _unexpected_error(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s", request.url.path)
        return JSONResponse(status_code=500, content={"detail": "Internal server error"})

    def face_screen() -> FaceDetectScreen:
        screen = app.state.face_screen
        if screen is None:
            raise HTTPException(status_code=503, detail=app.state.startup_error or "Face screen is not running.")
        return screen

    def face_state() -> FaceScreenState:
        screen = app.state.face_screen
        if screen is None:
            return FaceScreenState(status="error", message=app.state.startup_error or "Face screen is not running.")
        return screen.state

    api = settings.api_prefix

    @app.get("/", response_class=HTMLResponse)
    def face_page(request: Request):
        return templates.TemplateResponse(
            request, "face.html", {"title": settings.app_name, "state": face_state().to_dict(), "api": api}
        )

    @app.get("/login", response_class=HTMLResponse)
    def login_page(request: Request):
        login_screen.enter()
        return templates.TemplateResponse(
            request, "login.html", {"title": settings.app_name, "view": login_screen.render(), "api": api}
        )

    @app.get("/register", response_class=HTMLResponse)
    def register_page(request: Request):
        return templates.TemplateResponse(
            request, "register.html", {"title": settings.app_name, "labels": settings.known_labels}
        )

    @app.get(f"{api}/health")
    def health() -> dict:
        return {
            "ok": True,
            "service": settings.app_name,
            "face_status": face_state().status,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    @app.get(f"{api}/face/state")
    def get_face_state() -> dict:
        return face_state().to_dict()

    @app.post(f"{api}/face/play")
    async def play() -> dict:
        return (await face_screen().play()).to_dict()

    @app.post(f"{api}/face/pause")
    async def pause() -> dict:
        return (await face_screen().pause()).to_dict()

    @app.get(f"{api}/stream/camera")
    def camera_stream(request: Request):
        return StreamingResponse(
            _mjpeg_frames(request, face_screen(), settings.poll_interval_seconds),
            media_type="multipart/x-mixed-replace; boundary=frame",
        )

    @app.get(f"{api}/login/state")
    def login_state() -> dict:
        return login_screen.render()

    @app.post(f"{api}/login")
    async def login(payload: Optional[Dict[str, Any]] = Body(default=None)):
        login_screen.enter()
        accepted = await login_screen.submit(payload or {})
        if not accepted:
            return JSONResponse(status_code=422, content=login_screen.render())
        return login_screen.render()

    @app.post(f"{api}/login/register")
    def register() -> dict:
        login_screen.go_to_register()
        return login_screen.render()

    @app.websocket("/ws/face")
    async def face_socket(websocket: WebSocket):
        await broadcaster.connect(websocket)
        try:
            while True:
                message = await websocket.receive_text()
                if message.lower() == "ping":
                    await websocket.send_json({"type": "pong"})
        except WebSocketDisconnect:
            await broadcaster.disconnect(websocket)

    return app
