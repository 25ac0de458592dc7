import argparse
import asyncio
import sys
from pathlib import Path

import uvicorn

from attendance_kiosk.config import Settings, get_settings
from attendance_kiosk.exceptions import KioskError
from attendance_kiosk.face_screen import FaceDetectScreen
from attendance_kiosk.logger import setup_logger
from attendance_kiosk.login_screen import LoginScreen
from attendance_kiosk.navigation import History
from attendance_kiosk.reference_loader import reference_location
from attendance_kiosk.types import FaceScreenState
from attendance_kiosk.web_app import (
    build_session_service,
    create_web_app,
    default_camera_factory,
    default_engine_factory,
)


def build_parser(settings: Settings) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Face recognition and login kiosk")

    subparsers = parser.add_subparsers(dest="command", required=True)

    web = subparsers.add_parser("web", help="Launch the kiosk web app (face screen and login screen)")
    web.add_argument("--host", default="0.0.0.0", help="Host interface")
    web.add_argument("--port", type=int, default=8000, help="Port")
    web.add_argument("--camera", type=int, default=None, help="Camera index override")

    recognize = subparsers.add_parser("recognize", help="Run the recognition and blink loop in the terminal")
    recognize.add_argument("--camera", type=int, default=None, help="Camera index override")
    recognize.add_argument(
        "--threshold",
        type=float,
        default=settings.match_threshold,
        help="Maximum descriptor distance accepted as a match",
    )
    recognize.add_argument(
        "--interval",
        type=float,
        default=settings.poll_interval_seconds,
        help="Seconds between polls",
    )
    recognize.add_argument("--ticks", type=int, default=0, help="Stop after N polls (0 = run until Ctrl+C)")

    login = subparsers.add_parser("login", help="Submit the login form once")
    login.add_argument("--name", default="", help="Name to log in with")

    list_cmd = subparsers.add_parser("list-references", help="List the labeled reference images")
    list_cmd.add_argument("--base", default=settings.reference_base, help="Reference directory or URL")

    return parser


def _print_state(state: FaceScreenState) -> None:
    if state.status != "polling" or state.tick == 0:
        return
    print(
        f"[{state.tick:>4}] {state.recognition.display:<24} "
        f"{'Blink detected!' if state.blink.is_blinking else 'No blink':<16} "
        f"faces={state.face_count} {state.last_tick_ms:.0f}ms"
    )


async def run_recognition(settings: Settings, max_ticks: int = 0) -> FaceScreenState:
    screen = FaceDetectScreen(
        settings,
        engine=default_engine_factory(settings),
        camera=default_camera_factory(settings),
    )
    finished = asyncio.Event()

    def on_state(state: FaceScreenState) -> None:
        _print_state(state)
        if max_ticks and state.tick >= max_ticks:
            finished.set()

    screen.subscribe(on_state)
    state = await screen.mount()
    if state.status != "ready":
        await screen.unmount()
        raise KioskError(state.message)

    await screen.play()
    try:
        await finished.wait()
    finally:
        state = screen.state
        await screen.unmount()
    return state


async def run_login(settings: Settings, name: str) -> dict:
    screen = LoginScreen(
        session=build_session_service(settings),
        navigator=History(),
        banner_seconds=settings.error_banner_seconds,
    )
    try:
        await screen.submit({"name": name})
        return screen.render()
    finally:
        await screen.teardown()


def main() -> int:
    settings = get_settings()
    parser = build_parser(settings)
    args = parser.parse_args()
    logger = setup_logger("main")

    try:
        if args.command == "web":
            if args.camera is not None:
                settings = settings.model_copy(update={"camera_index": args.camera})
            app = create_web_app(settings=settings)
            uvicorn.run(app, host=args.host, port=args.port, log_level="info")
            return 0

        if args.command == "recognize":
            update = {"match_threshold": args.threshold, "poll_interval_seconds": args.interval}
            if args.camera is not None:
                update["camera_index"] = args.camera
            state = asyncio.run(run_recognition(settings.model_copy(update=update), max_ticks=args.ticks))
            print(f"Recognition stopped after {state.tick} polls ({state.tick_errors} failed).")
            return 0

        if args.command == "login":
            view = asyncio.run(run_login(settings, args.name))
            if view["errors"]:
                for field, message in view["errors"].items():
                    print(f"{field}: {message}")
                return 1
            if view["banner"]:
                print(view["banner"])
                return 1
            print(f"Login successful. Redirected to {view['location']}")
            return 0

        if args.command == "list-references":
            labels = settings.known_labels
            if not labels:
                print("No reference labels configured.")
                return 0

            print(f"{'Label':<12} {'Location'}")
            print("-" * 60)
            for label in labels:
                location = reference_location(args.base, label)
                missing = "" if location.startswith("http") or Path(location).is_file() else "  (missing)"
                print(f"{label:<12} {location}{missing}")
            return 0

    except KioskError as exc:
        logger.error("Application error: %s", exc)
        print(f"Error: {exc}")
        return 1
    except KeyboardInterrupt:
        print("\nStopped by user.")
        return 1
    except Exception as exc:
        logger.exception("Unexpected failure")
        print(f"Unexpected error: {exc}")
        return 1

    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
