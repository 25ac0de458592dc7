from __future__ import annotations

import asyncio
import contextlib
from typing import Any, Dict, Mapping, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator
from pydantic_core import PydanticCustomError

from .logger import setup_logger
from .navigation import History
from .session import SessionService

BANNER_TEXT = "name invalid!"
SPINNER_TEXT = "Waiting...."
REQUIRED_MESSAGE = "must be filled"
LOGIN_PATH = "/login"


class LoginForm(BaseModel):
    name: str = Field(default="", validate_default=True)

    @field_validator("name", mode="before")
    @classmethod
    def name_required(cls, value: Any) -> str:
        if value is None or not str(value).strip():
            raise PydanticCustomError("required", REQUIRED_MESSAGE)
        return str(value).strip()


def validate_login(values: Mapping[str, Any]) -> tuple[Optional[LoginForm], Dict[str, str]]:
    try:
        return LoginForm.model_validate(dict(values)), {}
    except ValidationError as exc:
        errors: Dict[str, str] = {}
        for error in exc.errors():
            field = str(error["loc"][0]) if error["loc"] else "__root__"
            errors.setdefault(field, error["msg"])
        return None, errors


class LoginScreen:
    def __init__(self, session: SessionService, navigator: History, banner_seconds: float = 2.0):
        self.session = session
        self.navigator = navigator
        self.banner_seconds = float(banner_seconds)
        self.values: Dict[str, str] = {"name": ""}
        self.errors: Dict[str, str] = {}
        self.logger = setup_logger(self.__class__.__name__)
        self._banner_task: Optional[asyncio.Task] = None

    @property
    def banner_pending(self) -> bool:
        return self._banner_task is not None and not self._banner_task.done()

    def enter(self) -> None:
        """Show the login screen again after navigating away from it."""
        if self.navigator.location != LOGIN_PATH:
            self.navigator.push(LOGIN_PATH)
        self.errors = {}

    def change(self, field: str, value: str) -> None:
        self.values[field] = value
        self.errors.pop(field, None)

    async def submit(self, values: Optional[Mapping[str, Any]] = None) -> bool:
        """Validate and hand the form to the session service.

        Returns ``False`` without calling the service when validation fails;
        the messages land in ``errors``. The outcome of an accepted submit is
        read back from the session state.
        """
        form, errors = validate_login(self.values if values is None else values)
        self.errors = errors
        if form is None:
            return False

        self.values = {"name": ""}
        await self.session.login(form.model_dump())
        self._react_to_session()
        return True

    def go_to_register(self) -> None:
        self.navigator.push("/register")

    def render(self) -> Dict[str, Any]:
        state = self.session.current_state()
        return {
            "banner": BANNER_TEXT if state.is_login is False else None,
            "spinner": SPINNER_TEXT if state.is_loading else None,
            "values": dict(self.values),
            "errors": dict(self.errors),
            "location": self.navigator.location,
            "session": state.to_dict(),
        }

    async def teardown(self) -> None:
        task, self._banner_task = self._banner_task, None
        if task is None or task.done():
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        self.logger.info("Pending error banner timer cancelled")

    def _react_to_session(self) -> None:
        state = self.session.current_state()
        if state.is_login is True:
            self._cancel_banner()
            self.navigator.push("/")
            self.session.reset_error()
        elif state.is_login is False:
            self._cancel_banner()
            self._banner_task = asyncio.get_running_loop().create_task(
                self._clear_banner_later(), name="login-error-banner"
            )

    def _cancel_banner(self) -> None:
        if self._banner_task is not None and not self._banner_task.done():
            self._banner_task.cancel()
        self._banner_task = None

    async def _clear_banner_later(self) -> None:
        await asyncio.sleep(self.banner_seconds)
        self.session.reset_error()
