from __future__ import annotations

import asyncio
import secrets
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from typing import Any, Iterable, Mapping, Optional

import requests

from .exceptions import SessionError
from .logger import setup_logger


@dataclass(frozen=True)
class SessionState:
    is_login: Optional[bool] = None
    is_loading: bool = False
    user: Optional[str] = None
    token: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "is_login": self.is_login,
            "is_loading": self.is_loading,
            "user": self.user,
        }


class SessionService(ABC):
    """Session store behind the login screen.

    ``is_login`` is ``None`` until an attempt resolves, then ``True`` or
    ``False``. Only the service mutates its state; callers read it through
    ``current_state``.
    """

    def __init__(self) -> None:
        self._state = SessionState()
        self.logger = setup_logger(self.__class__.__name__)

    def current_state(self) -> SessionState:
        return self._state

    async def login(self, values: Mapping[str, Any]) -> SessionState:
        name = str(values.get("name", "")).strip()
        self._state = replace(self._state, is_loading=True)
        token: Optional[str] = None
        resolved = False
        try:
            token = await self.authenticate(name)
            resolved = True
        except SessionError as exc:
            self.logger.warning("Login for '%s' failed: %s", name, exc)
            resolved = True
        finally:
            if not resolved:
                self._state = replace(self._state, is_loading=False)

        if token is None:
            self._state = SessionState(is_login=False)
            self.logger.info("Login rejected for '%s'", name)
        else:
            self._state = SessionState(is_login=True, user=name, token=token)
            self.logger.info("Login accepted for '%s'", name)
        return self._state

    def reset_error(self) -> None:
        if self._state.is_login is False:
            self._state = replace(self._state, is_login=None)

    @abstractmethod
    async def authenticate(self, name: str) -> Optional[str]:
        """Return an access token for ``name``, or ``None`` when rejected."""


class RosterSessionService(SessionService):
    def __init__(self, roster: Iterable[str], latency_seconds: float = 0.0):
        super().__init__()
        self.roster = {entry.strip().lower() for entry in roster if entry.strip()}
        self.latency_seconds = max(0.0, float(latency_seconds))

    async def authenticate(self, name: str) -> Optional[str]:
        if self.latency_seconds:
            await asyncio.sleep(self.latency_seconds)
        if name.lower() not in self.roster:
            return None
        return secrets.token_urlsafe(24)


class ApiSessionService(SessionService):
    """Posts ``{"name": ...}`` to a remote login endpoint.

    A 2xx answer authenticates; its ``access_token`` is kept when present.
    """

    def __init__(self, auth_url: str, timeout_seconds: float = 10.0, http: Optional[requests.Session] = None):
        super().__init__()
        if not auth_url:
            raise SessionError("auth_url is required for the API session service.")
        self.auth_url = auth_url
        self.timeout_seconds = float(timeout_seconds)
        self.http = http or requests.Session()

    async def authenticate(self, name: str) -> Optional[str]:
        return await asyncio.to_thread(self._post_login, name)

    def _post_login(self, name: str) -> Optional[str]:
        try:
            response = self.http.post(self.auth_url, json={"name": name}, timeout=self.timeout_seconds)
        except requests.RequestException as exc:
            raise SessionError(f"Auth service unreachable at {self.auth_url}: {exc}") from exc

        if not 200 <= response.status_code < 300:
            return None
        try:
            body = response.json()
        except ValueError:
            body = {}
        token = body.get("access_token") if isinstance(body, dict) else None
        return str(token) if token else ""
