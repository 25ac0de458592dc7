from __future__ import annotations

import asyncio
from typing import Any, Optional

from fastapi import WebSocket

from .types import FaceScreenState


class FaceStateBroadcaster:
    """Fans published face-screen snapshots out to websocket clients.

    Instances are subscribed to the screen directly. A client that connects
    receives the latest snapshot right away; a client whose send fails is
    dropped.
    """

    def __init__(self) -> None:
        self._clients: set[WebSocket] = set()
        self._lock = asyncio.Lock()
        self._latest: Optional[dict[str, Any]] = None

    @property
    def client_count(self) -> int:
        return len(self._clients)

    async def connect(self, websocket: WebSocket) -> None:
        await websocket.accept()
        async with self._lock:
            self._clients.add(websocket)
        if self._latest is not None:
            await websocket.send_json(self._latest)

    async def disconnect(self, websocket: WebSocket) -> None:
        async with self._lock:
            self._clients.discard(websocket)

    async def __call__(self, state: FaceScreenState) -> None:
        await self.broadcast({"type": "face_state", "data": state.to_dict()})

    async def broadcast(self, message: dict[str, Any]) -> None:
        self._latest = message
        async with self._lock:
            targets = list(self._clients)
        stale: list[WebSocket] = []
        for ws in targets:
            try:
                await ws.send_json(message)
            except Exception:
                stale.append(ws)
        for ws in stale:
            await self.disconnect(ws)
