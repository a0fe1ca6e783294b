"""Realtime delivery of task lifecycle events to connected clients."""

from typing import Any, Protocol

import structlog
from fastapi import WebSocket, WebSocketDisconnect

from forge_navigator.models.task import Task

logger = structlog.get_logger()

TASK_STARTED = "task-started"
TASK_PROGRESS = "task-progress"
MODEL_CHANGED = "model-changed"
TASK_FINISHED = "task-finished"
TASK_FAILED = "task-failed"
TASK_INTERRUPTED = "task-interrupted"
MODELS_REFRESHED = "models-refreshed"

# Fields that are large or private and never leave the server
PRIVATE_TASK_FIELDS = (
    "prompt",
    "negative_prompt",
    "owner_id",
    "width",
    "height",
    "first_pass_image",
    "initial_image",
    "mask",
    "backend_request",
)


def cleanse_task(task: Task) -> dict[str, Any]:
    """Return the externally visible projection of a task."""
    data = task.as_dict()
    for key in PRIVATE_TASK_FIELDS:
        data.pop(key, None)
    return data


class NotificationSink(Protocol):
    """Delivers events to listeners, either by origin address or to everyone."""

    async def notify(self, origin: str | None, event: str, payload: dict[str, Any]) -> None: ...

    async def broadcast(self, event: str, payload: dict[str, Any]) -> None: ...


def _addresses(websocket: WebSocket) -> set[str]:
    """Addresses a socket may be known by, including via reverse proxies."""
    addresses: set[str] = set()
    if websocket.client is not None:
        addresses.add(websocket.client.host)
    for header in ("x-forwarded-for", "cf-connecting-ip"):
        value = websocket.headers.get(header)
        if value:
            addresses.add(value)
    return addresses


class ConnectionManager:
    """Tracks WebSocket clients and sends events to them."""

    def __init__(self) -> None:
        self._connections: set[WebSocket] = set()

    @property
    def connection_count(self) -> int:
        return len(self._connections)

    async def connect(self, websocket: WebSocket) -> None:
        await websocket.accept()
        self._connections.add(websocket)
        logger.info("Client connected", addresses=sorted(_addresses(websocket)))
        await websocket.send_json(
            {"event": "connected", "data": {"message": "Connected to Forge Navigator"}}
        )

    def disconnect(self, websocket: WebSocket) -> None:
        self._connections.discard(websocket)

    def sockets_for(self, origin: str | None) -> list[WebSocket]:
        if origin is None:
            return []
        return [ws for ws in self._connections if origin in _addresses(ws)]

    async def _send(self, websocket: WebSocket, event: str, payload: dict[str, Any]) -> None:
        try:
            await websocket.send_json({"event": event, "data": payload})
        except WebSocketDisconnect:
            self.disconnect(websocket)
        except Exception as e:
            # A broken socket must never fail the task it reports on
            logger.warning("Dropping socket after failed send", event_name=event, error=str(e))
            self.disconnect(websocket)

    async def notify(self, origin: str | None, event: str, payload: dict[str, Any]) -> None:
        """Send an event to every socket connected from ``origin``."""
        sockets = self.sockets_for(origin)
        if not sockets:
            logger.debug("No socket for origin", origin=origin, event_name=event)
            return
        for websocket in sockets:
            await self._send(websocket, event, payload)

    async def broadcast(self, event: str, payload: dict[str, Any]) -> None:
        for websocket in list(self._connections):
            await self._send(websocket, event, payload)
