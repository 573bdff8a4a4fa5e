"""WebSocket handler for real-time events."""

import asyncio
import json
import logging

from fastapi import WebSocket

from lansend.transfer.models import TransferEvent

logger = logging.getLogger(__name__)

LOCAL_HOSTS = {"127.0.0.1", "::1", "localhost", "testclient"}


class ConnectionManager:
    """Manages local WebSocket connections and broadcasts events to them."""

    def __init__(self) -> None:
        self._connections: list[WebSocket] = []
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._connections)

    async def connect(self, websocket: WebSocket) -> bool:
        """Accept local clients only; the event feed is not part of the LAN protocol."""
        host = websocket.client.host if websocket.client else ""
        if host not in LOCAL_HOSTS:
            await websocket.close(code=1008)
            logger.warning(f"Refused event feed connection from {host}")
            return False

        await websocket.accept()
        async with self._lock:
            self._connections.append(websocket)
        logger.info(f"WebSocket client connected. Total: {len(self._connections)}")
        return True

    async def disconnect(self, websocket: WebSocket) -> None:
        async with self._lock:
            self._drop(websocket)
        logger.info(f"Event feed client left, {len(self._connections)} remaining")

    def _drop(self, websocket: WebSocket) -> None:
        if websocket in self._connections:
            self._connections.remove(websocket)

    async def broadcast(self, event: str, data: dict) -> None:
        """
        Send one event to every feed client, dropping those that fail to
        receive it. Compatible with ReceiverService.on_event().
        """
        message = json.dumps({"event": event, "data": data})
        async with self._lock:
            for ws in list(self._connections):
                try:
                    await ws.send_text(message)
                except Exception as e:
                    logger.debug(f"Dropping event feed client: {e!r}")
                    self._drop(ws)

    async def handle_transfer_event(self, event: TransferEvent) -> None:
        """Event handler compatible with TransferManager.on_event()."""
        await self.broadcast(f"send_{event.status.value}", event.model_dump(mode="json"))
