"""Live push channel for dashboard clients connected over WebSocket."""

import asyncio
import json
import uuid
from datetime import datetime
from typing import Any, Dict, Optional

from fastapi import WebSocket, WebSocketDisconnect

from .logging import get_logger

logger = get_logger(__name__)


class PushConnection:
    """A connected dashboard client."""

    def __init__(self, websocket: WebSocket, connection_id: str):
        self.websocket = websocket
        self.connection_id = connection_id
        self.connected_at = datetime.utcnow()
        self.is_active = True


class LivePushChannel:
    """Broadcasts message and instance events to every connected client.

    Publishing is best-effort: a failed send marks the connection inactive and
    drops it, it never raises into the caller.
    """

    def __init__(self):
        self._connections: Dict[str, PushConnection] = {}
        self._lock = asyncio.Lock()
        logger.info("LivePushChannel initialized")

    async def connect(self, websocket: WebSocket) -> str:
        """
        Accept a new WebSocket connection.

        Args:
            websocket: The WebSocket connection

        Returns:
            Connection ID for the new connection
        """
        await websocket.accept()
        connection_id = str(uuid.uuid4())
        self._connections[connection_id] = PushConnection(websocket, connection_id)
        logger.info(f"Push connection established: {connection_id}")

        await self._send(connection_id, {
            "event_type": "connection_established",
            "connection_id": connection_id,
            "timestamp": datetime.utcnow().isoformat(),
        })
        return connection_id

    async def disconnect(self, connection_id: str) -> None:
        connection = self._connections.pop(connection_id, None)
        if connection:
            connection.is_active = False
            logger.info(f"Push connection closed: {connection_id}")

    async def publish(self, event_type: str, data: Dict[str, Any]) -> int:
        """
        Send an event to all active connections.

        Args:
            event_type: Event name, e.g. ``new_message`` or ``instance_finished``
            data: Event payload

        Returns:
            Number of connections the event reached
        """
        event = {
            "event_type": event_type,
            "timestamp": datetime.utcnow().isoformat(),
            "data": data,
        }
        delivered = 0
        async with self._lock:
            for connection_id in list(self._connections):
                if await self._send(connection_id, event):
                    delivered += 1
                else:
                    self._connections.pop(connection_id, None)
        return delivered

    async def _send(self, connection_id: str, data: Dict[str, Any]) -> bool:
        connection: Optional[PushConnection] = self._connections.get(connection_id)
        if connection is None or not connection.is_active:
            return False

        try:
            await connection.websocket.send_text(json.dumps(data, default=str, ensure_ascii=False))
            return True
        except WebSocketDisconnect:
            logger.info(f"Push connection dropped during send: {connection_id}")
        except Exception as e:
            logger.warning(f"Push to {connection_id} failed: {str(e)}")
        connection.is_active = False
        return False

    def get_connection_count(self) -> int:
        return sum(1 for connection in self._connections.values() if connection.is_active)

    async def close_all(self) -> None:
        """Close every connection during shutdown."""
        for connection_id in list(self._connections):
            connection = self._connections.pop(connection_id)
            try:
                await connection.websocket.close()
            except Exception as e:
                logger.debug(f"Ignoring close failure for {connection_id}: {str(e)}")
