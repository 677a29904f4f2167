# realtime.py - WebSocket connection registry used for push updates
import logging
from typing import Dict, Optional

from fastapi import WebSocket

logger = logging.getLogger("stackflow.ws")


class ConnectionManager:
    """Tracks one live WebSocket per authenticated user"""

    def __init__(self):
        self._connections: Dict[int, WebSocket] = {}  # user_id -> ws

    async def connect(self, websocket: WebSocket, user_id: int):
        await websocket.accept()
        previous = self._connections.get(user_id)
        self._connections[user_id] = websocket
        if previous is not None and previous is not websocket:
            try:
                await previous.close(code=4000, reason="Superseded by a new connection")
            except Exception as e:
                logger.debug(f"Closing superseded socket for user={user_id} failed: {e}")
        logger.info(f"WS connected: user={user_id}")

    def disconnect(self, user_id: int, websocket: Optional[WebSocket] = None):
        current = self._connections.get(user_id)
        if websocket is None or current is websocket:
            self._connections.pop(user_id, None)
            logger.info(f"WS disconnected: user={user_id}")

    async def send_to_user(self, user_id: int, message: dict):
        ws = self._connections.get(user_id)
        if ws is None:
            return
        try:
            await ws.send_json(message)
        except Exception:
            self.disconnect(user_id, ws)

    async def broadcast(self, message: dict, exclude_user: Optional[int] = None):
        """Send message to every connected client; dead sockets are dropped."""
        disconnected = []
        for uid, ws in list(self._connections.items()):
            if uid == exclude_user:
                continue
            try:
                await ws.send_json(message)
            except Exception:
                disconnected.append((uid, ws))
        for uid, ws in disconnected:
            self.disconnect(uid, ws)

    def get_online_users(self) -> list:
        return sorted(self._connections.keys())

    def get_stats(self) -> dict:
        return {"total_connections": len(self._connections)}


# Global connection manager
manager = ConnectionManager()
