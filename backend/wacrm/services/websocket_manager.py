import json
import logging
from typing import Any, Dict, List
from fastapi import WebSocket

logger = logging.getLogger(__name__)


class ConnectionManager:
    def __init__(self):
        # 所有已连接的前端面板，事件统一广播
        self.active_connections: List[WebSocket] = []

    async def connect(self, websocket: WebSocket):
        await websocket.accept()
        self.active_connections.append(websocket)
        logger.info(f"WebSocket connected. Total: {len(self.active_connections)}")

    def disconnect(self, websocket: WebSocket):
        if websocket in self.active_connections:
            self.active_connections.remove(websocket)
            logger.info(f"WebSocket disconnected. Total: {len(self.active_connections)}")

    async def send(self, websocket: WebSocket, event: str, data: Any):
        """只发给单个客户端 (新连接的初始状态)"""
        await websocket.send_text(json.dumps({"event": event, "data": data}, default=str))

    async def broadcast(self, message: Dict):
        """
        Broadcast message to all connected clients
        """
        if not self.active_connections:
            return

        text = json.dumps(message, default=str)
        broken = []
        for connection in list(self.active_connections):
            try:
                await connection.send_text(text)
            except Exception as e:
                logger.warning(f"Error broadcasting to socket: {e}")
                broken.append(connection)

        for connection in broken:
            self.disconnect(connection)

    async def emit(self, event: str, data: Any):
        """按事件名推送: {"event": "chat.newMessage", "data": {...}}"""
        await self.broadcast({"event": event, "data": data})


manager = ConnectionManager()
