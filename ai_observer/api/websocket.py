"""WebSocket 管理：按会话维护连接，推送会话快照与忙碌 Agent 集合。

会话每次提交都会触发推送；同一轮事件循环内的多次提交合并为一次 session_update，
流式输出时不会为每个分块都序列化整个会话。发送失败的连接自动移除。
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import TYPE_CHECKING, Any

from fastapi import WebSocket

if TYPE_CHECKING:
    from ai_observer.core.session_manager import SessionManager

logger = logging.getLogger(__name__)


class WebSocketManager:
    """按 session_id 维护 WebSocket 连接列表，支持向某会话广播或向所有连接广播。"""

    def __init__(self):
        """connections: session_id -> 该会话当前所有 WebSocket 连接列表。"""
        self.connections: dict[str, list[WebSocket]] = {}
        self.session_manager: SessionManager | None = None
        self._queued: set[str] = set()
        self._tasks: set[asyncio.Task] = set()

    def attach(self, session_manager: SessionManager) -> None:
        """订阅会话提交，之后每次变更都会向对应会话推送快照。"""
        self.session_manager = session_manager
        session_manager.add_listener(self._on_session_changed)

    async def connect(self, websocket: WebSocket, session_id: str) -> None:
        await websocket.accept()
        self.connections.setdefault(session_id, []).append(websocket)
        logger.info("WebSocket connected to session %s", session_id)

    async def disconnect(self, websocket: WebSocket, session_id: str) -> None:
        if session_id in self.connections:
            self.connections[session_id] = [
                ws for ws in self.connections[session_id] if ws != websocket
            ]
            if not self.connections[session_id]:
                del self.connections[session_id]
        logger.info("WebSocket disconnected from session %s", session_id)

    def session_snapshot(self, session_id: str) -> dict[str, Any] | None:
        if not self.session_manager:
            return None
        session = self.session_manager.get_session(session_id)
        if not session:
            return None
        return {"type": "session_update", "session": session.model_dump(mode="json")}

    def _on_session_changed(self, session_id: str) -> None:
        if session_id not in self.connections or session_id in self._queued:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._queued.add(session_id)
        loop.call_soon(self._push_session, session_id)

    def _push_session(self, session_id: str) -> None:
        self._queued.discard(session_id)
        snapshot = self.session_snapshot(session_id)
        if not snapshot:
            return
        task = asyncio.get_running_loop().create_task(self.broadcast_message(session_id, snapshot))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def broadcast_message(self, session_id: str, data: dict[str, Any]) -> None:
        """向指定会话的所有连接广播一条 JSON 消息；发送失败的连接会被自动 disconnect。"""
        if session_id not in self.connections:
            return
        message = json.dumps(data, ensure_ascii=False, default=str)
        disconnected = []
        for ws in list(self.connections[session_id]):
            try:
                await ws.send_text(message)
            except Exception:
                disconnected.append(ws)
        for ws in disconnected:
            await self.disconnect(ws, session_id)

    async def broadcast_all(self, data: dict[str, Any]) -> None:
        """向所有会话的所有连接广播（如全局设置变更）。"""
        for session_id in list(self.connections):
            await self.broadcast_message(session_id, data)
