"""消息相关路由：获取会话消息、人类发送消息、清空记录、查看回合日志。

人类消息写入会话后立即返回；是否有 Agent 接话由自动播放在后台决定，
结果通过 WebSocket 推送。
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel

from ai_observer.models.protocol import Attachment

router = APIRouter(prefix="/api/messages", tags=["messages"])
logger = logging.getLogger(__name__)


class SendMessageRequest(BaseModel):
    """人类发送消息的请求体；以 /search 开头的内容会作为搜索命令执行。"""
    session_id: str
    content: str
    reply_to_id: str | None = None
    attachment: Attachment | None = None


@router.get("/logs/{session_id}")
async def get_call_logs(session_id: str):
    """获取指定会话的所有回合日志（最新在前）。"""
    from ai_observer.main import app_state
    if not app_state.call_logger:
        return {"logs": []}
    logs = app_state.call_logger.get_session_logs(session_id)
    return {"logs": [log.model_dump(mode="json") for log in logs]}


@router.get("/{session_id}")
async def get_messages(session_id: str, limit: int | None = None):
    """获取会话消息；给出 limit 时只返回最近的 limit 条。"""
    from ai_observer.main import app_state
    session = app_state.session_manager.get_session(session_id)
    if not session:
        raise HTTPException(status_code=404, detail="Session not found")
    messages = session.messages[-limit:] if limit else session.messages
    return {"messages": [m.model_dump(mode="json") for m in messages]}


@router.post("/send")
async def send_message(req: SendMessageRequest):
    from ai_observer.main import app_state

    logger.info(
        "[CALL] API send_message: session_id=%s content_len=%d reply_to=%s",
        req.session_id, len(req.content), req.reply_to_id,
    )
    if not app_state.session_manager.get_session(req.session_id):
        raise HTTPException(status_code=404, detail="Session not found")
    if not req.content.strip() and not req.attachment:
        raise HTTPException(status_code=400, detail="Empty message")

    message = await app_state.orchestrator.post_user_message(
        req.session_id,
        req.content,
        reply_to_id=req.reply_to_id,
        attachment=req.attachment,
    )
    return {"message": message.model_dump(mode="json") if message else None}


@router.post("/{session_id}/clear")
async def clear_messages(session_id: str):
    """清空聊天记录：停止所有回合，清空消息、让位集合、管理员笔记与累计费用。"""
    from ai_observer.main import app_state
    if not app_state.session_manager.get_session(session_id):
        raise HTTPException(status_code=404, detail="Session not found")
    app_state.orchestrator.clear_session(session_id)
    return {"ok": True}
