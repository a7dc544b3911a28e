"""会话相关路由：会话详情与改名、手动触发（戳一下）、自动播放开关、人类禁言/解禁。"""

from __future__ import annotations

import logging

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel

router = APIRouter(prefix="/api/sessions", tags=["sessions"])
logger = logging.getLogger(__name__)


class UpdateSessionRequest(BaseModel):
    name: str | None = None
    summary: str | None = None


class AutoplayRequest(BaseModel):
    enabled: bool


class MuteRequest(BaseModel):
    """duration_minutes 为 0 表示永久禁言。"""
    duration_minutes: int = 30


def _require_session(session_id: str):
    from ai_observer.main import app_state
    try:
        return app_state.session_manager.require_session(session_id)
    except KeyError:
        raise HTTPException(status_code=404, detail="Session not found")


@router.get("/{session_id}")
async def get_session(session_id: str):
    """会话完整快照，附带当前忙碌的 Agent 与自动播放状态。"""
    from ai_observer.main import app_state
    session = _require_session(session_id)
    orchestrator = app_state.orchestrator
    return {
        "session": session.model_dump(mode="json"),
        "busy_agents": orchestrator.busy_agents(session_id),
        "autoplay": orchestrator.state(session_id).autoplay,
    }


@router.patch("/{session_id}")
async def update_session(session_id: str, req: UpdateSessionRequest):
    from ai_observer.main import app_state
    session = _require_session(session_id)
    sm = app_state.session_manager
    if req.name is not None:
        session = sm.rename_session(session_id, req.name)
    if req.summary is not None:
        session = sm.update_summary(session_id, req.summary)
    return {"session": session.model_dump(mode="json")}


@router.delete("/{session_id}")
async def delete_session(session_id: str):
    from ai_observer.main import app_state
    _require_session(session_id)
    if len(app_state.session_manager.sessions) <= 1:
        raise HTTPException(status_code=400, detail="Cannot delete the last session")
    app_state.orchestrator.forget_session(session_id)
    app_state.session_manager.delete_session(session_id)
    return {"ok": True}


@router.post("/{session_id}/trigger/{agent_id}")
async def trigger_agent(session_id: str, agent_id: str):
    """手动让某个 Agent 发言；与自动播放走同一套前提检查，不满足时 triggered=False。"""
    from ai_observer.main import app_state
    _require_session(session_id)
    if not app_state.registry.find_agent(agent_id):
        raise HTTPException(status_code=404, detail="Agent not found")
    logger.info("[CALL] API trigger: session_id=%s agent_id=%s", session_id, agent_id)
    task = app_state.orchestrator.trigger_agent_reply(session_id, agent_id)
    return {"triggered": task is not None}


@router.post("/{session_id}/autoplay")
async def set_autoplay(session_id: str, req: AutoplayRequest):
    from ai_observer.main import app_state
    _require_session(session_id)
    app_state.orchestrator.set_autoplay(session_id, req.enabled)
    return {"autoplay": req.enabled}


@router.post("/{session_id}/mute/{agent_id}")
async def mute_agent(session_id: str, agent_id: str, req: MuteRequest):
    """人类禁言：与管理员 Agent 的禁言语义一致，额外允许永久禁言。"""
    from ai_observer.main import app_state
    _require_session(session_id)
    if not app_state.registry.find_agent(agent_id):
        raise HTTPException(status_code=404, detail="Agent not found")
    if req.duration_minutes < 0:
        raise HTTPException(status_code=400, detail="duration_minutes must be >= 0")
    info = app_state.admin_actions.mute_agent(
        session_id, agent_id, req.duration_minutes, app_state.session_manager.settings.user_name,
    )
    return {"mute": info.model_dump(mode="json") if info else None}


@router.post("/{session_id}/unmute/{agent_id}")
async def unmute_agent(session_id: str, agent_id: str):
    from ai_observer.main import app_state
    _require_session(session_id)
    app_state.admin_actions.unmute_agent(
        session_id, agent_id, app_state.session_manager.settings.user_name,
    )
    return {"ok": True}
