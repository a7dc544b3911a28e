"""群组相关路由：群组 CRUD、成员与管理员、在群组下新建会话。"""

from __future__ import annotations

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, Field

from ai_observer.core.session_manager import DEFAULT_SCENARIO
from ai_observer.models.session import MemoryConfig

router = APIRouter(prefix="/api/groups", tags=["groups"])


# ── 请求/响应模型 ──

class CreateGroupRequest(BaseModel):
    name: str | None = None
    member_ids: list[str] = Field(default_factory=list)
    scenario: str = DEFAULT_SCENARIO


class UpdateGroupRequest(BaseModel):
    """只更新给出的字段。"""
    name: str | None = None
    scenario: str | None = None
    memory_config: MemoryConfig | None = None


class AddMemberRequest(BaseModel):
    agent_id: str


# ── 路由 ──

@router.get("")
async def list_groups():
    """获取所有群组及其会话列表（会话不含消息）。"""
    from ai_observer.main import app_state
    sm = app_state.session_manager
    return {
        "groups": [
            {
                **g.model_dump(mode="json"),
                "sessions": [
                    s.model_dump(mode="json", exclude={"messages"})
                    for s in sm.sessions_in_group(g.id)
                ],
            }
            for g in sm.groups.values()
        ]
    }


@router.post("")
async def create_group(req: CreateGroupRequest):
    """创建新群组，同时创建第一个会话。"""
    from ai_observer.main import app_state
    group, session = app_state.session_manager.create_group(
        name=req.name,
        member_ids=req.member_ids,
        scenario=req.scenario,
    )
    return {"group": group.model_dump(mode="json"), "session": session.model_dump(mode="json")}


@router.patch("/{group_id}")
async def update_group(group_id: str, req: UpdateGroupRequest):
    from ai_observer.main import app_state
    sm = app_state.session_manager
    try:
        group = sm.get_group(group_id)
        if group is None:
            raise KeyError(group_id)
        if req.name is not None:
            group = sm.rename_group(group_id, req.name)
        if req.scenario is not None:
            group = sm.update_group_scenario(group_id, req.scenario)
        if req.memory_config is not None:
            group = sm.update_group_memory_config(group_id, **req.memory_config.model_dump())
    except KeyError:
        raise HTTPException(status_code=404, detail="Group not found")
    return {"group": group.model_dump(mode="json")}


@router.delete("/{group_id}")
async def delete_group(group_id: str):
    """删除群组及其全部会话，先停止这些会话里的所有回合。"""
    from ai_observer.main import app_state
    sm = app_state.session_manager
    if not sm.get_group(group_id):
        raise HTTPException(status_code=404, detail="Group not found")
    if len(sm.groups) <= 1:
        raise HTTPException(status_code=400, detail="Cannot delete the last group")
    for session in sm.sessions_in_group(group_id):
        app_state.orchestrator.forget_session(session.id)
    sm.delete_group(group_id)
    return {"ok": True}


@router.post("/{group_id}/members")
async def add_member(group_id: str, req: AddMemberRequest):
    from ai_observer.main import app_state
    if not app_state.registry.find_agent(req.agent_id):
        raise HTTPException(status_code=404, detail="Agent not found")
    try:
        group = app_state.session_manager.add_group_member(group_id, req.agent_id)
    except KeyError:
        raise HTTPException(status_code=404, detail="Group not found")
    return {"group": group.model_dump(mode="json")}


@router.delete("/{group_id}/members/{agent_id}")
async def remove_member(group_id: str, agent_id: str):
    """移除成员，同时撤销其管理员身份。"""
    from ai_observer.main import app_state
    try:
        group = app_state.session_manager.remove_group_member(group_id, agent_id)
    except KeyError:
        raise HTTPException(status_code=404, detail="Group not found")
    return {"group": group.model_dump(mode="json")}


@router.post("/{group_id}/admins/{agent_id}")
async def toggle_admin(group_id: str, agent_id: str, session_id: str | None = None):
    """切换群管理员身份；带 session_id 时只在该会话发布通知。"""
    from ai_observer.main import app_state
    try:
        is_admin = app_state.admin_actions.toggle_admin(group_id, agent_id, session_id)
    except KeyError:
        raise HTTPException(status_code=404, detail="Group not found")
    return {"agent_id": agent_id, "is_admin": is_admin}


@router.post("/{group_id}/sessions")
async def create_session(group_id: str):
    from ai_observer.main import app_state
    try:
        session = app_state.session_manager.create_session(group_id)
    except KeyError:
        raise HTTPException(status_code=404, detail="Group not found")
    return {"session": session.model_dump(mode="json")}
