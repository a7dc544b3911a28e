"""Agent 相关路由：查询、更新配置、从 YAML 重新加载。

更新会同步写入 DocumentStore；进行中的回合持有旧配置的快照，不受影响。
"""

from __future__ import annotations

from fastapi import APIRouter, HTTPException

from ai_observer.models.agent import AgentProfile

router = APIRouter(prefix="/api/agents", tags=["agents"])


@router.get("")
async def list_agents():
    """获取所有已注册 Agent 的列表（从 registry 读取并序列化）。"""
    from ai_observer.main import app_state
    agents = app_state.registry.list_agents()
    return {"agents": [a.model_dump(mode="json") for a in agents]}


@router.post("/reload")
async def reload_agents():
    """从磁盘重新加载 agents/ 与 providers/ 下的配置。"""
    from ai_observer.main import app_state
    app_state.registry.reload()
    await app_state.store.save("agents", app_state.registry.list_agents())
    await app_state.store.save("providers", app_state.registry.list_providers())
    return {"ok": True, "count": len(app_state.registry.agents)}


@router.get("/{agent_id}")
async def get_agent(agent_id: str):
    from ai_observer.main import app_state
    try:
        agent = app_state.registry.get_agent(agent_id)
    except KeyError:
        raise HTTPException(status_code=404, detail="Agent not found")
    return {"agent": agent.model_dump(mode="json")}


@router.put("/{agent_id}")
async def update_agent(agent_id: str, profile: AgentProfile):
    """整体替换 Agent 配置；路径中的 agent_id 为准。"""
    from ai_observer.main import app_state
    try:
        app_state.registry.get_agent(agent_id)
    except KeyError:
        raise HTTPException(status_code=404, detail="Agent not found")
    updated = profile.model_copy(update={"agent_id": agent_id})
    app_state.registry.register_agent(updated)
    await app_state.store.save("agents", app_state.registry.list_agents())
    return {"agent": updated.model_dump(mode="json")}
