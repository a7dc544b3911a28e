"""供应商与全局设置路由。"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, HTTPException
from pydantic import ValidationError

from ai_observer.models.agent import ApiProvider

router = APIRouter(prefix="/api", tags=["settings"])


@router.get("/providers")
async def list_providers():
    from ai_observer.main import app_state
    return {"providers": [p.model_dump(mode="json") for p in app_state.registry.list_providers()]}


@router.put("/providers/{provider_id}")
async def upsert_provider(provider_id: str, provider: ApiProvider):
    """新增或替换供应商配置并持久化。"""
    from ai_observer.main import app_state
    updated = provider.model_copy(update={"id": provider_id})
    app_state.registry.register_provider(updated)
    await app_state.store.save("providers", app_state.registry.list_providers())
    return {"provider": updated.model_dump(mode="json")}


@router.get("/providers/{provider_id}/health")
async def provider_health(provider_id: str):
    from ai_observer.main import app_state
    provider = app_state.registry.get_provider(provider_id)
    if not provider:
        raise HTTPException(status_code=404, detail="Provider not found")
    return {"provider_id": provider_id, "ok": await app_state.worker_runtime.health_check(provider)}


@router.get("/settings")
async def get_settings():
    from ai_observer.main import app_state
    return {"settings": app_state.session_manager.settings.model_dump(mode="json")}


@router.put("/settings")
async def update_settings(changes: dict[str, Any]):
    """部分更新全局设置；字段校验失败返回 422。"""
    from ai_observer.main import app_state
    try:
        settings = app_state.session_manager.update_settings(**changes)
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=e.errors(include_url=False))
    await app_state.ws_manager.broadcast_all({"type": "settings_update", "settings": settings.model_dump(mode="json")})
    return {"settings": settings.model_dump(mode="json")}
