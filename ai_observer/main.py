"""AI Observer：FastAPI 入口。

本模块负责：
- 应用启动与生命周期（lifespan）
- 各核心组件的初始化与注入
- 注册路由、中间件与 WebSocket 端点
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from ai_observer import __version__
from ai_observer.api.routes_agent import router as agent_router
from ai_observer.api.routes_group import router as group_router
from ai_observer.api.routes_message import router as message_router
from ai_observer.api.routes_session import router as session_router
from ai_observer.api.routes_settings import router as settings_router
from ai_observer.api.websocket import WebSocketManager
from ai_observer.core.admin_actions import AdminActionExecutor
from ai_observer.core.call_logger import CallLogger
from ai_observer.core.context_builder import ContextBuilder
from ai_observer.core.orchestrator import Orchestrator
from ai_observer.core.session_manager import SessionManager
from ai_observer.core.storage import DocumentStore
from ai_observer.memory.summarizer import SessionSummarizer
from ai_observer.registry.agent_registry import AgentRegistry
from ai_observer.worker.runtime import WorkerRuntime

# 配置根日志格式，便于排查问题
logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(name)s] %(levelname)s: %(message)s")
logger = logging.getLogger(__name__)


@dataclass
class AppState:
    """全局应用状态，持有所有核心组件的引用。

    供各路由模块通过 main.app_state 访问，避免循环依赖。
    """

    store: DocumentStore
    session_manager: SessionManager
    registry: AgentRegistry
    ws_manager: WebSocketManager
    context_builder: ContextBuilder
    worker_runtime: WorkerRuntime
    admin_actions: AdminActionExecutor
    orchestrator: Orchestrator
    call_logger: CallLogger
    summarizer: SessionSummarizer


# 全局状态（供路由模块导入使用）
app_state: AppState = None  # type: ignore


@asynccontextmanager
async def lifespan(app: FastAPI):
    """应用生命周期管理：启动时初始化所有组件，关闭时停止回合并落盘。"""
    global app_state

    logger.info("Starting AI Observer...")
    data_dir = Path(os.environ.get("AI_OBSERVER_DATA_DIR", "data"))
    data_dir.mkdir(parents=True, exist_ok=True)

    # 数据层：群组、会话、设置以及 Agent/供应商配置的持久化
    store = DocumentStore(db_path=str(data_dir / "ai_observer.db"))
    await store.initialize()
    session_manager = SessionManager(store=store)
    stored = await session_manager.initialize()

    # YAML 是种子，数据库里保存过的 Agent/供应商优先
    registry = AgentRegistry(config_dir="agents/", provider_dir="providers/")
    if stored:
        registry.replace(stored.agents, stored.providers)

    if not session_manager.groups:
        group, _ = session_manager.create_group(
            name="默认群聊",
            member_ids=[a.agent_id for a in registry.list_agents()],
        )
        logger.info("Created default group: %s", group.id)

    ws_manager = WebSocketManager()
    ws_manager.attach(session_manager)

    context_builder = ContextBuilder(session_manager=session_manager, registry=registry)
    worker_runtime = WorkerRuntime(registry=registry)
    admin_actions = AdminActionExecutor(session_manager=session_manager, registry=registry)
    call_logger = CallLogger(log_dir=str(data_dir / "logs"))
    summarizer = SessionSummarizer(session_manager=session_manager, registry=registry)
    summarizer.attach()
    orchestrator = Orchestrator(
        session_manager=session_manager,
        context_builder=context_builder,
        worker_runtime=worker_runtime,
        registry=registry,
        admin_actions=admin_actions,
        ws_manager=ws_manager,
        call_logger=call_logger,
    )

    app_state = AppState(
        store=store,
        session_manager=session_manager,
        registry=registry,
        ws_manager=ws_manager,
        context_builder=context_builder,
        worker_runtime=worker_runtime,
        admin_actions=admin_actions,
        orchestrator=orchestrator,
        call_logger=call_logger,
        summarizer=summarizer,
    )

    sweeper = asyncio.create_task(orchestrator.run_mute_sweeper())
    logger.info(
        "AI Observer started. agents=%d providers=%d groups=%d",
        len(registry.agents), len(registry.providers), len(session_manager.groups),
    )

    yield

    # 关闭阶段：先停巡检与所有回合，再落盘并关闭数据库连接
    logger.info("Shutting down AI Observer...")
    sweeper.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await sweeper
    orchestrator.stop_all()
    await summarizer.wait_idle()
    await session_manager.close()
    await store.close()


app = FastAPI(
    title="AI Observer",
    description="Multi-agent group chat simulator",
    version=__version__,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(group_router)
app.include_router(session_router)
app.include_router(message_router)
app.include_router(agent_router)
app.include_router(settings_router)


@app.get("/")
async def root():
    return {"name": "AI Observer", "version": __version__, "status": "running"}


@app.get("/api/health")
async def health():
    """健康检查：返回已加载的 Agent 数量与正在进行的回合数。"""
    if not app_state:
        return {"status": "starting"}
    return {
        "status": "ok",
        "agents_loaded": len(app_state.registry.agents),
        "active_turns": sum(len(s.active) for s in app_state.orchestrator.states.values()),
    }


@app.post("/api/stop")
async def stop_all(session_id: str | None = None):
    """全局停止：关闭自动播放并中止所有进行中的回合（可限定某个会话）。"""
    app_state.orchestrator.stop_all(session_id)
    return {"ok": True}


@app.websocket("/ws/{session_id}")
async def websocket_endpoint(websocket: WebSocket, session_id: str):
    """WebSocket 入口：连接后先推送一次会话快照，之后处理客户端的 send_message。"""
    await app_state.ws_manager.connect(websocket, session_id)
    snapshot = app_state.ws_manager.session_snapshot(session_id)
    if snapshot:
        await websocket.send_json(snapshot)
    try:
        while True:
            data = await websocket.receive_json()
            if data.get("type") == "send_message":
                await app_state.orchestrator.post_user_message(
                    session_id,
                    data.get("content", ""),
                    reply_to_id=data.get("reply_to_id"),
                )
    except WebSocketDisconnect:
        await app_state.ws_manager.disconnect(websocket, session_id)
