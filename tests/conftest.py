"""测试公共夹具：内存中的会话管理器、注册表，以及按脚本产出流的假适配器。"""

from __future__ import annotations

import asyncio
from collections import defaultdict, deque
from unittest.mock import AsyncMock

import pytest

from ai_observer.core.admin_actions import AdminActionExecutor
from ai_observer.core.context_builder import ContextBuilder
from ai_observer.core.orchestrator import Orchestrator
from ai_observer.core.session_manager import SessionManager
from ai_observer.models.agent import AgentProfile, AgentRole, ApiProvider, ModelConfig, ProviderType
from ai_observer.models.protocol import SearchResponse, StreamChunk, TokenUsage
from ai_observer.registry.agent_registry import AgentRegistry
from ai_observer.worker.adapters.base import BaseAdapter
from ai_observer.worker.runtime import WorkerRuntime


def make_agent(agent_id: str, name: str | None = None, role: AgentRole = AgentRole.MEMBER, **kwargs) -> AgentProfile:
    fields = {"provider_id": "test", "model_id": "test-model", **kwargs}
    return AgentProfile(agent_id=agent_id, name=name or agent_id.capitalize(), role=role, **fields)


def make_provider() -> ApiProvider:
    return ApiProvider(
        id="test",
        name="Test",
        type=ProviderType.OPENAI_COMPATIBLE,
        base_url="http://llm.test/v1",
        api_key="sk-test",
        models=[ModelConfig(id="test-model", input_price_per_1m=1.0, output_price_per_1m=2.0)],
    )


class ScriptedAdapter(BaseAdapter):
    """按 agent_id 排队的脚本产出流：每次回合取出一段脚本。

    脚本元素可以是 str（正文块）、StreamChunk、asyncio.Event（等待后继续）或异常（抛出）。
    没有脚本的回合直接输出 {{PASS}}。
    """

    def __init__(self):
        self.scripts: dict[str, deque[list]] = defaultdict(deque)
        self.calls: list = []
        self.usage = TokenUsage(input=1000, output=500)

    def script(self, agent_id: str, *items) -> None:
        self.scripts[agent_id].append(list(items))

    def calls_for(self, agent_id: str) -> list:
        return [ctx for ctx in self.calls if ctx.agent.agent_id == agent_id]

    async def stream_reply(self, ctx):
        self.calls.append(ctx)
        queue = self.scripts[ctx.agent.agent_id]
        items = queue.popleft() if queue else ["{{PASS}}"]
        for item in items:
            if isinstance(item, asyncio.Event):
                await item.wait()
            elif isinstance(item, BaseException):
                raise item
            elif isinstance(item, StreamChunk):
                yield item
            else:
                yield StreamChunk(text=item)
        yield StreamChunk(usage=self.usage, is_complete=True)

    async def health_check(self, provider) -> bool:
        return True


async def settle(rounds: int = 5) -> None:
    """让出事件循环若干次，等 call_soon 回调与短任务执行完。"""
    for _ in range(rounds):
        await asyncio.sleep(0)


async def wait_for(predicate, timeout: float = 2.0) -> None:
    """轮询直到 predicate() 为真，超时则抛 TimeoutError。"""
    async def _poll():
        while not predicate():
            await asyncio.sleep(0.005)

    await asyncio.wait_for(_poll(), timeout)


@pytest.fixture
def registry():
    reg = AgentRegistry(config_dir=None, provider_dir=None)
    reg.register_provider(make_provider())
    for agent_id in ("alice", "bob", "carol"):
        reg.register_agent(make_agent(agent_id))
    return reg


@pytest.fixture
def session_manager():
    sm = SessionManager()
    sm.update_settings(breathing_time=10, timeout_duration=5000)
    return sm


@pytest.fixture
def chat(session_manager, registry):
    """一个包含 alice / bob / carol 的群组及其第一个会话。"""
    group, session = session_manager.create_group("测试群", ["alice", "bob", "carol"])
    return group, session


@pytest.fixture
def adapter():
    return ScriptedAdapter()


@pytest.fixture
def search():
    return AsyncMock(return_value=SearchResponse(query="q"))


@pytest.fixture
def orchestrator(session_manager, registry, adapter, search, chat):
    runtime = WorkerRuntime(registry, adapters={ProviderType.OPENAI_COMPATIBLE: adapter})
    return Orchestrator(
        session_manager=session_manager,
        context_builder=ContextBuilder(session_manager, registry),
        worker_runtime=runtime,
        registry=registry,
        admin_actions=AdminActionExecutor(session_manager, registry),
        search=search,
    )
