"""Worker 运行时：根据 Agent 绑定的供应商类型选择流式适配器，返回该回合的 StreamChunk 序列。

编排器先通过 resolve_provider 做配置检查（配置错误不会打开任何流），
再以构建好的 TurnContext 调用 stream_reply。
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, AsyncIterator

from ai_observer.models.agent import ApiProvider, ProviderType
from ai_observer.models.protocol import StreamChunk
from ai_observer.worker.adapters.base import BaseAdapter
from ai_observer.worker.adapters.openai_compat import OpenAICompatibleAdapter

if TYPE_CHECKING:
    from ai_observer.core.context_builder import TurnContext
    from ai_observer.models.agent import AgentProfile
    from ai_observer.registry.agent_registry import AgentRegistry

logger = logging.getLogger(__name__)


class ConfigurationError(Exception):
    """Agent 的供应商、模型或密钥配置不完整；不重试，直接在会话中显示为错误。"""


class WorkerRuntime:
    """按供应商类型分派到对应 Adapter。"""

    def __init__(
        self,
        registry: AgentRegistry,
        adapters: dict[ProviderType, BaseAdapter] | None = None,
    ):
        """adapters 缺省时只注册 OpenAI 兼容适配器。"""
        self.registry = registry
        self.adapters: dict[ProviderType, BaseAdapter] = adapters or {
            ProviderType.OPENAI_COMPATIBLE: OpenAICompatibleAdapter(),
        }

    def resolve_provider(self, agent: AgentProfile) -> ApiProvider:
        """检查 Agent 的供应商配置，返回可用的 ApiProvider；不完整则抛 ConfigurationError。"""
        provider = self.registry.get_provider(agent.provider_id)
        if not provider:
            raise ConfigurationError("找不到供应商配置。")
        if provider.type not in self.adapters:
            raise ConfigurationError(f"不支持的供应商类型: {provider.type.value}")
        if not provider.api_key or not provider.base_url:
            raise ConfigurationError(f"供应商 {provider.name or provider.id} 缺少 API Key 或 Base URL。")
        if not agent.model_id:
            raise ConfigurationError("未选择模型。")
        return provider

    def stream_reply(self, ctx: TurnContext) -> AsyncIterator[StreamChunk]:
        adapter = self.adapters[ctx.provider.type]
        logger.info(
            "[CALL] worker_runtime.stream_reply: agent_id=%s provider=%s adapter=%s",
            ctx.agent.agent_id, ctx.provider.id, type(adapter).__name__,
        )
        return adapter.stream_reply(ctx)

    async def health_check(self, provider: ApiProvider) -> bool:
        adapter = self.adapters.get(provider.type)
        return bool(adapter) and await adapter.health_check(provider)
