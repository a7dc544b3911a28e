"""Agent 配置模型：供应商、模型定价、生成参数、搜索工具与 Agent 档案。

用于从 YAML 加载或 API 动态修改的 Agent 元数据，不包含运行时状态；
一次回合开始时会持有 AgentProfile 的快照，回合进行中的配置修改不影响该回合。
"""

from __future__ import annotations

from enum import Enum
from typing import Literal

from pydantic import BaseModel, Field

from ai_observer.models.protocol import TokenUsage


class ProviderType(str, Enum):
    """供应商类型，决定由哪个流式适配器负责调用。"""

    GEMINI = "GEMINI"
    OPENAI_COMPATIBLE = "OPENAI_COMPATIBLE"
    ANTHROPIC = "ANTHROPIC"


class AgentRole(str, Enum):
    """群内角色：普通成员或管理员（可禁言、记笔记）。"""

    MEMBER = "MEMBER"
    ADMIN = "ADMIN"


class ModelConfig(BaseModel):
    """供应商下的一个模型预设：ID、展示名与每百万 token 的价格。"""

    id: str
    name: str = ""
    input_price_per_1m: float = 0.0
    output_price_per_1m: float = 0.0

    def cost_for(self, usage: TokenUsage) -> float:
        """按 (input/1e6)*输入价 + (output/1e6)*输出价 计算费用。"""
        return (
            (usage.input / 1_000_000) * self.input_price_per_1m
            + (usage.output / 1_000_000) * self.output_price_per_1m
        )


class ApiProvider(BaseModel):
    """API 供应商：类型、接入地址、密钥及其下的模型列表。"""

    id: str
    name: str = ""
    type: ProviderType = ProviderType.OPENAI_COMPATIBLE
    base_url: str = ""
    api_key: str = ""
    models: list[ModelConfig] = Field(default_factory=list)

    def find_model(self, model_id: str) -> ModelConfig | None:
        for model in self.models:
            if model.id == model_id:
                return model
        return None


class GenerationConfig(BaseModel):
    """单个 Agent 独立的生成参数，以及视觉代理（让纯文本模型「看见」图片）配置。"""

    temperature: float = 0.7          # 0.0 ~ 2.0
    max_tokens: int = 2000
    enable_reasoning: bool = False
    reasoning_budget: int = 0

    vision_proxy_enabled: bool = False
    vision_proxy_provider_id: str | None = None
    vision_proxy_model_id: str | None = None


class SearchConfig(BaseModel):
    """Agent 的联网搜索工具配置。"""

    enabled: bool = False
    engine: Literal["serper", "brave", "tavily", "metaso"] = "serper"
    api_key: str = ""


class AgentProfile(BaseModel):
    """Agent 档案：身份、供应商/模型绑定、人设提示、角色与生成参数。

    没有绑定 provider_id + model_id 的 Agent 永远不会被触发。
    """

    agent_id: str
    name: str = ""
    avatar: str = ""
    color: str = ""

    provider_id: str = ""
    model_id: str = ""

    # 人设提示，注入到系统提示的 Your Persona 段
    system_prompt: str = ""

    role: AgentRole = AgentRole.MEMBER
    is_active: bool | None = None
    config: GenerationConfig = Field(default_factory=GenerationConfig)
    search_config: SearchConfig | None = None

    @property
    def is_configured(self) -> bool:
        return bool(self.provider_id and self.model_id)

    @property
    def can_search(self) -> bool:
        """是否配置了可用的搜索工具（启用且有 API Key）。"""
        return bool(
            self.search_config
            and self.search_config.enabled
            and self.search_config.api_key
        )
