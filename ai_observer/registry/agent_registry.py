"""Agent 注册表：从 agents / providers 目录的 YAML 加载配置，支持动态替换、按名称查找与费用计算。

调度、上下文构建与管理指令执行通过 registry 获取 Agent 档案与供应商配置；
持久化存储中保存过的 Agent / 供应商会在启动时覆盖 YAML 种子。
"""

from __future__ import annotations

import logging
from pathlib import Path

import yaml

from ai_observer.models.agent import AgentProfile, AgentRole, ApiProvider
from ai_observer.models.protocol import TokenUsage

logger = logging.getLogger(__name__)


class AgentRegistry:
    """内存中的配置表：agent_id -> AgentProfile，provider_id -> ApiProvider。"""

    def __init__(self, config_dir: str | None = "agents/", provider_dir: str | None = "providers/"):
        """指定配置目录并立即加载其中所有 *.yaml；传 None 表示不加载。"""
        self.agents: dict[str, AgentProfile] = {}
        self.providers: dict[str, ApiProvider] = {}
        self.config_dir = config_dir
        self.provider_dir = provider_dir
        if config_dir:
            self._load_from_dir(config_dir, AgentProfile, self.agents, "agent_id")
        if provider_dir:
            self._load_from_dir(provider_dir, ApiProvider, self.providers, "id")

    def _load_from_dir(self, config_dir: str, model: type, target: dict, key: str) -> None:
        """遍历目录下所有 .yaml 文件，校验为 model 后按 key 写入 target；坏文件只记日志。"""
        config_path = Path(config_dir)
        if not config_path.exists():
            logger.warning("Config directory not found: %s", config_dir)
            return

        for file in sorted(config_path.glob("*.yaml")):
            try:
                with open(file, "r", encoding="utf-8") as f:
                    data = yaml.safe_load(f) or {}
                item = model.model_validate(data)
                target[getattr(item, key)] = item
                logger.info("Loaded %s: %s (%s)", model.__name__, getattr(item, key), item.name)
            except (OSError, ValueError, yaml.YAMLError) as e:
                logger.error("Failed to load %s from %s: %s", model.__name__, file, e)

    # ── Agent ──

    def register_agent(self, profile: AgentProfile) -> None:
        """加入或覆盖一名 Agent；进行中的回合持有旧快照，不受影响。"""
        self.agents[profile.agent_id] = profile
        logger.info("Registered agent: %s (%s)", profile.agent_id, profile.name)

    def unregister_agent(self, agent_id: str) -> None:
        if agent_id in self.agents:
            del self.agents[agent_id]
            logger.info("Unregistered agent: %s", agent_id)

    def get_agent(self, agent_id: str) -> AgentProfile:
        """按 agent_id 获取档案；不存在则抛 KeyError。"""
        if agent_id not in self.agents:
            raise KeyError(f"Agent not found: {agent_id}")
        return self.agents[agent_id]

    def find_agent(self, agent_id: str) -> AgentProfile | None:
        return self.agents.get(agent_id)

    def list_agents(self) -> list[AgentProfile]:
        return list(self.agents.values())

    def find_by_name(self, keyword: str) -> AgentProfile | None:
        """按名称不区分大小写的子串匹配，返回第一个命中的 Agent（管理指令的目标解析）。"""
        needle = keyword.strip().lower()
        if not needle:
            return None
        for agent in self.agents.values():
            if needle in agent.name.lower():
                return agent
        return None

    def is_admin(self, agent_id: str, admin_ids: list[str] | None = None) -> bool:
        """角色为 ADMIN，或在群组的管理员列表中。"""
        if admin_ids and agent_id in admin_ids:
            return True
        agent = self.agents.get(agent_id)
        return bool(agent and agent.role == AgentRole.ADMIN)

    # ── 供应商 ──

    def register_provider(self, provider: ApiProvider) -> None:
        self.providers[provider.id] = provider
        logger.info("Registered provider: %s (%s)", provider.id, provider.name)

    def get_provider(self, provider_id: str) -> ApiProvider | None:
        return self.providers.get(provider_id)

    def list_providers(self) -> list[ApiProvider]:
        return list(self.providers.values())

    def calculate_cost(self, usage: TokenUsage | None, provider_id: str, model_id: str) -> float:
        """按 Agent 绑定模型的每百万 token 单价计算费用；找不到定价时为 0。"""
        if not usage:
            return 0.0
        provider = self.providers.get(provider_id)
        model = provider.find_model(model_id) if provider else None
        if not model:
            return 0.0
        return model.cost_for(usage)

    def replace(self, agents: list[AgentProfile], providers: list[ApiProvider]) -> None:
        """用持久化存储中的集合覆盖 YAML 种子（空集合表示沿用种子）。"""
        if agents:
            self.agents = {a.agent_id: a for a in agents}
        if providers:
            self.providers = {p.id: p for p in providers}

    def reload(self) -> None:
        """清空当前表并从配置目录重新加载。"""
        self.agents.clear()
        self.providers.clear()
        if self.config_dir:
            self._load_from_dir(self.config_dir, AgentProfile, self.agents, "agent_id")
        if self.provider_dir:
            self._load_from_dir(self.provider_dir, ApiProvider, self.providers, "id")
