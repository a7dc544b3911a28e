"""会话相关数据模型：群组、会话、禁言信息与全局设置。

群组持有共享的成员、管理员、场景与记忆配置；会话持有消息列表与控制字段
（禁言、让位集合、管理员笔记、长期摘要）。
"""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field

from ai_observer.models.protocol import Message, now_ms


class MuteInfo(BaseModel):
    """一条禁言记录：mute_until 为毫秒时间戳，0 表示永久禁言。"""

    agent_id: str
    mute_until: int = 0
    muted_by: str = ""

    def is_active(self, now: int) -> bool:
        return self.mute_until == 0 or self.mute_until > now


class MemoryConfig(BaseModel):
    enabled: bool = False
    threshold: int = 20
    summary_model_id: str = ""
    summary_provider_id: str = ""


class ChatGroup(BaseModel):
    """群组：多个会话共享的成员列表、管理员列表、场景设定与记忆配置。"""

    id: str = ""
    name: str = ""
    member_ids: list[str] = Field(default_factory=list)
    admin_ids: list[str] = Field(default_factory=list)
    scenario: str = ""
    memory_config: MemoryConfig = Field(default_factory=MemoryConfig)
    created_at: int = Field(default_factory=now_ms)


class ChatSession(BaseModel):
    """一个对话：有序消息列表加上调度相关的控制字段。

    yielded_agent_ids 只会被人类新消息或禁言/解禁事件清空，Agent 发言不会清空；
    yielded_at_count 是让位集合由空变为非空时的消息数快照，用于 5 条消息后的赦免。
    """

    id: str = ""
    group_id: str = ""
    name: str = ""
    messages: list[Message] = Field(default_factory=list)
    last_updated: int = Field(default_factory=now_ms)
    is_auto_renamed: bool = False

    muted_agent_ids: list[str] = Field(default_factory=list)  # 旧版扁平列表，保留兼容
    muted_agents: list[MuteInfo] = Field(default_factory=list)
    yielded_agent_ids: list[str] = Field(default_factory=list)
    yielded_at_count: int | None = None

    summary: str | None = None
    admin_notes: list[str] = Field(default_factory=list)
    total_cost: float = 0.0

    @property
    def settled_messages(self) -> list[Message]:
        return [m for m in self.messages if m.is_settled]

    @property
    def message_count(self) -> int:
        """已落定消息数（不含流式占位符），所有冷却计数都以此为准。"""
        return len(self.settled_messages)

    def is_muted(self, agent_id: str, now: int) -> bool:
        """详细禁言记录优先；过期的临时禁言视为未禁言（清理交给定时巡检）。"""
        for info in self.muted_agents:
            if info.agent_id == agent_id:
                return info.is_active(now)
        return agent_id in self.muted_agent_ids

    def find_mute(self, agent_id: str) -> MuteInfo | None:
        for info in self.muted_agents:
            if info.agent_id == agent_id:
                return info
        return None


class GlobalSettings(BaseModel):
    """全局设置：节奏（呼吸时间）、可见性、并发开关、超时与禁言巡检间隔。"""

    breathing_time: int = 2000            # 毫秒，决定触发与真正开回合之间的延迟
    visibility_mode: Literal["OPEN", "BLIND"] = "OPEN"
    context_limit: int = 20

    user_name: str = "User"
    user_persona: str = "一位充满好奇心的人类观察者。"

    enable_concurrency: bool = False
    timeout_duration: int = 30000         # 毫秒，超时后强制终止卡住的流
    clear_yield_on_moderation: bool = True  # 禁言/解禁是否视为一次对话「重置」
    mute_sweep_interval: int = 60         # 秒
