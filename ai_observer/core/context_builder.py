"""上下文构建器：为每个被触发的 Agent 组装一次回合的 TurnContext。

职责：从 SessionManager 取该会话的已落定消息（流式占位符对其他 Agent 不可见），
按 context_limit 裁剪、按可见性模式过滤，必要时经视觉代理把图片转成文字描述，
再附上群组成员、管理员、场景、摘要与管理员笔记。
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Awaitable, Callable, Literal

from pydantic import BaseModel, Field

from ai_observer.models.agent import AgentProfile, ApiProvider
from ai_observer.models.protocol import USER_ID, Message
from ai_observer.tools.vision import describe_image, strip_data_url

if TYPE_CHECKING:
    from ai_observer.core.session_manager import SessionManager
    from ai_observer.registry.agent_registry import AgentRegistry

logger = logging.getLogger(__name__)

DescribeImage = Callable[..., Awaitable[str]]


class TurnContext(BaseModel):
    """一次回合调用流式适配器所需的全部输入；构建后不再随会话变化。"""

    session_id: str
    agent: AgentProfile
    provider: ApiProvider
    messages: list[Message] = Field(default_factory=list)
    reply_index: dict[str, str] = Field(default_factory=dict)  # message_id -> 原文，用于引用展示
    members: list[AgentProfile] = Field(default_factory=list)
    admin_ids: list[str] = Field(default_factory=list)

    scenario: str = ""
    summary: str | None = None
    admin_notes: list[str] = Field(default_factory=list)
    user_name: str = "User"
    user_persona: str = ""
    search_enabled: bool = False


def visible_messages(
    messages: list[Message],
    agent_id: str,
    visibility_mode: Literal["OPEN", "BLIND"] = "OPEN",
    context_limit: int = 20,
) -> list[Message]:
    """去掉流式占位符后取最近 max(2, context_limit) 条；BLIND 模式下只看得到人类、系统与自己的消息。"""
    settled = [m for m in messages if m.is_settled]
    recent = settled[-max(2, context_limit):]
    if visibility_mode == "OPEN":
        return recent
    return [m for m in recent if m.is_system or m.sender_id in (USER_ID, agent_id)]


class ContextBuilder:
    """为每个被触发的 Agent 组装 TurnContext，控制「能看到什么」。"""

    def __init__(
        self,
        session_manager: SessionManager,
        registry: AgentRegistry,
        describe: DescribeImage = describe_image,
    ):
        self.session_manager = session_manager
        self.registry = registry
        self.describe = describe

    async def build(
        self,
        session_id: str,
        agent: AgentProfile,
        provider: ApiProvider,
        search_enabled: bool = False,
    ) -> TurnContext:
        session = self.session_manager.require_session(session_id)
        group = self.session_manager.group_of(session_id)
        settings = self.session_manager.settings

        messages = visible_messages(
            session.messages, agent.agent_id, settings.visibility_mode, settings.context_limit
        )
        if agent.config.vision_proxy_enabled:
            messages = await self._apply_vision_proxy(session_id, agent, messages)

        member_ids = group.member_ids if group else []
        members = [a for a in (self.registry.find_agent(m) for m in member_ids) if a]
        ctx = TurnContext(
            session_id=session_id,
            agent=agent,
            provider=provider,
            messages=messages,
            reply_index={m.id: m.text for m in session.messages if m.is_settled},
            members=members,
            admin_ids=list(group.admin_ids) if group else [],
            scenario=group.scenario if group else "",
            summary=session.summary,
            admin_notes=list(session.admin_notes),
            user_name=settings.user_name,
            user_persona=settings.user_persona,
            search_enabled=search_enabled,
        )
        logger.info(
            "[TURN] context built: agent_id=%s session_id=%s messages=%d members=%d search=%s",
            agent.agent_id, session_id, len(messages), len(members), search_enabled,
        )
        return ctx

    async def _apply_vision_proxy(
        self, session_id: str, agent: AgentProfile, messages: list[Message]
    ) -> list[Message]:
        """把图片附件替换为文字描述；描述会缓存回原消息，之后的回合不再重复调用。"""
        vision_provider = self.registry.get_provider(agent.config.vision_proxy_provider_id or "")
        if not vision_provider or not vision_provider.api_key:
            return messages

        pending = [
            m for m in messages
            if m.attachment and m.attachment.type == "image" and m.attachment.content
            and m.attachment.vision_description is None
        ]
        if pending:
            descriptions = await asyncio.gather(*[
                self.describe(
                    strip_data_url(m.attachment.content),
                    m.attachment.mime_type,
                    vision_provider,
                    agent.config.vision_proxy_model_id,
                )
                for m in pending
            ])
            described = dict(zip((m.id for m in pending), descriptions))
            for message in pending:
                self.session_manager.patch_message(
                    session_id, message.id,
                    attachment=message.attachment.model_copy(
                        update={"vision_description": described[message.id]}
                    ),
                )
        else:
            described = {}

        result = []
        for message in messages:
            attachment = message.attachment
            if not attachment or attachment.type != "image":
                result.append(message)
                continue
            description = described.get(message.id, attachment.vision_description)
            if description is None:
                result.append(message)
                continue
            result.append(message.model_copy(update={
                "attachment": attachment.model_copy(update={
                    "type": "document",
                    "text_content": f"[图片内容描述]\n{description}\n[描述结束]",
                }),
            }))
        return result
