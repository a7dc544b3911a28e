"""长期记忆摘要：群组开启记忆后，每积累 threshold 条已落定消息，调用摘要模型把最近的对话
合并进会话的长期摘要（session.summary），并消化已纳入摘要的管理员笔记。

摘要通过 ContextBuilder 注入到之后每个回合的 system prompt，缓解上下文窗口截断后信息丢失。
请求失败只记录日志，不影响聊天本身。
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

import httpx

from ai_observer.models.agent import ProviderType
from ai_observer.models.protocol import USER_ID, Message

if TYPE_CHECKING:
    from ai_observer.core.session_manager import SessionManager
    from ai_observer.models.agent import ApiProvider
    from ai_observer.models.session import ChatSession, MemoryConfig
    from ai_observer.registry.agent_registry import AgentRegistry

logger = logging.getLogger(__name__)

SUMMARY_MAX_TOKENS = 2000

SUMMARY_PROMPT = """[CONVERSATION ARCHIVE TASK]
You keep the long-term archive of a group chat. Merge the recent conversation into the existing archive.

[EXISTING ARCHIVE]
{summary}

[ADMIN NOTES (must be preserved)]
{notes}

[RECENT CONVERSATION]
{transcript}

[RULES]
1. Keep events in chronological order.
2. Record each participant's style, stance and relationships.
3. Keep key viewpoints, decisions and conflicts; never drop important content from the existing archive.
4. Keep the whole archive under about 1500 Chinese characters, condensing older parts first.

Output ONLY the updated archive."""


def settled_messages(session: ChatSession) -> list[Message]:
    return [m for m in session.messages if not m.is_streaming]


class SessionSummarizer:
    """按群组的 MemoryConfig 触发摘要：已落定消息数每到 threshold 的整数倍就更新一次。

    每个会话同一时间只跑一个摘要请求；client 可注入（测试用 MockTransport）。
    """

    def __init__(
        self,
        session_manager: SessionManager,
        registry: AgentRegistry,
        client: httpx.AsyncClient | None = None,
        timeout: float = 30.0,
    ):
        self.session_manager = session_manager
        self.registry = registry
        self._client = client
        self.timeout = timeout
        self._triggered_at: dict[str, int] = {}
        self._tasks: dict[str, asyncio.Task] = {}

    def attach(self) -> None:
        self.session_manager.add_listener(self._on_session_changed)

    def _on_session_changed(self, session_id: str) -> None:
        session = self.session_manager.get_session(session_id)
        group = self.session_manager.group_of(session_id)
        if not session or not group:
            return
        conf = group.memory_config
        if not conf.enabled or not conf.summary_model_id or conf.threshold <= 0:
            return

        count = len(settled_messages(session))
        # 清空会话后重新计数
        if count < self._triggered_at.get(session_id, 0):
            self._triggered_at.pop(session_id, None)
        if count == 0 or count % conf.threshold or self._triggered_at.get(session_id) == count:
            return
        if session_id in self._tasks:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return

        self._triggered_at[session_id] = count
        task = loop.create_task(self.summarize(session_id, conf))
        self._tasks[session_id] = task
        task.add_done_callback(lambda _: self._tasks.pop(session_id, None))

    async def wait_idle(self) -> None:
        if self._tasks:
            await asyncio.gather(*self._tasks.values(), return_exceptions=True)

    def build_prompt(self, session: ChatSession, recent: list[Message]) -> str:
        lines = [f"{self._sender_name(m)}: {m.text}" for m in recent]
        return SUMMARY_PROMPT.format(
            summary=session.summary or "No previous records.",
            notes="\n".join(session.admin_notes) or "None",
            transcript="\n".join(lines),
        )

    def _sender_name(self, message: Message) -> str:
        if message.sender_id == USER_ID:
            return self.session_manager.settings.user_name or "User"
        if message.is_system:
            return "System"
        agent = self.registry.find_agent(message.sender_id)
        return agent.name if agent else "Unknown"

    async def summarize(self, session_id: str, conf: MemoryConfig) -> str | None:
        """对最近 threshold 条已落定消息生成新摘要并写回会话；失败时返回 None。"""
        session = self.session_manager.get_session(session_id)
        provider = self.registry.get_provider(conf.summary_provider_id)
        if not session or not provider:
            logger.warning(
                "[MEMORY] summary skipped: session_id=%s provider=%s not found",
                session_id, conf.summary_provider_id,
            )
            return None

        recent = settled_messages(session)[-conf.threshold:]
        notes = list(session.admin_notes)
        logger.info(
            "[MEMORY] summarizing: session_id=%s messages=%d notes=%d model=%s",
            session_id, len(recent), len(notes), conf.summary_model_id,
        )
        summary = await self.request_summary(provider, conf.summary_model_id, self.build_prompt(session, recent))
        if not summary:
            return None

        self.session_manager.update_summary(session_id, summary, consumed_notes=notes)
        logger.info("[MEMORY] summary updated: session_id=%s len=%d", session_id, len(summary))
        return summary

    async def request_summary(self, provider: ApiProvider, model_id: str, prompt: str) -> str | None:
        """非流式调用 OpenAI 兼容的 chat/completions。"""
        if provider.type != ProviderType.OPENAI_COMPATIBLE:
            logger.warning("[MEMORY] unsupported provider type for summary: %s", provider.type.value)
            return None
        if not provider.base_url or not provider.api_key:
            logger.warning("[MEMORY] provider %s has no base_url or api_key", provider.id)
            return None

        url = f"{provider.base_url.rstrip('/')}/chat/completions"
        body = {
            "model": model_id,
            "messages": [{"role": "user", "content": prompt}],
            "max_tokens": SUMMARY_MAX_TOKENS,
        }
        client = self._client or httpx.AsyncClient(timeout=self.timeout)
        try:
            response = await client.post(url, json=body, headers={"Authorization": f"Bearer {provider.api_key}"})
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("[MEMORY] summary request failed: provider=%s error=%s", provider.id, e)
            return None
        finally:
            if self._client is None:
                await client.aclose()

        choices = data.get("choices") or []
        content = ((choices[0].get("message") or {}).get("content") or "") if choices else ""
        return content.strip() or None
