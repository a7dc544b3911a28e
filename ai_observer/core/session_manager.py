"""会话管理器：群组、会话、消息与全局设置的内存权威状态，以及它们的原子变更接口。

所有变更都表达为「用函数 F 作用于 id 为 X 的会话的旧值，得到新值后整体替换」。
F 是同步函数，执行期间没有挂起点，因此在任意交错的并发回合下每次提交都是原子的；
消息按 id 定位修改，不依赖下标。每次提交后通知监听者（调度器、WebSocket 推送），
并以防抖方式写入 DocumentStore。
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import TYPE_CHECKING, Any, Callable

from ai_observer.models.protocol import SYSTEM_SENDER_ID, Message, new_message_id, now_ms
from ai_observer.models.session import ChatGroup, ChatSession, GlobalSettings, MemoryConfig

if TYPE_CHECKING:
    from ai_observer.core.storage import DocumentStore, StoredState

logger = logging.getLogger(__name__)

SessionUpdate = Callable[[ChatSession], ChatSession]
MessagesUpdate = Callable[[list[Message]], list[Message]]
GroupUpdate = Callable[[ChatGroup], ChatGroup]
Listener = Callable[[str], None]

DEFAULT_SCENARIO = "这是一个轻松的聊天室。"


def system_message(text: str, **extra: Any) -> Message:
    """构造一条系统消息；需要与其他字段在同一次提交里写入时直接使用。"""
    return Message(
        id=new_message_id(SYSTEM_SENDER_ID),
        sender_id=SYSTEM_SENDER_ID,
        text=text,
        is_system=True,
        **extra,
    )


class SessionManager:
    """会话状态的唯一写入口：函数式更新、按消息 id 修补、变更通知与防抖持久化。"""

    def __init__(self, store: DocumentStore | None = None, save_delay: float = 1.0):
        self.store = store
        self.save_delay = save_delay
        self.groups: dict[str, ChatGroup] = {}
        self.sessions: dict[str, ChatSession] = {}
        self.settings = GlobalSettings()

        self._listeners: list[Listener] = []
        self._dirty: set[str] = set()
        self._settings_dirty = False
        self._save_handle: asyncio.TimerHandle | None = None
        self._flush_task: asyncio.Task | None = None

    async def initialize(self) -> StoredState | None:
        """从 DocumentStore 恢复群组、会话与设置，并返回读到的全部内容（Agent 与供应商交给注册表）。"""
        if not self.store:
            return None
        state = await self.store.load_all()
        self.groups = {g.id: g for g in state.groups}
        self.sessions = {s.id: s for s in state.sessions}
        if state.settings:
            self.settings = state.settings
        logger.info(
            "SessionManager restored: groups=%d sessions=%d",
            len(self.groups), len(self.sessions),
        )
        return state

    async def close(self) -> None:
        """取消挂起的防抖写入并立即落盘。应用关闭时调用。"""
        if self._save_handle:
            self._save_handle.cancel()
            self._save_handle = None
        await self.flush()

    # ── 监听 ──

    def add_listener(self, listener: Listener) -> None:
        """注册提交后回调：参数为发生变更的 session_id。"""
        self._listeners.append(listener)

    def _notify(self, session_id: str) -> None:
        for listener in list(self._listeners):
            listener(session_id)

    # ── 会话读取与原子更新 ──

    def get_session(self, session_id: str) -> ChatSession | None:
        return self.sessions.get(session_id)

    def require_session(self, session_id: str) -> ChatSession:
        """按 id 获取会话；不存在则抛 KeyError。"""
        if session_id not in self.sessions:
            raise KeyError(f"Session not found: {session_id}")
        return self.sessions[session_id]

    def update_session(self, session_id: str, update: SessionUpdate) -> ChatSession | None:
        """对会话应用函数式更新并提交；update 返回原对象表示无变化，不触发通知。"""
        previous = self.sessions.get(session_id)
        if previous is None:
            logger.warning("update_session: session not found session_id=%s", session_id)
            return None
        updated = update(previous)
        if updated is previous:
            return previous
        self.sessions[session_id] = updated
        self._mark_dirty("sessions")
        self._notify(session_id)
        return updated

    def update_messages(self, session_id: str, update: MessagesUpdate) -> ChatSession | None:
        """只改消息列表的便捷形式，同时刷新 last_updated。"""
        return self.update_session(
            session_id,
            lambda s: s.model_copy(update={
                "messages": update(s.messages),
                "last_updated": now_ms(),
            }),
        )

    def append_message(self, session_id: str, message: Message) -> Message:
        self.update_messages(session_id, lambda messages: [*messages, message])
        return message

    def patch_message(self, session_id: str, message_id: str, **changes: Any) -> Message | None:
        """按 id 修补一条消息；消息已不存在（如被中止删除）时静默忽略并返回 None。"""
        patched: list[Message] = []

        def _apply(session: ChatSession) -> ChatSession:
            for index, message in enumerate(session.messages):
                if message.id == message_id:
                    new_message = message.model_copy(update=changes)
                    patched.append(new_message)
                    messages = list(session.messages)
                    messages[index] = new_message
                    return session.model_copy(update={"messages": messages, "last_updated": now_ms()})
            return session

        self.update_session(session_id, _apply)
        return patched[0] if patched else None

    def remove_message(self, session_id: str, message_id: str) -> bool:
        removed: list[bool] = []

        def _apply(session: ChatSession) -> ChatSession:
            messages = [m for m in session.messages if m.id != message_id]
            if len(messages) == len(session.messages):
                return session
            removed.append(True)
            return session.model_copy(update={"messages": messages, "last_updated": now_ms()})

        self.update_session(session_id, _apply)
        return bool(removed)

    def post_system_message(self, session_id: str, text: str, **extra: Any) -> Message:
        """追加一条系统消息（禁言通知、搜索失败等），对所有 Agent 可见。"""
        return self.append_message(session_id, system_message(text, **extra))

    def clear_messages(self, session_id: str) -> ChatSession | None:
        """清空消息，同时清空让位集合、管理员笔记与累计费用。"""
        return self.update_session(
            session_id,
            lambda s: s.model_copy(update={
                "messages": [],
                "yielded_agent_ids": [],
                "yielded_at_count": None,
                "admin_notes": [],
                "total_cost": 0.0,
                "last_updated": now_ms(),
            }),
        )

    # ── 群组 ──

    def get_group(self, group_id: str) -> ChatGroup | None:
        return self.groups.get(group_id)

    def group_of(self, session_id: str) -> ChatGroup | None:
        session = self.sessions.get(session_id)
        return self.groups.get(session.group_id) if session else None

    def sessions_in_group(self, group_id: str) -> list[ChatSession]:
        return [s for s in self.sessions.values() if s.group_id == group_id]

    def create_group(
        self,
        name: str | None = None,
        member_ids: list[str] | None = None,
        scenario: str = DEFAULT_SCENARIO,
    ) -> tuple[ChatGroup, ChatSession]:
        """创建群组并附带第一个会话「对话 1」。"""
        group_id = str(uuid.uuid4())
        group = ChatGroup(
            id=group_id,
            name=name or f"群组 {len(self.groups) + 1}",
            member_ids=list(member_ids or []),
            scenario=scenario,
        )
        self.groups[group_id] = group
        self._mark_dirty("groups")
        session = self.create_session(group_id)
        logger.info("Group created: group_id=%s name=%s members=%s", group_id, group.name, group.member_ids)
        return group, session

    def update_group(self, group_id: str, update: GroupUpdate) -> ChatGroup:
        """对群组应用函数式更新；群组成员/管理员会影响调度，因此通知该群所有会话。"""
        if group_id not in self.groups:
            raise KeyError(f"Group not found: {group_id}")
        updated = update(self.groups[group_id])
        self.groups[group_id] = updated
        self._mark_dirty("groups")
        for session in self.sessions_in_group(group_id):
            self._notify(session.id)
        return updated

    def delete_group(self, group_id: str) -> None:
        """删除群组及其全部会话；不允许删除最后一个群组。"""
        if group_id not in self.groups:
            raise KeyError(f"Group not found: {group_id}")
        if len(self.groups) <= 1:
            raise ValueError("Cannot delete the last group")
        del self.groups[group_id]
        self.sessions = {sid: s for sid, s in self.sessions.items() if s.group_id != group_id}
        self._mark_dirty("groups")
        self._mark_dirty("sessions")

    def rename_group(self, group_id: str, name: str) -> ChatGroup:
        return self.update_group(group_id, lambda g: g.model_copy(update={"name": name}))

    def update_group_scenario(self, group_id: str, scenario: str) -> ChatGroup:
        return self.update_group(group_id, lambda g: g.model_copy(update={"scenario": scenario}))

    def update_group_memory_config(self, group_id: str, **updates: Any) -> ChatGroup:
        def _apply(group: ChatGroup) -> ChatGroup:
            merged = MemoryConfig.model_validate({**group.memory_config.model_dump(), **updates})
            return group.model_copy(update={"memory_config": merged})

        return self.update_group(group_id, _apply)

    def add_group_member(self, group_id: str, agent_id: str) -> ChatGroup:
        return self.update_group(
            group_id,
            lambda g: g if agent_id in g.member_ids
            else g.model_copy(update={"member_ids": [*g.member_ids, agent_id]}),
        )

    def remove_group_member(self, group_id: str, agent_id: str) -> ChatGroup:
        return self.update_group(
            group_id,
            lambda g: g.model_copy(update={
                "member_ids": [m for m in g.member_ids if m != agent_id],
                "admin_ids": [a for a in g.admin_ids if a != agent_id],
            }),
        )

    def toggle_group_admin(self, group_id: str, agent_id: str) -> bool:
        """切换管理员身份，返回切换后是否为管理员。"""
        group = self.update_group(
            group_id,
            lambda g: g.model_copy(update={
                "admin_ids": [a for a in g.admin_ids if a != agent_id]
                if agent_id in g.admin_ids else [*g.admin_ids, agent_id],
            }),
        )
        return agent_id in group.admin_ids

    # ── 会话 CRUD ──

    def create_session(self, group_id: str) -> ChatSession:
        if group_id not in self.groups:
            raise KeyError(f"Group not found: {group_id}")
        existing = self.sessions_in_group(group_id)
        session = ChatSession(
            id=str(uuid.uuid4()),
            group_id=group_id,
            name=f"对话 {len(existing) + 1}",
        )
        self.sessions[session.id] = session
        self._mark_dirty("sessions")
        return session

    def delete_session(self, session_id: str) -> None:
        """删除会话；不允许删除最后一个会话。"""
        self.require_session(session_id)
        if len(self.sessions) <= 1:
            raise ValueError("Cannot delete the last session")
        del self.sessions[session_id]
        self._mark_dirty("sessions")

    def rename_session(self, session_id: str, name: str) -> ChatSession | None:
        # 手动改名后不再参与自动命名
        return self.update_session(
            session_id,
            lambda s: s.model_copy(update={"name": name, "is_auto_renamed": True}),
        )

    def update_summary(
        self, session_id: str, summary: str, consumed_notes: list[str] | None = None
    ) -> ChatSession | None:
        """写入长期摘要；consumed_notes 是已并入摘要的管理员笔记，同一次提交中移除。"""
        consumed = set(consumed_notes or ())
        return self.update_session(session_id, lambda s: s.model_copy(update={
            "summary": summary,
            "admin_notes": [n for n in s.admin_notes if n not in consumed],
        }))

    # ── 设置 ──

    def update_settings(self, **changes: Any) -> GlobalSettings:
        self.settings = GlobalSettings.model_validate({**self.settings.model_dump(), **changes})
        self._settings_dirty = True
        self._schedule_save()
        return self.settings

    # ── 持久化 ──

    def _mark_dirty(self, collection: str) -> None:
        self._dirty.add(collection)
        self._schedule_save()

    def _schedule_save(self) -> None:
        """流式更新非常频繁，这里合并为 save_delay 秒后的一次写入。"""
        if not self.store or self._save_handle is not None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._save_handle = loop.call_later(self.save_delay, self._start_flush)

    def _start_flush(self) -> None:
        self._save_handle = None
        self._flush_task = asyncio.get_running_loop().create_task(self.flush())

    async def flush(self) -> None:
        """把所有脏集合与设置写入 DocumentStore。"""
        if not self.store:
            return
        dirty, self._dirty = self._dirty, set()
        for collection in sorted(dirty):
            if collection == "groups":
                await self.store.save("groups", list(self.groups.values()))
            elif collection == "sessions":
                await self.store.save("sessions", list(self.sessions.values()))
        if self._settings_dirty:
            self._settings_dirty = False
            await self.store.save_settings(self.settings)
