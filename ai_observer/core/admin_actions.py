"""管理指令执行：禁言、解禁、管理员笔记，以及禁言到期巡检。

每个操作都是对会话的一次原子更新，系统通知消息与状态变更在同一次提交中写入。
所有操作可重复执行：重复禁言要么追加时长、要么无变化，从不抛异常。
"""

from __future__ import annotations

import logging
import math
from typing import TYPE_CHECKING

from ai_observer.core.response_parser import DEFAULT_MUTE_MINUTES
from ai_observer.core.session_manager import system_message
from ai_observer.models.protocol import USER_ID, now_ms
from ai_observer.models.session import ChatSession, MuteInfo

if TYPE_CHECKING:
    from ai_observer.core.response_parser import AdminAction
    from ai_observer.core.session_manager import SessionManager
    from ai_observer.models.agent import AgentProfile
    from ai_observer.registry.agent_registry import AgentRegistry

logger = logging.getLogger(__name__)

_MINUTE_MS = 60 * 1000


def format_duration(minutes: int) -> str:
    """0 → 永久；不足 1 小时按分钟，不足 1 天按小时，否则按天。"""
    if minutes == 0:
        return "永久"
    if minutes < 60:
        return f"{minutes}分钟"
    if minutes < 60 * 24:
        return f"{minutes // 60}小时"
    return f"{minutes // (60 * 24)}天"


class AdminActionExecutor:
    """把解析出的管理指令落到会话状态上，并发布相应的系统消息。"""

    def __init__(self, session_manager: SessionManager, registry: AgentRegistry):
        self.session_manager = session_manager
        self.registry = registry

    def _agent_name(self, agent_id: str) -> str:
        agent = self.registry.find_agent(agent_id)
        return agent.name if agent else "Unknown"

    def _yield_reset(self) -> dict:
        if not self.session_manager.settings.clear_yield_on_moderation:
            return {}
        return {"yielded_agent_ids": [], "yielded_at_count": None}

    # ── 禁言 ──

    def mute_agent(
        self, session_id: str, agent_id: str, duration_minutes: int, muted_by: str
    ) -> MuteInfo | None:
        """禁言一名 Agent，duration_minutes 为 0 表示永久。

        已在临时禁言中则在原到期时间上追加；已被永久禁言则只发提示，状态不变。
        """
        name = self._agent_name(agent_id)
        result: list[MuteInfo] = []

        def _apply(session: ChatSession) -> ChatSession:
            now = now_ms()
            existing = session.find_mute(agent_id)
            if existing and existing.mute_until == 0 and duration_minutes != 0:
                result.append(existing)
                return session.model_copy(update={
                    "messages": [*session.messages, system_message(f"{name} 已被永久禁言")],
                    "last_updated": now,
                })

            if duration_minutes == 0:
                mute_until = 0
                text = f"{muted_by} 永久禁言了 {name}"
            elif existing and existing.is_active(now):
                mute_until = existing.mute_until + duration_minutes * _MINUTE_MS
                remaining = math.ceil((mute_until - now) / _MINUTE_MS)
                text = (
                    f"{muted_by} 追加了 {name} 的禁言时间 +{format_duration(duration_minutes)}"
                    f"（剩余 {format_duration(remaining)}）"
                )
            else:
                mute_until = now + duration_minutes * _MINUTE_MS
                text = f"{muted_by} 禁言了 {name}（{format_duration(duration_minutes)}）"

            info = MuteInfo(agent_id=agent_id, mute_until=mute_until, muted_by=muted_by)
            result.append(info)
            return session.model_copy(update={
                "muted_agents": [*(m for m in session.muted_agents if m.agent_id != agent_id), info],
                "muted_agent_ids": [*(i for i in session.muted_agent_ids if i != agent_id), agent_id],
                "messages": [*session.messages, system_message(text)],
                "last_updated": now,
                **self._yield_reset(),
            })

        self.session_manager.update_session(session_id, _apply)
        if result:
            logger.info(
                "[ADMIN] mute: session_id=%s agent_id=%s until=%s by=%s",
                session_id, agent_id, result[0].mute_until, muted_by,
            )
        return result[0] if result else None

    def unmute_agent(self, session_id: str, agent_id: str, unmuted_by: str) -> None:
        """解除禁言；目标原本没有被禁言也照样发布通知。"""
        name = self._agent_name(agent_id)
        self.session_manager.update_session(
            session_id,
            lambda s: s.model_copy(update={
                "muted_agents": [m for m in s.muted_agents if m.agent_id != agent_id],
                "muted_agent_ids": [i for i in s.muted_agent_ids if i != agent_id],
                "messages": [*s.messages, system_message(f"{unmuted_by} 解除了 {name} 的禁言")],
                "last_updated": now_ms(),
                **self._yield_reset(),
            }),
        )
        logger.info("[ADMIN] unmute: session_id=%s agent_id=%s by=%s", session_id, agent_id, unmuted_by)

    def sweep_expired_mutes(self, session_id: str, now: int | None = None) -> list[str]:
        """移除已到期的临时禁言，并用一条系统消息列出所有被自动解禁的 Agent。"""
        expired: list[str] = []

        def _apply(session: ChatSession) -> ChatSession:
            current = now if now is not None else now_ms()
            expired.extend(
                m.agent_id for m in session.muted_agents
                if m.mute_until != 0 and m.mute_until <= current
            )
            if not expired:
                return session
            names = "、".join(self._agent_name(a) for a in expired)
            return session.model_copy(update={
                "muted_agents": [m for m in session.muted_agents if m.agent_id not in expired],
                "muted_agent_ids": [i for i in session.muted_agent_ids if i not in expired],
                "messages": [*session.messages, system_message(f"{names} 的禁言已到期，已自动解除")],
                "last_updated": current,
            })

        self.session_manager.update_session(session_id, _apply)
        if expired:
            logger.info("[ADMIN] mute expired: session_id=%s agents=%s", session_id, expired)
        return expired

    # ── 笔记 ──

    def add_note(self, session_id: str, author_name: str, text: str) -> None:
        """追加 "[作者]: 内容"；已有笔记包含同样内容时跳过。"""
        note = f"[{author_name}]: {text}"
        self.session_manager.update_session(
            session_id,
            lambda s: s if any(text in n for n in s.admin_notes)
            else s.model_copy(update={"admin_notes": [*s.admin_notes, note]}),
        )

    def delete_notes(self, session_id: str, keyword: str) -> None:
        needle = keyword.lower()
        self.session_manager.update_session(
            session_id,
            lambda s: s.model_copy(update={
                "admin_notes": [n for n in s.admin_notes if needle not in n.lower()],
            }),
        )

    def clear_notes(self, session_id: str) -> None:
        self.session_manager.update_session(
            session_id, lambda s: s.model_copy(update={"admin_notes": []})
        )

    # ── 群管理员 ──

    def toggle_admin(self, group_id: str, agent_id: str, session_id: str | None = None) -> bool:
        """切换群管理员身份，并在 session_id（缺省为该群所有会话）中发布通知。"""
        is_admin = self.session_manager.toggle_group_admin(group_id, agent_id)
        name = self._agent_name(agent_id)
        text = f"{name} 被设为群管理员" if is_admin else f"{name} 的管理员权限已撤销"
        targets = [session_id] if session_id else [
            s.id for s in self.session_manager.sessions_in_group(group_id)
        ]
        for target in targets:
            self.session_manager.post_system_message(target, text)
        logger.info("[ADMIN] admin toggled: group_id=%s agent_id=%s is_admin=%s", group_id, agent_id, is_admin)
        return is_admin

    # ── 指令分发 ──

    def resolve_target(self, name: str) -> AgentProfile | None:
        return self.registry.find_by_name(name)

    def _is_protected(self, target: AgentProfile, admin_ids: list[str]) -> bool:
        """人类用户与管理员不可被禁言。"""
        if target.agent_id == USER_ID:
            return True
        return self.registry.is_admin(target.agent_id, admin_ids)

    def apply(
        self,
        session_id: str,
        actor: AgentProfile,
        action: AdminAction,
        admin_ids: list[str] | None = None,
    ) -> bool:
        """执行一条由 Agent 发出的管理指令；返回是否真正生效。拒绝只记日志，不发消息。"""
        admin_ids = admin_ids or []
        logger.info(
            "[ADMIN] apply: session_id=%s actor=%s type=%s target=%s",
            session_id, actor.agent_id, action.type, action.target,
        )
        if action.type == "NOTE":
            self.add_note(session_id, actor.name, action.target)
            return True
        if action.type == "DELNOTE":
            self.delete_notes(session_id, action.target)
            return True
        if action.type == "CLEARNOTES":
            self.clear_notes(session_id)
            return True

        target = self.resolve_target(action.target)
        if not target:
            logger.info("[ADMIN] Target not found: %s", action.target)
            return False

        if action.type == "MUTE":
            if self._is_protected(target, admin_ids):
                logger.info("[ADMIN] Refused to mute protected target: %s", target.agent_id)
                return False
            self.mute_agent(session_id, target.agent_id, action.duration or DEFAULT_MUTE_MINUTES, actor.name)
            return True
        if action.type == "UNMUTE":
            self.unmute_agent(session_id, target.agent_id, actor.name)
            return True
        return False
