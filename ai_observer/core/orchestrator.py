"""编排引擎：系统的大脑，决定谁在什么时候开口。

职责：
  - 回合入口 trigger_agent_reply：同步检查资格并立即占位（pending），再异步执行回合；
    手动「戳一下」与自动播放共用同一套检查与回合生命周期
  - 自动播放：每次会话提交后重新评估，按「提及队列 → @全体成员 → @名字 → 随机」的优先级选人，
    经过呼吸时间（可取消）后再真正开回合
  - 回合生命周期：占位消息 → 流式解析 → 定稿或删除 → 管理指令 → 搜索续答；
    超时会强制终止并立即释放名额，stop_all 无条件中止所有回合

所有调度状态都在 SchedulerState 中按会话保存；事件循环是单线程的，
状态修改都发生在挂起点之间，因此「检查 + 占位」天然是原子的。
"""

from __future__ import annotations

import asyncio
import logging
import random
import re
import time
from collections import deque
from contextlib import aclosing
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Awaitable, Callable, Literal

from ai_observer.core.call_logger import TurnLog
from ai_observer.core.response_parser import ResponseInterpreter, TurnOutcome
from ai_observer.models.agent import AgentProfile, AgentRole
from ai_observer.models.protocol import USER_ID, Attachment, Message, SearchResponse, new_message_id, now_ms
from ai_observer.models.session import ChatSession
from ai_observer.tools.search import format_results_for_display, perform_search
from ai_observer.worker.runtime import ConfigurationError

if TYPE_CHECKING:
    from ai_observer.api.websocket import WebSocketManager
    from ai_observer.core.admin_actions import AdminActionExecutor
    from ai_observer.core.call_logger import CallLogger
    from ai_observer.core.context_builder import ContextBuilder
    from ai_observer.core.session_manager import SessionManager
    from ai_observer.models.agent import ApiProvider, SearchConfig
    from ai_observer.registry.agent_registry import AgentRegistry
    from ai_observer.worker.runtime import WorkerRuntime

logger = logging.getLogger(__name__)

# 让位集合非空后再经过这么多条消息，所有让位者重新获得发言资格
YIELD_AMNESTY_MESSAGES = 5
# 搜索结果发布后，隔多久让同一个 Agent 续答
SEARCH_FOLLOWUP_DELAY = 0.5

_RE_MENTION = re.compile(r"@(\S+)")
_RE_SEARCH_COMMAND = re.compile(r"^/search\s+(.+)$", re.IGNORECASE | re.DOTALL)
_ALL_MENTIONS = ("@全体成员", "@all")

AbortReason = Literal["user", "timeout"]
SearchFunc = Callable[[str, "SearchConfig"], Awaitable[SearchResponse]]


def clock() -> str:
    """错误后缀中使用的时间戳，如 14:03:27。"""
    return datetime.now().strftime("%H:%M:%S")


def parse_mentions(text: str, candidates: list[AgentProfile]) -> list[AgentProfile]:
    """按出现顺序解析 @名字：不区分大小写，名字完全相同或以提及内容开头即命中，结果去重。"""
    matched: list[AgentProfile] = []
    seen: set[str] = set()
    for mention in _RE_MENTION.findall(text):
        needle = mention.lower()
        for agent in candidates:
            if agent.agent_id in seen:
                continue
            name = agent.name.lower()
            if name == needle or name.startswith(needle):
                matched.append(agent)
                seen.add(agent.agent_id)
                break
    return matched


def mentions_everyone(text: str) -> bool:
    lower = text.lower()
    return any(tag in lower for tag in _ALL_MENTIONS)


@dataclass
class AbortHandle:
    """一个进行中回合的中止句柄：记录中止原因，并取消回合任务。"""

    agent_id: str
    message_id: str = ""
    task: asyncio.Task | None = None
    timeout_handle: asyncio.TimerHandle | None = None
    reason: AbortReason | None = None
    settled: bool = False  # 占位消息已定稿或已删除，中止时不再处理它

    def abort(self, reason: AbortReason) -> None:
        if self.reason is None:
            self.reason = reason
        if self.timeout_handle:
            self.timeout_handle.cancel()
        if self.task and not self.task.done():
            self.task.cancel()


@dataclass
class PendingDispatch:
    """呼吸时间内等待触发的一次调度；message_count 是做出决定时的已落定消息数。"""

    agent_ids: list[str]
    message_count: int
    timer: asyncio.TimerHandle | None = None


@dataclass
class SchedulerState:
    """单个会话的调度状态。"""

    session_id: str
    autoplay: bool = False
    pending: set[str] = field(default_factory=set)
    busy: set[str] = field(default_factory=set)
    handles: dict[str, AbortHandle] = field(default_factory=dict)
    last_spoke_at: dict[str, int] = field(default_factory=dict)
    mention_queue: deque[str] = field(default_factory=deque)
    dispatch: PendingDispatch | None = None
    followups: list[asyncio.TimerHandle] = field(default_factory=list)
    evaluate_scheduled: bool = False

    @property
    def active(self) -> set[str]:
        return self.busy | self.pending


class Orchestrator:
    """回合调度器：资格判断、选人、呼吸延迟、回合执行、超时与全局停止。"""

    def __init__(
        self,
        session_manager: SessionManager,
        context_builder: ContextBuilder,
        worker_runtime: WorkerRuntime,
        registry: AgentRegistry,
        admin_actions: AdminActionExecutor,
        ws_manager: WebSocketManager | None = None,
        call_logger: CallLogger | None = None,
        search: SearchFunc = perform_search,
    ):
        self.session_manager = session_manager
        self.context_builder = context_builder
        self.worker_runtime = worker_runtime
        self.registry = registry
        self.admin_actions = admin_actions
        self.ws_manager = ws_manager
        self.call_logger = call_logger
        self.search = search

        self.states: dict[str, SchedulerState] = {}
        self._background: set[asyncio.Task] = set()
        session_manager.add_listener(self._on_session_changed)

    def state(self, session_id: str) -> SchedulerState:
        if session_id not in self.states:
            self.states[session_id] = SchedulerState(session_id=session_id)
        return self.states[session_id]

    def busy_agents(self, session_id: str) -> list[str]:
        """正在生成或已占位的 Agent（供前端显示加载状态）。"""
        state = self.states.get(session_id)
        return sorted(state.active) if state else []

    # ── 资格判断 ──

    def _members(self, session_id: str) -> list[AgentProfile]:
        group = self.session_manager.group_of(session_id)
        if not group:
            return []
        return [a for a in (self.registry.find_agent(m) for m in group.member_ids) if a]

    def _turn_blocker(self, state: SchedulerState, session: ChatSession, agent: AgentProfile) -> str | None:
        """开回合的前提条件，手动触发与自动播放共用；返回阻止原因，None 表示可以开。"""
        if not agent.is_configured:
            return "unconfigured"
        if agent.is_active is False:
            return "inactive"
        if agent.agent_id in state.active:
            return "busy"
        if not self.session_manager.settings.enable_concurrency and state.active:
            return "concurrency"
        if session.is_muted(agent.agent_id, now_ms()):
            return "muted"
        return None

    def _autoplay_blocker(
        self,
        state: SchedulerState,
        session: ChatSession,
        agent: AgentProfile,
        member_count: int,
        last_speaker_id: str | None,
    ) -> str | None:
        """自动播放额外的条件：未让位、不连续自言自语、消息数冷却。"""
        reason = self._turn_blocker(state, session, agent)
        if reason:
            return reason
        if agent.agent_id in session.yielded_agent_ids:
            return "yielded"
        # 只有一个成员时允许连续发言
        if member_count > 1 and agent.agent_id == last_speaker_id:
            return "last_speaker"
        spoke_at = state.last_spoke_at.get(agent.agent_id)
        cooldown = max(2, member_count // 2)
        if spoke_at is not None and session.message_count - spoke_at < cooldown:
            return f"cooldown({session.message_count - spoke_at}/{cooldown})"
        return None

    def _apply_yield_amnesty(self, session: ChatSession) -> ChatSession:
        if (
            session.yielded_agent_ids
            and session.yielded_at_count is not None
            and session.message_count - session.yielded_at_count >= YIELD_AMNESTY_MESSAGES
        ):
            logger.info("[SCHED] Yield amnesty: session_id=%s cleared=%s", session.id, session.yielded_agent_ids)
            return self.session_manager.update_session(
                session.id,
                lambda s: s.model_copy(update={"yielded_agent_ids": [], "yielded_at_count": None}),
            ) or session
        return session

    def eligible_agents(self, session_id: str) -> list[AgentProfile]:
        """当前可被自动播放选中的成员；先执行让位赦免再判断。"""
        session = self.session_manager.get_session(session_id)
        if not session:
            return []
        state = self.state(session_id)
        session = self._apply_yield_amnesty(session)
        members = self._members(session_id)
        settled = session.settled_messages
        last_speaker = next((m.sender_id for m in reversed(settled) if not m.is_system), None)

        eligible = []
        for agent in members:
            reason = self._autoplay_blocker(state, session, agent, len(members), last_speaker)
            if reason:
                logger.debug("[SCHED] %s not eligible: %s", agent.name, reason)
            else:
                eligible.append(agent)
        return eligible

    # ── 自动播放 ──

    def set_autoplay(self, session_id: str, enabled: bool) -> None:
        state = self.state(session_id)
        state.autoplay = enabled
        logger.info("[SCHED] Autoplay %s: session_id=%s", "on" if enabled else "off", session_id)
        if enabled:
            self._schedule_evaluate(session_id)
        else:
            self._cancel_dispatch(state)

    def _on_session_changed(self, session_id: str) -> None:
        state = self.states.get(session_id)
        if state and state.autoplay:
            self._schedule_evaluate(session_id)

    def _schedule_evaluate(self, session_id: str) -> None:
        """把同一轮事件循环内的多次提交合并为一次评估。"""
        state = self.state(session_id)
        if state.evaluate_scheduled:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        state.evaluate_scheduled = True
        loop.call_soon(self._run_scheduled_evaluate, session_id)

    def _run_scheduled_evaluate(self, session_id: str) -> None:
        self.state(session_id).evaluate_scheduled = False
        self.evaluate(session_id)

    def evaluate(self, session_id: str) -> list[str]:
        """自动播放的一次决策，返回本次安排触发的 agent_id 列表（空表示不触发）。"""
        state = self.state(session_id)
        if not state.autoplay:
            return []
        session = self.session_manager.get_session(session_id)
        if not session or not session.messages:
            return []
        concurrency = self.session_manager.settings.enable_concurrency
        if not concurrency and state.active:
            return []
        last_message = session.messages[-1]
        if last_message.is_streaming or last_message.is_error:
            return []

        count = session.message_count
        if state.dispatch:
            if state.dispatch.message_count == count:
                return []
            # 呼吸时间内会话有了新消息：作废旧决定，按新状态重新选
            self._cancel_dispatch(state)

        eligible = self.eligible_agents(session_id)
        selected = self._select(state, eligible, last_message, concurrency)
        if selected:
            self._schedule_dispatch(state, selected, count)
        elif not eligible:
            logger.debug("[SCHED] No eligible agents: session_id=%s", session_id)
        return selected

    def _select(
        self,
        state: SchedulerState,
        eligible: list[AgentProfile],
        last_message: Message,
        concurrency: bool,
    ) -> list[str]:
        """选人优先级：提及队列 → @全体成员 → @名字 → 随机。"""
        eligible_ids = {a.agent_id for a in eligible}

        if state.mention_queue:
            if concurrency:
                picked = [a for a in state.mention_queue if a in eligible_ids]
                state.mention_queue.clear()
                if picked:
                    logger.info("[SCHED] Mention queue (concurrent): %s", picked)
                    return picked
            else:
                while state.mention_queue:
                    next_id = state.mention_queue.popleft()
                    if next_id in eligible_ids:
                        logger.info("[SCHED] Mention queue: %s", next_id)
                        return [next_id]

        if not eligible:
            return []

        if mentions_everyone(last_message.text):
            ordered = random.sample(eligible, len(eligible))
            logger.info("[SCHED] @all: %s", [a.name for a in ordered])
        else:
            ordered = parse_mentions(last_message.text, eligible)

        if len(ordered) > 1:
            ids = [a.agent_id for a in ordered]
            if concurrency:
                return ids
            state.mention_queue.extend(ids[1:])
            return ids[:1]
        if ordered:
            logger.info("[SCHED] Mentioned: %s", ordered[0].name)
            return [ordered[0].agent_id]
        choice = random.choice(eligible)
        logger.info("[SCHED] Random pick: %s", choice.name)
        return [choice.agent_id]

    def _schedule_dispatch(self, state: SchedulerState, agent_ids: list[str], message_count: int) -> None:
        delay = self.session_manager.settings.breathing_time / 1000
        loop = asyncio.get_running_loop()
        dispatch = PendingDispatch(agent_ids=agent_ids, message_count=message_count)
        dispatch.timer = loop.call_later(delay, self._fire_dispatch, state, dispatch)
        state.dispatch = dispatch
        logger.info(
            "[SCHED] Dispatch scheduled: session_id=%s agents=%s delay=%.1fs",
            state.session_id, agent_ids, delay,
        )

    def _fire_dispatch(self, state: SchedulerState, dispatch: PendingDispatch) -> None:
        if state.dispatch is not dispatch:
            return
        state.dispatch = None
        started = [
            agent_id for agent_id in dispatch.agent_ids
            if self.trigger_agent_reply(state.session_id, agent_id)
        ]
        if not started and state.autoplay:
            self._schedule_evaluate(state.session_id)

    def _cancel_dispatch(self, state: SchedulerState) -> None:
        if state.dispatch and state.dispatch.timer:
            state.dispatch.timer.cancel()
            state.dispatch = None

    # ── 回合 ──

    def trigger_agent_reply(
        self, session_id: str, agent_id: str, disable_search: bool = False
    ) -> asyncio.Task | None:
        """尝试为 agent 开一个回合；不满足条件返回 None，否则返回回合任务。

        检查与占位之间没有挂起点，两个并发的决策不可能同时认为自己是唯一的回合。
        """
        session = self.session_manager.get_session(session_id)
        agent = self.registry.find_agent(agent_id)
        if not session or not agent:
            logger.warning("[TURN] trigger ignored: session_id=%s agent_id=%s", session_id, agent_id)
            return None
        state = self.state(session_id)
        reason = self._turn_blocker(state, session, agent)
        if reason:
            logger.info("[TURN] trigger blocked: agent=%s reason=%s", agent.name, reason)
            return None

        state.pending.add(agent_id)
        try:
            provider = self.worker_runtime.resolve_provider(agent)
        except ConfigurationError as e:
            state.pending.discard(agent_id)
            logger.warning("[TURN] configuration error: agent=%s error=%s", agent.name, e)
            self.session_manager.append_message(session_id, Message(
                id=new_message_id(agent_id),
                sender_id=agent_id,
                text=f"[{clock()}] [系统错误] {e}",
                is_error=True,
            ))
            return None

        # 回合持有 Agent 配置的快照
        snapshot = agent.model_copy(deep=True)
        handle = AbortHandle(agent_id=agent_id, message_id=new_message_id(agent_id))
        state.handles[agent_id] = handle
        state.busy.add(agent_id)
        self.session_manager.append_message(
            session_id, Message(id=handle.message_id, sender_id=agent_id, is_streaming=True)
        )

        loop = asyncio.get_running_loop()
        handle.task = loop.create_task(self._run_turn(state, snapshot, provider, handle, disable_search))
        timeout = self.session_manager.settings.timeout_duration / 1000
        handle.timeout_handle = loop.call_later(timeout, self._on_timeout, state, handle)
        logger.info(
            "[TURN] opened: session_id=%s agent=%s message_id=%s search_disabled=%s",
            session_id, agent.name, handle.message_id, disable_search,
        )
        self._notify_busy(session_id)
        return handle.task

    async def _run_turn(
        self,
        state: SchedulerState,
        agent: AgentProfile,
        provider: ApiProvider,
        handle: AbortHandle,
        disable_search: bool,
    ) -> None:
        session_id = state.session_id
        started = time.monotonic()
        log = TurnLog(
            turn_id=handle.message_id,
            session_id=session_id,
            agent_id=agent.agent_id,
            agent_name=agent.name,
            model_id=agent.model_id,
        )
        try:
            group = self.session_manager.group_of(session_id)
            admin_ids = list(group.admin_ids) if group else []
            search_enabled = agent.can_search and not disable_search
            ctx = await self.context_builder.build(session_id, agent, provider, search_enabled)
            interpreter = ResponseInterpreter(
                can_moderate=agent.role == AgentRole.ADMIN or agent.agent_id in admin_ids,
                search_enabled=search_enabled,
            )

            async with aclosing(self.worker_runtime.stream_reply(ctx)) as stream:
                async for chunk in stream:
                    if interpreter.feed(chunk):
                        logger.info("[TURN] PASS detected mid-stream: agent=%s", agent.name)
                        break
                    if chunk.text or chunk.reasoning:
                        self.session_manager.patch_message(
                            session_id, handle.message_id,
                            text=interpreter.display_text,
                            reply_to_id=interpreter.display_reply_id,
                            reasoning_text=interpreter.reasoning or None,
                        )
                    if chunk.is_complete:
                        break

            if handle.timeout_handle:
                handle.timeout_handle.cancel()
            outcome = interpreter.finalize()
            log.raw_output = outcome.raw_text
            if outcome.admin_action:
                log.admin_action = outcome.admin_action.type
                self.admin_actions.apply(session_id, agent, outcome.admin_action, admin_ids)

            if outcome.is_pass:
                self._commit_pass(session_id, agent.agent_id, handle)
                log.decision = "pass"
            else:
                cost = self._commit_speak(session_id, agent, handle, outcome)
                log.decision = "speak"
                log.content = outcome.text
                log.cost_usd = cost
                if outcome.usage:
                    log.input_tokens, log.output_tokens = outcome.usage.input, outcome.usage.output
                if outcome.search_query and agent.search_config:
                    log.search_query = outcome.search_query
                    await self._run_agent_search(state, agent, outcome.search_query)

        except asyncio.CancelledError:
            if handle.reason == "timeout":
                log.decision = "timeout"
                logger.warning("[TURN] timed out: agent=%s", agent.name)
            else:
                log.decision = "aborted"
                if not handle.settled:
                    self.session_manager.remove_message(session_id, handle.message_id)
                    handle.settled = True
                logger.info("[TURN] aborted: agent=%s reason=%s", agent.name, handle.reason)
                if handle.reason is None:
                    raise
        except Exception as e:
            log.decision = "error"
            log.error = str(e)
            logger.error("[TURN] failed: agent=%s error=%s", agent.name, e, exc_info=True)
            if not handle.settled:
                self._append_error(session_id, handle.message_id, f"[{clock()}] [错误: {e or '未知错误'}]", "\n\n")
                handle.settled = True
        finally:
            log.duration_ms = int((time.monotonic() - started) * 1000)
            self._release(state, handle)
            if self.call_logger:
                self.call_logger.save(log)

    def _commit_pass(self, session_id: str, agent_id: str, handle: AbortHandle) -> None:
        """放弃发言：删除占位消息并加入让位集合；集合由空变非空时记录当时的消息数。"""

        def _apply(session: ChatSession) -> ChatSession:
            messages = [m for m in session.messages if m.id != handle.message_id]
            update: dict = {"messages": messages}
            if agent_id not in session.yielded_agent_ids:
                update["yielded_agent_ids"] = [*session.yielded_agent_ids, agent_id]
                if not session.yielded_agent_ids:
                    update["yielded_at_count"] = sum(1 for m in messages if m.is_settled)
            return session.model_copy(update=update)

        self.session_manager.update_session(session_id, _apply)
        handle.settled = True
        logger.info("[TURN] pass: session_id=%s agent_id=%s", session_id, agent_id)

    def _commit_speak(
        self, session_id: str, agent: AgentProfile, handle: AbortHandle, outcome: TurnOutcome
    ) -> float:
        """发言：就地定稿占位消息，并把费用累加到会话总费用。"""
        cost = self.registry.calculate_cost(outcome.usage, agent.provider_id, agent.model_id)

        def _apply(session: ChatSession) -> ChatSession:
            messages = [
                m.model_copy(update={
                    "text": outcome.text,
                    "reasoning_text": outcome.reasoning_text,
                    "reasoning_signature": outcome.reasoning_signature,
                    "tokens": outcome.usage,
                    "cost": cost,
                    "reply_to_id": outcome.reply_to_id,
                    "is_streaming": False,
                }) if m.id == handle.message_id else m
                for m in session.messages
            ]
            return session.model_copy(update={
                "messages": messages,
                "total_cost": session.total_cost + cost,
                "last_updated": now_ms(),
            })

        self.session_manager.update_session(session_id, _apply)
        handle.settled = True
        logger.info(
            "[TURN] speak: session_id=%s agent=%s len=%d cost=%.6f",
            session_id, agent.name, len(outcome.text), cost,
        )
        return cost

    def _append_error(self, session_id: str, message_id: str, suffix: str, separator: str) -> None:
        """把错误后缀追加到占位消息上，标记为错误并结束流式状态。"""
        self.session_manager.update_messages(
            session_id,
            lambda messages: [
                m.model_copy(update={
                    "text": f"{m.text}{separator}{suffix}" if m.text else suffix,
                    "is_error": True,
                    "is_streaming": False,
                }) if m.id == message_id else m
                for m in messages
            ],
        )

    def _on_timeout(self, state: SchedulerState, handle: AbortHandle) -> None:
        """超时：标注占位消息、立即释放名额，再取消回合任务。"""
        if state.handles.get(handle.agent_id) is not handle or handle.settled:
            return
        seconds = f"{self.session_manager.settings.timeout_duration / 1000:g}"
        self._append_error(
            state.session_id, handle.message_id,
            f"[{clock()}] [系统: 响应超时 ({seconds}s), 已强制终止]", "\n",
        )
        handle.settled = True
        self._release(state, handle)
        handle.abort("timeout")

    def _release(self, state: SchedulerState, handle: AbortHandle) -> None:
        """释放回合占用的名额；名额已被超时或 stop_all 释放时什么都不做。"""
        if handle.timeout_handle:
            handle.timeout_handle.cancel()
        if state.handles.get(handle.agent_id) is not handle:
            return
        del state.handles[handle.agent_id]
        state.busy.discard(handle.agent_id)
        state.pending.discard(handle.agent_id)
        session = self.session_manager.get_session(state.session_id)
        if session:
            state.last_spoke_at[handle.agent_id] = session.message_count
        self._notify_busy(state.session_id)
        if state.autoplay:
            self._schedule_evaluate(state.session_id)

    # ── 搜索 ──

    async def _run_agent_search(self, state: SchedulerState, agent: AgentProfile, query: str) -> None:
        """执行 Agent 发起的搜索；成功则发布结果并稍后让同一个 Agent 关闭搜索续答，失败不续答。"""
        session_id = state.session_id
        response = await self.search(query, agent.search_config)
        if response.error:
            logger.warning("[TURN] search failed: agent=%s error=%s", agent.name, response.error)
            self.session_manager.post_system_message(session_id, f"[{clock()}] 搜索失败: {response.error}")
            return

        self.session_manager.append_message(session_id, Message(
            id=new_message_id(agent.agent_id),
            sender_id=agent.agent_id,
            text=format_results_for_display(response),
            is_search_result=True,
            search_query=query,
        ))
        timer = asyncio.get_running_loop().call_later(
            SEARCH_FOLLOWUP_DELAY, self._search_followup, state, agent.agent_id,
        )
        state.followups.append(timer)

    def _search_followup(self, state: SchedulerState, agent_id: str) -> None:
        now = asyncio.get_running_loop().time()
        state.followups = [t for t in state.followups if not t.cancelled() and t.when() > now]
        self.trigger_agent_reply(state.session_id, agent_id, disable_search=True)

    # ── 人类操作 ──

    async def post_user_message(
        self,
        session_id: str,
        text: str,
        reply_to_id: str | None = None,
        attachment: Attachment | None = None,
    ) -> Message | None:
        """人类发言：清空提及队列；普通消息同时清空让位集合。以 /search 开头时改为执行搜索。"""
        state = self.state(session_id)
        state.mention_queue.clear()

        match = _RE_SEARCH_COMMAND.match(text.strip())
        if match:
            return await self._human_search(session_id, match.group(1).strip())

        message = Message(
            id=new_message_id(USER_ID),
            sender_id=USER_ID,
            text=text,
            reply_to_id=reply_to_id,
            attachment=attachment,
        )
        self.session_manager.update_session(
            session_id,
            lambda s: s.model_copy(update={
                "messages": [*s.messages, message],
                "yielded_agent_ids": [],
                "yielded_at_count": None,
                "last_updated": now_ms(),
            }),
        )
        logger.info("[SCHED] User message: session_id=%s len=%d", session_id, len(text))
        return message

    async def _human_search(self, session_id: str, query: str) -> Message | None:
        agent = next(
            (a for a in self.registry.list_agents() if a.can_search and a.is_active is not False),
            None,
        )
        if not agent:
            self.session_manager.post_system_message(
                session_id,
                f"[{clock()}] 无法执行搜索：没有配置搜索工具的角色。请在角色设置中启用搜索功能。",
            )
            return None

        searching = self.session_manager.post_system_message(
            session_id, f'🔍 {agent.name} 正在搜索: "{query}"...'
        )
        response = await self.search(query, agent.search_config)
        result = Message(
            id=new_message_id(agent.agent_id),
            sender_id=agent.agent_id,
            text=format_results_for_display(response),
            is_search_result=True,
            search_query=query,
        )
        self.session_manager.update_session(
            session_id,
            lambda s: s.model_copy(update={
                "messages": [*(m for m in s.messages if m.id != searching.id), result],
                "yielded_agent_ids": [],
                "yielded_at_count": None,
                "last_updated": now_ms(),
            }),
        )
        return result

    def stop_all(self, session_id: str | None = None) -> None:
        """硬停止：关闭自动播放，中止所有回合并无条件清空忙碌与占位集合。"""
        targets = [self.states[session_id]] if session_id in self.states else (
            [] if session_id else list(self.states.values())
        )
        for state in targets:
            state.autoplay = False
            self._cancel_dispatch(state)
            for timer in state.followups:
                timer.cancel()
            state.followups.clear()
            handles = list(state.handles.values())
            state.handles.clear()
            state.busy.clear()
            state.pending.clear()
            state.mention_queue.clear()
            for handle in handles:
                handle.abort("user")
                # 任务可能还没开始执行，占位消息在这里直接删除
                if not handle.settled:
                    self.session_manager.remove_message(state.session_id, handle.message_id)
                    handle.settled = True
            logger.info("[SCHED] Stop all: session_id=%s aborted=%s", state.session_id, [h.agent_id for h in handles])
            self._notify_busy(state.session_id)

    def clear_session(self, session_id: str) -> None:
        """清空聊天记录：先停止所有回合，再清空消息并重置冷却计数。"""
        self.stop_all(session_id)
        self.session_manager.clear_messages(session_id)
        if session_id in self.states:
            self.states[session_id].last_spoke_at.clear()

    def forget_session(self, session_id: str) -> None:
        self.stop_all(session_id)
        self.states.pop(session_id, None)

    # ── 禁言巡检 ──

    def sweep_mutes(self) -> dict[str, list[str]]:
        """对所有会话执行一次禁言到期检查，返回 session_id → 被解禁的 agent_id。"""
        swept = {}
        for session_id in list(self.session_manager.sessions):
            expired = self.admin_actions.sweep_expired_mutes(session_id)
            if expired:
                swept[session_id] = expired
        return swept

    async def run_mute_sweeper(self) -> None:
        """后台任务：启动时立即检查一次，之后按 mute_sweep_interval 秒周期检查。"""
        while True:
            self.sweep_mutes()
            await asyncio.sleep(self.session_manager.settings.mute_sweep_interval)

    # ── 推送 ──

    def _notify_busy(self, session_id: str) -> None:
        if not self.ws_manager:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        task = loop.create_task(self.ws_manager.broadcast_message(session_id, {
            "type": "busy_agents",
            "session_id": session_id,
            "agent_ids": self.busy_agents(session_id),
        }))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
