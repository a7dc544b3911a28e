"""Orchestrator 单元测试：回合生命周期、资格判断、自动播放选人、超时与停止。"""

import asyncio

import pytest

from ai_observer.core.orchestrator import mentions_everyone, parse_mentions
from ai_observer.models.agent import AgentRole, SearchConfig
from ai_observer.models.protocol import USER_ID, Message, SearchResponse, SearchResult, now_ms
from ai_observer.models.session import MuteInfo
from ai_observer.worker.adapters.base import StreamError

from conftest import make_agent, settle, wait_for


@pytest.fixture
def sid(chat):
    return chat[1].id


def seed_messages(session_manager, sid, *senders):
    """按发送者顺序写入若干条已落定消息。"""
    messages = [
        Message(id=f"m{i}", sender_id=sender, text=f"{sender} 说了第 {i} 句")
        for i, sender in enumerate(senders)
    ]
    session_manager.update_session(sid, lambda s: s.model_copy(update={"messages": messages}))


def eligible_ids(orchestrator, sid):
    return [a.agent_id for a in orchestrator.eligible_agents(sid)]


# ── 提及解析 ──

def test_parse_mentions_prefix_and_dedupe(registry):
    agents = registry.list_agents()
    matched = parse_mentions("@Bo 和 @alice 还有 @bob", agents)
    assert [a.agent_id for a in matched] == ["bob", "alice"]


def test_parse_mentions_ignores_unknown(registry):
    assert parse_mentions("@nobody 你好", registry.list_agents()) == []


def test_mentions_everyone():
    assert mentions_everyone("@全体成员 开会了")
    assert mentions_everyone("hi @ALL")
    assert not mentions_everyone("hello all")


# ── 单个回合 ──

async def test_trigger_speak_finalizes_placeholder(orchestrator, adapter, session_manager, sid):
    adapter.script("alice", "{{RESPONSE: 大家", "好}}")
    task = orchestrator.trigger_agent_reply(sid, "alice")

    assert task is not None
    assert orchestrator.busy_agents(sid) == ["alice"]
    assert session_manager.get_session(sid).messages[-1].is_streaming

    await task
    session = session_manager.get_session(sid)
    [message] = session.messages
    assert message.sender_id == "alice"
    assert message.text == "大家好"
    assert not message.is_streaming
    # 1000 输入 * 1/1M + 500 输出 * 2/1M
    assert message.cost == pytest.approx(0.002)
    assert session.total_cost == pytest.approx(0.002)
    assert orchestrator.busy_agents(sid) == []
    assert orchestrator.state(sid).last_spoke_at["alice"] == 1


async def test_pass_removes_placeholder_and_yields(orchestrator, session_manager, sid):
    await orchestrator.post_user_message(sid, "有人吗")
    await orchestrator.trigger_agent_reply(sid, "alice")

    session = session_manager.get_session(sid)
    assert [m.sender_id for m in session.messages] == [USER_ID]
    assert session.yielded_agent_ids == ["alice"]
    assert session.yielded_at_count == 1


async def test_plain_text_without_wrapper_is_discarded(orchestrator, adapter, session_manager, sid):
    adapter.script("alice", "我忘了协议格式")
    await orchestrator.trigger_agent_reply(sid, "alice")
    assert session_manager.get_session(sid).messages == []


async def test_yield_snapshot_taken_only_when_set_becomes_non_empty(orchestrator, session_manager, sid):
    await orchestrator.post_user_message(sid, "第一句")
    await orchestrator.trigger_agent_reply(sid, "alice")
    await orchestrator.post_user_message(sid, "第二句")
    session_manager.update_session(
        sid, lambda s: s.model_copy(update={"yielded_agent_ids": ["alice"], "yielded_at_count": 1})
    )
    await orchestrator.trigger_agent_reply(sid, "bob")
    session = session_manager.get_session(sid)
    assert session.yielded_agent_ids == ["alice", "bob"]
    assert session.yielded_at_count == 1


async def test_streaming_updates_display_text(orchestrator, adapter, session_manager, sid):
    gate = asyncio.Event()
    adapter.script("alice", "{{RESPONSE: {{REPLY: m0}} 正在", "输入", gate, "}}")
    task = orchestrator.trigger_agent_reply(sid, "alice")
    await wait_for(lambda: session_manager.get_session(sid).messages[-1].text == "正在输入")

    placeholder = session_manager.get_session(sid).messages[-1]
    assert placeholder.is_streaming
    assert placeholder.reply_to_id == "m0"

    gate.set()
    await task
    assert session_manager.get_session(sid).messages[-1].text == "正在输入"


async def test_admin_action_applied_by_admin_agent(orchestrator, adapter, session_manager, registry, chat, sid):
    registry.register_agent(make_agent("boss", "Boss", role=AgentRole.ADMIN))
    session_manager.add_group_member(chat[0].id, "boss")
    adapter.script("boss", "{{RESPONSE: {{MUTE: Bob, 10min}} 安静点}}")

    await orchestrator.trigger_agent_reply(sid, "boss")

    session = session_manager.get_session(sid)
    assert session.is_muted("bob", now_ms())
    assert [m.text for m in session.messages] == ["安静点", "Boss 禁言了 Bob（10分钟）"]
    assert orchestrator.trigger_agent_reply(sid, "bob") is None


async def test_admin_action_applied_even_on_pass(orchestrator, adapter, session_manager, chat, sid):
    session_manager.toggle_group_admin(chat[0].id, "alice")
    adapter.script("alice", "{{NOTE: 周五开会}} {{PASS}}")
    await orchestrator.trigger_agent_reply(sid, "alice")
    session = session_manager.get_session(sid)
    assert session.admin_notes == ["[Alice]: 周五开会"]
    assert session.yielded_agent_ids == ["alice"]


async def test_bare_admin_command_counts_as_speaking(orchestrator, adapter, session_manager, chat, sid):
    session_manager.toggle_group_admin(chat[0].id, "alice")
    adapter.script("alice", "{{RESPONSE: {{NOTE: 规则一}}}}")
    await orchestrator.trigger_agent_reply(sid, "alice")

    session = session_manager.get_session(sid)
    assert session.admin_notes == ["[Alice]: 规则一"]
    assert session.yielded_agent_ids == []
    placeholder = next(m for m in session.messages if m.sender_id == "alice")
    assert placeholder.text == ""
    assert not placeholder.is_streaming


# ── 开回合前提 ──

async def test_trigger_blocked_while_same_agent_busy(orchestrator, adapter, sid):
    gate = asyncio.Event()
    adapter.script("alice", gate, "{{RESPONSE: 好}}")
    task = orchestrator.trigger_agent_reply(sid, "alice")

    assert orchestrator.trigger_agent_reply(sid, "alice") is None
    gate.set()
    await task


async def test_concurrency_off_blocks_other_agents(orchestrator, adapter, session_manager, sid):
    """并发关闭时 A 进行中，任何评估都不会选中 B。"""
    gate = asyncio.Event()
    adapter.script("alice", gate, "{{RESPONSE: 好}}")
    task = orchestrator.trigger_agent_reply(sid, "alice")
    orchestrator.state(sid).autoplay = True
    await settle()

    assert orchestrator.trigger_agent_reply(sid, "bob") is None
    await orchestrator.post_user_message(sid, "@bob 你说")
    assert orchestrator.evaluate(sid) == []
    assert orchestrator.state(sid).dispatch is None

    orchestrator.stop_all(sid)
    await task


async def test_concurrency_on_allows_parallel_turns(orchestrator, adapter, session_manager, sid):
    session_manager.update_settings(enable_concurrency=True)
    gate = asyncio.Event()
    adapter.script("alice", gate, "{{RESPONSE: 我是 A}}")
    adapter.script("bob", "{{RESPONSE: 我是 B}}")

    task_a = orchestrator.trigger_agent_reply(sid, "alice")
    task_b = orchestrator.trigger_agent_reply(sid, "bob")
    assert task_a and task_b
    await task_b
    gate.set()
    await task_a

    texts = sorted(m.text for m in session_manager.get_session(sid).messages)
    assert texts == ["我是 A", "我是 B"]


async def test_configuration_error_posts_error_message(orchestrator, registry, session_manager, chat, sid):
    registry.register_agent(make_agent("dave", "Dave", provider_id="missing"))
    session_manager.add_group_member(chat[0].id, "dave")

    assert orchestrator.trigger_agent_reply(sid, "dave") is None
    message = session_manager.get_session(sid).messages[-1]
    assert message.sender_id == "dave"
    assert message.is_error
    assert message.text.endswith("[系统错误] 找不到供应商配置。")
    assert orchestrator.busy_agents(sid) == []


def test_unconfigured_or_inactive_agent_never_triggers(orchestrator, registry, sid):
    registry.register_agent(make_agent("bob", model_id=""))
    registry.register_agent(make_agent("carol", is_active=False))
    assert orchestrator.trigger_agent_reply(sid, "bob") is None
    assert orchestrator.trigger_agent_reply(sid, "carol") is None


# ── 失败与中止 ──

async def test_stream_error_marks_message(orchestrator, adapter, session_manager, sid):
    adapter.script("alice", "{{RESPONSE: 说到一半", StreamError("API 500: boom"))
    await orchestrator.trigger_agent_reply(sid, "alice")

    message = session_manager.get_session(sid).messages[-1]
    assert message.is_error
    assert not message.is_streaming
    assert message.text.startswith("说到一半\n\n[")
    assert message.text.endswith("[错误: API 500: boom]")
    assert orchestrator.busy_agents(sid) == []


async def test_timeout_annotates_and_frees_slot(orchestrator, adapter, session_manager, sid):
    session_manager.update_settings(timeout_duration=50)
    adapter.script("alice", "{{RESPONSE: 我在想", asyncio.Event())
    adapter.script("bob", "{{RESPONSE: 我来}}")
    task = orchestrator.trigger_agent_reply(sid, "alice")

    await wait_for(lambda: orchestrator.busy_agents(sid) == [])
    message = session_manager.get_session(sid).messages[-1]
    assert message.is_error
    assert not message.is_streaming
    assert message.text.startswith("我在想\n[")
    assert message.text.endswith("[系统: 响应超时 (0.05s), 已强制终止]")

    # 名额立即释放，下一回合可以马上开始
    bob_task = orchestrator.trigger_agent_reply(sid, "bob")
    assert bob_task is not None
    await bob_task
    await task
    assert session_manager.get_session(sid).messages[-1].text == "我来"


async def test_stop_all_aborts_and_removes_placeholders(orchestrator, adapter, session_manager, sid):
    session_manager.update_settings(enable_concurrency=True)
    adapter.script("alice", "{{RESPONSE: 等等", asyncio.Event())
    adapter.script("bob", asyncio.Event())
    orchestrator.set_autoplay(sid, True)
    task_a = orchestrator.trigger_agent_reply(sid, "alice")
    task_b = orchestrator.trigger_agent_reply(sid, "bob")
    await settle()

    orchestrator.stop_all(sid)
    state = orchestrator.state(sid)
    assert not state.autoplay
    assert state.busy == set() and state.pending == set() and state.handles == {}

    await asyncio.gather(task_a, task_b)
    assert session_manager.get_session(sid).messages == []


async def test_clear_session_resets_everything(orchestrator, adapter, session_manager, sid):
    adapter.script("alice", "{{RESPONSE: 你好}}")
    await orchestrator.trigger_agent_reply(sid, "alice")
    orchestrator.admin_actions.add_note(sid, "Boss", "记住")

    orchestrator.clear_session(sid)
    session = session_manager.get_session(sid)
    assert session.messages == []
    assert session.admin_notes == []
    assert session.total_cost == 0
    assert orchestrator.state(sid).last_spoke_at == {}


# ── 资格 ──

def test_last_speaker_and_cooldown_excluded(orchestrator, session_manager, sid):
    seed_messages(session_manager, sid, USER_ID, "alice")
    orchestrator.state(sid).last_spoke_at["bob"] = 2
    # alice 刚发言；bob 冷却中（0 < max(2, 3 // 2)）
    assert eligible_ids(orchestrator, sid) == ["carol"]


def test_cooldown_counts_settled_messages_only(orchestrator, session_manager, sid):
    seed_messages(session_manager, sid, USER_ID, "carol", USER_ID)
    orchestrator.state(sid).last_spoke_at["bob"] = 1
    session_manager.append_message(sid, Message(id="p", sender_id="alice", is_streaming=True))
    # 已落定 3 条，距离 bob 上次发言 2 条，刚好冷却结束；占位符不计数
    assert "bob" in eligible_ids(orchestrator, sid)
    orchestrator.state(sid).last_spoke_at["bob"] = 2
    assert "bob" not in eligible_ids(orchestrator, sid)


def test_system_messages_do_not_count_as_last_speaker(orchestrator, session_manager, sid):
    seed_messages(session_manager, sid, USER_ID, "alice")
    session_manager.post_system_message(sid, "有人被禁言了")
    assert "alice" not in eligible_ids(orchestrator, sid)


def test_single_member_may_speak_consecutively(orchestrator, session_manager, chat, sid):
    group = chat[0]
    for agent_id in ("bob", "carol"):
        session_manager.remove_group_member(group.id, agent_id)
    seed_messages(session_manager, sid, USER_ID, "alice")
    assert eligible_ids(orchestrator, sid) == ["alice"]


def test_yield_amnesty_after_five_messages(orchestrator, session_manager, sid):
    seed_messages(session_manager, sid, USER_ID, "alice", "carol", "alice", "carol")
    session_manager.update_session(
        sid, lambda s: s.model_copy(update={"yielded_agent_ids": ["bob", "carol"], "yielded_at_count": 1})
    )
    # 5 - 1 = 4，尚未赦免
    assert eligible_ids(orchestrator, sid) == ["alice"]

    session_manager.append_message(sid, Message(id="m5", sender_id="alice", text="再说一句"))
    # 6 - 1 = 5，赦免后 bob 与 carol 都恢复资格
    assert eligible_ids(orchestrator, sid) == ["bob", "carol"]
    session = session_manager.get_session(sid)
    assert session.yielded_agent_ids == []
    assert session.yielded_at_count is None


async def test_human_message_resets_yields_agent_message_does_not(orchestrator, adapter, session_manager, sid):
    await orchestrator.post_user_message(sid, "开始")
    await orchestrator.trigger_agent_reply(sid, "alice")
    await orchestrator.trigger_agent_reply(sid, "bob")
    assert session_manager.get_session(sid).yielded_agent_ids == ["alice", "bob"]

    await orchestrator.post_user_message(sid, "继续")
    assert session_manager.get_session(sid).yielded_agent_ids == []

    await orchestrator.trigger_agent_reply(sid, "alice")
    adapter.script("carol", "{{RESPONSE: 我有话说}}")
    await orchestrator.trigger_agent_reply(sid, "carol")
    assert session_manager.get_session(sid).yielded_agent_ids == ["alice"]


# ── 自动播放 ──

async def test_mention_beats_random_pick(orchestrator, adapter, sid):
    adapter.script("bob", "{{RESPONSE: 我觉得不错}}")
    orchestrator.set_autoplay(sid, True)
    await orchestrator.post_user_message(sid, "@bob 你怎么看")

    await wait_for(lambda: len(adapter.calls) >= 1)
    assert adapter.calls[0].agent.agent_id == "bob"
    orchestrator.stop_all(sid)


async def test_multiple_mentions_queue_when_concurrency_off(orchestrator, adapter, sid):
    adapter.script("alice", "{{RESPONSE: 我先说}}")
    adapter.script("bob", "{{RESPONSE: 我补充}}")
    orchestrator.set_autoplay(sid, True)
    await orchestrator.post_user_message(sid, "@alice @bob 讨论一下")

    await wait_for(lambda: len(adapter.calls) >= 2)
    assert [ctx.agent.agent_id for ctx in adapter.calls[:2]] == ["alice", "bob"]
    orchestrator.stop_all(sid)


async def test_mention_all_with_concurrency_triggers_everyone(orchestrator, adapter, session_manager, sid):
    session_manager.update_settings(enable_concurrency=True)
    orchestrator.set_autoplay(sid, True)
    await orchestrator.post_user_message(sid, "@全体成员 集合")

    await wait_for(lambda: len(adapter.calls) >= 3 and not orchestrator.busy_agents(sid))
    await asyncio.sleep(0.05)
    # 三人都放弃后没有人还有资格，自动播放停下
    assert sorted(ctx.agent.agent_id for ctx in adapter.calls) == ["alice", "bob", "carol"]
    assert session_manager.get_session(sid).yielded_agent_ids != []
    orchestrator.stop_all(sid)


async def test_new_message_during_breathing_time_reselects(orchestrator, session_manager, sid):
    session_manager.update_settings(breathing_time=60_000)
    orchestrator.state(sid).autoplay = True
    await orchestrator.post_user_message(sid, "@alice 在吗")
    assert orchestrator.evaluate(sid) == ["alice"]
    first = orchestrator.state(sid).dispatch

    # 会话没变化时保留原来的决定
    assert orchestrator.evaluate(sid) == []
    assert orchestrator.state(sid).dispatch is first

    await orchestrator.post_user_message(sid, "@bob 还是你来")
    assert orchestrator.evaluate(sid) == ["bob"]
    assert first.timer.cancelled()
    orchestrator.stop_all(sid)


async def test_autoplay_does_nothing_without_messages_or_while_streaming(orchestrator, session_manager, sid):
    orchestrator.state(sid).autoplay = True
    assert orchestrator.evaluate(sid) == []
    session_manager.append_message(sid, Message(id="p", sender_id="alice", is_streaming=True))
    assert orchestrator.evaluate(sid) == []


async def test_group_chat_scenario(session_manager, registry, adapter, orchestrator):
    """两名 Agent、并发关闭：用户点名 Gemini，只有 Gemini 发言，DeepSeek 不受影响。"""
    registry.register_agent(make_agent("gemini", "Gemini"))
    registry.register_agent(make_agent("deepseek", "DeepSeek"))
    _, session = session_manager.create_group("双人群", ["gemini", "deepseek"])
    sid = session.id
    gate = asyncio.Event()
    adapter.script("gemini", gate, "{{RESPONSE: 你好！}}")

    orchestrator.set_autoplay(sid, True)
    await orchestrator.post_user_message(sid, "@Gemini 你好")
    assert orchestrator.evaluate(sid) == ["gemini"]

    await wait_for(lambda: len(adapter.calls) == 1)
    orchestrator.set_autoplay(sid, False)
    gate.set()
    await orchestrator.state(sid).handles["gemini"].task

    session = session_manager.get_session(sid)
    assert [(m.sender_id, m.text) for m in session.messages] == [(USER_ID, "@Gemini 你好"), ("gemini", "你好！")]
    assert orchestrator.state(sid).last_spoke_at == {"gemini": 2}
    assert adapter.calls_for("deepseek") == []
    assert session.yielded_agent_ids == []


# ── 搜索 ──

def enable_search(registry, agent_id):
    agent = registry.get_agent(agent_id)
    registry.register_agent(agent.model_copy(update={
        "search_config": SearchConfig(enabled=True, engine="serper", api_key="key"),
    }))


async def test_agent_search_posts_result_and_follows_up(orchestrator, adapter, registry, session_manager, search, sid):
    enable_search(registry, "alice")
    search.return_value = SearchResponse(
        query="今日天气",
        results=[SearchResult(title="天气预报", url="http://weather.test", snippet="晴")],
    )
    adapter.script("alice", "{{RESPONSE: 我查一下 {{SEARCH: 今日天气}}}}")
    adapter.script("alice", "{{RESPONSE: 查到了，晴天}}")

    await orchestrator.trigger_agent_reply(sid, "alice")
    assert adapter.calls[0].search_enabled
    search.assert_awaited_once()
    assert search.await_args.args[0] == "今日天气"

    messages = session_manager.get_session(sid).messages
    assert messages[0].text == "我查一下"
    assert messages[1].is_search_result
    assert messages[1].search_query == "今日天气"
    assert "天气预报" in messages[1].text

    await wait_for(lambda: len(adapter.calls) == 2 and not orchestrator.busy_agents(sid))
    assert not adapter.calls[1].search_enabled
    assert session_manager.get_session(sid).messages[-1].text == "查到了，晴天"


async def test_agent_search_failure_posts_error_without_follow_up(orchestrator, adapter, registry, session_manager, search, sid):
    enable_search(registry, "alice")
    search.return_value = SearchResponse(query="x", error="网络请求失败: boom")
    adapter.script("alice", "{{RESPONSE: {{SEARCH: x}}}}")

    await orchestrator.trigger_agent_reply(sid, "alice")
    await asyncio.sleep(0.6)

    last = session_manager.get_session(sid).messages[-1]
    assert last.is_system
    assert last.text.endswith("搜索失败: 网络请求失败: boom")
    assert len(adapter.calls) == 1


async def test_human_search_command(orchestrator, registry, session_manager, search, sid):
    enable_search(registry, "bob")
    search.return_value = SearchResponse(query="新闻", results=[SearchResult(title="头条", url="http://n", snippet="...")])
    session_manager.update_session(sid, lambda s: s.model_copy(update={"yielded_agent_ids": ["alice"]}))

    result = await orchestrator.post_user_message(sid, "/search 新闻")

    session = session_manager.get_session(sid)
    assert [m.id for m in session.messages] == [result.id]
    assert result.sender_id == "bob"
    assert result.is_search_result
    assert session.yielded_agent_ids == []
    assert search.await_args.args[0] == "新闻"


async def test_human_search_without_capable_agent(orchestrator, session_manager, search, sid):
    assert await orchestrator.post_user_message(sid, "/search 新闻") is None
    message = session_manager.get_session(sid).messages[-1]
    assert message.is_system
    assert "无法执行搜索" in message.text
    search.assert_not_awaited()


# ── 禁言巡检 ──

def test_sweep_mutes_across_sessions(orchestrator, session_manager, sid):
    session_manager.update_session(sid, lambda s: s.model_copy(update={
        "muted_agents": [MuteInfo(agent_id="bob", mute_until=now_ms() - 1000)],
    }))
    assert orchestrator.sweep_mutes() == {sid: ["bob"]}
    assert orchestrator.sweep_mutes() == {}
