"""SessionManager 单元测试：原子更新、按 id 修补、群组/会话 CRUD 与持久化。"""

import pytest

from ai_observer.core.session_manager import SessionManager
from ai_observer.core.storage import DocumentStore
from ai_observer.models.protocol import Message


@pytest.fixture
def sm():
    return SessionManager()


@pytest.fixture
def chat(sm):
    return sm.create_group("测试群组", ["alice", "bob"])


def test_create_group_with_first_session(sm, chat):
    group, session = chat
    assert group.name == "测试群组"
    assert group.member_ids == ["alice", "bob"]
    assert session.group_id == group.id
    assert session.name == "对话 1"
    assert sm.group_of(session.id) is group


def test_update_session_notifies_listeners(sm, chat):
    _, session = chat
    seen = []
    sm.add_listener(seen.append)
    sm.append_message(session.id, Message(id="m1", sender_id="user", text="hi"))
    assert seen == [session.id]


def test_update_returning_same_object_is_noop(sm, chat):
    _, session = chat
    seen = []
    sm.add_listener(seen.append)
    assert sm.update_session(session.id, lambda s: s) is session
    assert seen == []


def test_update_missing_session_returns_none(sm):
    assert sm.update_session("missing", lambda s: s) is None
    with pytest.raises(KeyError):
        sm.require_session("missing")


def test_patch_message_by_id(sm, chat):
    _, session = chat
    sm.append_message(session.id, Message(id="m1", sender_id="alice", is_streaming=True))
    sm.append_message(session.id, Message(id="m2", sender_id="user", text="插队"))

    patched = sm.patch_message(session.id, "m1", text="你好", is_streaming=False)
    assert patched.text == "你好"
    messages = sm.get_session(session.id).messages
    assert [m.id for m in messages] == ["m1", "m2"]
    assert messages[0].text == "你好"
    assert sm.patch_message(session.id, "gone", text="x") is None


def test_remove_message(sm, chat):
    _, session = chat
    sm.append_message(session.id, Message(id="m1", sender_id="alice"))
    assert sm.remove_message(session.id, "m1") is True
    assert sm.remove_message(session.id, "m1") is False


def test_message_count_excludes_placeholders(sm, chat):
    _, session = chat
    sm.append_message(session.id, Message(id="m1", sender_id="user", text="hi"))
    sm.append_message(session.id, Message(id="p", sender_id="alice", is_streaming=True))
    assert sm.get_session(session.id).message_count == 1


def test_post_system_message(sm, chat):
    _, session = chat
    message = sm.post_system_message(session.id, "提示")
    assert message.is_system
    assert sm.get_session(session.id).messages[-1].text == "提示"


def test_update_summary_removes_only_consumed_notes(sm, chat):
    _, session = chat
    sm.update_session(session.id, lambda s: s.model_copy(update={"admin_notes": ["旧笔记", "新笔记"]}))
    updated = sm.update_summary(session.id, "摘要", consumed_notes=["旧笔记"])
    assert updated.summary == "摘要"
    assert updated.admin_notes == ["新笔记"]


def test_clear_messages_resets_controls(sm, chat):
    _, session = chat
    sm.append_message(session.id, Message(id="m1", sender_id="user"))
    sm.update_session(session.id, lambda s: s.model_copy(update={
        "yielded_agent_ids": ["alice"], "yielded_at_count": 1, "admin_notes": ["n"], "total_cost": 1.0,
    }))
    cleared = sm.clear_messages(session.id)
    assert cleared.messages == []
    assert cleared.yielded_agent_ids == []
    assert cleared.yielded_at_count is None
    assert cleared.admin_notes == []
    assert cleared.total_cost == 0.0


def test_group_members_and_admins(sm, chat):
    group, _ = chat
    sm.add_group_member(group.id, "carol")
    sm.add_group_member(group.id, "carol")
    assert sm.get_group(group.id).member_ids == ["alice", "bob", "carol"]

    assert sm.toggle_group_admin(group.id, "carol") is True
    sm.remove_group_member(group.id, "carol")
    group = sm.get_group(group.id)
    assert "carol" not in group.member_ids
    assert "carol" not in group.admin_ids


def test_group_updates_notify_every_session(sm, chat):
    group, first = chat
    second = sm.create_session(group.id)
    seen = []
    sm.add_listener(seen.append)
    sm.update_group_scenario(group.id, "深夜食堂")
    assert sorted(seen) == sorted([first.id, second.id])
    assert sm.get_group(group.id).scenario == "深夜食堂"


def test_update_memory_config_merges(sm, chat):
    group, _ = chat
    sm.update_group_memory_config(group.id, enabled=True)
    sm.update_group_memory_config(group.id, threshold=50)
    config = sm.get_group(group.id).memory_config
    assert config.enabled and config.threshold == 50


def test_cannot_delete_last_group_or_session(sm, chat):
    group, session = chat
    with pytest.raises(ValueError):
        sm.delete_group(group.id)
    with pytest.raises(ValueError):
        sm.delete_session(session.id)
    with pytest.raises(KeyError):
        sm.delete_group("missing")


def test_delete_group_removes_its_sessions(sm, chat):
    group, session = chat
    other, other_session = sm.create_group("另一个群")
    sm.delete_group(group.id)
    assert session.id not in sm.sessions
    assert other_session.id in sm.sessions
    assert list(sm.groups) == [other.id]


def test_session_names_and_rename(sm, chat):
    group, _ = chat
    second = sm.create_session(group.id)
    assert second.name == "对话 2"
    renamed = sm.rename_session(second.id, "闲聊")
    assert renamed.name == "闲聊"
    assert renamed.is_auto_renamed
    assert sm.update_summary(second.id, "聊了天气").summary == "聊了天气"


def test_update_settings_validates(sm):
    settings = sm.update_settings(enable_concurrency=True, breathing_time=500)
    assert settings.enable_concurrency
    assert settings.breathing_time == 500
    with pytest.raises(ValueError):
        sm.update_settings(visibility_mode="NOPE")


async def test_flush_and_restore(tmp_path):
    store = DocumentStore(db_path=str(tmp_path / "test.db"))
    await store.initialize()
    sm = SessionManager(store=store, save_delay=60)
    group, session = sm.create_group("持久化群", ["alice"])
    sm.append_message(session.id, Message(id="m1", sender_id="user", text="记住我"))
    sm.update_settings(user_name="观察者")
    await sm.close()

    restored = SessionManager(store=store)
    state = await restored.initialize()
    assert list(restored.groups) == [group.id]
    assert restored.get_session(session.id).messages[0].text == "记住我"
    assert restored.settings.user_name == "观察者"
    assert state.agents == []
    await store.close()
