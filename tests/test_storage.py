"""DocumentStore 单元测试。"""

import pytest

from ai_observer.core.storage import DocumentStore
from ai_observer.models.agent import AgentProfile, ApiProvider
from ai_observer.models.session import ChatGroup, GlobalSettings


@pytest.fixture
async def store(tmp_path):
    s = DocumentStore(db_path=str(tmp_path / "test.db"))
    await s.initialize()
    yield s
    await s.close()


async def test_empty_store(store):
    state = await store.load_all()
    assert state.agents == [] and state.groups == []
    assert state.settings is None


async def test_save_replaces_collection_in_order(store):
    await store.save("agents", [AgentProfile(agent_id="a"), AgentProfile(agent_id="b")])
    await store.save("agents", [AgentProfile(agent_id="c"), AgentProfile(agent_id="a", name="改名")])
    await store.save("providers", [ApiProvider(id="p", base_url="http://x")])

    state = await store.load_all()
    assert [(a.agent_id, a.name) for a in state.agents] == [("c", ""), ("a", "改名")]
    assert state.providers[0].base_url == "http://x"


async def test_unknown_collection_rejected(store):
    with pytest.raises(ValueError):
        await store.save("users", [ChatGroup(id="g")])


async def test_settings_round_trip(store):
    await store.save_settings(GlobalSettings(breathing_time=500, visibility_mode="BLIND"))
    settings = (await store.load_all()).settings
    assert settings.breathing_time == 500
    assert settings.visibility_mode == "BLIND"


async def test_unreadable_document_skipped(store):
    await store.save("groups", [ChatGroup(id="g1", name="好的")])
    await store._db.execute(
        "INSERT INTO documents (collection, id, position, data) VALUES ('groups', 'bad', 1, '{not json')"
    )
    await store._db.commit()
    state = await store.load_all()
    assert [g.id for g in state.groups] == ["g1"]
