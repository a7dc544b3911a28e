"""持久化存储：按集合（agents / providers / groups / sessions）保存 JSON 文档，外加单条全局设置。

纯数据层，不参与调度决策；内存中的 SessionManager 才是权威状态，
这里只是最终一致的旁路写入（允许防抖批量写）。使用 aiosqlite 异步读写。
"""

from __future__ import annotations

import json
import logging
from typing import Sequence

import aiosqlite
from pydantic import BaseModel, Field

from ai_observer.models.agent import AgentProfile, ApiProvider
from ai_observer.models.session import ChatGroup, ChatSession, GlobalSettings

logger = logging.getLogger(__name__)

COLLECTIONS = ("agents", "providers", "groups", "sessions")

# 文档表：(collection, id) 为主键，data 为整条模型的 JSON；settings 表只有一行
DB_SCHEMA = """
CREATE TABLE IF NOT EXISTS documents (
    collection TEXT NOT NULL,
    id TEXT NOT NULL,
    position INTEGER NOT NULL DEFAULT 0,
    data TEXT NOT NULL,
    PRIMARY KEY (collection, id)
);

CREATE TABLE IF NOT EXISTS settings (
    id TEXT PRIMARY KEY,
    data TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_documents_collection ON documents(collection);
"""

_SETTINGS_KEY = "global"


class StoredState(BaseModel):
    """load_all() 的返回：各集合的全部文档与设置（没有保存过设置时为 None）。"""

    agents: list[AgentProfile] = Field(default_factory=list)
    providers: list[ApiProvider] = Field(default_factory=list)
    groups: list[ChatGroup] = Field(default_factory=list)
    sessions: list[ChatSession] = Field(default_factory=list)
    settings: GlobalSettings | None = None


def _document_id(item: BaseModel) -> str:
    # AgentProfile 用 agent_id，其余模型用 id
    return getattr(item, "agent_id", None) or getattr(item, "id")


class DocumentStore:
    """键值文档存储：save(collection, items) 以整集合替换的方式写入。"""

    def __init__(self, db_path: str = "data/ai_observer.db"):
        """指定 SQLite 数据库文件路径，连接在 initialize() 中建立。"""
        self.db_path = db_path
        self._db: aiosqlite.Connection | None = None

    async def initialize(self) -> None:
        """连接数据库、设置 Row 工厂并执行建表脚本。应用启动时调用一次。"""
        self._db = await aiosqlite.connect(self.db_path)
        self._db.row_factory = aiosqlite.Row
        await self._db.executescript(DB_SCHEMA)
        await self._db.commit()

    async def close(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None

    async def load_all(self) -> StoredState:
        """一次性读出所有集合与设置，按写入时的顺序返回。"""
        state = StoredState()
        models = {
            "agents": AgentProfile,
            "providers": ApiProvider,
            "groups": ChatGroup,
            "sessions": ChatSession,
        }
        for collection, model in models.items():
            cursor = await self._db.execute(
                "SELECT data FROM documents WHERE collection = ? ORDER BY position",
                (collection,),
            )
            rows = await cursor.fetchall()
            items = []
            for row in rows:
                try:
                    items.append(model.model_validate_json(row["data"]))
                except ValueError as e:
                    logger.warning("[STORE] Skipping unreadable %s document: %s", collection, e)
            setattr(state, collection, items)

        cursor = await self._db.execute(
            "SELECT data FROM settings WHERE id = ?", (_SETTINGS_KEY,)
        )
        row = await cursor.fetchone()
        if row:
            state.settings = GlobalSettings.model_validate_json(row["data"])
        return state

    async def save(self, collection: str, items: Sequence[BaseModel]) -> None:
        """用 items 整体替换一个集合：先删后插，在同一事务内提交。"""
        if collection not in COLLECTIONS:
            raise ValueError(f"Unknown collection: {collection}")
        await self._db.execute("DELETE FROM documents WHERE collection = ?", (collection,))
        await self._db.executemany(
            "INSERT INTO documents (collection, id, position, data) VALUES (?, ?, ?, ?)",
            [
                (collection, _document_id(item), position, item.model_dump_json())
                for position, item in enumerate(items)
            ],
        )
        await self._db.commit()
        logger.debug("[STORE] Saved collection=%s count=%d", collection, len(items))

    async def save_settings(self, settings: GlobalSettings) -> None:
        await self._db.execute(
            "INSERT OR REPLACE INTO settings (id, data) VALUES (?, ?)",
            (_SETTINGS_KEY, json.dumps(settings.model_dump(mode="json"), ensure_ascii=False)),
        )
        await self._db.commit()
