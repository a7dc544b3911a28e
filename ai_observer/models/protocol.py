"""消息与流式协议：Message、Attachment、StreamChunk、搜索结果等。

作为编排、上下文构建、流式适配器之间的统一数据结构，不依赖具体存储格式。
Message 视为不可变值：所有修改都通过 model_copy(update=...) 生成新对象，
由 SessionManager 以函数式更新的方式整体替换。
"""

from __future__ import annotations

import time
import uuid
from typing import Literal

from pydantic import BaseModel, Field

# 人类用户与系统消息的固定发送者 ID
USER_ID = "user"
SYSTEM_SENDER_ID = "SYSTEM"


def now_ms() -> int:
    """当前时间的毫秒时间戳（禁言到期、消息时间均使用毫秒）。"""
    return int(time.time() * 1000)


def new_message_id(sender_id: str) -> str:
    """生成「时间 + 发送者」复合 ID，并发回合同一毫秒内也不会冲突。"""
    return f"{now_ms()}-{sender_id}-{uuid.uuid4().hex[:6]}"


class TokenUsage(BaseModel):
    input: int = 0
    output: int = 0


class Attachment(BaseModel):
    """消息附件：图片为 base64（可带 data URL 前缀），文档为解析后的纯文本。"""

    type: Literal["image", "document"] = "document"
    content: str = ""
    text_content: str | None = None
    vision_description: str | None = None  # 视觉代理生成的描述缓存
    mime_type: str = ""
    file_name: str | None = None


class Message(BaseModel):
    """会话中的单条消息。

    is_streaming=True 的消息是回合占位符：对其他 Agent 的上下文不可见，
    回合结束时要么被定稿（清除标记、写入最终文本），要么被删除（PASS / 中止）。
    """

    id: str = ""
    sender_id: str = ""
    text: str = ""
    reasoning_text: str | None = None
    reasoning_signature: str | None = None
    timestamp: int = Field(default_factory=now_ms)
    cost: float | None = None
    tokens: TokenUsage | None = None
    attachment: Attachment | None = None
    reply_to_id: str | None = None

    is_system: bool = False
    is_error: bool = False
    is_search_result: bool = False
    search_query: str | None = None
    is_streaming: bool = False

    @property
    def is_settled(self) -> bool:
        """已落定的消息：非占位符，可被调度器和其他 Agent 当作内容读取。"""
        return not self.is_streaming


class StreamChunk(BaseModel):
    """流式适配器产出的一块数据；is_complete=True 为显式结束信号。"""

    text: str | None = None
    reasoning: str | None = None
    reasoning_signature: str | None = None
    usage: TokenUsage | None = None
    is_complete: bool = False


class SearchResult(BaseModel):
    title: str = ""
    url: str = ""
    snippet: str = ""


class SearchResponse(BaseModel):
    """一次搜索的结果；error 非空表示搜索失败（结果列表为空）。"""

    query: str
    results: list[SearchResult] = Field(default_factory=list)
    error: str | None = None
