"""BaseAdapter：所有流式供应商适配器的抽象基类。"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, AsyncIterator

from ai_observer.models.protocol import StreamChunk

if TYPE_CHECKING:
    from ai_observer.core.context_builder import TurnContext
    from ai_observer.models.agent import ApiProvider


class StreamError(RuntimeError):
    """上游请求在重试预算用尽后仍然失败，或流中返回了错误。"""


class BaseAdapter(ABC):
    """所有供应商适配器的基类。

    每个 Adapter 负责：
    1. 把 TurnContext 转为该供应商的请求格式
    2. 发起流式请求（对限流、5xx 与网络错误自行重试）
    3. 把线上格式解析为 StreamChunk 序列，最后产出一个 is_complete=True 的结束块

    返回的异步迭代器在所在任务被取消时必须及时结束并释放连接。
    """

    @abstractmethod
    def stream_reply(self, ctx: TurnContext) -> AsyncIterator[StreamChunk]:
        """为一次回合产出流式回复。"""
        ...

    @abstractmethod
    async def health_check(self, provider: ApiProvider) -> bool:
        """检查供应商接口是否可用。"""
        ...
