"""流式适配器：BaseAdapter 抽象基类与 OpenAI 兼容接口实现。"""
from ai_observer.worker.adapters.base import BaseAdapter, StreamError
from ai_observer.worker.adapters.openai_compat import OpenAICompatibleAdapter

__all__ = [
    "BaseAdapter",
    "OpenAICompatibleAdapter",
    "StreamError",
]
