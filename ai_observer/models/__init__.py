"""统一导出 Agent、会话与消息协议相关数据模型，供其他模块引用。"""
from ai_observer.models.agent import (
    AgentProfile,
    AgentRole,
    ApiProvider,
    GenerationConfig,
    ModelConfig,
    ProviderType,
    SearchConfig,
)
from ai_observer.models.protocol import (
    SYSTEM_SENDER_ID,
    USER_ID,
    Attachment,
    Message,
    SearchResponse,
    SearchResult,
    StreamChunk,
    TokenUsage,
)
from ai_observer.models.session import (
    ChatGroup,
    ChatSession,
    GlobalSettings,
    MemoryConfig,
    MuteInfo,
)

__all__ = [
    "AgentProfile",
    "AgentRole",
    "ApiProvider",
    "GenerationConfig",
    "ModelConfig",
    "ProviderType",
    "SearchConfig",
    "SYSTEM_SENDER_ID",
    "USER_ID",
    "Attachment",
    "Message",
    "SearchResponse",
    "SearchResult",
    "StreamChunk",
    "TokenUsage",
    "ChatGroup",
    "ChatSession",
    "GlobalSettings",
    "MemoryConfig",
    "MuteInfo",
]
