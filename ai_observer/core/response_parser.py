"""回复协议解析：从 Agent 的流式输出中解出「发言 / 放弃」决定、管理指令与搜索请求。

协议标记：
  {{RESPONSE: 内容}}   唯一的发言方式，内容中可以嵌套其他标记
  {{PASS}}             出现在任意位置即放弃发言，立即停止读取流
  {{REPLY: 消息ID}}    RESPONSE 内容开头的可选前缀，指定引用回复
  {{MUTE: 名字[, 30min|1h|1d]}} / {{UNMUTE: 名字}}        管理员专用
  {{NOTE: 内容}} / {{DELNOTE: 关键词}} / {{CLEARNOTES}}    管理员专用
  {{SEARCH: 关键词}}   仅在本回合启用了搜索工具时生效

流式过程中的部分匹配只用于展示；最终决定始终从完整缓冲区重新提取。
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Literal

from ai_observer.models.protocol import StreamChunk, TokenUsage

RESPONSE_OPEN = "{{RESPONSE:"
PASS_TAG = "{{PASS}}"
CLEAR_NOTES_TAG = "{{CLEARNOTES}}"

DEFAULT_MUTE_MINUTES = 30

_RE_PARTIAL_RESPONSE = re.compile(r"\{\{RESPONSE:\s*([\s\S]*?)(\}\})?$")
_RE_REPLY = re.compile(r"^\{\{REPLY:\s*(.+?)\}\}")
_RE_MUTE = re.compile(r"\{\{MUTE:\s*([^,}]+)(?:,\s*(\d+)(min|h|d|m))?\}\}", re.IGNORECASE)
_RE_UNMUTE = re.compile(r"\{\{UNMUTE:\s*(.+?)\}\}")
_RE_NOTE = re.compile(r"\{\{NOTE:\s*(.+?)\}\}")
_RE_DELNOTE = re.compile(r"\{\{DELNOTE:\s*(.+?)\}\}")
_RE_SEARCH = re.compile(r"\{\{SEARCH:\s*(.+?)\}\}")

# 展示时去掉的标记（REPLY 只在开头去掉）
_STRIP_PATTERNS = (
    re.compile(r"\{\{MUTE:\s*(.+?)\}\}", re.IGNORECASE),
    _RE_UNMUTE,
    _RE_NOTE,
    _RE_DELNOTE,
    re.compile(re.escape(CLEAR_NOTES_TAG)),
    _RE_SEARCH,
)
# 流式展示时末尾尚未闭合的标记片段，如 "你好 {{MU"
_RE_DANGLING_TAG = re.compile(r"\{\{[^}]*\}?$")

AdminActionType = Literal["MUTE", "UNMUTE", "NOTE", "DELNOTE", "CLEARNOTES"]


@dataclass
class AdminAction:
    """一条管理指令；duration 仅对 MUTE 有意义，单位分钟。"""

    type: AdminActionType
    target: str = ""
    duration: int | None = None


@dataclass
class TurnOutcome:
    """一个回合的最终结果：is_pass 为 True 时 text 为空，占位消息应被删除。"""

    is_pass: bool
    text: str = ""
    reply_to_id: str | None = None
    reasoning_text: str | None = None
    reasoning_signature: str | None = None
    usage: TokenUsage | None = None
    admin_action: AdminAction | None = None
    search_query: str | None = None
    raw_text: str = ""


def extract_response_content(text: str) -> str | None:
    """提取第一个 {{RESPONSE: ...}} 块的内容（已 strip）。

    按 {{ 为 +1、}} 为 -1 计数，深度首次小于 0 处即为 RESPONSE 的闭合位置，
    因此内容中嵌套的 {{MUTE: ...}} 等标记会被完整保留。
    RESPONSE 必须收尾整段输出：没有闭合，或闭合后还有非空白文本，都返回 None。
    """
    start = text.find(RESPONSE_OPEN)
    if start < 0:
        return None
    body_start = start + len(RESPONSE_OPEN)
    depth = 0
    i = body_start
    while i < len(text) - 1:
        pair = text[i:i + 2]
        if pair == "{{":
            depth += 1
            i += 2
        elif pair == "}}":
            depth -= 1
            if depth < 0:
                if text[i + 2:].strip():
                    return None
                return text[body_start:i].strip()
            i += 2
        else:
            i += 1
    return None


def strip_commands(text: str) -> str:
    """去掉开头的 REPLY 前缀与所有管理、搜索标记，得到可展示文本。"""
    cleaned = _RE_REPLY.sub("", text)
    for pattern in _STRIP_PATTERNS:
        cleaned = pattern.sub("", cleaned)
    return cleaned.strip()


def extract_reply_id(content: str) -> str | None:
    match = _RE_REPLY.match(content)
    return match.group(1).strip() if match else None


def partial_display_text(buffer: str) -> str:
    """流式展示用：取尚未闭合的 RESPONSE 前缀之后的内容，并去掉标记与末尾残缺标记。"""
    match = _RE_PARTIAL_RESPONSE.search(buffer)
    display = match.group(1) if match else buffer
    display = strip_commands(display)
    return _RE_DANGLING_TAG.sub("", display).rstrip()


def parse_duration(amount: str | None, unit: str | None) -> int:
    """把 MUTE 的时长参数换算为分钟；缺省或为 0 时取默认 30 分钟。"""
    if not amount or not unit:
        return DEFAULT_MUTE_MINUTES
    value = int(amount)
    unit = unit.lower()
    if unit == "h":
        value *= 60
    elif unit == "d":
        value *= 60 * 24
    return value or DEFAULT_MUTE_MINUTES


def detect_admin_action(text: str) -> AdminAction | None:
    """在完整缓冲区中检测管理指令。

    每回合只保留一条；按 MUTE、UNMUTE、NOTE、DELNOTE、CLEARNOTES 的顺序检测，
    后检测到的覆盖先检测到的。
    """
    action: AdminAction | None = None

    match = _RE_MUTE.search(text)
    if match:
        action = AdminAction(
            type="MUTE",
            target=match.group(1).strip(),
            duration=parse_duration(match.group(2), match.group(3)),
        )
    match = _RE_UNMUTE.search(text)
    if match:
        action = AdminAction(type="UNMUTE", target=match.group(1).strip())
    match = _RE_NOTE.search(text)
    if match:
        action = AdminAction(type="NOTE", target=match.group(1).strip())
    match = _RE_DELNOTE.search(text)
    if match:
        action = AdminAction(type="DELNOTE", target=match.group(1).strip())
    if CLEAR_NOTES_TAG in text:
        action = AdminAction(type="CLEARNOTES")
    return action


def detect_search_query(text: str) -> str | None:
    match = _RE_SEARCH.search(text)
    if not match:
        return None
    query = match.group(1).strip()
    return query or None


class ResponseInterpreter:
    """单个回合的流式解析状态机：feed() 逐块喂入，finalize() 得出最终结果。

    can_moderate 表示该 Agent 是管理员（角色为 ADMIN 或在群组管理员列表中）；
    search_enabled 表示本回合允许 {{SEARCH:}}（搜索后的续答回合会关闭它）。
    """

    def __init__(self, can_moderate: bool = False, search_enabled: bool = False):
        self.can_moderate = can_moderate
        self.search_enabled = search_enabled
        self.buffer = ""
        self.reasoning = ""
        self.reasoning_signature: str | None = None
        self.usage: TokenUsage | None = None
        self.passed = False

    def feed(self, chunk: StreamChunk) -> bool:
        """喂入一块流数据；返回 True 表示检测到 {{PASS}}，调用方应停止读取。"""
        if chunk.reasoning:
            self.reasoning += chunk.reasoning
        if chunk.usage:
            self.usage = chunk.usage
        if chunk.reasoning_signature:
            self.reasoning_signature = chunk.reasoning_signature
        if chunk.text:
            # 只需检查新增部分与旧尾部的拼接处
            tail_start = max(0, len(self.buffer) - len(PASS_TAG) + 1)
            self.buffer += chunk.text
            if PASS_TAG in self.buffer[tail_start:]:
                self.passed = True
        return self.passed

    @property
    def display_text(self) -> str:
        return partial_display_text(self.buffer)

    @property
    def display_reply_id(self) -> str | None:
        match = _RE_PARTIAL_RESPONSE.search(self.buffer)
        return extract_reply_id(match.group(1)) if match else None

    def finalize(self) -> TurnOutcome:
        """从完整缓冲区重新提取最终决定；没有闭合且非空的 RESPONSE 一律视为放弃。"""
        admin_action = detect_admin_action(self.buffer) if self.can_moderate else None
        content = None if self.passed else extract_response_content(self.buffer)
        common = dict(
            reasoning_text=self.reasoning or None,
            reasoning_signature=self.reasoning_signature,
            usage=self.usage,
            admin_action=admin_action,
            raw_text=self.buffer,
        )
        if not content:
            return TurnOutcome(is_pass=True, **common)

        # 只含标记的 RESPONSE 仍是发言，展示文本可以为空
        return TurnOutcome(
            is_pass=False,
            text=strip_commands(content),
            reply_to_id=extract_reply_id(content),
            search_query=detect_search_query(self.buffer) if self.search_enabled else None,
            **common,
        )
