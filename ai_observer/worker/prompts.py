"""提示词构建：系统提示（决策闸门、互动协议、管理员协议、搜索协议）与历史消息格式化。

历史消息统一格式为 "[MM-DD HH:MM] [ID: 消息ID] 发送者: 正文"，
消息 ID 让模型可以用 {{REPLY: ID}} 引用较早的消息。
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING

from ai_observer.models.agent import AgentRole
from ai_observer.models.protocol import USER_ID

if TYPE_CHECKING:
    from ai_observer.core.context_builder import TurnContext
    from ai_observer.models.protocol import Message

DECISION_GATE = """[DECISION GATE - MANDATORY OUTPUT FORMAT]
You MUST choose ONE of these two actions:

Option A - SPEAK: wrap your message in {{RESPONSE: your message here}}
Option B - STAY SILENT: output {{PASS}}

Any output that does NOT follow the {{RESPONSE: ...}} format will be DISCARDED.
- WRONG: "Hello everyone!" (no wrapper)
- CORRECT: "{{RESPONSE: Hello everyone!}}"
- CORRECT: "{{PASS}}"
"""

INTERACTION_PROTOCOL = """[INTERACTION PROTOCOL]
1. Mentions: only use "@Name" when you need to call someone out specifically.
2. Replies: only use "{{REPLY: message_id}}" to quote a MUCH older message, as a prefix inside RESPONSE:
   {{RESPONSE: {{REPLY: 123}} your actual response}}

[CHAT ETIQUETTE]
Restraint first. Silence is always safe. Only speak when you add unique value.
- {{PASS}} when the topic is outside your persona, your point was already made, you just spoke, or you were told to be quiet.
- Speak when you are @mentioned, asked directly, or have something genuinely new to add.
- Do not repeat yourself or rephrase others. Respect the human's topic direction.
"""

ADMIN_PROTOCOL = """[ADMIN PROTOCOL - YOU ARE A MODERATOR]
Admin commands (put inside your {{RESPONSE:}}):
- Mute: {{MUTE: Name, Duration}} (Duration: 10min, 30min, 1h, 1d)
- Unmute: {{UNMUTE: Name}}
- Add Note: {{NOTE: content}}
- Delete Note: {{DELNOTE: keyword}}
- Clear Notes: {{CLEARNOTES}}

Example: {{RESPONSE: {{MUTE: DeepSeek, 30min}} 你太吵了，冷静一下}}

Rules: NEVER mute the User or other Admins. Only mute for spam, loops, toxic behavior or nonsense. Prefer short mutes first.
"""

SEARCH_PROTOCOL = """[SEARCH TOOL - WEB SEARCH CAPABILITY]
Use it for current events, fact checking, or when the user asks you to search.
How to use (inside {{RESPONSE:}}): {{RESPONSE: {{SEARCH: your search query}} optional text}}
Only one search per message. Don't search for things you already know well.
"""


def format_message_time(timestamp_ms: int) -> str:
    return datetime.fromtimestamp(timestamp_ms / 1000).strftime("%m-%d %H:%M")


def sender_name(ctx: TurnContext, message: Message) -> str:
    if message.sender_id == USER_ID:
        return ctx.user_name or "User"
    if message.is_system:
        return "SYSTEM"
    for member in ctx.members:
        if member.agent_id == message.sender_id:
            return member.name
    return ctx.agent.name if message.sender_id == ctx.agent.agent_id else "Bot"


def format_history_message(ctx: TurnContext, message: Message) -> str:
    """单条历史消息转为文本；附带引用摘要与文档附件内容。"""
    text = f"[{format_message_time(message.timestamp)}] [ID: {message.id}] {sender_name(ctx, message)}: {message.text}"
    if message.reply_to_id and message.reply_to_id in ctx.reply_index:
        quoted = ctx.reply_index[message.reply_to_id][:50]
        text = f'[Replying to: "{quoted}..."]\n{text}'
    attachment = message.attachment
    if attachment and attachment.type == "document" and attachment.text_content:
        text += f"\n\n[Attached File: {attachment.file_name or ''}]\n{attachment.text_content}\n[End of File]"
    return text


def _attention_instruction(ctx: TurnContext) -> str:
    """根据最后一条消息的点名情况提示模型：被点名必须回应，点了别人则克制。"""
    if not ctx.messages:
        return ""
    last_text = ctx.messages[-1].text.lower()
    my_name = ctx.agent.name.lower()
    if my_name and my_name in last_text:
        return (
            f'>>> [URGENT ATTENTION] The last message explicitly mentions you ("{ctx.agent.name}"). '
            "You MUST respond. Do NOT pass."
        )
    for member in ctx.members:
        if member.agent_id != ctx.agent.agent_id and member.name and member.name.lower() in last_text:
            return (
                f'>>> [RESTRAINT NOTICE] The last message addresses another agent: "{member.name}". '
                'Unless you have a critical correction, output "{{PASS}}".'
            )
    if len(ctx.members) <= 1:
        return ">>> You are the only AI in this chat. You MUST use {{RESPONSE:}} to respond to the user."
    return (
        ">>> [AMBIGUOUS ADDRESSING] Nobody specific was mentioned. "
        "Speak if the topic fits your persona, otherwise output {{PASS}}."
    )


def build_system_prompt(ctx: TurnContext) -> str:
    agent = ctx.agent
    member_lines = [f"- {ctx.user_name or 'User'} (Human): {ctx.user_persona or 'A human user'}"]
    for member in ctx.members:
        badge = " [ADMIN]" if member.agent_id in ctx.admin_ids else ""
        member_lines.append(f"- {member.name} (AI Robot){badge}")

    my_last = next(
        (m for m in reversed(ctx.messages) if m.sender_id == agent.agent_id and not m.is_system),
        None,
    )
    is_admin = agent.role == AgentRole.ADMIN or agent.agent_id in ctx.admin_ids

    sections = [
        f"[GLOBAL SCENARIO]\n{ctx.scenario or 'A general group chat environment.'}",
        "[SHARED MEMORY]\n"
        f"Long-Term Summary: {ctx.summary or 'None'}\n"
        f"Recent Admin Notes: {'; '.join(ctx.admin_notes) if ctx.admin_notes else 'None'}",
        f"[SYSTEM INFO]\nTime: {datetime.now():%Y-%m-%d %H:%M:%S}\n"
        "You are participating in a group chat environment.\n\n"
        "Current Group Members:\n" + "\n".join(member_lines) + "\n\n"
        f"Your Identity: {agent.name}\nYour Role: {agent.role.value}\nYour Persona: {agent.system_prompt}",
        INTERACTION_PROTOCOL,
        DECISION_GATE,
    ]
    if is_admin:
        sections.append(ADMIN_PROTOCOL)
    if ctx.search_enabled:
        sections.append(SEARCH_PROTOCOL)
    if my_last:
        sections.append(f'Recall that your LAST message was: "{my_last.text[:100]}..."')
    attention = _attention_instruction(ctx)
    if attention:
        sections.append(attention)
    sections.append(
        "[FINAL DECISION]\nTo SPEAK: {{RESPONSE: your message here}}\nTo STAY SILENT: {{PASS}}\n"
        "Anything not wrapped in {{RESPONSE: ...}} will be silently discarded!"
    )
    return "\n\n".join(sections)
