"""OpenAI 兼容接口适配器：POST {base_url}/chat/completions，解析 SSE 流。

兼容 DeepSeek 的 reasoning_content 字段，以及把思考过程写在 <think>...</think> 中的模型。
对 429、5xx 与网络错误按 base_delay * 2**n 退避重试，最多 max_retries 次。
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from typing import TYPE_CHECKING, AsyncIterator

import httpx

from ai_observer.models.protocol import StreamChunk, TokenUsage
from ai_observer.worker.adapters.base import BaseAdapter, StreamError
from ai_observer.worker.prompts import build_system_prompt, format_history_message

if TYPE_CHECKING:
    from ai_observer.core.context_builder import TurnContext
    from ai_observer.models.agent import ApiProvider

logger = logging.getLogger(__name__)

_RE_REASONING_MODEL = re.compile(r"^o[13](-|$)")


def uses_max_completion_tokens(model_id: str) -> bool:
    """o1 / o3、gpt-4.5+ 与 chatgpt-4o 系列使用 max_completion_tokens。"""
    lower = model_id.lower()
    if _RE_REASONING_MODEL.match(lower):
        return True
    return any(tag in lower for tag in ("gpt-4.5", "gpt-5", "chatgpt-4o"))


def budget_to_effort(budget: int) -> str:
    if budget < 4000:
        return "low"
    if budget < 16000:
        return "medium"
    return "high"


class _ThinkTagSplitter:
    """把 content 中的 <think>...</think> 拆成 reasoning，其余为正文。"""

    def __init__(self):
        self.inside = False

    def split(self, text: str) -> list[StreamChunk]:
        if "<think>" in text:
            self.inside = True
            text = text.replace("<think>", "", 1)
        if "</think>" in text:
            before, _, after = text.partition("</think>")
            self.inside = False
            chunks = []
            if before:
                chunks.append(StreamChunk(reasoning=before))
            if after:
                chunks.append(StreamChunk(text=after))
            return chunks
        if not text:
            return []
        return [StreamChunk(reasoning=text) if self.inside else StreamChunk(text=text)]


class OpenAICompatibleAdapter(BaseAdapter):
    """OpenAI Chat Completions 流式适配器。可注入 httpx.AsyncClient（测试用 MockTransport）。"""

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        max_retries: int = 3,
        base_delay: float = 1.0,
        timeout: float = 120.0,
    ):
        self._client = client
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.timeout = timeout

    def build_messages(self, ctx: TurnContext) -> list[dict]:
        messages: list[dict] = [{"role": "system", "content": build_system_prompt(ctx)}]
        for message in ctx.messages:
            text = format_history_message(ctx, message)
            attachment = message.attachment
            if attachment and attachment.type == "image" and attachment.content:
                url = attachment.content
                if not url.startswith("data:"):
                    url = f"data:{attachment.mime_type};base64,{url}"
                messages.append({
                    "role": "user",
                    "content": [
                        {"type": "text", "text": text},
                        {"type": "image_url", "image_url": {"url": url}},
                    ],
                })
            else:
                messages.append({"role": "user", "content": text})
        return messages

    def build_body(self, ctx: TurnContext) -> dict:
        agent = ctx.agent
        model_id = agent.model_id
        is_reasoning_model = bool(_RE_REASONING_MODEL.match(model_id.lower()))
        body: dict = {
            "model": model_id,
            "messages": self.build_messages(ctx),
            "stream": True,
            "stream_options": {"include_usage": True},
        }
        # o1/o3 不支持 temperature
        if not is_reasoning_model:
            body["temperature"] = agent.config.temperature
        if uses_max_completion_tokens(model_id):
            body["max_completion_tokens"] = agent.config.max_tokens
        else:
            body["max_tokens"] = agent.config.max_tokens
        if is_reasoning_model and agent.config.enable_reasoning:
            body["reasoning_effort"] = budget_to_effort(agent.config.reasoning_budget or 8000)
        return body

    async def _open_stream(self, client: httpx.AsyncClient, url: str, body: dict, api_key: str) -> httpx.Response:
        """发起请求并返回已确认状态码正常的流式响应；可重试错误按指数退避重试。"""
        headers = {"Authorization": f"Bearer {api_key}"}
        for attempt in range(self.max_retries + 1):
            delay = self.base_delay * (2 ** attempt)
            try:
                request = client.build_request("POST", url, json=body, headers=headers)
                response = await client.send(request, stream=True)
            except httpx.TransportError as e:
                if attempt < self.max_retries:
                    logger.warning("[CALL] Network error, retrying in %.1fs: %s", delay, e)
                    await asyncio.sleep(delay)
                    continue
                raise StreamError(f"Network error: {e}") from e

            if response.is_success:
                return response

            retryable = response.status_code == 429 or response.status_code >= 500
            if retryable and attempt < self.max_retries:
                await response.aclose()
                logger.warning("[CALL] API error %d, retrying in %.1fs", response.status_code, delay)
                await asyncio.sleep(delay)
                continue

            await response.aread()
            detail = response.reason_phrase
            try:
                data = response.json()
                error = data.get("error")
                detail = (error.get("message") if isinstance(error, dict) else error) or data.get("message") or json.dumps(data)
            except ValueError:
                pass
            await response.aclose()
            raise StreamError(f"API {response.status_code}: {detail}")
        raise StreamError("No response received from API")

    async def stream_reply(self, ctx: TurnContext) -> AsyncIterator[StreamChunk]:
        provider = ctx.provider
        url = f"{provider.base_url.rstrip('/')}/chat/completions"
        body = self.build_body(ctx)
        logger.info(
            "[CALL] openai stream: agent_id=%s model=%s messages=%d",
            ctx.agent.agent_id, body["model"], len(body["messages"]),
        )

        client = self._client or httpx.AsyncClient(timeout=self.timeout)
        try:
            response = await self._open_stream(client, url, body, provider.api_key)
            usage = TokenUsage()
            splitter = _ThinkTagSplitter()
            try:
                async for line in response.aiter_lines():
                    line = line.strip()
                    if not line.startswith("data:"):
                        continue
                    payload = line[5:].strip()
                    if payload == "[DONE]":
                        continue
                    try:
                        data = json.loads(payload)
                    except ValueError:
                        logger.debug("[CALL] Skipping malformed SSE chunk: %s", payload[:200])
                        continue

                    # 部分接口以 200 返回，把错误放在流里
                    if data.get("error"):
                        error = data["error"]
                        message = error.get("message") or error.get("code") if isinstance(error, dict) else error
                        raise StreamError(str(message or json.dumps(error)))

                    choices = data.get("choices") or []
                    delta = (choices[0].get("delta") or {}) if choices else {}
                    if delta.get("reasoning_content"):
                        yield StreamChunk(reasoning=delta["reasoning_content"])
                    if delta.get("content"):
                        for chunk in splitter.split(delta["content"]):
                            yield chunk

                    if data.get("usage"):
                        usage = TokenUsage(
                            input=data["usage"].get("prompt_tokens") or 0,
                            output=data["usage"].get("completion_tokens") or 0,
                        )
            finally:
                await response.aclose()
            yield StreamChunk(usage=usage, is_complete=True)
        finally:
            if self._client is None:
                await client.aclose()

    async def health_check(self, provider: ApiProvider) -> bool:
        """GET {base_url}/models，2xx 即视为可用。"""
        client = self._client or httpx.AsyncClient(timeout=10.0)
        try:
            response = await client.get(
                f"{provider.base_url.rstrip('/')}/models",
                headers={"Authorization": f"Bearer {provider.api_key}"},
            )
            return response.is_success
        except httpx.HTTPError:
            return False
        finally:
            if self._client is None:
                await client.aclose()
