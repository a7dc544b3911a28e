"""视觉代理：用支持识图的模型把图片转成文字描述，注入到纯文本模型的上下文中。

失败不抛异常，而是返回「[图片描述失败: ...]」字符串嵌入上下文。
"""

from __future__ import annotations

import logging

import httpx

from ai_observer.models.agent import ApiProvider, ProviderType

logger = logging.getLogger(__name__)

VISION_PROMPT = """请详细描述这张图片的内容，包括：
1. 图片的主要元素和场景
2. 文字内容（如果有）
3. 重要的细节和特征
用简洁清晰的语言描述，便于没有看到图片的人理解。"""

_NO_DESCRIPTION = "[无法获取描述]"


def strip_data_url(content: str) -> str:
    """"data:image/png;base64,xxxx" → "xxxx"；本来就是纯 base64 时原样返回。"""
    return content.split(",", 1)[1] if content.startswith("data:") and "," in content else content


async def describe_image(
    image_base64: str,
    mime_type: str,
    provider: ApiProvider,
    model_id: str | None = None,
    client: httpx.AsyncClient | None = None,
) -> str:
    """调用 provider 的识图接口返回图片描述；model_id 缺省时取供应商的第一个模型。"""
    model = model_id or (provider.models[0].id if provider.models else "")
    try:
        if provider.type == ProviderType.OPENAI_COMPATIBLE:
            url = f"{provider.base_url.rstrip('/')}/chat/completions"
            headers = {"Authorization": f"Bearer {provider.api_key}"}
            body = {
                "model": model or "gpt-4o-mini",
                "messages": [{
                    "role": "user",
                    "content": [
                        {"type": "text", "text": VISION_PROMPT},
                        {"type": "image_url", "image_url": {"url": f"data:{mime_type};base64,{image_base64}"}},
                    ],
                }],
                "max_tokens": 500,
            }
        elif provider.type == ProviderType.ANTHROPIC:
            url = f"{(provider.base_url or 'https://api.anthropic.com/v1').rstrip('/')}/messages"
            headers = {"x-api-key": provider.api_key, "anthropic-version": "2023-06-01"}
            body = {
                "model": model or "claude-3-5-sonnet-20241022",
                "max_tokens": 500,
                "messages": [{
                    "role": "user",
                    "content": [
                        {"type": "image", "source": {"type": "base64", "media_type": mime_type, "data": image_base64}},
                        {"type": "text", "text": VISION_PROMPT},
                    ],
                }],
            }
        else:
            raise ValueError(f"Unsupported provider type for vision: {provider.type.value}")

        if client is None:
            async with httpx.AsyncClient(timeout=60.0) as own_client:
                response = await own_client.post(url, json=body, headers=headers)
        else:
            response = await client.post(url, json=body, headers=headers)
        response.raise_for_status()
        data = response.json()

        if provider.type == ProviderType.ANTHROPIC:
            content = data.get("content") or [{}]
            return content[0].get("text") or _NO_DESCRIPTION
        choices = data.get("choices") or [{}]
        return (choices[0].get("message") or {}).get("content") or _NO_DESCRIPTION
    except (httpx.HTTPError, ValueError) as e:
        logger.warning("Vision proxy failed: provider=%s error=%s", provider.id, e)
        return f"[图片描述失败: {e or '未知错误'}]"
