"""联网搜索：支持 serper / brave / tavily / metaso 四种搜索引擎。

perform_search 不抛异常：请求失败时返回带 error 的 SearchResponse，由调用方决定如何提示。
"""

from __future__ import annotations

import logging

import httpx

from ai_observer.models.agent import SearchConfig
from ai_observer.models.protocol import SearchResponse, SearchResult

logger = logging.getLogger(__name__)

MAX_RESULTS = 5


def _build_request(engine: str, query: str, api_key: str) -> tuple[str, str, dict]:
    """返回 (method, url, httpx 请求参数)。"""
    if engine == "serper":
        return "POST", "https://google.serper.dev/search", {
            "headers": {"X-API-KEY": api_key},
            "json": {"q": query, "num": MAX_RESULTS},
        }
    if engine == "brave":
        return "GET", "https://api.search.brave.com/res/v1/web/search", {
            "headers": {"X-Subscription-Token": api_key, "Accept": "application/json"},
            "params": {"q": query, "count": MAX_RESULTS},
        }
    if engine == "tavily":
        return "POST", "https://api.tavily.com/search", {
            "json": {"api_key": api_key, "query": query, "max_results": MAX_RESULTS, "include_answer": False},
        }
    if engine == "metaso":
        return "POST", "https://api.metaso.cn/api/search", {
            "headers": {"Authorization": f"Bearer {api_key}"},
            "json": {"query": query, "num": MAX_RESULTS},
        }
    raise ValueError(f"不支持的搜索引擎: {engine}")


def _parse_results(engine: str, data: dict) -> list[SearchResult]:
    if engine == "serper":
        items, url_key, snippet_keys = data.get("organic") or [], "link", ("snippet",)
    elif engine == "brave":
        items, url_key, snippet_keys = (data.get("web") or {}).get("results") or [], "url", ("description",)
    elif engine == "tavily":
        items, url_key, snippet_keys = data.get("results") or [], "url", ("content",)
    else:
        items, url_key, snippet_keys = data.get("results") or [], "url", ("snippet", "content")

    results = []
    for item in items:
        snippet = next((item[k] for k in snippet_keys if item.get(k)), "")
        results.append(SearchResult(title=item.get("title", ""), url=item.get(url_key, ""), snippet=snippet))
    return results


async def perform_search(
    query: str,
    config: SearchConfig,
    client: httpx.AsyncClient | None = None,
) -> SearchResponse:
    """按 config.engine 执行一次搜索。"""
    if not config.enabled or not config.api_key:
        return SearchResponse(query=query, error="搜索未启用或未配置 API Key")

    try:
        method, url, kwargs = _build_request(config.engine, query, config.api_key)
    except ValueError as e:
        return SearchResponse(query=query, error=str(e))

    logger.info("Search: engine=%s query=%s", config.engine, query)
    try:
        if client is None:
            async with httpx.AsyncClient(timeout=30.0) as own_client:
                response = await own_client.request(method, url, **kwargs)
        else:
            response = await client.request(method, url, **kwargs)
        if response.is_error:
            return SearchResponse(query=query, error=f"{config.engine} API 错误: {response.status_code}")
        results = _parse_results(config.engine, response.json())
    except httpx.HTTPError as e:
        logger.warning("Search request failed: engine=%s error=%s", config.engine, e)
        return SearchResponse(query=query, error=f"网络请求失败: {e}")
    except ValueError as e:
        return SearchResponse(query=query, error=f"搜索结果解析失败: {e}")
    return SearchResponse(query=query, results=results)


def format_results_for_display(response: SearchResponse) -> str:
    """Markdown 格式，作为搜索结果消息展示。"""
    if response.error:
        return f"**搜索错误:** {response.error}"
    if not response.results:
        return f'未找到与 "{response.query}" 相关的结果'
    lines = [f'**搜索结果:** "{response.query}"', ""]
    for index, result in enumerate(response.results, 1):
        lines += [f"{index}. **[{result.title}]({result.url})**", f"   {result.snippet}", ""]
    return "\n".join(lines).strip()
