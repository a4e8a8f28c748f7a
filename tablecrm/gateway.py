"""Generative call gateway.

One prompt in, raw text plus source URLs out. Web search is backed by Tavily
and page fetch by the Jina reader; both are injected into the prompt as
evidence before the chat model is called. Every transport or timeout failure
surfaces as GatewayError; callers decide the fallback.
"""
from __future__ import annotations

import asyncio
import functools
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional, Sequence

from langchain_core.messages import HumanMessage, SystemMessage
from langchain_openai import ChatOpenAI
from tavily import TavilyClient

from tablecrm.errors import ConfigurationError, GatewayError
from tablecrm.jina_reader import read_url
from tablecrm.retry import BackoffPolicy, with_retry
from tablecrm.settings import RETRY_BASE_DELAY_MS, RETRY_MAX_DELAY_MS, GatewayConfig

log = logging.getLogger("gateway")

_URL_RE = re.compile(r"https?://[^\s\"'<>）)]+")
_MAX_FETCH_URLS = 3
_SNIPPET_CHARS = 600


@dataclass
class GenerateOptions:
    web_search: bool = False
    page_fetch: bool = False
    json_mode: bool = False
    # Query sent to the search backend; defaults to the head of the prompt
    search_query: Optional[str] = None
    exclude_domains: Sequence[str] = ()
    # Pages to fetch; defaults to URLs found in the prompt
    fetch_urls: Sequence[str] = ()


@dataclass
class GatewayResponse:
    text: str
    source_urls: List[str] = field(default_factory=list)


def _make_chat_client(config: GatewayConfig) -> ChatOpenAI:
    kwargs: dict[str, Any] = {
        "model": config.model,
        "api_key": config.openai_api_key,
        "timeout": config.timeout_s,
        "max_retries": 0,
        "verbose": False,
    }
    # Some models (e.g., gpt-5) only support default temperature; omit override
    if not (config.model or "").lower().startswith("gpt-5"):
        kwargs["temperature"] = config.temperature
    return ChatOpenAI(**kwargs)


def _message_text(message: Any) -> str:
    content = getattr(message, "content", message)
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for block in content:
            if isinstance(block, str):
                parts.append(block)
            elif isinstance(block, dict) and block.get("type") == "text":
                parts.append(str(block.get("text") or ""))
        return "".join(parts)
    return "" if content is None else str(content)


def _dedupe(urls: Sequence[str]) -> List[str]:
    out: List[str] = []
    for u in urls:
        if u and u not in out:
            out.append(u)
    return out


class GenerativeGateway:
    def __init__(
        self,
        config: GatewayConfig,
        *,
        llm: Any = None,
        search_client: Any = None,
        page_reader: Optional[Callable[[str], Optional[str]]] = None,
    ):
        self.config = config
        self._llm = llm if llm is not None else _make_chat_client(config)
        if search_client is None and config.tavily_api_key:
            search_client = TavilyClient(config.tavily_api_key)
        self._search = search_client
        self._read_page = page_reader or functools.partial(
            read_url, timeout=config.reader_timeout_s, char_limit=config.page_char_limit
        )
        self._policy = BackoffPolicy(
            max_attempts=config.max_attempts,
            base_delay_ms=RETRY_BASE_DELAY_MS,
            max_delay_ms=RETRY_MAX_DELAY_MS,
        )

    def require_search(self) -> None:
        """Raise ConfigurationError when no search backend is configured."""
        if self._search is None:
            raise ConfigurationError("TAVILY_API_KEY is not set; web search is unavailable")

    async def _web_search(self, query: str, exclude_domains: Sequence[str]) -> tuple[str, List[str]]:
        if self._search is None:
            raise GatewayError("web search requested but TAVILY_API_KEY is not configured")
        kwargs: dict[str, Any] = {"max_results": self.config.tavily_max_results}
        if exclude_domains:
            kwargs["exclude_domains"] = list(exclude_domains)
        try:
            res = await asyncio.to_thread(self._search.search, query, **kwargs)
        except Exception as e:
            raise GatewayError(f"web search failed: {e}") from e
        results = (res or {}).get("results") or []
        lines: List[str] = []
        urls: List[str] = []
        for i, item in enumerate(results, start=1):
            url = (item.get("url") or "").strip()
            if not url:
                continue
            urls.append(url)
            snippet = " ".join(str(item.get("content") or "").split())[:_SNIPPET_CHARS]
            lines.append(f"[{i}] {item.get('title') or ''}\n{url}\n{snippet}")
        block = "Web search results:\n" + ("\n\n".join(lines) if lines else "(no results)")
        return block, urls

    async def _fetch_pages(self, urls: Sequence[str]) -> tuple[str, List[str]]:
        blocks: List[str] = []
        fetched: List[str] = []
        for url in list(urls)[:_MAX_FETCH_URLS]:
            text = await asyncio.to_thread(self._read_page, url)
            if not text:
                blocks.append(f"Page content from {url}: (unavailable)")
                continue
            fetched.append(url)
            blocks.append(f"Page content from {url}:\n{text}")
        if not blocks:
            blocks.append("Page content: (no page was given)")
        return "\n\n".join(blocks), fetched

    async def generate(self, prompt: str, opts: Optional[GenerateOptions] = None) -> GatewayResponse:
        opts = opts or GenerateOptions()
        evidence: List[str] = []
        sources: List[str] = []
        if opts.web_search:
            query = (opts.search_query or prompt).strip()[:400]
            block, urls = await self._web_search(query, opts.exclude_domains)
            evidence.append(block)
            sources.extend(urls)
        if opts.page_fetch:
            targets = list(opts.fetch_urls) or _URL_RE.findall(prompt)
            block, urls = await self._fetch_pages(_dedupe(targets))
            evidence.append(block)
            sources.extend(urls)

        system = "You are a careful data assistant for a B2B sales CRM."
        if evidence:
            system += " Use only the evidence below; never invent facts that the evidence does not support."
        if opts.json_mode:
            system += " Respond with a single JSON value and nothing else."
        human = prompt if not evidence else prompt + "\n\n---\n" + "\n\n".join(evidence)
        messages = [SystemMessage(content=system), HumanMessage(content=human)]
        call_kwargs: dict[str, Any] = {}
        if opts.json_mode:
            call_kwargs["response_format"] = {"type": "json_object"}

        async def _call():
            try:
                return await asyncio.wait_for(
                    self._llm.ainvoke(messages, **call_kwargs), timeout=self.config.timeout_s
                )
            except asyncio.TimeoutError as e:
                raise GatewayError("generative call timed out") from e
            except GatewayError:
                raise
            except Exception as e:
                raise GatewayError(f"generative call failed: {type(e).__name__}: {e}") from e

        message = await with_retry(_call, retry_on=(GatewayError,), policy=self._policy, label="gateway")
        text = _message_text(message).strip()
        log.debug("gateway reply chars=%s sources=%s", len(text), len(sources))
        return GatewayResponse(text=text, source_urls=_dedupe(sources))
