import asyncio

import pytest
from langchain_core.messages import AIMessage

from tablecrm.errors import ConfigurationError, GatewayError
from tablecrm.gateway import GenerateOptions, GenerativeGateway
from tablecrm.settings import GatewayConfig


class FakeLLM:
    def __init__(self, reply="ok", exc=None, delay=0.0):
        self.reply = reply
        self.exc = exc
        self.delay = delay
        self.calls = []

    async def ainvoke(self, messages, **kwargs):
        self.calls.append((messages, kwargs))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.exc:
            raise self.exc
        return AIMessage(content=self.reply)


class FakeSearch:
    def __init__(self):
        self.queries = []

    def search(self, query, **kwargs):
        self.queries.append((query, kwargs))
        return {
            "results": [
                {"url": "https://acme.co.jp/company", "title": "会社概要", "content": "代表取締役 山田"},
                {"url": "", "title": "no url"},
            ]
        }


def _config(**kw):
    return GatewayConfig(openai_api_key="test", **kw)


@pytest.mark.asyncio
async def test_json_mode_sets_response_format():
    llm = FakeLLM('{"a": 1}')
    gw = GenerativeGateway(_config(), llm=llm)
    resp = await gw.generate("hello", GenerateOptions(json_mode=True))
    assert resp.text == '{"a": 1}'
    messages, kwargs = llm.calls[0]
    assert kwargs == {"response_format": {"type": "json_object"}}
    assert "JSON" in messages[0].content


@pytest.mark.asyncio
async def test_web_search_evidence_and_sources():
    llm = FakeLLM("done")
    search = FakeSearch()
    gw = GenerativeGateway(_config(), llm=llm, search_client=search)
    resp = await gw.generate(
        "find the CEO", GenerateOptions(web_search=True, search_query='"Acme" 会社概要', exclude_domains=["wikipedia.org"])
    )
    assert resp.source_urls == ["https://acme.co.jp/company"]
    query, kwargs = search.queries[0]
    assert query == '"Acme" 会社概要'
    assert kwargs["exclude_domains"] == ["wikipedia.org"]
    human = llm.calls[0][0][1].content
    assert "代表取締役 山田" in human


@pytest.mark.asyncio
async def test_web_search_without_backend_is_a_gateway_error():
    gw = GenerativeGateway(_config(), llm=FakeLLM())
    with pytest.raises(GatewayError):
        await gw.generate("x", GenerateOptions(web_search=True))


def test_require_search_reports_the_missing_key():
    with pytest.raises(ConfigurationError):
        GenerativeGateway(_config(), llm=FakeLLM()).require_search()
    GenerativeGateway(_config(), llm=FakeLLM(), search_client=FakeSearch()).require_search()


@pytest.mark.asyncio
async def test_page_fetch_uses_reader_and_reports_fetched_pages():
    pages = {"https://acme.co.jp": "従業員数 150名"}
    llm = FakeLLM("done")
    gw = GenerativeGateway(_config(), llm=llm, page_reader=pages.get)
    resp = await gw.generate(
        "extract", GenerateOptions(page_fetch=True, fetch_urls=["https://acme.co.jp", "https://gone.example"])
    )
    assert resp.source_urls == ["https://acme.co.jp"]
    human = llm.calls[0][0][1].content
    assert "従業員数 150名" in human
    assert "https://gone.example: (unavailable)" in human


@pytest.mark.asyncio
async def test_model_failure_and_timeout_become_gateway_errors():
    gw = GenerativeGateway(_config(), llm=FakeLLM(exc=RuntimeError("rate limited")))
    with pytest.raises(GatewayError):
        await gw.generate("x")
    slow = GenerativeGateway(_config(timeout_s=0.01), llm=FakeLLM(delay=0.5))
    with pytest.raises(GatewayError):
        await slow.generate("x")


@pytest.mark.asyncio
async def test_retries_follow_max_attempts(monkeypatch):
    llm = FakeLLM(exc=RuntimeError("flaky"))
    gw = GenerativeGateway(_config(max_attempts=3), llm=llm)
    monkeypatch.setattr(asyncio, "sleep", _no_sleep)
    with pytest.raises(GatewayError):
        await gw.generate("x")
    assert len(llm.calls) == 3


async def _no_sleep(_delay):
    return None


def test_missing_openai_key_is_a_configuration_error(monkeypatch):
    from tablecrm import settings

    monkeypatch.setattr(settings, "OPENAI_API_KEY", "")
    with pytest.raises(ConfigurationError):
        settings.load_gateway_config()
