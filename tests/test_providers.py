import json
from types import SimpleNamespace

import anthropic
import httpx
import pytest

from citations import providers


class FakeResponse:
    def __init__(self, payload=None, status_code=200, text=""):
        self.payload = payload or {}
        self.status_code = status_code
        self.ok = status_code < 400
        self.text = text

    def json(self):
        return self.payload


def test_query_perplexity_maps_citations_to_sources(monkeypatch):
    calls = []

    def fake_post(url, headers=None, json=None, timeout=None, **kwargs):
        calls.append((url, headers, json))
        return FakeResponse({
            "model": "sonar",
            "choices": [{"message": {"content": "Check example.com"}}],
            "citations": ["https://example.com", "https://rival.com"],
            "usage": {"total_tokens": 42},
        })

    monkeypatch.setattr(providers.requests, "post", fake_post)
    reply = providers.query_perplexity("best tools?", "pplx-key")

    url, headers, body = calls[0]
    assert url == providers.PERPLEXITY_URL
    assert headers["Authorization"] == "Bearer pplx-key"
    assert body["max_tokens"] == providers.MAX_TOKENS
    assert reply["response"] == "Check example.com"
    assert reply["tokens_used"] == 42
    assert reply["sources"] == [
        {"url": "https://example.com", "title": "Source 1"},
        {"url": "https://rival.com", "title": "Source 2"},
    ]


def test_query_perplexity_raises_on_error(monkeypatch):
    monkeypatch.setattr(providers.requests, "post", lambda *a, **k: FakeResponse(status_code=401, text="bad key"))
    with pytest.raises(providers.ProviderError) as exc:
        providers.query_perplexity("q", "k")
    assert str(exc.value) == "Perplexity API error: 401 - bad key"


def mock_openai(monkeypatch, handler):
    monkeypatch.setattr(providers, "_http_client", lambda: httpx.Client(transport=httpx.MockTransport(handler)))


def test_query_openai_reads_completion(monkeypatch):
    seen = {}

    def handler(request):
        seen["path"] = request.url.path
        seen["auth"] = request.headers["Authorization"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={
            "id": "chatcmpl-1",
            "object": "chat.completion",
            "created": 1700000000,
            "model": "gpt-4o-2024-08-06",
            "choices": [{
                "index": 0,
                "message": {"role": "assistant", "content": "Try example.com"},
                "finish_reason": "stop",
            }],
            "usage": {"prompt_tokens": 20, "completion_tokens": 15, "total_tokens": 35},
        })

    mock_openai(monkeypatch, handler)
    reply = providers.query_openai("best tools?", "sk-test")

    assert seen["path"] == "/v1/chat/completions"
    assert seen["auth"] == "Bearer sk-test"
    assert seen["body"]["model"] == providers.OPENAI_MODEL
    assert seen["body"]["messages"][0] == {"role": "system", "content": providers.SYSTEM_PROMPT}
    assert seen["body"]["messages"][1] == {"role": "user", "content": "best tools?"}
    assert reply == {"response": "Try example.com", "tokens_used": 35, "model": "gpt-4o-2024-08-06", "sources": []}


def test_query_openai_raises_on_error(monkeypatch):
    def handler(request):
        return httpx.Response(400, json={"error": {"message": "bad request", "type": "invalid_request_error"}})

    mock_openai(monkeypatch, handler)
    with pytest.raises(providers.ProviderError) as exc:
        providers.query_openai("q", "sk-test")
    assert str(exc.value).startswith("OpenAI API error: 400 - ")


class FakeAnthropic:
    calls = []
    reply = None
    error = None

    def __init__(self, api_key=None, timeout=None):
        self.api_key = api_key
        self.messages = SimpleNamespace(create=self.create)

    def create(self, **kwargs):
        FakeAnthropic.calls.append((self.api_key, kwargs))
        if FakeAnthropic.error:
            raise FakeAnthropic.error
        return FakeAnthropic.reply


@pytest.fixture
def fake_anthropic(monkeypatch):
    FakeAnthropic.calls = []
    FakeAnthropic.reply = None
    FakeAnthropic.error = None
    monkeypatch.setattr(providers.anthropic, "Anthropic", FakeAnthropic)
    return FakeAnthropic


def test_query_anthropic_sums_tokens(fake_anthropic):
    fake_anthropic.reply = SimpleNamespace(
        content=[SimpleNamespace(text="Have a look at example.com")],
        usage=SimpleNamespace(input_tokens=12, output_tokens=30),
        model="claude-3-haiku-20240307",
    )

    reply = providers.query_anthropic("best tools?", "ak-test")

    api_key, kwargs = fake_anthropic.calls[0]
    assert api_key == "ak-test"
    assert kwargs["system"] == providers.SYSTEM_PROMPT
    assert kwargs["messages"] == [{"role": "user", "content": "best tools?"}]
    assert kwargs["max_tokens"] == providers.MAX_TOKENS
    assert reply == {"response": "Have a look at example.com", "tokens_used": 42, "model": "claude-3-haiku-20240307", "sources": []}


def test_query_anthropic_raises_on_error(fake_anthropic):
    response = httpx.Response(529, request=httpx.Request("POST", "https://api.anthropic.com/v1/messages"))
    fake_anthropic.error = anthropic.APIStatusError("Overloaded", response=response, body=None)

    with pytest.raises(providers.ProviderError) as exc:
        providers.query_anthropic("q", "ak-test")
    assert str(exc.value) == "Anthropic API error: 529 - Overloaded"


def test_query_gemini_joins_parts(monkeypatch):
    captured = {}

    def fake_post(url, params=None, headers=None, json=None, timeout=None):
        captured["params"] = params
        return FakeResponse({
            "candidates": [{"content": {"parts": [{"text": "Hello "}, {"text": "world"}]}}],
            "usageMetadata": {"totalTokenCount": 12},
        })

    monkeypatch.setattr(providers.requests, "post", fake_post)
    reply = providers.query_gemini("q", "g-key")
    assert captured["params"] == {"key": "g-key"}
    assert reply == {"response": "Hello world", "tokens_used": 12, "model": providers.GEMINI_MODEL, "sources": []}


def test_api_keys_from_env(monkeypatch):
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    monkeypatch.delenv("GEMINI_API_KEY", raising=False)
    keys = providers.api_keys_from_env()
    assert keys["openai"] == "sk-test"
    assert keys["gemini"] == ""
    assert set(keys) == set(providers.PROVIDERS)
