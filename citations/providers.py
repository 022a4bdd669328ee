import os

import anthropic
import httpx
import requests
from openai import OpenAI, APIStatusError


SYSTEM_PROMPT = (
    "You are a helpful assistant. Provide informative, factual answers. "
    "When relevant, mention specific websites, companies, or resources that could help the user."
)
MAX_TOKENS = 1000
TEMPERATURE = 0.7
REQUEST_TIMEOUT = 60

OPENAI_MODEL = "gpt-4o"
ANTHROPIC_MODEL = "claude-3-haiku-20240307"
PERPLEXITY_MODEL = "sonar"
GEMINI_MODEL = "gemini-1.5-flash"

PERPLEXITY_URL = "https://api.perplexity.ai/chat/completions"
GEMINI_URL = "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent"


class ProviderError(Exception):
    """Raised when an AI provider returns a non-success response."""
    pass


def _reply(response, tokens_used, model, sources=None):
    return {
        "response": response or "",
        "tokens_used": tokens_used or 0,
        "model": model,
        "sources": sources or [],
    }


def _http_client():
    return httpx.Client(timeout=REQUEST_TIMEOUT)


def query_openai(prompt: str, api_key: str) -> dict:
    http_client = _http_client()
    try:
        client = OpenAI(api_key=api_key, http_client=http_client)
        completion = client.chat.completions.create(
            model=OPENAI_MODEL,
            messages=[
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": prompt},
            ],
            max_tokens=MAX_TOKENS,
            temperature=TEMPERATURE,
        )
    except APIStatusError as e:
        raise ProviderError(f"OpenAI API error: {e.status_code} - {e.message}")
    finally:
        http_client.close()

    content = completion.choices[0].message.content if completion.choices else ""
    tokens = completion.usage.total_tokens if completion.usage else 0
    return _reply(content, tokens, completion.model or OPENAI_MODEL)


def query_anthropic(prompt: str, api_key: str) -> dict:
    client = anthropic.Anthropic(api_key=api_key, timeout=REQUEST_TIMEOUT)
    try:
        message = client.messages.create(
            model=ANTHROPIC_MODEL,
            max_tokens=MAX_TOKENS,
            system=SYSTEM_PROMPT,
            messages=[{"role": "user", "content": prompt}],
        )
    except anthropic.APIStatusError as e:
        raise ProviderError(f"Anthropic API error: {e.status_code} - {e.message}")

    text = message.content[0].text if message.content else ""
    usage = message.usage
    tokens = (usage.input_tokens or 0) + (usage.output_tokens or 0) if usage else 0
    return _reply(text, tokens, message.model or ANTHROPIC_MODEL)


def query_perplexity(prompt: str, api_key: str) -> dict:
    response = requests.post(
        PERPLEXITY_URL,
        headers={
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
        },
        json={
            "model": PERPLEXITY_MODEL,
            "messages": [{"role": "user", "content": prompt}],
            "max_tokens": MAX_TOKENS,
            "temperature": TEMPERATURE,
            "return_citations": True,
        },
        timeout=REQUEST_TIMEOUT,
    )
    if not response.ok:
        raise ProviderError(f"Perplexity API error: {response.status_code} - {response.text}")

    data = response.json()
    choices = data.get("choices") or [{}]
    content = (choices[0].get("message") or {}).get("content") or ""
    sources = [
        {"url": url, "title": f"Source {i + 1}"}
        for i, url in enumerate(data.get("citations") or [])
    ]
    tokens = (data.get("usage") or {}).get("total_tokens") or 0
    return _reply(content, tokens, data.get("model") or PERPLEXITY_MODEL, sources)


def query_gemini(prompt: str, api_key: str) -> dict:
    response = requests.post(
        GEMINI_URL.format(model=GEMINI_MODEL),
        params={"key": api_key},
        headers={"Content-Type": "application/json"},
        json={
            "systemInstruction": {"parts": [{"text": SYSTEM_PROMPT}]},
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
            "generationConfig": {"maxOutputTokens": MAX_TOKENS, "temperature": TEMPERATURE},
        },
        timeout=REQUEST_TIMEOUT,
    )
    if not response.ok:
        raise ProviderError(f"Gemini API error: {response.status_code} - {response.text}")

    data = response.json()
    candidates = data.get("candidates") or [{}]
    parts = (candidates[0].get("content") or {}).get("parts") or []
    text = "".join(p.get("text", "") for p in parts)
    tokens = (data.get("usageMetadata") or {}).get("totalTokenCount") or 0
    return _reply(text, tokens, data.get("modelVersion") or GEMINI_MODEL)


PROVIDERS = {
    "openai": query_openai,
    "anthropic": query_anthropic,
    "perplexity": query_perplexity,
    "gemini": query_gemini,
}


def api_keys_from_env():
    return {
        "openai": os.environ.get("OPENAI_API_KEY", ""),
        "anthropic": os.environ.get("ANTHROPIC_API_KEY", ""),
        "perplexity": os.environ.get("PERPLEXITY_API_KEY", ""),
        "gemini": os.environ.get("GEMINI_API_KEY", ""),
    }
