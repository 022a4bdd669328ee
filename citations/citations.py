import re
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from urllib.parse import urlparse

from citations import providers


BATCH_SIZE = 5
MAX_PROMPTS = 10
MAX_COMPETITORS = 10
CITATION_CONTEXT_CHARS = 100
COMPETITOR_CONTEXT_CHARS = 50

# USD per 1K tokens
COSTS = {
    "openai": {"input": 0.01, "output": 0.03},
    "anthropic": {"input": 0.003, "output": 0.015},
    "perplexity": {"input": 0.001, "output": 0.001},
    "gemini": {"input": 0.00035, "output": 0.00105},
}

URL_RE = re.compile(r"https?://[^\s<>\"']+", re.IGNORECASE)
BARE_DOMAIN_RE = re.compile(r"\b[a-zA-Z0-9][-a-zA-Z0-9]*\.(?:com|org|net|io|co|ai)\b", re.IGNORECASE)


def extract_domain(url: str) -> str:
    raw = (url or "").strip()
    try:
        parsed = urlparse(raw if raw.startswith("http") else "https://" + raw)
        host = parsed.hostname
    except ValueError:
        host = None
    if not host:
        return re.sub(r"^www\.", "", raw).split("/")[0]
    return re.sub(r"^www\.", "", host)


def _context(text, index, length, pad):
    start = max(0, index - pad)
    end = min(len(text), index + length + pad)
    return text[start:end].strip()


def check_citation(response: str, website: str, brand_name: str = None):
    """Return ``(is_cited, context)`` for the target site or brand.

    The domain is searched first, then the brand name, both
    case-insensitively. Context is taken from the original-case response.
    """
    lower_response = (response or "").lower()
    domain = extract_domain(website).lower()

    if domain and domain in lower_response:
        index = lower_response.index(domain)
        return True, _context(response, index, len(domain), CITATION_CONTEXT_CHARS)

    if brand_name:
        lower_brand = brand_name.lower()
        if lower_brand in lower_response:
            index = lower_response.index(lower_brand)
            return True, _context(response, index, len(lower_brand), CITATION_CONTEXT_CHARS)

    return False, None


def extract_competitors(response: str, user_domain: str, sources=None) -> list[dict]:
    response = response or ""
    user_domain_lower = (user_domain or "").lower()
    competitors = []

    # Perplexity hands back explicit sources, which beat scraping the text.
    if sources:
        for i, source in enumerate(sources):
            domain = extract_domain(source.get("url", ""))
            if domain.lower() == user_domain_lower:
                continue
            competitors.append({
                "domain": domain,
                "url": source.get("url"),
                "context": source.get("title") or f"Source {i + 1}",
                "position": i + 1,
            })
        return competitors

    for i, url in enumerate(URL_RE.findall(response)):
        domain = extract_domain(url)
        if not domain or domain.lower() == user_domain_lower:
            continue
        if any(c["domain"] == domain for c in competitors):
            continue
        competitors.append({
            "domain": domain,
            "url": url,
            "context": _context(response, response.index(url), len(url), COMPETITOR_CONTEXT_CHARS),
            "position": i + 1,
        })

    lower_response = response.lower()
    for match in BARE_DOMAIN_RE.finditer(response):
        clean = match.group(0).lower()
        if clean == user_domain_lower:
            continue
        if any(c["domain"].lower() == clean for c in competitors):
            continue
        competitors.append({
            "domain": clean,
            "url": None,
            "context": _context(response, lower_response.index(clean), len(clean), COMPETITOR_CONTEXT_CHARS),
            "position": len(competitors) + 1,
        })

    return competitors[:MAX_COMPETITORS]


def calculate_cost(provider: str, tokens_used: int) -> float:
    costs = COSTS[provider]
    # Providers report a single total for some models; assume a 40/60 split.
    input_tokens = tokens_used * 0.4
    output_tokens = tokens_used * 0.6
    cost = (input_tokens / 1000 * costs["input"]) + (output_tokens / 1000 * costs["output"])
    return round(cost, 4)


def _now_iso():
    return datetime.now(timezone.utc).isoformat()


def process_prompt(prompt: dict, provider: str, website: str, brand_name, api_keys: dict) -> dict:
    timestamp = _now_iso()
    prompt_id = prompt.get("id")
    prompt_text = prompt.get("text") or ""
    try:
        query = providers.PROVIDERS[provider]
        reply = query(prompt_text, api_keys.get(provider, ""))
        is_cited, context = check_citation(reply["response"], website, brand_name)
        competitors = extract_competitors(reply["response"], extract_domain(website), reply.get("sources"))
        return {
            "promptId": prompt_id,
            "prompt": prompt_text,
            "provider": provider,
            "modelUsed": reply["model"],
            "response": reply["response"],
            "isCited": is_cited,
            "citationContext": context,
            "competitorsCited": competitors,
            "timestamp": timestamp,
            "tokensUsed": reply["tokens_used"],
            "cost": calculate_cost(provider, reply["tokens_used"]),
        }
    except Exception as e:
        print(f'Error querying {provider} for prompt "{prompt_text}":', e)
        return {
            "promptId": prompt_id,
            "prompt": prompt_text,
            "provider": provider,
            "modelUsed": "error",
            "response": f"Error: {e}",
            "isCited": False,
            "citationContext": None,
            "competitorsCited": [],
            "timestamp": timestamp,
            "tokensUsed": 0,
            "cost": 0,
        }


def summarize(results: list, total_prompts: int) -> dict:
    total_cost = sum(r["cost"] for r in results)
    total_tokens = sum(r["tokensUsed"] for r in results)
    cited_count = sum(1 for r in results if r["isCited"])
    return {
        "totalPrompts": total_prompts,
        "totalQueries": len(results),
        "citedCount": cited_count,
        "citationRate": (cited_count / len(results)) * 100 if results else 0,
        "totalCost": round(total_cost, 4),
        "totalTokens": total_tokens,
    }


def check_citations(prompts, website, providers_requested, brand_name=None, api_keys=None) -> dict:
    """Ask every provider every prompt and score the answers for citations.

    Tasks run prompt-major in batches of ``BATCH_SIZE``; a batch runs in
    parallel and the next batch starts once it has finished. Results keep
    task order. A failing task becomes an error result and never aborts
    the run.
    """
    if api_keys is None:
        api_keys = providers.api_keys_from_env()

    tasks = [(prompt, provider) for prompt in prompts for provider in providers_requested]
    results = []
    with ThreadPoolExecutor(max_workers=BATCH_SIZE) as executor:
        for i in range(0, len(tasks), BATCH_SIZE):
            batch = tasks[i:i + BATCH_SIZE]
            results.extend(executor.map(
                lambda task: process_prompt(task[0], task[1], website, brand_name, api_keys),
                batch,
            ))

    summary = summarize(results, len(prompts))
    print(f"Completed: {summary['citedCount']}/{len(results)} cited, total cost: ${summary['totalCost']:.4f}")
    return {"results": results, "summary": summary}


def validate_request(body):
    """Return an error message for an invalid check request, else None."""
    prompts = body.get("prompts")
    if not prompts or not isinstance(prompts, list):
        return "At least one prompt is required"
    if len(prompts) > MAX_PROMPTS:
        return f"Maximum {MAX_PROMPTS} prompts allowed"
    if not body.get("website"):
        return "Website URL is required"
    requested = body.get("providers")
    if not requested or not isinstance(requested, list):
        return "At least one provider is required"
    for provider in requested:
        if provider not in providers.PROVIDERS:
            return f"Invalid provider: {provider}. Valid options: {', '.join(providers.PROVIDERS)}"
    return None


def missing_key(providers_requested, api_keys):
    for provider in providers_requested:
        if not api_keys.get(provider):
            return provider
    return None
