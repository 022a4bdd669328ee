import os
import secrets
import time
from datetime import datetime, timezone

from billing.billing import analysis_limit, monthly_budget
from citations import citations, providers
from crawler.crawler import FetchError, crawl_website
from shared import discord
from shared.db import get_supabase


DEFAULT_PROVIDERS = ["perplexity", "openai", "anthropic"]
CRAWL_KEYWORD_PROMPTS = 3
RESPONSE_PREVIEW_CHARS = 500
DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100
# USD charged against the monthly budget before an analysis starts
ESTIMATED_ANALYSIS_COST = 0.20


class AnalysisError(Exception):
    """Raised when an analysis cannot be run; carries the HTTP status."""

    def __init__(self, message, status=400):
        super().__init__(message)
        self.message = message
        self.status = status


def _now():
    return datetime.now(timezone.utc)


def start_of_month(now=None):
    now = now or _now()
    return now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


def load_user(user_id):
    resp = get_supabase().table("users").select("id,email,subscription,is_admin,trial_ends_at").eq("id", user_id).limit(1).execute()
    return resp.data[0] if resp.data else None


def monthly_usage(user_id):
    resp = (
        get_supabase().table("analyses")
        .select("id", count="exact")
        .eq("user_id", user_id)
        .gte("created_at", start_of_month().isoformat())
        .execute()
    )
    return resp.count or 0


def monthly_cost(user_id):
    resp = (
        get_supabase().table("api_usage")
        .select("cost")
        .eq("user_id", user_id)
        .gte("created_at", start_of_month().isoformat())
        .execute()
    )
    return sum(row.get("cost") or 0 for row in resp.data or [])


def trial_expired(user, now=None):
    if user.get("subscription") != "trial" or not user.get("trial_ends_at"):
        return False
    ends_at = datetime.fromisoformat(str(user["trial_ends_at"]).replace("Z", "+00:00"))
    if ends_at.tzinfo is None:
        ends_at = ends_at.replace(tzinfo=timezone.utc)
    return (now or _now()) > ends_at


def check_quota(user):
    """Raise AnalysisError unless ``user`` may start another analysis.

    Free accounts and expired trials are refused outright. Paid plans are
    held to their monthly analysis count and provider budget.
    """
    if user.get("is_admin"):
        return
    plan = (user.get("subscription") or "trial").lower()
    if plan == "free":
        raise AnalysisError("Please upgrade to a paid plan to run analyses.", 403)
    if trial_expired(user):
        raise AnalysisError("Your trial has expired. Please upgrade to continue running analyses.", 403)

    limit = analysis_limit(plan)
    if limit is None:
        return
    if monthly_usage(user["id"]) >= limit:
        raise AnalysisError(f"Monthly analysis limit reached ({limit}/month)", 429)

    budget = monthly_budget(plan)
    if budget is not None and monthly_cost(user["id"]) + ESTIMATED_ANALYSIS_COST > budget:
        raise AnalysisError(f"Monthly budget limit would be exceeded (${budget:.2f}). Upgrade your plan for higher limits.", 429)


def validate_analysis_request(url, prompts, requested_providers):
    if not url:
        return "url is required"
    if not prompts or not isinstance(prompts, list):
        return "prompts array is required and must not be empty"
    if len(prompts) > citations.MAX_PROMPTS:
        return f"Maximum {citations.MAX_PROMPTS} prompts allowed per request"
    for p in requested_providers:
        if p not in providers.PROVIDERS:
            return f"Invalid provider: {p}. Valid options: {', '.join(providers.PROVIDERS)}"
    return None


def predicted_rank(citation_rate):
    if citation_rate > 50:
        return 1
    if citation_rate > 25:
        return 2
    return 3


def overall_citation_rate(results):
    if not results:
        return 0
    cited = sum(1 for r in results if r["isCited"])
    return round(cited / len(results) * 100, 1)


def crawl_metrics(crawl_data):
    return {
        "contentClarity": (crawl_data.get("blufAnalysis") or {}).get("score") or 0,
        "semanticRichness": 0,
        "structuredData": 80 if crawl_data.get("schemaMarkup") else 20,
        "naturalLanguage": (crawl_data.get("contentStats") or {}).get("readabilityScore") or 0,
        "keywordRelevance": 0,
    }


def new_analysis_id(source="api"):
    return f"{source}-{int(time.time() * 1000)}-{secrets.token_hex(3)}"


def run_analysis(user, url, prompts, brand_name=None, requested_providers=None, source="api"):
    """Crawl ``url``, check every prompt against the providers and save it.

    ``prompts`` is a list of prompt strings. Returns the saved analysis row
    together with the raw citation results.
    """
    requested_providers = requested_providers or DEFAULT_PROVIDERS
    error = validate_analysis_request(url, prompts, requested_providers)
    if error:
        raise AnalysisError(error, 400)

    check_quota(user)

    api_keys = providers.api_keys_from_env()
    missing = citations.missing_key(requested_providers, api_keys)
    if missing:
        raise AnalysisError(f"Missing API key for {missing}", 500)

    started = time.monotonic()
    try:
        crawl_data = crawl_website(url, prompts[:CRAWL_KEYWORD_PROMPTS])
    except ValueError as e:
        raise AnalysisError(str(e), 400)
    except FetchError as e:
        raise AnalysisError(f"Failed to crawl website: {e}", 502)

    prompt_objs = [{"id": f"prompt-{i}", "text": text} for i, text in enumerate(prompts)]
    citation_data = citations.check_citations(prompt_objs, url, requested_providers, brand_name, api_keys)
    results = citation_data["results"]
    rate = overall_citation_rate(results)

    record = {
        "id": new_analysis_id(source),
        "user_id": user["id"],
        "website": url,
        "keywords": prompts,
        "score": rate,
        "metrics": crawl_metrics(crawl_data),
        "insights": f"{source.upper()} analysis for {url}. Citation rate: {rate}%",
        "predicted_rank": predicted_rank(rate),
        "category": "aeo",
        "recommendations": [],
        "is_simulated": False,
        "crawl_data": crawl_data,
        "created_at": _now().isoformat(),
    }

    supabase = get_supabase()
    try:
        supabase.table("analyses").insert(record).execute()
    except Exception as e:
        print("Failed to save analysis:", e)

    summary = citation_data["summary"]
    try:
        supabase.table("api_usage").insert({
            "user_id": user["id"],
            "analysis_id": record["id"],
            "endpoint": source,
            "tokens_used": summary["totalTokens"],
            "cost": summary["totalCost"],
            "created_at": record["created_at"],
        }).execute()
    except Exception as e:
        print("Failed to record api usage:", e)

    send_analysis_webhook(
        status="completed",
        url=url,
        user_id=user["id"],
        plan=user.get("subscription"),
        analysis_id=record["id"],
        citation_rate=rate,
        queries=summary["totalQueries"],
        cost=summary["totalCost"],
        duration_ms=int((time.monotonic() - started) * 1000),
    )
    return {"record": record, "results": results, "summary": summary}


def public_result(record, results, request_body):
    """Shape a freshly run analysis for the Enterprise API."""
    crawl_data = record.get("crawl_data") or {}
    return {
        "id": record["id"],
        "url": record["website"],
        "prompts": record["keywords"],
        "brandName": request_body.get("brandName"),
        "providers": request_body.get("providers") or DEFAULT_PROVIDERS,
        "overallCitationRate": record["score"],
        "citationResults": [{
            "promptId": r["promptId"],
            "prompt": r["prompt"],
            "provider": r["provider"],
            "model": r["modelUsed"],
            "isCited": r["isCited"],
            "citationContext": r.get("citationContext"),
            "competitorsCited": r["competitorsCited"],
            "response": r["response"][:RESPONSE_PREVIEW_CHARS] + ("..." if len(r["response"]) > RESPONSE_PREVIEW_CHARS else ""),
        } for r in results],
        "crawlData": {
            "title": crawl_data.get("title"),
            "metaDescription": crawl_data.get("metaDescription"),
            "pagesAnalyzed": crawl_data.get("pagesAnalyzed") or 1,
            "schemaTypes": [s["type"] for s in crawl_data.get("schemaMarkup") or []],
            "blufScore": (crawl_data.get("blufAnalysis") or {}).get("score"),
        },
        "createdAt": record["created_at"],
    }


def parse_page_args(args):
    try:
        limit = min(int(args.get("limit", DEFAULT_PAGE_SIZE)), MAX_PAGE_SIZE)
        offset = int(args.get("offset", 0))
    except (TypeError, ValueError):
        raise AnalysisError("limit and offset must be integers", 400)
    if limit < 1 or offset < 0:
        raise AnalysisError("limit must be positive and offset non-negative", 400)
    return limit, offset


def list_analyses(user_id, limit=DEFAULT_PAGE_SIZE, offset=0):
    resp = (
        get_supabase().table("analyses")
        .select("id,website,keywords,score,created_at,is_simulated", count="exact")
        .eq("user_id", user_id)
        .order("created_at", desc=True)
        .range(offset, offset + limit - 1)
        .execute()
    )
    return {
        "analyses": [{
            "id": a.get("id"),
            "url": a.get("website"),
            "prompts": a.get("keywords"),
            "citationRate": a.get("score"),
            "createdAt": a.get("created_at"),
            "isSimulated": a.get("is_simulated"),
        } for a in resp.data or []],
        "total": resp.count or 0,
        "limit": limit,
        "offset": offset,
    }


def get_analysis(user_id, analysis_id):
    resp = (
        get_supabase().table("analyses")
        .select("*")
        .eq("id", analysis_id)
        .eq("user_id", user_id)
        .limit(1)
        .execute()
    )
    if not resp.data:
        return None
    a = resp.data[0]
    return {
        "id": a.get("id"),
        "url": a.get("website"),
        "prompts": a.get("keywords"),
        "citationRate": a.get("score"),
        "metrics": a.get("metrics"),
        "insights": a.get("insights"),
        "recommendations": a.get("recommendations"),
        "crawlData": a.get("crawl_data"),
        "isSimulated": a.get("is_simulated"),
        "createdAt": a.get("created_at"),
    }


def _format_domain(url):
    if not url:
        return "unknown"
    return url.replace("https://", "").replace("http://", "").split("/")[0] or "unknown"


def send_analysis_webhook(*, status, url=None, user_id=None, plan=None, analysis_id=None, citation_rate=None, queries=None, cost=None, duration_ms=None, reason=None):
    title = "Analysis Completed" if status == "completed" else "Analysis Failed"
    color = discord.GREEN if status == "completed" else discord.RED
    fields = [
        discord.field("Status", status.replace("_", " ").title()),
        discord.field("Domain", _format_domain(url)),
    ]
    if reason:
        fields.append(discord.field("Reason", reason, inline=False))
    if plan:
        fields.append(discord.field("Plan", plan))
    if user_id:
        fields.append(discord.field("User ID", user_id))
    if analysis_id:
        fields.append(discord.field("Analysis ID", analysis_id))
    if citation_rate is not None:
        fields.append(discord.field("Citation Rate", f"{citation_rate}%"))
    if queries is not None:
        fields.append(discord.field("Queries", queries))
    if cost is not None:
        fields.append(discord.field("Cost", f"${cost:.4f}"))
    if duration_ms is not None:
        fields.append(discord.field("Duration", f"{duration_ms} ms"))
    discord.send_embed(os.environ.get("DISCORD_ANALYSIS_WEBHOOK"), title, color, fields)
