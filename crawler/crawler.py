import json
import re
import time
from collections import Counter
from concurrent.futures import ThreadPoolExecutor
from urllib.parse import urljoin, urlparse, urlunparse

import cloudscraper
import requests
from bs4 import BeautifulSoup


MAX_PAGES = 6  # homepage + 5 subpages
HOMEPAGE_TIMEOUT = 20
PAGE_TIMEOUT = 8
ROBOTS_TIMEOUT = 5
MAX_RETRY_WAIT = 10
JINA_TIMEOUT = 15
JINA_READER_BASE_URL = "https://r.jina.ai/"
SPA_DETECTION_THRESHOLD = 100
IMPORTANT_PATHS = ["/blog", "/services", "/about", "/contact", "/pricing", "/features", "/products", "/faq", "/help"]
SKIP_EXTENSIONS = re.compile(r"\.(pdf|jpg|jpeg|png|gif|svg|css|js|xml|json|zip|mp3|mp4|webp)$")
BOT_USER_AGENT = "Mozilla/5.0 (compatible; LLMSearchInsight/1.0)"

AI_CRAWLERS = [
    # search / citation crawlers
    {"name": "OAI-SearchBot", "description": "ChatGPT Search", "is_search": True},
    {"name": "PerplexityBot", "description": "Perplexity Search", "is_search": True},
    {"name": "ChatGPT-User", "description": "ChatGPT Browsing", "is_search": True},
    {"name": "Applebot-Extended", "description": "Apple Intelligence", "is_search": True},
    # training crawlers
    {"name": "GPTBot", "description": "OpenAI Training", "is_search": False},
    {"name": "ClaudeBot", "description": "Claude Training", "is_search": False},
    {"name": "Claude-Web", "description": "Claude Web", "is_search": False},
    {"name": "anthropic-ai", "description": "Anthropic AI", "is_search": False},
    {"name": "Google-Extended", "description": "Gemini Training", "is_search": False},
    {"name": "Googlebot-Extended", "description": "Google AI Features", "is_search": False},
    {"name": "Meta-ExternalAgent", "description": "Meta AI Training", "is_search": False},
    {"name": "Meta-ExternalFetcher", "description": "Meta AI Fetcher", "is_search": False},
    {"name": "FacebookBot", "description": "Meta/Facebook AI", "is_search": False},
    {"name": "cohere-ai", "description": "Cohere AI", "is_search": False},
    {"name": "Bytespider", "description": "ByteDance/TikTok AI", "is_search": False},
    {"name": "CCBot", "description": "Common Crawl (AI Training)", "is_search": False},
    {"name": "Amazonbot", "description": "Amazon AI", "is_search": False},
]

ECOMMERCE_SCHEMA_TYPES = {"Product", "Offer", "AggregateOffer", "ItemList", "ShoppingCart"}

SPA_ROOT_PATTERNS = [
    re.compile(r"<div\s+id=[\"']root[\"']", re.I),
    re.compile(r"<div\s+id=[\"']app[\"']", re.I),
    re.compile(r"<div\s+id=[\"']__next[\"']", re.I),
    re.compile(r"<div\s+id=[\"']__nuxt[\"']", re.I),
    re.compile(r"ng-app|ng-controller", re.I),
    re.compile(r"<script[^>]*type=[\"']module[\"']", re.I),
]

DIRECT_ANSWER_PATTERNS = [
    re.compile(r"^[A-Z][^.!?]*\s+(is|are|was|were|means|refers to|describes|involves)\s+", re.I),
    re.compile(r"^(The|A|An)\s+\w+\s+(is|are|means|involves)", re.I),
    re.compile(r"^(Yes|No|Generally|Typically|Usually|Often|Sometimes),?\s+", re.I),
    re.compile(r"^(To|In order to)\s+\w+,?\s+", re.I),
    re.compile(r"^\d+[\s\w]*:"),
    re.compile(r"^(First|Second|Third|Finally|Lastly),?\s+", re.I),
]

STOP_WORDS = frozenset({
    "the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for",
    "of", "with", "by", "from", "is", "it", "as", "was", "are", "be",
    "this", "that", "which", "not", "you", "we", "our", "your", "all",
    "can", "will", "has", "have", "had", "do", "does", "if", "so", "no",
    "up", "out", "about", "more", "just", "also", "how", "its", "than",
    "into", "over", "only", "very", "what", "when", "who", "where", "why",
    "each", "get", "got", "been", "being", "would", "could", "should",
    "their", "there", "here", "then", "them", "they", "my", "me", "us",
    "him", "her", "his", "she", "he", "any", "some", "most", "other",
    "one", "two", "new", "may", "use", "way", "own", "see", "now",
    "make", "like", "even", "back", "after", "well", "much", "go",
    "come", "made", "find", "take", "know", "want", "let", "per",
    "amp", "nbsp", "via", "etc", "i", "s", "t", "re", "ve", "d", "m",
    "don", "didn", "won", "ll", "el", "la", "de", "en", "es", "un",
})

TEXT_SKIP_TAGS = ["script", "style", "noscript", "svg", "code", "pre"]


class FetchError(Exception):
    """Raised when a page cannot be fetched for crawling."""
    pass


def fetch(url: str, timeout: int = HOMEPAGE_TIMEOUT) -> str:
    scraper = cloudscraper.create_scraper(
        browser={"browser": "chrome", "platform": "windows", "desktop": True}
    )

    try:
        max_retries = 3
        for attempt in range(max_retries):
            try:
                response = scraper.get(url, timeout=timeout)
            except requests.exceptions.ConnectionError:
                raise FetchError(f"Could not connect to {url}. The site may not exist or is unreachable.")
            except requests.exceptions.Timeout:
                raise FetchError(f"Connection to {url} timed out. The site took too long to respond.")
            except requests.exceptions.TooManyRedirects:
                raise FetchError(f"Too many redirects when trying to reach {url}.")
            except Exception as e:
                raise FetchError(f"Failed to reach {url}: {str(e)}")

            if response.status_code == 429:
                try:
                    retry_after = int(response.headers.get("Retry-After"))
                except (TypeError, ValueError):
                    # missing or an HTTP-date
                    retry_after = 2 ** (attempt + 1)
                time.sleep(min(max(retry_after, 0), MAX_RETRY_WAIT))
                continue
            if response.status_code == 404:
                raise FetchError(f"Page not found (404). The URL {url} does not exist.")
            if response.status_code == 403:
                raise FetchError(f"Access denied (403). The site {url} is blocking our crawler.")
            if response.status_code >= 500:
                raise FetchError(f"The server at {url} returned a {response.status_code} error. It may be down.")
            if response.status_code >= 400:
                raise FetchError(f"Failed to load {url} (HTTP {response.status_code}).")
            return response.text

        raise FetchError(f"Failed to fetch {url} after {max_retries} retries. The site may be rate-limiting requests.")
    finally:
        scraper.close()


def fetch_rendered(url: str):
    """Markdown rendering of ``url`` from Jina Reader, or None."""
    print(f"Fetching rendered content via Jina Reader for: {url}")
    try:
        response = requests.get(
            JINA_READER_BASE_URL + url,
            headers={"Accept": "text/plain"},
            timeout=JINA_TIMEOUT,
        )
    except requests.exceptions.RequestException as e:
        print("Jina Reader error:", e)
        return None
    if not response.ok:
        print(f"Jina Reader failed: {response.status_code}")
        return None
    return response.text


def fetch_robots_txt(origin: str):
    """Return ``(content, error)`` for the site's robots.txt."""
    try:
        response = requests.get(
            origin + "/robots.txt",
            headers={"User-Agent": BOT_USER_AGENT},
            timeout=ROBOTS_TIMEOUT,
        )
    except requests.exceptions.RequestException as e:
        print("Error fetching robots.txt:", e)
        return None, str(e)
    if not response.ok:
        return None, f"HTTP {response.status_code}"
    return response.text, None


# -- text scoring -----------------------------------------------------------

def count_syllables(word: str) -> int:
    word = re.sub(r"[^a-z]", "", word.lower())
    if len(word) <= 3:
        return 1

    count = 0
    prev_vowel = False
    for char in word:
        is_vowel = char in "aeiouy"
        if is_vowel and not prev_vowel:
            count += 1
        prev_vowel = is_vowel

    if word.endswith("e"):
        count -= 1
    return max(1, count)


def calculate_readability(text: str) -> float:
    """Flesch reading ease, clamped to 0-100. Empty text scores 50."""
    sentences = [s for s in re.split(r"[.!?]+", text or "") if s.strip()]
    words = (text or "").split()
    if not sentences or not words:
        return 50

    syllables = sum(count_syllables(w) for w in words)
    avg_sentence_length = len(words) / len(sentences)
    avg_syllables = syllables / len(words)
    score = 206.835 - (1.015 * avg_sentence_length) - (84.6 * avg_syllables)
    return max(0, min(100, score))


def is_direct_answer(text: str) -> bool:
    if not text or len(text.strip()) < 20:
        return False
    trimmed = text.strip()
    if any(p.search(trimmed) for p in DIRECT_ANSWER_PATTERNS):
        return True
    first_sentence = re.split(r"[.!?]", trimmed)[0]
    return 30 < len(first_sentence) < 150


def top_keywords(html: str, top_n: int = 10) -> list[dict]:
    soup = BeautifulSoup(html or "", "html.parser")
    for tag in soup(TEXT_SKIP_TAGS):
        tag.decompose()
    words = re.findall(r"[a-z]{3,}", soup.get_text(" ").lower())
    counts = Counter(w for w in words if w not in STOP_WORDS)
    return [{"keyword": kw, "count": c} for kw, c in counts.most_common(top_n)]


# -- page parsing -----------------------------------------------------------

def _following_content(heading, max_chars=500):
    parts = []
    char_count = 0
    for sibling in heading.find_next_siblings():
        if char_count >= max_chars:
            break
        if re.match(r"^h[1-6]$", sibling.name):
            break
        if sibling.name in ("p", "ul", "ol", "div", "span", "li"):
            text = sibling.get_text().strip()
            parts.append(text)
            char_count += len(text)
    return " ".join(parts).strip()


def extract_schema_markup(soup) -> list[dict]:
    schemas = []
    for script in soup.find_all("script", attrs={"type": "application/ld+json"}):
        content = script.string or script.get_text()
        if not content or not content.strip():
            continue
        try:
            data = json.loads(content)
        except ValueError:
            continue

        for item in data if isinstance(data, list) else [data]:
            if not isinstance(item, dict):
                continue
            if item.get("@type"):
                schemas.append({"type": item["@type"], "properties": item})
            graph = item.get("@graph")
            if isinstance(graph, list):
                for node in graph:
                    if isinstance(node, dict) and node.get("@type"):
                        schemas.append({"type": node["@type"], "properties": node})
    return schemas


def analyze_keywords(body_text, title, meta_description, h1_text, keywords) -> dict:
    lower_body = body_text.lower()
    occurrences = 0
    title_match = h1_match = meta_match = False

    for keyword in keywords or []:
        kw = (keyword or "").lower().strip()
        if not kw:
            continue
        if kw in title.lower():
            title_match = True
        if kw in h1_text.lower():
            h1_match = True
        if kw in meta_description.lower():
            meta_match = True
        occurrences += len(re.findall(re.escape(kw), lower_body))

    words = body_text.split()
    density = (occurrences / len(words)) * 100 if words else 0
    return {
        "titleContainsKeyword": title_match,
        "h1ContainsKeyword": h1_match,
        "metaContainsKeyword": meta_match,
        "keywordDensity": round(density, 2),
        "keywordOccurrences": occurrences,
    }


def bluf_analysis(headings) -> dict:
    answered = [h for h in headings if h["hasDirectAnswer"]]
    return {
        "score": round(len(answered) / len(headings) * 100) if headings else 0,
        "directAnswers": [{"heading": h["text"], "answer": h["followingContent"]} for h in answered],
        "totalHeadings": len(headings),
        "headingsWithDirectAnswers": len(answered),
    }


def parse_page(html: str, url: str, keywords=None, load_time_ms: int = 0, soup=None) -> dict:
    soup = soup or BeautifulSoup(html or "", "html.parser")

    title = soup.title.get_text().strip() if soup.title else ""
    meta_el = soup.find("meta", attrs={"name": "description"})
    meta_description = (meta_el.get("content") or "").strip() if meta_el else ""

    headings = []
    for el in soup.find_all(re.compile(r"^h[1-6]$")):
        following = _following_content(el)
        headings.append({
            "level": int(el.name[1]),
            "text": el.get_text().strip(),
            "hasDirectAnswer": is_direct_answer(following),
            "followingContent": following[:200],
        })

    h1 = soup.find("h1")
    h1_text = h1.get_text().strip() if h1 else ""

    body = soup.body or soup
    body_text = re.sub(r"\s+", " ", body.get_text(" ")).strip()
    words = body_text.split()
    sentences = [s for s in re.split(r"[.!?]+", body_text) if s.strip()]

    return {
        "url": url,
        "title": title,
        "metaDescription": meta_description,
        "headings": headings,
        "schemaMarkup": extract_schema_markup(soup),
        "contentStats": {
            "wordCount": len(words),
            "paragraphCount": len(soup.find_all("p")),
            "avgSentenceLength": round(len(words) / len(sentences)) if sentences else 0,
            "readabilityScore": round(calculate_readability(body_text)),
        },
        "technicalSignals": {
            "hasCanonical": soup.find("link", rel="canonical") is not None,
            "hasOpenGraph": soup.find("meta", attrs={"property": re.compile(r"^og:")}) is not None,
            "hasTwitterCard": soup.find("meta", attrs={"name": re.compile(r"^twitter:")}) is not None,
            "loadTime": load_time_ms,
            "mobileViewport": soup.find("meta", attrs={"name": "viewport"}) is not None,
            "hasHttps": urlparse(url).scheme == "https",
        },
        "blufAnalysis": bluf_analysis(headings),
        "keywordAnalysis": analyze_keywords(body_text, title, meta_description, h1_text, keywords),
    }


# -- SPA fallback -----------------------------------------------------------

def has_spa_root(html: str) -> bool:
    return any(p.search(html or "") for p in SPA_ROOT_PATTERNS)


def is_likely_spa(word_count: int, headings_count: int, spa_root: bool) -> bool:
    if spa_root and word_count < SPA_DETECTION_THRESHOLD:
        return True
    return word_count < 50 and headings_count == 0


def _following_lines(lines, start):
    collected = []
    char_count = 0
    for line in lines[start + 1:]:
        if char_count >= 200:
            break
        line = line.strip()
        if re.match(r"^#{1,6}\s", line) or re.match(r"^[-=]{3,}$", line):
            break
        if line:
            collected.append(line)
            char_count += len(line)
    return " ".join(collected)[:200]


def _markdown_heading(level, text, lines, index):
    following = _following_lines(lines, index)
    return {
        "level": level,
        "text": text,
        "hasDirectAnswer": is_direct_answer(following),
        "followingContent": following,
    }


def parse_markdown_content(text: str) -> dict:
    """Headings, word and paragraph counts from a Jina Reader rendering.

    Jina prefixes its output with ``Title:``/``URL Source:`` metadata; only
    what follows ``Markdown Content:`` is parsed when that marker exists.
    """
    match = re.search(r"Markdown Content:\s*\n([\s\S]*)", text or "", re.I)
    clean = match.group(1) if match else (text or "")

    lines = clean.split("\n")
    headings = []
    paragraph_count = 0

    for i, line in enumerate(lines):
        stripped = line.strip()

        atx = re.match(r"^(#{1,6})\s+(.+)$", stripped)
        if atx:
            headings.append(_markdown_heading(len(atx.group(1)), atx.group(2).strip(), lines, i))
            continue

        if stripped and i + 1 < len(lines):
            underline = lines[i + 1].strip()
            if re.match(r"^={3,}$", underline):
                headings.append(_markdown_heading(1, stripped, lines, i + 1))
                continue
            if re.match(r"^-{3,}$", underline):
                headings.append(_markdown_heading(2, stripped, lines, i + 1))
                continue

        if len(stripped) > 50 and not re.match(r"^[-=]{3,}$", stripped):
            paragraph_count += 1

    return {
        "headings": headings,
        "wordCount": len(clean.split()),
        "paragraphCount": paragraph_count,
    }


# -- links ------------------------------------------------------------------

def extract_internal_links(soup, base_url: str) -> list[str]:
    base = urlparse(base_url)
    origin = f"{base.scheme}://{base.netloc}"
    links = []
    for anchor in soup.find_all("a", href=True):
        try:
            link = urlparse(urljoin(origin + "/", anchor["href"]))
        except ValueError:
            continue
        if link.scheme not in ("http", "https") or link.hostname != base.hostname:
            continue
        if SKIP_EXTENSIONS.search(link.path.lower()):
            continue
        path = link.path.rstrip("/") or "/"
        normalized = urlunparse((link.scheme, link.netloc, path, "", "", ""))
        if normalized not in links:
            links.append(normalized)
    return links


def prioritize_links(links: list[str]) -> list[str]:
    prioritized = []
    others = []
    for link in links:
        path = urlparse(link).path.lower()
        if any(path == p or path.startswith(p + "/") or path.startswith(p + "-") for p in IMPORTANT_PATHS):
            prioritized.append(link)
        elif path != "/" and len(path.split("/")) <= 3:
            others.append(link)
    return (prioritized + others)[:MAX_PAGES - 1]


def crawl_page(url: str, keywords):
    start = time.monotonic()
    try:
        html = fetch(url, timeout=PAGE_TIMEOUT)
    except FetchError as e:
        print(f"Skipping {url}:", e)
        return None
    return parse_page(html, url, keywords, int((time.monotonic() - start) * 1000))


# -- AI readiness -----------------------------------------------------------

def crawler_status(content: str, crawler_name: str) -> str:
    """``allowed``, ``blocked`` or ``not_specified`` for one user agent.

    Rules for the named agent win over ``*`` rules.
    """
    name = crawler_name.lower()
    in_crawler = in_wildcard = False
    crawler_disallow = crawler_allow = False
    wildcard_disallow = wildcard_allow = False

    for line in content.lower().split("\n"):
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        if line.startswith("user-agent:"):
            agent = line[len("user-agent:"):].strip()
            in_crawler = agent == name
            in_wildcard = agent == "*"
            continue
        if line.startswith("disallow:"):
            path = line[len("disallow:"):].strip()
            if path == "/":
                crawler_disallow = crawler_disallow or in_crawler
                wildcard_disallow = wildcard_disallow or in_wildcard
            elif not path:
                # an empty Disallow grants everything
                crawler_allow = crawler_allow or in_crawler
                wildcard_allow = wildcard_allow or in_wildcard
        if line.startswith("allow:"):
            if line[len("allow:"):].strip() == "/":
                crawler_allow = crawler_allow or in_crawler
                wildcard_allow = wildcard_allow or in_wildcard

    if crawler_disallow and not crawler_allow:
        return "blocked"
    if crawler_allow:
        return "allowed"
    if wildcard_disallow and not wildcard_allow:
        return "blocked"
    if wildcard_allow:
        return "allowed"
    return "not_specified"


def analyze_robots_txt(origin: str) -> dict:
    content, error = fetch_robots_txt(origin)
    crawlers = [{
        "crawler": c["name"],
        "description": c["description"],
        "status": crawler_status(content, c["name"]) if content is not None else "not_specified",
        "isSearchCrawler": c["is_search"],
    } for c in AI_CRAWLERS]

    analysis = {
        "exists": content is not None,
        "crawlers": crawlers,
        "hasBlockedSearchCrawlers": any(c["isSearchCrawler"] and c["status"] == "blocked" for c in crawlers),
        "hasBlockedTrainingCrawlers": any(not c["isSearchCrawler"] and c["status"] == "blocked" for c in crawlers),
    }
    if error:
        analysis["fetchError"] = error
    return analysis


def _schema_types(schema):
    t = schema["type"]
    return t if isinstance(t, list) else [t]


def has_product_schema(schemas) -> bool:
    return any(ECOMMERCE_SCHEMA_TYPES.intersection(_schema_types(s)) for s in schemas)


def platform_recommendations(is_ecommerce: bool) -> list[dict]:
    return [
        {
            "platform": "ChatGPT Merchant Portal",
            "url": "https://chatgpt.com/merchants",
            "description": "Submit your products to appear in ChatGPT shopping results with Instant Checkout",
            "applicable": is_ecommerce,
            "reason": "Product schema detected - submit your catalog for ChatGPT Shopping"
            if is_ecommerce else "Not applicable - no e-commerce schema detected",
        },
        {
            "platform": "Bing Webmaster Tools",
            "url": "https://www.bing.com/webmasters",
            "description": "Improves visibility in ChatGPT browsing mode and Microsoft Copilot",
            "applicable": True,
            "reason": "Recommended for all sites - Bing powers ChatGPT web browsing",
        },
        {
            "platform": "Google Search Console",
            "url": "https://search.google.com/search-console",
            "description": "Improves visibility in Google Gemini responses",
            "applicable": True,
            "reason": "Recommended for all sites - Google powers Gemini search",
        },
    ]


def analyze_ai_readiness(robots: dict, schemas) -> dict:
    is_ecommerce = has_product_schema(schemas)
    issues = []
    status = "good"

    if robots["hasBlockedSearchCrawlers"]:
        issues.append("AI search crawlers are blocked in robots.txt - your site may be invisible to ChatGPT Search and Perplexity")
        status = "critical"
    if not robots["exists"]:
        issues.append("No robots.txt found - consider adding one to explicitly allow AI crawlers")
        if status != "critical":
            status = "warning"

    by_name = {c["crawler"]: c["status"] for c in robots["crawlers"]}
    if by_name.get("OAI-SearchBot") == "blocked":
        issues.append("OAI-SearchBot is blocked - your site will not appear in ChatGPT Search results")
        status = "critical"
    if by_name.get("PerplexityBot") == "blocked":
        issues.append("PerplexityBot is blocked - your site will not be cited by Perplexity")
        status = "critical"
    if is_ecommerce:
        issues.append("E-commerce site detected - consider submitting to ChatGPT Merchant Portal")
        if status == "good":
            status = "warning"

    return {
        "robotsTxt": robots,
        "platformRecommendations": platform_recommendations(is_ecommerce),
        "isEcommerce": is_ecommerce,
        "overallStatus": status,
        "issues": issues,
    }


# -- aggregation ------------------------------------------------------------

def page_issues(page: dict) -> list[str]:
    issues = []
    h1_count = sum(1 for h in page["headings"] if h["level"] == 1)
    if len(page["title"]) < 10:
        issues.append("Missing/short title")
    if not page["metaDescription"]:
        issues.append("No meta description")
    if not page["schemaMarkup"]:
        issues.append("No schema markup")
    if h1_count == 0:
        issues.append("No H1")
    if h1_count > 1:
        issues.append("Multiple H1s")
    if page["contentStats"]["wordCount"] < 300:
        issues.append("Low word count")
    if page["blufAnalysis"]["score"] < 30:
        issues.append("Poor BLUF score")
    return issues


def aggregate_pages(pages: list[dict]) -> dict:
    n = len(pages)
    homepage = pages[0]

    schemas = []
    seen = set()
    for page in pages:
        for schema in page["schemaMarkup"]:
            key = tuple(_schema_types(schema))
            if key not in seen:
                seen.add(key)
                schemas.append(schema)

    headings = [h for p in pages for h in p["headings"]]
    answered = sum(1 for h in headings if h["hasDirectAnswer"])
    total_words = sum(p["contentStats"]["wordCount"] for p in pages)
    avg_readability = round(sum(p["contentStats"]["readabilityScore"] for p in pages) / n)

    return {
        "url": homepage["url"],
        "title": homepage["title"],
        "metaDescription": homepage["metaDescription"],
        "headings": headings[:50],
        "schemaMarkup": schemas,
        "contentStats": {
            "wordCount": total_words,
            "paragraphCount": sum(p["contentStats"]["paragraphCount"] for p in pages),
            "avgSentenceLength": round(sum(p["contentStats"]["avgSentenceLength"] for p in pages) / n),
            "readabilityScore": avg_readability,
        },
        "technicalSignals": homepage["technicalSignals"],
        "blufAnalysis": {
            "score": round(answered / len(headings) * 100) if headings else 0,
            "directAnswers": [a for p in pages for a in p["blufAnalysis"]["directAnswers"]][:10],
            "totalHeadings": len(headings),
            "headingsWithDirectAnswers": answered,
        },
        "keywordAnalysis": {
            "titleContainsKeyword": any(p["keywordAnalysis"]["titleContainsKeyword"] for p in pages),
            "h1ContainsKeyword": any(p["keywordAnalysis"]["h1ContainsKeyword"] for p in pages),
            "metaContainsKeyword": any(p["keywordAnalysis"]["metaContainsKeyword"] for p in pages),
            "keywordDensity": round(sum(p["keywordAnalysis"]["keywordDensity"] for p in pages) / n, 2),
            "keywordOccurrences": sum(p["keywordAnalysis"]["keywordOccurrences"] for p in pages),
        },
        "pagesAnalyzed": n,
        "pages": [{
            "url": p["url"],
            "title": p["title"] or "Untitled",
            "wordCount": p["contentStats"]["wordCount"],
            "headingsCount": len(p["headings"]),
            "schemaCount": len(p["schemaMarkup"]),
            "issues": page_issues(p),
        } for p in pages],
        "aggregatedStats": {
            "totalWords": total_words,
            "totalHeadings": len(headings),
            "totalSchemas": sum(len(p["schemaMarkup"]) for p in pages),
            "avgReadability": avg_readability,
            "pagesWithSchema": sum(1 for p in pages if p["schemaMarkup"]),
            "pagesWithMeta": sum(1 for p in pages if p["metaDescription"]),
        },
    }


def normalize_url(url: str):
    """Return ``(scheme, netloc)`` for a user-entered URL or raise ValueError."""
    url = (url or "").strip()
    parsed = urlparse(url if url.startswith("http") else "https://" + url)
    if not parsed.hostname or " " in parsed.netloc:
        raise ValueError("Invalid URL format")
    return parsed.scheme, parsed.netloc


def _apply_rendered_content(homepage, markdown):
    parsed = parse_markdown_content(markdown)
    print(f"Jina Reader text: {parsed['wordCount']} words, {len(parsed['headings'])} headings")
    homepage["headings"] = parsed["headings"]
    homepage["contentStats"]["wordCount"] = parsed["wordCount"]
    homepage["contentStats"]["paragraphCount"] = parsed["paragraphCount"]
    homepage["contentStats"]["readabilityScore"] = round(calculate_readability(markdown))
    homepage["blufAnalysis"] = bluf_analysis(parsed["headings"])


def crawl_website(url: str, keywords=None) -> dict:
    """Crawl the homepage and up to five subpages and score AI readiness.

    Raises ValueError for an unusable URL and FetchError when the homepage
    cannot be fetched. Subpages that fail are skipped.
    """
    keywords = keywords or []
    scheme, netloc = normalize_url(url)
    origin = f"{scheme}://{netloc}"
    homepage_url = origin + "/"
    print(f"Starting multi-page crawl for {origin}")

    start = time.monotonic()
    html = fetch(homepage_url)
    load_time = int((time.monotonic() - start) * 1000)
    print(f"Fetched homepage in {load_time}ms, {len(html)} chars")

    soup = BeautifulSoup(html, "html.parser")
    homepage = parse_page(html, homepage_url, keywords, load_time, soup=soup)

    spa_root = has_spa_root(html)
    original_word_count = homepage["contentStats"]["wordCount"]
    spa_detected = is_likely_spa(original_word_count, len(homepage["headings"]), spa_root)
    used_jina = False
    if spa_detected:
        print(f"Detected likely SPA ({original_word_count} words, SPA root: {spa_root}). Trying Jina Reader...")
        markdown = fetch_rendered(homepage_url)
        if markdown:
            _apply_rendered_content(homepage, markdown)
            used_jina = True
        else:
            print("Jina Reader fallback failed, using original sparse content")

    homepage_variants = {homepage_url, origin, origin + "/"}
    links = [l for l in extract_internal_links(soup, homepage_url) if l not in homepage_variants]
    links = prioritize_links(links)
    print(f"Prioritized {len(links)} links for crawling: {', '.join(links)}")

    with ThreadPoolExecutor(max_workers=MAX_PAGES) as executor:
        robots_future = executor.submit(analyze_robots_txt, origin)
        subpages = [p for p in executor.map(lambda link: crawl_page(link, keywords), links) if p]
        robots = robots_future.result()

    pages = [homepage] + subpages
    print(f"Successfully crawled {len(pages)} pages")

    data = aggregate_pages(pages)
    data["aiReadiness"] = analyze_ai_readiness(robots, data["schemaMarkup"])
    data["topKeywords"] = top_keywords(html)
    if spa_detected:
        data["spaDetection"] = {
            "detected": True,
            "usedJinaFallback": used_jina,
            "originalWordCount": original_word_count if spa_root else None,
        }
    print(f"AI Readiness: {data['aiReadiness']['overallStatus']}, issues: {len(data['aiReadiness']['issues'])}")
    return data
