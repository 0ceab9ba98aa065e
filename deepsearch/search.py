"""Web search, page reading and last-modified lookup.

Search providers:
  - firecrawl  Firecrawl v4 SDK (returns Pydantic models)
  - duck       DuckDuckGo via ddgs, no API key required
  - serper     google.serper.dev over httpx
  - brave      Brave Search API over httpx
  - auto       Firecrawl first, DuckDuckGo when it fails or is unconfigured

Every search returns a list of ``{"title", "url", "description", "date"}``
dicts. A 401 from a key-based provider raises ``SearchUnauthorizedError``;
everything else is raised as-is for the caller to log and skip.
"""

import logging
import os
import time
from email.utils import parsedate_to_datetime
from typing import Any, Dict, List, Optional
from urllib.parse import urljoin

import httpx
from bs4 import BeautifulSoup
from ddgs import DDGS
from firecrawl import Firecrawl

from .config import get_config
from .models import SERPQuery

logger = logging.getLogger(__name__)

FIRECRAWL_MAX_RETRIES = int(os.environ.get("FIRECRAWL_MAX_RETRIES", "3"))
FIRECRAWL_BACKOFF_BASE = float(os.environ.get("FIRECRAWL_BACKOFF_BASE", "0.5"))
HTTP_TIMEOUT = 20.0
USER_AGENT = "Mozilla/5.0 (compatible; deepsearch/0.1; +https://github.com/)"

# Track whether Firecrawl is usable this session (avoids repeated failures)
_firecrawl_disabled = False


class SearchUnauthorizedError(Exception):
    """A key-based search provider rejected its credentials."""


def _is_unauthorized(exc: Exception) -> bool:
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code == 401
    err = str(exc).lower()
    return "401" in err or "unauthorized" in err


def _get_firecrawl() -> Optional[Firecrawl]:
    """Return a Firecrawl client, or None when no key is configured."""
    api_key = os.environ.get("FIRECRAWL_API_KEY", "")
    if not api_key:
        return None
    return Firecrawl(api_key=api_key)


def _retry(func, *args, **kwargs):
    last_err = None
    for attempt in range(FIRECRAWL_MAX_RETRIES):
        try:
            return func(*args, **kwargs)
        except Exception as exc:
            last_err = exc
            err_str = str(exc).lower()
            # Don't retry payment / auth errors
            if any(k in err_str for k in ("payment", "402", "401", "403", "insufficient", "unauthorized")):
                raise
            time.sleep(FIRECRAWL_BACKOFF_BASE * (2 ** attempt))
    raise last_err  # type: ignore


# ── response normalisers ────────────────────────────────────────────

def _pydantic_to_dict(obj: Any) -> Any:
    """Recursively convert a Pydantic model (or list of them) to dicts."""
    if obj is None or isinstance(obj, (str, int, float, bool)):
        return obj
    if isinstance(obj, dict):
        return {k: _pydantic_to_dict(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [_pydantic_to_dict(item) for item in obj]
    if hasattr(obj, "model_dump"):
        return obj.model_dump()
    return obj


def _pick(item: Dict[str, Any], keys: List[str]) -> str:
    for key in keys:
        value = item.get(key)
        if value:
            return str(value).strip()
    return ""


def _normalise_item(item: Any) -> Optional[Dict[str, Any]]:
    d = _pydantic_to_dict(item)
    if not isinstance(d, dict):
        return None
    meta = d.get("metadata") if isinstance(d.get("metadata"), dict) else {}
    url = _pick(d, ["url", "link", "href"]) or _pick(meta, ["source_url", "sourceURL", "url"])
    if not url:
        return None
    return {
        "title": _pick(d, ["title", "name"]) or _pick(meta, ["title"]),
        "url": url,
        "description": _pick(d, ["description", "snippet", "body"]) or _pick(meta, ["description"]),
        "date": _pick(d, ["date", "age", "published_date"]) or None,
    }


def _normalise_firecrawl_search(result: Any) -> List[Dict[str, Any]]:
    """Flatten a Firecrawl v4 ``SearchData`` (``.web`` / ``.news``) into plain dicts."""
    if result is None:
        return []
    if isinstance(result, dict):
        buckets = [result.get("web"), result.get("news"), result.get("data")]
    else:
        buckets = [getattr(result, "web", None), getattr(result, "news", None)]
    items = []
    for bucket in buckets:
        for entry in bucket or []:
            norm = _normalise_item(entry)
            if norm:
                items.append(norm)
    logger.debug("Normalised search → %d items", len(items))
    return items


# ── providers ───────────────────────────────────────────────────────

def _firecrawl_search(query: SERPQuery, num: int) -> List[Dict[str, Any]]:
    fc = _get_firecrawl()
    if fc is None:
        raise RuntimeError("FIRECRAWL_API_KEY is not set")
    kwargs: Dict[str, Any] = {"query": query.q, "limit": num}
    if query.tbs:
        kwargs["tbs"] = query.tbs
    if query.location:
        kwargs["location"] = query.location
    return _normalise_firecrawl_search(_retry(fc.search, **kwargs))


def _ddg_search(query: SERPQuery, num: int) -> List[Dict[str, Any]]:
    timelimit = {"qdr:d": "d", "qdr:w": "w", "qdr:m": "m", "qdr:y": "y"}.get(query.tbs or "")
    results = DDGS(timeout=10).text(query.q, max_results=num, safesearch="on", timelimit=timelimit)
    items = [n for n in (_normalise_item(r) for r in results or []) if n]
    logger.info("DuckDuckGo → %d items for '%s'", len(items), query.q[:60])
    return items


def _serper_search(query: SERPQuery, num: int) -> List[Dict[str, Any]]:
    api_key = os.environ.get("SERPER_API_KEY", "")
    payload: Dict[str, Any] = {"q": query.q, "num": num, "autocorrect": False}
    if query.tbs:
        payload["tbs"] = query.tbs
    if query.location:
        payload["location"] = query.location
    resp = httpx.post(
        "https://google.serper.dev/search",
        json=payload,
        headers={"X-API-KEY": api_key, "Content-Type": "application/json"},
        timeout=HTTP_TIMEOUT,
    )
    resp.raise_for_status()
    return [n for n in (_normalise_item(r) for r in resp.json().get("organic", [])) if n]


def _brave_search(query: SERPQuery, num: int) -> List[Dict[str, Any]]:
    api_key = os.environ.get("BRAVE_API_KEY", "")
    resp = httpx.get(
        "https://api.search.brave.com/res/v1/web/search",
        params={"q": query.q, "count": min(num, 20), "safesearch": "strict"},
        headers={"Accept": "application/json", "X-Subscription-Token": api_key},
        timeout=HTTP_TIMEOUT,
    )
    resp.raise_for_status()
    results = (resp.json().get("web") or {}).get("results", [])
    return [n for n in (_normalise_item(r) for r in results) if n]


def search(query: SERPQuery, provider: Optional[str] = None, num: int = 10) -> List[Dict[str, Any]]:
    """Run one query against *provider* (default: ``SEARCH_PROVIDER``)."""
    global _firecrawl_disabled
    provider = provider or get_config().search_provider

    if provider == "duck":
        return _ddg_search(query, num)
    if provider in ("firecrawl", "serper", "brave"):
        fn = {"firecrawl": _firecrawl_search, "serper": _serper_search, "brave": _brave_search}[provider]
        try:
            return fn(query, num)
        except Exception as exc:
            if _is_unauthorized(exc):
                raise SearchUnauthorizedError(f"Unauthorized {provider} API key") from exc
            raise
    if provider != "auto":
        raise ValueError(f"Unknown search provider: '{provider}'")

    # ── auto: Firecrawl, then DuckDuckGo ──
    if not _firecrawl_disabled and _get_firecrawl() is not None:
        try:
            items = _firecrawl_search(query, num)
            if items:
                return items
            logger.info("Firecrawl returned 0 items for '%s', trying DuckDuckGo", query.q)
        except Exception as exc:
            err = str(exc).lower()
            if any(k in err for k in ("payment", "402", "insufficient", "credit", "401", "unauthorized")):
                logger.warning("Firecrawl unusable (%s) – disabling for this session. Using DuckDuckGo.", exc)
                _firecrawl_disabled = True
            else:
                logger.warning("Firecrawl search error: %s – falling back to DuckDuckGo", exc)
    return _ddg_search(query, num)


# ── page reading ────────────────────────────────────────────────────

def _firecrawl_read(url: str, with_images: bool) -> Optional[Dict[str, Any]]:
    fc = _get_firecrawl()
    if fc is None or _firecrawl_disabled:
        return None
    formats = ["markdown", "links"] + (["images"] if with_images else [])
    doc = _pydantic_to_dict(_retry(fc.scrape, url, formats=formats))
    if not isinstance(doc, dict) or not doc.get("markdown"):
        return None
    meta = doc.get("metadata") or {}
    return {
        "url": url,
        "title": _pick(meta, ["title", "og_title"]),
        "content": doc["markdown"],
        "links": [(link, link) for link in doc.get("links") or [] if isinstance(link, str)],
        "images": [{"url": img, "alt": ""} for img in doc.get("images") or [] if isinstance(img, str)],
        "date": _pick(meta, ["published_time", "modified_time"]) or None,
    }


def _http_read(url: str, with_images: bool) -> Dict[str, Any]:
    resp = httpx.get(url, headers={"User-Agent": USER_AGENT}, timeout=HTTP_TIMEOUT, follow_redirects=True)
    resp.raise_for_status()
    soup = BeautifulSoup(resp.text, "html.parser")
    for tag in soup(["script", "style", "noscript", "nav", "footer", "header", "form"]):
        tag.decompose()
    root = soup.find("article") or soup.find("main") or soup.body or soup
    paragraphs = [p.get_text(" ", strip=True) for p in root.find_all(["h1", "h2", "h3", "p", "li", "pre", "td"])]
    content = "\n\n".join(p for p in paragraphs if p) or root.get_text("\n", strip=True)

    links = []
    for a in root.find_all("a", href=True):
        href = urljoin(str(resp.url), a["href"])
        if href.startswith("http"):
            links.append((a.get_text(" ", strip=True), href))
    images = []
    if with_images:
        for img in root.find_all("img", src=True):
            images.append({"url": urljoin(str(resp.url), img["src"]), "alt": img.get("alt", "")})
    date = None
    meta = soup.find("meta", attrs={"property": "article:published_time"})
    if meta and meta.get("content"):
        date = meta["content"]
    return {
        "url": url,
        "title": soup.title.get_text(strip=True) if soup.title else "",
        "content": content,
        "links": links,
        "images": images,
        "date": date or resp.headers.get("last-modified"),
    }


def read_url(url: str, with_images: bool = False) -> Dict[str, Any]:
    """Fetch *url* and return ``{url, title, content, links, images, date}``.

    Firecrawl scrape when available, otherwise a plain fetch parsed with
    BeautifulSoup. Raises when the page cannot be read or is empty.
    """
    try:
        page = _firecrawl_read(url, with_images)
        if page:
            return page
    except Exception as exc:
        logger.warning("Firecrawl scrape failed for %s: %s – fetching directly", url, exc)
    page = _http_read(url, with_images)
    if not page["content"].strip():
        raise ValueError(f"No readable content at {url}")
    return page


def get_last_modified(url: str) -> Optional[str]:
    """Best-effort ISO timestamp from the ``Last-Modified`` header."""
    try:
        resp = httpx.head(url, headers={"User-Agent": USER_AGENT}, timeout=10.0, follow_redirects=True)
        header = resp.headers.get("last-modified")
        if not header:
            return None
        return parsedate_to_datetime(header).isoformat()
    except Exception as exc:
        logger.debug("Last-Modified lookup failed for %s: %s", url, exc)
        return None
