"""URL registry, ranking and link helpers.

The registry is a plain ``Dict[str, SearchSnippet]`` keyed by normalized
URL. Ranking is recomputed from scratch every step and never stored.
"""

import logging
import math
import re
from collections import Counter
from typing import Dict, Iterable, List, Optional, Sequence
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

from .models import BoostedSearchSnippet, SearchSnippet

logger = logging.getLogger(__name__)

TRACKING_PARAMS = {"fbclid", "gclid", "dclid", "msclkid", "mc_cid", "mc_eid", "ref_src", "_ga"}
DEFAULT_PORTS = {"http": 80, "https": 443}

FREQ_FACTOR = 0.5
HOSTNAME_BOOST_FACTOR = 0.5
BOOST_HOSTNAME_MULTIPLIER = 2.0
PATH_BOOST_FACTOR = 0.4
PATH_DECAY = 0.8
TEXT_BOOST_FACTOR = 0.8

_URL_RE = re.compile(r"https?://[^\s<>\"'`\)\]]+", re.IGNORECASE)
_MD_LINK_RE = re.compile(r"\[([^\]]*)\]\((https?://[^)\s]+)\)")
_TOKEN_RE = re.compile(r"\w+", re.UNICODE)


# ── normalization ────────────────────────────────────────────────────

def normalize_url(url: str) -> Optional[str]:
    """Canonical form of an http(s) URL, or ``None`` if *url* is not one."""
    if not url or not isinstance(url, str):
        return None
    url = url.strip()
    try:
        parsed = urlparse(url)
        port = parsed.port
    except ValueError:
        return None
    scheme = parsed.scheme.lower()
    if scheme not in DEFAULT_PORTS or not parsed.hostname:
        return None

    host = parsed.hostname.lower()
    if host.startswith("www."):
        host = host[4:]
    if "." not in host and host != "localhost":
        return None
    netloc = host if port in (None, DEFAULT_PORTS[scheme]) else f"{host}:{port}"

    path = re.sub(r"/{2,}", "/", parsed.path or "")
    if path.endswith("/"):
        path = path.rstrip("/")

    query = [
        (k, v)
        for k, v in parse_qsl(parsed.query, keep_blank_values=True)
        if not k.lower().startswith("utm_") and k.lower() not in TRACKING_PARAMS
    ]
    query.sort()
    return urlunparse((scheme, netloc, path, "", urlencode(query), ""))


def get_hostname(url: str) -> str:
    try:
        host = urlparse(url).hostname or ""
    except ValueError:
        return ""
    return host[4:] if host.startswith("www.") else host


def _tokens(text: str) -> List[str]:
    return [t.lower() for t in _TOKEN_RE.findall(text or "") if len(t) > 1]


# ── registry ─────────────────────────────────────────────────────────

def add_to_all_urls(
    snippet: SearchSnippet,
    registry: Dict[str, SearchSnippet],
    weight_delta: float = 1,
) -> int:
    """Insert or merge *snippet*. Returns 1 for a new URL, 0 for a merge or an invalid URL."""
    url = normalize_url(snippet.url)
    if not url:
        return 0
    existing = registry.get(url)
    if existing is None:
        registry[url] = snippet.model_copy(update={"url": url, "weight": weight_delta})
        return 1

    existing.weight += weight_delta
    if snippet.title and not existing.title:
        existing.title = snippet.title
    if snippet.description and snippet.description not in existing.description:
        existing.description = f"{existing.description} {snippet.description}".strip()
    if snippet.date and not existing.date:
        existing.date = snippet.date
    return 0


def filter_urls(
    registry: Dict[str, SearchSnippet],
    visited: Iterable[str],
    bad_hostnames: Sequence[str] = (),
    only_hostnames: Sequence[str] = (),
) -> List[SearchSnippet]:
    visited_set = set(visited)
    bad = {h.lower() for h in bad_hostnames}
    only = {h.lower() for h in only_hostnames}
    candidates = []
    for url, snippet in registry.items():
        if url in visited_set:
            continue
        host = get_hostname(url)
        if host in bad:
            continue
        if only and host not in only:
            continue
        candidates.append(snippet)
    return candidates


def rank_urls(
    candidates: List[SearchSnippet],
    question: str = "",
    boost_hostnames: Sequence[str] = (),
) -> List[BoostedSearchSnippet]:
    """Score candidates and sort them, best first.

    ``score = freq_boost + hostname_boost + path_boost + text_boost`` where
    the first three reward URLs that keep showing up (directly, by host or
    by path prefix) and the last is token overlap between the question and
    the snippet text.
    """
    if not candidates:
        return []
    boost = {h.lower() for h in boost_hostnames}
    question_tokens = set(_tokens(question))

    host_counts: Counter = Counter()
    path_counts: Counter = Counter()
    for snippet in candidates:
        host = get_hostname(snippet.url)
        host_counts[host] += snippet.weight
        for prefix in _path_prefixes(snippet.url):
            path_counts[prefix] += snippet.weight
    total = sum(s.weight for s in candidates) or 1

    ranked: List[BoostedSearchSnippet] = []
    for snippet in candidates:
        host = get_hostname(snippet.url)
        freq_boost = snippet.weight / total * FREQ_FACTOR * math.log2(1 + len(candidates))
        hostname_boost = host_counts[host] / total * HOSTNAME_BOOST_FACTOR
        if host in boost:
            hostname_boost = (hostname_boost + HOSTNAME_BOOST_FACTOR) * BOOST_HOSTNAME_MULTIPLIER
        path_boost = sum(
            path_counts[prefix] / total * PATH_BOOST_FACTOR * (PATH_DECAY ** i)
            for i, prefix in enumerate(_path_prefixes(snippet.url))
        )
        text_boost = 0.0
        if question_tokens:
            overlap = question_tokens & set(_tokens(f"{snippet.title} {snippet.description}"))
            text_boost = len(overlap) / len(question_tokens) * TEXT_BOOST_FACTOR

        ranked.append(BoostedSearchSnippet(
            **{k: getattr(snippet, k) for k in SearchSnippet.model_fields},
            freq_boost=freq_boost,
            hostname_boost=hostname_boost,
            path_boost=path_boost,
            text_boost=text_boost,
            score=freq_boost + hostname_boost + path_boost + text_boost,
        ))
    ranked.sort(key=lambda s: s.score, reverse=True)
    return ranked


def _path_prefixes(url: str) -> List[str]:
    host = get_hostname(url)
    parts = [p for p in urlparse(url).path.split("/") if p]
    return [host + "/" + "/".join(parts[: i + 1]) for i in range(len(parts))]


def keep_k_per_hostname(scored: List[BoostedSearchSnippet], k: int) -> List[BoostedSearchSnippet]:
    """Cap entries per hostname at *k*, preserving order."""
    counts: Counter = Counter()
    kept = []
    for s in scored:
        host = get_hostname(s.url)
        if counts[host] < k:
            counts[host] += 1
            kept.append(s)
    return kept


def sort_select_urls(scored: List[BoostedSearchSnippet], limit: int = 20) -> List[BoostedSearchSnippet]:
    """Top *limit* entries with ``merged`` filled; this is the list visit indices refer to."""
    top = sorted(scored, key=lambda s: s.score, reverse=True)[:limit]
    return [
        s.model_copy(update={"merged": " ".join(p for p in (s.title, s.description) if p)})
        for s in top
    ]


# ── text helpers ─────────────────────────────────────────────────────

def extract_urls_with_description(text: str, context_window: int = 50) -> List[SearchSnippet]:
    """Find URLs in free text; the words around each become its description."""
    snippets: List[SearchSnippet] = []
    seen = set()
    for match in _URL_RE.finditer(text or ""):
        raw = match.group(0).rstrip(".,;:!?")
        url = normalize_url(raw)
        if not url or url in seen:
            continue
        seen.add(url)
        before = text[max(0, match.start() - context_window) : match.start()]
        after = text[match.end() : match.end() + context_window]
        description = _URL_RE.sub("", f"{before} {after}")
        description = re.sub(r"\s+", " ", description).strip()
        snippets.append(SearchSnippet(url=url, title="", description=description, weight=1))
    return snippets


def fix_bad_url_md_links(markdown: str, registry: Dict[str, SearchSnippet]) -> str:
    """Replace ``[https://x](https://x)`` style links with ``[title - host](https://x)``."""
    def _repl(m: "re.Match[str]") -> str:
        text, url = m.group(1).strip(), m.group(2)
        if text and not text.startswith(("http://", "https://")) and text != url:
            return m.group(0)
        entry = registry.get(normalize_url(url) or "")
        host = get_hostname(url)
        label = f"{entry.title} - {host}" if entry and entry.title else host
        return f"[{label}]({url})"

    return _MD_LINK_RE.sub(_repl, markdown)
