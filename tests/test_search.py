"""Search provider selection, result normalisation and page reading."""

import httpx
import pytest

from deepsearch import search as search_module
from deepsearch.models import SERPQuery
from deepsearch.search import (
    SearchUnauthorizedError,
    _normalise_firecrawl_search,
    _normalise_item,
    read_url as real_read_url,
    search as real_search,
)

PAGE = """
<html>
  <head>
    <title>Paris facts</title>
    <meta property="article:published_time" content="2024-05-01T10:00:00Z">
    <script>var tracking = 1;</script>
  </head>
  <body>
    <nav>Home | About</nav>
    <article>
      <h1>Paris</h1>
      <p>Paris is the capital of France.</p>
      <p>See the <a href="/wiki/Seine">Seine</a> article.</p>
      <img src="/img/eiffel.jpg" alt="Eiffel tower">
    </article>
  </body>
</html>
"""


# ---------------------------------------------------------------------------
# Normalisation
# ---------------------------------------------------------------------------


class TestNormalise:
    def test_ddg_item(self):
        item = _normalise_item({"href": "https://a.com", "title": "A", "body": "About A"})
        assert item == {"title": "A", "url": "https://a.com", "description": "About A", "date": None}

    def test_item_without_url_is_dropped(self):
        assert _normalise_item({"title": "nothing"}) is None

    def test_firecrawl_buckets_are_flattened(self):
        result = {
            "web": [{"url": "https://a.com", "title": "A", "description": "a"}],
            "news": [{"url": "https://b.com", "title": "B", "snippet": "b", "date": "2 days ago"}],
        }
        items = _normalise_firecrawl_search(result)
        assert [i["url"] for i in items] == ["https://a.com", "https://b.com"]
        assert items[1]["date"] == "2 days ago"


# ---------------------------------------------------------------------------
# Provider selection
# ---------------------------------------------------------------------------


class TestSearch:
    def test_explicit_provider_unauthorized(self, monkeypatch):
        def _serper(query, num):
            raise RuntimeError("401 Unauthorized")

        monkeypatch.setattr(search_module, "_serper_search", _serper)
        with pytest.raises(SearchUnauthorizedError):
            real_search(SERPQuery(q="paris"), "serper")

    def test_explicit_provider_other_errors_propagate(self, monkeypatch):
        def _brave(query, num):
            raise RuntimeError("500 Server Error")

        monkeypatch.setattr(search_module, "_brave_search", _brave)
        with pytest.raises(RuntimeError):
            real_search(SERPQuery(q="paris"), "brave")

    def test_unknown_provider(self):
        with pytest.raises(ValueError):
            real_search(SERPQuery(q="paris"), "altavista")

    def test_auto_without_firecrawl_key_uses_ddg(self, monkeypatch):
        monkeypatch.delenv("FIRECRAWL_API_KEY", raising=False)
        monkeypatch.setattr(search_module, "_ddg_search", lambda query, num: [{"url": "https://ddg.example.com"}])
        assert real_search(SERPQuery(q="paris"), "auto") == [{"url": "https://ddg.example.com"}]

    def test_auto_falls_back_and_disables_firecrawl_on_auth_error(self, monkeypatch):
        calls = []

        def _firecrawl(query, num):
            calls.append(query.q)
            raise RuntimeError("401 Unauthorized")

        monkeypatch.setattr(search_module, "_firecrawl_disabled", False)
        monkeypatch.setattr(search_module, "_get_firecrawl", lambda: object())
        monkeypatch.setattr(search_module, "_firecrawl_search", _firecrawl)
        monkeypatch.setattr(search_module, "_ddg_search", lambda query, num: [{"url": "https://ddg.example.com"}])

        assert real_search(SERPQuery(q="paris"), "auto") == [{"url": "https://ddg.example.com"}]
        assert real_search(SERPQuery(q="lyon"), "auto") == [{"url": "https://ddg.example.com"}]
        assert calls == ["paris"]


# ---------------------------------------------------------------------------
# Reading
# ---------------------------------------------------------------------------


class TestReadUrl:
    def test_plain_fetch_extracts_content_links_and_images(self, monkeypatch):
        def _get(url, **kwargs):
            return httpx.Response(200, text=PAGE, request=httpx.Request("GET", url))

        monkeypatch.setattr(search_module, "_firecrawl_read", lambda url, with_images: None)
        monkeypatch.setattr(httpx, "get", _get)
        page = real_read_url("https://example.com/paris", with_images=True)

        assert page["title"] == "Paris facts"
        assert "Paris is the capital of France." in page["content"]
        assert "tracking" not in page["content"]
        assert "Home" not in page["content"]
        assert ("Seine", "https://example.com/wiki/Seine") in page["links"]
        assert page["images"] == [{"url": "https://example.com/img/eiffel.jpg", "alt": "Eiffel tower"}]
        assert page["date"] == "2024-05-01T10:00:00Z"

    def test_http_errors_propagate(self, monkeypatch):
        def _get(url, **kwargs):
            return httpx.Response(404, text="missing", request=httpx.Request("GET", url))

        monkeypatch.setattr(search_module, "_firecrawl_read", lambda url, with_images: None)
        monkeypatch.setattr(httpx, "get", _get)
        with pytest.raises(httpx.HTTPStatusError):
            real_read_url("https://example.com/missing")
