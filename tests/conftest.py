import pytest

from harvest_engine.config import cfg
from harvest_engine.db.init_db import init_db
from harvest_engine.models import FetchResult, ResultType, SearchResult
from harvest_engine.search_provider import SearchProvider


@pytest.fixture(autouse=True)
def isolated_env(tmp_path, monkeypatch):
    """Fresh database and storage dir per test; no outbound alert pushes."""
    db_path = tmp_path / "harvest.db"
    monkeypatch.setattr(cfg, "db_path", db_path)
    monkeypatch.setattr(cfg, "storage_dir", tmp_path / "storage")
    monkeypatch.setattr(cfg, "bloom_expected_elements", 10_000)
    monkeypatch.setattr(cfg, "telegram_bot_token", "")
    monkeypatch.setattr(cfg, "telegram_chat_id", "")
    monkeypatch.setattr(cfg, "search_result_types", ["web"])
    init_db(db_path)
    return tmp_path


class FakeProvider(SearchProvider):
    """In-memory provider: query -> list of (url, title)."""

    name = "fake"

    def __init__(self, results=None, error=None):
        self.results = results or {}
        self.error = error
        self.calls = []

    def search(self, query, country=None, language=None, result_type=ResultType.WEB):
        self.calls.append((query, country, ResultType(result_type)))
        if self.error:
            raise self.error
        return [SearchResult(url=u, title=t) for u, t in self.results.get(query, [])]


class FakeFetcher:
    """Returns canned pages keyed by URL; unknown URLs come back as 404."""

    def __init__(self, pages=None):
        self.pages = pages or {}
        self.requested = []

    def fetch_many(self, urls, on_result=None):
        out = []
        for url in urls:
            self.requested.append(url)
            body = self.pages.get(url)
            if body is None:
                res = FetchResult(url=url, http_status=404, error="HTTP 404")
            else:
                res = FetchResult(url=url, content=body, http_status=200,
                                  content_type="text/html", success=True)
            if on_result:
                on_result(res)
            out.append(res)
        return out

    def fetch(self, url):
        return self.fetch_many([url])[0]


def pad_html(body: str, title: str = "") -> str:
    """Wrap body in HTML padded past the 2 KB page minimum."""
    head = f"<title>{title}</title>" if title else ""
    filler = "<p>" + ("lorem ipsum dolor sit amet " * 100) + "</p>"
    return f"<html><head>{head}</head><body>{body}{filler}</body></html>"


@pytest.fixture
def fake_provider():
    return FakeProvider()


@pytest.fixture
def fake_fetcher():
    return FakeFetcher()
