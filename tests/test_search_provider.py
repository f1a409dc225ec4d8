import pytest
import requests

from harvest_engine import search_provider as sp
from harvest_engine.models import ResultType


class _Resp:
    def __init__(self, status_code=200, data=None, raw=None):
        self.status_code = status_code
        self._data = data
        self._raw = raw

    def json(self):
        if self._raw is not None:
            raise ValueError("not json")
        return self._data


@pytest.fixture
def fake_get(monkeypatch):
    calls = []
    box = {"resp": _Resp(200, {})}

    def _get(url, params=None, timeout=None):
        calls.append(params)
        if isinstance(box["resp"], Exception):
            raise box["resp"]
        return box["resp"]

    monkeypatch.setattr(sp.requests, "get", _get)
    return box, calls


def test_web_results_parsed(fake_get):
    box, calls = fake_get
    box["resp"] = _Resp(200, {"organic_results": [
        {"link": "https://clinic-a.com", "title": "Clinic A"},
        {"title": "no link"},
        "garbage",
        {"link": "https://clinic-b.com"},
    ]})
    provider = sp.SerpApiProvider(api_key="k", num_results=20)
    results = provider.search("dentists in us", country="US", language="en")

    assert [(r.url, r.title) for r in results] == [
        ("https://clinic-a.com", "Clinic A"), ("https://clinic-b.com", ""),
    ]
    params = calls[0]
    assert params["q"] == "dentists in us"
    assert params["gl"] == "us"
    assert params["hl"] == "en"
    assert params["num"] == 20
    assert "tbm" not in params


def test_places_results_use_website(fake_get):
    box, calls = fake_get
    box["resp"] = _Resp(200, {"local_results": {"places": [
        {"title": "Smile Dental", "website": "https://smile.com"},
    ]}})
    results = sp.SerpApiProvider(api_key="k").search("dentists", result_type=ResultType.PLACES)
    assert results[0].url == "https://smile.com"
    assert results[0].title == "Smile Dental"
    assert calls[0]["tbm"] == "lcl"


@pytest.mark.parametrize("status,exc", [
    (401, sp.ProviderAuthError),
    (403, sp.ProviderAuthError),
    (429, sp.ProviderRateLimitError),
    (500, sp.ProviderError),
])
def test_http_errors_map_to_taxonomy(fake_get, status, exc):
    box, _ = fake_get
    box["resp"] = _Resp(status, {"error": "something"} if status == 500 else {})
    with pytest.raises(exc):
        sp.SerpApiProvider(api_key="k").search("q")


def test_invalid_key_in_body(fake_get):
    box, _ = fake_get
    box["resp"] = _Resp(200, {"error": "Invalid API key. Your API key should be here"})
    with pytest.raises(sp.ProviderAuthError):
        sp.SerpApiProvider(api_key="k").search("q")


def test_no_results_is_empty_not_error(fake_get):
    box, _ = fake_get
    box["resp"] = _Resp(200, {"error": "Google hasn't returned any results for this query."})
    assert sp.SerpApiProvider(api_key="k").search("q") == []


def test_network_error_wrapped(fake_get):
    box, _ = fake_get
    box["resp"] = requests.ConnectionError("down")
    with pytest.raises(sp.ProviderError):
        sp.SerpApiProvider(api_key="k").search("q")


def test_non_json_body(fake_get):
    box, _ = fake_get
    box["resp"] = _Resp(502, raw="<html>bad gateway</html>")
    with pytest.raises(sp.ProviderError):
        sp.SerpApiProvider(api_key="k").search("q")


def test_missing_key_is_auth_error():
    with pytest.raises(sp.ProviderAuthError):
        sp.SerpApiProvider(api_key="").search("q")


def test_base_provider_is_abstract():
    with pytest.raises(NotImplementedError):
        sp.SearchProvider().search("q")
