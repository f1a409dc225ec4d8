"""Search providers: turn a query into candidate URLs.

The pipeline only needs `search(query, country, language, result_type)`
returning [SearchResult(url, title)]. SerpApiProvider is the production
implementation; tests pass in their own provider.

Errors that make every later discover task fail too (bad key, quota) are
raised as ProviderError subclasses so the discover stage can raise an
operator alert. Malformed individual results are logged and skipped.
"""

import logging

import requests

from harvest_engine.config import cfg
from harvest_engine.models import ResultType, SearchResult

logger = logging.getLogger(__name__)

_BASE = "https://serpapi.com/search.json"


class ProviderError(Exception):
    """Search provider failed in a way that is likely to repeat."""


class ProviderAuthError(ProviderError):
    pass


class ProviderRateLimitError(ProviderError):
    pass


class SearchProvider:
    name = "base"

    def search(self, query: str, country: str | None = None, language: str | None = None,
               result_type: ResultType = ResultType.WEB) -> list[SearchResult]:
        raise NotImplementedError


# result type -> (extra request params, response keys holding result lists)
_RESULT_TYPES: dict[ResultType, tuple[dict, tuple[str, ...]]] = {
    ResultType.WEB: ({}, ("organic_results",)),
    ResultType.NEWS: ({"tbm": "nws"}, ("news_results",)),
    ResultType.PLACES: ({"tbm": "lcl"}, ("local_results", "places_results")),
    ResultType.IMAGES: ({"tbm": "isch"}, ("images_results",)),
    ResultType.SHOPPING: ({"tbm": "shop"}, ("shopping_results",)),
}


def _result_to_search_result(item) -> SearchResult | None:
    if not isinstance(item, dict):
        return None
    url = item.get("link") or item.get("website") or item.get("product_link")
    if not url or not isinstance(url, str):
        return None
    title = item.get("title") or item.get("name") or item.get("source") or ""
    return SearchResult(url=url.strip(), title=str(title).strip())


def parse_results(data: dict, result_type: ResultType) -> list[SearchResult]:
    """Pull SearchResults out of a SerpApi JSON body; bad entries are skipped."""
    _, keys = _RESULT_TYPES[result_type]
    results = []
    for key in keys:
        items = data.get(key) or []
        if isinstance(items, dict):
            # local_results is sometimes {"places": [...]}
            items = items.get("places") or []
        if not isinstance(items, list):
            logger.warning("Unexpected %s shape in SerpApi response: %s", key, type(items).__name__)
            continue
        for item in items:
            sr = _result_to_search_result(item)
            if sr is None:
                logger.debug("Skipping malformed %s entry", key)
                continue
            results.append(sr)
    return results


class SerpApiProvider(SearchProvider):
    name = "serpapi"

    def __init__(self, api_key: str | None = None, engine: str | None = None,
                 num_results: int | None = None, timeout: int | None = None):
        self.api_key = cfg.serpapi_key if api_key is None else api_key
        self.engine = engine or cfg.search_engine
        self.num_results = num_results or cfg.search_num_results
        self.timeout = timeout or cfg.search_timeout

    def search(self, query: str, country: str | None = None, language: str | None = None,
               result_type: ResultType = ResultType.WEB) -> list[SearchResult]:
        if not self.api_key:
            raise ProviderAuthError("SerpApi key not configured")

        result_type = ResultType(result_type)
        extra, _ = _RESULT_TYPES[result_type]
        params = {
            "engine": self.engine,
            "q": query,
            "api_key": self.api_key,
            "num": self.num_results,
            **extra,
        }
        if country:
            params["gl"] = country.lower()
        language = language or cfg.search_language
        if language:
            params["hl"] = language

        try:
            r = requests.get(_BASE, params=params, timeout=self.timeout)
        except requests.RequestException as e:
            raise ProviderError(f"SerpApi request failed: {e}") from e

        if r.status_code in (401, 403):
            raise ProviderAuthError(f"SerpApi rejected the API key (HTTP {r.status_code})")
        if r.status_code == 429:
            raise ProviderRateLimitError("SerpApi rate limit reached (HTTP 429)")

        try:
            data = r.json()
        except ValueError:
            raise ProviderError(f"SerpApi returned non-JSON body (HTTP {r.status_code})")

        if not isinstance(data, dict):
            logger.warning("SerpApi returned %s instead of an object for %r", type(data).__name__, query)
            return []

        error = data.get("error")
        if error:
            if "api key" in str(error).lower():
                raise ProviderAuthError(f"SerpApi: {error}")
            if "run out of searches" in str(error).lower():
                raise ProviderRateLimitError(f"SerpApi: {error}")
            if r.status_code == 200:
                # "Google hasn't returned any results for this query."
                logger.info("SerpApi: %s (%s)", error, query)
                return []
            raise ProviderError(f"SerpApi error (HTTP {r.status_code}): {error}")

        if r.status_code != 200:
            raise ProviderError(f"SerpApi request failed with HTTP {r.status_code}")

        results = parse_results(data, result_type)
        logger.info("SerpApi %s search %r → %d results", result_type.value, query, len(results))
        return results


def get_provider() -> SearchProvider:
    return SerpApiProvider()
