"""Tests for TavilySearchClient.

Tests cover:
1. Client initialization (with/without API key, search depth)
2. Payload building
3. Response parsing into CitationResult
4. Error mapping (401, 429, 5xx, 4xx, transport errors, invalid JSON)
"""

import json

import httpx
import pytest

from deepresearch.errors import AuthenticationError, RateLimitError, SearchError
from deepresearch.research.providers.tavily import (
    MAX_RESULTS_LIMIT,
    TAVILY_API_BASE_URL,
    TavilySearchClient,
)

SAMPLE_RESPONSE = {
    "query": "event sourcing",
    "results": [
        {
            "title": "Event Sourcing",
            "url": "https://martinfowler.com/eaaDev/EventSourcing.html",
            "content": "Capture all changes to an application state as a sequence of events.",
            "raw_content": "Full article text about event sourcing.",
            "score": 0.92,
            "published_date": "2005-12-12",
        },
        {
            "title": "",
            "url": "https://docs.example.org/es",
            "content": "Snippet only.",
            "score": 1.7,
        },
        {
            "title": "No link",
            "url": "",
            "content": "Dropped because it has no URL.",
            "score": 0.5,
        },
    ],
}


def _client_with(handler, **kwargs) -> TavilySearchClient:
    transport = httpx.MockTransport(handler)
    return TavilySearchClient(
        api_key="tvly-test-key",
        http_client=httpx.AsyncClient(transport=transport),
        **kwargs,
    )


class TestTavilySearchClientInit:
    """Tests for client initialization."""

    def test_init_with_api_key(self):
        client = TavilySearchClient(api_key="tvly-test-key")
        assert client._api_key == "tvly-test-key"
        assert client._base_url == TAVILY_API_BASE_URL
        assert client.search_depth == "advanced"

    def test_init_with_env_var(self, monkeypatch):
        """Test initialization reads from TAVILY_API_KEY env var."""
        monkeypatch.setenv("TAVILY_API_KEY", "tvly-env-key")
        assert TavilySearchClient()._api_key == "tvly-env-key"

    def test_init_without_api_key_raises(self, monkeypatch):
        monkeypatch.delenv("TAVILY_API_KEY", raising=False)
        with pytest.raises(ValueError, match="Tavily API key required"):
            TavilySearchClient()

    def test_invalid_search_depth_raises(self):
        with pytest.raises(ValueError, match="Invalid search_depth"):
            TavilySearchClient(api_key="tvly-test-key", search_depth="deepest")

    def test_max_results_clamped(self):
        assert TavilySearchClient(api_key="k", max_results=100).max_results == MAX_RESULTS_LIMIT
        assert TavilySearchClient(api_key="k", max_results=0).max_results == 1


class TestTavilySearch:
    """Tests for search requests and response parsing."""

    @pytest.mark.asyncio
    async def test_payload_contents(self):
        """The request carries the query, depth and domain filters."""
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["payload"] = json.loads(request.content)
            return httpx.Response(200, json={"results": []})

        client = _client_with(
            handler,
            max_results=5,
            search_depth="basic",
            include_domains=["martinfowler.com"],
            exclude_domains=["pinterest.com"],
        )
        await client.search("event sourcing")

        assert seen["url"] == f"{TAVILY_API_BASE_URL}/search"
        payload = seen["payload"]
        assert payload["query"] == "event sourcing"
        assert payload["api_key"] == "tvly-test-key"
        assert payload["max_results"] == 5
        assert payload["search_depth"] == "basic"
        assert payload["include_domains"] == ["martinfowler.com"]
        assert payload["exclude_domains"] == ["pinterest.com"]

    @pytest.mark.asyncio
    async def test_domain_filters_omitted_when_empty(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["payload"] = json.loads(request.content)
            return httpx.Response(200, json={"results": []})

        await _client_with(handler).search("cqrs")

        assert "include_domains" not in seen["payload"]
        assert "exclude_domains" not in seen["payload"]

    @pytest.mark.asyncio
    async def test_parses_results(self):
        """Results map to citations; entries without a URL are discarded."""
        client = _client_with(lambda request: httpx.Response(200, json=SAMPLE_RESPONSE))

        citations = await client.search("event sourcing")

        assert len(citations) == 2
        first, second = citations
        assert first.title == "Event Sourcing"
        assert first.content == "Full article text about event sourcing."
        assert first.snippet.startswith("Capture all changes")
        assert first.relevance_score == pytest.approx(0.92)
        assert first.domain == "martinfowler.com"
        assert first.metadata["provider"] == "tavily"
        assert first.metadata["published_date"] == "2005-12-12"

        assert second.title == "Untitled"
        assert second.content == "Snippet only."
        assert second.relevance_score == 1.0

    @pytest.mark.asyncio
    async def test_missing_results_key(self):
        client = _client_with(lambda request: httpx.Response(200, json={"query": "x"}))
        assert await client.search("x") == []


class TestTavilyErrors:
    """Tests for HTTP and transport error mapping."""

    @pytest.mark.asyncio
    async def test_401_raises_authentication_error(self):
        client = _client_with(lambda request: httpx.Response(401, json={"error": "bad key"}))

        with pytest.raises(AuthenticationError) as exc_info:
            await client.search("q")

        assert exc_info.value.retryable is False
        assert exc_info.value.provider == "tavily"

    @pytest.mark.asyncio
    async def test_429_raises_rate_limit_with_retry_after(self):
        client = _client_with(
            lambda request: httpx.Response(429, headers={"Retry-After": "12"}, json={})
        )

        with pytest.raises(RateLimitError) as exc_info:
            await client.search("q")

        assert exc_info.value.retry_after == 12.0
        assert exc_info.value.retryable is True

    @pytest.mark.asyncio
    async def test_429_with_unparseable_retry_after(self):
        client = _client_with(
            lambda request: httpx.Response(429, headers={"Retry-After": "soon"}, json={})
        )

        with pytest.raises(RateLimitError) as exc_info:
            await client.search("q")

        assert exc_info.value.retry_after is None

    @pytest.mark.asyncio
    async def test_500_is_retryable(self):
        client = _client_with(
            lambda request: httpx.Response(503, json={"error": "maintenance"})
        )

        with pytest.raises(SearchError, match="maintenance") as exc_info:
            await client.search("q")

        assert exc_info.value.retryable is True

    @pytest.mark.asyncio
    async def test_400_is_not_retryable(self):
        client = _client_with(lambda request: httpx.Response(400, text="bad request"))

        with pytest.raises(SearchError, match="API error 400") as exc_info:
            await client.search("q")

        assert exc_info.value.retryable is False

    @pytest.mark.asyncio
    async def test_invalid_json(self):
        client = _client_with(lambda request: httpx.Response(200, text="<html>oops</html>"))

        with pytest.raises(SearchError, match="invalid JSON"):
            await client.search("q")

    @pytest.mark.asyncio
    async def test_transport_error_is_retryable(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(SearchError, match="request failed") as exc_info:
            await _client_with(handler).search("q")

        assert exc_info.value.retryable is True
        assert isinstance(exc_info.value.original_error, httpx.ConnectError)
