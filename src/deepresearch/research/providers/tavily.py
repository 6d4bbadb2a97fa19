"""Tavily search client for the research supervisor.

Implements the SearchClient protocol over the Tavily Search API. Each call
makes a single request; retries and backoff belong to the supervisor, which
reads the ``retryable`` flag on the raised SearchError.

Tavily API documentation: https://docs.tavily.com/

Example usage:
    client = TavilySearchClient(api_key="tvly-...")
    citations = await client.search("event sourcing")
"""

import logging
import os
from typing import Any, Optional

import httpx
from pydantic import ValidationError as PydanticValidationError

from deepresearch.errors import AuthenticationError, RateLimitError, SearchError
from deepresearch.research.models import CitationResult

logger = logging.getLogger(__name__)

PROVIDER_NAME = "tavily"
TAVILY_API_BASE_URL = "https://api.tavily.com"
TAVILY_SEARCH_ENDPOINT = "/search"
DEFAULT_TIMEOUT = 30.0
DEFAULT_MAX_RESULTS = 10
MAX_RESULTS_LIMIT = 20

VALID_SEARCH_DEPTHS = frozenset(["basic", "advanced"])


class TavilySearchClient:
    """Tavily Search API client returning CitationResult evidence.

    Attributes:
        max_results: Results requested per query (clamped to 20)
        search_depth: "basic" or "advanced"
        include_domains: Optional allow-list passed to Tavily
        exclude_domains: Optional deny-list passed to Tavily
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        *,
        base_url: str = TAVILY_API_BASE_URL,
        timeout: float = DEFAULT_TIMEOUT,
        max_results: int = DEFAULT_MAX_RESULTS,
        search_depth: str = "advanced",
        include_domains: Optional[list[str]] = None,
        exclude_domains: Optional[list[str]] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        """Initialize the client.

        Args:
            api_key: Tavily API key. If not provided, reads TAVILY_API_KEY.
            base_url: API base URL
            timeout: Request timeout in seconds
            max_results: Results requested per query
            search_depth: "basic" or "advanced"
            include_domains: Restrict results to these domains
            exclude_domains: Drop results from these domains
            http_client: Shared AsyncClient; a short-lived one is created per
                request when omitted

        Raises:
            ValueError: If no API key is available or search_depth is unknown
        """
        self._api_key = api_key or os.environ.get("TAVILY_API_KEY")
        if not self._api_key:
            raise ValueError(
                "Tavily API key required. Provide via api_key parameter "
                "or TAVILY_API_KEY environment variable."
            )
        if search_depth not in VALID_SEARCH_DEPTHS:
            raise ValueError(
                f"Invalid search_depth: {search_depth!r}. "
                f"Must be one of: {sorted(VALID_SEARCH_DEPTHS)}"
            )
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._http_client = http_client
        self.max_results = max(1, min(max_results, MAX_RESULTS_LIMIT))
        self.search_depth = search_depth
        self.include_domains = include_domains or []
        self.exclude_domains = exclude_domains or []

    def _build_payload(self, query: str) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "api_key": self._api_key,
            "query": query,
            "max_results": self.max_results,
            "search_depth": self.search_depth,
            "include_answer": False,
            "include_raw_content": "text",
        }
        if self.include_domains:
            payload["include_domains"] = self.include_domains
        if self.exclude_domains:
            payload["exclude_domains"] = self.exclude_domains
        return payload

    async def search(self, query: str) -> list[CitationResult]:
        """Run one search.

        Raises:
            AuthenticationError: On HTTP 401 (never retried)
            RateLimitError: On HTTP 429, carrying Retry-After when present
            SearchError: On other HTTP errors (retryable when >= 500) and on
                transport failures (retryable)
        """
        url = f"{self._base_url}{TAVILY_SEARCH_ENDPOINT}"
        payload = self._build_payload(query)
        try:
            if self._http_client is not None:
                response = await self._http_client.post(url, json=payload, timeout=self._timeout)
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await client.post(url, json=payload)
        except httpx.HTTPError as exc:
            raise SearchError(
                f"Tavily request failed: {exc}",
                provider=PROVIDER_NAME,
                retryable=True,
                original_error=exc,
            ) from exc

        self._raise_for_status(response)
        try:
            data = response.json()
        except ValueError as exc:
            raise SearchError(
                "Tavily returned invalid JSON",
                provider=PROVIDER_NAME,
                retryable=True,
                original_error=exc,
            ) from exc
        citations = self._parse_response(data)
        logger.debug("Tavily returned %d results for %r", len(citations), query[:60])
        return citations

    def _raise_for_status(self, response: httpx.Response) -> None:
        if response.status_code == 401:
            raise AuthenticationError("Invalid API key", provider=PROVIDER_NAME)
        if response.status_code == 429:
            raise RateLimitError(
                provider=PROVIDER_NAME, retry_after=self._parse_retry_after(response)
            )
        if response.status_code >= 400:
            raise SearchError(
                f"API error {response.status_code}: {self._extract_error_message(response)}",
                provider=PROVIDER_NAME,
                retryable=response.status_code >= 500,
            )

    def _parse_retry_after(self, response: httpx.Response) -> Optional[float]:
        retry_after = response.headers.get("Retry-After")
        if retry_after:
            try:
                return float(retry_after)
            except ValueError:
                return None
        return None

    def _extract_error_message(self, response: httpx.Response) -> str:
        try:
            data = response.json()
        except ValueError:
            return response.text[:200] if response.text else "Unknown error"
        if isinstance(data, dict):
            return str(data.get("error", data.get("message", response.text[:200])))
        return response.text[:200]

    def _parse_response(self, data: dict[str, Any]) -> list[CitationResult]:
        """Map Tavily results to citations, discarding entries without a URL."""
        citations: list[CitationResult] = []
        for result in data.get("results", []):
            snippet = result.get("content") or ""
            try:
                citations.append(
                    CitationResult(
                        url=result.get("url") or "",
                        title=result.get("title") or "Untitled",
                        snippet=snippet,
                        content=result.get("raw_content") or snippet,
                        relevance_score=result.get("score") or 0.0,
                        metadata={
                            "provider": PROVIDER_NAME,
                            "published_date": result.get("published_date"),
                        },
                    )
                )
            except PydanticValidationError as exc:
                logger.warning("Discarding malformed Tavily result: %s", exc.errors()[0]["msg"])
        return citations
