"""Search clients implementing the SearchClient protocol.

The engine depends only on the protocol; these adapters are optional.

Supported providers:
- TavilySearchClient: Web search via Tavily API
"""

from deepresearch.research.providers.tavily import TavilySearchClient

__all__ = ["TavilySearchClient"]
