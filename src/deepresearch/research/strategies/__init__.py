"""Research strategies and the registry that selects between them."""

import logging
from typing import Any, Optional

from deepresearch.research.collaborators import CompletionClient
from deepresearch.research.models import UserProfile
from deepresearch.research.strategies.base import ResearchStrategy
from deepresearch.research.strategies.comprehensive import ComprehensiveStrategy
from deepresearch.research.strategies.technical import TechnicalStrategy

logger = logging.getLogger(__name__)

TECHNICAL_PROFILE_MARKERS = ("software", "technical", "engineering")
TECHNICAL_QUERY_MARKERS = ("implement", "code", "architecture")


class StrategyRegistry:
    """Named strategies owned by one engine.

    Selection is technical when the profile domain or the query looks like
    software work, and falls back to the default strategy otherwise.
    """

    def __init__(self, default: str = ComprehensiveStrategy.name) -> None:
        self._strategies: dict[str, ResearchStrategy] = {}
        self.default = default

    def register(self, strategy: ResearchStrategy) -> None:
        self._strategies[strategy.name] = strategy

    def get(self, name: str) -> Optional[ResearchStrategy]:
        return self._strategies.get(name)

    def names(self) -> list[str]:
        return list(self._strategies)

    def select(self, query: str, profile: UserProfile) -> ResearchStrategy:
        domain = (profile.domain or "").lower()
        lowered = query.lower()
        technical = any(m in domain for m in TECHNICAL_PROFILE_MARKERS) or any(
            m in lowered for m in TECHNICAL_QUERY_MARKERS
        )
        if technical and TechnicalStrategy.name in self._strategies:
            return self._strategies[TechnicalStrategy.name]
        strategy = self._strategies.get(self.default)
        if strategy is None:
            if not self._strategies:
                raise LookupError("no research strategies registered")
            strategy = next(iter(self._strategies.values()))
        return strategy

    @classmethod
    def with_defaults(cls, completion: CompletionClient, **kwargs: Any) -> "StrategyRegistry":
        """Registry holding the comprehensive and technical strategies.

        ``kwargs`` are passed to each strategy constructor.
        """
        registry = cls()
        registry.register(ComprehensiveStrategy(completion, **kwargs))
        registry.register(TechnicalStrategy(completion, **kwargs))
        return registry


__all__ = [
    "ComprehensiveStrategy",
    "ResearchStrategy",
    "StrategyRegistry",
    "TechnicalStrategy",
]
