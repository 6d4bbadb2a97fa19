"""Deep research orchestration.

This package provides the phase state machine (DeepResearchEngine), the
research supervisor, quality analysis, research strategies, context-aware
chunking and hierarchical synthesis.
"""

from deepresearch.research.collaborators import (
    CompletionClient,
    CompletionResponse,
    KnowledgeStore,
    SearchClient,
)
from deepresearch.research.engine import DeepResearchEngine
from deepresearch.research.knowledge import FileStorageBackend, InMemoryKnowledgeStore
from deepresearch.research.models import (
    CitationResult,
    OutputKind,
    Priority,
    Progress,
    ResearchConfig,
    ResearchDepth,
    ResearchMetrics,
    ResearchPhase,
    ResearchQuestion,
    ResearchResult,
    UserProfile,
)
from deepresearch.research.strategies import (
    ComprehensiveStrategy,
    ResearchStrategy,
    StrategyRegistry,
    TechnicalStrategy,
)

__all__ = [
    "CitationResult",
    "CompletionClient",
    "CompletionResponse",
    "ComprehensiveStrategy",
    "DeepResearchEngine",
    "FileStorageBackend",
    "InMemoryKnowledgeStore",
    "KnowledgeStore",
    "OutputKind",
    "Priority",
    "Progress",
    "ResearchConfig",
    "ResearchDepth",
    "ResearchMetrics",
    "ResearchPhase",
    "ResearchQuestion",
    "ResearchResult",
    "ResearchStrategy",
    "SearchClient",
    "StrategyRegistry",
    "TechnicalStrategy",
    "UserProfile",
]
