"""deepresearch - multi-phase deep research orchestration engine."""

from importlib.metadata import version, PackageNotFoundError

try:
    __version__ = version("deepresearch")
except PackageNotFoundError:
    # Package not installed (development mode without editable install)
    __version__ = "0.1.0"

from deepresearch.config import EngineSettings
from deepresearch.errors import (
    ClientError,
    CollaboratorError,
    ConfigurationError,
    DeepResearchError,
    SearchError,
    ValidationError,
)
from deepresearch.research import (
    CitationResult,
    DeepResearchEngine,
    ResearchConfig,
    ResearchDepth,
    ResearchResult,
    UserProfile,
)

__all__ = [
    "__version__",
    "CitationResult",
    "ClientError",
    "CollaboratorError",
    "ConfigurationError",
    "DeepResearchError",
    "DeepResearchEngine",
    "EngineSettings",
    "ResearchConfig",
    "ResearchDepth",
    "ResearchResult",
    "SearchError",
    "UserProfile",
    "ValidationError",
]
