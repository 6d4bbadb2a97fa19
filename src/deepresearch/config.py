"""
Engine configuration for deepresearch.

Supports configuration via:
1. Environment variables (highest priority)
2. TOML config file (deepresearch.toml)
3. Default values (lowest priority)

Environment variables:
- DEEPRESEARCH_CONFIG_FILE: Path to TOML config file
- DEEPRESEARCH_LOG_LEVEL: Logging level (DEBUG, INFO, WARNING, ERROR)
- DEEPRESEARCH_LOG_FORMAT: "human" or "structured"
- DEEPRESEARCH_RATE_LIMIT_DELAY: Seconds between normal search calls
- DEEPRESEARCH_DEEP_RATE_LIMIT_DELAY: Seconds between deep-dive search calls
- DEEPRESEARCH_MAX_ATTEMPTS: Search attempts per query before giving up
- DEEPRESEARCH_MAX_CONCURRENT_SEARCHES: Parallel searches per question
- DEEPRESEARCH_BATCH_SIZE: Questions researched concurrently per batch
- DEEPRESEARCH_BATCH_TIMEOUT: Seconds to wait for one batch
- DEEPRESEARCH_RETENTION_SECONDS: How long finished sessions stay queryable
- DEEPRESEARCH_CONTEXT_LIMIT: Prompt budget in tokens
- DEEPRESEARCH_RESULTS_DIR: Directory for persisted results (enables persistence)
- DEEPRESEARCH_PERSIST_RESULTS: Toggle result persistence (true/false)

The core engine never parses configuration on its own; front ends build an
EngineSettings (usually via from_env) and pass it to DeepResearchEngine.
"""

import os
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Dict, Any

try:
    import tomllib
except ImportError:
    import tomli as tomllib  # Python < 3.11 fallback

from deepresearch.errors import ConfigurationError


logger = logging.getLogger(__name__)

_VALID_LOG_FORMATS = {"human", "structured"}


def _parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"true", "1", "yes", "on"}


@dataclass
class SearchSettings:
    """Search fan-out, rate limiting and refinement settings.

    Attributes:
        rate_limit_delay: Seconds slept before each normal search call
        deep_rate_limit_delay: Seconds slept before each deep-dive search call
        max_attempts: Attempts per query (first call plus retries)
        retry_base_delay: Base of the exponential backoff in seconds
        retry_max_delay: Upper bound for a single backoff sleep
        min_queries: Fewer parsed queries than this triggers fallback padding
        max_queries: Upper bound on queries per question
        max_refinement_iterations: Gap-filling loop cap
        max_concurrent_searches: Simultaneous searches for one question
        breaker_failure_threshold: Consecutive failures that open the breaker
        breaker_recovery_timeout: Seconds before the breaker half-opens
    """

    rate_limit_delay: float = 0.5
    deep_rate_limit_delay: float = 1.0
    max_attempts: int = 3
    retry_base_delay: float = 1.0
    retry_max_delay: float = 30.0
    min_queries: int = 4
    max_queries: int = 6
    max_refinement_iterations: int = 5
    max_concurrent_searches: int = 4
    breaker_failure_threshold: int = 5
    breaker_recovery_timeout: float = 30.0

    @classmethod
    def from_toml_dict(cls, data: Dict[str, Any]) -> "SearchSettings":
        """Create settings from TOML dict (typically [search] section).

        Args:
            data: Dict from TOML parsing

        Returns:
            SearchSettings instance
        """
        return cls(
            rate_limit_delay=float(data.get("rate_limit_delay", 0.5)),
            deep_rate_limit_delay=float(data.get("deep_rate_limit_delay", 1.0)),
            max_attempts=int(data.get("max_attempts", 3)),
            retry_base_delay=float(data.get("retry_base_delay", 1.0)),
            retry_max_delay=float(data.get("retry_max_delay", 30.0)),
            min_queries=int(data.get("min_queries", 4)),
            max_queries=int(data.get("max_queries", 6)),
            max_refinement_iterations=int(data.get("max_refinement_iterations", 5)),
            max_concurrent_searches=int(data.get("max_concurrent_searches", 4)),
            breaker_failure_threshold=int(data.get("breaker_failure_threshold", 5)),
            breaker_recovery_timeout=float(data.get("breaker_recovery_timeout", 30.0)),
        )


@dataclass
class SessionSettings:
    """Batching, timeout and retention settings for research sessions.

    Attributes:
        batch_size: Questions researched concurrently in one batch
        batch_timeout: Seconds the engine waits for a batch before moving on
        completion_timeout: Seconds allowed for one completion call
        retention_seconds: How long a finished session stays queryable
        cancel_grace_seconds: How long a cancelled session stays queryable
    """

    batch_size: int = 3
    batch_timeout: float = 300.0
    completion_timeout: float = 120.0
    retention_seconds: float = 3600.0
    cancel_grace_seconds: float = 60.0

    @classmethod
    def from_toml_dict(cls, data: Dict[str, Any]) -> "SessionSettings":
        """Create settings from TOML dict (typically [session] section)."""
        return cls(
            batch_size=int(data.get("batch_size", 3)),
            batch_timeout=float(data.get("batch_timeout", 300.0)),
            completion_timeout=float(data.get("completion_timeout", 120.0)),
            retention_seconds=float(data.get("retention_seconds", 3600.0)),
            cancel_grace_seconds=float(data.get("cancel_grace_seconds", 60.0)),
        )


@dataclass
class SynthesisSettings:
    """Context budget used by the chunker and synthesizer.

    Attributes:
        context_limit: Prompt budget in tokens
        response_reserve: Tokens held back for the response
        smoothing_threshold: Merged documents at least this long get a coherence pass
        smoothing_max_chars: Input cap for the coherence pass
    """

    context_limit: int = 32000
    response_reserve: int = 500
    smoothing_threshold: int = 5000
    smoothing_max_chars: int = 15000

    @classmethod
    def from_toml_dict(cls, data: Dict[str, Any]) -> "SynthesisSettings":
        """Create settings from TOML dict (typically [synthesis] section)."""
        return cls(
            context_limit=int(data.get("context_limit", 32000)),
            response_reserve=int(data.get("response_reserve", 500)),
            smoothing_threshold=int(data.get("smoothing_threshold", 5000)),
            smoothing_max_chars=int(data.get("smoothing_max_chars", 15000)),
        )


@dataclass
class StorageSettings:
    """Persistence settings for finished research results.

    Attributes:
        enabled: Persist results to disk through the knowledge store
        results_dir: Directory holding one JSON file per session
        ttl_hours: Time-to-live for persisted results (None for no expiry)
        max_cached_results: Finished results kept in memory; older ones are
            evicted first and are then only served from disk
    """

    enabled: bool = False
    results_dir: Optional[Path] = None
    ttl_hours: Optional[int] = 24
    max_cached_results: int = 100

    @classmethod
    def from_toml_dict(cls, data: Dict[str, Any]) -> "StorageSettings":
        """Create settings from TOML dict (typically [storage] section)."""
        results_dir = data.get("results_dir")
        ttl = data.get("ttl_hours", 24)
        return cls(
            enabled=_parse_bool(data.get("enabled", results_dir is not None)),
            results_dir=Path(results_dir) if results_dir else None,
            ttl_hours=int(ttl) if ttl is not None else None,
            max_cached_results=int(data.get("max_cached_results", 100)),
        )

    def get_results_dir(self) -> Path:
        """Get the results directory, defaulting under the home directory."""
        if self.results_dir is not None:
            return self.results_dir
        return Path.home() / ".deepresearch" / "results"


@dataclass
class EngineSettings:
    """Engine configuration with support for env vars and TOML overrides."""

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "human"

    search: SearchSettings = field(default_factory=SearchSettings)
    session: SessionSettings = field(default_factory=SessionSettings)
    synthesis: SynthesisSettings = field(default_factory=SynthesisSettings)
    storage: StorageSettings = field(default_factory=StorageSettings)

    @classmethod
    def from_env(cls, config_file: Optional[str] = None) -> "EngineSettings":
        """
        Create settings from environment variables and optional TOML file.

        Priority (highest to lowest):
        1. Environment variables
        2. TOML config file
        3. Default values
        """
        settings = cls()

        toml_path = config_file or os.environ.get("DEEPRESEARCH_CONFIG_FILE")
        if toml_path:
            settings._load_toml(Path(toml_path))
        else:
            for default_path in ["deepresearch.toml", ".deepresearch.toml"]:
                if Path(default_path).exists():
                    settings._load_toml(Path(default_path))
                    break

        settings._load_env()

        return settings

    def _load_toml(self, path: Path) -> None:
        """Load configuration from TOML file.

        Raises:
            ConfigurationError: If the file exists but cannot be parsed
        """
        if not path.exists():
            logger.warning("Config file not found: %s", path)
            return

        try:
            with open(path, "rb") as f:
                data = tomllib.load(f)
        except (OSError, tomllib.TOMLDecodeError) as e:
            raise ConfigurationError(f"Error loading config file {path}: {e}") from e

        try:
            if "logging" in data:
                log = data["logging"]
                if "level" in log:
                    self.log_level = str(log["level"]).upper()
                if "format" in log:
                    self.log_format = str(log["format"]).lower()

            if "search" in data:
                self.search = SearchSettings.from_toml_dict(data["search"])

            if "session" in data:
                self.session = SessionSettings.from_toml_dict(data["session"])

            if "synthesis" in data:
                self.synthesis = SynthesisSettings.from_toml_dict(data["synthesis"])

            if "storage" in data:
                self.storage = StorageSettings.from_toml_dict(data["storage"])
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid value in config file {path}: {e}") from e

    def _load_env(self) -> None:
        """Load configuration from environment variables."""
        try:
            if level := os.environ.get("DEEPRESEARCH_LOG_LEVEL"):
                self.log_level = level.upper()
            if fmt := os.environ.get("DEEPRESEARCH_LOG_FORMAT"):
                self.log_format = fmt.lower()

            # Search settings
            if delay := os.environ.get("DEEPRESEARCH_RATE_LIMIT_DELAY"):
                self.search.rate_limit_delay = float(delay)
            if deep_delay := os.environ.get("DEEPRESEARCH_DEEP_RATE_LIMIT_DELAY"):
                self.search.deep_rate_limit_delay = float(deep_delay)
            if attempts := os.environ.get("DEEPRESEARCH_MAX_ATTEMPTS"):
                self.search.max_attempts = int(attempts)
            if concurrent := os.environ.get("DEEPRESEARCH_MAX_CONCURRENT_SEARCHES"):
                self.search.max_concurrent_searches = int(concurrent)

            # Session settings
            if batch_size := os.environ.get("DEEPRESEARCH_BATCH_SIZE"):
                self.session.batch_size = int(batch_size)
            if batch_timeout := os.environ.get("DEEPRESEARCH_BATCH_TIMEOUT"):
                self.session.batch_timeout = float(batch_timeout)
            if retention := os.environ.get("DEEPRESEARCH_RETENTION_SECONDS"):
                self.session.retention_seconds = float(retention)

            # Synthesis settings
            if context_limit := os.environ.get("DEEPRESEARCH_CONTEXT_LIMIT"):
                self.synthesis.context_limit = int(context_limit)
        except ValueError as e:
            raise ConfigurationError(f"Invalid environment override: {e}") from e

        # Storage settings
        if results_dir := os.environ.get("DEEPRESEARCH_RESULTS_DIR"):
            self.storage.results_dir = Path(results_dir)
            self.storage.enabled = True
        if persist := os.environ.get("DEEPRESEARCH_PERSIST_RESULTS"):
            self.storage.enabled = _parse_bool(persist)

    def validate(self) -> None:
        """Check settings for values the engine cannot work with.

        Raises:
            ConfigurationError: On the first invalid setting found
        """
        if self.log_format not in _VALID_LOG_FORMATS:
            raise ConfigurationError(
                f"log_format must be one of {sorted(_VALID_LOG_FORMATS)}, "
                f"got {self.log_format!r}",
                field="log_format",
            )
        if self.search.max_attempts < 1:
            raise ConfigurationError("search.max_attempts must be >= 1", field="max_attempts")
        if self.search.rate_limit_delay < 0 or self.search.deep_rate_limit_delay < 0:
            raise ConfigurationError("search delays must be >= 0", field="rate_limit_delay")
        if not 1 <= self.search.min_queries <= self.search.max_queries:
            raise ConfigurationError(
                "search.min_queries must be between 1 and search.max_queries",
                field="min_queries",
            )
        if self.search.max_concurrent_searches < 1:
            raise ConfigurationError(
                "search.max_concurrent_searches must be >= 1",
                field="max_concurrent_searches",
            )
        if self.session.batch_size < 1:
            raise ConfigurationError("session.batch_size must be >= 1", field="batch_size")
        if self.session.batch_timeout <= 0:
            raise ConfigurationError("session.batch_timeout must be > 0", field="batch_timeout")
        if self.synthesis.context_limit <= self.synthesis.response_reserve:
            raise ConfigurationError(
                "synthesis.context_limit must exceed synthesis.response_reserve",
                field="context_limit",
            )
        if self.storage.max_cached_results < 1:
            raise ConfigurationError(
                "storage.max_cached_results must be >= 1", field="max_cached_results"
            )

    def setup_logging(self) -> None:
        """Configure the deepresearch logger from these settings."""
        from deepresearch.logging_config import configure_logging

        level = getattr(logging, self.log_level, logging.INFO)
        configure_logging(level=level, format=self.log_format)
