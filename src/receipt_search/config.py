"""
Configuration management (SSOT).

This module defines ALL configuration for the receipt precision search service.
All config keys are defined here; no other module should invent config keys.

Key invariants:
- acceptance_threshold is the single cut-off for automatic attachment
- Strategy ids listed in search.strategies must exist in the strategy registry
- Retries are never immediate: backoff_base_seconds must be positive
"""

import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml

DEFAULT_STRATEGIES = ["partner_files", "amount_files", "email_attachment", "email_invoice"]


class ConfigValidationError(Exception):
    """Raised when configuration validation fails."""

    pass


@dataclass
class SearchConfig:
    """Matching settings used by strategies and the confidence scorer."""

    # Candidates strictly below this confidence are discarded
    acceptance_threshold: float = 0.60
    # Relative amount tolerance for amount_files (0.05 = 5%)
    amount_tolerance: float = 0.05
    # Receipt date vs. booking date tolerance for date scoring (days)
    date_tolerance_days: int = 7
    # Date window around the transaction date for amount_files (days)
    amount_date_window_days: int = 90
    # Date window around the transaction date for mail searches (days)
    email_date_window_days: int = 180
    # Candidates kept per strategy run
    max_candidates: int = 3
    # Unattached files read per strategy run, newest first
    max_files_scanned: int = 500
    # Default ordered strategy list recorded on new queue items
    strategies: list[str] = field(default_factory=lambda: list(DEFAULT_STRATEGIES))
    # Retry budget written to new queue items
    max_retries: int = 3
    # Lease length for a claimed queue item (seconds)
    lease_seconds: int = 600
    # SQLite busy timeout (seconds)
    store_timeout_seconds: float = 10.0


@dataclass
class RetryConfig:
    """External retry policy for failed queue items."""

    enabled: bool = True
    # First retry waits this long after failure, then doubles
    backoff_base_seconds: int = 60
    backoff_max_seconds: int = 3600


@dataclass
class WorkerConfig:
    """Worker loop settings (CLI and management command)."""

    poll_interval_seconds: int = 30
    batch_size: int = 5
    # Threads used to process different users' items concurrently
    max_workers: int = 2


@dataclass
class LLMConfig:
    """Local LLM (Ollama) configuration for query suggestions.

    SSOT for LLM settings:
    - enabled: Master switch (default OFF, heuristic queries are used instead)
    - ollama_url: Can be localhost, LAN IP, or remote URL
    - auth_header: Optional auth header for proxied deployments
    - max_concurrent: Concurrency limiter for queue management
    """

    enabled: bool = False
    ollama_url: str = "http://localhost:11434"
    # Format: "Bearer <token>" or custom header value
    auth_header: str | None = None
    model: str = "qwen2.5:3b-instruct-q4_K_M"
    model_fallback: str | None = None
    timeout_seconds: int = 20
    max_queries: int = 3
    max_concurrent: int = 2

    def is_remote(self) -> bool:
        """Check if Ollama URL is remote (not localhost)."""
        url_lower = self.ollama_url.lower()
        return not any(
            local in url_lower
            for local in ["localhost", "127.0.0.1", "::1", "host.docker.internal"]
        )


@dataclass
class Config:
    """Main configuration container."""

    search: SearchConfig = field(default_factory=SearchConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    worker: WorkerConfig = field(default_factory=WorkerConfig)
    llm: LLMConfig = field(default_factory=LLMConfig)
    state_db_path: Path = field(default_factory=lambda: Path("data/receipts.db"))

    def validate(self) -> list[str]:
        """Validate configuration completeness and consistency.

        Returns:
            List of validation errors (empty if valid)
        """
        from .strategies import default_registry

        errors: list[str] = []

        if not 0.0 < self.search.acceptance_threshold <= 1.0:
            errors.append("search.acceptance_threshold must be in (0, 1]")
        if self.search.amount_tolerance < 0:
            errors.append("search.amount_tolerance must not be negative")
        if not self.search.strategies:
            errors.append("search.strategies must list at least one strategy")

        known = set(default_registry().ids())
        for strategy_id in self.search.strategies:
            if strategy_id not in known:
                errors.append(f"search.strategies: unknown strategy '{strategy_id}'")

        if self.search.max_retries < 0:
            errors.append("search.max_retries must not be negative")
        if self.search.lease_seconds <= 0:
            errors.append("search.lease_seconds must be positive")
        if self.search.max_files_scanned <= 0:
            errors.append("search.max_files_scanned must be positive")

        if self.retry.backoff_base_seconds <= 0:
            errors.append("retry.backoff_base_seconds must be positive")
        if self.retry.backoff_max_seconds < self.retry.backoff_base_seconds:
            errors.append("retry.backoff_max_seconds must be >= backoff_base_seconds")

        if self.worker.max_workers < 1:
            errors.append("worker.max_workers must be at least 1")

        if self.llm.enabled and not self.llm.ollama_url:
            errors.append("llm.ollama_url is required when LLM is enabled")

        return errors


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name, "").lower()
    if value == "true":
        return True
    if value == "false":
        return False
    return default


def load_config(config_path: Path) -> Config:
    """
    Load configuration from YAML file.

    Environment variables can override config values:
    - RECEIPT_SEARCH_DB (state database path)
    - RECEIPT_SEARCH_THRESHOLD (acceptance threshold)
    - RECEIPT_SEARCH_LLM_ENABLED (true/false)
    - OLLAMA_URL
    - OLLAMA_MODEL
    - OLLAMA_AUTH_HEADER
    - OLLAMA_TIMEOUT (request timeout in seconds)
    """
    if config_path.exists():
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
    else:
        data = {}

    search_data = data.get("search", {})
    threshold = search_data.get("acceptance_threshold", 0.60)
    threshold_env = os.environ.get("RECEIPT_SEARCH_THRESHOLD", "")
    if threshold_env:
        try:
            threshold = float(threshold_env)
        except ValueError:
            raise ConfigValidationError(
                f"RECEIPT_SEARCH_THRESHOLD must be a number, got '{threshold_env}'"
            )

    search = SearchConfig(
        acceptance_threshold=threshold,
        amount_tolerance=search_data.get("amount_tolerance", 0.05),
        date_tolerance_days=search_data.get("date_tolerance_days", 7),
        amount_date_window_days=search_data.get("amount_date_window_days", 90),
        email_date_window_days=search_data.get("email_date_window_days", 180),
        max_candidates=search_data.get("max_candidates", 3),
        max_files_scanned=search_data.get("max_files_scanned", 500),
        strategies=list(search_data.get("strategies", DEFAULT_STRATEGIES)),
        max_retries=search_data.get("max_retries", 3),
        lease_seconds=search_data.get("lease_seconds", 600),
        store_timeout_seconds=search_data.get("store_timeout_seconds", 10.0),
    )

    retry_data = data.get("retry", {})
    retry = RetryConfig(
        enabled=retry_data.get("enabled", True),
        backoff_base_seconds=retry_data.get("backoff_base_seconds", 60),
        backoff_max_seconds=retry_data.get("backoff_max_seconds", 3600),
    )

    worker_data = data.get("worker", {})
    worker = WorkerConfig(
        poll_interval_seconds=worker_data.get("poll_interval_seconds", 30),
        batch_size=worker_data.get("batch_size", 5),
        max_workers=worker_data.get("max_workers", 2),
    )

    llm_data = data.get("llm", {})
    llm = LLMConfig(
        enabled=_env_bool("RECEIPT_SEARCH_LLM_ENABLED", llm_data.get("enabled", False)),
        ollama_url=os.environ.get(
            "OLLAMA_URL", llm_data.get("ollama_url", "http://localhost:11434")
        ),
        auth_header=os.environ.get("OLLAMA_AUTH_HEADER", llm_data.get("auth_header")),
        model=os.environ.get("OLLAMA_MODEL", llm_data.get("model", "qwen2.5:3b-instruct-q4_K_M")),
        model_fallback=llm_data.get("model_fallback"),
        timeout_seconds=int(os.environ.get("OLLAMA_TIMEOUT", llm_data.get("timeout_seconds", 20))),
        max_queries=llm_data.get("max_queries", 3),
        max_concurrent=llm_data.get("max_concurrent", 2),
    )

    state_db = os.environ.get("RECEIPT_SEARCH_DB", data.get("state_db_path", "data/receipts.db"))

    return Config(
        search=search,
        retry=retry,
        worker=worker,
        llm=llm,
        state_db_path=Path(state_db),
    )


def create_default_config(config_path: Path) -> None:
    """Create a default configuration file."""
    default_config = """# Receipt Precision Search Configuration
#
# Strategies run in the listed order for every queued search. A transaction
# stops being searched as soon as one candidate clears acceptance_threshold.

search:
  acceptance_threshold: 0.60     # Auto-attach at or above this confidence
  amount_tolerance: 0.05         # amount_files: relative amount tolerance
  date_tolerance_days: 7         # Receipt date vs. booking date tolerance
  amount_date_window_days: 90    # amount_files: +/- days around booking date
  email_date_window_days: 180    # email strategies: +/- days around booking date
  max_candidates: 3              # Candidates kept per strategy run
  max_files_scanned: 500         # Unattached files read per strategy run (newest first)
  strategies:
    - partner_files
    - amount_files
    - email_attachment
    - email_invoice
  max_retries: 3                 # Retry budget per queued search
  lease_seconds: 600             # Processing lease; expired leases can be re-claimed
  store_timeout_seconds: 10      # SQLite busy timeout

# Failed searches are re-queued with exponential backoff
retry:
  enabled: true
  backoff_base_seconds: 60
  backoff_max_seconds: 3600

worker:
  poll_interval_seconds: 30
  batch_size: 5
  max_workers: 2

# Local LLM settings (Ollama) for the email_invoice strategy
llm:
  enabled: false                           # Heuristic queries are used when disabled
  ollama_url: "http://localhost:11434"
  auth_header: null                        # Optional auth header for proxied deployments
  model: "qwen2.5:3b-instruct-q4_K_M"
  model_fallback: null
  timeout_seconds: 20
  max_queries: 3
  max_concurrent: 2

# State database path
state_db_path: "data/receipts.db"
"""

    config_path.parent.mkdir(parents=True, exist_ok=True)
    with open(config_path, "w") as f:
        f.write(default_config)
