"""Tests for configuration loading and validation."""

from pathlib import Path

import pytest

from receipt_search.config import (
    DEFAULT_STRATEGIES,
    Config,
    ConfigValidationError,
    LLMConfig,
    create_default_config,
    load_config,
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in (
        "RECEIPT_SEARCH_DB",
        "RECEIPT_SEARCH_THRESHOLD",
        "RECEIPT_SEARCH_LLM_ENABLED",
        "OLLAMA_URL",
        "OLLAMA_MODEL",
        "OLLAMA_TIMEOUT",
        "OLLAMA_AUTH_HEADER",
    ):
        monkeypatch.delenv(name, raising=False)


class TestLoadConfig:
    def test_missing_file_gives_defaults(self, tmp_path):
        config = load_config(tmp_path / "absent.yaml")

        assert config.search.acceptance_threshold == 0.60
        assert config.search.strategies == DEFAULT_STRATEGIES
        assert config.search.max_retries == 3
        assert config.search.max_files_scanned == 500
        assert config.llm.enabled is False
        assert config.state_db_path == Path("data/receipts.db")
        assert config.validate() == []

    def test_default_file_matches_defaults(self, tmp_path):
        path = tmp_path / "conf" / "config.yaml"
        create_default_config(path)

        config = load_config(path)

        assert config == Config()

    def test_yaml_values(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text(
            """
search:
  acceptance_threshold: 0.8
  strategies: [amount_files, partner_files]
  lease_seconds: 120
  max_files_scanned: 2000
retry:
  backoff_base_seconds: 10
  backoff_max_seconds: 40
worker:
  max_workers: 4
state_db_path: /var/lib/receipts/state.db
"""
        )

        config = load_config(path)

        assert config.search.acceptance_threshold == 0.8
        assert config.search.strategies == ["amount_files", "partner_files"]
        assert config.search.lease_seconds == 120
        assert config.search.max_files_scanned == 2000
        assert config.retry.backoff_base_seconds == 10
        assert config.worker.max_workers == 4
        assert config.state_db_path == Path("/var/lib/receipts/state.db")

    def test_env_overrides(self, tmp_path, monkeypatch):
        monkeypatch.setenv("RECEIPT_SEARCH_DB", str(tmp_path / "env.db"))
        monkeypatch.setenv("RECEIPT_SEARCH_THRESHOLD", "0.75")
        monkeypatch.setenv("RECEIPT_SEARCH_LLM_ENABLED", "true")
        monkeypatch.setenv("OLLAMA_URL", "http://gpu-box:11434")
        monkeypatch.setenv("OLLAMA_MODEL", "llama3.2:3b")
        monkeypatch.setenv("OLLAMA_TIMEOUT", "45")
        monkeypatch.setenv("OLLAMA_AUTH_HEADER", "Bearer secret")

        config = load_config(tmp_path / "absent.yaml")

        assert config.state_db_path == tmp_path / "env.db"
        assert config.search.acceptance_threshold == 0.75
        assert config.llm.enabled is True
        assert config.llm.ollama_url == "http://gpu-box:11434"
        assert config.llm.model == "llama3.2:3b"
        assert config.llm.timeout_seconds == 45
        assert config.llm.auth_header == "Bearer secret"

    def test_bad_threshold_env(self, tmp_path, monkeypatch):
        monkeypatch.setenv("RECEIPT_SEARCH_THRESHOLD", "high")

        with pytest.raises(ConfigValidationError):
            load_config(tmp_path / "absent.yaml")


class TestValidate:
    def test_unknown_strategy(self):
        config = Config()
        config.search.strategies = ["partner_files", "carrier_pigeon"]

        assert config.validate() == ["search.strategies: unknown strategy 'carrier_pigeon'"]

    def test_threshold_range(self):
        config = Config()
        config.search.acceptance_threshold = 0.0

        assert "search.acceptance_threshold must be in (0, 1]" in config.validate()

    def test_backoff_must_be_positive(self):
        config = Config()
        config.retry.backoff_base_seconds = 0

        assert "retry.backoff_base_seconds must be positive" in config.validate()

    def test_file_scan_limit_must_be_positive(self):
        config = Config()
        config.search.max_files_scanned = 0

        assert "search.max_files_scanned must be positive" in config.validate()

    def test_empty_strategy_list(self):
        config = Config()
        config.search.strategies = []

        assert "search.strategies must list at least one strategy" in config.validate()


class TestLLMConfig:
    @pytest.mark.parametrize(
        "url,remote",
        [
            ("http://localhost:11434", False),
            ("http://127.0.0.1:11434", False),
            ("http://host.docker.internal:11434", False),
            ("https://llm.example.com", True),
        ],
    )
    def test_is_remote(self, url, remote):
        assert LLMConfig(ollama_url=url).is_remote() is remote
