"""Tests for search query suggestion (heuristics and Ollama service)."""

import json
from unittest.mock import MagicMock, patch

import httpx
import pytest

from receipt_search.config import LLMConfig
from receipt_search.query_ai import (
    PROMPT_VERSION,
    QuerySuggestionError,
    QuerySuggestionService,
    SearchQueryPrompt,
    clean_text,
    generate_search_queries,
    matches_query,
)
from receipt_search.schemas import FileSource

from .factories import make_file, make_transaction


def ollama_response(content: str) -> MagicMock:
    response = MagicMock()
    response.json.return_value = {"message": {"content": content}}
    return response


class TestHeuristics:
    """Tests for deterministic query generation."""

    def test_clean_text_drops_payment_noise(self) -> None:
        assert clean_text("SEPA Lastschrift NETFLIX.COM 12.11.2024 4711") == "netflix.com"
        assert clean_text(None) == ""

    def test_queries_most_specific_first(self, acme) -> None:
        tx = make_transaction("tx-1", description="Invoice INV-2024-0042", partner_id=acme.id)

        queries = generate_search_queries(tx, acme, max_queries=5)

        assert queries == [
            "inv-2024-0042",
            "acme hosting",
            "acme",
            "from:acme-hosting.de",
            "DE123456789",
        ]

    def test_queries_without_partner_use_booking_text(self) -> None:
        tx = make_transaction("tx-1", name="SEPA Lastschrift NETFLIX.COM 12.11.2024")

        assert generate_search_queries(tx) == ["netflix.com"]

    def test_max_queries_respected(self, acme) -> None:
        tx = make_transaction("tx-1", description="Invoice INV-2024-0042")

        assert len(generate_search_queries(tx, acme, max_queries=2)) == 2


class TestMatchesQuery:
    @pytest.fixture
    def mail_file(self):
        return make_file(
            "f-mail",
            source_type=FileSource.EMAIL_ATTACHMENT,
            sender_domain="billing.acme-hosting.de",
            email_subject="Invoice INV-2024-0042 for November",
            extracted_partner="ACME Hosting GmbH",
        )

    def test_from_operator_accepts_subdomains(self, mail_file) -> None:
        assert matches_query("from:acme-hosting.de", mail_file)
        assert not matches_query("from:hosting.de.example", mail_file)

    def test_subject_operator(self, mail_file) -> None:
        assert matches_query('subject:"inv-2024-0042"', mail_file)
        assert not matches_query("subject:december", mail_file)

    def test_plain_query_needs_every_term(self, mail_file) -> None:
        assert matches_query("acme november", mail_file)
        assert not matches_query("acme december", mail_file)

    def test_quoted_phrase(self, mail_file) -> None:
        assert matches_query('"acme hosting"', mail_file)
        assert not matches_query('"hosting acme"', mail_file)

    def test_empty_query_never_matches(self, mail_file) -> None:
        assert not matches_query("   ", mail_file)


class TestSearchQueryPrompt:
    def test_prompt_version_set(self) -> None:
        assert SearchQueryPrompt().version == PROMPT_VERSION

    def test_format_user_message_missing_partner(self) -> None:
        message = SearchQueryPrompt().format_user_message("119.00 EUR | 2024-11-20", None, 3)

        assert "up to 3 search queries" in message
        assert "unknown" in message


class TestQuerySuggestionService:
    """Tests for QuerySuggestionService."""

    @pytest.fixture
    def llm_config(self) -> LLMConfig:
        return LLMConfig(enabled=True, model="qwen2.5:3b", model_fallback="qwen2.5:7b")

    @patch("receipt_search.query_ai.service.httpx.Client")
    def test_disabled_uses_heuristics(self, mock_client_class: MagicMock, acme) -> None:
        service = QuerySuggestionService(LLMConfig(enabled=False))
        tx = make_transaction("tx-1", description="Invoice INV-2024-0042")

        queries = service.suggest_for(tx, acme)

        assert queries[0] == "inv-2024-0042"
        mock_client_class.return_value.post.assert_not_called()

    @patch("receipt_search.query_ai.service.httpx.Client")
    def test_suggest_parses_and_dedupes(
        self, mock_client_class: MagicMock, llm_config: LLMConfig
    ) -> None:
        mock_client = MagicMock()
        mock_client.post.return_value = ollama_response(
            json.dumps({"queries": ["INV-1", "from:acme.de", " INV-1 ", ""]})
        )
        mock_client_class.return_value = mock_client

        service = QuerySuggestionService(llm_config)
        queries = service.suggest("119.00 EUR | ACME", "ACME Hosting GmbH")

        assert queries == ["INV-1", "from:acme.de"]
        payload = mock_client.post.call_args.kwargs["json"]
        assert payload["model"] == "qwen2.5:3b"
        assert payload["format"] == "json"

    @patch("receipt_search.query_ai.service.httpx.Client")
    def test_fallback_model_after_timeout(
        self, mock_client_class: MagicMock, llm_config: LLMConfig
    ) -> None:
        mock_client = MagicMock()
        mock_client.post.side_effect = [
            httpx.TimeoutException("slow"),
            ollama_response('{"queries": ["acme"]}'),
        ]
        mock_client_class.return_value = mock_client

        service = QuerySuggestionService(llm_config)

        assert service.suggest("119.00 EUR") == ["acme"]
        assert mock_client.post.call_count == 2
        assert mock_client.post.call_args.kwargs["json"]["model"] == "qwen2.5:7b"

    @patch("receipt_search.query_ai.service.httpx.Client")
    def test_all_models_fail(self, mock_client_class: MagicMock, llm_config: LLMConfig) -> None:
        mock_client = MagicMock()
        mock_client.post.side_effect = httpx.ConnectError("refused")
        mock_client_class.return_value = mock_client

        service = QuerySuggestionService(llm_config)

        with pytest.raises(QuerySuggestionError, match="request failed"):
            service.suggest("119.00 EUR")

    @patch("receipt_search.query_ai.service.httpx.Client")
    def test_empty_answer_is_an_error(
        self, mock_client_class: MagicMock, llm_config: LLMConfig
    ) -> None:
        mock_client = MagicMock()
        mock_client.post.return_value = ollama_response('{"queries": []}')
        mock_client_class.return_value = mock_client

        service = QuerySuggestionService(llm_config)

        with pytest.raises(QuerySuggestionError, match="returned no queries"):
            service.suggest("119.00 EUR")

    @patch("receipt_search.query_ai.service.httpx.Client")
    def test_auth_header_forwarded(self, mock_client_class: MagicMock) -> None:
        QuerySuggestionService(LLMConfig(enabled=True, auth_header="Bearer secret"))

        headers = mock_client_class.call_args.kwargs["headers"]
        assert headers == {"Authorization": "Bearer secret"}

    def test_parse_queries_markdown_code_block(self, llm_config: LLMConfig) -> None:
        with QuerySuggestionService(llm_config) as service:
            content = '```json\n{"queries": ["a", "b"]}\n```'
            assert service._parse_queries(content) == ["a", "b"]

    def test_parse_queries_extracts_array(self, llm_config: LLMConfig) -> None:
        with QuerySuggestionService(llm_config) as service:
            content = 'Here you go: ["acme invoice", {"query": "from:acme.de"}] hope it helps'
            assert service._parse_queries(content) == ["acme invoice", "from:acme.de"]

    def test_parse_queries_garbage(self, llm_config: LLMConfig) -> None:
        with QuerySuggestionService(llm_config) as service:
            with pytest.raises(QuerySuggestionError):
                service._parse_queries("no idea, sorry")
