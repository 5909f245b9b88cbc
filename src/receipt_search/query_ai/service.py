"""Query suggestion service (LLM-assisted).

Asks a local Ollama server for ranked mailbox search queries that may
surface the receipt for a transaction. Best-effort and timeout-bounded:
any failure raises QuerySuggestionError, which the email_invoice strategy
records as a non-fatal error.
"""

from __future__ import annotations

import json
import logging
import re
import threading
from typing import TYPE_CHECKING

import httpx

from .heuristics import generate_search_queries
from .prompts import SearchQueryPrompt

if TYPE_CHECKING:
    from ..config import LLMConfig
    from ..schemas import Partner, Transaction

logger = logging.getLogger(__name__)


class QuerySuggestionError(Exception):
    """Raised when no query suggestions could be obtained."""

    pass


class LLMConcurrencyLimiter:
    """Semaphore-based concurrency limiter for LLM requests.

    Prevents overwhelming the Ollama server when several workers search at
    the same time. Thread-safe for synchronous usage.
    """

    def __init__(self, max_concurrent: int = 2) -> None:
        self._semaphore = threading.Semaphore(max_concurrent)
        self._active_count = 0
        self._lock = threading.Lock()

    def acquire(self, timeout: float | None = None) -> bool:
        """Acquire a slot; False if the wait timed out."""
        acquired = self._semaphore.acquire(blocking=True, timeout=timeout)
        if acquired:
            with self._lock:
                self._active_count += 1
        return acquired

    def release(self) -> None:
        with self._lock:
            self._active_count -= 1
        self._semaphore.release()

    @property
    def active_requests(self) -> int:
        with self._lock:
            return self._active_count


class QuerySuggestionService:
    """Ranked search-query suggestions for receipt lookups.

    LLM opt-in control (single enforcement point):
    - config.enabled False: deterministic heuristic queries, no network
    - config.enabled True: Ollama chat completion, model then fallback model
    """

    def __init__(self, config: LLMConfig) -> None:
        self.config = config

        headers = {}
        if config.auth_header:
            # Support formats: "Bearer token" or "Custom-Header: value"
            if ":" in config.auth_header:
                key, value = config.auth_header.split(":", 1)
                headers[key.strip()] = value.strip()
            else:
                headers["Authorization"] = config.auth_header

        self._client = httpx.Client(
            timeout=httpx.Timeout(
                connect=5.0,
                read=float(config.timeout_seconds),
                write=10.0,
                pool=5.0,
            ),
            headers=headers,
        )
        self._prompt = SearchQueryPrompt()
        self._limiter = LLMConcurrencyLimiter(max_concurrent=config.max_concurrent)

    @property
    def is_enabled(self) -> bool:
        return self.config.enabled

    def suggest_for(
        self,
        transaction: Transaction,
        partner: Partner | None = None,
        max_queries: int | None = None,
    ) -> list[str]:
        """Queries for a transaction, from the LLM when enabled."""
        limit = max_queries or self.config.max_queries
        if not self.is_enabled:
            return generate_search_queries(transaction, partner, limit)
        return self.suggest(
            transaction.summary(),
            partner.summary() if partner else None,
            limit,
        )

    def suggest(
        self,
        transaction_summary: str,
        partner_summary: str | None = None,
        max_queries: int = 3,
    ) -> list[str]:
        """
        Ask the LLM for ranked search queries.

        Returns:
            Up to max_queries distinct query strings, best first.

        Raises:
            QuerySuggestionError: if the server is unreachable, times out or
                returns nothing usable.
        """
        user_message = self._prompt.format_user_message(
            transaction_summary, partner_summary, max_queries
        )
        models = [m for m in (self.config.model, self.config.model_fallback) if m]

        last_error = "no model configured"
        for model in models:
            try:
                content = self._call_ollama(model, self._prompt.system_prompt, user_message)
                queries = self._parse_queries(content)
            except QuerySuggestionError as e:
                last_error = str(e)
                logger.warning("Query suggestion with %s failed: %s", model, e)
                continue
            if queries:
                logger.debug("Model %s suggested %d queries", model, len(queries))
                return queries[:max_queries]
            last_error = f"{model} returned no queries"

        raise QuerySuggestionError(last_error)

    def _call_ollama(self, model: str, system_prompt: str, user_message: str) -> str:
        """Call Ollama chat API with concurrency limiting. Returns message content."""
        if not self._limiter.acquire(timeout=self.config.timeout_seconds):
            raise QuerySuggestionError(
                f"timed out waiting for LLM slot (max={self.config.max_concurrent})"
            )

        try:
            response = self._client.post(
                f"{self.config.ollama_url}/api/chat",
                json={
                    "model": model,
                    "messages": [
                        {"role": "system", "content": system_prompt},
                        {"role": "user", "content": user_message},
                    ],
                    "stream": False,
                    "format": "json",
                },
            )
            response.raise_for_status()
            return response.json().get("message", {}).get("content", "")
        except httpx.TimeoutException:
            raise QuerySuggestionError(
                f"request timed out after {self.config.timeout_seconds}s"
            ) from None
        except httpx.HTTPStatusError as e:
            raise QuerySuggestionError(
                f"API error {e.response.status_code} for model '{model}'"
            ) from e
        except httpx.RequestError as e:
            raise QuerySuggestionError(f"request failed: {e}") from e
        except ValueError as e:
            raise QuerySuggestionError(f"invalid response body: {e}") from e
        finally:
            self._limiter.release()

    def _parse_queries(self, content: str) -> list[str]:
        """Extract the query list from a possibly malformed JSON answer."""
        if not content:
            return []
        content = content.strip()
        if content.startswith("```json"):
            content = content[7:]
        elif content.startswith("```"):
            content = content[3:]
        if content.endswith("```"):
            content = content[:-3]
        content = content.strip()

        data = None
        try:
            data = json.loads(content)
        except json.JSONDecodeError:
            match = re.search(r"\[[\s\S]*?\]", content)
            if match:
                try:
                    data = json.loads(match.group())
                except json.JSONDecodeError:
                    data = None

        if isinstance(data, dict):
            data = data.get("queries", [])
        if not isinstance(data, list):
            raise QuerySuggestionError("could not parse queries from LLM response")

        queries: list[str] = []
        for item in data:
            if isinstance(item, dict):
                item = item.get("query", "")
            if isinstance(item, str) and item.strip() and item.strip() not in queries:
                queries.append(item.strip())
        return queries

    def close(self) -> None:
        """Close HTTP client."""
        self._client.close()

    def __enter__(self) -> QuerySuggestionService:
        return self

    def __exit__(self, *args) -> None:
        self.close()
