"""
Query suggestion module.

Produces ranked mailbox search queries for the email_invoice strategy,
from a local LLM (Ollama) when enabled or from deterministic heuristics.
"""

from .heuristics import clean_text, generate_search_queries, matches_query
from .prompts import PROMPT_VERSION, SearchQueryPrompt
from .service import LLMConcurrencyLimiter, QuerySuggestionError, QuerySuggestionService

__all__ = [
    "PROMPT_VERSION",
    "LLMConcurrencyLimiter",
    "QuerySuggestionError",
    "QuerySuggestionService",
    "SearchQueryPrompt",
    "clean_text",
    "generate_search_queries",
    "matches_query",
]
