"""Prompt templates for LLM-suggested receipt search queries.

Prompts are versioned so logged suggestions can be traced to the prompt
that produced them.
"""

from __future__ import annotations

from dataclasses import dataclass

# v1.1: Ask for mailbox-style operators (from:, subject:) explicitly
PROMPT_VERSION = "v1.1"


@dataclass
class SearchQueryPrompt:
    """Prompt template for receipt search query suggestions.

    Attributes:
        version: Prompt version.
        system_prompt: System message setting LLM behavior.
        user_template: Template for user message with placeholders.
    """

    version: str = PROMPT_VERSION

    system_prompt: str = """You help find the receipt or invoice for a bank transaction
in a mailbox of already imported emails and attachments.

Rules:
1. Return short search queries, most specific first
2. Prefer invoice or order numbers, then the merchant's name, then sender domains
3. Use "from:domain.tld" for sender domains
4. Never include the amount or the booking date as a query
5. Do not invent invoice numbers

Respond in JSON format:
{
    "queries": ["query one", "from:example.com", "query three"]
}"""

    user_template: str = """Suggest up to {max_queries} search queries.

Transaction:
{transaction}

Known counterparty:
{partner}

Provide your suggestion in JSON format."""

    def format_user_message(
        self,
        transaction_summary: str,
        partner_summary: str | None,
        max_queries: int,
    ) -> str:
        """Format the user message with transaction details."""
        return self.user_template.format(
            max_queries=max_queries,
            transaction=transaction_summary,
            partner=partner_summary or "unknown",
        )
