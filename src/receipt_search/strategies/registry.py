"""
Strategy registry - the catalogue of named matching strategies.

Queue items store strategy ids; the runner resolves them here. A strategy
that is not registered cannot be listed on a queue item.
"""

from .amount_files import AmountFilesStrategy
from .base import Strategy
from .email_attachment import EmailAttachmentStrategy
from .email_invoice import EmailInvoiceStrategy
from .partner_files import PartnerFilesStrategy


class UnknownStrategyError(KeyError):
    """Raised when a queue item names a strategy that is not registered."""

    pass


class StrategyRegistry:
    """
    Ordered catalogue of strategies.

    Declaration order is the default run order:
    1. partner_files - partner id / IBAN / VAT / domain / alias references
    2. amount_files - amount within tolerance near the booking date
    3. email_attachment - mail attachments from partner domains
    4. email_invoice - mail files found by suggested queries
    """

    def __init__(self, strategies: list[Strategy] | None = None):
        self._strategies: dict[str, Strategy] = {}
        for strategy in strategies or []:
            self.register(strategy)

    def register(self, strategy: Strategy) -> None:
        if strategy.id in self._strategies:
            raise ValueError(f"Strategy '{strategy.id}' is already registered")
        self._strategies[strategy.id] = strategy

    def get(self, strategy_id: str) -> Strategy:
        try:
            return self._strategies[strategy_id]
        except KeyError:
            raise UnknownStrategyError(strategy_id) from None

    def ids(self) -> list[str]:
        return list(self._strategies)

    def __contains__(self, strategy_id: str) -> bool:
        return strategy_id in self._strategies


def default_registry() -> StrategyRegistry:
    """Registry with the built-in strategies in their default order."""
    return StrategyRegistry(
        [
            PartnerFilesStrategy(),
            AmountFilesStrategy(),
            EmailAttachmentStrategy(),
            EmailInvoiceStrategy(),
        ]
    )
