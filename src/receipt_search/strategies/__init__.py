"""
Matching strategies.

Each strategy finds receipt candidates for a transaction one way and
reports raw signals; the confidence scorer decides what gets attached.
"""

from .amount_files import AmountFilesStrategy
from .base import SearchContext, Strategy, StrategyOutcome
from .email_attachment import EmailAttachmentStrategy
from .email_invoice import EmailInvoiceStrategy
from .partner_files import PartnerFilesStrategy
from .registry import StrategyRegistry, UnknownStrategyError, default_registry

__all__ = [
    "AmountFilesStrategy",
    "EmailAttachmentStrategy",
    "EmailInvoiceStrategy",
    "PartnerFilesStrategy",
    "SearchContext",
    "Strategy",
    "StrategyOutcome",
    "StrategyRegistry",
    "UnknownStrategyError",
    "default_registry",
]
