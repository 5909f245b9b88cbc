"""
Amount files strategy.

Looks for files whose extracted amount is within a relative tolerance of
the transaction amount, inside a date window around the booking date.
"""

from __future__ import annotations

from datetime import timedelta
from decimal import Decimal
from typing import TYPE_CHECKING

from ..confidence import Candidate, Signal, SignalKind
from .base import SearchContext, Strategy

if TYPE_CHECKING:
    from ..schemas import Partner, Transaction


class AmountFilesStrategy(Strategy):
    """Files with a matching amount near the booking date."""

    @property
    def id(self) -> str:
        return "amount_files"

    def is_applicable(self, transaction: Transaction, partner: Partner | None) -> bool:
        return transaction.amount != 0

    def search(
        self,
        transaction: Transaction,
        context: SearchContext,
        partner: Partner | None,
    ) -> list[Candidate]:
        amount = abs(transaction.amount)
        tolerance = Decimal(str(context.config.amount_tolerance))
        window = timedelta(days=context.config.amount_date_window_days)

        files = context.ops.store.find_unattached_files(
            context.ops.require_user(),
            date_from=transaction.date - window,
            date_to=transaction.date + window,
            amount_min=amount * (1 - tolerance),
            amount_max=amount * (1 + tolerance),
            limit=context.config.max_files_scanned,
        )

        candidates = []
        for receipt in files:
            result = context.engine.evaluate(transaction, receipt, partner)
            detail = f"{result.signals[0].detail}, {result.signals[1].detail}"
            candidates.append(
                Candidate(
                    file=receipt,
                    signals=[
                        Signal(SignalKind.AMOUNT_DATE_MATCH, result.amount_date_strength, detail)
                    ],
                )
            )
        return candidates
